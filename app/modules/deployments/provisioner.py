import logging
from dataclasses import dataclass

from app.config import settings
from app.core.exceptions import ResourceAlreadyExistsError, ValidationError
from app.modules.deployments.backends import DeploymentBackend
from app.modules.deployments.models import DEPLOY_STATUS_PREPARING
from app.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)


@dataclass
class PrepareResult:
    resource_name: str
    resource_url: str


def resource_name_for(deployment_id: int, prefix: str = None) -> str:
    """Backend identifier for a deployment row; stable because the row id never changes."""
    return f"{prefix or settings.resource_name_prefix}-{deployment_id}"


class Provisioner:
    def __init__(self, backend: DeploymentBackend, deployment_service: DeploymentService):
        self.backend = backend
        self.deployment_service = deployment_service

    def prepare(self, owner_id: str, app_name: str) -> PrepareResult:
        """
        Create-or-get the remote resource for (owner_id, app_name).

        An existing resource that the backend still knows about is returned as-is. Otherwise the
        row is upserted, the resource is created (an "already exists" answer counts as success,
        covering a crash between creation and persistence), made public, and its identity is
        saved before returning.
        """
        if not app_name or not app_name.strip():
            raise ValidationError("appName is required")

        existing = self.deployment_service.get_deployment(owner_id, app_name)
        if existing is not None and existing.has_resource:
            info = self.backend.get(existing.resource_name)
            if info is not None:
                logger.info(f"Reusing {existing.resource_name} for {owner_id}/{app_name}")
                return PrepareResult(existing.resource_name, existing.resource_url or info.url)
            logger.warning(f"Resource {existing.resource_name} for {owner_id}/{app_name} is gone, recreating")

        record = existing or self.deployment_service.ensure_deployment(owner_id, app_name)
        resource_name = record.resource_name or resource_name_for(record.id)

        try:
            info = self.backend.provision(resource_name)
            resource_url = info.url
        except ResourceAlreadyExistsError:
            logger.info(f"Resource {resource_name} already exists, adopting it")
            info = self.backend.get(resource_name)
            resource_url = info.url if info is not None else record.resource_url

        self.backend.set_public(resource_name)

        self.deployment_service.set_resource(
            record.id, resource_name, resource_url, deploy_status=DEPLOY_STATUS_PREPARING
        )
        logger.info(f"Prepared {resource_name} for {owner_id}/{app_name} at {resource_url or '(no url yet)'}")
        return PrepareResult(resource_name, resource_url or "")
