import base64
import binascii
import logging
from typing import Callable, Dict, Optional

from app.core.exceptions import NotFoundError, ValidationError
from app.modules.deployments.artifacts import ArtifactTransfer
from app.modules.deployments.backends import DeploymentBackend
from app.modules.deployments.build_registry import BuildRegistry
from app.modules.deployments.build_runner import BuildRunner
from app.modules.deployments.provisioner import PrepareResult, Provisioner
from app.modules.deployments.service import DeploymentService
from app.modules.deployments.status import StatusReconciler, StatusResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]


def decode_archive(archive: Optional[str]) -> bytes:
    if not archive:
        raise ValidationError("archive is required")
    try:
        return base64.b64decode(archive, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("archive must be base64-encoded")


class DeploymentOrchestrator:
    """
    Entry point for prepare / push / status / logs.

    Built once per process. It owns the build registry and hands the same instance to the
    build runner (writer) and the status reconciler (reader).
    """

    def __init__(
        self,
        backend: DeploymentBackend,
        deployment_service: DeploymentService,
        *,
        registry: Optional[BuildRegistry] = None,
        build_runner: Optional[BuildRunner] = None,
        reconciler: Optional[StatusReconciler] = None,
    ):
        self.backend = backend
        self.deployment_service = deployment_service
        self.registry = registry or BuildRegistry()
        self.provisioner = Provisioner(backend, deployment_service)
        self.artifacts = ArtifactTransfer(backend)
        self.build_runner = build_runner or BuildRunner(backend, self.registry, deployment_service)
        self.reconciler = reconciler or StatusReconciler(backend, self.registry, deployment_service)

    def close(self) -> None:
        self.backend.close()

    def prepare(self, owner_id: str, app_name: Optional[str]) -> PrepareResult:
        return self.provisioner.prepare(owner_id, app_name or "")

    def push(
        self,
        owner_id: str,
        app_name: Optional[str],
        archive: bytes,
        env_vars: Optional[Dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict:
        """Upload code and start a build. Returns as soon as the build is running remotely."""
        if not app_name:
            raise ValidationError("appName is required")
        progress = on_progress or (lambda step, message: None)

        deployment = self.deployment_service.get_deployment(owner_id, app_name)
        if deployment is None or not deployment.has_resource:
            raise NotFoundError("No deployment found. Run prepare first.")
        name = deployment.resource_name
        self.build_runner.reserve(name)

        progress("upload", f"Uploading {len(archive)} bytes to {name}...")
        try:
            self.artifacts.push(deployment, archive, env_vars)
        except Exception as e:
            self.build_runner.release(name, f"Upload failed: {e}")
            raise

        progress("build", "Starting build...")
        result = self.build_runner.start_build(name, env_vars, reserved=True)
        logger.info(f"Push accepted for {owner_id}/{app_name} ({name})")
        return result

    def get_status(self, owner_id: str, app_name: Optional[str]) -> StatusResult:
        if not app_name:
            raise ValidationError("appName query parameter is required")
        return self.reconciler.get_status(owner_id, app_name)

    def get_logs(self, owner_id: str, app_name: Optional[str]) -> dict:
        if not app_name:
            raise ValidationError("appName query parameter is required")
        deployment = self.deployment_service.get_deployment(owner_id, app_name)
        if deployment is None or not deployment.has_resource:
            raise NotFoundError("No deployment found")

        build = self.registry.get(deployment.resource_name)
        service_logs = None
        try:
            service_logs = self.backend.get_runtime_logs(deployment.resource_name) or None
        except Exception as e:
            logger.debug(f"No runtime logs for {deployment.resource_name}: {e}")
        return {
            "build_log": (build.output or None) if build is not None else None,
            "service_logs": service_logs,
        }


def build_orchestrator() -> DeploymentOrchestrator:
    """Wire the configured backend and the service-role Supabase client."""
    from app.database.supabase_client import SupabaseClient
    from app.modules.deployments.backends import get_backend

    return DeploymentOrchestrator(get_backend(), DeploymentService(SupabaseClient.get_service_client()))
