import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from app.config import settings
from app.modules.deployments.backends import DeploymentBackend
from app.modules.deployments.build_registry import BuildRegistry
from app.modules.deployments.models import (
    DEPLOY_STATUS_BUILDING,
    DEPLOY_STATUS_DEPLOYED,
    DEPLOY_STATUS_ERROR,
    DEPLOY_STATUS_IDLE,
    DEPLOY_STATUS_PREPARING,
    STATUS_BUILD_ERROR,
    STATUS_BUILDING,
    STATUS_NOT_FOUND,
    STATUS_PREPARING,
    STATUS_RUNNING,
    STATUS_STARTING,
)
from app.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)

DEFAULT_BUILD_MESSAGE = "Building..."
RUNNING_STATES = {"started", "running"}
SLEEPING_STATES = {"stopped", "suspended"}

# BuildKit step lines, e.g. "#8 [deps 3/3] RUN npm ci"
_BUILDKIT_STEP = re.compile(r"^#\d+\s+\[(\w+)\s+\d+/\d+\]\s+(.+)")


@dataclass
class StatusResult:
    status: str
    url: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


def parse_build_step(output: str) -> str:
    """Human-readable label for the most recent recognizable step in build output."""
    for raw in reversed((output or "").split("\n")):
        line = raw.strip()

        match = _BUILDKIT_STEP.match(line)
        if match:
            stage, cmd = match.group(1), match.group(2)
            if cmd.startswith("RUN"):
                run_cmd = re.sub(r"^RUN\s+", "", cmd)
                if "npm ci" in run_cmd or "npm install" in run_cmd:
                    return "Installing dependencies..."
                if "npm run build" in run_cmd:
                    return "Building application..."
                return f"Running: {run_cmd[:60]}"
            if cmd.startswith("COPY"):
                return f"Copying files ({stage})..."
            return f"{stage}: {cmd[:60]}"

        if "Creating release" in line:
            return "Creating release..."
        if "Pushing image" in line:
            return "Pushing image..."
        if "Building image" in line:
            return "Building image..."
        if "Waiting for" in line:
            return line

    return DEFAULT_BUILD_MESSAGE


def probe_liveness(url: str, client: Optional[httpx.Client] = None, timeout: Optional[float] = None) -> bool:
    """GET the public URL; any answer below 500 within the timeout means the app is serving."""
    if not url:
        return False
    timeout = timeout if timeout is not None else settings.liveness_timeout_sec
    try:
        if client is not None:
            response = client.get(url, timeout=timeout)
        else:
            response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        logger.debug(f"Liveness probe for {url} failed: {e}")
        return False
    return response.status_code < 500


def _fire_and_forget(target: Callable, *args) -> None:
    threading.Thread(target=target, args=args, name="liveness-wake", daemon=True).start()


class StatusReconciler:
    """
    Merges the in-memory build tracker, the persisted row and live backend state into one of
    not_found, preparing, building, build_error, starting or running.
    """

    def __init__(
        self,
        backend: DeploymentBackend,
        registry: BuildRegistry,
        deployment_service: DeploymentService,
        *,
        probe_client: Optional[httpx.Client] = None,
        background: Callable = _fire_and_forget,
    ):
        self.backend = backend
        self.registry = registry
        self.deployment_service = deployment_service
        self.probe_client = probe_client
        self.background = background

    def _probe(self, url: str) -> bool:
        return probe_liveness(url, client=self.probe_client)

    def _wake_probe(self, url: str) -> None:
        try:
            self._probe(url)
        except Exception as e:
            logger.debug(f"Wake probe for {url} failed: {e}")

    def get_status(self, owner_id: str, app_name: str) -> StatusResult:
        deployment = self.deployment_service.get_deployment(owner_id, app_name)
        if deployment is None or not deployment.has_resource:
            return StatusResult(STATUS_NOT_FOUND)

        name = deployment.resource_name
        url = deployment.resource_url
        deploy_status = deployment.deploy_status

        build = self.registry.get(name)
        if build is not None and build.is_live:
            message = parse_build_step(build.output)
            logger.info(f"{app_name}: building ({message})")
            return StatusResult(STATUS_BUILDING, url=url, message=message)

        if deploy_status == DEPLOY_STATUS_ERROR:
            return StatusResult(STATUS_BUILD_ERROR, url=url, error=deployment.deploy_error)

        if deploy_status == DEPLOY_STATUS_BUILDING:
            # Tracker lost to a restart; the row stays authoritative until the next push
            return StatusResult(STATUS_BUILDING, url=url)

        if deploy_status == DEPLOY_STATUS_PREPARING:
            return StatusResult(STATUS_PREPARING, url=url)

        if deploy_status in (DEPLOY_STATUS_DEPLOYED, DEPLOY_STATUS_IDLE):
            try:
                return StatusResult(self._runtime_status(name, url), url=url)
            except Exception as e:
                logger.warning(f"Runtime check for {name} failed, reporting stored status: {e}")

        return StatusResult(deploy_status, url=url)

    def _runtime_status(self, name: str, url: str) -> str:
        instances = self.backend.list_runtime_instances(name)
        if not instances:
            logger.info(f"{name}: no runtime instances yet")
            return STATUS_STARTING

        instance = instances[0]
        state = (instance.state or "").lower()
        logger.info(f"{name}: instance {instance.id} state={state}")

        if state in RUNNING_STATES:
            return STATUS_RUNNING if self._probe(url) else STATUS_STARTING

        if state in SLEEPING_STATES:
            # Hitting the URL is what wakes auto-start resources
            if url:
                self.background(self._wake_probe, url)
            return STATUS_STARTING

        return STATUS_STARTING
