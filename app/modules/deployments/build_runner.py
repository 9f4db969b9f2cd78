import io
import os
import shutil
import tarfile
import tempfile
import threading
import time
import uuid
import logging
from typing import Callable, Dict, Optional

from app.config import settings
from app.core.exceptions import NotFoundError, ValidationError
from app.modules.deployments.artifacts import (
    ARCHIVE_PATH,
    BUILD_COMPLETE_MARKER,
    BUILD_ERROR_MARKER,
    BUILD_LOG_PATH,
    BUILD_SCRIPT_PATH,
    ENV_PATH,
)
from app.modules.deployments.backends import SANDBOX, DeploymentBackend
from app.modules.deployments.build_registry import BuildRegistry
from app.modules.deployments.models import DEPLOY_STATUS_BUILDING, DEPLOY_STATUS_DEPLOYED, DEPLOY_STATUS_ERROR
from app.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)

BUILD_SERVICE = "build"
WATCH_TIMEOUT_EXIT_CODE = 124


def _spawn_daemon(target: Callable, name: str, *args) -> None:
    threading.Thread(target=target, args=args, name=name, daemon=True).start()


def extract_archive(archive: bytes, dest: str) -> None:
    """Extract a tar.gz upload; entries that would land outside dest are rejected."""
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise ValidationError(f"Failed to extract archive: {e}")


class BuildRunner:
    """
    Starts builds without blocking the caller and records their outcome.

    Sandbox backends run the uploaded build script as a long-lived "build" service and a
    watcher thread polls for its marker files. Platform backends build and release an image
    from the extracted sources on a detached thread. Either way completion lands in
    on_build_complete, the only place a build's final status is written.
    """

    def __init__(
        self,
        backend: DeploymentBackend,
        registry: BuildRegistry,
        deployment_service: DeploymentService,
        *,
        spawn: Callable = _spawn_daemon,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.registry = registry
        self.deployment_service = deployment_service
        self.spawn = spawn
        self.sleep = sleep
        self.clock = clock

    def reserve(self, resource_name: str) -> None:
        """
        Claim the resource for one push. Raises ConflictError while another push or build
        holds it. Must be taken before anything is uploaded to the resource.
        """
        self.registry.begin(resource_name)

    def release(self, resource_name: str, reason: str) -> None:
        """Drop a reservation whose upload failed; the persisted status is left as it was."""
        logger.warning(f"Releasing {resource_name} without a build: {reason}")
        self.registry.finish(resource_name, 1, reason)

    def start_build(
        self,
        resource_name: str,
        env_vars: Optional[Dict[str, str]] = None,
        *,
        reserved: bool = False,
    ) -> dict:
        if not reserved:
            self.reserve(resource_name)
        try:
            self.deployment_service.update_deploy_status(resource_name, DEPLOY_STATUS_BUILDING)
            if self.backend.family == SANDBOX:
                self._start_script_build(resource_name)
            else:
                self._start_image_build(resource_name, env_vars or {})
        except Exception as e:
            logger.error(f"Failed to start build for {resource_name}: {e}")
            self.on_build_complete(resource_name, 1, f"Failed to start build: {e}")
            raise
        logger.info(f"Build started for {resource_name}")
        return {"status": DEPLOY_STATUS_BUILDING}

    def on_build_complete(self, resource_name: str, exit_code: int, output: str) -> None:
        """Record the outcome in the tracker and the deployments row. Never raises."""
        output = output or ""
        self.registry.finish(resource_name, exit_code, output)
        try:
            if exit_code == 0:
                self.deployment_service.update_deploy_status(resource_name, DEPLOY_STATUS_DEPLOYED)
                logger.info(f"Build for {resource_name} succeeded")
            else:
                tail = output[-settings.build_error_tail_chars:] or f"Build exited with code {exit_code}"
                self.deployment_service.update_deploy_status(resource_name, DEPLOY_STATUS_ERROR, tail)
                logger.error(f"Build for {resource_name} failed with exit code {exit_code}")
        except Exception as e:
            logger.error(f"Failed to persist build result for {resource_name}: {e}")

    # Script strategy (sandbox)

    def _start_script_build(self, resource_name: str) -> None:
        build_id = uuid.uuid4().hex
        for step in (self.backend.stop_service, self.backend.delete_service):
            try:
                step(resource_name, BUILD_SERVICE)
            except Exception as e:
                logger.debug(f"Ignoring {step.__name__} failure for previous build on {resource_name}: {e}")

        self.backend.put_service(resource_name, BUILD_SERVICE, "bash", [BUILD_SCRIPT_PATH, build_id])
        self.backend.start_service(resource_name, BUILD_SERVICE)
        self.spawn(self._watch_script_build, f"build-watch-{resource_name}", resource_name, build_id)

    def _read_build_output(self, resource_name: str) -> Optional[str]:
        try:
            return self.backend.get_service_logs(resource_name, BUILD_SERVICE)
        except Exception as e:
            logger.debug(f"Service logs unavailable for {resource_name}: {e}")
        try:
            data = self.backend.read_file(resource_name, BUILD_LOG_PATH)
            return data.decode(errors="replace") if data is not None else None
        except Exception as e:
            logger.debug(f"Build log unavailable for {resource_name}: {e}")
            return None

    def _read_marker(self, resource_name: str, path: str, build_id: str) -> Optional[str]:
        """Marker body after the build id line, or None if absent or left by another build."""
        data = self.backend.read_file(resource_name, path)
        if data is None:
            return None
        marker_id, _, body = data.decode(errors="replace").partition("\n")
        if marker_id.strip() != build_id:
            return None
        return body.strip()

    def _watch_script_build(self, resource_name: str, build_id: str) -> None:
        deadline = self.clock() + settings.build_watch_timeout_sec
        output = ""
        try:
            while self.clock() < deadline:
                self.sleep(settings.build_poll_interval_sec)
                latest = self._read_build_output(resource_name)
                if latest is not None:
                    output = latest
                    self.registry.set_output(resource_name, output)
                try:
                    if self._read_marker(resource_name, BUILD_COMPLETE_MARKER, build_id) is not None:
                        self.on_build_complete(resource_name, 0, output)
                        return
                    error = self._read_marker(resource_name, BUILD_ERROR_MARKER, build_id)
                except Exception as e:
                    logger.warning(f"Polling build markers on {resource_name} failed: {e}")
                    continue
                if error is not None:
                    self.on_build_complete(resource_name, 1, f"{output}\n{error}".strip())
                    return
            logger.error(f"Stopped watching build for {resource_name} after {settings.build_watch_timeout_sec:g}s")
            self.on_build_complete(
                resource_name,
                WATCH_TIMEOUT_EXIT_CODE,
                f"{output}\nBuild did not report completion within {settings.build_watch_timeout_sec:g}s".strip(),
            )
        except Exception as e:
            logger.error(f"Build watcher for {resource_name} crashed: {e}")
            self.on_build_complete(resource_name, 1, f"{output}\n{e}".strip())

    # Image strategy (platform)

    def _start_image_build(self, resource_name: str, env_vars: Dict[str, str]) -> None:
        archive = self.backend.read_file(resource_name, ARCHIVE_PATH)
        if archive is None:
            raise NotFoundError("No uploaded archive found. Push the app first.")

        source_dir = tempfile.mkdtemp(prefix=f"build-{resource_name}-")
        try:
            extract_archive(archive, source_dir)
            env_file = self.backend.read_file(resource_name, ENV_PATH)
            if env_file is not None:
                with open(os.path.join(source_dir, ".env"), "wb") as f:
                    f.write(env_file)
        except Exception:
            shutil.rmtree(source_dir, ignore_errors=True)
            raise

        def _on_complete(exit_code: int, output: str) -> None:
            shutil.rmtree(source_dir, ignore_errors=True)
            self.on_build_complete(resource_name, exit_code, output)

        def _on_output(line: str) -> None:
            self.registry.append_output(resource_name, line)

        self.backend.start_build_and_deploy(resource_name, source_dir, env_vars, _on_complete, _on_output)
