import logging
from typing import Dict, Optional

from app.core.exceptions import NotFoundError, ValidationError
from app.modules.deployments.backends import SANDBOX, DeploymentBackend
from app.modules.deployments.schemas import DeploymentRecord

logger = logging.getLogger(__name__)

ARCHIVE_PATH = "/tmp/app.tar.gz"
ENV_PATH = "/app/.env"
BUILD_SCRIPT_PATH = "/tmp/build.sh"
BUILD_LOG_PATH = "/app/build.log"
BUILD_COMPLETE_MARKER = "/app/.build-complete"
BUILD_ERROR_MARKER = "/app/.build-error"
APP_PORT = 3000


def render_env_file(env_vars: Dict[str, str]) -> str:
    return "\n".join(f"{key}={value}" for key, value in env_vars.items())


def generate_build_script(port: int = APP_PORT) -> str:
    """
    Script run inside a sandbox by the "build" service, with the build id as its argument.

    A placeholder HTTP server keeps the sandbox awake while status polls hit it; once the
    build succeeds it is replaced by the real application service. Marker files start with
    the build id so a watcher never mistakes a previous build's marker for its own.
    """
    return f"""#!/bin/bash

BUILD_ID="${{1:-manual}}"
rm -f {BUILD_COMPLETE_MARKER} {BUILD_ERROR_MARKER}

fail() {{
  printf '%s\\n%s\\n' "$BUILD_ID" "$1" > {BUILD_ERROR_MARKER}
  exit 1
}}

sprite-env services stop app 2>/dev/null || true
sprite-env services delete app 2>/dev/null || true
sprite-env services create app \\
  --cmd node --args "-e,require('http').createServer((q,r)=>{{r.end('building')}}).listen({port})" \\
  --http-port {port} \\
  --no-stream

mkdir -p /app
cd /app
tar xzf {ARCHIVE_PATH} || fail "Failed to extract archive"

set -o pipefail
npm install 2>&1 | tee {BUILD_LOG_PATH} || fail "npm install failed"
npm run build 2>&1 | tee -a {BUILD_LOG_PATH} || fail "npm run build failed"

echo "$BUILD_ID" > {BUILD_COMPLETE_MARKER}

sprite-env services stop app 2>/dev/null || true
sprite-env services delete app 2>/dev/null || true
sprite-env services create app \\
  --cmd bash --args "-c,cd /app && npm run start" \\
  --http-port {port} \\
  --no-stream
"""


class ArtifactTransfer:
    """Wakes the resource and uploads archive, env file and (sandbox only) the build script."""

    def __init__(self, backend: DeploymentBackend):
        self.backend = backend

    def push(
        self,
        deployment: Optional[DeploymentRecord],
        archive: bytes,
        env_vars: Optional[Dict[str, str]] = None,
    ) -> dict:
        if deployment is None or not deployment.has_resource:
            raise NotFoundError("No deployment found. Run prepare first.")
        if not archive:
            raise ValidationError("archive is required")

        name = deployment.resource_name
        if self.backend.family == SANDBOX:
            logger.info(f"Waking {name}...")
            if not self.backend.wake(name):
                logger.warning(f"{name} did not confirm wake-up; uploading anyway")

        self.backend.write_file(name, ARCHIVE_PATH, archive)
        logger.info(f"Uploaded {len(archive)} byte archive to {name}")

        if env_vars:
            self.backend.write_file(name, ENV_PATH, render_env_file(env_vars).encode())
            if self.backend.family != SANDBOX:
                self._import_secrets(name, env_vars)

        if self.backend.family == SANDBOX:
            self.backend.write_file(name, BUILD_SCRIPT_PATH, generate_build_script().encode(), mode="0755")

        return {"accepted": True}

    def _import_secrets(self, name: str, env_vars: Dict[str, str]) -> None:
        try:
            self.backend.import_secrets(name, env_vars)
        except Exception as e:
            logger.warning(f"Secret import for {name} failed, continuing: {e}")
