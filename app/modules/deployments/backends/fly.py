"""
Fly.io adapter (platform family).

Apps and machines are managed through the Machines REST API; public IPs through the
GraphQL API. Image builds, releases, secrets and logs go through the flyctl binary, run as
a subprocess with the API token passed in its environment.

Uploaded files are staged on local disk under ``settings.fly_workdir/<app>/`` so the
builder can hand a source directory to ``flyctl deploy``.
"""
import logging
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.core.exceptions import NotFoundError, ResourceAlreadyExistsError, UpstreamError
from app.modules.deployments.backends.base import (
    PLATFORM,
    BuildCompleteCallback,
    BuildOutputCallback,
    DeploymentBackend,
    ResourceInfo,
    RuntimeInstance,
)
from app.modules.deployments.backends.http import RetryingClient, raise_for_upstream

logger = logging.getLogger(__name__)

ALLOCATE_IP_MUTATION = """
mutation($input: AllocateIPAddressInput!) {
  allocateIpAddress(input: $input) {
    ipAddress { id address type }
  }
}
"""


def app_url(name: str) -> str:
    return f"https://{name}.fly.dev"


class FlyBackend(DeploymentBackend):
    family = PLATFORM

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        workdir: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.token = token or settings.fly_api_token
        if not self.token:
            raise ValueError("FLY_API_TOKEN not configured")
        self.workdir = Path(workdir or settings.fly_workdir)
        retry = {
            "max_attempts": settings.upstream_max_attempts,
            "retry_delay": settings.upstream_retry_delay_sec,
            "timeout": settings.upstream_timeout_sec,
            "client": client,
            "sleep": sleep,
        }
        self.machines = RetryingClient(settings.fly_api_base, self.token, **retry)
        self.graphql = RetryingClient(settings.fly_graphql_url, self.token, **retry)

    def close(self) -> None:
        self.machines.close()
        self.graphql.close()

    def _flyctl_env(self) -> dict:
        env = os.environ.copy()
        env["FLY_API_TOKEN"] = self.token
        env.pop("FLY_ACCESS_TOKEN", None)
        return env

    def _staged_path(self, name: str, path: str) -> Path:
        root = (self.workdir / name).resolve()
        target = (root / path.lstrip("/")).resolve()
        if root != target and root not in target.parents:
            raise ValueError(f"Path {path!r} escapes the staging directory")
        return target

    # Resource lifecycle

    def provision(self, name: str) -> ResourceInfo:
        response = self.machines.request(
            "POST", "/v1/apps", json={"app_name": name, "org_slug": settings.fly_org_slug}
        )
        body = response.text.lower() if not response.is_success else ""
        if response.status_code == 409 or (
            response.status_code == 422 and ("already" in body or "taken" in body)
        ):
            raise ResourceAlreadyExistsError(
                f"Fly app {name} already exists", upstream_status=response.status_code, body=response.text
            )
        raise_for_upstream(response, f"create fly app {name!r}")
        logger.info(f"Created fly app {name}")
        return ResourceInfo(name=name, url=app_url(name), status="pending")

    def get(self, name: str) -> Optional[ResourceInfo]:
        response = self.machines.request("GET", f"/v1/apps/{quote(name, safe='')}")
        if response.status_code == 404:
            return None
        raise_for_upstream(response, f"get fly app {name!r}")
        data = response.json()
        return ResourceInfo(name=data.get("name", name), url=app_url(name), id=data.get("id"), status=data.get("status"))

    def set_public(self, name: str) -> None:
        for ip_type in ("shared_v4", "v6"):
            response = self.graphql.request(
                "POST",
                "",
                json={"query": ALLOCATE_IP_MUTATION, "variables": {"input": {"appId": name, "type": ip_type}}},
            )
            raise_for_upstream(response, f"allocate {ip_type} address for {name!r}")
            errors = response.json().get("errors") or []
            messages = [str(e.get("message", "")) for e in errors if isinstance(e, dict)]
            # Re-running prepare hits already-allocated addresses
            fatal = [m for m in messages if "already" not in m.lower()]
            if fatal:
                raise UpstreamError(f"Failed to allocate {ip_type} address for {name!r}: {'; '.join(fatal)}")

    # Filesystem (local staging)

    def write_file(self, name: str, path: str, data: bytes, mode: Optional[str] = None) -> None:
        target = self._staged_path(name, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.partial")
        tmp.write_bytes(data)
        if mode:
            os.chmod(tmp, int(mode, 8))
        os.replace(tmp, target)

    def read_file(self, name: str, path: str) -> Optional[bytes]:
        target = self._staged_path(name, path)
        if not target.is_file():
            return None
        return target.read_bytes()

    # Runtime

    def list_runtime_instances(self, name: str) -> List[RuntimeInstance]:
        response = self.machines.request("GET", f"/v1/apps/{quote(name, safe='')}/machines")
        if response.status_code == 404:
            raise NotFoundError(f"Fly app {name} no longer exists")
        raise_for_upstream(response, f"list machines for {name!r}")
        return [
            RuntimeInstance(id=m.get("id", ""), state=(m.get("state") or "").lower())
            for m in response.json() or []
        ]

    def get_runtime_logs(self, name: str) -> str:
        result = subprocess.run(
            [settings.flyctl_path, "logs", "--app", name, "--no-tail"],
            capture_output=True,
            text=True,
            env=self._flyctl_env(),
            timeout=settings.runtime_logs_timeout_sec,
        )
        if result.returncode != 0:
            raise UpstreamError(f"flyctl logs failed for {name!r}: {result.stderr.strip()}")
        return result.stdout

    # Builds and secrets

    def import_secrets(self, name: str, secrets: Dict[str, str]) -> None:
        if not secrets:
            return
        payload = "".join(f"{key}={value}\n" for key, value in secrets.items())
        try:
            result = subprocess.run(
                [settings.flyctl_path, "secrets", "import", "--app", name, "--stage"],
                input=payload,
                capture_output=True,
                text=True,
                env=self._flyctl_env(),
                timeout=settings.secrets_import_timeout_sec,
            )
        except subprocess.TimeoutExpired:
            raise UpstreamError(f"flyctl secrets import timed out for {name!r}")
        if result.returncode != 0:
            raise UpstreamError(f"flyctl secrets import failed for {name!r}: {result.stderr.strip()}")
        logger.info(f"Imported {len(secrets)} secret(s) into {name}")

    def start_build_and_deploy(
        self,
        name: str,
        source_dir: str,
        secrets: Dict[str, str],
        on_complete: BuildCompleteCallback,
        on_output: Optional[BuildOutputCallback] = None,
    ) -> None:
        cmd = [settings.flyctl_path, "deploy", source_dir, "--app", name, "--remote-only", "--yes"]
        for key, value in (secrets or {}).items():
            cmd.extend(["--build-secret", f"{key}={value}"])
        thread = threading.Thread(
            target=self._run_deploy,
            args=(name, cmd, source_dir, on_complete, on_output),
            name=f"flyctl-deploy-{name}",
            daemon=True,
        )
        thread.start()

    def _run_deploy(
        self,
        name: str,
        cmd: List[str],
        source_dir: str,
        on_complete: BuildCompleteCallback,
        on_output: Optional[BuildOutputCallback],
    ) -> None:
        output: List[str] = []
        exit_code = 1
        try:
            process = subprocess.Popen(
                cmd,
                cwd=source_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                env=self._flyctl_env(),
            )
            for line in process.stdout:
                output.append(line)
                if on_output:
                    on_output(line)
            exit_code = process.wait()
            logger.info(f"flyctl deploy for {name} exited with {exit_code}")
        except FileNotFoundError:
            output.append(f"flyctl not found at {settings.flyctl_path!r}\n")
        except Exception as e:
            logger.error(f"flyctl deploy for {name} crashed: {e}")
            output.append(f"{e}\n")
        finally:
            on_complete(exit_code, "".join(output))
