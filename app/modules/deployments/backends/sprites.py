"""
Sprites REST API adapter (sandbox family).

A single platform token is held server-side; every user app is a namespaced Sprite under
that account. Sprites hibernate when idle and wake on API or HTTP traffic.
"""
import json
import logging
import time
from typing import Callable, List, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.core.exceptions import NotFoundError, ResourceAlreadyExistsError
from app.modules.deployments.backends.base import (
    SANDBOX,
    DeploymentBackend,
    ResourceInfo,
    RuntimeInstance,
    ServiceInfo,
)
from app.modules.deployments.backends.http import TRANSIENT_STATUS_CODES, RetryingClient, raise_for_upstream

logger = logging.getLogger(__name__)

APP_SERVICE = "app"

# Sprite lifecycle states mapped onto the runtime-instance vocabulary used by the reconciler
_SPRITE_STATES = {
    "running": "running",
    "warm": "started",
    "cold": "suspended",
    "stopped": "stopped",
}


def _sprite_path(name: str, suffix: str = "") -> str:
    return f"/v1/sprites/{quote(name, safe='')}{suffix}"


def _service_path(name: str, service: str, suffix: str = "") -> str:
    return _sprite_path(name, f"/services/{quote(service, safe='')}{suffix}")


def _to_resource_info(data: dict) -> ResourceInfo:
    return ResourceInfo(
        name=data.get("name", ""),
        url=data.get("url") or "",
        id=data.get("id"),
        status=data.get("status"),
    )


def parse_service_log_stream(text: str) -> str:
    """Collapse the NDJSON log stream into plain stdout/stderr text."""
    lines = []
    for raw in text.split("\n"):
        if not raw.strip():
            continue
        try:
            event = json.loads(raw)
        except ValueError:
            lines.append(raw)
            continue
        if isinstance(event, dict) and event.get("type") in ("stdout", "stderr"):
            data = event.get("data") or ""
            if data:
                lines.append(data)
    return "\n".join(lines)


class SpritesBackend(DeploymentBackend):
    family = SANDBOX

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        token = token or settings.sprites_api_token
        if not token:
            raise ValueError("SPRITES_API_TOKEN not configured")
        self.sleep = sleep
        self.http = RetryingClient(
            base_url or settings.sprites_api_base,
            token,
            max_attempts=settings.upstream_max_attempts,
            retry_delay=settings.upstream_retry_delay_sec,
            timeout=settings.upstream_timeout_sec,
            client=client,
            sleep=sleep,
        )

    def close(self) -> None:
        self.http.close()

    # Resource lifecycle

    def provision(self, name: str) -> ResourceInfo:
        response = self.http.request("POST", "/v1/sprites", json={"name": name, "wait_for_capacity": True})
        if response.status_code == 409 or (
            not response.is_success and "already exists" in response.text.lower()
        ):
            raise ResourceAlreadyExistsError(
                f"Sprite {name} already exists", upstream_status=response.status_code, body=response.text
            )
        raise_for_upstream(response, f"create sprite {name!r}")
        logger.info(f"Created sprite {name}")
        return _to_resource_info(response.json())

    def get(self, name: str) -> Optional[ResourceInfo]:
        response = self.http.request("GET", _sprite_path(name))
        if response.status_code == 404:
            return None
        raise_for_upstream(response, f"get sprite {name!r}")
        return _to_resource_info(response.json())

    def set_public(self, name: str) -> None:
        response = self.http.request("PUT", _sprite_path(name), json={"url_settings": {"auth": "public"}})
        raise_for_upstream(response, f"update sprite {name!r}")

    def wake(self, name: str) -> bool:
        """Listing exec sessions wakes a hibernating sprite; poll until it stops answering 502/503."""
        for attempt in range(1, settings.wake_max_attempts + 1):
            try:
                response = self.http.send_once("GET", _sprite_path(name, "/exec"), timeout=settings.wake_timeout_sec)
                logger.info(f"Wake {name} attempt {attempt}: {response.status_code}")
                if response.status_code not in TRANSIENT_STATUS_CODES:
                    return True
            except httpx.HTTPError as e:
                logger.info(f"Wake {name} attempt {attempt}: {e}")
            if attempt < settings.wake_max_attempts:
                self.sleep(settings.wake_interval_sec)
        logger.warning(f"Wake {name}: gave up after {settings.wake_max_attempts} attempts, proceeding anyway")
        return False

    # Filesystem

    def write_file(self, name: str, path: str, data: bytes, mode: Optional[str] = None) -> None:
        params = {"path": path, "mkdir": "true"}
        if mode:
            params["mode"] = mode
        response = self.http.request("PUT", _sprite_path(name, "/fs/write"), params=params, content=data)
        raise_for_upstream(response, f"write {path} on sprite {name!r}")

    def read_file(self, name: str, path: str) -> Optional[bytes]:
        response = self.http.request("GET", _sprite_path(name, "/fs/read"), params={"path": path})
        if response.status_code == 404:
            return None
        raise_for_upstream(response, f"read {path} on sprite {name!r}")
        return response.content

    # Services

    def put_service(self, name: str, service: str, cmd: str, args: List[str],
                    http_port: Optional[int] = None) -> None:
        config = {"cmd": cmd, "args": list(args)}
        if http_port is not None:
            config["http_port"] = http_port
        response = self.http.request("PUT", _service_path(name, service), json=config)
        raise_for_upstream(response, f"put service {service!r} on sprite {name!r}")

    def start_service(self, name: str, service: str) -> None:
        # Start answers with an NDJSON stream for the life of the service; only the status matters
        response = self.http.request("POST", _service_path(name, service, "/start"), stream=True)
        raise_for_upstream(response, f"start service {service!r} on sprite {name!r}")

    def stop_service(self, name: str, service: str) -> None:
        response = self.http.request("POST", _service_path(name, service, "/stop"))
        if response.status_code == 404:
            return
        raise_for_upstream(response, f"stop service {service!r} on sprite {name!r}")

    def delete_service(self, name: str, service: str) -> None:
        response = self.http.request("DELETE", _service_path(name, service))
        if response.status_code == 404:
            return
        raise_for_upstream(response, f"delete service {service!r} on sprite {name!r}")

    def get_service(self, name: str, service: str) -> Optional[ServiceInfo]:
        response = self.http.request("GET", _service_path(name, service))
        if response.status_code == 404:
            return None
        raise_for_upstream(response, f"get service {service!r} on sprite {name!r}")
        data = response.json()
        state = data.get("state") or {}
        return ServiceInfo(
            name=data.get("name", service),
            cmd=data.get("cmd", ""),
            args=data.get("args") or [],
            http_port=data.get("http_port"),
            state=state.get("status"),
        )

    def get_service_logs(self, name: str, service: str) -> str:
        response = self.http.request("GET", _service_path(name, service, "/logs"))
        raise_for_upstream(response, f"get logs for {service!r} on sprite {name!r}")
        return parse_service_log_stream(response.text)

    # Runtime

    def list_runtime_instances(self, name: str) -> List[RuntimeInstance]:
        sprite = self.get(name)
        if sprite is None:
            raise NotFoundError(f"Sprite {name} no longer exists")
        status = (sprite.status or "running").lower()
        return [RuntimeInstance(id=sprite.id or name, state=_SPRITE_STATES.get(status, status))]

    def get_runtime_logs(self, name: str) -> str:
        return self.get_service_logs(name, APP_SERVICE)
