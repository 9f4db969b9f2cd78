from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from app.modules.deployments.backends.base import (
    PLATFORM,
    SANDBOX,
    DeploymentBackend,
    ResourceInfo,
    RuntimeInstance,
    ServiceInfo,
)
from app.core.exceptions import ResourceAlreadyExistsError
from app.modules.deployments.build_registry import BuildRegistry
from app.modules.deployments.service import DeploymentService


class FakeResponse:
    def __init__(self, data: Any) -> None:
        self.data = data


class FakeQuery:
    """Just enough of the postgrest query builder for DeploymentService."""

    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.filters: list[tuple[str, Any]] = []
        self.op = "select"
        self.payload: Optional[dict] = None
        self.on_conflict: Optional[str] = None
        self.single = False

    def select(self, *_columns: str) -> "FakeQuery":
        self.op = "select"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append((column, value))
        return self

    def maybe_single(self) -> "FakeQuery":
        self.single = True
        return self

    def update(self, data: dict) -> "FakeQuery":
        self.op = "update"
        self.payload = data
        return self

    def upsert(self, data: dict, on_conflict: str = "") -> "FakeQuery":
        self.op = "upsert"
        self.payload = data
        self.on_conflict = on_conflict
        return self

    def _matches(self, row: dict) -> bool:
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self) -> Optional[FakeResponse]:
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "select":
            found = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self.single:
                return FakeResponse(found[0]) if found else None
            return FakeResponse(found)

        if self.db.fail_writes:
            raise RuntimeError("database unavailable")

        if self.op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(copy.deepcopy(row))
            self.db.writes.append((self.table, dict(self.payload)))
            return FakeResponse(updated)

        keys = [k for k in (self.on_conflict or "").split(",") if k]
        for row in rows:
            if keys and all(row.get(k) == self.payload.get(k) for k in keys):
                row.update(self.payload)
                return FakeResponse([copy.deepcopy(row)])
        self.db.next_id += 1
        now = datetime.now(timezone.utc).isoformat()
        row = {
            "id": self.db.next_id,
            "resource_name": "",
            "resource_url": "",
            "deploy_status": "preparing",
            "deploy_error": None,
            "created_at": now,
            "updated_at": now,
        }
        row.update(self.payload)
        rows.append(row)
        return FakeResponse([copy.deepcopy(row)])


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: Dict[str, List[dict]] = {}
        self.writes: list[tuple[str, dict]] = []
        self.next_id = 0
        self.fail_writes = False

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str = "deployments") -> List[dict]:
        return self.tables.get(name, [])


class FakeBackend(DeploymentBackend):
    """Records every call; platform builds wait until the test fires their callback."""

    def __init__(self, family: str = PLATFORM) -> None:
        self.family = family
        self.calls: list[tuple] = []
        self.resources: Dict[str, ResourceInfo] = {}
        self.files: Dict[tuple, bytes] = {}
        self.instances: List[RuntimeInstance] = []
        self.instances_error: Optional[Exception] = None
        self.already_exists = False
        self.secrets_error: Optional[Exception] = None
        self.pending_builds: Dict[str, Callable[[int, str], None]] = {}
        self.build_sources: Dict[str, dict] = {}
        self.service_logs = ""
        self.runtime_logs = ""

    def provision(self, name: str) -> ResourceInfo:
        self.calls.append(("provision", name))
        if self.already_exists or name in self.resources:
            raise ResourceAlreadyExistsError(f"{name} already exists", upstream_status=409)
        info = ResourceInfo(name=name, url=f"https://{name}.example.dev", id=f"id-{name}", status="running")
        self.resources[name] = info
        return info

    def get(self, name: str) -> Optional[ResourceInfo]:
        self.calls.append(("get", name))
        return self.resources.get(name)

    def set_public(self, name: str) -> None:
        self.calls.append(("set_public", name))

    def wake(self, name: str) -> bool:
        self.calls.append(("wake", name))
        return True

    def write_file(self, name: str, path: str, data: bytes, mode: Optional[str] = None) -> None:
        self.calls.append(("write_file", name, path, mode))
        self.files[(name, path)] = data

    def read_file(self, name: str, path: str) -> Optional[bytes]:
        return self.files.get((name, path))

    def list_runtime_instances(self, name: str) -> List[RuntimeInstance]:
        self.calls.append(("list_runtime_instances", name))
        if self.instances_error is not None:
            raise self.instances_error
        return list(self.instances)

    def put_service(self, name, service, cmd, args, http_port=None) -> None:
        self.calls.append(("put_service", name, service, cmd, list(args)))

    def start_service(self, name, service) -> None:
        self.calls.append(("start_service", name, service))

    def stop_service(self, name, service) -> None:
        self.calls.append(("stop_service", name, service))

    def delete_service(self, name, service) -> None:
        self.calls.append(("delete_service", name, service))

    def get_service(self, name, service) -> Optional[ServiceInfo]:
        return None

    def get_service_logs(self, name, service) -> str:
        return self.service_logs

    def start_build_and_deploy(self, name, source_dir, secrets, on_complete, on_output=None) -> None:
        import os

        self.calls.append(("start_build_and_deploy", name))
        self.build_sources[name] = {
            "files": sorted(os.listdir(source_dir)),
            "secrets": dict(secrets),
        }
        if on_output:
            on_output("#8 [deps 3/3] RUN npm ci\n")
        self.pending_builds[name] = on_complete

    def import_secrets(self, name, secrets) -> None:
        self.calls.append(("import_secrets", name, dict(secrets)))
        if self.secrets_error is not None:
            raise self.secrets_error

    def get_runtime_logs(self, name: str) -> str:
        return self.runtime_logs

    def complete_build(self, name: str, exit_code: int, output: str = "") -> None:
        self.pending_builds.pop(name)(exit_code, output)

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def deployment_service(supabase: FakeSupabase) -> DeploymentService:
    return DeploymentService(supabase)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(PLATFORM)


@pytest.fixture
def sandbox_backend() -> FakeBackend:
    return FakeBackend(SANDBOX)


@pytest.fixture
def registry() -> BuildRegistry:
    return BuildRegistry()


def make_tarball(files: Dict[str, bytes]) -> bytes:
    import io
    import tarfile

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()
