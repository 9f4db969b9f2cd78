import base64

import httpx
import pytest

from app.core.exceptions import ConflictError, NotFoundError, UpstreamError, ValidationError
from app.modules.deployments.artifacts import ARCHIVE_PATH
from app.modules.deployments.backends import RuntimeInstance
from app.modules.deployments.build_runner import BuildRunner
from app.modules.deployments.orchestrator import DeploymentOrchestrator, decode_archive
from app.modules.deployments.status import StatusReconciler
from tests.conftest import make_tarball


@pytest.fixture
def orchestrator(backend, registry, deployment_service):
    probe = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    return DeploymentOrchestrator(
        backend,
        deployment_service,
        registry=registry,
        build_runner=BuildRunner(backend, registry, deployment_service),
        reconciler=StatusReconciler(
            backend, registry, deployment_service, probe_client=probe, background=lambda *a: None
        ),
    )


def test_decode_archive():
    assert decode_archive(base64.b64encode(b"tarball").decode()) == b"tarball"

    with pytest.raises(ValidationError):
        decode_archive("")
    with pytest.raises(ValidationError):
        decode_archive("not base64!!")


def test_prepare_push_build_run(orchestrator, backend):
    archive = make_tarball({"package.json": b"{}", "server.js": b""})

    prepared = orchestrator.prepare("user-1", "acme")
    assert orchestrator.get_status("user-1", "acme").status == "preparing"

    progress = []
    result = orchestrator.push(
        "user-1", "acme", archive, {"PORT": "3000"}, on_progress=lambda step, msg: progress.append(step)
    )
    assert result == {"status": "building"}
    assert progress == ["upload", "build"]

    status = orchestrator.get_status("user-1", "acme")
    assert status.status == "building"
    assert status.message == "Installing dependencies..."

    backend.complete_build(prepared.resource_name, 0, "release v1 created")
    assert orchestrator.get_status("user-1", "acme").status == "starting"

    backend.instances = [RuntimeInstance(id="m1", state="started")]
    status = orchestrator.get_status("user-1", "acme")
    assert status.status == "running"
    assert status.url == prepared.resource_url


def test_push_while_building_conflicts_without_uploading(orchestrator, backend):
    orchestrator.prepare("user-1", "acme")
    orchestrator.push("user-1", "acme", make_tarball({"a.js": b""}))
    writes_before = backend.call_names().count("write_file")

    with pytest.raises(ConflictError):
        orchestrator.push("user-1", "acme", make_tarball({"b.js": b""}))

    assert backend.call_names().count("write_file") == writes_before


def test_push_after_build_finishes_is_accepted(orchestrator, backend):
    prepared = orchestrator.prepare("user-1", "acme")
    orchestrator.push("user-1", "acme", make_tarball({"a.js": b""}))
    backend.complete_build(prepared.resource_name, 1, "boom")
    assert orchestrator.get_status("user-1", "acme").status == "build_error"

    assert orchestrator.push("user-1", "acme", make_tarball({"a.js": b""})) == {"status": "building"}


def test_push_before_prepare_is_not_found(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.push("user-1", "acme", b"tarball")


def test_push_requires_app_name(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.push("user-1", "", b"tarball")


def test_status_requires_app_name(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.get_status("user-1", None)


def test_logs_include_build_output_and_runtime_logs(orchestrator, backend):
    prepared = orchestrator.prepare("user-1", "acme")
    orchestrator.push("user-1", "acme", make_tarball({"a.js": b""}))
    backend.runtime_logs = "listening on 3000"

    logs = orchestrator.get_logs("user-1", "acme")

    assert logs == {"build_log": "#8 [deps 3/3] RUN npm ci\n", "service_logs": "listening on 3000"}
    backend.complete_build(prepared.resource_name, 0)


def test_logs_before_any_build(orchestrator):
    orchestrator.prepare("user-1", "acme")

    assert orchestrator.get_logs("user-1", "acme") == {"build_log": None, "service_logs": None}


def test_logs_for_unknown_app(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.get_logs("user-1", "acme")


def test_push_during_another_upload_is_refused(orchestrator, backend, registry):
    prepared = orchestrator.prepare("user-1", "acme")
    first = make_tarball({"first.js": b""})
    second = make_tarball({"second.js": b""})
    original_write = backend.write_file
    nested = []

    def write_file(name, path, data, mode=None):
        if path == ARCHIVE_PATH and data == first:
            with pytest.raises(ConflictError):
                orchestrator.push("user-1", "acme", second)
            nested.append(path)
        original_write(name, path, data, mode)

    backend.write_file = write_file
    assert orchestrator.push("user-1", "acme", first) == {"status": "building"}

    assert nested == [ARCHIVE_PATH]
    assert backend.files[(prepared.resource_name, ARCHIVE_PATH)] == first
    assert backend.build_sources[prepared.resource_name]["files"] == ["first.js"]
    assert backend.call_names().count("start_build_and_deploy") == 1


def test_failed_upload_releases_the_resource(orchestrator, backend, registry, supabase):
    prepared = orchestrator.prepare("user-1", "acme")
    original_write = backend.write_file

    def failing_write(name, path, data, mode=None):
        raise UpstreamError("Failed to write /tmp/app.tar.gz (500): disk full")

    backend.write_file = failing_write
    with pytest.raises(UpstreamError):
        orchestrator.push("user-1", "acme", make_tarball({"a.js": b""}))

    assert not registry.is_building(prepared.resource_name)
    assert supabase.rows()[0]["deploy_status"] == "preparing"
    assert orchestrator.get_status("user-1", "acme").status == "preparing"

    backend.write_file = original_write
    assert orchestrator.push("user-1", "acme", make_tarball({"a.js": b""})) == {"status": "building"}
