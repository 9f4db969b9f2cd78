from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from app.core.dependencies import get_current_user
from app.core.exceptions import DeployError
from app.modules.deployments.orchestrator import DeploymentOrchestrator, decode_archive
from app.modules.deployments.schemas import (
    PrepareRequest, PrepareResponse, PushRequest, PushResponse, StatusResponse, LogsResponse
)
from typing import Dict, Iterator, Optional
import json
import logging
import queue
import threading

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deploy", tags=["deploy"])

# Blocking upstream calls: plain `def` handlers run in FastAPI's threadpool


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return request.app.state.orchestrator


@router.post("/prepare", response_model=PrepareResponse)
def prepare(
    body: PrepareRequest,
    user_data: Dict = Depends(get_current_user),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    """Create or retrieve the remote resource for the caller's app"""
    result = orchestrator.prepare(user_data["id"], body.app_name)
    return PrepareResponse(resource_name=result.resource_name, resource_url=result.resource_url)


@router.post("/push", response_model=PushResponse, status_code=202)
def push(
    body: PushRequest,
    user_data: Dict = Depends(get_current_user),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    """Upload app code + env vars and kick off a build. Poll /status for the outcome."""
    archive = decode_archive(body.archive)
    result = orchestrator.push(user_data["id"], body.app_name, archive, body.env_vars)
    return PushResponse(status=result["status"])


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _stream_push(orchestrator: DeploymentOrchestrator, owner_id: str, body: PushRequest) -> Iterator[str]:
    events: "queue.Queue[Optional[dict]]" = queue.Queue()

    def _run():
        try:
            archive = decode_archive(body.archive)
            orchestrator.push(
                owner_id,
                body.app_name,
                archive,
                body.env_vars,
                on_progress=lambda step, message: events.put({"type": "progress", "step": step, "message": message}),
            )
            status = orchestrator.get_status(owner_id, body.app_name)
            events.put({"type": "done", "status": status.status, "url": status.url})
        except DeployError as e:
            events.put({"type": "error", "message": e.message})
        except Exception as e:
            logger.exception(f"Streaming push failed: {e}")
            events.put({"type": "error", "message": str(e)})
        finally:
            events.put(None)

    threading.Thread(target=_run, name="push-stream", daemon=True).start()
    while True:
        event = events.get()
        if event is None:
            return
        yield _sse(event)


@router.post("/push/stream")
def push_stream(
    body: PushRequest,
    user_data: Dict = Depends(get_current_user),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    """Same as /push, reporting progress/done/error as server-sent events"""
    return StreamingResponse(
        _stream_push(orchestrator, user_data["id"], body),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.get("/status", response_model=StatusResponse, response_model_exclude_none=True)
def get_status(
    app_name: Optional[str] = Query(None, alias="appName"),
    user_data: Dict = Depends(get_current_user),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    """Reconciled deployment status: not_found, preparing, building, build_error, starting or running"""
    result = orchestrator.get_status(user_data["id"], app_name)
    return StatusResponse(status=result.status, url=result.url, error=result.error, message=result.message)


@router.get("/logs", response_model=LogsResponse)
def get_logs(
    app_name: Optional[str] = Query(None, alias="appName"),
    user_data: Dict = Depends(get_current_user),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
):
    """Build output from the in-memory tracker plus best-effort runtime logs"""
    return LogsResponse(**orchestrator.get_logs(user_data["id"], app_name))
