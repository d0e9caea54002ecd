"""Run routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from testbed.dependencies import get_orchestrator
from testbed.errors import RunInProgressError, RunNotFoundError, ValidationError, WorkspaceError
from testbed.schemas.run import RunCreate, RunDetail, RunList, RunLogs, RunSubmitted
from testbed.services.events import Subscription
from testbed.services.orchestrator import RunOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post("", response_model=RunSubmitted, status_code=202)
async def submit_run(
    data: RunCreate,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Submit a script for execution; returns the pending record immediately."""
    try:
        run = await orchestrator.submit_run(
            script_content=data.script_content,
            target_operating_system=data.operating_system,
            script_type=data.script_type,
            image_override=data.custom_image,
            script_id=data.script_id,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WorkspaceError as e:
        logger.error(f"Failed to submit run: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return RunSubmitted(message="Test started", run=run)


@router.get("", response_model=RunList)
def list_runs(orchestrator: RunOrchestrator = Depends(get_orchestrator)):
    """List all runs, newest first."""
    runs = orchestrator.list_runs()
    return RunList(count=len(runs), runs=runs)


@router.websocket("/events")
async def stream_all_events(
    websocket: WebSocket,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Push every run's events to the client."""
    await websocket.accept()
    await _forward(websocket, orchestrator.hub.subscribe())


@router.websocket("/{run_id}/events")
async def stream_run_events(
    websocket: WebSocket,
    run_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Push one run's events; the socket closes after its terminal event."""
    await websocket.accept()
    try:
        orchestrator.store.get(run_id)
    except RunNotFoundError:
        await websocket.close(code=4404)
        return
    await _forward(websocket, orchestrator.hub.subscribe(run_id))


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async with subscription:
        try:
            async for event in subscription:
                await websocket.send_text(event.model_dump_json())
        except WebSocketDisconnect:
            logger.info("Event subscriber disconnected")
            return
    await websocket.close()


@router.get("/{run_id}", response_model=RunDetail)
def get_run(
    run_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Get a run record and its verdict (null until completed)."""
    try:
        run, result = orchestrator.get_run(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")

    return RunDetail(run=run, result=result)


@router.get("/{run_id}/logs", response_model=RunLogs)
def get_run_logs(
    run_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Get captured output, preferring the durable entrypoint log."""
    try:
        logs = orchestrator.get_run_logs(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")

    return RunLogs(run_id=run_id, logs=logs)


@router.delete("/{run_id}")
def delete_run(
    run_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Purge a finished run and all its files."""
    try:
        orchestrator.purge_run(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Deleted run {run_id}")

    return {"message": "Run deleted"}
