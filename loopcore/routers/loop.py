"""Loop status router.

Read-mostly surface over the running loop: sync state, the latest
suggestion and a manual heartbeat trigger.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from loopcore.logging_config import get_logger
from loopcore.schemas.loop import HeartbeatResponse, LoopStatusResponse
from loopcore.services.device_sync import RESERVOIR_UNKNOWN
from loopcore.services.loop_service import LoopService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/loop", tags=["loop"])


def get_loop_service(request: Request) -> LoopService:
    """Return the loop service attached to the application."""
    service = getattr(request.app.state, "loop_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Loop service is not running",
        )
    return service


LoopServiceDep = Annotated[LoopService, Depends(get_loop_service)]


@router.get(
    "/status",
    response_model=LoopStatusResponse,
    responses={
        200: {"description": "Current loop status"},
        503: {"description": "Loop service not running"},
    },
)
async def get_loop_status(service: LoopServiceDep) -> LoopStatusResponse:
    """Get the pump sync state and the outcome of the last decision cycle."""
    loop_status = service.status()
    state = loop_status["sync_state"]
    reservoir = state.reservoir_level
    if reservoir == RESERVOIR_UNKNOWN:
        reservoir = None

    return LoopStatusResponse(
        pump_name=loop_status["pump_name"],
        poll_in_flight=state.poll_in_flight,
        dosing_in_progress=state.dosing_in_progress,
        cycle_running=loop_status["cycle_running"],
        last_heartbeat_time=state.last_heartbeat_time,
        last_event_watermark=state.last_event_watermark,
        last_cycle_at=loop_status["last_cycle_at"],
        active_manual_override=state.active_manual_override,
        reservoir_level=reservoir,
        expires_at=state.expires_at,
        last_error=loop_status["last_error"],
    )


@router.get(
    "/suggestion",
    responses={
        200: {"description": "Latest dosing suggestion"},
        404: {"description": "No suggestion produced yet"},
        503: {"description": "Loop service not running"},
    },
)
async def get_latest_suggestion(service: LoopServiceDep) -> dict[str, Any]:
    """Get the suggestion of the last successful decision cycle."""
    suggestion = await service.latest_suggestion()
    if suggestion is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No suggestion available",
        )
    return suggestion.to_artifact()


@router.post(
    "/heartbeat",
    response_model=HeartbeatResponse,
    responses={
        200: {"description": "Heartbeat processed"},
        503: {"description": "Loop service not running"},
    },
)
async def trigger_heartbeat(service: LoopServiceDep) -> HeartbeatResponse:
    """Trigger a heartbeat now.

    The heartbeat is skipped (poll_started=false) while a poll is in flight
    or a decision cycle is running.
    """
    poll_started = await service.heartbeat()
    logger.info("Manual heartbeat", poll_started=poll_started)
    return HeartbeatResponse(
        poll_started=poll_started,
        last_heartbeat_time=service.device_sync.snapshot().last_heartbeat_time,
    )
