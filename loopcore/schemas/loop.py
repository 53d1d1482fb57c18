"""Loop status API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class LoopStatusResponse(BaseModel):
    """Current state of the pump sync state machine and the loop."""

    pump_name: str | None = None
    poll_in_flight: bool
    dosing_in_progress: bool
    cycle_running: bool
    last_heartbeat_time: datetime | None = None
    last_event_watermark: datetime | None = None
    last_cycle_at: datetime | None = None
    active_manual_override: bool
    reservoir_level: float | None = Field(
        default=None,
        description="Reservoir units, null when the pump reading is unknown",
    )
    expires_at: datetime | None = None
    last_error: str | None = None


class HeartbeatResponse(BaseModel):
    """Result of a manually triggered heartbeat."""

    poll_started: bool
    last_heartbeat_time: datetime | None = None
