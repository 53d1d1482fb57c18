"""Pump sync state schema."""

from datetime import datetime

from pydantic import AwareDatetime, BaseModel, Field


class PumpSyncState(BaseModel):
    """Per-pump-session state owned by the device sync state machine.

    Persisted on every mutation and reloaded at startup. The two flags are
    transient: a poll or a dosing decision never survives a restart.
    """

    poll_in_flight: bool = False
    dosing_in_progress: bool = False
    last_heartbeat_time: AwareDatetime | None = None
    last_event_watermark: AwareDatetime | None = Field(
        default=None,
        description="Timestamp of the latest durably reconciled pump event",
    )
    active_manual_override: bool = False
    reservoir_level: float | None = None
    expires_at: AwareDatetime | None = None

    @classmethod
    def restored(cls, raw: dict | None) -> "PumpSyncState":
        """Rebuild state loaded from storage with the transient flags cleared."""
        if not raw:
            return cls()
        state = cls.model_validate(raw)
        return state.model_copy(update={"poll_in_flight": False, "dosing_in_progress": False})

    def time_to_expiry(self, now: datetime) -> float | None:
        """Seconds until the pump session expires (negative once expired)."""
        if self.expires_at is None:
            return None
        return (self.expires_at - now).total_seconds()
