"""Pump data schemas.

Pydantic schemas for what pump drivers report: history events and status
snapshots. Events are converted to the pump-history artifact format read by
the decision stages.
"""

from datetime import datetime
from enum import StrEnum, auto
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from loopcore.models.pump_event import PumpEventType


class BolusState(StrEnum):
    """Bolus delivery state reported by the driver."""

    none = auto()
    initiating = auto()
    in_progress = auto()
    canceling = auto()


class BasalDeliveryState(StrEnum):
    """Basal delivery state reported by the driver."""

    active = auto()
    initiating_temp_basal = auto()
    temp_basal = auto()
    canceling_temp_basal = auto()
    suspending = auto()
    suspended = auto()
    resuming = auto()


class InsulinType(StrEnum):
    """Insulin formulation loaded in the pump."""

    novolog = auto()
    humalog = auto()
    apidra = auto()
    fiasp = auto()
    lyumjev = auto()
    afrezza = auto()


# Insulin type -> insulin curve name understood by the profile stage
INSULIN_CURVE_BY_TYPE: dict[InsulinType, str] = {
    InsulinType.novolog: "rapid-acting",
    InsulinType.humalog: "rapid-acting",
    InsulinType.apidra: "rapid-acting",
    InsulinType.fiasp: "ultra-rapid",
    InsulinType.lyumjev: "ultra-rapid",
    InsulinType.afrezza: "ultra-rapid",
}


class PumpEvent(BaseModel):
    """One immutable event from the pump's own history."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(..., min_length=1, description="Driver sync identifier")
    type: PumpEventType
    timestamp: AwareDatetime
    units: float | None = Field(None, ge=0, description="Delivered insulin (U)")
    units_per_hour: float | None = Field(None, ge=0, description="Temp basal rate (U/h)")
    duration_minutes: int | None = Field(None, ge=0)
    is_automatic: bool = False

    def as_history_entries(self) -> list[dict[str, Any]]:
        """Render the event as pump-history entries for the decision stages.

        A temp basal expands into a rate entry and a duration entry.
        """
        ts = self.timestamp.isoformat()
        match self.type:
            case PumpEventType.TEMP_BASAL:
                return [
                    {
                        "_type": "TempBasal",
                        "id": self.id,
                        "timestamp": ts,
                        "temp": "absolute",
                        "rate": self.units_per_hour or 0.0,
                    },
                    {
                        "_type": "TempBasalDuration",
                        "id": f"_{self.id}",
                        "timestamp": ts,
                        "duration (min)": self.duration_minutes or 0,
                    },
                ]
            case PumpEventType.BOLUS | PumpEventType.SMB:
                return [
                    {
                        "_type": "Bolus",
                        "id": self.id,
                        "timestamp": ts,
                        "amount": self.units or 0.0,
                        "duration": self.duration_minutes or 0,
                        "isSMB": self.type == PumpEventType.SMB,
                        "isExternal": False,
                    }
                ]
            case PumpEventType.SUSPEND:
                return [{"_type": "PumpSuspend", "id": self.id, "timestamp": ts}]
            case PumpEventType.RESUME:
                return [{"_type": "PumpResume", "id": self.id, "timestamp": ts}]
            case PumpEventType.PRIME:
                return [
                    {"_type": "Prime", "id": self.id, "timestamp": ts, "amount": self.units or 0.0}
                ]
            case PumpEventType.REWIND:
                return [{"_type": "Rewind", "id": self.id, "timestamp": ts}]
            case _:
                # Alarms and unknown records carry no dosing information
                return []


class UnfinalizedTempBasal(BaseModel):
    """Temp basal the pump is currently running (not yet written to history)."""

    model_config = ConfigDict(frozen=True)

    units_per_hour: float = Field(..., ge=0)
    start_date: AwareDatetime
    end_date: AwareDatetime
    automatic: bool = True

    def is_finished(self, now: datetime) -> bool:
        return now >= self.end_date

    def as_current_temp(self, now: datetime) -> dict[str, Any]:
        """Current temp-basal artifact: remaining duration and rate."""
        remaining = max(0, int((self.end_date - now).total_seconds() // 60))
        return {"duration": remaining, "rate": self.units_per_hour, "temp": "absolute"}


class PumpStatus(BaseModel):
    """Status snapshot pushed by the driver whenever something changes."""

    model_config = ConfigDict(frozen=True)

    timestamp: AwareDatetime
    bolus_state: BolusState = BolusState.none
    basal_delivery_state: BasalDeliveryState = BasalDeliveryState.active
    insulin_type: InsulinType | None = None
    reservoir_level: float | None = None
    battery_percent: int | None = Field(None, ge=0, le=100)
    activated_at: AwareDatetime | None = None
    expires_at: AwareDatetime | None = None
    unfinalized_temp_basal: UnfinalizedTempBasal | None = None

    def current_temp(self) -> dict[str, Any]:
        """Temp-basal artifact for the decision stage (neutral when none runs)."""
        temp = self.unfinalized_temp_basal
        if temp is None or temp.is_finished(self.timestamp):
            return {"duration": 0, "rate": 0.0, "temp": "absolute"}
        return temp.as_current_temp(self.timestamp)
