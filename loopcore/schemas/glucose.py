"""Glucose schemas.

Raw analyte samples as delivered by a pump-integrated CGM and the normalized
readings the loop stores in its glucose history.
"""

from enum import StrEnum
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class TrendDirection(StrEnum):
    """Glucose trend arrow (values match the glucose-history format)."""

    TRIPLE_UP = "TripleUp"
    DOUBLE_UP = "DoubleUp"
    SINGLE_UP = "SingleUp"
    FORTY_FIVE_UP = "FortyFiveUp"
    FLAT = "Flat"
    FORTY_FIVE_DOWN = "FortyFiveDown"
    SINGLE_DOWN = "SingleDown"
    DOUBLE_DOWN = "DoubleDown"
    TRIPLE_DOWN = "TripleDown"
    NOT_COMPUTABLE = "NOT COMPUTABLE"

    @classmethod
    def from_delta(cls, delta: int) -> "TrendDirection":
        """Map a mg/dL change between consecutive samples to an arrow."""
        if delta < -17:
            return cls.TRIPLE_DOWN
        if delta < -12:
            return cls.DOUBLE_DOWN
        if delta < -7:
            return cls.SINGLE_DOWN
        if delta < -3:
            return cls.FORTY_FIVE_DOWN
        if delta < 3:
            return cls.FLAT
        if delta < 7:
            return cls.FORTY_FIVE_UP
        if delta < 12:
            return cls.SINGLE_UP
        if delta < 17:
            return cls.DOUBLE_UP
        return cls.TRIPLE_UP

    @property
    def is_rising(self) -> bool:
        return self in (
            TrendDirection.FORTY_FIVE_UP,
            TrendDirection.SINGLE_UP,
            TrendDirection.DOUBLE_UP,
            TrendDirection.TRIPLE_UP,
        )

    @property
    def is_falling(self) -> bool:
        return self in (
            TrendDirection.FORTY_FIVE_DOWN,
            TrendDirection.SINGLE_DOWN,
            TrendDirection.DOUBLE_DOWN,
            TrendDirection.TRIPLE_DOWN,
        )


class AnalyteSample(BaseModel):
    """One raw glucose sample from the pump's sensor link."""

    model_config = ConfigDict(frozen=True)

    sync_identifier: str
    value_mgdl: float = Field(..., gt=0)
    date: AwareDatetime


class GlucoseReading(BaseModel):
    """Normalized glucose reading."""

    model_config = ConfigDict(frozen=True)

    id: str
    value: int = Field(..., description="Glucose value in mg/dL")
    timestamp: AwareDatetime
    direction: TrendDirection | None = None

    def as_history_entry(self) -> dict[str, Any]:
        """Render as a glucose-history entry for the decision stages."""
        epoch_ms = int(self.timestamp.timestamp() * 1000)
        return {
            "_id": self.id,
            "sgv": self.value,
            "glucose": self.value,
            "direction": self.direction.value if self.direction else None,
            "date": epoch_ms,
            "dateString": self.timestamp.isoformat(),
            "unfiltered": self.value,
            "type": "sgv",
        }
