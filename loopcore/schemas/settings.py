"""Clinical settings schemas.

Validated forms of the settings that feed profile synthesis. Schedules are
normalized the same way for every setting: duplicate offsets collapse,
entries are sorted by offset and the first entry always starts at midnight.
"""

from typing import Any, Final, Self

from pydantic import BaseModel, Field, field_validator, model_validator

MINUTES_PER_DAY: Final[int] = 24 * 60
SCHEDULE_STEP_MINUTES: Final[int] = 30

MIN_CARB_RATIO: Final[float] = 1.0  # g/U
MAX_CARB_RATIO: Final[float] = 50.0  # g/U


def format_offset(minutes: int) -> str:
    """Render a minute-of-day offset as ``HH:MM:SS``."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}:00"


def _check_offset(minutes: int) -> int:
    if not 0 <= minutes < MINUTES_PER_DAY:
        msg = f"offset must be within the day (0-{MINUTES_PER_DAY - 1} minutes)"
        raise ValueError(msg)
    if minutes % SCHEDULE_STEP_MINUTES:
        msg = f"offset must be a multiple of {SCHEDULE_STEP_MINUTES} minutes"
        raise ValueError(msg)
    return minutes


def normalize_schedule(entries: list[Any], offset_attr: str = "offset") -> list[Any]:
    """Deduplicate by offset (last entry wins), sort, and anchor at midnight."""
    by_offset: dict[int, Any] = {}
    for entry in entries:
        by_offset[getattr(entry, offset_attr)] = entry
    ordered = [by_offset[k] for k in sorted(by_offset)]
    if ordered and getattr(ordered[0], offset_attr) != 0:
        ordered[0] = ordered[0].model_copy(update={offset_attr: 0, "start": format_offset(0)})
    return ordered


class CarbRatioEntry(BaseModel):
    """Carb ratio starting at a minute-of-day offset."""

    offset: int
    ratio: float = Field(..., ge=MIN_CARB_RATIO, le=MAX_CARB_RATIO)
    start: str = ""

    @field_validator("offset")
    @classmethod
    def validate_offset(cls, value: int) -> int:
        return _check_offset(value)

    @model_validator(mode="after")
    def fill_start(self) -> Self:
        self.start = format_offset(self.offset)
        return self


class CarbRatios(BaseModel):
    """Carb ratio schedule."""

    units: str = "grams"
    schedule: list[CarbRatioEntry] = Field(..., min_length=1)

    @field_validator("schedule")
    @classmethod
    def normalize(cls, value: list[CarbRatioEntry]) -> list[CarbRatioEntry]:
        return normalize_schedule(value)


class BasalProfileEntry(BaseModel):
    """Scheduled basal rate starting at a minute-of-day offset."""

    minutes: int
    rate: float = Field(..., ge=0, le=35)
    start: str = ""

    @field_validator("minutes")
    @classmethod
    def validate_minutes(cls, value: int) -> int:
        return _check_offset(value)

    @model_validator(mode="after")
    def fill_start(self) -> Self:
        self.start = format_offset(self.minutes)
        return self


def normalize_basal_profile(entries: list[BasalProfileEntry]) -> list[BasalProfileEntry]:
    """Basal profile is a bare list, normalized like every other schedule."""
    if not entries:
        raise ValueError("basal profile needs at least one entry")
    return normalize_schedule(entries, offset_attr="minutes")


class SensitivityEntry(BaseModel):
    """Insulin sensitivity factor starting at a minute-of-day offset."""

    offset: int
    sensitivity: float = Field(..., gt=0, le=400)
    start: str = ""

    @field_validator("offset")
    @classmethod
    def validate_offset(cls, value: int) -> int:
        return _check_offset(value)

    @model_validator(mode="after")
    def fill_start(self) -> Self:
        self.start = format_offset(self.offset)
        return self


class InsulinSensitivities(BaseModel):
    """Insulin sensitivity schedule."""

    units: str = "mg/dL"
    user_preferred_units: str = "mg/dL"
    sensitivities: list[SensitivityEntry] = Field(..., min_length=1)

    @field_validator("sensitivities")
    @classmethod
    def normalize(cls, value: list[SensitivityEntry]) -> list[SensitivityEntry]:
        return normalize_schedule(value)


class BGTargetEntry(BaseModel):
    """Glucose target range starting at a minute-of-day offset."""

    offset: int
    low: float = Field(..., ge=70, le=270)
    high: float = Field(..., ge=70, le=270)
    start: str = ""

    @field_validator("offset")
    @classmethod
    def validate_offset(cls, value: int) -> int:
        return _check_offset(value)

    @model_validator(mode="after")
    def check_range(self) -> Self:
        if self.low > self.high:
            raise ValueError("low target must not exceed high target")
        self.start = format_offset(self.offset)
        return self


class BGTargets(BaseModel):
    """Glucose target schedule."""

    units: str = "mg/dL"
    user_preferred_units: str = "mg/dL"
    targets: list[BGTargetEntry] = Field(..., min_length=1)

    @field_validator("targets")
    @classmethod
    def normalize(cls, value: list[BGTargetEntry]) -> list[BGTargetEntry]:
        return normalize_schedule(value)


class PumpSettings(BaseModel):
    """Pump-level delivery limits."""

    insulin_action_curve: float = Field(6.0, ge=5, le=10, description="DIA in hours")
    max_bolus: float = Field(10.0, gt=0, le=30)
    max_basal: float = Field(2.0, gt=0, le=35)
