"""Dosing suggestion schema.

The terminal artifact of a decision cycle. Field aliases follow the JSON the
decision stage emits; unknown fields (predictions, diagnostics) are kept.
"""

from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class Suggestion(BaseModel):
    """Timestamped basal/bolus recommendation.

    Frozen: a suggestion is never edited, the next cycle writes a new one.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    timestamp: AwareDatetime | None = Field(
        default=None,
        description="Clock of the decision cycle that produced the suggestion",
    )
    reason: str = ""
    rate: float | None = Field(default=None, ge=0, description="Temp basal rate (U/h)")
    duration: int | None = Field(default=None, ge=0, description="Temp basal minutes")
    units: float | None = Field(default=None, ge=0, description="Micro-bolus (U)")
    bg: float | None = None
    eventual_bg: float | None = Field(default=None, alias="eventualBG")
    iob: float | None = Field(default=None, alias="IOB")
    cob: float | None = Field(default=None, alias="COB")
    insulin_req: float | None = Field(default=None, alias="insulinReq")
    sensitivity_ratio: float | None = Field(default=None, alias="sensitivityRatio")
    deliver_at: AwareDatetime | None = Field(default=None, alias="deliverAt")

    @property
    def recommends_temp_basal(self) -> bool:
        return self.rate is not None and self.duration is not None

    @property
    def recommends_bolus(self) -> bool:
        return bool(self.units)

    def to_artifact(self) -> dict[str, Any]:
        """JSON form persisted under the suggestion key."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
