"""Device alert schemas."""

from pydantic import AwareDatetime, BaseModel, ConfigDict


class DeviceAlert(BaseModel):
    """An alert raised by a pump driver."""

    model_config = ConfigDict(frozen=True)

    alert_identifier: str
    manager_identifier: str
    interruption_level: str | None = None
    trigger_type: str | None = None
    trigger_interval: float | None = None
    content_title: str | None = None
    content_body: str | None = None


class AlertEntry(BaseModel):
    """Stored alert and its acknowledgement record."""

    model_config = ConfigDict(from_attributes=True)

    alert_identifier: str
    manager_identifier: str
    issued_date: AwareDatetime
    interruption_level: str | None = None
    trigger_type: str | None = None
    trigger_interval: float | None = None
    content_title: str | None = None
    content_body: str | None = None
    acknowledged_date: AwareDatetime | None = None
    error_message: str | None = None

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_date is not None
