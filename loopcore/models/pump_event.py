"""Pump history event model.

Append-only record of everything the pump reported in its own history.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from loopcore.models.base import Base


class PumpEventType(str, enum.Enum):
    """Types of pump history events."""

    BOLUS = "bolus"  # Manual or meal bolus
    SMB = "smb"  # Automatic micro-bolus
    TEMP_BASAL = "temp_basal"  # Temporary basal rate started
    TEMP_BASAL_DURATION = "temp_basal_duration"  # Duration half of a temp basal
    SUSPEND = "suspend"  # Insulin delivery suspended
    RESUME = "resume"  # Insulin delivery resumed
    PRIME = "prime"  # Cannula / tubing prime
    REWIND = "rewind"  # Reservoir change
    ALARM = "alarm"  # Pump alarm recorded in history
    OTHER = "other"


class PumpEventRecord(Base):
    """Stores reconciled pump events.

    The driver-provided sync identifier is unique so a re-offered batch
    (after a failed append or an overlapping filter window) is deduplicated
    by the store instead of duplicated.
    """

    __tablename__ = "pump_events"

    __table_args__ = (
        Index("ix_pump_events_timestamp", "event_timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    sync_identifier: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
    )

    event_type: Mapped[PumpEventType] = mapped_column(
        Enum(
            PumpEventType,
            name="pumpeventtype",
            native_enum=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    event_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Insulin data
    units: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    units_per_hour: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    duration_minutes: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    is_automatic: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # When we received/stored this event
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Manager identifier of the driver that reported the event
    source: Mapped[str] = mapped_column(
        String(50),
        default="pump",
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<PumpEventRecord(type={self.event_type.value}, units={self.units}, "
            f"rate={self.units_per_hour}, timestamp={self.event_timestamp})>"
        )
