"""Device alert history model.

Alerts issued by the pump driver and the outcome of acknowledging them.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from loopcore.models.base import Base, TimestampMixin


class AlertEntryRecord(Base, TimestampMixin):
    """One issued device alert.

    ``issued_date`` identifies the entry for acknowledgement, matching how
    drivers report acknowledgements back.
    """

    __tablename__ = "alert_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    alert_identifier: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    manager_identifier: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    issued_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        unique=True,
    )

    interruption_level: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    trigger_type: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    trigger_interval: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )

    content_title: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    content_body: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    acknowledged_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Error reported by the driver while acknowledging, kept with the record
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<AlertEntryRecord(alert={self.alert_identifier}, "
            f"issued={self.issued_date}, acknowledged={self.acknowledged_date})>"
        )
