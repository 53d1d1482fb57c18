# Database Models
from loopcore.models.alert_entry import AlertEntryRecord
from loopcore.models.base import Base, TimestampMixin, as_utc, utc_now
from loopcore.models.blob import StoredBlob
from loopcore.models.pump_event import PumpEventRecord, PumpEventType

__all__ = [
    "AlertEntryRecord",
    "Base",
    "PumpEventRecord",
    "PumpEventType",
    "StoredBlob",
    "TimestampMixin",
    "as_utc",
    "utc_now",
]
