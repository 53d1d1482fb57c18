"""Append-only pump history storage."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loopcore.core.errors import StoreWriteFailed
from loopcore.database import get_session_maker
from loopcore.logging_config import get_logger
from loopcore.models.base import as_utc, utc_now
from loopcore.models.pump_event import PumpEventRecord
from loopcore.schemas.pump import PumpEvent

logger = get_logger(__name__)


class EventStore(ABC):
    """Durable record of reconciled pump events.

    Appending an event whose sync identifier is already stored is a no-op.
    """

    @abstractmethod
    async def append_events(self, events: Sequence[PumpEvent], source: str = "pump") -> int:
        """Append a batch atomically and return how many events were new.

        Raises:
            StoreWriteFailed: Nothing from the batch was stored
        """

    @abstractmethod
    async def query_events(self, since: datetime) -> list[PumpEvent]:
        """Return events at or after ``since``, oldest first."""


class InMemoryEventStore(EventStore):
    """Event store kept in a dict (tests and simulators)."""

    def __init__(self):
        self._events: dict[str, PumpEvent] = {}

    async def append_events(self, events: Sequence[PumpEvent], source: str = "pump") -> int:
        new = [event for event in events if event.id not in self._events]
        for event in new:
            self._events[event.id] = event
        return len(new)

    async def query_events(self, since: datetime) -> list[PumpEvent]:
        return sorted(
            (event for event in self._events.values() if event.timestamp >= since),
            key=lambda event: event.timestamp,
        )


class SqlEventStore(EventStore):
    """Event store backed by the ``pump_events`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session_maker()

    async def append_events(self, events: Sequence[PumpEvent], source: str = "pump") -> int:
        if not events:
            return 0

        now = utc_now()
        rows = [
            {
                "sync_identifier": event.id,
                "event_type": event.type,
                "event_timestamp": event.timestamp.astimezone(UTC),
                "units": event.units,
                "units_per_hour": event.units_per_hour,
                "duration_minutes": event.duration_minutes,
                "is_automatic": event.is_automatic,
                "received_at": now,
                "source": source,
            }
            for event in events
        ]

        try:
            async with self.session_maker() as session:
                dialect = session.get_bind().dialect.name
                insert = postgresql.insert if dialect == "postgresql" else sqlite.insert

                # INSERT ... ON CONFLICT DO NOTHING keeps re-offered events single
                stored = 0
                for row in rows:
                    stmt = (
                        insert(PumpEventRecord)
                        .values(**row)
                        .on_conflict_do_nothing(index_elements=["sync_identifier"])
                    )
                    result = await session.execute(stmt)
                    if result.rowcount > 0:
                        stored += 1
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to append pump events",
                event_count=len(rows),
                error=str(e),
            )
            raise StoreWriteFailed(f"Failed to append {len(rows)} pump events") from e

        logger.debug("Pump events appended", offered=len(rows), stored=stored)
        return stored

    async def query_events(self, since: datetime) -> list[PumpEvent]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(PumpEventRecord)
                .where(PumpEventRecord.event_timestamp >= since.astimezone(UTC))
                .order_by(PumpEventRecord.event_timestamp)
            )
            records = result.scalars().all()

        return [
            PumpEvent(
                id=record.sync_identifier,
                type=record.event_type,
                timestamp=as_utc(record.event_timestamp),
                units=record.units,
                units_per_hour=record.units_per_hour,
                duration_minutes=record.duration_minutes,
                is_automatic=record.is_automatic,
            )
            for record in records
        ]
