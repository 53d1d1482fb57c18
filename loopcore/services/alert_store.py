"""Device alert history storage.

Entries are identified by their issue date, which is what the acknowledgement
flow reports back.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loopcore.core.errors import StoreWriteFailed
from loopcore.database import get_session_maker
from loopcore.logging_config import get_logger
from loopcore.models.alert_entry import AlertEntryRecord
from loopcore.models.base import as_utc, utc_now
from loopcore.schemas.alert import AlertEntry

logger = get_logger(__name__)


class AlertStore(ABC):
    """Issued alerts and their acknowledgement outcome."""

    @abstractmethod
    async def store_alert(self, entry: AlertEntry) -> None:
        """Record a newly issued alert."""

    @abstractmethod
    async def delete_alert(self, alert_identifier: str) -> None:
        """Remove every entry for a retracted alert."""

    @abstractmethod
    async def ack_alert(
        self,
        issued_date: datetime,
        error_message: str | None = None,
        acknowledged_date: datetime | None = None,
    ) -> None:
        """Mark the entry issued at ``issued_date`` as acknowledged."""

    @abstractmethod
    async def record_ack_error(self, issued_date: datetime, error_message: str) -> None:
        """Keep the acknowledgement error without acknowledging the entry."""

    @abstractmethod
    async def list_alerts(self, unacknowledged_only: bool = False) -> list[AlertEntry]:
        """Return stored entries, oldest first."""


class InMemoryAlertStore(AlertStore):
    """Alert store kept in a dict (tests and simulators)."""

    def __init__(self):
        self._entries: dict[datetime, AlertEntry] = {}

    async def store_alert(self, entry: AlertEntry) -> None:
        self._entries[entry.issued_date] = entry

    async def delete_alert(self, alert_identifier: str) -> None:
        self._entries = {
            issued: entry
            for issued, entry in self._entries.items()
            if entry.alert_identifier != alert_identifier
        }

    async def ack_alert(
        self,
        issued_date: datetime,
        error_message: str | None = None,
        acknowledged_date: datetime | None = None,
    ) -> None:
        entry = self._entries.get(issued_date)
        if entry is None:
            return
        self._entries[issued_date] = entry.model_copy(
            update={
                "acknowledged_date": acknowledged_date or utc_now(),
                "error_message": error_message,
            }
        )

    async def record_ack_error(self, issued_date: datetime, error_message: str) -> None:
        entry = self._entries.get(issued_date)
        if entry is None:
            return
        self._entries[issued_date] = entry.model_copy(update={"error_message": error_message})

    async def list_alerts(self, unacknowledged_only: bool = False) -> list[AlertEntry]:
        entries = sorted(self._entries.values(), key=lambda entry: entry.issued_date)
        if unacknowledged_only:
            return [entry for entry in entries if not entry.is_acknowledged]
        return entries


class SqlAlertStore(AlertStore):
    """Alert store backed by the ``alert_entries`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session_maker()

    async def store_alert(self, entry: AlertEntry) -> None:
        record = AlertEntryRecord(
            alert_identifier=entry.alert_identifier,
            manager_identifier=entry.manager_identifier,
            issued_date=entry.issued_date.astimezone(UTC),
            interruption_level=entry.interruption_level,
            trigger_type=entry.trigger_type,
            trigger_interval=entry.trigger_interval,
            content_title=entry.content_title,
            content_body=entry.content_body,
            acknowledged_date=entry.acknowledged_date,
            error_message=entry.error_message,
        )
        try:
            async with self.session_maker() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to store alert",
                alert_identifier=entry.alert_identifier,
                error=str(e),
            )
            raise StoreWriteFailed(f"Failed to store alert {entry.alert_identifier}") from e

    async def delete_alert(self, alert_identifier: str) -> None:
        async with self.session_maker() as session:
            await session.execute(
                delete(AlertEntryRecord).where(
                    AlertEntryRecord.alert_identifier == alert_identifier
                )
            )
            await session.commit()

    async def ack_alert(
        self,
        issued_date: datetime,
        error_message: str | None = None,
        acknowledged_date: datetime | None = None,
    ) -> None:
        async with self.session_maker() as session:
            record = await self._get(session, issued_date)
            if record is None:
                return
            record.acknowledged_date = acknowledged_date or utc_now()
            record.error_message = error_message
            await session.commit()

    async def record_ack_error(self, issued_date: datetime, error_message: str) -> None:
        async with self.session_maker() as session:
            record = await self._get(session, issued_date)
            if record is None:
                return
            record.error_message = error_message
            await session.commit()

    async def list_alerts(self, unacknowledged_only: bool = False) -> list[AlertEntry]:
        async with self.session_maker() as session:
            query = select(AlertEntryRecord).order_by(AlertEntryRecord.issued_date)
            if unacknowledged_only:
                query = query.where(AlertEntryRecord.acknowledged_date.is_(None))
            result = await session.execute(query)
            records = result.scalars().all()

        return [
            AlertEntry(
                alert_identifier=record.alert_identifier,
                manager_identifier=record.manager_identifier,
                issued_date=as_utc(record.issued_date),
                interruption_level=record.interruption_level,
                trigger_type=record.trigger_type,
                trigger_interval=record.trigger_interval,
                content_title=record.content_title,
                content_body=record.content_body,
                acknowledged_date=as_utc(record.acknowledged_date),
                error_message=record.error_message,
            )
            for record in records
        ]

    @staticmethod
    async def _get(session: AsyncSession, issued_date: datetime) -> AlertEntryRecord | None:
        result = await session.execute(
            select(AlertEntryRecord).where(
                AlertEntryRecord.issued_date == issued_date.astimezone(UTC)
            )
        )
        return result.scalar_one_or_none()
