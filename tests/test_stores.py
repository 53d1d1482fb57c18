"""Tests for the SQL-backed stores (SQLite)."""

from datetime import timedelta

import pytest

from loopcore.core.errors import StoreWriteFailed
from loopcore.models.pump_event import PumpEventType
from loopcore.schemas.alert import AlertEntry
from loopcore.schemas.pump import PumpEvent
from loopcore.services.alert_store import SqlAlertStore
from loopcore.services.blob_store import InMemoryBlobStore, SqlBlobStore
from loopcore.services.event_store import SqlEventStore


def _event(now, event_id: str, minutes_ago: int, **kwargs) -> PumpEvent:
    return PumpEvent(
        id=event_id,
        type=kwargs.pop("type", PumpEventType.BOLUS),
        timestamp=now - timedelta(minutes=minutes_ago),
        **kwargs,
    )


def _alert(now, identifier: str, minutes_ago: int = 0) -> AlertEntry:
    return AlertEntry(
        alert_identifier=identifier,
        manager_identifier="simulator",
        issued_date=now - timedelta(minutes=minutes_ago),
        content_title=identifier,
    )


class TestBlobStore:
    """Tests for SqlBlobStore."""

    @pytest.mark.asyncio
    async def test_missing_key_returns_default(self, session_maker):
        store = SqlBlobStore(session_maker)

        assert await store.retrieve("pumphistory", []) == []
        assert await store.retrieve_raw("pumphistory") is None

    @pytest.mark.asyncio
    async def test_save_and_overwrite(self, session_maker):
        store = SqlBlobStore(session_maker)

        await store.save("profile", {"dia": 6})
        await store.save("profile", {"dia": 5, "max_iob": 2})

        assert await store.retrieve("profile") == {"dia": 5, "max_iob": 2}

    @pytest.mark.asyncio
    async def test_values_stored_canonically(self, session_maker):
        store = SqlBlobStore(session_maker)

        await store.save("meal", {"mealCOB": 10, "carbs": 40})

        assert await store.retrieve_raw("meal") == '{"carbs":40,"mealCOB":10}'

    @pytest.mark.asyncio
    async def test_null_value_is_stored(self, session_maker):
        store = SqlBlobStore(session_maker)

        await store.save("reservoir", None)

        assert await store.retrieve_raw("reservoir") == "null"
        assert await store.retrieve("reservoir", 10) is None

    @pytest.mark.asyncio
    async def test_delete(self, session_maker):
        store = SqlBlobStore(session_maker)
        await store.save("pump_manager_state", {"manager_identifier": "simulator"})

        await store.delete("pump_manager_state")
        await store.delete("pump_manager_state")

        assert await store.retrieve_raw("pump_manager_state") is None

    @pytest.mark.asyncio
    async def test_unserializable_value_fails(self, session_maker):
        with pytest.raises(StoreWriteFailed):
            await SqlBlobStore(session_maker).save("clock", object())


class TestInMemoryBlobStore:
    """Tests for InMemoryBlobStore."""

    @pytest.mark.asyncio
    async def test_initial_values(self):
        store = InMemoryBlobStore({"glucose": [{"sgv": 100}]})

        assert await store.retrieve("glucose") == [{"sgv": 100}]
        assert store.keys() == ["glucose"]

    @pytest.mark.asyncio
    async def test_returned_values_are_copies(self):
        store = InMemoryBlobStore()
        await store.save("iob", [{"iob": 1.0}])

        value = await store.retrieve("iob")
        value.append({"iob": 2.0})

        assert await store.retrieve("iob") == [{"iob": 1.0}]


class TestEventStore:
    """Tests for SqlEventStore."""

    @pytest.mark.asyncio
    async def test_append_and_query(self, session_maker, now):
        store = SqlEventStore(session_maker)
        events = [
            _event(now, "bolus-1", 30, units=2.0),
            _event(
                now,
                "temp-1",
                20,
                type=PumpEventType.TEMP_BASAL,
                units_per_hour=1.2,
                duration_minutes=30,
                is_automatic=True,
            ),
        ]

        assert await store.append_events(events, source="simulator") == 2

        stored = await store.query_events(now - timedelta(hours=1))
        assert stored == events
        assert stored[0].timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_sync_identifier_ignored(self, session_maker, now):
        store = SqlEventStore(session_maker)
        await store.append_events([_event(now, "bolus-1", 30, units=2.0)])

        stored = await store.append_events(
            [_event(now, "bolus-1", 30, units=2.0), _event(now, "bolus-2", 10, units=1.0)]
        )

        assert stored == 1
        assert len(await store.query_events(now - timedelta(hours=1))) == 2

    @pytest.mark.asyncio
    async def test_query_since_is_inclusive_and_ordered(self, session_maker, now):
        store = SqlEventStore(session_maker)
        await store.append_events(
            [
                _event(now, "late", 5),
                _event(now, "early", 90),
                _event(now, "edge", 60),
            ]
        )

        stored = await store.query_events(now - timedelta(minutes=60))

        assert [event.id for event in stored] == ["edge", "late"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, session_maker):
        assert await SqlEventStore(session_maker).append_events([]) == 0


class TestAlertStore:
    """Tests for SqlAlertStore."""

    @pytest.mark.asyncio
    async def test_store_and_list(self, session_maker, now):
        store = SqlAlertStore(session_maker)
        await store.store_alert(_alert(now, "occlusion", 0))
        await store.store_alert(_alert(now, "low-reservoir", 10))

        entries = await store.list_alerts()

        assert [entry.alert_identifier for entry in entries] == ["low-reservoir", "occlusion"]
        assert entries[1].issued_date == now

    @pytest.mark.asyncio
    async def test_ack_by_issued_date(self, session_maker, now):
        store = SqlAlertStore(session_maker)
        await store.store_alert(_alert(now, "occlusion"))

        await store.ack_alert(now, acknowledged_date=now + timedelta(seconds=5))

        [entry] = await store.list_alerts()
        assert entry.acknowledged_date == now + timedelta(seconds=5)
        assert await store.list_alerts(unacknowledged_only=True) == []

    @pytest.mark.asyncio
    async def test_record_ack_error_keeps_pending(self, session_maker, now):
        store = SqlAlertStore(session_maker)
        await store.store_alert(_alert(now, "occlusion"))

        await store.record_ack_error(now, "pump busy")

        [entry] = await store.list_alerts(unacknowledged_only=True)
        assert entry.error_message == "pump busy"

    @pytest.mark.asyncio
    async def test_delete_alert(self, session_maker, now):
        store = SqlAlertStore(session_maker)
        await store.store_alert(_alert(now, "occlusion", 0))
        await store.store_alert(_alert(now, "occlusion", 5))
        await store.store_alert(_alert(now, "low-reservoir", 10))

        await store.delete_alert("occlusion")

        assert [e.alert_identifier for e in await store.list_alerts()] == ["low-reservoir"]

    @pytest.mark.asyncio
    async def test_duplicate_issued_date_fails(self, session_maker, now):
        store = SqlAlertStore(session_maker)
        await store.store_alert(_alert(now, "occlusion"))

        with pytest.raises(StoreWriteFailed):
            await store.store_alert(_alert(now, "low-reservoir"))

    @pytest.mark.asyncio
    async def test_ack_unknown_entry_is_noop(self, session_maker, now):
        store = SqlAlertStore(session_maker)

        await store.ack_alert(now)

        assert await store.list_alerts() == []
