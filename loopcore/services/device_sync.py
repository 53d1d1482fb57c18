"""Device sync state machine.

Keeps the pump's operational state synchronized and safe:

- at most one pump poll is in flight, and no poll starts while a dosing
  decision is being computed;
- every status push is translated into safety signals (manual override,
  reservoir, time to expiry, bolus in progress);
- pump history events are reconciled exactly once into the event store,
  behind a watermark that only advances after a successful append;
- device alerts are stored and acknowledged on the pump.

All state lives in ``PumpSyncState`` and is mutated only by jobs on the
manager's serial queue. Driver I/O (polls, alert acknowledgements) runs in
separate tasks whose completion re-enters the queue.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Final

from loopcore.config import settings
from loopcore.core.errors import LoopCoreError, PumpDriverError, StoreWriteFailed
from loopcore.core.pipeline.keys import ArtifactKey, SettingsKey, StateKey
from loopcore.core.serial_queue import SerialQueue
from loopcore.core.signals import Signal, ValueSignal
from loopcore.logging_config import correlation_scope, get_logger
from loopcore.models.pump_event import PumpEventType
from loopcore.schemas.alert import AlertEntry, DeviceAlert
from loopcore.schemas.pump import (
    INSULIN_CURVE_BY_TYPE,
    BolusState,
    InsulinType,
    PumpEvent,
    PumpStatus,
)
from loopcore.schemas.sync_state import PumpSyncState
from loopcore.services.alert_store import AlertStore
from loopcore.services.blob_store import BlobStore
from loopcore.services.event_store import EventStore
from loopcore.services.pump_driver import (
    PumpDriver,
    driver_from_raw_value,
    get_driver_class,
    raw_value_for,
)

logger = get_logger(__name__)

# Reported reservoir level when the pump's reading is missing or implausible
RESERVOIR_UNKNOWN: Final[float] = float(0xDEADBEEF)

# Overlap with already reconciled history when asking the pump for new events
EVENT_FILTER_OVERLAP: Final[timedelta] = timedelta(minutes=15)
# Look-back when nothing has been reconciled yet
EVENT_FILTER_COLD_START: Final[timedelta] = timedelta(hours=2)

DEFAULT_BOLUS_INCREMENT: Final[float] = 0.1
COARSENED_BOLUS_VOLUME: Final[float] = 0.025


def compute_start_date(watermark: datetime | None, now: datetime) -> datetime:
    """Earliest timestamp of pump events worth asking the pump for."""
    if watermark is None:
        return now - EVENT_FILTER_COLD_START
    return watermark - EVENT_FILTER_OVERLAP


def bolus_increment_for(volumes: Sequence[float], current: float | None) -> float:
    """Bolus increment preference for a pump supporting ``volumes``."""
    increment = volumes[0] if volumes else (current or DEFAULT_BOLUS_INCREMENT)
    if abs(increment - COARSENED_BOLUS_VOLUME) < 1e-9:
        return DEFAULT_BOLUS_INCREMENT
    return increment


class DeviceSyncManager:
    """Heartbeat-driven pump synchronization for one pump."""

    def __init__(
        self,
        blob_store: BlobStore,
        event_store: EventStore,
        alert_store: AlertStore,
        queue: SerialQueue | None = None,
        poll_timeout: float | None = None,
        reservoir_ceiling: float | None = None,
        history_hours: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.blob_store = blob_store
        self.event_store = event_store
        self.alert_store = alert_store
        self.queue = queue or SerialQueue("device")
        self.poll_timeout = (
            poll_timeout if poll_timeout is not None else settings.pump_poll_timeout_seconds
        )
        self.reservoir_ceiling = (
            reservoir_ceiling
            if reservoir_ceiling is not None
            else settings.reservoir_plausibility_ceiling
        )
        self.history_hours = (
            history_hours if history_hours is not None else settings.pump_history_hours
        )
        self._clock = clock or (lambda: datetime.now(UTC))

        self.state = PumpSyncState()
        self.driver: PumpDriver | None = None
        self._insulin_type: InsulinType | None = None
        self._poll_id = 0
        self._poll_task: asyncio.Task | None = None
        self._acknowledging: set[datetime] = set()

        # Outputs
        self.recommends_loop: Signal[datetime] = Signal("recommends_loop")
        self.errors: Signal[LoopCoreError] = Signal("errors")
        self.status: ValueSignal[PumpStatus] = ValueSignal("status")
        self.bolus_in_progress: ValueSignal[bool] = ValueSignal("bolus_in_progress", False)
        self.manual_override: ValueSignal[bool] = ValueSignal("manual_override", False)
        self.reservoir: ValueSignal[float] = ValueSignal("reservoir")
        self.expires_at: ValueSignal[datetime | None] = ValueSignal("expires_at", None)
        self.insulin_type: ValueSignal[InsulinType] = ValueSignal("insulin_type")
        self.pump_name: ValueSignal[str | None] = ValueSignal("pump_name", None)
        self.deactivated: Signal[None] = Signal("deactivated")
        self.pump_notifications: Signal[AlertEntry] = Signal("pump_notifications")
        self.alerts_updated: Signal[list[AlertEntry]] = Signal("alerts_updated")

        self.alerts_updated.subscribe(self.alerts_did_update)

    # Lifecycle

    async def load_state(self) -> PumpSyncState:
        """Reload the persisted sync state (flags cleared) and republish it."""
        return await self.queue.run(self._load_state)

    async def restore_pump_driver(self) -> PumpDriver | None:
        """Recreate the driver from its persisted raw state.

        Falls back to the configured default driver when nothing usable is
        persisted.
        """
        raw = await self.blob_store.retrieve(StateKey.PUMP_MANAGER_STATE, None)
        driver = driver_from_raw_value(raw)
        if driver is None and settings.pump_driver:
            driver_class = get_driver_class(settings.pump_driver)
            if driver_class is None:
                logger.warning(
                    "Configured pump driver is unknown", pump_driver=settings.pump_driver
                )
            else:
                driver = driver_class()
        if driver is not None:
            await self.set_pump_driver(driver)
        return driver

    async def set_pump_driver(self, driver: PumpDriver | None) -> None:
        """Assign (or with None, remove) the pump driver."""
        await self.queue.run(self._assign_driver, driver)

    async def close(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        await self.queue.close()

    # Heartbeat / polling

    async def heartbeat(self, date: datetime | None = None) -> bool:
        """Start a pump poll unless one is in flight or dosing is in progress.

        Returns:
            True when a poll (or a no-pump completion) was started
        """
        return await self.queue.run(self._heartbeat, date or self._clock())

    async def set_dosing_in_progress(self, in_progress: bool) -> None:
        await self.queue.run(self._set_dosing_in_progress, in_progress)

    async def wait_for_poll(self) -> None:
        """Wait for the poll started by the last heartbeat (if any) to settle."""
        task = self._poll_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        await self.queue.join()

    def snapshot(self) -> PumpSyncState:
        return self.state.model_copy()

    # Driver delegate

    async def pump_did_update_status(self, status: PumpStatus) -> None:
        await self.queue.run(self._apply_status, status)

    async def pump_has_new_events(self, events: list[PumpEvent]) -> None:
        await self.queue.run(self._reconcile_events, list(events))

    async def pump_did_read_reservoir(self, units: float, at: datetime) -> None:
        await self.queue.run(self._apply_reservoir, units, at)

    async def pump_did_error(self, error: PumpDriverError) -> None:
        await self.queue.run(self._report_error, error)

    async def pump_recommends_loop(self) -> None:
        await self.queue.run(self._driver_recommends_loop)

    async def pump_will_deactivate(self) -> None:
        await self.queue.run(self._deactivate)

    async def start_date_for_new_events(self, now: datetime | None = None) -> datetime:
        """Filter start for the pump's history read.

        The last reconciliation watermark minus 15 minutes, or two hours ago
        when nothing has been reconciled yet.
        """
        return await self.queue.run(
            lambda: compute_start_date(self.state.last_event_watermark, now or self._clock())
        )

    async def issue_alert(self, alert: DeviceAlert, issued_date: datetime | None = None) -> None:
        await self.queue.run(self._issue_alert, alert, issued_date or self._clock())

    async def retract_alert(self, alert_identifier: str) -> None:
        await self.queue.run(self._retract_alert, alert_identifier)

    # Alerts

    async def alerts_did_update(self, entries: list[AlertEntry]) -> None:
        """Acknowledge every entry that is not acknowledged yet."""
        pending = await self.queue.run(self._claim_acknowledgements, entries)
        if pending:
            await asyncio.gather(*(self._acknowledge(entry) for entry in pending))

    async def _claim_acknowledgements(self, entries: list[AlertEntry]) -> list[AlertEntry]:
        # Entries may come from a stale snapshot; the store decides what is still open
        open_dates = {
            entry.issued_date
            for entry in await self.alert_store.list_alerts(unacknowledged_only=True)
        }
        pending = [
            entry
            for entry in entries
            if entry.issued_date in open_dates and entry.issued_date not in self._acknowledging
        ]
        self._acknowledging.update(entry.issued_date for entry in pending)
        return pending

    async def _acknowledge(self, entry: AlertEntry) -> None:
        driver = self.driver
        error_message: str | None = None
        if driver is not None:
            try:
                await asyncio.wait_for(
                    driver.acknowledge_alert(entry.alert_identifier),
                    timeout=self.poll_timeout,
                )
            except TimeoutError:
                error_message = "Acknowledgement timed out"
            except PumpDriverError as e:
                error_message = str(e) or type(e).__name__

        await self.queue.run(self._record_acknowledgement, driver, entry, error_message)

    async def _record_acknowledgement(
        self,
        driver: PumpDriver | None,
        entry: AlertEntry,
        error_message: str | None,
    ) -> None:
        self._acknowledging.discard(entry.issued_date)
        if driver is None:
            logger.debug("No pump to acknowledge alert", alert_identifier=entry.alert_identifier)
            return

        if error_message is None:
            await self.alert_store.ack_alert(entry.issued_date, None)
            logger.info("Alert acknowledged", alert_identifier=entry.alert_identifier)
        elif not driver.active_alerts():
            # The pump no longer knows the alert; nothing left to acknowledge there
            await self.alert_store.ack_alert(entry.issued_date, error_message)
            logger.warning(
                "Alert acknowledgement failed, alert no longer active on pump",
                alert_identifier=entry.alert_identifier,
                error=error_message,
            )
        else:
            await self.alert_store.record_ack_error(entry.issued_date, error_message)
            logger.warning(
                "Alert acknowledgement failed, will retry",
                alert_identifier=entry.alert_identifier,
                error=error_message,
            )
        self.pump_notifications.send(entry)

    async def _issue_alert(self, alert: DeviceAlert, issued_date: datetime) -> None:
        entry = AlertEntry(
            alert_identifier=alert.alert_identifier,
            manager_identifier=alert.manager_identifier,
            issued_date=issued_date,
            interruption_level=alert.interruption_level,
            trigger_type=alert.trigger_type,
            trigger_interval=alert.trigger_interval,
            content_title=alert.content_title,
            content_body=alert.content_body,
        )
        await self.alert_store.store_alert(entry)
        logger.info("Alert issued", alert_identifier=alert.alert_identifier)
        self.alerts_updated.send(await self.alert_store.list_alerts())

    async def _retract_alert(self, alert_identifier: str) -> None:
        await self.alert_store.delete_alert(alert_identifier)
        logger.info("Alert retracted", alert_identifier=alert_identifier)
        self.alerts_updated.send(await self.alert_store.list_alerts())

    # Queue jobs

    async def _load_state(self) -> PumpSyncState:
        raw = await self.blob_store.retrieve(StateKey.PUMP_SYNC_STATE, None)
        try:
            self.state = PumpSyncState.restored(raw)
        except ValueError as e:
            logger.warning("Persisted pump sync state is invalid, starting fresh", error=str(e))
            self.state = PumpSyncState()

        self.manual_override.send_if_changed(self.state.active_manual_override)
        if self.state.reservoir_level is not None:
            self.reservoir.send_if_changed(self.state.reservoir_level)
        self.expires_at.send_if_changed(self.state.expires_at)
        await self._persist_state()

        logger.info(
            "Pump sync state loaded",
            last_heartbeat_time=self.state.last_heartbeat_time,
            last_event_watermark=self.state.last_event_watermark,
        )
        return self.state

    async def _assign_driver(self, driver: PumpDriver | None) -> None:
        previous = self.driver
        if previous is not None and previous is not driver:
            previous.delegate = None
        self.driver = driver

        preferences = await self.blob_store.retrieve(SettingsKey.PREFERENCES, {}) or {}
        current_increment = preferences.get("bolus_increment")

        if driver is not None:
            driver.delegate = self
            await self.blob_store.save(StateKey.PUMP_MANAGER_STATE, raw_value_for(driver))
            self.pump_name.send_if_changed(driver.localized_title)
            increment = bolus_increment_for(driver.supported_bolus_volumes, current_increment)
            expires_at = driver.current_status().expires_at
            logger.info(
                "Pump driver assigned",
                manager_identifier=driver.manager_identifier,
                bolus_increment=increment,
            )
        else:
            await self.blob_store.delete(StateKey.PUMP_MANAGER_STATE)
            self.pump_name.send_if_changed(None)
            increment = DEFAULT_BOLUS_INCREMENT
            expires_at = None
            logger.info("Pump driver removed")

        if current_increment != increment:
            await self.blob_store.save(
                SettingsKey.PREFERENCES, {**preferences, "bolus_increment": increment}
            )

        self.state = self.state.model_copy(update={"expires_at": expires_at})
        self.expires_at.send_if_changed(expires_at)
        await self._persist_state()

    async def _heartbeat(self, date: datetime) -> bool:
        if self.state.poll_in_flight:
            logger.warning("Pump update already in progress, skipping heartbeat")
            return False
        if self.state.dosing_in_progress:
            logger.warning("Decision cycle in progress, skipping heartbeat")
            return False

        self.state = self.state.model_copy(update={"last_heartbeat_time": date})
        await self._persist_state()
        await self._start_polling()
        return True

    async def _start_polling(self) -> None:
        driver = self.driver
        if driver is None:
            logger.debug("Pump is not set, skipping update")
            self.recommends_loop.send(self._clock())
            return

        self._poll_id += 1
        self.state = self.state.model_copy(update={"poll_in_flight": True})
        await self._persist_state()
        with correlation_scope("poll"):
            logger.debug("Starting pump update", manager_identifier=driver.manager_identifier)
            self._poll_task = asyncio.create_task(self._poll(driver, self._poll_id))

    async def _poll(self, driver: PumpDriver, poll_id: int) -> None:
        error: LoopCoreError | None = None
        try:
            await asyncio.wait_for(driver.refresh_data(), timeout=self.poll_timeout)
        except TimeoutError:
            logger.warning("Pump update timed out", timeout_seconds=self.poll_timeout)
            error = PumpDriverError(f"Pump update timed out after {self.poll_timeout}s")
        except PumpDriverError as e:
            logger.warning("Pump update failed", error=str(e))
            error = e
        except Exception as e:
            logger.exception("Unexpected error during pump update", error=str(e))
            error = PumpDriverError(str(e))
        await self.queue.run(self._finish_polling, poll_id, error)

    async def _finish_polling(self, poll_id: int, error: LoopCoreError | None) -> None:
        if poll_id != self._poll_id or not self.state.poll_in_flight:
            return
        self.state = self.state.model_copy(update={"poll_in_flight": False})
        await self._persist_state()
        if error is not None:
            logger.warning("Loop recommendation timed out or failed, looping now")
            self.errors.send(error)
        else:
            logger.debug("Pump data updated")
        self.recommends_loop.send(self._clock())

    async def _driver_recommends_loop(self) -> None:
        if self.state.poll_in_flight:
            await self._finish_polling(self._poll_id, None)
            return
        self.recommends_loop.send(self._clock())

    async def _set_dosing_in_progress(self, in_progress: bool) -> None:
        if self.state.dosing_in_progress == in_progress:
            return
        self.state = self.state.model_copy(update={"dosing_in_progress": in_progress})
        await self._persist_state()

    async def _apply_status(self, status: PumpStatus) -> None:
        self.status.send(status)

        self.bolus_in_progress.send_if_changed(
            status.bolus_state in (BolusState.initiating, BolusState.in_progress)
        )

        if status.insulin_type is not None and status.insulin_type != self._insulin_type:
            self._insulin_type = status.insulin_type
            logger.info(
                "Insulin type changed",
                insulin_type=status.insulin_type.value,
                curve=INSULIN_CURVE_BY_TYPE[status.insulin_type],
            )
            self.insulin_type.send(status.insulin_type)

        temp = status.unfinalized_temp_basal
        manual_override = (
            temp is not None and not temp.automatic and not temp.is_finished(status.timestamp)
        )

        reservoir = self._plausible_reservoir(status.reservoir_level)
        await self.blob_store.save(
            ArtifactKey.RESERVOIR, None if reservoir == RESERVOIR_UNKNOWN else reservoir
        )

        if status.activated_at is not None:
            pod_age = status.activated_at.isoformat()
            if await self.blob_store.retrieve(StateKey.POD_AGE, None) != pod_age:
                await self.blob_store.save(StateKey.POD_AGE, pod_age)

        self.state = self.state.model_copy(
            update={
                "active_manual_override": manual_override,
                "reservoir_level": reservoir,
                "expires_at": status.expires_at,
            }
        )
        await self._persist_state()

        self.manual_override.send_if_changed(manual_override)
        self.reservoir.send_if_changed(reservoir)
        self.expires_at.send_if_changed(status.expires_at)

    async def _apply_reservoir(self, units: float, at: datetime) -> None:
        reservoir = self._plausible_reservoir(units)
        await self.blob_store.save(
            ArtifactKey.RESERVOIR, None if reservoir == RESERVOIR_UNKNOWN else reservoir
        )
        self.state = self.state.model_copy(update={"reservoir_level": reservoir})
        await self._persist_state()
        logger.debug("Reservoir read", units=units, at=at)
        self.reservoir.send_if_changed(reservoir)

    async def _reconcile_events(self, events: list[PumpEvent]) -> None:
        ceiling = self.driver.max_basal_ceiling if self.driver else settings.default_max_basal
        survivors = [
            event
            for event in events
            if not (
                event.type == PumpEventType.TEMP_BASAL
                and (event.units_per_hour or 0.0) > ceiling
            )
        ]
        rejected = len(events) - len(survivors)
        if rejected:
            logger.warning(
                "Rejected temp basal events above maximum basal",
                rejected=rejected,
                max_basal=ceiling,
            )
        if not survivors:
            return

        source = self.driver.manager_identifier if self.driver else "pump"
        try:
            stored = await self.event_store.append_events(survivors, source=source)
        except StoreWriteFailed as e:
            logger.error(
                "Pump event append failed, watermark not advanced",
                event_count=len(survivors),
                error=str(e),
            )
            self.errors.send(e)
            return

        latest = max(event.timestamp for event in survivors)
        watermark = self.state.last_event_watermark
        if watermark is None or latest > watermark:
            watermark = latest
        self.state = self.state.model_copy(update={"last_event_watermark": watermark})
        await self._persist_state()

        await self._rebuild_pump_history()
        logger.info(
            "Pump events reconciled",
            offered=len(events),
            stored=stored,
            watermark=watermark,
        )

    async def _rebuild_pump_history(self) -> None:
        since = self._clock() - timedelta(hours=self.history_hours)
        events = await self.event_store.query_events(since)
        entries = []
        for event in reversed(events):
            entries.extend(event.as_history_entries())
        await self.blob_store.save(ArtifactKey.PUMP_HISTORY, entries)

    async def _report_error(self, error: PumpDriverError) -> None:
        logger.warning("Pump reported an error", error=str(error))
        self.errors.send(error)

    async def _deactivate(self) -> None:
        logger.info("Pump will deactivate")
        await self._assign_driver(None)
        self.deactivated.send(None)

    # Helpers

    def _plausible_reservoir(self, level: float | None) -> float:
        if level is None:
            return RESERVOIR_UNKNOWN
        if level > self.reservoir_ceiling:
            logger.warning(
                "Implausible reservoir level reported",
                level=level,
                ceiling=self.reservoir_ceiling,
            )
            return RESERVOIR_UNKNOWN
        return level

    async def _persist_state(self) -> None:
        await self.blob_store.save(
            StateKey.PUMP_SYNC_STATE, self.state.model_dump(mode="json")
        )
