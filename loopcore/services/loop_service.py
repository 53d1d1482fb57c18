"""Loop service.

Wires the device sync state machine to the pipeline orchestrator: when the
pump says a decision cycle may proceed, fresh pump-CGM glucose is merged into
the glucose history and a cycle runs with ``dosing_in_progress`` held, so no
pump poll can start underneath it.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from loopcore.config import settings
from loopcore.core.errors import LoopCoreError, PipelineError
from loopcore.core.pipeline.keys import ArtifactKey
from loopcore.core.pipeline.orchestrator import PipelineOrchestrator
from loopcore.core.pipeline.stages import build_stage_set
from loopcore.core.signals import Signal, ValueSignal
from loopcore.logging_config import get_logger
from loopcore.schemas.glucose import GlucoseReading
from loopcore.schemas.pump import InsulinType
from loopcore.schemas.suggestion import Suggestion
from loopcore.services.alert_store import SqlAlertStore
from loopcore.services.blob_store import SqlBlobStore
from loopcore.services.device_sync import DeviceSyncManager
from loopcore.services.event_store import SqlEventStore
from loopcore.services.glucose_fetch import GlucoseFetchAdapter
from loopcore.services.settings_manager import SettingsManager

logger = get_logger(__name__)

NEUTRAL_TEMP: dict[str, Any] = {"duration": 0, "rate": 0.0, "temp": "absolute"}


def merge_glucose_history(
    history: Sequence[dict[str, Any]],
    readings: Sequence[GlucoseReading],
    since: datetime,
) -> list[dict[str, Any]]:
    """Merge readings into a glucose history.

    Entries are deduplicated by id (stored entries win), entries older than
    ``since`` are dropped and the result is sorted newest first.
    """
    by_id: dict[str, dict[str, Any]] = {}
    for reading in readings:
        by_id[reading.id] = reading.as_history_entry()
    for entry in history:
        entry_id = entry.get("_id")
        if entry_id is not None:
            by_id[entry_id] = entry

    cutoff = int(since.timestamp() * 1000)
    entries = [entry for entry in by_id.values() if entry.get("date", 0) >= cutoff]
    return sorted(entries, key=lambda entry: entry.get("date", 0), reverse=True)


class LoopService:
    """Runs decision cycles when the device layer allows it."""

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        device_sync: DeviceSyncManager,
        settings_manager: SettingsManager,
        glucose_fetch: GlucoseFetchAdapter | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.orchestrator = orchestrator
        self.device_sync = device_sync
        self.settings_manager = settings_manager
        self.glucose_fetch = glucose_fetch
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cycle_lock = asyncio.Lock()

        self.suggestions: ValueSignal[Suggestion] = ValueSignal("suggestions")
        self.errors: Signal[LoopCoreError] = Signal("loop_errors")
        self.last_cycle_at: datetime | None = None
        self.last_error: str | None = None

        device_sync.recommends_loop.subscribe(self._on_recommends_loop)
        device_sync.insulin_type.subscribe(self._on_insulin_type)

    async def start(self) -> None:
        """Reload persisted state and restore the pump driver."""
        await self.device_sync.load_state()
        await self.device_sync.restore_pump_driver()
        try:
            await self.settings_manager.ensure_defaults()
        except PipelineError as e:
            logger.error("Could not prepare default profiles", error=str(e))
        logger.info(
            "Loop service started",
            pump=self.device_sync.pump_name.value,
        )

    async def stop(self) -> None:
        await self.device_sync.close()
        await self.orchestrator.close()
        logger.info("Loop service stopped")

    async def heartbeat(self, date: datetime | None = None) -> bool:
        return await self.device_sync.heartbeat(date or self._clock())

    async def run_cycle(self, now: datetime | None = None) -> Suggestion | None:
        """Run one decision cycle.

        Returns:
            The new suggestion, or None when the cycle was skipped or failed
        """
        if self._cycle_lock.locked():
            logger.warning("Decision cycle already running, skipping")
            return None

        async with self._cycle_lock:
            now = now or self._clock()
            # Held across the glucose refresh too: no poll may start mid-cycle
            await self.device_sync.set_dosing_in_progress(True)
            try:
                suggestion = await self._decide(now)
            finally:
                await self.device_sync.set_dosing_in_progress(False)

            if suggestion is not None:
                self.last_cycle_at = now
                self.last_error = None
                self.suggestions.send(suggestion)
            return suggestion

    async def _decide(self, now: datetime) -> Suggestion | None:
        await self.refresh_glucose(now)

        if self.device_sync.state.active_manual_override:
            logger.info("Manual temp basal active, skipping decision cycle")
            return None

        status = self.device_sync.status.value
        current_temp = status.current_temp() if status is not None else dict(NEUTRAL_TEMP)
        try:
            return await self.orchestrator.run_decision_cycle(current_temp, clock=now)
        except PipelineError as e:
            logger.error("Decision cycle failed", error=str(e))
            self.last_error = str(e)
            self.errors.send(e)
            return None

    async def refresh_glucose(self, now: datetime | None = None) -> int:
        """Merge new pump-CGM readings into the glucose history.

        Returns:
            Number of readings fetched
        """
        if self.glucose_fetch is None:
            return 0
        now = now or self._clock()
        readings = await self.glucose_fetch.fetch(now)
        if not readings:
            return 0

        store = self.orchestrator.store
        history = await store.retrieve(ArtifactKey.GLUCOSE, []) or []
        merged = merge_glucose_history(
            history,
            readings,
            since=now - timedelta(hours=settings.glucose_history_hours),
        )
        await store.save(ArtifactKey.GLUCOSE, merged)
        return len(readings)

    async def autosense(self) -> None:
        try:
            await self.orchestrator.autosense()
        except PipelineError as e:
            logger.error("Autosens failed", error=str(e))
            self.errors.send(e)

    async def autotune(self) -> None:
        """Run autotune and rebuild the profile from its result."""
        try:
            await self.orchestrator.autotune(
                categorize_uam_as_basal=settings.autotune_categorize_uam_as_basal,
                tune_insulin_curve=settings.autotune_tune_insulin_curve,
            )
            await self.orchestrator.make_profiles()
        except PipelineError as e:
            logger.error("Autotune failed", error=str(e))
            self.errors.send(e)

    async def latest_suggestion(self) -> Suggestion | None:
        if self.suggestions.value is not None:
            return self.suggestions.value
        return await self.orchestrator.latest_suggestion()

    def status(self) -> dict[str, Any]:
        state = self.device_sync.snapshot()
        return {
            "pump_name": self.device_sync.pump_name.value,
            "sync_state": state,
            "cycle_running": self._cycle_lock.locked(),
            "last_cycle_at": self.last_cycle_at,
            "last_error": self.last_error,
        }

    async def _on_recommends_loop(self, _date: datetime) -> None:
        await self.run_cycle()

    async def _on_insulin_type(self, insulin_type: InsulinType) -> None:
        try:
            await self.settings_manager.update_insulin_model(insulin_type)
        except PipelineError as e:
            logger.error("Profile synthesis after insulin change failed", error=str(e))


def build_loop_service() -> LoopService:
    """Assemble the service from configuration (SQL stores, subprocess stages)."""
    # Registers the bundled drivers
    import loopcore.services.drivers  # noqa: F401

    blob_store = SqlBlobStore()
    orchestrator = PipelineOrchestrator(blob_store, build_stage_set())
    device_sync = DeviceSyncManager(blob_store, SqlEventStore(), SqlAlertStore())
    return LoopService(
        orchestrator,
        device_sync,
        SettingsManager(orchestrator),
        glucose_fetch=GlucoseFetchAdapter(blob_store, lambda: device_sync.driver),
    )
