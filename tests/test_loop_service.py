"""Tests for the loop service wiring device sync to the pipeline."""

import asyncio
from datetime import timedelta

import pytest

from loopcore.config import settings
from loopcore.core.errors import StageFailed
from loopcore.core.pipeline.keys import ArtifactKey, SettingsKey
from loopcore.schemas.glucose import AnalyteSample, GlucoseReading
from loopcore.services.device_sync import DeviceSyncManager
from loopcore.services.drivers.simulator import SimulatorPumpDriver
from loopcore.services.glucose_fetch import GlucoseFetchAdapter
from loopcore.services.loop_service import NEUTRAL_TEMP, LoopService, merge_glucose_history
from loopcore.services.settings_manager import SettingsManager


class GatedCgmPump(SimulatorPumpDriver):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fetch_started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_new_glucose(self, since):
        self.fetch_started.set()
        await self.release.wait()
        return await super().fetch_new_glucose(since)


@pytest.fixture
async def device_sync(blob_store, event_store, alert_store, now):
    manager = DeviceSyncManager(
        blob_store, event_store, alert_store, poll_timeout=2.0, clock=lambda: now
    )
    yield manager
    await manager.close()


@pytest.fixture
def service(orchestrator, device_sync, blob_store, now):
    return LoopService(
        orchestrator,
        device_sync,
        SettingsManager(orchestrator),
        glucose_fetch=GlucoseFetchAdapter(
            blob_store, lambda: device_sync.driver, timeout=1.0, clock=lambda: now
        ),
        clock=lambda: now,
    )


@pytest.fixture
def driver(now):
    return SimulatorPumpDriver(activated_at=now - timedelta(hours=1), clock=lambda: now)


async def _heartbeat_and_settle(service):
    await service.heartbeat()
    await service.device_sync.wait_for_poll()
    await service.device_sync.recommends_loop.drain()
    await service.device_sync.insulin_type.drain()


class TestMergeGlucoseHistory:
    """Tests for merging fetched readings into the glucose history."""

    def test_dedupes_and_sorts_newest_first(self, now):
        ten_minutes_ago = int((now - timedelta(minutes=10)).timestamp() * 1000)
        stored = [{"_id": "g-10", "sgv": 99, "date": ten_minutes_ago}]
        readings = [
            GlucoseReading(id="g-10", value=100, timestamp=now - timedelta(minutes=10)),
            GlucoseReading(id="g-5", value=104, timestamp=now - timedelta(minutes=5)),
        ]

        merged = merge_glucose_history(stored, readings, since=now - timedelta(hours=1))

        assert [entry["_id"] for entry in merged] == ["g-5", "g-10"]
        assert merged[1]["sgv"] == 99

    def test_drops_entries_before_cutoff(self, now):
        readings = [
            GlucoseReading(id="old", value=100, timestamp=now - timedelta(hours=25)),
            GlucoseReading(id="new", value=104, timestamp=now),
        ]

        merged = merge_glucose_history([], readings, since=now - timedelta(hours=24))

        assert [entry["_id"] for entry in merged] == ["new"]


class TestRunCycle:
    """Tests for LoopService.run_cycle."""

    @pytest.mark.asyncio
    async def test_cycle_without_pump(self, service, stages, now):
        suggestion = await service.run_cycle()

        assert suggestion.rate == 0.8
        assert service.suggestions.value == suggestion
        assert service.last_cycle_at == now
        assert service.last_error is None
        assert stages.inputs_of("determine_basal")["current_temp"] == NEUTRAL_TEMP
        assert service.device_sync.state.dosing_in_progress is False

    @pytest.mark.asyncio
    async def test_heartbeat_triggers_cycle_with_pump_temp(self, service, driver, stages):
        driver.start_temp_basal(1.5, 30, automatic=True)
        await service.device_sync.set_pump_driver(driver)

        await _heartbeat_and_settle(service)

        assert stages.names().count("determine_basal") == 1
        assert stages.inputs_of("determine_basal")["current_temp"] == {
            "duration": 30,
            "rate": 1.5,
            "temp": "absolute",
        }
        assert stages.inputs_of("determine_basal")["reservoir"] == 40.0

    @pytest.mark.asyncio
    async def test_manual_override_skips_cycle(self, service, driver, stages):
        driver.start_temp_basal(2.0, 60, automatic=False)
        await service.device_sync.set_pump_driver(driver)

        await _heartbeat_and_settle(service)

        assert "meal" not in stages.names()
        assert await service.run_cycle() is None
        assert service.suggestions.value is None
        assert service.device_sync.state.dosing_in_progress is False

    @pytest.mark.asyncio
    async def test_pipeline_failure_is_reported(self, service, stages):
        errors = []
        service.errors.subscribe(errors.append)
        stages.outputs["determine_basal"] = RuntimeError("no glucose")

        assert await service.run_cycle() is None

        assert isinstance(errors[0], StageFailed)
        assert "no glucose" in service.last_error
        assert service.device_sync.state.dosing_in_progress is False

    @pytest.mark.asyncio
    async def test_concurrent_cycles_run_once(self, service, stages):
        results = await asyncio.gather(service.run_cycle(), service.run_cycle())

        assert sum(result is not None for result in results) == 1
        assert stages.names().count("determine_basal") == 1

    @pytest.mark.asyncio
    async def test_no_poll_while_cycle_refreshes_glucose(self, service, stages, now):
        driver = GatedCgmPump(activated_at=now - timedelta(hours=1), clock=lambda: now)
        await service.device_sync.set_pump_driver(driver)

        cycle = asyncio.create_task(service.run_cycle())
        await driver.fetch_started.wait()
        started = await service.heartbeat()
        driver.release.set()
        suggestion = await cycle

        assert started is False
        assert service.device_sync.state.poll_in_flight is False
        assert suggestion is not None
        assert service.device_sync.state.dosing_in_progress is False

    @pytest.mark.asyncio
    async def test_pump_glucose_merged_before_cycle(
        self, service, driver, blob_store, stages, now
    ):
        for minutes_ago, value in ((10, 100), (5, 106)):
            driver.add_glucose(
                AnalyteSample(
                    sync_identifier=f"g-{minutes_ago}",
                    value_mgdl=value,
                    date=now - timedelta(minutes=minutes_ago),
                )
            )
        await service.device_sync.set_pump_driver(driver)

        await service.run_cycle()

        glucose = await blob_store.retrieve(ArtifactKey.GLUCOSE)
        assert [entry["_id"] for entry in glucose] == ["g-5", "g-10"]
        assert glucose[0]["direction"] == "FortyFiveUp"
        assert stages.inputs_of("meal")["glucose"] == glucose


class TestLifecycle:
    """Tests for startup and the auxiliary pipelines."""

    @pytest.mark.asyncio
    async def test_start_seeds_defaults(self, service, blob_store, monkeypatch):
        monkeypatch.setattr(settings, "pump_driver", "")

        await service.start()

        assert await blob_store.retrieve_raw(SettingsKey.PREFERENCES) is not None
        assert await blob_store.retrieve_raw(SettingsKey.PROFILE) is not None
        status = service.status()
        assert status["pump_name"] is None
        assert status["cycle_running"] is False

    @pytest.mark.asyncio
    async def test_start_survives_profile_failure(self, service, stages, monkeypatch):
        monkeypatch.setattr(settings, "pump_driver", "")
        stages.outputs["profile_defaults"] = RuntimeError("profile program missing")

        await service.start()

        assert service.device_sync.driver is None

    @pytest.mark.asyncio
    async def test_start_restores_configured_pump(self, service, monkeypatch):
        monkeypatch.setattr(settings, "pump_driver", "simulator")

        await service.start()

        assert service.status()["pump_name"] == "Pump Simulator"

    @pytest.mark.asyncio
    async def test_insulin_type_updates_model(self, service, driver, blob_store):
        await service.device_sync.set_pump_driver(driver)

        await _heartbeat_and_settle(service)

        assert await blob_store.retrieve(SettingsKey.MODEL) == "rapid-acting"

    @pytest.mark.asyncio
    async def test_autotune_rebuilds_profiles(self, service, stages):
        await service.autotune()

        assert stages.names() == ["autotune_prep", "autotune_core", "profile", "profile"]

    @pytest.mark.asyncio
    async def test_auxiliary_failures_reported(self, service, stages):
        errors = []
        service.errors.subscribe(errors.append)
        stages.outputs["autosens"] = RuntimeError("not enough glucose")
        stages.outputs["autotune_prep"] = RuntimeError("not enough history")

        await service.autosense()
        await service.autotune()

        assert [error.stage for error in errors] == ["autosens", "autotune_prep"]

    @pytest.mark.asyncio
    async def test_latest_suggestion_falls_back_to_store(self, service, orchestrator, now):
        await orchestrator.run_decision_cycle(NEUTRAL_TEMP, clock=now)

        latest = await service.latest_suggestion()

        assert latest.rate == 0.8
