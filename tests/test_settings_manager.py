"""Tests for clinical settings validation and persistence."""

import pytest
from pydantic import ValidationError

from loopcore.core.pipeline.keys import SettingsKey
from loopcore.schemas.pump import InsulinType
from loopcore.services.settings_manager import SettingsManager


@pytest.fixture
def manager(orchestrator):
    return SettingsManager(orchestrator)


def _profile_runs(stages) -> int:
    return stages.names().count("profile")


class TestCarbRatios:
    """Tests for the carb ratio schedule."""

    @pytest.mark.asyncio
    async def test_schedule_normalized(self, manager, blob_store):
        await manager.save_carb_ratios(
            {
                "schedule": [
                    {"offset": 60, "ratio": 12},
                    {"offset": 0, "ratio": 10},
                    {"offset": 60, "ratio": 15},
                ]
            }
        )

        stored = await blob_store.retrieve(SettingsKey.CARB_RATIOS)
        assert stored["units"] == "grams"
        assert stored["schedule"] == [
            {"offset": 0, "ratio": 10.0, "start": "00:00:00"},
            {"offset": 60, "ratio": 15.0, "start": "01:00:00"},
        ]

    @pytest.mark.asyncio
    async def test_first_entry_anchored_at_midnight(self, manager, blob_store):
        await manager.save_carb_ratios({"schedule": [{"offset": 180, "ratio": 8}]})

        stored = await blob_store.retrieve(SettingsKey.CARB_RATIOS)
        assert stored["schedule"] == [{"offset": 0, "ratio": 8.0, "start": "00:00:00"}]

    @pytest.mark.asyncio
    async def test_ratio_out_of_range_rejected(self, manager, blob_store):
        with pytest.raises(ValidationError):
            await manager.save_carb_ratios({"schedule": [{"offset": 0, "ratio": 80}]})

        assert await blob_store.retrieve_raw(SettingsKey.CARB_RATIOS) is None

    @pytest.mark.asyncio
    async def test_offset_must_be_on_half_hour(self, manager):
        with pytest.raises(ValidationError):
            await manager.save_carb_ratios({"schedule": [{"offset": 15, "ratio": 10}]})


class TestProfileResynthesis:
    """Profile synthesis re-runs only when an input changes."""

    @pytest.mark.asyncio
    async def test_change_rebuilds_profiles(self, manager, blob_store, stages):
        changed = await manager.save_carb_ratios({"schedule": [{"offset": 0, "ratio": 10}]})

        assert changed is True
        assert _profile_runs(stages) == 2
        profile = await blob_store.retrieve(SettingsKey.PROFILE)
        assert profile["carb_ratio"]["schedule"][0]["ratio"] == 10.0

    @pytest.mark.asyncio
    async def test_unchanged_value_skipped(self, manager, stages):
        ratios = {"schedule": [{"offset": 0, "ratio": 10}]}
        await manager.save_carb_ratios(ratios)

        changed = await manager.save_carb_ratios(ratios)

        assert changed is False
        assert _profile_runs(stages) == 2

    @pytest.mark.asyncio
    async def test_insulin_model_update(self, manager, blob_store, stages):
        assert await manager.update_insulin_model(InsulinType.fiasp) is True

        assert await blob_store.retrieve(SettingsKey.MODEL) == "ultra-rapid"
        assert stages.inputs_of("profile")["model"] == "ultra-rapid"
        assert await manager.update_insulin_model(InsulinType.lyumjev) is False


class TestOtherSettings:
    """Tests for the remaining settings."""

    @pytest.mark.asyncio
    async def test_basal_profile_normalized(self, manager, blob_store):
        await manager.save_basal_profile(
            [{"minutes": 360, "rate": 1.1}, {"minutes": 120, "rate": 0.8}]
        )

        assert await blob_store.retrieve(SettingsKey.BASAL_PROFILE) == [
            {"minutes": 0, "rate": 0.8, "start": "00:00:00"},
            {"minutes": 360, "rate": 1.1, "start": "06:00:00"},
        ]

    @pytest.mark.asyncio
    async def test_empty_basal_profile_rejected(self, manager):
        with pytest.raises(ValueError):
            await manager.save_basal_profile([])

    @pytest.mark.asyncio
    async def test_bg_target_low_above_high_rejected(self, manager):
        with pytest.raises(ValidationError):
            await manager.save_bg_targets({"targets": [{"offset": 0, "low": 140, "high": 100}]})

    @pytest.mark.asyncio
    async def test_insulin_sensitivities(self, manager, blob_store):
        await manager.save_insulin_sensitivities(
            {"sensitivities": [{"offset": 0, "sensitivity": 45}]}
        )

        stored = await manager.get(SettingsKey.INSULIN_SENSITIVITIES)
        assert stored["sensitivities"][0]["sensitivity"] == 45.0
        assert stored["units"] == "mg/dL"

    @pytest.mark.asyncio
    async def test_pump_settings_defaults(self, manager):
        await manager.save_pump_settings({"max_basal": 2.5})

        assert await manager.get(SettingsKey.PUMP_SETTINGS) == {
            "insulin_action_curve": 6.0,
            "max_bolus": 10.0,
            "max_basal": 2.5,
        }

    @pytest.mark.asyncio
    async def test_preferences_merged(self, manager, blob_store):
        await blob_store.save(SettingsKey.PREFERENCES, {"bolus_increment": 0.05})

        await manager.save_preferences({"max_iob": 3})

        assert await manager.get(SettingsKey.PREFERENCES) == {
            "bolus_increment": 0.05,
            "max_iob": 3,
        }

    @pytest.mark.asyncio
    async def test_temp_targets(self, manager):
        targets = [{"targetBottom": 140, "targetTop": 140, "duration": 60}]

        await manager.save_temp_targets(targets)

        assert await manager.get(SettingsKey.TEMP_TARGETS) == targets


class TestDefaults:
    """Tests for first-run defaults."""

    @pytest.mark.asyncio
    async def test_ensure_defaults_seeds_preferences_and_profiles(self, manager, blob_store):
        await manager.ensure_defaults()

        assert await blob_store.retrieve(SettingsKey.PREFERENCES) == {
            "max_iob": 0,
            "enableSMB_always": False,
        }
        assert await blob_store.retrieve_raw(SettingsKey.PROFILE) is not None
        assert await blob_store.retrieve_raw(SettingsKey.PUMP_PROFILE) is not None

    @pytest.mark.asyncio
    async def test_ensure_defaults_keeps_existing(self, manager, blob_store, stages):
        await blob_store.save(SettingsKey.PREFERENCES, {"max_iob": 2})
        await blob_store.save(SettingsKey.PROFILE, {"dia": 5})

        await manager.ensure_defaults()

        assert stages.names() == []
        assert await blob_store.retrieve(SettingsKey.PREFERENCES) == {"max_iob": 2}
