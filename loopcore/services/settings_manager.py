"""Clinical settings persistence.

Validates settings before they reach the blob store and re-runs profile
synthesis whenever a profile input actually changes.
"""

from typing import Any

from pydantic import TypeAdapter

from loopcore.core.pipeline.keys import SettingsKey, canonical_json
from loopcore.core.pipeline.orchestrator import PipelineOrchestrator
from loopcore.core.pipeline.stages import StageName
from loopcore.logging_config import get_logger
from loopcore.schemas.pump import INSULIN_CURVE_BY_TYPE, InsulinType
from loopcore.schemas.settings import (
    BasalProfileEntry,
    BGTargets,
    CarbRatios,
    InsulinSensitivities,
    PumpSettings,
    normalize_basal_profile,
)

logger = get_logger(__name__)

_basal_profile_adapter = TypeAdapter(list[BasalProfileEntry])

# Settings that feed profile synthesis
PROFILE_INPUTS = frozenset(
    {
        SettingsKey.PREFERENCES,
        SettingsKey.PUMP_SETTINGS,
        SettingsKey.BG_TARGETS,
        SettingsKey.BASAL_PROFILE,
        SettingsKey.INSULIN_SENSITIVITIES,
        SettingsKey.CARB_RATIOS,
        SettingsKey.TEMP_TARGETS,
        SettingsKey.MODEL,
        SettingsKey.AUTOTUNE,
    }
)


class SettingsManager:
    """Validated access to the clinical settings."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store

    async def get(self, key: str, default: Any = None) -> Any:
        return await self.store.retrieve(key, default)

    async def save_carb_ratios(self, ratios: CarbRatios | dict[str, Any]) -> bool:
        """Save the carb ratio schedule (deduplicated, sorted, anchored at midnight)."""
        model = CarbRatios.model_validate(ratios)
        return await self._save(SettingsKey.CARB_RATIOS, model.model_dump())

    async def save_basal_profile(self, entries: list[Any]) -> bool:
        profile = normalize_basal_profile(_basal_profile_adapter.validate_python(entries))
        return await self._save(
            SettingsKey.BASAL_PROFILE, [entry.model_dump() for entry in profile]
        )

    async def save_insulin_sensitivities(
        self, sensitivities: InsulinSensitivities | dict[str, Any]
    ) -> bool:
        model = InsulinSensitivities.model_validate(sensitivities)
        return await self._save(SettingsKey.INSULIN_SENSITIVITIES, model.model_dump())

    async def save_bg_targets(self, targets: BGTargets | dict[str, Any]) -> bool:
        model = BGTargets.model_validate(targets)
        return await self._save(SettingsKey.BG_TARGETS, model.model_dump())

    async def save_pump_settings(self, pump_settings: PumpSettings | dict[str, Any]) -> bool:
        model = PumpSettings.model_validate(pump_settings)
        return await self._save(SettingsKey.PUMP_SETTINGS, model.model_dump())

    async def save_preferences(self, preferences: dict[str, Any]) -> bool:
        current = await self.store.retrieve(SettingsKey.PREFERENCES, {}) or {}
        return await self._save(SettingsKey.PREFERENCES, {**current, **preferences})

    async def save_temp_targets(self, temp_targets: list[dict[str, Any]]) -> bool:
        return await self._save(SettingsKey.TEMP_TARGETS, list(temp_targets))

    async def update_insulin_model(self, insulin_type: InsulinType) -> bool:
        """Persist the insulin curve for the insulin loaded in the pump."""
        return await self._save(SettingsKey.MODEL, INSULIN_CURVE_BY_TYPE[insulin_type])

    async def ensure_defaults(self) -> None:
        """Seed preferences from the profile stage and build missing profiles."""
        if await self.store.retrieve_raw(SettingsKey.PREFERENCES) is None:
            if StageName.PROFILE_DEFAULTS in self.orchestrator.stages:
                defaults = await self.orchestrator.export_default_preferences()
                await self.store.save(SettingsKey.PREFERENCES, defaults)
                logger.info("Default preferences exported")

        if (
            await self.store.retrieve_raw(SettingsKey.PROFILE) is None
            and StageName.PROFILE in self.orchestrator.stages
        ):
            await self.orchestrator.make_profiles()

    async def _save(self, key: str, value: Any) -> bool:
        """Store ``value`` if it differs from what is stored.

        Returns:
            True when the value changed (and profiles were re-synthesized)
        """
        if await self.store.retrieve_raw(key) == canonical_json(value):
            logger.debug("Setting unchanged, skipping save", key=key)
            return False

        await self.store.save(key, value)
        logger.info("Setting saved", key=key)

        if key in PROFILE_INPUTS:
            await self.orchestrator.make_profiles()
        return True
