"""Pipeline orchestrator.

Sequences the algorithm stages of a decision cycle and of the auxiliary
pipelines (autosens, autotune, profile synthesis). All runs share one serial
queue, so no two pipelines ever interleave. Each stage output is saved to the
blob store before the next stage reads its inputs; a failing stage aborts the
run but keeps whatever earlier stages already saved.
"""

import asyncio
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from loopcore.core.errors import StageFailed
from loopcore.core.pipeline.keys import (
    ArtifactKey,
    SettingsKey,
    canonical_json,
    default_for,
    or_null,
)
from loopcore.core.pipeline.stages import StageName, StageSet
from loopcore.core.serial_queue import SerialQueue
from loopcore.logging_config import correlation_scope, get_logger
from loopcore.schemas.suggestion import Suggestion
from loopcore.services.blob_store import BlobStore

logger = get_logger(__name__)


class PipelineOrchestrator:
    """Runs decision cycles and auxiliary pipelines against a blob store."""

    def __init__(
        self,
        store: BlobStore,
        stages: StageSet,
        queue: SerialQueue | None = None,
    ):
        self.store = store
        self.stages = stages
        self.queue = queue or SerialQueue("pipeline")

    async def run_decision_cycle(
        self,
        current_temp: Mapping[str, Any],
        clock: datetime | None = None,
    ) -> Suggestion:
        """Run meal -> iob -> determine_basal and store the suggestion.

        Args:
            current_temp: Temp basal currently running on the pump
            clock: Cycle time (defaults to now)

        Returns:
            The suggestion, timestamped with the cycle clock

        Raises:
            StageFailed: A stage raised or returned unusable output
        """
        return await self.queue.run(
            self._decision_cycle,
            dict(current_temp),
            clock or datetime.now(UTC),
        )

    async def autosense(self) -> Any:
        """Recompute the sensitivity ratio and store it under ``autosens``."""
        return await self.queue.run(self._autosense)

    async def autotune(
        self,
        categorize_uam_as_basal: bool = False,
        tune_insulin_curve: bool = False,
    ) -> Any:
        """Run autotune prep and core and store the result under ``autotune``."""
        return await self.queue.run(
            self._autotune, categorize_uam_as_basal, tune_insulin_curve
        )

    async def make_profiles(self) -> Any:
        """Synthesize ``pumpprofile`` and ``profile`` from the stored settings."""
        return await self.queue.run(self._make_profiles)

    async def export_default_preferences(self) -> dict[str, Any]:
        """Ask the profile stage for its default preferences."""
        return await self.queue.run(self._run_stage, StageName.PROFILE_DEFAULTS, {})

    async def latest_suggestion(self) -> Suggestion | None:
        """Return the stored suggestion of the last successful cycle."""
        raw = await self.store.retrieve(ArtifactKey.SUGGESTED, None)
        if not raw:
            return None
        return Suggestion.model_validate(raw)

    async def close(self) -> None:
        await self.queue.close()

    # Pipelines (run on the queue)

    async def _decision_cycle(self, current_temp: dict[str, Any], clock: datetime) -> Suggestion:
        with correlation_scope("cycle"):
            started = time.monotonic()
            clock_value = clock.isoformat()
            await self.store.save(ArtifactKey.CLOCK, clock_value)
            await self.store.save(ArtifactKey.TEMP_BASAL, current_temp)

            pump_history = await self._load(ArtifactKey.PUMP_HISTORY)
            carbs = await self._load(ArtifactKey.CARB_HISTORY)
            glucose = await self._load(ArtifactKey.GLUCOSE)
            profile = await self._load(ArtifactKey.PROFILE)
            basal_profile = await self._load(ArtifactKey.BASAL_PROFILE)

            meal = await self._run_stage(
                StageName.MEAL,
                {
                    "pumphistory": pump_history,
                    "profile": profile,
                    "clock": clock_value,
                    "glucose": glucose,
                    "basal_profile": basal_profile,
                    "carbs": carbs,
                },
            )
            await self.store.save(ArtifactKey.MEAL, meal)

            autosens = or_null(await self._load(ArtifactKey.AUTOSENS))
            iob = await self._run_stage(
                StageName.IOB,
                {
                    "pumphistory": pump_history,
                    "profile": profile,
                    "clock": clock_value,
                    "autosens": autosens,
                },
            )
            await self.store.save(ArtifactKey.IOB, iob)

            reservoir = await self._load(ArtifactKey.RESERVOIR)
            suggested = await self._run_stage(
                StageName.DETERMINE_BASAL,
                {
                    "iob": iob,
                    "current_temp": current_temp,
                    "glucose": glucose,
                    "profile": profile,
                    "autosens": autosens,
                    "meal": meal,
                    "microbolus_allowed": True,
                    "reservoir": reservoir,
                },
            )
            suggestion = self._to_suggestion(suggested, clock)
            await self.store.save(ArtifactKey.SUGGESTED, suggestion.to_artifact())

            logger.info(
                "Decision cycle completed",
                rate=suggestion.rate,
                duration=suggestion.duration,
                units=suggestion.units,
                eventual_bg=suggestion.eventual_bg,
                elapsed_ms=round((time.monotonic() - started) * 1000, 1),
            )
            return suggestion

    async def _autosense(self) -> Any:
        with correlation_scope("autosens"):
            result = await self._run_stage(
                StageName.AUTOSENS,
                {
                    "pumphistory": await self._load(ArtifactKey.PUMP_HISTORY),
                    "profile": await self._load(ArtifactKey.PROFILE),
                    "carbs": await self._load(ArtifactKey.CARB_HISTORY),
                    "glucose": await self._load(ArtifactKey.GLUCOSE),
                    "basal_profile": await self._load(ArtifactKey.BASAL_PROFILE),
                    "temptargets": None,
                },
            )
            await self.store.save(ArtifactKey.AUTOSENS, result)
            logger.info("Autosens completed", result=result)
            return result

    async def _autotune(self, categorize_uam_as_basal: bool, tune_insulin_curve: bool) -> Any:
        with correlation_scope("autotune"):
            pump_history = await self._load(ArtifactKey.PUMP_HISTORY)
            glucose = await self._load(ArtifactKey.GLUCOSE)
            profile = await self._load(ArtifactKey.PROFILE)

            prepared = await self._run_stage(
                StageName.AUTOTUNE_PREP,
                {
                    "pumphistory": pump_history,
                    "profile": profile,
                    "glucose": glucose,
                    "pumpprofile": profile,
                    "categorize_uam_as_basal": categorize_uam_as_basal,
                    "tune_insulin_curve": tune_insulin_curve,
                },
            )

            previous = or_null(await self.store.retrieve(SettingsKey.AUTOTUNE, None))
            result = await self._run_stage(
                StageName.AUTOTUNE_CORE,
                {
                    "prepared": prepared,
                    "previous_autotune": previous if previous is not None else profile,
                    "pumpprofile": profile,
                },
            )
            await self.store.save(SettingsKey.AUTOTUNE, result)
            logger.info("Autotune completed", had_previous=previous is not None)
            return result

    async def _make_profiles(self) -> Any:
        with correlation_scope("profile"):
            inputs = {
                "pump_settings": await self._load(SettingsKey.PUMP_SETTINGS),
                "bg_targets": await self._load(SettingsKey.BG_TARGETS),
                "isf": await self._load(SettingsKey.INSULIN_SENSITIVITIES),
                "basal_profile": await self._load(SettingsKey.BASAL_PROFILE),
                "preferences": await self._load(SettingsKey.PREFERENCES),
                "carb_ratios": await self._load(SettingsKey.CARB_RATIOS),
                "temptargets": await self._load(SettingsKey.TEMP_TARGETS),
                "model": await self._load(SettingsKey.MODEL),
            }
            autotune = or_null(await self._load(SettingsKey.AUTOTUNE))

            pump_profile = await self._run_stage(
                StageName.PROFILE, {**inputs, "autotune": None}
            )
            profile = await self._run_stage(
                StageName.PROFILE, {**inputs, "autotune": autotune}
            )

            await self.store.save(SettingsKey.PUMP_PROFILE, pump_profile)
            await self.store.save(SettingsKey.PROFILE, profile)
            logger.info("Profiles synthesized", autotuned=autotune is not None)
            return profile

    # Helpers

    async def _load(self, key: str) -> Any:
        return await self.store.retrieve(key, default_for(key))

    async def _run_stage(self, name: str, inputs: Mapping[str, Any]) -> Any:
        stage = self.stages.get(name)
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(stage.run, inputs)
        except StageFailed as e:
            logger.error("Stage failed", stage=name, error=str(e))
            raise
        except Exception as e:
            logger.error(
                "Stage raised an exception",
                stage=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StageFailed(name, str(e)) from e

        if isinstance(result, dict) and "error" in result:
            logger.error("Stage reported an error", stage=name, error=str(result["error"]))
            raise StageFailed(name, str(result["error"]))
        try:
            canonical_json(result)
        except (TypeError, ValueError) as e:
            raise StageFailed(name, "output is not JSON") from e

        logger.debug(
            "Stage completed",
            stage=name,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return result

    @staticmethod
    def _to_suggestion(suggested: Any, clock: datetime) -> Suggestion:
        if not isinstance(suggested, dict):
            raise StageFailed(StageName.DETERMINE_BASAL, "output is not an object")
        try:
            return Suggestion.model_validate({**suggested, "timestamp": clock})
        except ValidationError as e:
            raise StageFailed(StageName.DETERMINE_BASAL, "output is not a suggestion") from e
