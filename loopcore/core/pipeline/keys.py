"""Blob keys and defaults of the decision-cycle artifacts.

Every value the pipeline reads or writes lives in the blob store under one of
these keys. A key that was never written reads as its default, which lets a
cold-start cycle run end to end.
"""

import json
from datetime import datetime
from enum import StrEnum
from typing import Any, Final


class ArtifactKey(StrEnum):
    """Pipeline inputs and outputs."""

    PUMP_HISTORY = "pumphistory"
    CARB_HISTORY = "carbhistory"
    GLUCOSE = "glucose"
    PROFILE = "profile"
    BASAL_PROFILE = "basal_profile"
    AUTOSENS = "autosens"
    MEAL = "meal"
    IOB = "iob"
    RESERVOIR = "reservoir"
    TEMP_BASAL = "temp_basal"
    CLOCK = "clock"
    SUGGESTED = "suggested"


class SettingsKey(StrEnum):
    """Profile synthesis inputs and outputs."""

    PREFERENCES = "preferences"
    PUMP_SETTINGS = "settings"
    BG_TARGETS = "bg_targets"
    BASAL_PROFILE = "basal_profile"
    INSULIN_SENSITIVITIES = "insulin_sensitivities"
    CARB_RATIOS = "carb_ratios"
    TEMP_TARGETS = "temptargets"
    MODEL = "model"
    AUTOTUNE = "autotune"
    PUMP_PROFILE = "pumpprofile"
    PROFILE = "profile"


class StateKey(StrEnum):
    """Device state kept next to the artifacts."""

    PUMP_SYNC_STATE = "pump_sync_state"
    PUMP_MANAGER_STATE = "pump_manager_state"
    POD_AGE = "pod_age"
    GLUCOSE_FETCH_WATERMARK = "glucose_fetch_watermark"


# Defaults substituted for keys never written. The clock default is "now" and
# is resolved by the orchestrator.
DEFAULTS: Final[dict[str, Any]] = {
    ArtifactKey.PUMP_HISTORY: [],
    ArtifactKey.CARB_HISTORY: [],
    ArtifactKey.GLUCOSE: [],
    ArtifactKey.PROFILE: {},
    ArtifactKey.BASAL_PROFILE: [],
    ArtifactKey.AUTOSENS: None,
    ArtifactKey.MEAL: {},
    ArtifactKey.IOB: [],
    ArtifactKey.RESERVOIR: None,
    ArtifactKey.TEMP_BASAL: {},
    ArtifactKey.SUGGESTED: None,
    SettingsKey.PREFERENCES: {},
    SettingsKey.PUMP_SETTINGS: {},
    SettingsKey.BG_TARGETS: {},
    SettingsKey.INSULIN_SENSITIVITIES: {},
    SettingsKey.CARB_RATIOS: {},
    SettingsKey.TEMP_TARGETS: [],
    SettingsKey.MODEL: "",
    SettingsKey.AUTOTUNE: None,
    SettingsKey.PUMP_PROFILE: {},
}


def default_for(key: str) -> Any:
    """Return a fresh copy of the default for ``key`` (``None`` if unknown)."""
    value = DEFAULTS.get(key)
    if isinstance(value, list | dict):
        return type(value)()
    return value


def or_null(value: Any) -> Any:
    """Optional inputs: treat an empty value as absent."""
    if value is None or value == "" or value == {}:
        return None
    return value


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and compact separators.

    Two equal values always produce the same text.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_encode)


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
