"""Pytest configuration and shared fixtures."""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set testing mode BEFORE importing the app
os.environ["TESTING"] = "true"
os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "false"

from loopcore.config import settings

# Override settings for testing
settings.testing = True
settings.run_migrations_on_startup = False

import loopcore.services.drivers  # noqa: E402,F401  (registers the simulator)
from loopcore.core.pipeline.orchestrator import PipelineOrchestrator  # noqa: E402
from loopcore.core.pipeline.stages import StageSet  # noqa: E402
from loopcore.database import init_models  # noqa: E402
from loopcore.services.alert_store import InMemoryAlertStore  # noqa: E402
from loopcore.services.blob_store import InMemoryBlobStore  # noqa: E402
from loopcore.services.event_store import InMemoryEventStore  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class RecordingStages:
    """Stage functions that record their calls and return canned outputs."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.outputs: dict[str, object] = {
            "meal": {"carbs": 0, "mealCOB": 0},
            "iob": [{"iob": 0.5, "activity": 0.01}],
            "determine_basal": {
                "reason": "in range",
                "rate": 0.8,
                "duration": 30,
                "bg": 120,
                "eventualBG": 115,
                "IOB": 0.5,
                "COB": 0,
                "insulinReq": 0,
                "sensitivityRatio": 1.0,
            },
            "autosens": {"ratio": 1.1},
            "autotune_prep": {"CSFGlucoseData": [], "ISFGlucoseData": []},
            "autotune_core": {"basalprofile": [{"minutes": 0, "rate": 0.9}]},
            "profile_defaults": {"max_iob": 0, "enableSMB_always": False},
        }

    def _make(self, name: str):
        def stage(**inputs):
            self.calls.append((name, inputs))
            output = self.outputs[name]
            if isinstance(output, Exception):
                raise output
            return output

        return stage

    def profile(self, **inputs):
        self.calls.append(("profile", inputs))
        return {
            "dia": 6,
            "model": inputs["model"],
            "autotuned": inputs["autotune"] is not None,
            "carb_ratio": inputs["carb_ratios"],
        }

    def stage_set(self) -> StageSet:
        funcs = {name: self._make(name) for name in self.outputs}
        funcs["profile"] = self.profile
        return StageSet.from_callables(**funcs)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def inputs_of(self, name: str) -> dict:
        return next(inputs for call_name, inputs in self.calls if call_name == name)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def stages() -> RecordingStages:
    return RecordingStages()


@pytest_asyncio.fixture
async def orchestrator(blob_store, stages) -> AsyncGenerator[PipelineOrchestrator, None]:
    orchestrator = PipelineOrchestrator(blob_store, stages.stage_set())
    yield orchestrator
    await orchestrator.close()


@pytest_asyncio.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session maker bound to a fresh SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'loopcore-test.db'}",
        poolclass=NullPool,
    )
    await init_models(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
