"""Stage functions.

A stage is an opaque numeric step of the dosing algorithm: it receives named
JSON inputs and returns one JSON value. Stages are blocking; the orchestrator
runs them in a worker thread.

Two implementations are provided:

- ``CallableStage`` wraps an in-process Python function.
- ``SubprocessStage`` runs an external program. Each input is written to its
  own JSON file and the file paths are passed as positional arguments in the
  declared input order; the program prints its JSON result on stdout.
"""

import json
import shlex
import subprocess
import tempfile
from collections.abc import Callable, Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from loopcore.config import settings
from loopcore.core.errors import StageFailed
from loopcore.core.pipeline.keys import canonical_json
from loopcore.logging_config import get_logger

logger = get_logger(__name__)


class StageName(StrEnum):
    """Names of the algorithm stages."""

    MEAL = "meal"
    IOB = "iob"
    DETERMINE_BASAL = "determine_basal"
    AUTOSENS = "autosens"
    AUTOTUNE_PREP = "autotune_prep"
    AUTOTUNE_CORE = "autotune_core"
    PROFILE = "profile"
    PROFILE_DEFAULTS = "profile_defaults"


class Stage(Protocol):
    """One algorithm step."""

    name: str

    def run(self, inputs: Mapping[str, Any]) -> Any:
        """Compute the stage output from its named inputs."""
        ...


class CallableStage:
    """Stage backed by a Python callable taking the inputs as keyword arguments."""

    def __init__(self, name: str, func: Callable[..., Any]):
        self.name = name
        self._func = func

    def run(self, inputs: Mapping[str, Any]) -> Any:
        return self._func(**inputs)

    def __repr__(self) -> str:
        return f"CallableStage(name={self.name!r})"


class SubprocessStage:
    """Stage backed by an external program."""

    def __init__(self, name: str, command: str | list[str], timeout: float | None = None):
        self.name = name
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        self.timeout = timeout if timeout is not None else settings.stage_timeout_seconds

    def run(self, inputs: Mapping[str, Any]) -> Any:
        with tempfile.TemporaryDirectory(prefix=f"loopcore-{self.name}-") as workdir:
            paths = []
            for position, (input_name, value) in enumerate(inputs.items()):
                path = Path(workdir) / f"{position:02d}_{input_name}.json"
                path.write_text(canonical_json(value), encoding="utf-8")
                paths.append(str(path))

            try:
                completed = subprocess.run(
                    [*self.argv, *paths],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise StageFailed(self.name, f"timed out after {self.timeout}s") from e
            except OSError as e:
                raise StageFailed(self.name, str(e)) from e

        if completed.returncode != 0:
            logger.warning(
                "Stage program exited with an error",
                stage=self.name,
                returncode=completed.returncode,
                stderr=completed.stderr.strip()[-500:],
            )
            raise StageFailed(self.name, f"exit status {completed.returncode}")

        try:
            return json.loads(completed.stdout)
        except json.JSONDecodeError as e:
            raise StageFailed(self.name, "output is not valid JSON") from e

    def __repr__(self) -> str:
        return f"SubprocessStage(name={self.name!r}, argv={self.argv!r})"


class StageSet:
    """One stage per stage name."""

    def __init__(self, stages: Mapping[str, Stage] | None = None):
        self._stages: dict[str, Stage] = dict(stages or {})

    @classmethod
    def from_callables(cls, **funcs: Callable[..., Any]) -> "StageSet":
        """Build a stage set from plain functions keyed by stage name."""
        return cls({name: CallableStage(name, func) for name, func in funcs.items()})

    def __contains__(self, name: str) -> bool:
        return name in self._stages

    def names(self) -> list[str]:
        return sorted(self._stages)

    def get(self, name: str) -> Stage:
        """Return the stage registered under ``name``.

        Raises:
            StageFailed: No stage is configured for ``name``
        """
        stage = self._stages.get(name)
        if stage is None:
            raise StageFailed(name, "no stage configured")
        return stage

    def register(self, stage: Stage) -> None:
        self._stages[stage.name] = stage


def build_stage_set(
    commands: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> StageSet:
    """Build the stage set from configured command lines.

    Args:
        commands: Stage name -> command line (defaults to STAGE_COMMANDS)
        timeout: Per-invocation timeout (defaults to STAGE_TIMEOUT_SECONDS)
    """
    commands = settings.stage_commands if commands is None else commands
    stage_set = StageSet()
    for name, command in commands.items():
        if name not in {stage.value for stage in StageName}:
            logger.warning("Ignoring command for unknown stage", stage=name)
            continue
        stage_set.register(SubprocessStage(name, command, timeout=timeout))

    logger.info("Stage set configured", stages=stage_set.names())
    return stage_set
