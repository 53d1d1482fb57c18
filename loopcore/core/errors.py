"""Loop error taxonomy.

Every error here is recoverable locally: it aborts at most the current
cycle, poll or append and is surfaced on the error signal. None of them stop
a serial queue.
"""


class LoopCoreError(Exception):
    """Base exception for loop errors."""

    pass


class PipelineError(LoopCoreError):
    """A decision cycle or auxiliary pipeline could not complete."""

    pass


class StageFailed(PipelineError):
    """A stage raised or returned output that could not be parsed.

    Artifacts written by earlier stages of the same run are kept.
    """

    def __init__(self, stage: str, detail: str = ""):
        self.stage = stage
        self.detail = detail
        message = f"Stage '{stage}' failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PumpDriverError(LoopCoreError):
    """Communication with the pump failed."""

    pass


class StoreWriteFailed(LoopCoreError):
    """An event append or a settings write could not be persisted."""

    pass
