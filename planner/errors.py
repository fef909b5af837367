"""Error taxonomy for the rollover engine."""


class RolloverError(Exception):
    """Base class for rollover engine failures."""


class ConfigurationError(RolloverError):
    """A user's timezone identifier is unknown or invalid."""

    def __init__(self, timezone: str | None, message: str | None = None):
        self.timezone = timezone
        super().__init__(message or f"unknown timezone: {timezone!r}")


class StorageUnavailable(RolloverError):
    """The task store could not be reached; the current user's run is aborted."""


class TransactionConflict(RolloverError):
    """A concurrent rollover already moved this task. Treated as a no-op."""

    def __init__(self, task_id: int, message: str | None = None):
        self.task_id = task_id
        super().__init__(message or f"task {task_id} already rolled by a concurrent run")


class PartialTaskFailure(RolloverError):
    """A single task could not be rolled for a data reason (e.g. a constraint)."""

    def __init__(self, task_id: int, message: str | None = None):
        self.task_id = task_id
        super().__init__(message or f"task {task_id} could not be rolled")
