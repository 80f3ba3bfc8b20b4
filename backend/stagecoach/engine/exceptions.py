"""Exceptions raised by the pipeline execution engine."""


class StagecoachError(Exception):
    """Base exception for all Stagecoach errors."""


class ArgumentError(StagecoachError):
    """A script references a positional argument that was not supplied."""

    def __init__(self, index: int, available: int):
        super().__init__(f"Argument ${index} is not defined")
        self.index = index
        self.available = available


class SpawnError(StagecoachError):
    """The shell process could not be started."""

    def __init__(self, message: str, command: list[str] | None = None):
        super().__init__(message)
        self.command = command or []


class UnsupportedPlatformError(StagecoachError):
    """No shell is known for the host platform."""

    pass


class ParseError(StagecoachError):
    """Auxiliary command output could not be parsed."""

    pass


class HistoryPersistError(StagecoachError):
    """The execution history collaborator failed to record a run."""

    pass


class InvalidCronError(StagecoachError, ValueError):
    """A project's cron expression could not be turned into a trigger."""

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Invalid cron expression '{expression}': {reason}")
        self.expression = expression


class ProjectNotFoundError(StagecoachError, LookupError):
    """The requested project or pipeline does not exist."""

    pass
