"""Git service exceptions."""

from stagecoach.engine.exceptions import StagecoachError


class GitError(StagecoachError):
    """A git command exited non-zero or was given an unsafe ref."""

    def __init__(self, message: str, stderr: str = "", exit_code: int | None = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class InvalidRefError(GitError):
    """Branch or commit name rejected before reaching the shell."""

    pass
