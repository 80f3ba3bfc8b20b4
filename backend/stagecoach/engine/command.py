"""Platform-specific shell invocation for stage scripts."""

import logging
import os
import shutil
import sys
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

from stagecoach.config import ExecutorConfig

from .exceptions import UnsupportedPlatformError

logger = logging.getLogger(__name__)

_POSIX_PLATFORMS = ("linux", "darwin", "freebsd", "openbsd", "netbsd")


class ShellCommand(BaseModel):
    """An argv ready for exec, plus the directory to run it in."""

    argv: list[str]
    cwd: str | None = None
    script_path: Path | None = Field(
        default=None, description="Temporary script file to remove after the run"
    )

    @property
    def display(self) -> str:
        """Short human-readable form for logs and history records."""
        return " ".join(self.argv[:-1] + ["<script>"])

    def cleanup(self) -> None:
        if self.script_path is not None:
            self.script_path.unlink(missing_ok=True)
            self.script_path = None


def _resolve_posix_shell(config: ExecutorConfig) -> str:
    if Path(config.posix_shell).is_file() or shutil.which(config.posix_shell):
        return config.posix_shell
    fallback = shutil.which("sh") or "/bin/sh"
    logger.warning(f"Shell {config.posix_shell} not found, falling back to {fallback}")
    return fallback


def _write_batch_file(script: str) -> Path:
    # cmd.exe expects CRLF line endings
    body = "@echo off\r\n" + script.replace("\r\n", "\n").replace("\n", "\r\n")
    fd, path = tempfile.mkstemp(prefix="stagecoach_", suffix=".bat")
    with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
        f.write(body)
    return Path(path)


def build_command(
    script: str,
    working_directory: str | None = None,
    *,
    config: ExecutorConfig | None = None,
    platform: str | None = None,
) -> ShellCommand:
    """Build the invocation for a fully substituted script body.

    On POSIX hosts the script is passed as a single argv element to
    ``<shell> -c``, which is exec'd directly, so the body reaches the shell
    untouched whatever it contains. On Windows it is written to a temporary
    batch file run by ``cmd.exe``. The working directory becomes the process
    cwd.
    """
    config = config or ExecutorConfig()
    platform = platform or sys.platform

    if platform == "win32":
        script_path = _write_batch_file(script)
        return ShellCommand(
            argv=[config.windows_shell, "/d", "/c", str(script_path)],
            cwd=working_directory,
            script_path=script_path,
        )

    if platform.startswith(_POSIX_PLATFORMS):
        return ShellCommand(
            argv=[_resolve_posix_shell(config), "-c", script],
            cwd=working_directory,
        )

    raise UnsupportedPlatformError(f"Unsupported platform: {platform}")
