"""Subprocess execution in buffered and streaming modes."""

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from typing import Literal

from stagecoach.config import ExecutorConfig

from .command import ShellCommand
from .exceptions import SpawnError
from .models import ExecutionResult

logger = logging.getLogger(__name__)

OutputChannel = Literal["stdout", "stderr"]
OutputCallback = Callable[[OutputChannel, str], Awaitable[None]]


class ProcessRunner:
    """Runs shell commands as OS subprocesses observed from the event loop."""

    def __init__(self, config: ExecutorConfig | None = None):
        self.config = config or ExecutorConfig()

    async def _spawn(self, command: ShellCommand) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command.argv,
                cwd=command.cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group so a kill reaches the whole script
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            command.cleanup()
            logger.error(f"Failed to spawn {command.display} (cwd={command.cwd}): {e}")
            raise SpawnError(
                f"Failed to start process: {e.strerror or e}", command.argv
            ) from e

    async def run(self, command: ShellCommand) -> ExecutionResult:
        """Run a command to completion and return its collected output."""
        return await self.stream(command, on_output=None)

    async def stream(
        self,
        command: ShellCommand,
        on_output: OutputCallback | None,
    ) -> ExecutionResult:
        """Run a command, handing each output chunk to ``on_output`` as it arrives.

        Chunks of one channel reach the callback in the order the process wrote
        them. Resolves once, after the process has exited and both pipes are
        drained.

        Raises:
            SpawnError: The process could not be started.
        """
        process = await self._spawn(command)
        logger.debug(f"Started pid {process.pid}: {command.display}")

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        pumps = [
            asyncio.ensure_future(self._pump(process.stdout, "stdout", stdout_parts, on_output)),
            asyncio.ensure_future(self._pump(process.stderr, "stderr", stderr_parts, on_output)),
        ]

        try:
            await asyncio.gather(*pumps)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process, pumps)
            raise
        except Exception as e:
            # Keep whatever was captured before the failure
            logger.error(f"Output handling failed for pid {process.pid}, killing it: {e}")
            stderr_parts.append(str(e))
            await self._terminate(process, pumps)
            exit_code = process.returncode or 1
        finally:
            command.cleanup()

        return ExecutionResult(
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            exit_code=exit_code,
        )

    @staticmethod
    async def _terminate(
        process: asyncio.subprocess.Process, pumps: list[asyncio.Future]
    ) -> None:
        """Kill the process (and its process group on POSIX) and reap it."""
        for pump in pumps:
            pump.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

        if process.returncode is None:
            try:
                if os.name == "posix":
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        channel: OutputChannel,
        parts: list[str],
        on_output: OutputCallback | None,
    ) -> None:
        if reader is None:
            return

        decoder = codecs.getincrementaldecoder(self.config.encoding)(errors="replace")
        while True:
            data = await reader.read(self.config.chunk_size)
            text = decoder.decode(data, final=not data)
            if text:
                parts.append(text)
                if on_output is not None:
                    await on_output(channel, text)
            if not data:
                break
