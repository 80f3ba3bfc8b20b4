"""Pipeline orchestration: gate, per-stage transformation, short-circuit."""

import logging
import time
from typing import NamedTuple

from stagecoach.config import ExecutorConfig
from stagecoach.storage.protocols import HistoryRecorder

from .command import build_command
from .events import ExecutionEventBus
from .exceptions import HistoryPersistError, StagecoachError
from .gate import ExecutionGate
from .models import (
    BUSY_MESSAGE,
    SKIPPED_MESSAGE,
    ExecutionContext,
    ExecutionEvent,
    ExecutionResult,
    ExecutionUpdate,
    Pipeline,
    PipelineResult,
    Stage,
    StageResult,
    VariableMap,
)
from .process import OutputChannel, ProcessRunner
from .substitution import substitute_args
from .variables import SentinelFilter, extract_captured, process_directives

logger = logging.getLogger(__name__)


class _StageOutcome(NamedTuple):
    result: StageResult
    variables: VariableMap
    error: str | None  # set when the stage raised instead of running


class _RunOutcome(NamedTuple):
    result: PipelineResult
    error: str | None


class PipelineRunner:
    """Runs the stages of one pipeline at a time on this host."""

    def __init__(
        self,
        process_runner: ProcessRunner,
        gate: ExecutionGate,
        events: ExecutionEventBus,
        history: HistoryRecorder | None = None,
        config: ExecutorConfig | None = None,
    ):
        self.process_runner = process_runner
        self.gate = gate
        self.events = events
        self.history = history
        self.config = config or process_runner.config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_buffered(
        self, pipeline: Pipeline, context: ExecutionContext
    ) -> PipelineResult:
        """Run every stage and return the aggregate result.

        Returns a busy result, without running anything, while another run
        holds the gate.
        """
        with self.gate.claim() as acquired:
            if not acquired:
                return PipelineResult.busy_response()

            outcome = await self._run_stages(pipeline, context, execution_id=None)
            return outcome.result

    async def run_streaming(
        self, pipeline: Pipeline, context: ExecutionContext, execution_id: str
    ) -> PipelineResult:
        """Run every stage, publishing live output under ``execution_id``.

        Exactly one terminal event is published: ``close`` with the
        aggregated output, or ``error`` when the gate was busy or a stage
        could not be run at all.
        """
        with self.gate.claim() as acquired:
            if not acquired:
                self._publish_error(execution_id, BUSY_MESSAGE)
                return PipelineResult.busy_response()

            try:
                outcome = await self._run_stages(pipeline, context, execution_id)
            except Exception as e:
                self._publish_error(execution_id, str(e))
                raise

        if outcome.error is not None:
            self._publish_error(execution_id, outcome.error)
        else:
            self._publish_close(execution_id, outcome.result.results)
        return outcome.result

    async def substitute_and_run(
        self,
        script: str,
        args: list[str],
        working_directory: str | None = None,
    ) -> ExecutionResult:
        """Run a short command template with positional arguments.

        Does not take the execution gate.

        Raises:
            ArgumentError: A ``$N`` reference has no matching argument.
            SpawnError: The shell could not be started.
        """
        command = build_command(
            substitute_args(script, args), working_directory, config=self.config
        )
        return await self.process_runner.run(command)

    async def substitute_and_stream(
        self,
        script: str,
        args: list[str],
        working_directory: str | None,
        execution_id: str,
    ) -> ExecutionResult:
        """Streaming counterpart of :meth:`substitute_and_run`."""
        try:
            command = build_command(
                substitute_args(script, args), working_directory, config=self.config
            )
            result = await self.process_runner.stream(
                command, self._publisher(execution_id, stage_id=None, sentinel=None)
            )
        except StagecoachError as e:
            self._publish_error(execution_id, str(e))
            raise

        self.events.finish(
            ExecutionEvent(
                type="close",
                execution_id=execution_id,
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.exit_code,
            )
        )
        return result

    # ------------------------------------------------------------------
    # Stage sequencing
    # ------------------------------------------------------------------

    async def _run_stages(
        self,
        pipeline: Pipeline,
        context: ExecutionContext,
        execution_id: str | None,
    ) -> _RunOutcome:
        results: list[StageResult] = []
        variables: VariableMap = {}
        failed = False
        error: str | None = None

        logger.info(
            f"Running pipeline '{pipeline.trigger_route}' "
            f"({len(pipeline.stages)} stages, project={context.project_id}, "
            f"user={context.user_id})"
        )

        for position, stage in enumerate(pipeline.stages, 1):
            if failed:
                results.append(
                    StageResult(
                        stage_id=stage.stage_id,
                        stdout="",
                        stderr=SKIPPED_MESSAGE,
                        exit_code=None,
                    )
                )
                continue

            logger.info(
                f"Executing stage {position}/{len(pipeline.stages)}: {stage.stage_id}"
            )
            outcome = await self._execute_stage(
                stage, pipeline, context, variables, execution_id
            )
            results.append(outcome.result)
            variables = outcome.variables

            if outcome.result.exit_code != 0:
                failed = True
                error = outcome.error
                logger.warning(
                    f"Stage {stage.stage_id} failed "
                    f"(exit_code={outcome.result.exit_code}), skipping the rest"
                )

        logger.info(
            f"Pipeline '{pipeline.trigger_route}' finished: "
            f"{'failed' if failed else 'success'}"
        )
        return _RunOutcome(PipelineResult(success=not failed, results=results), error)

    async def _execute_stage(
        self,
        stage: Stage,
        pipeline: Pipeline,
        context: ExecutionContext,
        variables: VariableMap,
        execution_id: str | None,
    ) -> _StageOutcome:
        stage_context = context.model_copy(update={"stage_id": stage.id})
        record_id: str | None = None
        started = time.monotonic()

        try:
            processed = process_directives(
                substitute_args(stage.script, pipeline.args), variables
            )
            command = build_command(
                processed.script, context.working_directory, config=self.config
            )
            record_id = await self._record_start(stage_context, processed.script)

            if execution_id is None:
                execution = await self.process_runner.run(command)
            else:
                sentinel = SentinelFilter(processed.captures) if processed.captures else None
                execution = await self.process_runner.stream(
                    command, self._publisher(execution_id, stage.stage_id, sentinel)
                )
                if sentinel is not None:
                    self._publish_output(
                        execution_id, stage.stage_id, "stdout", sentinel.flush()
                    )
        except Exception as e:
            if isinstance(e, StagecoachError):
                logger.error(f"Stage {stage.stage_id} could not run: {e}")
            else:
                logger.error(f"Stage {stage.stage_id} raised: {e}", exc_info=True)
            await self._record_finish(record_id, started, "", str(e), 1)
            result = StageResult(stage_id=stage.stage_id, stdout="", stderr=str(e), exit_code=1)
            return _StageOutcome(result, variables, str(e))

        stdout, updated = extract_captured(
            execution.stdout, processed.captures, processed.variables
        )
        await self._record_finish(
            record_id, started, stdout, execution.stderr, execution.exit_code
        )

        result = StageResult(
            stage_id=stage.stage_id,
            stdout=stdout,
            stderr=execution.stderr,
            exit_code=execution.exit_code,
        )
        return _StageOutcome(result, updated, None)

    # ------------------------------------------------------------------
    # Event publishing
    # ------------------------------------------------------------------

    def _publisher(
        self,
        execution_id: str,
        stage_id: str | None,
        sentinel: SentinelFilter | None,
    ):
        async def on_output(channel: OutputChannel, chunk: str) -> None:
            if channel == "stdout" and sentinel is not None:
                chunk = sentinel.feed(chunk)
            self._publish_output(execution_id, stage_id, channel, chunk)

        return on_output

    def _publish_output(
        self,
        execution_id: str,
        stage_id: str | None,
        channel: OutputChannel,
        chunk: str,
    ) -> None:
        if chunk:
            self.events.publish(
                ExecutionEvent(
                    type=channel, execution_id=execution_id, stage_id=stage_id, data=chunk
                )
            )

    def _publish_close(self, execution_id: str, results: list[StageResult]) -> None:
        executed = [r for r in results if r.exit_code is not None]
        self.events.finish(
            ExecutionEvent(
                type="close",
                execution_id=execution_id,
                stdout="".join(r.stdout for r in executed),
                stderr="".join(r.stderr for r in executed),
                exit_code=executed[-1].exit_code if executed else 0,
            )
        )

    def _publish_error(self, execution_id: str, message: str) -> None:
        self.events.finish(
            ExecutionEvent(type="error", execution_id=execution_id, message=message)
        )

    # ------------------------------------------------------------------
    # History (best effort)
    # ------------------------------------------------------------------

    async def _record_start(
        self, context: ExecutionContext, command: str
    ) -> str | None:
        if self.history is None or context.user_id is None:
            return None

        try:
            return await self.history.create_execution(context, command)
        except Exception as e:
            error = HistoryPersistError(f"Failed to create execution record: {e}")
            logger.warning(str(error))
            return None

    async def _record_finish(
        self,
        record_id: str | None,
        started: float,
        stdout: str,
        stderr: str,
        exit_code: int | None,
    ) -> None:
        if self.history is None or record_id is None:
            return

        update = ExecutionUpdate(
            status="success" if exit_code == 0 else "failed",
            output=stdout,
            error_output=stderr,
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            await self.history.update_execution(record_id, update)
        except Exception as e:
            error = HistoryPersistError(f"Failed to update execution {record_id}: {e}")
            logger.warning(str(error))
