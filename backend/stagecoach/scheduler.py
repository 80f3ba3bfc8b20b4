"""Cron triggers for project pipelines.

PipelineScheduler only talks to a CronBackend (schedule a callback for an
expression, cancel the returned handle). The APScheduler-based backend is the
one used by the server.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from stagecoach.config import SchedulerConfig
from stagecoach.engine.exceptions import InvalidCronError, StagecoachError
from stagecoach.engine.models import ExecutionContext, PipelineResult, Project
from stagecoach.engine.runner import PipelineRunner
from stagecoach.storage.protocols import ProjectStore

logger = logging.getLogger(__name__)

_CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_DOW_ITEM = re.compile(r"^(\*|(\d+)(?:-(\d+))?)(?:/(\d+))?$")

CronCallback = Callable[[], Awaitable[Any]]


def _weekday_item(item: str) -> list[str]:
    match = _DOW_ITEM.match(item)
    if match is None:
        # Names and anything else are APScheduler's to validate
        return [item]

    whole, first, last, step = match.groups()
    if whole == "*":
        if step is None:
            return ["*"]
        start, end = 0, 6
    else:
        start = int(first)
        end = int(last) if last is not None else (6 if step is not None else start)

    if start >= len(_CRON_WEEKDAYS) or end >= len(_CRON_WEEKDAYS):
        raise ValueError(f"day of week out of range: {item}")
    if start > end:
        raise ValueError(f"day of week range is reversed: {item}")
    stride = int(step) if step is not None else 1
    if stride == 0:
        raise ValueError(f"day of week step must be positive: {item}")

    return [_CRON_WEEKDAYS[value] for value in range(start, end + 1, stride)]


def _crontab_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field with weekday names.

    crontab counts from Sunday=0 (7 is Sunday again), APScheduler from
    Monday=0, so numeric ranges and steps are expanded into explicit names.
    """
    names: list[str] = []
    for item in field.split(","):
        for name in _weekday_item(item):
            if name not in names:
                names.append(name)
    return ",".join(names)


def build_cron_trigger(expression: str, timezone: str | None = None) -> CronTrigger:
    """Build a trigger from a 5-field crontab or 6-field (seconds first) expression.

    Raises:
        InvalidCronError: Wrong field count or a value APScheduler rejects.
    """
    fields = expression.split()
    if len(fields) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = fields
    elif len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
    else:
        raise InvalidCronError(expression, f"expected 5 or 6 fields, got {len(fields)}")

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            timezone=timezone,
        )
    except ValueError as e:
        raise InvalidCronError(expression, str(e)) from e


def job_id_for(project_id: int) -> str:
    return f"project-{project_id}"


class CronBackend(Protocol):
    """Recurring timer service keyed by cron expressions."""

    @property
    def running(self) -> bool: ...

    def schedule(self, expression: str, callback: CronCallback, *, key: str, name: str) -> Any: ...

    def cancel(self, handle: Any) -> None: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...


class ApschedulerBackend:
    """CronBackend on an APScheduler AsyncIOScheduler; handles are Jobs."""

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.config = config or SchedulerConfig()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.config.timezone)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def schedule(self, expression: str, callback: CronCallback, *, key: str, name: str):
        trigger = build_cron_trigger(expression, self.config.timezone)
        return self.scheduler.add_job(
            callback,
            trigger,
            id=key,
            name=name,
            replace_existing=True,
            coalesce=self.config.coalesce,
            misfire_grace_time=self.config.misfire_grace_seconds,
            max_instances=1,
        )

    def cancel(self, handle) -> None:
        try:
            self.scheduler.remove_job(handle.id)
        except JobLookupError:
            logger.debug(f"Job {handle.id} was already gone")

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)


class PipelineScheduler:
    """Keeps one recurring trigger per project with a cron expression."""

    def __init__(
        self,
        store: ProjectStore,
        runner: PipelineRunner,
        config: SchedulerConfig | None = None,
        backend: CronBackend | None = None,
    ):
        self.store = store
        self.runner = runner
        self.backend = backend or ApschedulerBackend(config)
        # project_id -> backend handle of the active trigger
        self.jobs: dict[int, Any] = {}

    def register(self, project: Project):
        """Add a trigger for the project; no-op without a cron expression."""
        if project.cron_expression is None:
            return None

        project_id = project.id

        async def _fire() -> PipelineResult | None:
            return await self.fire(project_id)

        handle = self.backend.schedule(
            project.cron_expression,
            _fire,
            key=job_id_for(project_id),
            name=f"Pipeline: {project.title}",
        )
        self.jobs[project_id] = handle
        logger.info(f"Registered job: {project.title} ({project.cron_expression})")
        return handle

    def unregister(self, project_id: int) -> bool:
        """Stop the project's trigger. Returns True if one was active."""
        handle = self.jobs.pop(project_id, None)
        if handle is None:
            return False

        self.backend.cancel(handle)
        logger.info(f"Stopped cron job for project {project_id}")
        return True

    def replace(self, project: Project):
        """Stop the current trigger, then register from the project's new expression."""
        self.unregister(project.id)
        return self.register(project)

    async def start(self) -> int:
        """Register every stored project with a cron expression and start ticking."""
        logger.info("Initializing cron jobs...")
        projects = await self.store.load_projects_with_cron()

        registered = 0
        for project in projects:
            try:
                self.register(project)
                registered += 1
            except InvalidCronError as e:
                logger.error(f"Skipping project '{project.title}': {e}")

        if not self.backend.running:
            self.backend.start()
        logger.info(f"Initialized {registered} cron jobs.")
        return registered

    def shutdown(self) -> None:
        if self.backend.running:
            self.backend.shutdown()
            logger.info("Scheduler stopped")

    async def fire(self, project_id: int) -> PipelineResult | None:
        """Run the project's current pipeline as an unattributed scheduled run.

        Goes through the execution gate like any other trigger; a busy gate
        skips this tick.
        """
        try:
            project = await self.store.get_project(project_id)
            pipeline = await self.store.load_pipeline(project_id)
        except StagecoachError as e:
            logger.error(f"Scheduled run for project {project_id} aborted: {e}")
            return None

        context = ExecutionContext(
            user_id=None,
            project_id=project.id,
            working_directory=project.working_directory,
        )
        result = await self.runner.run_buffered(pipeline, context)

        if result.busy:
            logger.warning(
                f"Scheduled run of '{project.title}' skipped: {result.message}"
            )
        elif result.success:
            logger.info(f"Scheduled run of '{project.title}' succeeded")
        else:
            failed = result.failed_stage
            logger.error(
                f"Scheduled run of '{project.title}' failed at stage "
                f"{failed.stage_id if failed else '?'}"
            )
        return result
