"""Shared fixtures: engine components wired with in-memory collaborators."""

import pytest

from stagecoach.config import ExecutorConfig
from stagecoach.engine import (
    ExecutionContext,
    ExecutionEventBus,
    ExecutionGate,
    Pipeline,
    PipelineRunner,
    ProcessRunner,
    Project,
    Stage,
)
from stagecoach.storage import MemoryHistoryRecorder, MemoryProjectStore


def build_pipeline(*scripts: str, args: list[str] | None = None, route: str = "/test/deploy") -> Pipeline:
    return Pipeline(
        id=1,
        trigger_route=route,
        args=args or [],
        stages=[
            Stage(id=i, stage_id=f"stage-{i}", script=script, order=i)
            for i, script in enumerate(scripts, 1)
        ],
    )


@pytest.fixture
def make_pipeline():
    return build_pipeline


@pytest.fixture
def make_project():
    def _make(
        *scripts: str,
        project_id: int = 1,
        cron_expression: str | None = None,
        working_directory: str | None = None,
        args: list[str] | None = None,
    ) -> Project:
        pipeline = build_pipeline(*scripts, args=args, route=f"/project-{project_id}/deploy")
        pipeline.id = project_id
        return Project(
            id=project_id,
            title=f"Project {project_id}",
            working_directory=working_directory,
            pipeline=pipeline,
            cron_expression=cron_expression,
        )

    return _make


@pytest.fixture
def history() -> MemoryHistoryRecorder:
    return MemoryHistoryRecorder()


@pytest.fixture
def runner(history) -> PipelineRunner:
    return PipelineRunner(
        ProcessRunner(ExecutorConfig()),
        ExecutionGate(),
        ExecutionEventBus(),
        history,
    )


@pytest.fixture
def store() -> MemoryProjectStore:
    return MemoryProjectStore()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(user_id=None, project_id=1)
