"""Collaborator interfaces consumed by the engine.

Structural typing only: any object with these coroutines can be injected.
"""

from typing import Protocol, runtime_checkable

from stagecoach.engine.models import (
    ExecutionContext,
    ExecutionUpdate,
    Pipeline,
    Project,
)


@runtime_checkable
class ProjectStore(Protocol):
    """Read access to stored projects and their pipelines."""

    async def load_projects_with_cron(self) -> list[Project]: ...

    async def load_pipeline(self, project_id: int) -> Pipeline: ...

    async def get_project(self, project_id: int) -> Project: ...

    async def find_by_route(self, trigger_route: str) -> Project: ...


@runtime_checkable
class HistoryRecorder(Protocol):
    """Best-effort execution history sink."""

    async def create_execution(self, context: ExecutionContext, command: str) -> str: ...

    async def update_execution(self, record_id: str, update: ExecutionUpdate) -> None: ...
