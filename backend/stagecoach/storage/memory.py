"""In-memory collaborators, used by tests and embedding callers."""

from uuid import uuid4

from stagecoach.engine.exceptions import ProjectNotFoundError
from stagecoach.engine.models import (
    ExecutionContext,
    ExecutionRecord,
    ExecutionUpdate,
    Pipeline,
    Project,
)

from .yaml_store import normalize_route


class MemoryProjectStore:
    """Dict-backed ProjectStore."""

    def __init__(self, projects: list[Project] | None = None) -> None:
        self._projects: dict[int, Project] = {}
        for project in projects or []:
            self.save(project)

    def save(self, project: Project) -> None:
        route = normalize_route(project.pipeline.trigger_route)
        for other in self._projects.values():
            if other.id != project.id and normalize_route(other.pipeline.trigger_route) == route:
                raise ValueError(f"Duplicate trigger route: {route}")
        project.pipeline.project_id = project.id
        self._projects[project.id] = project

    def delete(self, project_id: int) -> None:
        self._projects.pop(project_id, None)

    async def load_projects(self) -> list[Project]:
        return list(self._projects.values())

    async def load_projects_with_cron(self) -> list[Project]:
        return [p for p in self._projects.values() if p.cron_expression is not None]

    async def get_project(self, project_id: int) -> Project:
        try:
            return self._projects[project_id]
        except KeyError:
            raise ProjectNotFoundError(f"Project {project_id} not found") from None

    async def load_pipeline(self, project_id: int) -> Pipeline:
        return (await self.get_project(project_id)).pipeline

    async def find_by_route(self, trigger_route: str) -> Project:
        wanted = normalize_route(trigger_route)
        for project in self._projects.values():
            if normalize_route(project.pipeline.trigger_route) == wanted:
                return project
        raise ProjectNotFoundError(f"No pipeline is bound to route {wanted}")


class MemoryHistoryRecorder:
    """Dict-backed HistoryRecorder."""

    def __init__(self) -> None:
        self.records: dict[str, ExecutionRecord] = {}

    async def create_execution(self, context: ExecutionContext, command: str) -> str:
        record = ExecutionRecord(
            id=uuid4().hex,
            user_id=context.user_id,
            project_id=context.project_id,
            stage_id=context.stage_id,
            command=command,
            working_directory=context.working_directory,
        )
        self.records[record.id] = record
        return record.id

    async def update_execution(self, record_id: str, update: ExecutionUpdate) -> None:
        self.records[record_id] = self.records[record_id].apply(update)
