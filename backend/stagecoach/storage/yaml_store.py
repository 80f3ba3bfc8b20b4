"""Project definitions read from data/projects.yaml.

The file is re-read on every call so edits take effect on the next run
without restarting the server.
"""

import asyncio
import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from stagecoach.engine.exceptions import ProjectNotFoundError
from stagecoach.engine.models import Pipeline, Project

logger = logging.getLogger(__name__)


class ProjectsFile(BaseModel):
    """Schema of projects.yaml."""

    projects: list[Project] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_keys(self) -> "ProjectsFile":
        seen_ids: set[int] = set()
        seen_routes: set[str] = set()
        for project in self.projects:
            if project.id in seen_ids:
                raise ValueError(f"Duplicate project id: {project.id}")
            route = normalize_route(project.pipeline.trigger_route)
            if route in seen_routes:
                raise ValueError(f"Duplicate trigger route: {route}")
            seen_ids.add(project.id)
            seen_routes.add(route)
            project.pipeline.project_id = project.id
        return self


def normalize_route(route: str) -> str:
    return "/" + route.strip("/")


class YamlProjectStore:
    """ProjectStore backed by a YAML file."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> ProjectsFile:
        if not self.path.exists():
            logger.warning(f"Projects file not found: {self.path}. No projects loaded.")
            return ProjectsFile()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Corrupted YAML in projects file: {e}")
            raise

        if not raw_data:
            logger.warning(f"Empty projects file: {self.path}")
            return ProjectsFile()

        try:
            return ProjectsFile(**raw_data)
        except ValidationError as e:
            logger.error(f"Invalid projects file {self.path}: {e}")
            raise

    async def _read(self) -> ProjectsFile:
        # File and YAML parsing stay off the event loop
        return await asyncio.to_thread(self.load)

    async def load_projects(self) -> list[Project]:
        return (await self._read()).projects

    async def load_projects_with_cron(self) -> list[Project]:
        projects = (await self._read()).projects
        return [p for p in projects if p.cron_expression is not None]

    async def get_project(self, project_id: int) -> Project:
        for project in (await self._read()).projects:
            if project.id == project_id:
                return project
        raise ProjectNotFoundError(f"Project {project_id} not found")

    async def load_pipeline(self, project_id: int) -> Pipeline:
        project = await self.get_project(project_id)
        return project.pipeline

    async def find_by_route(self, trigger_route: str) -> Project:
        wanted = normalize_route(trigger_route)
        for project in (await self._read()).projects:
            if normalize_route(project.pipeline.trigger_route) == wanted:
                return project
        raise ProjectNotFoundError(f"No pipeline is bound to route {wanted}")
