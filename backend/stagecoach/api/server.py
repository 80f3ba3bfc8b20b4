"""FastAPI server exposing pipeline triggers, live output and git operations.

Authentication is handled upstream; the caller's identity arrives in the
``X-User-Id`` header and is only used to attribute execution history.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from stagecoach import __version__
from stagecoach.config import Settings, get_settings
from stagecoach.engine import (
    BUSY_MESSAGE,
    ExecutionContext,
    ExecutionEventBus,
    ExecutionGate,
    PipelineRunner,
    ProcessRunner,
    Project,
    ProjectNotFoundError,
    StagecoachError,
)
from stagecoach.scheduler import PipelineScheduler
from stagecoach.services.git import GitError, GitService, InvalidRefError
from stagecoach.storage import (
    HistoryRecorder,
    JsonlHistoryRecorder,
    ProjectStore,
    YamlProjectStore,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class BranchRequest(BaseModel):
    branch: str


class CommitRequest(BaseModel):
    commit_hash: str


# ============================================================================
# Helpers
# ============================================================================


async def _get_project(request: Request, project_id: int) -> Project:
    store: ProjectStore = request.app.state.store
    try:
        return await store.get_project(project_id)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _require_working_directory(project: Project) -> str:
    if not project.working_directory:
        raise HTTPException(
            status_code=400,
            detail=f"Project {project.id} has no working directory",
        )
    return project.working_directory


def _git_failure(action: str, error: Exception) -> JSONResponse:
    details = error.stderr if isinstance(error, GitError) and error.stderr else str(error)
    return JSONResponse(
        status_code=500, content={"error": f"Failed to {action}", "details": details}
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", tags=["Health"])
async def health_check(request: Request) -> dict[str, Any]:
    """Liveness plus a view of the gate and scheduler."""
    state = request.app.state
    return {
        "status": "healthy",
        "service": "stagecoach",
        "version": __version__,
        "executing": state.gate.is_held,
        "scheduled_jobs": len(state.scheduler.jobs),
    }


# ============================================================================
# Pipeline triggers
# ============================================================================


@router.api_route("/hooks/{trigger_route:path}", methods=["GET", "POST"], tags=["Pipelines"])
async def trigger_pipeline(
    request: Request,
    trigger_route: str,
    x_user_id: int | None = Header(default=None),
):
    """Run the pipeline bound to a trigger route and wait for the result."""
    state = request.app.state
    try:
        project = await state.store.find_by_route(trigger_route)
        pipeline = await state.store.load_pipeline(project.id)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    context = ExecutionContext(
        user_id=x_user_id,
        project_id=project.id,
        working_directory=project.working_directory,
    )
    result = await state.runner.run_buffered(pipeline, context)

    if result.busy:
        return JSONResponse(status_code=409, content={"error": result.message})

    return JSONResponse(
        status_code=200 if result.success else 500,
        content={
            "message": f"Executed route: {pipeline.trigger_route}",
            "project": project.title,
            "success": result.success,
            "results": [r.model_dump() for r in result.results],
        },
    )


@router.post("/projects/{project_id}/executions", status_code=202, tags=["Pipelines"])
async def start_execution(
    request: Request,
    project_id: int,
    x_user_id: int | None = Header(default=None),
) -> dict[str, str]:
    """Start a streaming run; follow it on /ws/executions/{execution_id}."""
    state = request.app.state
    project = await _get_project(request, project_id)

    if state.gate.is_held:
        raise HTTPException(status_code=409, detail=BUSY_MESSAGE)

    pipeline = await state.store.load_pipeline(project.id)
    context = ExecutionContext(
        user_id=x_user_id,
        project_id=project.id,
        working_directory=project.working_directory,
    )
    execution_id = uuid4().hex

    task = asyncio.create_task(
        state.runner.run_streaming(pipeline, context, execution_id)
    )
    state.background_tasks.add(task)
    task.add_done_callback(state.background_tasks.discard)

    logger.info(f"Started execution {execution_id} for project '{project.title}'")
    return {"execution_id": execution_id}


@router.websocket("/ws/executions/{execution_id}")
async def execution_events(websocket: WebSocket, execution_id: str):
    """
    Live output of one execution.

    Server sends, in production order:
    - {"type": "stdout" | "stderr", "stage_id": "...", "data": "..."}
    - {"type": "ping"} while idle
    - one terminal {"type": "close", "stdout", "stderr", "exit_code"}
      or {"type": "error", "message"}
    """
    state = websocket.app.state
    await websocket.accept()
    subscription = state.events.subscribe(execution_id)

    try:
        async for event in subscription.events(state.settings.executor.keepalive_seconds):
            await websocket.send_json(event.model_dump(mode="json", exclude_none=True))
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f"Subscriber of {execution_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error on {execution_id}: {e}")
    finally:
        subscription.close()


# ============================================================================
# Git operations
# ============================================================================


@router.get("/projects/{project_id}/gitlog", tags=["Git"])
async def get_git_log(request: Request, project_id: int, limit: int = 50):
    project = await _get_project(request, project_id)
    working_directory = _require_working_directory(project)
    try:
        entries = await request.app.state.git.get_log(working_directory, limit)
    except StagecoachError as e:
        return _git_failure("fetch git log", e)

    return {"project": project.title, "git_log": [e.model_dump() for e in entries]}


@router.get("/projects/{project_id}/branches", tags=["Git"])
async def get_branches(request: Request, project_id: int):
    project = await _get_project(request, project_id)
    working_directory = _require_working_directory(project)
    try:
        listing = await request.app.state.git.list_branches(working_directory)
    except StagecoachError as e:
        return _git_failure("list git branches", e)

    return listing.model_dump()


@router.post("/projects/{project_id}/switch-branch", tags=["Git"])
async def switch_branch(request: Request, project_id: int, body: BranchRequest):
    project = await _get_project(request, project_id)
    working_directory = _require_working_directory(project)
    try:
        await request.app.state.git.switch_branch(working_directory, body.branch)
    except InvalidRefError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StagecoachError as e:
        return _git_failure("switch git branch", e)

    return {"message": f"Switched to branch {body.branch}"}


@router.post("/projects/{project_id}/switch-to-head", tags=["Git"])
async def switch_to_head(request: Request, project_id: int, body: BranchRequest):
    project = await _get_project(request, project_id)
    working_directory = _require_working_directory(project)
    try:
        await request.app.state.git.switch_to_head(working_directory, body.branch)
    except InvalidRefError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StagecoachError as e:
        return _git_failure("switch to branch head", e)

    return {"message": f"Switched to the head of {body.branch}"}


@router.post("/projects/{project_id}/revert-commit", tags=["Git"])
async def revert_to_commit(request: Request, project_id: int, body: CommitRequest):
    project = await _get_project(request, project_id)
    working_directory = _require_working_directory(project)
    try:
        await request.app.state.git.checkout_commit(working_directory, body.commit_hash)
    except InvalidRefError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StagecoachError as e:
        return _git_failure("revert to commit", e)

    return {"message": f"Checked out {body.commit_hash}"}


# ============================================================================
# Application factory
# ============================================================================


def create_app(
    settings: Settings | None = None,
    store: ProjectStore | None = None,
    history: HistoryRecorder | None = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """Build the app with one set of engine components shared by every route."""
    settings = settings or get_settings()
    store = store or YamlProjectStore(settings.projects_path)
    if history is None and settings.storage.record_history:
        history = JsonlHistoryRecorder(settings.history_path)

    gate = ExecutionGate()
    events = ExecutionEventBus(settings.executor.finished_executions_kept)
    runner = PipelineRunner(ProcessRunner(settings.executor), gate, events, history)
    scheduler = PipelineScheduler(store, runner, settings.scheduler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Stagecoach API server")
        if start_scheduler:
            await scheduler.start()
        yield
        logger.info("Shutting down Stagecoach API server")
        scheduler.shutdown()

    app = FastAPI(
        title="Stagecoach API",
        description="Run staged deployment pipelines on this host",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.gate = gate
    app.state.events = events
    app.state.runner = runner
    app.state.scheduler = scheduler
    app.state.git = GitService(runner)
    app.state.background_tasks = set()

    app.include_router(router)
    return app
