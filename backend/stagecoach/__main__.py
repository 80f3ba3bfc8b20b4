"""Stagecoach CLI entry point."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

load_dotenv(Path.cwd() / ".env")

from stagecoach import __version__
from stagecoach.config import get_settings
from stagecoach.engine import (
    ExecutionContext,
    ExecutionEventBus,
    ExecutionGate,
    PipelineRunner,
    ProcessRunner,
    StagecoachError,
)
from stagecoach.scheduler import PipelineScheduler
from stagecoach.storage import JsonlHistoryRecorder, YamlProjectStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)

CONFIG_TEMPLATE = """# Stagecoach Configuration
# Secrets belong in .env (STAGECOACH_LOGFIRE_TOKEN), not here.

server:
  host: 0.0.0.0
  port: 3000
  allowed_origins:
    - http://localhost:5173

executor:
  posix_shell: /bin/bash
  windows_shell: cmd.exe
  keepalive_seconds: 30

scheduler:
  timezone: null
  misfire_grace_seconds: 60

storage:
  projects_file: projects.yaml
  history_file: history/executions.jsonl
  record_history: true
"""

PROJECTS_TEMPLATE = """# Stagecoach Projects
# Each project owns one pipeline. Stages run in the order listed.
# Scripts may use $1..$N for pipeline args and #DEFINE NAME=value directives.

projects:
  - id: 1
    title: Example
    working_directory: .
    cron_expression: null  # e.g. "0 3 * * *"
    pipeline:
      id: 1
      trigger_route: /example/deploy
      args: [main]
      stages:
        - id: 1
          stage_id: checkout
          script: git status --short --branch
        - id: 2
          stage_id: build
          script: |
            #DEFINE STARTED=$(date +%s)
            echo "Building branch $1 at #STARTED"
"""


def _init_logfire() -> None:
    """Initialize Logfire if available, without failing commands."""
    try:
        from stagecoach.observability import initialize_logfire

        initialize_logfire(get_settings())
    except Exception as e:
        logger.warning(f"Failed to initialize Logfire: {e}")


def _build_runner(settings) -> PipelineRunner:
    history = None
    if settings.storage.record_history:
        history = JsonlHistoryRecorder(settings.history_path)
    return PipelineRunner(
        ProcessRunner(settings.executor),
        ExecutionGate(),
        ExecutionEventBus(settings.executor.finished_executions_kept),
        history,
    )


def cmd_init(args: argparse.Namespace) -> int:
    """Create the data directory with config and project templates."""
    data_dir = Path(args.data_dir).resolve()

    try:
        (data_dir / "history").mkdir(parents=True, exist_ok=True)
        logger.info(f"Created data directory: {data_dir}")

        for name, template in (
            ("config.yaml", CONFIG_TEMPLATE),
            ("projects.yaml", PROJECTS_TEMPLATE),
        ):
            path = data_dir / name
            if path.exists():
                logger.info(f"File already exists: {path}")
                continue
            path.write_text(template, encoding="utf-8")
            logger.info(f"Created template: {path}")

        print(f"\n✓ Data directory initialized at {data_dir}")
        print("\nNext steps:")
        print("1. Define your pipelines in data/projects.yaml")
        print("2. Run 'python -m stagecoach config' to verify configuration")
        print("3. Run 'python -m stagecoach serve' to start the server\n")
        return 0

    except Exception as e:
        logger.error(f"Failed to initialize: {e}")
        print(f"\n❌ Initialization failed: {e}\n")
        return 1


def cmd_config(args: argparse.Namespace) -> int:
    """Display merged configuration."""
    try:
        settings = get_settings()

        print("\n=== Stagecoach Configuration ===\n")
        print(f"Data Directory: {settings.data_dir}\n")

        print("Server:")
        print(f"  Listen: {settings.server.host}:{settings.server.port}")
        print(f"  Allowed Origins: {', '.join(settings.server.allowed_origins)}\n")

        print("Executor:")
        print(f"  POSIX Shell: {settings.executor.posix_shell}")
        print(f"  Windows Shell: {settings.executor.windows_shell}")
        print(f"  Keepalive: {settings.executor.keepalive_seconds}s\n")

        print("Scheduler:")
        print(f"  Timezone: {settings.scheduler.timezone or 'local'}")
        print(f"  Misfire Grace: {settings.scheduler.misfire_grace_seconds}s\n")

        print("Storage:")
        print(f"  Projects: {settings.projects_path}")
        print(f"  History: {settings.history_path if settings.storage.record_history else 'disabled'}\n")

        print(f"Logfire: {'✓ Set' if settings.logfire_token else '✗ Not set'}\n")
        return 0

    except ValidationError as e:
        print("\n❌ Configuration Error:\n")
        for error in e.errors():
            print(f"  • {'.'.join(str(x) for x in error['loc'])}: {error['msg']}")
        print()
        return 1
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        print(f"\n❌ Failed to load configuration: {e}\n")
        return 1


async def _run_project(project_id: int) -> int:
    settings = get_settings()
    store = YamlProjectStore(settings.projects_path)
    project = await store.get_project(project_id)
    pipeline = await store.load_pipeline(project_id)
    runner = _build_runner(settings)

    print(f"\n=== {project.title} ({pipeline.trigger_route}) ===\n")
    context = ExecutionContext(
        project_id=project.id, working_directory=project.working_directory
    )
    result = await runner.run_buffered(pipeline, context)

    for stage in result.results:
        status = "skipped" if stage.skipped else f"exit {stage.exit_code}"
        print(f"[{stage.stage_id}] {status}")
        if stage.stdout:
            print(stage.stdout.rstrip("\n"))
        if stage.stderr:
            print(stage.stderr.rstrip("\n"), file=sys.stderr)

    print(f"\n{'✓ Pipeline succeeded' if result.success else '❌ Pipeline failed'}\n")
    return 0 if result.success else 1


def cmd_run(args: argparse.Namespace) -> int:
    """Run one project's pipeline once, in the foreground."""
    _init_logfire()

    try:
        return asyncio.run(_run_project(args.project_id))
    except StagecoachError as e:
        print(f"\n❌ {e}\n")
        return 1
    except Exception as e:
        logger.error(f"Run failed: {e}", exc_info=True)
        print(f"\n❌ Run failed: {e}\n")
        return 1


async def _list_schedule() -> int:
    settings = get_settings()
    store = YamlProjectStore(settings.projects_path)
    scheduler = PipelineScheduler(store, _build_runner(settings), settings.scheduler)
    projects = await store.load_projects_with_cron()

    print("\n=== Scheduled Pipelines ===\n")
    if not projects:
        print("  (None)\n")
        return 0

    exit_code = 0
    for project in projects:
        try:
            job = scheduler.register(project)
            print(f"  {project.title}: {project.cron_expression} -> {job.trigger}")
        except StagecoachError as e:
            print(f"  {project.title}: ❌ {e}")
            exit_code = 1
    print()
    return exit_code


def cmd_schedule(args: argparse.Namespace) -> int:
    """List projects with a cron expression and validate their triggers."""
    try:
        return asyncio.run(_list_schedule())
    except Exception as e:
        logger.error(f"Failed to read schedule: {e}")
        print(f"\n❌ Failed to read schedule: {e}\n")
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server with the cron scheduler."""
    import uvicorn

    from stagecoach.api.server import create_app
    from stagecoach.observability import initialize_logfire

    try:
        if args.debug:
            logging.getLogger().setLevel(logging.DEBUG)

        settings = get_settings()
        app = create_app(settings)
        initialize_logfire(settings, app)

        print("\n=== Stagecoach ===\n")
        print(f"Version: {__version__}")
        print(f"Data Directory: {settings.data_dir}")
        print(f"Listening on {settings.server.host}:{settings.server.port}\n")

        uvicorn.run(
            app,
            host=args.host or settings.server.host,
            port=args.port or settings.server.port,
            log_level="debug" if args.debug else "info",
        )
        return 0

    except (KeyboardInterrupt, SystemExit):
        logger.info("Received interrupt signal")
        return 0
    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        print(f"\n❌ Server failed: {e}\n")
        return 1


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Stagecoach: self-hosted runner for staged deployment pipelines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Stagecoach {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_init = subparsers.add_parser(
        "init",
        help="Initialize data directory, config and projects templates",
    )
    parser_init.add_argument(
        "--data-dir",
        default="data",
        help="Directory to create (default: ./data)",
    )
    parser_init.set_defaults(func=cmd_init)

    parser_config = subparsers.add_parser(
        "config",
        help="Display merged configuration",
    )
    parser_config.set_defaults(func=cmd_config)

    parser_run = subparsers.add_parser(
        "run",
        help="Run one project's pipeline once in the foreground",
    )
    parser_run.add_argument(
        "project_id",
        type=int,
        help="Project ID from projects.yaml",
    )
    parser_run.set_defaults(func=cmd_run)

    parser_schedule = subparsers.add_parser(
        "schedule",
        help="List cron-triggered pipelines and validate their expressions",
    )
    parser_schedule.set_defaults(func=cmd_schedule)

    parser_serve = subparsers.add_parser(
        "serve",
        help="Start the API server and the cron scheduler",
    )
    parser_serve.add_argument("--host", default=None, help="Override server.host")
    parser_serve.add_argument("--port", type=int, default=None, help="Override server.port")
    parser_serve.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args()

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
