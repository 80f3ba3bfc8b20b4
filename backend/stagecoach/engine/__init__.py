"""Pipeline execution engine.

This package provides:
- Script transformation (positional arguments, #DEFINE variable directives)
- Shell command construction per host platform
- Buffered and streaming subprocess execution
- Per-execution event broadcasting
- The single-flight execution gate and the pipeline runner
"""

from .command import ShellCommand, build_command
from .events import ExecutionEventBus, Subscription
from .exceptions import (
    ArgumentError,
    HistoryPersistError,
    InvalidCronError,
    ParseError,
    ProjectNotFoundError,
    SpawnError,
    StagecoachError,
    UnsupportedPlatformError,
)
from .gate import ExecutionGate
from .models import (
    BUSY_MESSAGE,
    SKIPPED_MESSAGE,
    ExecutionContext,
    ExecutionEvent,
    ExecutionRecord,
    ExecutionResult,
    ExecutionUpdate,
    Pipeline,
    PipelineResult,
    Project,
    Stage,
    StageResult,
    VariableMap,
)
from .process import ProcessRunner
from .runner import PipelineRunner
from .substitution import substitute_args
from .variables import (
    ProcessedScript,
    SentinelFilter,
    expand_variables,
    extract_captured,
    process_directives,
)

__all__ = [
    # Script transformation
    "substitute_args",
    "process_directives",
    "extract_captured",
    "expand_variables",
    "ProcessedScript",
    "SentinelFilter",
    # Execution
    "ShellCommand",
    "build_command",
    "ProcessRunner",
    "ExecutionEventBus",
    "Subscription",
    "ExecutionGate",
    "PipelineRunner",
    # Models
    "BUSY_MESSAGE",
    "SKIPPED_MESSAGE",
    "Stage",
    "Pipeline",
    "Project",
    "ExecutionContext",
    "ExecutionEvent",
    "ExecutionRecord",
    "ExecutionResult",
    "ExecutionUpdate",
    "PipelineResult",
    "StageResult",
    "VariableMap",
    # Errors
    "StagecoachError",
    "ArgumentError",
    "SpawnError",
    "ParseError",
    "HistoryPersistError",
    "InvalidCronError",
    "ProjectNotFoundError",
    "UnsupportedPlatformError",
]
