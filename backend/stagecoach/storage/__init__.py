"""Storage collaborators for Stagecoach.

This package provides:
- Collaborator protocols (ProjectStore, HistoryRecorder)
- YAML-backed project definitions (data/projects.yaml)
- JSONL execution history (data/history/executions.jsonl)
- In-memory implementations for tests
"""

from .history import JsonlHistoryRecorder, generate_execution_id
from .memory import MemoryHistoryRecorder, MemoryProjectStore
from .protocols import HistoryRecorder, ProjectStore
from .yaml_store import ProjectsFile, YamlProjectStore, normalize_route

__all__ = [
    "HistoryRecorder",
    "ProjectStore",
    "ProjectsFile",
    "YamlProjectStore",
    "normalize_route",
    "JsonlHistoryRecorder",
    "generate_execution_id",
    "MemoryHistoryRecorder",
    "MemoryProjectStore",
]
