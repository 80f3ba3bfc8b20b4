"""Execution history as an append-only JSONL ledger.

Each create or update appends the full record as one JSON line; the latest
line for an id is the current state of that record.
"""

import asyncio
import json
import logging
from pathlib import Path
from uuid import uuid4

from stagecoach.engine.models import ExecutionContext, ExecutionRecord, ExecutionUpdate

logger = logging.getLogger(__name__)


def generate_execution_id() -> str:
    """Generate unique execution record ID with exec_ prefix."""
    return f"exec_{uuid4().hex[:12]}"


class JsonlHistoryRecorder:
    """HistoryRecorder appending to a JSONL file."""

    def __init__(self, path: Path):
        self.path = path
        self._open: dict[str, ExecutionRecord] = {}

    def _append(self, record: ExecutionRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")

    async def create_execution(self, context: ExecutionContext, command: str) -> str:
        record = ExecutionRecord(
            id=generate_execution_id(),
            user_id=context.user_id,
            project_id=context.project_id,
            stage_id=context.stage_id,
            command=command,
            working_directory=context.working_directory,
        )
        await asyncio.to_thread(self._append, record)
        self._open[record.id] = record
        logger.debug(f"Recorded start of execution {record.id}")
        return record.id

    async def update_execution(self, record_id: str, update: ExecutionUpdate) -> None:
        record = self._open.pop(record_id, None)
        if record is None:
            raise KeyError(f"Execution {record_id} not found")

        await asyncio.to_thread(self._append, record.apply(update))
        logger.debug(f"Recorded {update.status} for execution {record_id}")

    def read_records(self) -> list[ExecutionRecord]:
        """Return the latest state of every record, oldest first."""
        if not self.path.exists():
            return []

        records: dict[str, ExecutionRecord] = {}
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    record = ExecutionRecord(**json.loads(line))
                except Exception as e:
                    logger.warning(f"Skipping bad history line {line_number}: {e}")
                    continue
                records[record.id] = record
        return list(records.values())
