"""
Unit Tests: Project store and execution history

Test cases:
- projects.yaml parsing, cron filter, route lookup, stage ordering
- Duplicate routes and ids rejected
- Missing or empty projects file yields no projects
- JSONL history: create, update, latest-state read back
- File reads and appends run in worker threads
- In-memory collaborators satisfy the protocols
"""

import asyncio
import threading
from pathlib import Path

import pytest
from pydantic import ValidationError

from stagecoach.engine import ExecutionContext, ExecutionUpdate, ProjectNotFoundError
from stagecoach.storage import (
    HistoryRecorder,
    JsonlHistoryRecorder,
    MemoryHistoryRecorder,
    MemoryProjectStore,
    ProjectStore,
    YamlProjectStore,
    generate_execution_id,
    normalize_route,
)

PROJECTS_YAML = """
projects:
  - id: 1
    title: API
    working_directory: /srv/api
    cron_expression: "0 3 * * *"
    pipeline:
      id: 10
      trigger_route: api/deploy/
      args: [main]
      stages:
        - {id: 2, stage_id: build, script: make build, order: 1}
        - {id: 1, stage_id: fetch, script: git pull, order: 0}
  - id: 2
    title: Docs
    cron_expression: "  "
    pipeline:
      id: 20
      trigger_route: /docs/deploy
      stages:
        - {id: 3, stage_id: publish, script: make docs}
"""


@pytest.fixture
def yaml_store(tmp_path: Path) -> YamlProjectStore:
    path = tmp_path / "projects.yaml"
    path.write_text(PROJECTS_YAML, encoding="utf-8")
    return YamlProjectStore(path)


class TestYamlProjectStore:
    def test_loads_projects(self, yaml_store) -> None:
        projects = asyncio.run(yaml_store.load_projects())

        assert [p.title for p in projects] == ["API", "Docs"]
        assert projects[0].pipeline.project_id == 1

    def test_blank_cron_is_not_scheduled(self, yaml_store) -> None:
        projects = asyncio.run(yaml_store.load_projects_with_cron())

        assert [p.id for p in projects] == [1]

    def test_stages_in_creation_order(self, yaml_store) -> None:
        pipeline = asyncio.run(yaml_store.load_pipeline(1))

        assert [s.stage_id for s in pipeline.stages] == ["fetch", "build"]
        assert pipeline.args == ["main"]

    def test_route_lookup_ignores_slashes(self, yaml_store) -> None:
        assert asyncio.run(yaml_store.find_by_route("/api/deploy")).id == 1
        assert asyncio.run(yaml_store.find_by_route("docs/deploy/")).id == 2

    def test_unknown_project_and_route(self, yaml_store) -> None:
        with pytest.raises(ProjectNotFoundError):
            asyncio.run(yaml_store.get_project(99))
        with pytest.raises(ProjectNotFoundError):
            asyncio.run(yaml_store.find_by_route("/nope"))

    def test_duplicate_route_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "projects.yaml"
        path.write_text(PROJECTS_YAML.replace("/docs/deploy", "/api/deploy"), encoding="utf-8")

        with pytest.raises(ValidationError):
            YamlProjectStore(path).load()

    def test_missing_and_empty_file(self, tmp_path: Path) -> None:
        missing = YamlProjectStore(tmp_path / "missing.yaml")
        assert asyncio.run(missing.load_projects()) == []

        empty_path = tmp_path / "empty.yaml"
        empty_path.write_text("", encoding="utf-8")
        assert asyncio.run(YamlProjectStore(empty_path).load_projects_with_cron()) == []

    def test_satisfies_protocol(self, yaml_store) -> None:
        assert isinstance(yaml_store, ProjectStore)

    def test_file_is_read_off_the_event_loop(self, yaml_store, monkeypatch) -> None:
        threads: list[int] = []
        original = yaml_store.load

        def tracking_load():
            threads.append(threading.get_ident())
            return original()

        monkeypatch.setattr(yaml_store, "load", tracking_load)

        async def go():
            project = await yaml_store.find_by_route("/api/deploy")
            return project, threading.get_ident()

        project, loop_thread = asyncio.run(go())

        assert project.id == 1
        assert threads and loop_thread not in threads


class TestMemoryStore:
    def test_save_and_lookup(self, store, make_project) -> None:
        store.save(make_project("echo hi", project_id=3, cron_expression="0 1 * * *"))

        assert asyncio.run(store.get_project(3)).title == "Project 3"
        assert asyncio.run(store.find_by_route("project-3/deploy")).id == 3
        assert [p.id for p in asyncio.run(store.load_projects_with_cron())] == [3]
        assert isinstance(store, ProjectStore)

    def test_duplicate_route_rejected(self, store, make_project) -> None:
        first = make_project("echo a", project_id=1)
        second = make_project("echo b", project_id=2)
        second.pipeline.trigger_route = first.pipeline.trigger_route + "/"
        store.save(first)

        with pytest.raises(ValueError):
            store.save(second)

    def test_delete(self, store, make_project) -> None:
        store.save(make_project("echo a"))
        store.delete(1)

        with pytest.raises(ProjectNotFoundError):
            asyncio.run(store.load_pipeline(1))


def test_normalize_route() -> None:
    assert normalize_route("a/b/") == "/a/b"
    assert normalize_route("/a/b") == "/a/b"
    assert normalize_route("/") == "/"


class TestJsonlHistory:
    def test_create_and_update(self, tmp_path: Path) -> None:
        recorder = JsonlHistoryRecorder(tmp_path / "history" / "executions.jsonl")
        context = ExecutionContext(user_id=5, project_id=1, stage_id=2, working_directory="/srv")

        async def go():
            record_id = await recorder.create_execution(context, "make build")
            await recorder.update_execution(
                record_id,
                ExecutionUpdate(status="success", output="ok\n", exit_code=0, duration_ms=12),
            )
            return record_id

        record_id = asyncio.run(go())

        lines = recorder.path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2

        records = recorder.read_records()
        assert len(records) == 1
        record = records[0]
        assert record.id == record_id
        assert record.status == "success"
        assert record.command == "make build"
        assert record.user_id == 5
        assert record.output == "ok\n"
        assert record.finished_at is not None

    def test_update_of_unknown_record(self, tmp_path: Path) -> None:
        recorder = JsonlHistoryRecorder(tmp_path / "executions.jsonl")

        with pytest.raises(KeyError):
            asyncio.run(recorder.update_execution("exec_missing", ExecutionUpdate(status="failed")))

    def test_read_without_file(self, tmp_path: Path) -> None:
        assert JsonlHistoryRecorder(tmp_path / "none.jsonl").read_records() == []

    def test_execution_id_format(self) -> None:
        execution_id = generate_execution_id()
        assert execution_id.startswith("exec_")
        assert len(execution_id) == len("exec_") + 12

    def test_recorders_satisfy_protocol(self, tmp_path: Path) -> None:
        assert isinstance(JsonlHistoryRecorder(tmp_path / "h.jsonl"), HistoryRecorder)
        assert isinstance(MemoryHistoryRecorder(), HistoryRecorder)

    def test_appends_happen_off_the_event_loop(self, tmp_path: Path, monkeypatch) -> None:
        recorder = JsonlHistoryRecorder(tmp_path / "executions.jsonl")
        threads: list[int] = []
        original = recorder._append

        def tracking_append(record) -> None:
            threads.append(threading.get_ident())
            original(record)

        monkeypatch.setattr(recorder, "_append", tracking_append)

        async def go():
            record_id = await recorder.create_execution(ExecutionContext(user_id=1), "make")
            await recorder.update_execution(record_id, ExecutionUpdate(status="failed"))
            return threading.get_ident()

        loop_thread = asyncio.run(go())

        assert len(threads) == 2
        assert loop_thread not in threads
        assert recorder.read_records()[0].status == "failed"
