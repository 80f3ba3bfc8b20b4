"""
Unit Tests: Git service

Test cases:
- git log and branch listing parsers
- Commands run as substituted templates in the project directory
- Non-zero exits raise GitError with stderr
- Unsafe refs rejected before reaching the shell
"""

import asyncio

import pytest

from stagecoach.engine import ExecutionResult, ParseError
from stagecoach.services.git import GitError, GitService, InvalidRefError
from stagecoach.services.git.client import (
    CHECKOUT_COMMIT_SCRIPT,
    LOG_SCRIPT,
    SWITCH_BRANCH_SCRIPT,
    parse_branches,
    parse_log,
)

LOG_OUTPUT = (
    "a1b2c3\x1fAda\x1f2024-05-01T10:00:00+00:00\x1fFix deploy script\x1e\n"
    "d4e5f6\x1fGrace\x1f2024-04-30T09:00:00+00:00\x1fInitial: commit\x1e"
)


class FakeRunner:
    """Records substitute_and_run calls and replays a canned result."""

    def __init__(self, result: ExecutionResult):
        self.result = result
        self.calls: list[tuple[str, list[str], str]] = []

    async def substitute_and_run(self, script, args, working_directory=None):
        self.calls.append((script, args, working_directory))
        return self.result


def ok(stdout: str = "") -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr="", exit_code=0)


class TestParsers:
    def test_parse_log(self) -> None:
        entries = parse_log(LOG_OUTPUT)

        assert [e.commit for e in entries] == ["a1b2c3", "d4e5f6"]
        assert entries[0].author == "Ada"
        assert entries[0].date == "2024-05-01T10:00:00+00:00"
        assert entries[1].message == "Initial: commit"

    def test_parse_empty_log(self) -> None:
        assert parse_log("") == []

    def test_malformed_log_record(self) -> None:
        with pytest.raises(ParseError):
            parse_log("a1b2c3\x1fAda\x1e")

    def test_parse_branches(self) -> None:
        listing = parse_branches(" develop\n*main\n feature/login\n")

        assert listing.branches == ["develop", "main", "feature/login"]
        assert listing.current_branch == "main"

    def test_detached_head_is_skipped(self) -> None:
        listing = parse_branches("*(HEAD detached at a1b2c3)\n main\n")

        assert listing.branches == ["main"]
        assert listing.current_branch is None

    def test_unexpected_branch_marker(self) -> None:
        with pytest.raises(ParseError):
            parse_branches("+worktree\n")


class TestGitService:
    def test_get_log(self) -> None:
        runner = FakeRunner(ok(LOG_OUTPUT))

        entries = asyncio.run(GitService(runner).get_log("/srv/app", limit=2))

        assert len(entries) == 2
        assert runner.calls == [(LOG_SCRIPT, ["2"], "/srv/app")]

    def test_switch_branch(self) -> None:
        runner = FakeRunner(ok())

        asyncio.run(GitService(runner).switch_branch("/srv/app", "release/1.2"))

        assert runner.calls == [(SWITCH_BRANCH_SCRIPT, ["release/1.2"], "/srv/app")]

    def test_checkout_commit(self) -> None:
        runner = FakeRunner(ok())

        asyncio.run(GitService(runner).checkout_commit("/srv/app", "a1b2c3d"))

        assert runner.calls == [(CHECKOUT_COMMIT_SCRIPT, ["a1b2c3d"], "/srv/app")]

    def test_failure_raises_git_error(self) -> None:
        runner = FakeRunner(
            ExecutionResult(stdout="", stderr="error: pathspec 'x' did not match", exit_code=1)
        )

        with pytest.raises(GitError) as exc_info:
            asyncio.run(GitService(runner).switch_branch("/srv/app", "x"))

        assert exc_info.value.exit_code == 1
        assert "pathspec" in exc_info.value.stderr

    @pytest.mark.parametrize("branch", ["main; rm -rf /", "-f", "a..b", "$(whoami)", ""])
    def test_unsafe_branch_rejected(self, branch: str) -> None:
        runner = FakeRunner(ok())

        with pytest.raises(InvalidRefError):
            asyncio.run(GitService(runner).switch_to_head("/srv/app", branch))

        assert runner.calls == []

    @pytest.mark.parametrize("commit", ["HEAD~1", "abc", "a1b2c3; ls", "g" * 40])
    def test_unsafe_commit_rejected(self, commit: str) -> None:
        runner = FakeRunner(ok())

        with pytest.raises(InvalidRefError):
            asyncio.run(GitService(runner).checkout_commit("/srv/app", commit))

        assert runner.calls == []
