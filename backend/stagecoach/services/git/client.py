"""Git operations on a project's working directory.

Each operation is a fixed command template with positional arguments, run
through the engine's argument substitution outside the execution gate.
"""

import logging
import re

from stagecoach.engine.exceptions import ParseError
from stagecoach.engine.models import ExecutionResult
from stagecoach.engine.runner import PipelineRunner

from .exceptions import GitError, InvalidRefError
from .models import BranchListing, GitLogEntry

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "\x1f"
RECORD_SEPARATOR = "\x1e"

LOG_SCRIPT = (
    "git log -n $1 --date=iso-strict "
    "--pretty=format:'%H%x1f%an%x1f%ad%x1f%s%x1e'"
)
BRANCHES_SCRIPT = "git branch --list --no-color --format='%(HEAD)%(refname:short)'"
SWITCH_BRANCH_SCRIPT = "git checkout $1"
SWITCH_TO_HEAD_SCRIPT = "git checkout $1 && git pull --ff-only"
CHECKOUT_COMMIT_SCRIPT = "git checkout --detach $1"

_BRANCH_PATTERN = re.compile(r"^(?!-)(?!.*\.\.)[A-Za-z0-9._/-]+$")
_COMMIT_PATTERN = re.compile(r"^[0-9a-fA-F]{4,40}$")


def parse_log(output: str) -> list[GitLogEntry]:
    """Parse the record/field separated output of LOG_SCRIPT."""
    entries: list[GitLogEntry] = []
    for record in output.split(RECORD_SEPARATOR):
        record = record.strip("\r\n")
        if not record:
            continue

        fields = record.split(FIELD_SEPARATOR)
        if len(fields) != 4:
            raise ParseError(
                f"Malformed git log record ({len(fields)} fields): {record[:80]!r}"
            )
        commit, author, date, message = fields
        entries.append(
            GitLogEntry(commit=commit, author=author, date=date, message=message)
        )
    return entries


def parse_branches(output: str) -> BranchListing:
    """Parse ``%(HEAD)%(refname:short)`` lines; ``*`` marks the current branch."""
    listing = BranchListing()
    for line in output.splitlines():
        if not line.strip():
            continue

        marker, name = line[0], line[1:].strip()
        if marker not in ("*", " "):
            raise ParseError(f"Unexpected git branch line: {line!r}")
        # Detached HEAD shows up as "(HEAD detached at ...)"
        if name.startswith("("):
            continue

        listing.branches.append(name)
        if marker == "*":
            listing.current_branch = name
    return listing


class GitService:
    """Read and switch the git state of project working directories."""

    def __init__(self, runner: PipelineRunner):
        self.runner = runner

    async def _run(
        self, script: str, args: list[str], working_directory: str, action: str
    ) -> ExecutionResult:
        result = await self.runner.substitute_and_run(script, args, working_directory)
        if result.exit_code != 0:
            logger.warning(
                f"git {action} failed in {working_directory}: {result.stderr.strip()}"
            )
            raise GitError(
                f"Failed to {action}", stderr=result.stderr, exit_code=result.exit_code
            )
        return result

    async def get_log(self, working_directory: str, limit: int = 50) -> list[GitLogEntry]:
        result = await self._run(
            LOG_SCRIPT, [str(int(limit))], working_directory, "fetch git log"
        )
        return parse_log(result.stdout)

    async def list_branches(self, working_directory: str) -> BranchListing:
        result = await self._run(
            BRANCHES_SCRIPT, [], working_directory, "list git branches"
        )
        return parse_branches(result.stdout)

    async def switch_branch(self, working_directory: str, branch: str) -> None:
        self._check_branch(branch)
        await self._run(
            SWITCH_BRANCH_SCRIPT, [branch], working_directory, "switch git branch"
        )
        logger.info(f"Switched {working_directory} to branch {branch}")

    async def switch_to_head(self, working_directory: str, branch: str) -> None:
        self._check_branch(branch)
        await self._run(
            SWITCH_TO_HEAD_SCRIPT, [branch], working_directory, "switch to branch head"
        )
        logger.info(f"Moved {working_directory} to the head of {branch}")

    async def checkout_commit(self, working_directory: str, commit: str) -> None:
        if not _COMMIT_PATTERN.match(commit):
            raise InvalidRefError(f"Invalid commit hash: {commit!r}")
        await self._run(
            CHECKOUT_COMMIT_SCRIPT, [commit], working_directory, "check out commit"
        )
        logger.info(f"Checked out {commit} in {working_directory}")

    @staticmethod
    def _check_branch(branch: str) -> None:
        if not _BRANCH_PATTERN.match(branch):
            raise InvalidRefError(f"Invalid branch name: {branch!r}")
