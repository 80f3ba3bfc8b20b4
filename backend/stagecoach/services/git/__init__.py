"""Git operations for project working directories."""

from .client import GitService, parse_branches, parse_log
from .exceptions import GitError, InvalidRefError
from .models import BranchListing, GitLogEntry

__all__ = [
    "GitService",
    "parse_log",
    "parse_branches",
    "GitError",
    "InvalidRefError",
    "GitLogEntry",
    "BranchListing",
]
