"""Git service models."""

from pydantic import BaseModel, Field


class GitLogEntry(BaseModel):
    """One commit from the project's history."""

    commit: str
    author: str
    date: str
    message: str


class BranchListing(BaseModel):
    """Local branches and the one checked out."""

    branches: list[str] = Field(default_factory=list)
    current_branch: str | None = None
