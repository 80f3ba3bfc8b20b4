"""HTTP surface for Stagecoach."""

from .server import create_app

__all__ = ["create_app"]
