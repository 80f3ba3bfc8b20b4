"""Stagecoach: self-hosted deployment runner for staged shell pipelines."""

__version__ = "0.1.0"
__author__ = "Stagecoach Team"

__all__ = ["__version__", "__author__"]
