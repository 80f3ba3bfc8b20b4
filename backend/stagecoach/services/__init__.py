"""Auxiliary services built on the execution engine."""
