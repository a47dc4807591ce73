"""Logging utilities for docembed."""

from .logging import LogManager  # noqa: F401

__all__ = ["LogManager"]
