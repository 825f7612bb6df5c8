"""Rollgate command implementations."""

from __future__ import annotations

from .run import cmd_run

__all__ = [
    "cmd_run",
]
