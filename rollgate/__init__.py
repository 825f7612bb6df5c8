"""
Rollgate - rolling deployment orchestrator for small fleets.

Design goals:
- One fleet, one run at a time, driven from the CLI.
- Backends are updated strictly one at a time and gated on health.
- Every failure is recorded with its target and phase, then recovered once.
"""

from __future__ import annotations

from .cli import main
from .constants import DEFAULT_BACKEND_ROLE, DEFAULT_LOADBALANCER_ROLE
from .exceptions import ConfigError, RollgateError, UserError

__all__ = [
    "DEFAULT_BACKEND_ROLE",
    "DEFAULT_LOADBALANCER_ROLE",
    "ConfigError",
    "RollgateError",
    "UserError",
    "main",
]
