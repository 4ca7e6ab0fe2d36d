#!/usr/bin/env python3
"""
Error types raised and handled by the diagnostic framework.

Only ValidationError is meant to reach the caller. Everything else is turned
into a skipped check or a Finding by the collector that hit it.
"""

from typing import Optional


class SysprobeError(Exception):
    """Base class for all sysprobe errors."""


class ToolUnavailable(SysprobeError):
    """A capability needed by a check is not present on this host."""

    def __init__(self, capability: str, check: Optional[str] = None):
        self.capability = capability
        self.check = check
        prefix = f"{check}: " if check else ""
        super().__init__(f"{prefix}{capability} not available")


class ExecutionFailure(SysprobeError):
    """An external command could not be launched at all."""

    def __init__(self, command, reason: str):
        self.command = list(command)
        self.reason = reason
        super().__init__(f"Failed to launch {' '.join(self.command)}: {reason}")


class ExecutionTimeout(SysprobeError):
    """An external command exceeded its timeout."""

    def __init__(self, result):
        self.result = result
        super().__init__(f"{' '.join(result.command)} timed out after {result.duration:.1f}s")


class ParseError(SysprobeError):
    """Command output did not contain anything usable."""

    def __init__(self, message: str, evidence: Optional[str] = None):
        self.evidence = evidence
        super().__init__(message)


class ValidationError(SysprobeError, ValueError):
    """Invalid parameters passed to the framework."""


class RunCancelled(SysprobeError):
    """The run was cancelled before the command could start."""
