#!/usr/bin/env python3
"""
Base module for all diagnostic collectors.
"""

import logging
import time
from typing import Callable, Iterable, List, Optional, Sequence, Set

from .capabilities import Capability, CapabilityDetector, capability
from .errors import (ExecutionFailure, ExecutionTimeout, ParseError, RunCancelled, ToolUnavailable,
                     ValidationError)
from .models import CollectorResult
from .runner import CommandRunner, ExecutionResult
from .sources import SystemSources

logger = logging.getLogger("sysprobe.collector")

# Longest evidence block attached to a single finding
EVIDENCE_LINES = 40


def evidence(lines: Iterable[str], trim_lines: int = EVIDENCE_LINES) -> Optional[str]:
    """Join output lines into an evidence block, keeping only the last trim_lines."""
    lines = [line.rstrip() for line in lines if line.strip()]
    if not lines:
        return None
    if trim_lines > 0 and len(lines) > trim_lines:
        lines = [f"[...showing only last {trim_lines} lines...]"] + lines[-trim_lines:]
    return "\n".join(lines)


class Collector:
    """Base class for all diagnostic collectors."""

    # Capability names; the collector is skipped when none of them is present
    requires: Sequence[str] = ()

    def __init__(self, name: str, description: str, sources: Optional[SystemSources] = None):
        self.name = name
        self.description = description
        self.enabled = False  # All collectors unchecked by default
        self.subsections = {}
        self.sources = sources or SystemSources()
        self._runner: Optional[CommandRunner] = None
        self._detector: Optional[CapabilityDetector] = None

    @classmethod
    def required_capabilities(cls) -> Set[Capability]:
        return {capability(name) for name in cls.requires}

    def run(self, runner: CommandRunner, detector: CapabilityDetector) -> CollectorResult:
        """Run every enabled sub-check and return the collected findings."""
        result = CollectorResult(self.name)
        start = time.monotonic()

        required = sorted(self.required_capabilities(), key=lambda c: c.name)
        if required and not any(detector.has(cap) for cap in required):
            for cap in required:
                result.skip(f"{cap.name} not available")
            logger.info("Skipping %s: none of its tools are available", self.name)
            return result

        self._runner = runner
        self._detector = detector
        try:
            self.collect(result)
        finally:
            self._runner = None
            self._detector = None
            result.duration = time.monotonic() - start
        logger.info("Collector %s finished: %d findings, %d skipped",
                    self.name, len(result.findings), len(result.skipped))
        return result

    def collect(self, result: CollectorResult):
        raise NotImplementedError("Subclasses must implement this method")

    def check(self, result: CollectorResult, name: str, func: Callable[[CollectorResult], None],
              requires: Sequence[str] = (), any_of: Sequence[str] = ()):
        """
        Run one sub-check, turning its failures into findings.

        Args:
            result: Result the sub-check reports into
            name: Sub-check name, also the key in self.subsections
            func: Callable doing the work
            requires: Capabilities that must all be present
            any_of: Capabilities of which at least one must be present
        """
        if not self.subsections.get(name, True):
            return

        for cap in requires:
            if not self.has(cap):
                result.skip(f"{name}: {cap} not available")
                return
        if any_of and not any(self.has(cap) for cap in any_of):
            result.skip(f"{name}: none of {', '.join(any_of)} available")
            return

        try:
            func(result)
        except ToolUnavailable as e:
            result.skip(str(e))
        except ExecutionTimeout as e:
            logger.warning("%s/%s: %s", self.name, name, e)
            result.warning(f"{name}: check timed out ({' '.join(e.result.command)})",
                           evidence=evidence(e.result.stdout), check=name)
        except ExecutionFailure as e:
            logger.error("%s/%s: %s", self.name, name, e)
            result.critical(f"{name}: {e}", check=name)
        except ParseError as e:
            result.info(f"{name}: {e}", evidence=e.evidence, check=name)
        except RunCancelled:
            result.skip(f"{name}: run cancelled")
        except ValidationError:
            raise
        except Exception as e:
            # Contained to this sub-check
            logger.error("%s/%s failed: %s", self.name, name, e, exc_info=True)
            result.critical(f"{name}: failed with {type(e).__name__}: {e}", check=name)

    def has(self, cap: str) -> bool:
        return self._detector.has(cap)

    def execute(self, args: Sequence[str], timeout: Optional[float] = None,
                allow_timeout: bool = False) -> ExecutionResult:
        """Run a command; raise ExecutionTimeout unless allow_timeout is set."""
        res = self._runner.run(args[0], args[1:], timeout=timeout)
        if res.cancelled:
            raise RunCancelled(f"{' '.join(res.command)} cancelled")
        if res.timed_out and not allow_timeout:
            raise ExecutionTimeout(res)
        return res

    def output_lines(self, args: Sequence[str], filter_func: Optional[Callable[[str], bool]] = None,
                     trim_lines: int = 0, timeout: Optional[float] = None) -> List[str]:
        """Run a command and return its filtered stdout lines."""
        return self.execute(args, timeout=timeout).select(filter_func, trim_lines)

    def set_all_subsections(self, enabled: bool):
        """Set all subsections to enabled or disabled."""
        for key in self.subsections:
            self.subsections[key] = enabled
