#!/usr/bin/env python3
"""
Command execution for all diagnostic modules.

Every external tool is launched through CommandRunner. A non-zero exit status
is data, not an error: it is returned in ExecutionResult.exit_code. Only a
command that cannot be started at all raises ExecutionFailure.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import ExecutionFailure, RunCancelled

logger = logging.getLogger("sysprobe.runner")

DEFAULT_TIMEOUT = 10.0
# How often a running child is checked for cancellation
POLL_INTERVAL = 0.1
# Longest wait for output after the process group was killed
DRAIN_TIMEOUT = 1.0


@dataclass
class ExecutionResult:
    """Outcome of one external command."""

    command: Tuple[str, ...]
    exit_code: int
    stdout: List[str] = field(default_factory=list)
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        return "\n".join(self.stdout)

    def select(self, filter_func: Optional[Callable[[str], bool]] = None,
               trim_lines: int = 0) -> List[str]:
        """
        Return stdout lines, optionally filtered and trimmed.

        Args:
            filter_func: Function to filter lines (should return True to keep line)
            trim_lines: Number of last lines to keep (0 for all)
        """
        lines = self.stdout
        if filter_func:
            lines = [line for line in lines if filter_func(line)]
        if trim_lines > 0 and len(lines) > trim_lines:
            lines = lines[-trim_lines:]
        return list(lines)


class CancellationToken:
    """Shared flag used to interrupt commands and sampling loops."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)


class CommandRunner:
    """Runs external commands with a timeout and cooperative cancellation."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT,
                 token: Optional[CancellationToken] = None):
        self.default_timeout = default_timeout
        self.token = token or CancellationToken()

    def run(self, command: str, args: Sequence[str] = (),
            timeout: Optional[float] = None) -> ExecutionResult:
        argv = (command,) + tuple(str(a) for a in args)
        timeout = self.default_timeout if timeout is None else timeout

        if self.token.cancelled:
            raise RunCancelled(f"Not starting {' '.join(argv)}: run cancelled")

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                # Own process group, so workers forked by the tool die with it
                start_new_session=True,
            )
        except FileNotFoundError:
            raise ExecutionFailure(argv, "command not found")
        except PermissionError:
            raise ExecutionFailure(argv, "permission denied")
        except OSError as e:
            raise ExecutionFailure(argv, str(e))

        timed_out = False
        cancelled = False
        deadline = start + timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                # communicate() can be retried after TimeoutExpired without losing output
                stdout, stderr = proc.communicate(timeout=max(0.0, min(POLL_INTERVAL, remaining)))
                break
            except subprocess.TimeoutExpired:
                if self.token.cancelled:
                    cancelled = True
                elif time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                stdout, stderr = self._kill(proc)
                break

        duration = time.monotonic() - start
        result = ExecutionResult(
            command=argv,
            exit_code=proc.returncode,
            stdout=(stdout or "").splitlines(),
            stderr=stderr or "",
            duration=duration,
            timed_out=timed_out,
            cancelled=cancelled,
        )
        if timed_out:
            logger.warning("%s timed out after %.1fs", " ".join(argv), timeout)
        elif cancelled:
            logger.info("%s cancelled after %.1fs", " ".join(argv), duration)
        else:
            logger.debug("%s exited %d in %.2fs", " ".join(argv), proc.returncode, duration)
        return result

    @staticmethod
    def _kill(proc: subprocess.Popen) -> Tuple[str, str]:
        """Kill the child's whole process group and collect what it printed."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        try:
            return proc.communicate(timeout=DRAIN_TIMEOUT)
        except subprocess.TimeoutExpired:
            # A descendant left the group and still holds the pipes
            logger.warning("Output of %s not drained after kill", " ".join(proc.args))
            for pipe in (proc.stdout, proc.stderr):
                pipe.close()
            proc.wait()
            return "", ""
