"""Shared fakes: a scripted command runner and fixture-backed system sources."""

import fnmatch
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pytest

from sysprobe.modules.errors import RunCancelled
from sysprobe.modules.runner import CancellationToken, ExecutionResult
from sysprobe.modules.sources import Mount, SystemSources

Response = Union[ExecutionResult, Exception, Callable[[Tuple[str, ...]], ExecutionResult]]


def result(argv: Sequence[str] = ("true",), stdout: str = "", exit_code: int = 0, stderr: str = "",
           timed_out: bool = False, cancelled: bool = False) -> ExecutionResult:
    return ExecutionResult(command=tuple(argv), exit_code=exit_code, stdout=stdout.splitlines(),
                           stderr=stderr, timed_out=timed_out, cancelled=cancelled)


class FakeRunner:
    """Replays canned responses keyed by command-line prefix and records every call."""

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self.responses: Dict[str, Response] = {}
        self.calls: List[Tuple[str, ...]] = []

    def add(self, prefix: str, stdout: str = "", exit_code: int = 0, stderr: str = "",
            timed_out: bool = False) -> "FakeRunner":
        self.responses[prefix] = result(prefix.split(), stdout, exit_code, stderr, timed_out)
        return self

    def respond(self, prefix: str, response: Response) -> "FakeRunner":
        self.responses[prefix] = response
        return self

    def commands(self) -> List[str]:
        return [" ".join(call) for call in self.calls]

    def run(self, command: str, args: Sequence[str] = (), timeout: Optional[float] = None) -> ExecutionResult:
        if self.token.cancelled:
            raise RunCancelled("run cancelled")
        argv = (command,) + tuple(str(a) for a in args)
        self.calls.append(argv)
        line = " ".join(argv)
        matches = [key for key in self.responses if line.startswith(key)]
        if not matches:
            return result(argv)
        response = self.responses[max(matches, key=len)]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(argv)
        return ExecutionResult(command=argv, exit_code=response.exit_code, stdout=list(response.stdout),
                               stderr=response.stderr, timed_out=response.timed_out,
                               cancelled=response.cancelled)


class FakeSources(SystemSources):
    """SystemSources answering from in-memory fixtures instead of the host."""

    def __init__(self, executables: Iterable[str] = (), files: Optional[Dict[str, str]] = None,
                 paths: Iterable[str] = (), mounts: Iterable[Mount] = (), modules: Iterable[str] = (),
                 processes: Iterable[str] = (), cpu_count: int = 4, cpu_percents: Iterable[float] = (),
                 memory_percent: float = 40.0, disk_io: Optional[Iterable[Tuple[int, int]]] = None,
                 home: str = "/home/tester"):
        self.executables = set(executables)
        self.files = dict(files or {})
        self.paths = set(paths)
        self._mounts = list(mounts)
        self.modules = set(modules)
        self.processes = set(processes)
        self._cpu_count = cpu_count
        self.cpu_percents = list(cpu_percents)
        self._memory_percent = memory_percent
        self.disk_io = list(disk_io) if disk_io is not None else None
        self.home = home
        self.which_calls: List[str] = []

    def which(self, name):
        self.which_calls.append(name)
        return f"/usr/bin/{name}" if name in self.executables else None

    def exists(self, path):
        return path in self.paths or path in self.files

    def glob(self, pattern):
        return sorted(p for p in set(self.files) | self.paths if fnmatch.fnmatch(p, pattern))

    def read_text(self, path):
        return self.files.get(path)

    def mounts(self):
        return list(self._mounts)

    def loaded_modules(self):
        return set(self.modules)

    def process_names(self):
        return set(self.processes)

    def cpu_count(self):
        return self._cpu_count

    def cpu_percent(self):
        return self.cpu_percents.pop(0) if self.cpu_percents else 25.0

    def memory_percent(self):
        return self._memory_percent

    def disk_io_bytes(self):
        if self.disk_io is None:
            return None
        if len(self.disk_io) > 1:
            return self.disk_io.pop(0)
        return self.disk_io[0]

    def home_directory(self):
        return self.home

    def boot_time(self):
        return 0.0

    def memory_total(self):
        return 8 * 1024 ** 3


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep host configuration files out of every test."""
    monkeypatch.setattr("sysprobe.config.DEFAULT_PATHS", ())
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("WAYLAND_COMPOSITOR", raising=False)
    monkeypatch.delenv("XDG_CURRENT_DESKTOP", raising=False)
