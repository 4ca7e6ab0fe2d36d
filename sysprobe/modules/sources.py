#!/usr/bin/env python3
"""
Read-only access to the local system.

Collectors never open files or query the process table directly; they go
through a SystemSources instance so tests can hand in fixture data instead of
real hardware paths.
"""

import glob
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Tuple

import psutil

logger = logging.getLogger("sysprobe.sources")

# Filesystems that never back a real block device
PSEUDO_FILESYSTEMS = {
    "tmpfs", "devtmpfs", "proc", "sysfs", "cgroup", "cgroup2", "overlay",
    "squashfs", "devpts", "securityfs", "debugfs", "tracefs", "efivarfs",
    "autofs", "mqueue", "hugetlbfs", "pstore", "bpf", "fusectl", "configfs",
    "ramfs", "nsfs",
}


@dataclass(frozen=True)
class Mount:
    device: str
    mountpoint: str
    fstype: str


class SystemSources:
    """Live data sources backed by the filesystem and psutil."""

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def glob(self, pattern: str) -> List[str]:
        return sorted(glob.glob(pattern))

    def read_text(self, path: str) -> Optional[str]:
        """Return file content, or None if it cannot be read."""
        try:
            with open(path, "r", errors="replace") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except PermissionError:
            logger.debug("Permission denied: %s", path)
            return None
        except OSError as e:
            logger.debug("Failed to read file %s: %s", path, e)
            return None

    def read_lines(self, path: str, trim_lines: int = 0,
                   filter_func: Optional[Callable[[str], bool]] = None) -> Optional[List[str]]:
        """
        Read a file as lines, handling errors and filtering output.

        Args:
            path: Path to the file
            trim_lines: Number of last lines to keep (0 for all)
            filter_func: Function to filter lines (should return True to keep line)

        Returns:
            List of lines, or None if the file is not readable
        """
        content = self.read_text(path)
        if content is None:
            return None
        lines = content.splitlines()
        if filter_func:
            lines = [line for line in lines if filter_func(line)]
        if trim_lines > 0 and len(lines) > trim_lines:
            lines = lines[-trim_lines:]
        return lines

    def mounts(self) -> List[Mount]:
        mounts = []
        seen = set()
        for part in psutil.disk_partitions(all=False):
            if part.fstype in PSEUDO_FILESYSTEMS or part.device in seen:
                continue
            seen.add(part.device)
            mounts.append(Mount(part.device, part.mountpoint, part.fstype))
        return mounts

    def loaded_modules(self) -> Set[str]:
        lines = self.read_lines("/proc/modules") or []
        return {line.split()[0] for line in lines if line.strip()}

    def process_names(self) -> Set[str]:
        names = set()
        for proc in psutil.process_iter(["name"]):
            name = proc.info.get("name")
            if name:
                names.add(name)
        return names

    def cpu_count(self) -> int:
        return psutil.cpu_count(logical=True) or 1

    def cpu_percent(self) -> float:
        # Percentage since the previous call; the first call primes the counter
        return psutil.cpu_percent(interval=None)

    def memory_percent(self) -> float:
        return psutil.virtual_memory().percent

    def disk_io_bytes(self) -> Optional[Tuple[int, int]]:
        """Total (read_bytes, write_bytes) across all disks, if the kernel exposes it."""
        counters = psutil.disk_io_counters()
        if counters is None:
            return None
        return counters.read_bytes, counters.write_bytes

    def home_directory(self) -> str:
        return os.path.expanduser("~")

    def boot_time(self) -> float:
        return psutil.boot_time()

    def memory_total(self) -> int:
        return psutil.virtual_memory().total
