#!/usr/bin/env python3
"""
Capability detection.

A Capability names one optional precondition of a check: an executable on the
search path, a special file, a loaded kernel module or a running process.
CapabilityDetector answers has() once per capability per run and caches the
answer, so a run keeps a consistent view of the host even if hardware changes
while it executes.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from .sources import SystemSources

logger = logging.getLogger("sysprobe.capabilities")


class DetectionKind(str, Enum):
    EXECUTABLE = "executable"
    PATH = "path"
    KERNEL_MODULE = "kernel_module"
    PROCESS = "process"


@dataclass(frozen=True)
class Capability:
    name: str
    kind: DetectionKind
    target: str

    @classmethod
    def executable(cls, binary: str, name: Optional[str] = None) -> "Capability":
        return cls(name or binary, DetectionKind.EXECUTABLE, binary)

    @classmethod
    def path(cls, name: str, path: str) -> "Capability":
        return cls(name, DetectionKind.PATH, path)

    @classmethod
    def module(cls, name: str, module: str) -> "Capability":
        return cls(name, DetectionKind.KERNEL_MODULE, module)

    @classmethod
    def process(cls, name: str, process: str) -> "Capability":
        return cls(name, DetectionKind.PROCESS, process)

    def __str__(self):
        return self.name


def _executables(*binaries: str) -> Dict[str, Capability]:
    return {b: Capability.executable(b) for b in binaries}


# Well-known capabilities, addressable by name
KNOWN_CAPABILITIES: Dict[str, Capability] = {}
KNOWN_CAPABILITIES.update(_executables(
    # storage
    "lsblk", "fdisk", "parted", "df", "du", "find", "lsof", "btrfs", "zfs", "zpool",
    "xfs_info", "xfs_repair", "xfs_db", "tune2fs", "e2fsck", "e4defrag", "jfs_fsck",
    "ntfsfragment", "fsck.hfsplus",
    # raid
    "mdadm", "hpacucli", "perccli64", "arcconf",
    # graphics
    "lspci", "nvidia-smi", "intel_gpu_top", "radeontop", "glxinfo", "xrandr",
    "wlr-randr", "vdpauinfo", "vainfo", "dmesg", "qdbus", "gsettings", "xfconf-query",
    "sway", "glxgears", "vblank_test", "vulkaninfo", "unigine-heaven",
    # network
    "ip", "ethtool", "ping", "ss", "iftop",
    # system
    "top", "free", "ps", "journalctl", "stress-ng", "mbw",
    # benchmark
    "dd", "fio",
))
KNOWN_CAPABILITIES.update({
    "megaraid-cli": Capability.executable("megacli", name="megaraid-cli"),
    "mdstat": Capability.path("mdstat", "/proc/mdstat"),
    "drm-sysfs": Capability.path("drm-sysfs", "/sys/class/drm"),
    "xorg-log": Capability.path("xorg-log", "/var/log/Xorg.0.log"),
    "syslog": Capability.path("syslog", "/var/log/syslog"),
    "auth-log": Capability.path("auth-log", "/var/log/auth.log"),
    "nvidia-module": Capability.module("nvidia-module", "nvidia"),
    "wayland": Capability.process("wayland", "wayland"),
    "xwayland": Capability.process("xwayland", "Xwayland"),
    "xorg": Capability.process("xorg", "Xorg"),
    "x-server": Capability.process("x-server", "X"),
})


def capability(name: str) -> Capability:
    """Look up a capability by name; unknown names mean an executable of that name."""
    known = KNOWN_CAPABILITIES.get(name)
    if known is not None:
        return known
    return Capability.executable(name)


class CapabilityDetector:
    """Memoised, thread-safe capability checks against a SystemSources."""

    def __init__(self, sources: Optional[SystemSources] = None):
        self.sources = sources or SystemSources()
        self._cache: Dict[Capability, bool] = {}
        self._lock = threading.Lock()

    def has(self, cap: Union[Capability, str]) -> bool:
        if isinstance(cap, str):
            cap = capability(cap)
        with self._lock:
            if cap in self._cache:
                return self._cache[cap]
            present = self._detect(cap)
            # Write-once: never re-detected until refresh()
            self._cache[cap] = present
        logger.debug("Capability %s (%s %s): %s", cap.name, cap.kind.value, cap.target,
                     "present" if present else "missing")
        return present

    def refresh(self):
        """Forget cached answers. Only call between independent runs."""
        with self._lock:
            self._cache.clear()

    def snapshot(self) -> Dict[str, bool]:
        with self._lock:
            return {cap.name: present for cap, present in self._cache.items()}

    def _detect(self, cap: Capability) -> bool:
        if cap.kind == DetectionKind.EXECUTABLE:
            return self.sources.which(cap.target) is not None
        if cap.kind == DetectionKind.PATH:
            return self.sources.exists(cap.target)
        if cap.kind == DetectionKind.KERNEL_MODULE:
            return cap.target in self.sources.loaded_modules()
        if cap.kind == DetectionKind.PROCESS:
            return cap.target in self.sources.process_names()
        raise ValueError(f"Unknown detection kind: {cap.kind}")
