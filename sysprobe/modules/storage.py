#!/usr/bin/env python3
"""
Storage related diagnostic collectors.
"""

import json
import re
from enum import Enum
from typing import Dict, List, Optional

from .base import Collector, evidence
from .errors import ParseError
from .models import CollectorResult, Severity
from .sources import Mount, SystemSources

USAGE_WARNING = 90
USAGE_CRITICAL = 100
# e4defrag: 0-30 no problem, 31-55 a little bit fragmented, 56- needs defrag
E4DEFRAG_WARNING = 56
ZFS_STATE_SEVERITY = {
    "ONLINE": Severity.INFO,
    "DEGRADED": Severity.WARNING,
    "FAULTED": Severity.CRITICAL,
    "UNAVAIL": Severity.CRITICAL,
    "SUSPENDED": Severity.CRITICAL,
    "REMOVED": Severity.WARNING,
    "OFFLINE": Severity.WARNING,
}


class FsType(str, Enum):
    BTRFS = "btrfs"
    ZFS = "zfs"
    XFS = "xfs"
    EXT = "ext"
    JFS = "jfs"
    NTFS = "ntfs"
    HFSPLUS = "hfsplus"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_name(cls, fstype: str) -> "FsType":
        fstype = (fstype or "").lower()
        if fstype in ("ext2", "ext3", "ext4"):
            return cls.EXT
        if fstype in ("ntfs", "ntfs3"):
            return cls.NTFS
        try:
            return cls(fstype)
        except ValueError:
            return cls.UNSUPPORTED


def parse_key_values(lines: List[str], sep: str = ":") -> Dict[str, str]:
    values = {}
    for line in lines:
        if sep in line:
            key, value = line.split(sep, 1)
            values[key.strip()] = value.strip()
    return values


def parse_df(lines: List[str]) -> List[Dict[str, str]]:
    """Parse POSIX df output (df -P) into rows keyed by column role."""
    rows = []
    for line in lines[1:]:
        parts = line.split()
        if len(parts) < 6:
            continue
        rows.append({
            "filesystem": parts[0],
            "size": parts[1],
            "used": parts[2],
            "avail": parts[3],
            "use": parts[4],
            "mountpoint": " ".join(parts[5:]),
        })
    return rows


def human_kb(kb: int) -> str:
    size = float(kb)
    for unit in ("K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


class StorageCollector(Collector):
    """Block devices, partitions, per-filesystem health and space usage."""

    requires = ("lsblk", "fdisk", "parted", "df", "lsof", "btrfs", "zfs", "zpool",
                "xfs_info", "tune2fs")

    def __init__(self, sources: Optional[SystemSources] = None, scan_root: str = "/",
                 large_file_size: str = "+1G", scan_timeout: float = 120.0):
        super().__init__("storage", "Storage, Filesystems & Disk Usage", sources)
        self.scan_root = scan_root
        self.large_file_size = large_file_size
        self.scan_timeout = scan_timeout
        self.subsections = {
            "block_devices": True,
            "partitions": True,
            "filesystems": True,
            "disk_usage": True,
            "inode_usage": True,
            "deleted_open_files": True,
            # Slow: scan whole filesystems
            "fragmentation": False,
            "large_files": False,
            "largest_directories": False,
        }
        self.health_checks = {
            FsType.BTRFS: (("btrfs",), self._btrfs_health),
            FsType.ZFS: (("zpool",), self._zfs_health),
            FsType.XFS: (("xfs_info",), self._xfs_health),
            FsType.EXT: (("tune2fs",), self._ext_health),
        }
        self.fragmentation_checks = {
            FsType.EXT: (("e4defrag",), self._ext_fragmentation),
            FsType.XFS: (("xfs_db",), self._xfs_fragmentation),
            FsType.BTRFS: ((), self._btrfs_fragmentation),
            FsType.JFS: (("jfs_fsck",), self._jfs_fragmentation),
            FsType.NTFS: (("ntfsfragment",), self._ntfs_fragmentation),
            FsType.HFSPLUS: (("fsck.hfsplus",), self._hfsplus_fragmentation),
            FsType.ZFS: (("zpool",), self._zfs_fragmentation),
        }

    def collect(self, result: CollectorResult):
        self.check(result, "block_devices", self._block_devices, requires=("lsblk",))
        self.check(result, "partitions", self._partitions, any_of=("fdisk", "parted"))

        mounts = self.sources.mounts() if (self.subsections.get("filesystems")
                                          or self.subsections.get("fragmentation")) else []
        for mount in mounts:
            self._dispatch(result, "filesystems", self.health_checks, mount)
        for mount in mounts:
            self._dispatch(result, "fragmentation", self.fragmentation_checks, mount)

        self.check(result, "disk_usage", self._disk_usage, requires=("df",))
        self.check(result, "inode_usage", self._inode_usage, requires=("df",))
        self.check(result, "deleted_open_files", self._deleted_open_files, requires=("lsof",))
        self.check(result, "large_files", self._large_files, requires=("find",))
        self.check(result, "largest_directories", self._largest_directories, requires=("du",))

    def _dispatch(self, result: CollectorResult, check: str, table, mount: Mount):
        fs_type = FsType.from_name(mount.fstype)
        entry = table.get(fs_type)
        if entry is None:
            if self.subsections.get(check, True):
                result.info(f"unsupported filesystem type: {mount.fstype} on {mount.device}",
                            check=check)
            return
        requires, handler = entry
        self.check(result, check, lambda r: handler(r, mount), requires=requires)

    # -- device overview --------------------------------------------------

    def _block_devices(self, result: CollectorResult):
        res = self.execute(["lsblk", "-J", "-o", "NAME,SIZE,TYPE,FSTYPE,MOUNTPOINT,MODEL"])
        try:
            devices = json.loads(res.output).get("blockdevices", [])
        except ValueError:
            raise ParseError("lsblk output is not valid JSON", evidence(res.stdout))

        rows = []
        counts = {}

        def walk(nodes, depth):
            for node in nodes:
                kind = node.get("type") or "unknown"
                counts[kind] = counts.get(kind, 0) + 1
                rows.append("  " * depth + " ".join(
                    str(node.get(k) or "") for k in ("name", "size", "type", "fstype", "mountpoint", "model")
                ).rstrip())
                walk(node.get("children") or [], depth + 1)

        walk(devices, 0)
        if not rows:
            raise ParseError("lsblk listed no block devices", evidence(res.stdout))
        summary = ", ".join(f"{n} {kind}" for kind, n in sorted(counts.items()))
        result.info(f"Block devices: {summary}", evidence=evidence(rows), check="block_devices")

    def _partitions(self, result: CollectorResult):
        res = None
        if self.has("fdisk"):
            res = self.execute(["fdisk", "-l"])
        if (res is None or res.exit_code != 0) and self.has("parted"):
            res = self.execute(["parted", "-l"])
        tool = res.command[0]
        disks = [line for line in res.stdout if line.startswith("Disk /dev")]
        if res.exit_code != 0 and not disks:
            raise ParseError(f"{tool} failed with exit code {res.exit_code} (root required?)",
                             evidence(res.stderr.splitlines()))
        result.info(f"{tool} lists {len(disks)} disk(s)",
                    evidence=evidence(res.select(lambda line: "/dev/" in line or "Device" in line)),
                    check="partitions")

    # -- filesystem health -----------------------------------------------

    def _ext_health(self, result: CollectorResult, mount: Mount):
        res = self.execute(["tune2fs", "-l", mount.device])
        info = parse_key_values(res.stdout)
        state = info.get("Filesystem state")
        if not state:
            raise ParseError(f"tune2fs reported no state for {mount.device}",
                             evidence(res.stdout + res.stderr.splitlines()))

        severity = Severity.INFO if state == "clean" else Severity.WARNING
        details = [f"state {state}"]
        if "Mount count" in info:
            details.append(f"mounted {info['Mount count']}/{info.get('Maximum mount count', '?')} times")
        lines = res.select(lambda line: line.split(":", 1)[0].strip() in (
            "Filesystem state", "Errors behavior", "Mount count", "Maximum mount count",
            "Last checked", "Filesystem features"))

        if self.has("e2fsck"):
            fsck = self.execute(["e2fsck", "-n", mount.device])
            # Bit 4: errors left uncorrected
            if fsck.exit_code & 4:
                severity = Severity.WARNING
                details.append("e2fsck -n found uncorrected errors")
            lines += ["", "e2fsck -n:"] + fsck.select(trim_lines=10)

        result.add(severity, f"{mount.fstype} health check on {mount.device} ({mount.mountpoint}): "
                   + ", ".join(details), evidence=evidence(lines), check="filesystems")

    def _btrfs_health(self, result: CollectorResult, mount: Mount):
        res = self.execute(["btrfs", "device", "stats", mount.mountpoint])
        counters = {}
        for line in res.stdout:
            match = re.match(r"^\[(.+)\]\.(\w+)\s+(\d+)$", line.strip())
            if match:
                counters[f"{match.group(1)} {match.group(2)}"] = int(match.group(3))
        if not counters:
            raise ParseError(f"btrfs device stats returned no counters for {mount.device}",
                             evidence(res.stdout + res.stderr.splitlines()))

        errors = {k: v for k, v in counters.items() if v}
        lines = list(res.stdout)
        balance = self.execute(["btrfs", "balance", "status", mount.mountpoint])
        balance_running = any("running" in line.lower() and "no balance" not in line.lower()
                              for line in balance.stdout)
        lines += ["", "balance:"] + balance.stdout

        if errors:
            message = (f"btrfs health check on {mount.device} ({mount.mountpoint}): "
                       f"{len(errors)} device error counter(s) non-zero")
            result.critical(message, evidence=evidence(lines), check="filesystems")
        else:
            message = f"btrfs health check on {mount.device} ({mount.mountpoint}): no device errors"
            if balance_running:
                message += ", balance running"
            result.info(message, evidence=evidence(lines), check="filesystems")

    def _zfs_health(self, result: CollectorResult, mount: Mount):
        pool = mount.device.split("/")[0]
        res = self.execute(["zpool", "status", pool])
        state = None
        for line in res.stdout:
            if line.strip().startswith("state:"):
                state = line.split(":", 1)[1].strip()
                break
        if state is None:
            raise ParseError(f"zpool status reported no state for pool {pool}",
                             evidence(res.stdout + res.stderr.splitlines()))

        severity = ZFS_STATE_SEVERITY.get(state, Severity.WARNING)
        lines = list(res.stdout)
        if self.has("zfs"):
            snapshots = self.execute(["zfs", "list", "-H", "-t", "snapshot", "-o", "name,used", "-r", pool])
            lines += ["", f"snapshots: {len(snapshots.stdout)}"]
        result.add(severity, f"zfs health check on pool {pool} ({mount.mountpoint}): {state}",
                   evidence=evidence(lines), check="filesystems")

    def _xfs_health(self, result: CollectorResult, mount: Mount):
        res = self.execute(["xfs_info", mount.mountpoint])
        if not any("bsize=" in line for line in res.stdout):
            raise ParseError(f"xfs_info returned no geometry for {mount.device}",
                             evidence(res.stdout + res.stderr.splitlines()))
        lines = list(res.stdout)
        severity = Severity.INFO
        status = "geometry readable"
        if self.has("xfs_repair"):
            repair = self.execute(["xfs_repair", "-n", mount.device])
            # Exit 1 means corruption was detected
            if repair.exit_code == 1:
                severity = Severity.WARNING
                status = "xfs_repair -n detected corruption"
            lines += ["", "xfs_repair -n:"] + repair.select(trim_lines=10)
        result.add(severity, f"xfs health check on {mount.device} ({mount.mountpoint}): {status}",
                   evidence=evidence(lines), check="filesystems")

    # -- fragmentation ---------------------------------------------------

    def _ext_fragmentation(self, result: CollectorResult, mount: Mount):
        res = self.execute(["e4defrag", "-c", mount.mountpoint], timeout=self.scan_timeout)
        score = None
        for line in res.stdout:
            match = re.search(r"Fragmentation score\s+(\d+)", line)
            if match:
                score = int(match.group(1))
        if score is None:
            raise ParseError(f"e4defrag reported no score for {mount.device}", evidence(res.stdout))
        severity = Severity.WARNING if score >= E4DEFRAG_WARNING else Severity.INFO
        result.add(severity, f"{mount.device} fragmentation score {score}",
                   check="fragmentation", metrics={"score": score})

    def _xfs_fragmentation(self, result: CollectorResult, mount: Mount):
        res = self.execute(["xfs_db", "-r", "-c", "frag -f", mount.device], timeout=self.scan_timeout)
        for line in res.stdout:
            match = re.search(r"fragmentation factor ([\d.]+)%", line)
            if match:
                factor = float(match.group(1))
                result.info(f"{mount.device} fragmentation factor {factor}%",
                            check="fragmentation", metrics={"factor": factor})
                return
        raise ParseError(f"xfs_db reported no fragmentation factor for {mount.device}",
                         evidence(res.stdout + res.stderr.splitlines()))

    def _btrfs_fragmentation(self, result: CollectorResult, mount: Mount):
        # btrfs only reports fragmentation while defragmenting, which writes
        result.info(f"{mount.device}: btrfs has no read-only fragmentation report", check="fragmentation")

    def _jfs_fragmentation(self, result: CollectorResult, mount: Mount):
        res = self.execute(["jfs_fsck", "-n", mount.device], timeout=self.scan_timeout)
        result.info(f"{mount.device}: jfs_fsck -n exited {res.exit_code}",
                    evidence=evidence(res.stdout), check="fragmentation")

    def _ntfs_fragmentation(self, result: CollectorResult, mount: Mount):
        res = self.execute(["ntfsfragment", mount.device], timeout=self.scan_timeout)
        result.info(f"{mount.device}: ntfsfragment exited {res.exit_code}",
                    evidence=evidence(res.stdout), check="fragmentation")

    def _hfsplus_fragmentation(self, result: CollectorResult, mount: Mount):
        res = self.execute(["fsck.hfsplus", "-n", mount.device], timeout=self.scan_timeout)
        result.info(f"{mount.device}: fsck.hfsplus -n exited {res.exit_code}",
                    evidence=evidence(res.stdout), check="fragmentation")

    def _zfs_fragmentation(self, result: CollectorResult, mount: Mount):
        pool = mount.device.split("/")[0]
        res = self.execute(["zpool", "get", "-H", "-o", "value", "fragmentation", pool])
        value = res.output.strip().rstrip("%")
        try:
            percent = float(value)
        except ValueError:
            raise ParseError(f"zpool reported no fragmentation for {pool}", evidence(res.stdout))
        result.info(f"zfs pool {pool} fragmentation {percent:g}%", check="fragmentation",
                    metrics={"percent": percent})

    # -- space -----------------------------------------------------------

    def _usage_findings(self, result: CollectorResult, check: str, what: str, args: List[str]):
        res = self.execute(args)
        rows = [row for row in parse_df(res.stdout) if row["use"].endswith("%")]
        if not rows:
            raise ParseError(f"{' '.join(args)} returned no usage rows", evidence(res.stdout))

        flagged = 0
        highest = None
        for row in rows:
            percent = int(row["use"].rstrip("%"))
            if highest is None or percent > highest[0]:
                highest = (percent, row["mountpoint"])
            if percent >= USAGE_CRITICAL:
                result.critical(f"{row['mountpoint']} ({row['filesystem']}) {what} full: {row['use']}",
                                check=check)
                flagged += 1
            elif percent >= USAGE_WARNING:
                result.warning(f"{row['mountpoint']} ({row['filesystem']}) {what} nearly full: {row['use']}",
                               check=check)
                flagged += 1
        if not flagged:
            result.info(f"{len(rows)} filesystem(s), highest {what} usage {highest[0]}% on {highest[1]}",
                        evidence=evidence(res.stdout), check=check)

    def _disk_usage(self, result: CollectorResult):
        self._usage_findings(result, "disk_usage", "space",
                             ["df", "-P", "-h", "-x", "tmpfs", "-x", "devtmpfs"])

    def _inode_usage(self, result: CollectorResult):
        self._usage_findings(result, "inode_usage", "inode",
                             ["df", "-P", "-i", "-x", "tmpfs", "-x", "devtmpfs"])

    def _deleted_open_files(self, result: CollectorResult):
        lines = self.output_lines(["lsof", "-nP", "+L1"], filter_func=lambda line: "(deleted)" in line)
        if lines:
            result.warning(f"{len(lines)} deleted file(s) still held open", evidence=evidence(lines, 20),
                           check="deleted_open_files")
        else:
            result.info("No deleted files held open", check="deleted_open_files")

    def _large_files(self, result: CollectorResult):
        res = self.execute(["find", self.scan_root, "-xdev", "-type", "f", "-size", self.large_file_size,
                            "-printf", "%s\t%p\n"], timeout=self.scan_timeout)
        files = []
        for line in res.stdout:
            size, _, path = line.partition("\t")
            if size.isdigit():
                files.append((int(size), path))
        files.sort(reverse=True)
        rows = [f"{human_kb(size // 1024)}\t{path}" for size, path in files]
        result.info(f"{len(files)} file(s) larger than {self.large_file_size.lstrip('+')} under {self.scan_root}",
                    evidence=evidence(rows, 20), check="large_files")

    def _largest_directories(self, result: CollectorResult):
        res = self.execute(["du", "-x", "-k", "-d", "2", self.scan_root], timeout=self.scan_timeout)
        sizes = []
        for line in res.stdout:
            size, _, path = line.partition("\t")
            if size.isdigit():
                sizes.append((int(size), path))
        if not sizes:
            raise ParseError(f"du returned no sizes for {self.scan_root}", evidence(res.stderr.splitlines()))
        sizes.sort(reverse=True)
        rows = [f"{human_kb(size)}\t{path}" for size, path in sizes[:10]]
        result.info(f"Largest directories under {self.scan_root}", evidence="\n".join(rows),
                    check="largest_directories")
