#!/usr/bin/env python3
"""
Software and hardware RAID diagnostics.

Each controller family is checked independently: a missing vendor CLI only
skips its own sub-check.
"""

import re
from typing import Dict, List, Optional

from .base import Collector, evidence
from .models import CollectorResult, Severity
from .sources import SystemSources
from .storage import ZFS_STATE_SEVERITY

MDSTAT_PATH = "/proc/mdstat"

MEGARAID_LD_SEVERITY = {
    "optimal": Severity.INFO,
    "degraded": Severity.WARNING,
    "partially degraded": Severity.WARNING,
    "offline": Severity.CRITICAL,
    "failed": Severity.CRITICAL,
}
PERC_STATE_SEVERITY = {
    "Optl": Severity.INFO,
    "Onln": Severity.INFO,
    "GHS": Severity.INFO,
    "DHS": Severity.INFO,
    "UGood": Severity.INFO,
    "Dgrd": Severity.WARNING,
    "Pdgd": Severity.WARNING,
    "Rbld": Severity.WARNING,
    "Rec": Severity.WARNING,
    "OfLn": Severity.CRITICAL,
    "Offln": Severity.CRITICAL,
    "UBad": Severity.CRITICAL,
    "Failed": Severity.CRITICAL,
}


def severity_for_status(status: str) -> Severity:
    """Map a free-text controller status to a severity."""
    status = status.lower()
    if any(word in status for word in ("fail", "offline", "missing", "dead")):
        return Severity.CRITICAL
    if any(word in status for word in ("degrad", "rebuild", "recover", "resync", "interim", "predictive")):
        return Severity.WARNING
    return Severity.INFO


def parse_mdstat(lines: List[str]) -> Dict[str, List[str]]:
    """Split /proc/mdstat into blocks keyed by md device name."""
    arrays = {}
    current = None
    for line in lines:
        match = re.match(r"^(md\w+)\s*:", line)
        if match:
            current = match.group(1)
            arrays[current] = [line]
        elif current and line.strip():
            arrays[current].append(line)
        else:
            current = None
    return arrays


class RaidCollector(Collector):
    """MD software RAID, vendor RAID controllers and ZFS pools."""

    requires = ("mdstat", "megaraid-cli", "hpacucli", "perccli64", "arcconf", "zpool")

    def __init__(self, sources: Optional[SystemSources] = None):
        super().__init__("raid", "RAID Arrays & Controllers", sources)
        self.subsections = {
            "mdadm": True,
            "megaraid": True,
            "hp_smart_array": True,
            "dell_perc": True,
            "adaptec": True,
            "zfs": True,
        }

    def collect(self, result: CollectorResult):
        self.check(result, "mdadm", self._mdadm, requires=("mdstat",))
        self.check(result, "megaraid", self._megaraid, requires=("megaraid-cli",))
        self.check(result, "hp_smart_array", self._hp_smart_array, requires=("hpacucli",))
        self.check(result, "dell_perc", self._dell_perc, requires=("perccli64",))
        self.check(result, "adaptec", self._adaptec, requires=("arcconf",))
        self.check(result, "zfs", self._zfs, requires=("zpool",))

    def _mdadm(self, result: CollectorResult):
        lines = self.sources.read_lines(MDSTAT_PATH) or []
        arrays = parse_mdstat(lines)
        if not arrays:
            result.info("No MD RAID devices found", check="mdadm")
            return

        for md, block in arrays.items():
            status = " ".join(block)
            degraded = bool(re.search(r"\[U*_[U_]*\]", status))
            rebuilding = [line.strip() for line in block if "recovery" in line or "resync" in line]
            failed_devices = 0
            detail_lines = block

            if self.has("mdadm"):
                detail = self.execute(["mdadm", "--detail", f"/dev/{md}"])
                info = {}
                for line in detail.stdout:
                    if " : " in line:
                        key, value = line.split(" : ", 1)
                        info[key.strip()] = value.strip()
                state = info.get("State", "")
                degraded = degraded or "degraded" in state
                if "recovering" in state or "resyncing" in state:
                    rebuilding = rebuilding or [state]
                try:
                    failed_devices = int(info.get("Failed Devices", "0"))
                except ValueError:
                    failed_devices = 0
                detail_lines = detail.stdout or block

            if failed_devices:
                result.critical(f"{md} has {failed_devices} failed device(s)",
                                evidence=evidence(detail_lines), check="mdadm")
            if degraded:
                message = f"{md} is in degraded state"
                if rebuilding:
                    message += f"; rebuild: {rebuilding[0]}"
                result.warning(message, evidence=evidence(block), check="mdadm")
            elif rebuilding:
                result.warning(f"{md} is resyncing: {rebuilding[0]}", evidence=evidence(block), check="mdadm")
            elif not failed_devices:
                result.info(f"{md} is healthy", evidence=evidence(block), check="mdadm")

    def _megaraid(self, result: CollectorResult):
        ld = self.execute(["megacli", "-LDInfo", "-Lall", "-aALL"])
        drive = None
        found = 0
        for line in ld.stdout:
            match = re.match(r"^Virtual Drive:\s*(\d+)", line.strip())
            if match:
                drive = match.group(1)
                continue
            if drive is not None and re.match(r"^State\s*:", line.strip()):
                state = line.split(":", 1)[1].strip()
                found += 1
                severity = MEGARAID_LD_SEVERITY.get(state.lower(), severity_for_status(state))
                result.add(severity, f"MegaRAID virtual drive {drive}: {state}", check="megaraid")
                drive = None
        if not found:
            result.info("No MegaRAID arrays found", evidence=evidence(ld.stdout), check="megaraid")

        pd = self.execute(["megacli", "-PDList", "-aALL"])
        slot = "?"
        drives = 0
        for line in pd.stdout:
            key, _, value = line.partition(":")
            key, value = key.strip(), value.strip()
            if key == "Slot Number":
                slot = value
                drives += 1
            elif key == "Firmware state":
                severity = severity_for_status(value)
                if severity != Severity.INFO:
                    result.add(severity, f"MegaRAID physical drive in slot {slot}: {value}", check="megaraid")
            elif key == "Media Error Count" and value.isdigit() and int(value) > 0:
                result.warning(f"MegaRAID physical drive in slot {slot}: {value} media errors",
                               check="megaraid")
        if drives:
            result.info(f"MegaRAID reports {drives} physical drive(s)", check="megaraid")

        bbu = self.execute(["megacli", "-AdpBbuCmd", "-aAll"])
        text = bbu.output
        missing = (
            re.search(r"Battery Pack Missing\s*:\s*Yes", text, re.IGNORECASE)
            or re.search(r"Battery State\s*:\s*Missing", text, re.IGNORECASE)
            or "Get BBU Status Failed" in text
            or (bbu.exit_code != 0 and "BBU" not in text)
        )
        if missing:
            result.critical("MegaRAID battery backup unit missing", evidence=evidence(bbu.stdout),
                            check="megaraid")
        elif re.search(r"Battery Replacement required\s*:\s*Yes", text, re.IGNORECASE):
            result.critical("MegaRAID battery backup unit needs replacement", evidence=evidence(bbu.stdout),
                            check="megaraid")
        else:
            state = re.search(r"Battery State\s*:\s*(.+)", text)
            result.info(f"MegaRAID battery backup unit: {state.group(1).strip() if state else 'present'}",
                        check="megaraid")

    def _hp_smart_array(self, result: CollectorResult):
        res = self.execute(["hpacucli", "ctrl", "all", "show", "config"])
        drives = 0
        for line in res.stdout:
            match = re.match(r"^\s*(logicaldrive|physicaldrive)\s+(\S+)\s+\((.*)\)", line)
            if not match:
                continue
            drives += 1
            kind, name, attrs = match.groups()
            status = attrs.split(",")[-1].strip()
            severity = severity_for_status(status)
            if severity != Severity.INFO:
                result.add(severity, f"HP Smart Array {kind} {name}: {status}", check="hp_smart_array")
        if drives:
            result.info(f"HP Smart Array: {drives} drive(s) listed", evidence=evidence(res.stdout),
                        check="hp_smart_array")
        else:
            result.info("No HP Smart Array controllers found", check="hp_smart_array")

    def _dell_perc(self, result: CollectorResult):
        res = self.execute(["perccli64", "/call", "show"])
        seen = 0
        for line in res.stdout:
            parts = line.split()
            if len(parts) >= 3 and re.match(r"^\d+/\d+$", parts[0]) and parts[1].startswith("RAID"):
                label, state = f"virtual drive {parts[0]}", parts[2]
            elif len(parts) >= 3 and re.match(r"^\d+:\d+$", parts[0]) and parts[1].isdigit():
                label, state = f"physical drive {parts[0]}", parts[2]
            else:
                continue
            seen += 1
            severity = PERC_STATE_SEVERITY.get(state, severity_for_status(state))
            if severity != Severity.INFO:
                result.add(severity, f"Dell PERC {label}: {state}", check="dell_perc")
        if seen:
            result.info(f"Dell PERC: {seen} drive(s) listed", evidence=evidence(res.stdout), check="dell_perc")
        else:
            result.info("No Dell PERC controllers found", check="dell_perc")

    def _adaptec(self, result: CollectorResult):
        res = self.execute(["arcconf", "getconfig", "1"])
        if res.exit_code != 0 or any("Controllers found: 0" in line for line in res.stdout):
            result.info("No Adaptec controllers found", evidence=evidence(res.stdout), check="adaptec")
            return
        statuses = 0
        for line in res.stdout:
            key, _, value = line.partition(":")
            key, value = key.strip(), value.strip()
            if key in ("Controller Status", "Status of logical device", "State", "Status"):
                statuses += 1
                severity = severity_for_status(value)
                if severity != Severity.INFO:
                    result.add(severity, f"Adaptec {key.lower()}: {value}", check="adaptec")
        result.info(f"Adaptec controller 1: {statuses} status field(s) read", evidence=evidence(res.stdout),
                    check="adaptec")

    def _zfs(self, result: CollectorResult):
        res = self.execute(["zpool", "status"])
        if any("no pools available" in line for line in res.stdout + res.stderr.splitlines()):
            result.info("No ZFS pools found", check="zfs")
            return

        pools = {}
        current = None
        for line in res.stdout:
            stripped = line.strip()
            if stripped.startswith("pool:"):
                current = stripped.split(":", 1)[1].strip()
                pools[current] = {"lines": []}
            if current is None:
                continue
            pools[current]["lines"].append(line)
            for key in ("state", "scan", "errors"):
                if stripped.startswith(f"{key}:"):
                    pools[current][key] = stripped.split(":", 1)[1].strip()

        for pool, info in pools.items():
            state = info.get("state", "UNKNOWN")
            severity = ZFS_STATE_SEVERITY.get(state, Severity.WARNING)
            result.add(severity, f"ZFS pool {pool}: {state}", evidence=evidence(info["lines"]), check="zfs")
            if "resilver in progress" in info.get("scan", ""):
                result.warning(f"ZFS pool {pool} is resilvering: {info['scan']}", check="zfs")
            errors = info.get("errors")
            if errors and errors != "No known data errors":
                result.critical(f"ZFS pool {pool} data errors: {errors}", check="zfs")

        listing = self.execute(["zpool", "list", "-H", "-o", "name,size,alloc,free,frag,cap,health"])
        iostat = self.execute(["zpool", "iostat", "-v"])
        result.info(f"ZFS pool capacity and I/O for {len(pools)} pool(s)",
                    evidence=evidence(listing.stdout + [""] + iostat.stdout), check="zfs")
