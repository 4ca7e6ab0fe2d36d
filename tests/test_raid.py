"""RaidCollector severity policy across MD, MegaRAID and ZFS."""

from conftest import FakeRunner, FakeSources

from sysprobe.modules.capabilities import CapabilityDetector
from sysprobe.modules.models import Severity
from sysprobe.modules.raid import RaidCollector, parse_mdstat, severity_for_status

MDSTAT_DEGRADED = """Personalities : [raid1]
md0 : active raid1 sda1[0]
      976630464 blocks super 1.2 [2/1] [U_]
      [=>...................]  recovery =  8.5% (83047296/976630464) finish=120.3min

unused devices: <none>
"""

MDADM_DETAIL_FAILED = """/dev/md0:
           Version : 1.2
             State : clean, degraded
    Active Devices : 1
    Failed Devices : 1
"""

MEGACLI_LD = """Adapter 0 -- Virtual Drive Information:
Virtual Drive: 0 (Target Id: 0)
RAID Level          : Primary-1, Secondary-0, RAID Level Qualifier-0
State               : Degraded
"""

ZPOOL_STATUS = """  pool: tank
 state: DEGRADED
  scan: resilver in progress since Mon Oct 19 10:00:00 2026
config:

        NAME        STATE     READ WRITE CKSUM
        tank        DEGRADED     0     0     0
errors: No known data errors
"""


def run(sources, runner):
    return RaidCollector(sources).run(runner, CapabilityDetector(sources))


def test_degraded_md_array_is_warning() -> None:
    sources = FakeSources(files={"/proc/mdstat": MDSTAT_DEGRADED})

    res = run(sources, FakeRunner())

    (finding,) = [f for f in res.findings if f.check == "mdadm"]
    assert finding.severity == Severity.WARNING
    assert finding.message.startswith("md0 is in degraded state; rebuild:")


def test_failed_member_is_critical() -> None:
    sources = FakeSources(executables=["mdadm"], files={"/proc/mdstat": MDSTAT_DEGRADED})
    runner = FakeRunner().add("mdadm --detail /dev/md0", MDADM_DETAIL_FAILED)

    res = run(sources, runner)

    severities = [f.severity for f in res.findings if f.check == "mdadm"]
    assert Severity.CRITICAL in severities
    assert Severity.WARNING in severities


def test_megaraid_missing_battery_is_critical() -> None:
    sources = FakeSources(executables=["megacli"])
    runner = (FakeRunner().add("megacli -LDInfo", MEGACLI_LD)
              .add("megacli -AdpBbuCmd", "Adapter 0: Get BBU Status Failed.", exit_code=1))

    res = run(sources, runner)

    by_message = {f.message: f.severity for f in res.findings if f.check == "megaraid"}
    assert by_message["MegaRAID virtual drive 0: Degraded"] == Severity.WARNING
    assert by_message["MegaRAID battery backup unit missing"] == Severity.CRITICAL


def test_zfs_pool_states() -> None:
    sources = FakeSources(executables=["zpool"])
    runner = FakeRunner().add("zpool status", ZPOOL_STATUS)

    res = run(sources, runner)

    zfs = [(f.severity, f.message) for f in res.findings if f.check == "zfs"]
    assert (Severity.WARNING, "ZFS pool tank: DEGRADED") in zfs
    assert any(message.startswith("ZFS pool tank is resilvering") for _, message in zfs)
    assert not any(severity == Severity.CRITICAL for severity, _ in zfs)


def test_status_keywords() -> None:
    assert severity_for_status("Failed") == Severity.CRITICAL
    assert severity_for_status("Rebuilding") == Severity.WARNING
    assert severity_for_status("OK") == Severity.INFO


def test_parse_mdstat_splits_arrays() -> None:
    arrays = parse_mdstat(["md0 : active raid1 sda1[0]", "  blocks [2/2] [UU]", "",
                           "md1 : active raid0 sdc1[0]"])

    assert list(arrays) == ["md0", "md1"]
    assert len(arrays["md0"]) == 2


def test_repeated_runs_give_identical_findings() -> None:
    sources = FakeSources(executables=["mdadm"], files={"/proc/mdstat": MDSTAT_DEGRADED})
    runner = FakeRunner().add("mdadm --detail /dev/md0", MDADM_DETAIL_FAILED)
    collector = RaidCollector(sources)

    first = collector.run(runner, CapabilityDetector(sources))
    second = collector.run(runner, CapabilityDetector(sources))

    assert first.findings
    assert second.findings == first.findings
    assert second.skipped == first.skipped
