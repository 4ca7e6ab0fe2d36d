"""StorageCollector: filesystem dispatch, usage thresholds and sub-check degradation."""

from conftest import FakeRunner, FakeSources

from sysprobe.modules.capabilities import CapabilityDetector
from sysprobe.modules.errors import ExecutionFailure
from sysprobe.modules.models import Severity
from sysprobe.modules.sources import Mount
from sysprobe.modules.storage import FsType, StorageCollector, parse_df

TUNE2FS_CLEAN = """tune2fs 1.46.5 (30-Dec-2021)
Filesystem volume name:   root
Filesystem state:         clean
Errors behavior:          Continue
Mount count:              12
Maximum mount count:      -1
"""

DF_OK = """Filesystem      Size  Used Avail Use% Mounted on
/dev/sda1        50G   20G   28G  42% /
/dev/sdb1       100G   10G   90G  10% /data
"""

DF_FULL = """Filesystem      Size  Used Avail Use% Mounted on
/dev/sda1        50G   47G    3G  95% /
/dev/sdb1       100G  100G     0 100% /data
"""


def run(collector, runner, sources):
    return collector.run(runner, CapabilityDetector(sources))


def test_ext4_mount_yields_single_health_finding() -> None:
    sources = FakeSources(executables=["tune2fs"], mounts=[Mount("/dev/sda1", "/", "ext4")])
    runner = FakeRunner().add("tune2fs -l /dev/sda1", TUNE2FS_CLEAN)

    res = run(StorageCollector(sources), runner, sources)

    health = [f for f in res.findings if "ext4 health check" in f.message]
    assert len(health) == 1
    assert health[0].check == "filesystems"
    assert health[0].severity == Severity.INFO
    assert "state clean" in health[0].message
    assert health[0].category == "storage"
    assert not [f for f in res.findings if "zfs" in f.message.lower() or "btrfs" in f.message.lower()]
    assert not [c for c in runner.commands() if c.startswith(("zpool", "zfs", "btrfs"))]


def test_e2fsck_uncorrected_errors_raise_warning() -> None:
    sources = FakeSources(executables=["tune2fs", "e2fsck"], mounts=[Mount("/dev/sda1", "/", "ext4")])
    runner = FakeRunner().add("tune2fs -l /dev/sda1", TUNE2FS_CLEAN).add("e2fsck -n /dev/sda1", exit_code=4)

    res = run(StorageCollector(sources), runner, sources)

    (health,) = [f for f in res.findings if f.check == "filesystems"]
    assert health.severity == Severity.WARNING
    assert "uncorrected" in health.message


def test_unknown_filesystem_type_is_reported_as_unsupported() -> None:
    sources = FakeSources(executables=["tune2fs"], mounts=[Mount("/dev/sdc1", "/boot/efi", "vfat")])

    res = run(StorageCollector(sources), FakeRunner(), sources)

    (finding,) = [f for f in res.findings if f.check == "filesystems"]
    assert finding.severity == Severity.INFO
    assert finding.message == "unsupported filesystem type: vfat on /dev/sdc1"


def test_fs_type_dispatch_keys() -> None:
    assert FsType.from_name("ext3") == FsType.EXT
    assert FsType.from_name("ntfs3") == FsType.NTFS
    assert FsType.from_name("BTRFS") == FsType.BTRFS
    assert FsType.from_name("vfat") == FsType.UNSUPPORTED
    assert FsType.from_name("") == FsType.UNSUPPORTED


def test_disk_usage_thresholds() -> None:
    sources = FakeSources(executables=["df"])
    runner = FakeRunner().add("df -P -h", DF_FULL).add("df -P -i", DF_OK)

    res = run(StorageCollector(sources), runner, sources)

    usage = {f.severity: f.message for f in res.findings if f.check == "disk_usage"}
    assert "nearly full: 95%" in usage[Severity.WARNING]
    assert "/data" in usage[Severity.CRITICAL]
    (inodes,) = [f for f in res.findings if f.check == "inode_usage"]
    assert inodes.severity == Severity.INFO
    assert "highest inode usage 42%" in inodes.message


def test_slow_scans_are_off_by_default() -> None:
    sources = FakeSources(executables=["tune2fs", "e4defrag", "find", "du"],
                          mounts=[Mount("/dev/sda1", "/", "ext4")])
    runner = FakeRunner().add("tune2fs -l /dev/sda1", TUNE2FS_CLEAN)

    run(StorageCollector(sources), runner, sources)

    assert not any(call[0] in ("e4defrag", "find", "du") for call in runner.calls)


def test_fragmentation_when_enabled() -> None:
    sources = FakeSources(executables=["tune2fs", "e4defrag"], mounts=[Mount("/dev/sda1", "/", "ext4")])
    runner = (FakeRunner().add("tune2fs -l /dev/sda1", TUNE2FS_CLEAN)
              .add("e4defrag -c /", " Fragmentation score                 60\n [0-30 no problem]"))
    collector = StorageCollector(sources)
    collector.subsections["fragmentation"] = True

    res = run(collector, runner, sources)

    (frag,) = [f for f in res.findings if f.check == "fragmentation"]
    assert frag.severity == Severity.WARNING
    assert frag.metrics == {"score": 60}


def test_timeout_degrades_to_warning_and_siblings_still_run() -> None:
    sources = FakeSources(executables=["lsblk", "df"])
    runner = FakeRunner().add("lsblk", '{"blockdevices": [', timed_out=True).add("df -P", DF_OK)

    res = run(StorageCollector(sources), runner, sources)

    (timeout,) = [f for f in res.findings if f.check == "block_devices"]
    assert timeout.severity == Severity.WARNING
    assert "timed out" in timeout.message
    assert any(f.check == "disk_usage" for f in res.findings)


def test_launch_failure_is_critical() -> None:
    sources = FakeSources(executables=["lsof"])
    runner = FakeRunner().respond("lsof", ExecutionFailure(("lsof",), "permission denied"))

    res = run(StorageCollector(sources), runner, sources)

    (failure,) = [f for f in res.findings if f.check == "deleted_open_files"]
    assert failure.severity == Severity.CRITICAL
    assert "permission denied" in failure.message


def test_unparseable_output_is_info_with_evidence() -> None:
    sources = FakeSources(executables=["lsblk"])
    runner = FakeRunner().add("lsblk", "lsblk: not json")

    res = run(StorageCollector(sources), runner, sources)

    (finding,) = [f for f in res.findings if f.check == "block_devices"]
    assert finding.severity == Severity.INFO
    assert finding.evidence == "lsblk: not json"


def test_block_devices_are_summarised() -> None:
    sources = FakeSources(executables=["lsblk"])
    runner = FakeRunner().add("lsblk", """{"blockdevices": [
        {"name": "sda", "size": "50G", "type": "disk", "fstype": null, "mountpoint": null, "model": "SSD",
         "children": [{"name": "sda1", "size": "50G", "type": "part", "fstype": "ext4", "mountpoint": "/"}]}
    ]}""")

    res = run(StorageCollector(sources), runner, sources)

    (finding,) = [f for f in res.findings if f.check == "block_devices"]
    assert finding.message == "Block devices: 1 disk, 1 part"


def test_deleted_open_files_warning() -> None:
    sources = FakeSources(executables=["lsof"])
    runner = FakeRunner().add(
        "lsof -nP +L1",
        "COMMAND PID USER FD TYPE DEVICE SIZE/OFF NLINK NODE NAME\n"
        "java 1234 app 5w REG 8,1 1048576 0 42 /var/log/app.log (deleted)")

    res = run(StorageCollector(sources), runner, sources)

    (finding,) = [f for f in res.findings if f.check == "deleted_open_files"]
    assert finding.severity == Severity.WARNING
    assert finding.message.startswith("1 deleted file")


def test_parse_df_keeps_mountpoints_with_spaces() -> None:
    rows = parse_df(["Filesystem Size Used Avail Use% Mounted on",
                     "/dev/sdd1 10G 1G 9G 10% /media/usb stick"])

    assert rows[0]["mountpoint"] == "/media/usb stick"
    assert rows[0]["use"] == "10%"


def test_repeated_runs_give_identical_findings() -> None:
    sources = FakeSources(executables=["tune2fs", "df"], mounts=[Mount("/dev/sda1", "/", "ext4")])
    runner = (FakeRunner().add("tune2fs -l /dev/sda1", TUNE2FS_CLEAN)
              .add("df -P -h", DF_FULL).add("df -P -i", DF_OK))
    collector = StorageCollector(sources)

    first = run(collector, runner, sources)
    second = run(collector, runner, sources)

    assert len(first.findings) >= 3
    assert second.findings == first.findings
    assert second.skipped == first.skipped
    assert runner.commands()[:len(runner.calls) // 2] == runner.commands()[len(runner.calls) // 2:]


def test_unexpected_error_is_contained_to_its_sub_check() -> None:
    sources = FakeSources(executables=["lsblk", "df"])

    def broken_lsblk(argv):
        raise KeyError("children")

    runner = FakeRunner().respond("lsblk", broken_lsblk).add("df -P", DF_OK)

    res = run(StorageCollector(sources), runner, sources)

    (failure,) = [f for f in res.findings if f.check == "block_devices"]
    assert failure.severity == Severity.CRITICAL
    assert failure.message == "block_devices: failed with KeyError: 'children'"
    assert any(f.check == "disk_usage" for f in res.findings)
