"""
Tests for the install-time disk selection program.

The program runs inside the installer, so these tests drive it with a fake
command runner and a temporary sysfs tree instead of real hardware.

This test suite covers:
- Candidate filtering (removable, USB transport, udev bus, pseudo-devices)
- Mode resolution and its failure exit codes
- Directive rendering
- The run() entry point and its include file
"""

import json

import pytest

from headless_usb.manifest import disk_policy_runtime as runtime


def make_runner(disks, udev_bus=None):
    """Return a runner answering lsblk and udevadm like the target machine."""
    udev_bus = udev_bus or {}

    def runner(command):
        if command[0] == "lsblk":
            return json.dumps({"blockdevices": disks})
        if command[0] == "udevadm":
            name = command[-1].rsplit("/", 1)[-1]
            bus = udev_bus.get(name)
            return f"DEVNAME=/dev/{name}\nID_BUS={bus}\n" if bus else f"DEVNAME=/dev/{name}\n"
        raise AssertionError(f"unexpected command {command}")

    return runner


@pytest.fixture
def sysfs(tmp_path):
    """Build a fake /sys/block with removable flags."""

    def build(flags):
        for name, removable in flags.items():
            directory = tmp_path / name
            directory.mkdir(exist_ok=True)
            (directory / "removable").write_text("1\n" if removable else "0\n")
        return str(tmp_path)

    return build


def disk(name, rm=False, tran="sata"):
    return {"name": name, "type": "disk", "rm": rm, "tran": tran}


class TestListDisks:
    def test_keeps_only_disks(self):
        runner = make_runner([disk("sda"), {"name": "sr0", "type": "rom", "rm": True}])

        assert [entry["name"] for entry in runtime.list_disks(runner)] == ["sda"]

    def test_empty_or_invalid_output(self):
        assert runtime.list_disks(lambda command: "") == []
        assert runtime.list_disks(lambda command: "{broken") == []


class TestIsCandidate:
    """Tests for is_candidate()."""

    def test_internal_fixed_disk(self, sysfs):
        root = sysfs({"sda": False})

        assert runtime.is_candidate(disk("sda"), make_runner([]), root) is True

    def test_sysfs_removable_excluded(self, sysfs):
        root = sysfs({"sdb": True})

        assert runtime.is_candidate(disk("sdb"), make_runner([]), root) is False

    def test_usb_transport_excluded(self, sysfs):
        root = sysfs({"sdb": False})

        assert runtime.is_candidate(disk("sdb", tran="usb"), make_runner([]), root) is False

    def test_udev_usb_bus_excluded(self, sysfs):
        root = sysfs({"sdc": False})
        runner = make_runner([], udev_bus={"sdc": "usb"})

        assert runtime.is_candidate(disk("sdc", tran=None), runner, root) is False

    def test_falls_back_to_lsblk_rm_without_sysfs(self, tmp_path):
        entry = disk("sdd", rm="1")

        assert runtime.is_candidate(entry, make_runner([]), str(tmp_path)) is False

    @pytest.mark.parametrize("name", ["loop0", "zram0", "ram1", ""])
    def test_pseudo_devices_excluded(self, name, tmp_path):
        assert runtime.is_candidate(disk(name), make_runner([]), str(tmp_path)) is False


class TestResolveTargets:
    """Tests for resolve_targets()."""

    def test_auto_single_one_candidate(self):
        assert runtime.resolve_targets("AUTO_SINGLE", None, ["nvme0n1"]) == ["nvme0n1"]

    @pytest.mark.parametrize("candidates", [[], ["sda", "nvme0n1"]])
    def test_auto_single_ambiguous(self, candidates):
        with pytest.raises(runtime.PolicyError, match="exactly one") as exc_info:
            runtime.resolve_targets("AUTO_SINGLE", None, candidates)

        assert exc_info.value.exit_code == runtime.EXIT_NO_UNIQUE_TARGET

    def test_ambiguity_names_found_disks(self):
        with pytest.raises(runtime.PolicyError, match="sda, nvme0n1"):
            runtime.resolve_targets("AUTO_SINGLE", None, ["sda", "nvme0n1"])

    def test_all_internal(self):
        assert runtime.resolve_targets("ALL_INTERNAL", None, ["sda", "sdb"]) == ["sda", "sdb"]

    def test_all_internal_none(self):
        with pytest.raises(runtime.PolicyError) as exc_info:
            runtime.resolve_targets("ALL_INTERNAL", None, [])

        assert exc_info.value.exit_code == 2

    def test_manual_ignores_candidates(self):
        assert runtime.resolve_targets("MANUAL", "/dev/sdb", ["sda"]) == ["sdb"]

    def test_manual_without_device(self):
        with pytest.raises(runtime.PolicyError) as exc_info:
            runtime.resolve_targets("MANUAL", "  ", ["sda"])

        assert exc_info.value.exit_code == runtime.EXIT_MISSING_MANUAL_DEVICE

    def test_unknown_mode(self):
        with pytest.raises(runtime.PolicyError) as exc_info:
            runtime.resolve_targets("FIRST", None, ["sda"])

        assert exc_info.value.exit_code == runtime.EXIT_UNKNOWN_MODE


class TestRenderDirectives:
    def test_single_disk(self):
        assert runtime.render_directives(["nvme0n1"]) == (
            "ignoredisk --only-use=nvme0n1\n"
            "clearpart --all --initlabel\n"
            "autopart --type=btrfs\n"
        )

    def test_multiple_disks_and_type(self):
        text = runtime.render_directives(["sda", "sdb"], "lvm")

        assert "ignoredisk --only-use=sda,sdb" in text
        assert "autopart --type=lvm" in text

    def test_empty_list_refused(self):
        with pytest.raises(ValueError):
            runtime.render_directives([])


class TestRun:
    """Tests for the run() entry point."""

    @pytest.fixture
    def payload(self, tmp_path):
        return {
            "mode": "AUTO_SINGLE",
            "manual_device": "",
            "autopart_type": "btrfs",
            "target_file": str(tmp_path / "target.ks"),
            "diagnostic_console": str(tmp_path / "tty3"),
        }

    def test_auto_single_writes_include(self, payload, sysfs):
        root = sysfs({"nvme0n1": False, "sda": True})
        runner = make_runner([disk("nvme0n1", tran="nvme"), disk("sda", rm=True, tran="usb")])

        code = runtime.run(payload, runner, root)

        assert code == runtime.EXIT_OK
        with open(payload["target_file"], encoding="utf-8") as handle:
            assert handle.read().startswith("ignoredisk --only-use=nvme0n1\n")

    def test_ambiguous_writes_diagnostic_and_no_include(self, payload, sysfs, tmp_path):
        root = sysfs({"sda": False, "nvme0n1": False})
        runner = make_runner([disk("sda"), disk("nvme0n1", tran="nvme")])

        code = runtime.run(payload, runner, root)

        assert code == runtime.EXIT_NO_UNIQUE_TARGET
        assert not (tmp_path / "target.ks").exists()
        diagnostic = (tmp_path / "tty3").read_text()
        assert "Unattended install stopped" in diagnostic
        assert "sda, nvme0n1" in diagnostic

    def test_manual_skips_scan(self, payload):
        payload.update(mode="MANUAL", manual_device="sdb")

        def runner(command):
            raise AssertionError("MANUAL with a device must not scan")

        assert runtime.run(payload, runner) == runtime.EXIT_OK

    def test_unknown_mode(self, payload):
        payload["mode"] = "EVERYTHING"

        assert runtime.run(payload, make_runner([])) == runtime.EXIT_UNKNOWN_MODE

    def test_unwritable_target(self, payload, sysfs, tmp_path):
        root = sysfs({"sda": False})
        payload["target_file"] = str(tmp_path / "missing" / "target.ks")

        code = runtime.run(payload, make_runner([disk("sda")]), root)

        assert code == runtime.EXIT_TARGET_WRITE_FAILED

    def test_diagnostic_falls_back_to_stderr(self, capsys, tmp_path):
        runtime.write_diagnostic("no disk", str(tmp_path / "no" / "tty3"))

        assert "no disk" in capsys.readouterr().err
