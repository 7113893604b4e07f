"""Tests for FAT32 formatting and label verification."""

from unittest.mock import Mock, patch

import pytest

from headless_usb.exceptions import FormatFailedError
from headless_usb.storage import format as fat


class TestValidateLabel:
    @pytest.mark.parametrize("label", ["OEMDRV", "KSDATA", "A", "FEDORA_KS01"])
    def test_valid(self, label):
        assert fat.validate_label(label) == label

    @pytest.mark.parametrize(
        "label,message",
        [
            ("", "empty"),
            ("TWELVECHARS1", "longer than 11"),
            ("oemdrv", "upper-case"),
            ("OEM*DRV", "forbids"),
            ("OEM.DRV", "forbids"),
            ("ÖEMDRV", "upper-case"),
        ],
    )
    def test_invalid(self, label, message):
        with pytest.raises(ValueError, match=message):
            fat.validate_label(label)


class TestFormatPartition:
    """Tests for format_partition() function."""

    @patch("headless_usb.storage.format.run_command")
    @patch("headless_usb.storage.format.run_checked_command")
    @patch("headless_usb.storage.format.shutil.which", return_value="/usr/sbin/mkfs.vfat")
    def test_runs_mkfs(self, mock_which, mock_checked, mock_run):
        fat.format_partition("/dev/sdb3", "OEMDRV")

        mock_checked.assert_called_once_with(
            ["mkfs.vfat", "-F", "32", "-n", "OEMDRV", "/dev/sdb3"]
        )
        mock_run.assert_called_once_with(["udevadm", "settle"], check=False)

    @patch("headless_usb.storage.format.run_command")
    @patch("headless_usb.storage.format.run_checked_command")
    @patch("headless_usb.storage.format.shutil.which")
    def test_falls_back_to_mkfs_fat(self, mock_which, mock_checked, mock_run):
        mock_which.side_effect = lambda name: "/usr/sbin/mkfs.fat" if name == "mkfs.fat" else None

        fat.format_partition("/dev/sdb3", "OEMDRV")

        assert mock_checked.call_args[0][0][0] == "mkfs.fat"

    @patch("headless_usb.storage.format.run_checked_command")
    def test_invalid_label_never_runs_mkfs(self, mock_checked):
        with pytest.raises(FormatFailedError, match="longer than"):
            fat.format_partition("/dev/sdb3", "MUCHTOOLONGLABEL")

        mock_checked.assert_not_called()

    @patch("headless_usb.storage.format.run_checked_command")
    def test_only_vfat_supported(self, mock_checked):
        with pytest.raises(FormatFailedError, match="only vfat"):
            fat.format_partition("/dev/sdb3", "OEMDRV", filesystem="ext4")

        mock_checked.assert_not_called()

    @patch("headless_usb.storage.format.run_command")
    @patch("headless_usb.storage.format.run_checked_command")
    def test_mkfs_failure(self, mock_checked, mock_run):
        mock_checked.side_effect = RuntimeError("Command failed (mkfs.vfat): no such device")

        with pytest.raises(FormatFailedError, match="no such device") as exc_info:
            fat.format_partition("/dev/sdb3", "OEMDRV")

        assert exc_info.value.exit_code == 34
        mock_run.assert_not_called()


class TestVerifyPartitionLabel:
    @patch("headless_usb.storage.format.run_command")
    def test_matching(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="OEMDRV\n")

        fat.verify_partition_label("/dev/sdb3", "OEMDRV")

    @patch("headless_usb.storage.format.run_command")
    def test_mismatch(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="NO NAME\n")

        with pytest.raises(FormatFailedError, match="NO NAME"):
            fat.verify_partition_label("/dev/sdb3", "OEMDRV")

    @patch("headless_usb.storage.format.run_command")
    def test_unreadable_label(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="")

        assert fat.read_partition_label("/dev/sdb3") == ""
        with pytest.raises(FormatFailedError, match="(none)"):
            fat.verify_partition_label("/dev/sdb3", "OEMDRV")
