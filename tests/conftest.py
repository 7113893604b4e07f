"""Shared fixtures: lsblk and parted output, devices, manifest inputs, log capture."""

import json
import subprocess
from pathlib import Path
from typing import Any, Dict, List

import pytest

from headless_usb.domain import (
    Device,
    ManifestOptions,
    NetworkConfig,
    Transport,
    UserAccount,
)
from headless_usb.logging import logger


SAMPLE_SSH_KEY = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIKv3J1l8Z9mQ0f2sGq9Xo0a1b2c3d4e5f6g7h8i9j0kL admin@laptop"
)
SAMPLE_PASSWORD_HASH = (
    "$6$0a1b2c3d4e5f$Qm9vYmFyYmF6cXV4Zm9vYmFyYmF6cXV4Zm9vYmFyYmF6cXV4Zm9vYmFyYmF6cXV4"
)


# lsblk -J -b -o NAME,PATH,SIZE,TYPE,RM,TRAN,MODEL,VENDOR,MOUNTPOINT


@pytest.fixture
def mock_usb_device() -> Dict[str, Any]:
    """A 16 GB SanDisk stick with one stale FAT partition."""
    return {
        "name": "sdb",
        "path": "/dev/sdb",
        "size": 16008609792,
        "type": "disk",
        "rm": True,
        "tran": "usb",
        "model": "Cruzer Blade    ",
        "vendor": "SanDisk ",
        "mountpoint": None,
        "children": [
            {
                "name": "sdb1",
                "path": "/dev/sdb1",
                "size": 16007561216,
                "type": "part",
                "rm": True,
                "tran": None,
                "model": None,
                "vendor": None,
                "mountpoint": None,
            }
        ],
    }


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    # older lsblk releases report size and rm as strings
    return {
        "name": "nvme0n1",
        "path": "/dev/nvme0n1",
        "size": "512110190592",
        "type": "disk",
        "rm": "0",
        "tran": "nvme",
        "model": "Samsung SSD 980 PRO 500GB",
        "vendor": None,
        "mountpoint": None,
        "children": [
            {
                "name": "nvme0n1p1",
                "path": "/dev/nvme0n1p1",
                "size": "629145600",
                "type": "part",
                "mountpoint": "/boot/efi",
            },
            {
                "name": "nvme0n1p2",
                "path": "/dev/nvme0n1p2",
                "size": "511480979456",
                "type": "part",
                "mountpoint": "/",
            },
        ],
    }


@pytest.fixture
def mock_loop_device() -> Dict[str, Any]:
    """Loop devices must never show up as candidates."""
    return {
        "name": "loop0",
        "path": "/dev/loop0",
        "size": "67108864",
        "type": "loop",
        "rm": "0",
        "tran": None,
        "model": None,
        "vendor": None,
        "mountpoint": "/snap/core/1",
    }


@pytest.fixture
def mock_lsblk_output(mock_system_disk, mock_usb_device, mock_loop_device) -> str:
    devices = [mock_system_disk, mock_usb_device, mock_loop_device]
    return json.dumps({"blockdevices": devices})


@pytest.fixture
def mock_lsblk_empty() -> str:
    return '{"blockdevices": []}'


@pytest.fixture
def usb_device() -> Device:
    """The stick from mock_usb_device after inspection."""
    return Device(
        path="/dev/sdb",
        size_bytes=16008609792,
        transport=Transport.USB,
        removable=True,
        model="Cruzer Blade",
        vendor="SanDisk",
    )


@pytest.fixture
def mock_subprocess_run(mocker):
    return mocker.patch("subprocess.run")


@pytest.fixture
def mock_subprocess_failure(mocker):
    """subprocess.run raising CalledProcessError for every command."""

    def fail(command, *args, **kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="Mock error")

    return mocker.patch("subprocess.run", side_effect=fail)


@pytest.fixture
def parted_free_output() -> str:
    """`parted -m -s /dev/sdb unit B print free` right after a hybrid ISO write.

    The image holds the start of the stick; the tail is free.
    """
    return "\n".join(
        [
            "BYT;",
            "/dev/sdb:16008609792B:scsi:512:512:gpt:SanDisk Cruzer Blade:;",
            "1:17408B:32767B:15360B:free;",
            "1:32768B:2612019199B:2611986432B::ISO9660:hidden, msftdata;",
            "2:2612019200B:2622504959B:10485760B::Appended2:boot, esp;",
            "1:2622504960B:16008609279B:13386104320B:free;",
        ]
    )


@pytest.fixture
def ssh_public_key() -> str:
    return SAMPLE_SSH_KEY


@pytest.fixture
def admin_user() -> UserAccount:
    return UserAccount(
        name="admin",
        password_hash=SAMPLE_PASSWORD_HASH,
        ssh_public_key=SAMPLE_SSH_KEY,
    )


@pytest.fixture
def manifest_options(admin_user) -> ManifestOptions:
    """DHCP networking, A/V deny-list on, Italian keyboard."""
    return ManifestOptions(
        network=NetworkConfig(hostname="m920q"),
        user=admin_user,
        lang="en_US.UTF-8",
        keyboard="it",
        timezone="Europe/Rome",
    )


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    config_dir = tmp_path / ".config" / "headless-usb-builder"
    config_dir.mkdir(parents=True)
    return config_dir / "settings.json"


@pytest.fixture
def sample_settings_data() -> Dict[str, Any]:
    return {
        "partition_label": "KSDATA",
        "reserved_min_bytes": 268435456,
        "keyboard": "de",
        "disable_av_drivers": False,
    }


@pytest.fixture
def image_file(tmp_path) -> Path:
    """4 KiB stand-in for a Fedora DVD image."""
    path = tmp_path / "Fedora-Server-dvd-x86_64-41-1.4.iso"
    path.write_bytes(bytes(4096))
    return path


@pytest.fixture
def log_records():
    """Every loguru record emitted while the test runs."""
    records: List[dict] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(sink_id)
