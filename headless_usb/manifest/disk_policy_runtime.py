"""Install-time disk selection.

This module is copied verbatim into the kickstart %pre section and runs on
the target machine under the installer's own Python 3, before partitioning.
It must stay standard-library only and must not import anything from the
headless_usb package.

It scans the target's disks, keeps the ones that are internal, fixed and
not USB, applies the selection mode and writes the partitioning directives
to a file the main kickstart pulls in with %include. If no safe choice
exists it writes a diagnostic to an alternate console and exits non-zero,
which aborts the install before any disk is touched.
"""

import json
import logging
import os
import subprocess
import sys

EXIT_OK = 0
EXIT_NO_UNIQUE_TARGET = 2
EXIT_MISSING_MANUAL_DEVICE = 3
EXIT_UNKNOWN_MODE = 4
EXIT_TARGET_WRITE_FAILED = 5

MODE_AUTO_SINGLE = "AUTO_SINGLE"
MODE_ALL_INTERNAL = "ALL_INTERNAL"
MODE_MANUAL = "MANUAL"
MODES = (MODE_AUTO_SINGLE, MODE_ALL_INTERNAL, MODE_MANUAL)

PSEUDO_DEVICE_PREFIXES = ("loop", "ram", "zram")
SYSFS_BLOCK = "/sys/block"

logger = logging.getLogger("disk_policy")


class PolicyError(Exception):
    """No safe set of target disks could be chosen."""

    def __init__(self, message, exit_code=EXIT_NO_UNIQUE_TARGET):
        super().__init__(message)
        self.exit_code = exit_code


def run_command(command):
    """Return stdout of a command, or "" if it could not run."""
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=False)
    except OSError as exc:
        logger.warning("Could not run %s: %s", command[0], exc)
        return ""
    if result.returncode != 0:
        logger.warning("%s exited with %s", " ".join(command), result.returncode)
    return result.stdout


def list_disks(runner=run_command):
    """Return lsblk entries for whole disks, in enumeration order."""
    output = runner(["lsblk", "-J", "-d", "-o", "NAME,TYPE,RM,TRAN"])
    if not output.strip():
        return []
    try:
        data = json.loads(output)
    except ValueError as exc:
        logger.error("Could not parse lsblk output: %s", exc)
        return []
    return [entry for entry in data.get("blockdevices", []) if entry.get("type") == "disk"]


def _flag(value):
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return bool(value)


def read_removable(name, sysfs_root=SYSFS_BLOCK):
    """Return the sysfs removable flag, or None if sysfs has no answer."""
    path = os.path.join(sysfs_root, name, "removable")
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read().strip() == "1"
    except OSError:
        return None


def read_udev_bus(name, runner=run_command):
    """Return udev's ID_BUS for the disk, or None."""
    output = runner(["udevadm", "info", "--query=property", "--name=/dev/" + name])
    for line in output.splitlines():
        key, _, value = line.partition("=")
        if key.strip() == "ID_BUS":
            return value.strip().lower() or None
    return None


def is_candidate(entry, runner=run_command, sysfs_root=SYSFS_BLOCK):
    """A disk is eligible iff it is fixed, not on USB and not a pseudo-device."""
    name = entry.get("name") or ""
    if not name or name.startswith(PSEUDO_DEVICE_PREFIXES):
        return False
    removable = read_removable(name, sysfs_root)
    if removable is None:
        removable = _flag(entry.get("rm"))
    if removable:
        return False
    transport = (entry.get("tran") or "").lower()
    if transport == "usb":
        return False
    if read_udev_bus(name, runner) == "usb":
        return False
    return True


def scan_candidates(runner=run_command, sysfs_root=SYSFS_BLOCK):
    candidates = [
        entry["name"]
        for entry in list_disks(runner)
        if is_candidate(entry, runner, sysfs_root)
    ]
    logger.info("Candidate disks: %s", ", ".join(candidates) or "(none)")
    return candidates


def resolve_targets(mode, manual_device, candidates):
    """Apply the selection mode to the scanned candidates.

    AUTO_SINGLE needs exactly one candidate, ALL_INTERNAL at least one.
    MANUAL uses the supplied name and ignores the scan.
    """
    found = ", ".join(candidates) or "none"
    if mode == MODE_MANUAL:
        name = (manual_device or "").strip()
        if name.startswith("/dev/"):
            name = name[len("/dev/"):]
        if not name:
            raise PolicyError(
                "MANUAL mode needs a device name; none was given "
                "(internal disks found: %s)" % found,
                EXIT_MISSING_MANUAL_DEVICE,
            )
        return [name]
    if mode == MODE_AUTO_SINGLE:
        if len(candidates) != 1:
            raise PolicyError(
                "AUTO_SINGLE needs exactly one internal disk, found %d (%s). "
                "Rebuild the USB with ALL_INTERNAL or MANUAL." % (len(candidates), found)
            )
        return list(candidates)
    if mode == MODE_ALL_INTERNAL:
        if not candidates:
            raise PolicyError("ALL_INTERNAL found no internal disk to install to")
        return list(candidates)
    raise PolicyError("Unknown disk target mode: %s" % mode, EXIT_UNKNOWN_MODE)


def render_directives(disks, autopart_type="btrfs"):
    """Return the partitioning directives for the chosen disks."""
    if not disks:
        raise ValueError("Refusing to render directives for an empty disk list")
    return "\n".join(
        [
            "ignoredisk --only-use=" + ",".join(disks),
            "clearpart --all --initlabel",
            "autopart --type=" + autopart_type,
        ]
    ) + "\n"


def write_diagnostic(message, console="/dev/tty3"):
    """Show a failure where the operator can see it, falling back to stderr."""
    text = "\n*** Unattended install stopped ***\n%s\n" % message
    try:
        with open(console, "w", encoding="utf-8") as handle:
            handle.write(text)
    except OSError:
        sys.stderr.write(text)


def run(payload, runner=run_command, sysfs_root=SYSFS_BLOCK):
    """Resolve targets for `payload` and write the include file. Returns an exit code."""
    mode = payload.get("mode", MODE_AUTO_SINGLE)
    console = payload.get("diagnostic_console") or "/dev/tty3"
    target_file = payload.get("target_file") or "/tmp/target.ks"
    try:
        if mode not in MODES:
            raise PolicyError("Unknown disk target mode: %s" % mode, EXIT_UNKNOWN_MODE)
        if mode == MODE_MANUAL and payload.get("manual_device"):
            candidates = []
        else:
            candidates = scan_candidates(runner, sysfs_root)
        disks = resolve_targets(mode, payload.get("manual_device"), candidates)
    except PolicyError as exc:
        logger.error("%s", exc)
        write_diagnostic(str(exc), console)
        return exc.exit_code

    directives = render_directives(disks, payload.get("autopart_type") or "btrfs")
    try:
        with open(target_file, "w", encoding="utf-8") as handle:
            handle.write(directives)
    except OSError as exc:
        message = "Could not write %s: %s" % (target_file, exc)
        logger.error("%s", message)
        write_diagnostic(message, console)
        return EXIT_TARGET_WRITE_FAILED
    logger.info("Installing to: %s", ", ".join(disks))
    return EXIT_OK


def main(payload):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler()],
    )
    return run(payload)
