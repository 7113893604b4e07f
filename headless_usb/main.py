import argparse
import getpass
import sys
from pathlib import Path

from headless_usb.__version__ import __version__
from headless_usb.app.builder import BuildRequest, build_manifest, run_build, save_manifest
from headless_usb.config import settings
from headless_usb.domain import (
    DiskTargetPolicy,
    ManifestOptions,
    NetworkConfig,
    TargetMode,
    UserAccount,
)
from headless_usb.exceptions import BuildError, CredentialError, OperatorAbortError
from headless_usb.logging import LoggerFactory, setup_logging
from headless_usb.manifest.credentials import (
    hash_password,
    load_ssh_public_key,
    validate_hostname,
    validate_username,
)
from headless_usb.storage.devices import format_device_label, list_devices
from headless_usb.storage.format import validate_label
from headless_usb.storage.progress import human_size

EXIT_OK = 0
EXIT_USAGE = 2

log = LoggerFactory.for_system()


class UsageError(ValueError):
    """Invalid or inconsistent command line options."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="headless-usb-builder",
        description="Build a single USB stick that installs a headless server unattended",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log every dd progress line")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--no-log-files", action="store_true", help="Log to stderr only")

    actions = parser.add_argument_group("actions")
    actions.add_argument("--list-devices", action="store_true", help="List block devices and exit")
    actions.add_argument(
        "--manifest-only",
        type=Path,
        metavar="PATH",
        help="Compose the manifest into PATH without touching any device",
    )

    media = parser.add_argument_group("installation media")
    media.add_argument("--image", type=Path, help="Installation ISO to write")
    media.add_argument("--checksum", type=Path, help="CHECKSUM file published with the image")
    media.add_argument("--device", help="Destination USB device, e.g. /dev/sdb")
    media.add_argument(
        "--reserved-mib",
        type=int,
        help="Minimum size of the configuration partition in MiB",
    )
    media.add_argument("--label", help="Configuration partition label")
    media.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    target = parser.add_argument_group("target machine")
    target.add_argument(
        "--mode",
        default=TargetMode.AUTO_SINGLE.value,
        help="Disk selection: AUTO_SINGLE, ALL_INTERNAL or MANUAL",
    )
    target.add_argument("--manual-device", help="Disk name for MANUAL mode, e.g. nvme0n1")
    target.add_argument("--lang", default=settings.get_setting("lang"))
    target.add_argument("--keyboard", default=settings.get_setting("keyboard"))
    target.add_argument("--timezone", default=settings.get_setting("timezone"))
    target.add_argument("--hostname", default=settings.get_setting("hostname"))
    target.add_argument("--static", action="store_true", help="Use a static address instead of DHCP")
    target.add_argument("--ip")
    target.add_argument("--netmask")
    target.add_argument("--gateway")
    target.add_argument(
        "--nameserver",
        action="append",
        dest="nameservers",
        help="DNS server for static networking (repeatable)",
    )
    target.add_argument("--user", default=settings.get_setting("username"))
    target.add_argument("--ssh-key", type=Path, default=settings.get_setting("ssh_key_path"))
    target.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the admin password from the first line of stdin",
    )
    target.add_argument(
        "--keep-av-drivers",
        action="store_true",
        help="Do not deny-list sound and video capture drivers",
    )
    target.add_argument(
        "--final-action",
        choices=["poweroff", "reboot"],
        default=settings.get_setting("final_action"),
    )
    target.add_argument("--release-label", default="", help="Shown in the manifest header")
    return parser


def read_password(from_stdin: bool) -> str:
    """Read the admin password once from stdin, or twice from the terminal."""
    if from_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass("Set local password for the admin user (for sudo): ")
        confirmation = getpass.getpass("Confirm password: ")
        if password != confirmation:
            raise CredentialError("Passwords do not match")
    if not password:
        raise CredentialError("Password must not be empty")
    return password


def build_policy(args) -> DiskTargetPolicy:
    try:
        mode = TargetMode.parse(args.mode)
    except ValueError as error:
        raise UsageError(str(error)) from error
    if mode is TargetMode.MANUAL and not args.manual_device:
        raise UsageError("--mode MANUAL requires --manual-device")
    if mode is not TargetMode.MANUAL and args.manual_device:
        log.warning(f"--manual-device is ignored in {mode.value} mode")
    try:
        return DiskTargetPolicy(
            mode=mode,
            manual_device=args.manual_device if mode is TargetMode.MANUAL else None,
            autopart_type=settings.get_setting("autopart_type", "btrfs"),
            diagnostic_console=settings.get_setting(
                "diagnostic_console", settings.DEFAULT_DIAGNOSTIC_CONSOLE
            ),
        )
    except ValueError as error:
        raise UsageError(str(error)) from error


def build_network(args) -> NetworkConfig:
    try:
        validate_hostname(args.hostname)
        if not args.static:
            return NetworkConfig(hostname=args.hostname)
        nameservers = args.nameservers or settings.get_setting("nameservers") or []
        return NetworkConfig(
            hostname=args.hostname,
            dhcp=False,
            ip=args.ip,
            netmask=args.netmask,
            gateway=args.gateway,
            nameservers=tuple(nameservers),
        )
    except ValueError as error:
        raise UsageError(str(error)) from error


def build_options(args) -> ManifestOptions:
    network = build_network(args)
    username = validate_username(args.user)
    ssh_key = load_ssh_public_key(args.ssh_key)
    password_hash = hash_password(read_password(args.password_stdin))
    disable_av = settings.get_bool("disable_av_drivers", True) and not args.keep_av_drivers
    return ManifestOptions(
        network=network,
        user=UserAccount(name=username, password_hash=password_hash, ssh_public_key=ssh_key),
        lang=args.lang,
        keyboard=args.keyboard,
        timezone=args.timezone,
        disable_av_drivers=disable_av,
        final_action=args.final_action,
        release_label=args.release_label,
    )


def print_devices() -> None:
    devices = list_devices()
    if not devices:
        print("No block devices found")
        return
    for device in devices:
        flags = [device.transport.value]
        if device.removable:
            flags.append("removable")
        if device.mounted:
            flags.append("mounted")
        print(f"{device.path:<16} {human_size(device.size_bytes):>9}  {format_device_label(device)}  [{', '.join(flags)}]")


def confirm_on_terminal(device, budget) -> bool:
    log.warning(f"This will ERASE all data on {format_device_label(device)} ({device.path})")
    if budget is not None:
        log.info(
            f"Image {human_size(budget.image_size_bytes)}, leaving "
            f"{human_size(budget.spare_bytes)} for the configuration partition "
            f"(at least {human_size(budget.reserved_min_bytes)})"
        )
    answer = input("Type YES to continue: ")
    return answer.strip() == "YES"


def print_progress(lines, ratio) -> None:
    text = " | ".join(line for line in lines if line)
    sys.stderr.write(f"\r\033[K{text}")
    if ratio is not None and ratio >= 1.0:
        sys.stderr.write("\n")
    sys.stderr.flush()


def resolve_partition_options(args) -> tuple[int, str]:
    """Return (reserved bytes, label) from flags and settings, validated."""
    reserved_mib = args.reserved_mib
    if reserved_mib is not None:
        if reserved_mib <= 0:
            raise UsageError("--reserved-mib must be positive")
        reserved_min_bytes = reserved_mib * settings.MIB
    else:
        reserved_min_bytes = settings.get_int(
            "reserved_min_bytes", settings.DEFAULT_RESERVED_MIN_BYTES
        )
    label = args.label or settings.get_setting("partition_label", settings.DEFAULT_PARTITION_LABEL)
    try:
        validate_label(label)
    except ValueError as error:
        raise UsageError(str(error)) from error
    return reserved_min_bytes, label


def build_request(args, options, policy, partition_options) -> BuildRequest:
    reserved_min_bytes, label = partition_options
    return BuildRequest(
        image_path=args.image,
        device_path=args.device,
        options=options,
        policy=policy,
        checksum_path=args.checksum,
        reserved_min_bytes=reserved_min_bytes,
        label=label,
        manifest_filename=settings.get_setting(
            "manifest_filename", settings.DEFAULT_MANIFEST_FILENAME
        ),
        block_size=settings.get_setting("write_block_size", "4M"),
        settle_timeout=settings.get_int("settle_timeout_seconds", 30),
    )


def log_summary(request: BuildRequest) -> None:
    options = request.options
    log.info("Build summary:")
    log.info(f"  Image                 : {request.image_path}")
    log.info(f"  Device                : {request.device_path}")
    log.info(f"  Disk target mode      : {request.policy.mode.value}")
    if request.policy.manual_device:
        log.info(f"  Manual target         : {request.policy.manual_device}")
    log.info(f"  Hostname              : {options.network.hostname}")
    log.info(f"  Networking            : {'dhcp' if options.network.dhcp else options.network.ip}")
    log.info(f"  Admin user            : {options.user.name}")
    log.info(f"  A/V drivers disabled  : {'yes' if options.disable_av_drivers else 'no'}")
    log.info(f"  Final action          : {options.final_action}")


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=args.log_dir,
        file_logging=not args.no_log_files,
    )

    if args.list_devices:
        print_devices()
        return EXIT_OK

    try:
        policy = build_policy(args)
        if not args.manifest_only and (not args.image or not args.device):
            raise UsageError("--image and --device are required to build a USB")
        # cheap checks first: the password prompt and hashing come last
        partition_options = None if args.manifest_only else resolve_partition_options(args)
        options = build_options(args)
        if args.manifest_only:
            manifest = build_manifest(options, policy)
            save_manifest(manifest, args.manifest_only)
            return EXIT_OK
        request = build_request(args, options, policy, partition_options)
        log_summary(request)
        confirm = None if args.yes else confirm_on_terminal
        run_build(request, confirm=confirm, progress_callback=print_progress)
    except UsageError as error:
        log.error(str(error))
        return EXIT_USAGE
    except BuildError as error:
        log.error(str(error))
        return error.exit_code
    except (KeyboardInterrupt, EOFError):
        log.error("Interrupted")
        return OperatorAbortError.exit_code
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
