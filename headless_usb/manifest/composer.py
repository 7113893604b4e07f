"""Kickstart manifest composition.

compose() turns the operator's answers and the rendered disk policy script
into the full kickstart text. It is pure: no filesystem access, no
subprocesses, no prompts.

Section layout:
    header, install directives, %pre (disk policy), %include of the
    generated target file, final action, %packages, %post (SSH key and sshd
    hardening), optional %post (sound and video capture deny-lists)
"""

from typing import List

from headless_usb.domain import Manifest, ManifestOptions, NetworkConfig
from headless_usb.logging import LoggerFactory

from .disk_policy import PRE_HEADER


log = LoggerFactory.for_manifest()

DEFAULT_TARGET_FILE = "/tmp/target.ks"
SERVICES = ("sshd", "chronyd")
SSHD_SETTINGS = (
    ("PasswordAuthentication", "no"),
    ("KbdInteractiveAuthentication", "no"),
    ("ChallengeResponseAuthentication", "no"),
    ("PubkeyAuthentication", "yes"),
    ("PermitRootLogin", "no"),
)


def network_descriptor(network: NetworkConfig) -> str:
    """Return the single `network` directive for the target."""
    if network.dhcp:
        return (
            "network --bootproto=dhcp --device=link --activate "
            f"--hostname={network.hostname}"
        )
    parts = [
        "network",
        "--bootproto=static",
        f"--ip={network.ip}",
        f"--netmask={network.netmask}",
        f"--gateway={network.gateway}",
    ]
    if network.nameservers:
        parts.append(f"--nameserver={','.join(network.nameservers)}")
    parts.extend(["--device=link", "--activate", f"--hostname={network.hostname}"])
    return " ".join(parts)


def _check_script(script: str) -> None:
    for line in script.splitlines():
        if line.strip().startswith("%end"):
            raise ValueError("Disk target script must not contain an %end line")


def _install_directives(options: ManifestOptions) -> List[str]:
    user = options.user
    header = "# Auto generated Kickstart"
    if options.release_label:
        header = f"{header} for {options.release_label}"
    return [
        header,
        "cdrom",
        "text",
        f"lang {options.lang}",
        f"keyboard {options.keyboard}",
        f"timezone {options.timezone} --utc",
        network_descriptor(options.network),
        "rootpw --lock",
        (
            f"user --name={user.name} --groups=wheel --homedir=/home/{user.name} "
            f"--iscrypted --password '{user.password_hash}'"
        ),
        "firewall --enabled --service=ssh",
        "selinux --enforcing",
        f"services --enabled={','.join(SERVICES)}",
        "bootloader --timeout=1",
        "zerombr",
    ]


def _packages_section(options: ManifestOptions) -> List[str]:
    return ["%packages", *options.packages, "%end"]


def _ssh_post_section(options: ManifestOptions) -> List[str]:
    user = options.user
    lines = [
        "%post --log=/root/ks-post.log --erroronfail",
        "set -e",
        f'user_home="/home/{user.name}"',
        'mkdir -p "$user_home/.ssh"',
        'chmod 700 "$user_home/.ssh"',
        "",
        "# authorized_keys and sshd hardening: key-only login, no root login",
        "cat > \"$user_home/.ssh/authorized_keys\" <<'EOFKEY'",
        user.ssh_public_key,
        "EOFKEY",
        'chmod 600 "$user_home/.ssh/authorized_keys"',
        f'chown -R {user.name}:{user.name} "$user_home/.ssh"',
        'restorecon -R "$user_home/.ssh" || true',
    ]
    for key, value in SSHD_SETTINGS:
        lines.append(
            f"sed -ri 's/^(#\\s*)?{key}\\s+.*/{key} {value}/' /etc/ssh/sshd_config"
        )
    lines.append("%end")
    return lines


def _denylist_post_section(options: ManifestOptions) -> List[str]:
    lines = [
        "%post --log=/root/ks-post-av.log --erroronfail",
        "# disable audio and USB video capture drivers",
        "cat >/etc/modprobe.d/disable-sound.conf <<'EOF1'",
        *(f"blacklist {module}" for module in options.sound_denylist),
        "EOF1",
        "cat >/etc/modprobe.d/disable-video-capture.conf <<'EOF2'",
        *(f"blacklist {module}" for module in options.video_denylist),
        "EOF2",
        "dracut --force",
        "%end",
    ]
    return lines


def compose(
    options: ManifestOptions,
    disk_target_script: str,
    *,
    target_file: str = DEFAULT_TARGET_FILE,
    filename: str = "ks.cfg",
) -> Manifest:
    """Assemble the kickstart document.

    Raises:
        ValueError: If the disk target script is empty or contains an %end line
    """
    if not disk_target_script.strip():
        raise ValueError("Disk target script must not be empty")
    _check_script(disk_target_script)

    lines = _install_directives(options)
    lines += ["", PRE_HEADER, disk_target_script.rstrip("\n"), "%end"]
    lines += ["", f"%include {target_file}", "", options.final_action]
    lines += [""] + _packages_section(options)
    lines += [""] + _ssh_post_section(options)
    if options.disable_av_drivers:
        lines += [""] + _denylist_post_section(options)

    manifest = Manifest(text="\n".join(lines) + "\n", filename=filename)
    log.debug(f"Composed manifest with {len(manifest.lines)} lines")
    return manifest
