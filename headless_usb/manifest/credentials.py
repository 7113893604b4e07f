"""Admin credentials for the manifest: crypt hash and SSH public key.

The clear-text password only ever travels to openssl on stdin. Nothing in
this module logs either the password or the resulting hash.
"""

import re
import secrets
from pathlib import Path

from headless_usb.exceptions import CredentialError
from headless_usb.logging import LoggerFactory
from headless_usb.storage.command_runners import run_checked_command


log = LoggerFactory.for_manifest()

SSH_KEY_PATTERN = re.compile(
    r"^(ssh-ed25519|ssh-rsa|ecdsa-sha2-nistp(?:256|384|521)|"
    r"sk-ssh-ed25519@openssh\.com|sk-ecdsa-sha2-nistp256@openssh\.com)"
    r" [A-Za-z0-9+/]+={0,3}( .*)?$"
)
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)
RESERVED_USERNAMES = {"root", "bin", "daemon", "adm", "nobody", "sshd"}


def hash_password(password: str) -> str:
    """Return a SHA-512 crypt hash ($6$) of the password via openssl.

    Raises:
        CredentialError: If the password is empty or openssl fails
    """
    if not password:
        raise CredentialError("Password must not be empty")
    if "\n" in password:
        raise CredentialError("Password must be a single line")
    salt = secrets.token_hex(6)
    try:
        output = run_checked_command(
            ["openssl", "passwd", "-6", "-salt", salt, "-stdin"],
            input_text=password + "\n",
            log_output=False,
        )
    except (OSError, RuntimeError) as error:
        raise CredentialError(f"Password hashing failed: {error}") from error
    password_hash = output.strip()
    if not password_hash.startswith("$6$"):
        raise CredentialError("openssl did not return a SHA-512 crypt hash")
    log.debug("Password hashed with SHA-512 crypt")
    return password_hash


def validate_ssh_public_key(text: str) -> str:
    """Return the first key line if it is an OpenSSH public key.

    Raises:
        CredentialError: If no valid key line is present
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    lines = [line for line in lines if not line.startswith("#")]
    if not lines or not SSH_KEY_PATTERN.match(lines[0]):
        raise CredentialError("Not a valid SSH public key")
    return lines[0]


def load_ssh_public_key(path) -> str:
    """Read and validate an SSH public key file.

    Raises:
        CredentialError: If the file is unreadable or holds no valid key
    """
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise CredentialError(f"Cannot read SSH public key {path}: {error}") from error
    key = validate_ssh_public_key(text)
    log.debug(f"Loaded {key.split(' ', 1)[0]} key from {path}")
    return key


def validate_username(name: str) -> str:
    if not USERNAME_PATTERN.match(name or ""):
        raise CredentialError(f"Invalid user name: {name!r}")
    if name in RESERVED_USERNAMES:
        raise CredentialError(f"User name {name!r} is reserved")
    return name


def validate_hostname(hostname: str) -> str:
    if not HOSTNAME_PATTERN.match(hostname or ""):
        raise ValueError(f"Invalid hostname: {hostname!r}")
    return hostname
