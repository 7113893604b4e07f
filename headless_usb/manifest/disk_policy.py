"""Render the disk target policy as a self-contained %pre script.

The policy is data (a JSON payload) plus the interpreter in
disk_policy_runtime. Both are embedded in the kickstart, so nothing from the
build machine's process state reaches the install.
"""

import inspect
import json

from headless_usb.domain import DiskTargetPolicy, TargetMode
from headless_usb.logging import LoggerFactory

from . import disk_policy_runtime


log = LoggerFactory.for_manifest()

PRE_HEADER = "%pre --interpreter=/usr/bin/python3 --erroronfail --log=/tmp/ks-pre.log"


def _runtime_source() -> str:
    return inspect.getsource(disk_policy_runtime)


def render_policy_script(policy: DiskTargetPolicy) -> str:
    """Return a Python 3 program that applies `policy` when run by the installer.

    Raises:
        ValueError: If MANUAL mode has no device, or the script would end the
            kickstart section early
    """
    if policy.mode is TargetMode.MANUAL and not policy.manual_device:
        raise ValueError("MANUAL disk target mode requires a device name")

    payload = json.dumps(policy.to_payload(), sort_keys=True)
    script = "\n".join(
        [
            _runtime_source().rstrip(),
            "",
            "",
            f"PAYLOAD = json.loads({payload!r})",
            "",
            'if __name__ == "__main__":',
            "    sys.exit(main(PAYLOAD))",
            "",
        ]
    )
    for line in script.splitlines():
        if line.lstrip().startswith("%"):
            raise ValueError(f"Disk policy script contains a section marker line: {line!r}")
    log.debug(f"Rendered disk policy script for mode {policy.mode.value}")
    return script
