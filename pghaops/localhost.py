import os
import platform
import subprocess

from pghaops.errors import PreconditionError


def is_root() -> bool:
    return os.geteuid() == 0


def machine() -> str:
    return platform.machine()


def os_release() -> tuple[str, str]:
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        raise PreconditionError('cannot detect operating system', hint='/etc/os-release is missing')
    return release.get('ID', ''), release.get('VERSION_ID', '')


def primary_ip() -> str:
    # Same address the operator sees first in `hostname -I`
    try:
        result = subprocess.run(['hostname', '-I'], capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError):
        raise PreconditionError('cannot detect the IP address of this host', hint='pass --local-ip explicitly')
    addresses = result.stdout.split()
    if not addresses:
        raise PreconditionError('this host has no IP address', hint='pass --local-ip explicitly')
    return addresses[0]
