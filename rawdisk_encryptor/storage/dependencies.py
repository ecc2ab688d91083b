"""Host tool discovery and installation.

Every tool the pipeline shells out to is checked before anything destructive
happens. Missing tools are installed through apt; a tool that is still
missing afterwards aborts the run with DependencyError.
"""

from __future__ import annotations

import shutil
from typing import Callable, Iterable, Optional

from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command
from .exceptions import CommandError, DependencyError

log = LoggerFactory.for_system()

# (command, apt package)
REQUIRED_TOOLS: tuple[tuple[str, str], ...] = (
    ("qemu-img", "qemu-utils"),
    ("cryptsetup", "cryptsetup"),
    ("dmsetup", "dmsetup"),
    ("losetup", "util-linux"),
    ("partx", "util-linux"),
    ("blkid", "util-linux"),
    ("lsblk", "util-linux"),
    ("blockdev", "util-linux"),
    ("sfdisk", "fdisk"),
    ("parted", "parted"),
    ("file", "file"),
    ("dd", "coreutils"),
    ("udevadm", "udev"),
)

# Absence only disables TPM2 enrollment.
OPTIONAL_TOOLS: tuple[tuple[str, str], ...] = (
    ("systemd-cryptenroll", "systemd"),
)


def find_missing_tools(
    tools: Iterable[tuple[str, str]] = REQUIRED_TOOLS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> list[tuple[str, str]]:
    return [(command, package) for command, package in tools if not which(command)]


def install_packages(packages: Iterable[str], runner: CommandRunner = run_command) -> None:
    """Install ``packages`` with apt-get, refreshing the index first."""
    packages = list(packages)
    log.info(f"Installing {' '.join(packages)}...")
    env = {"DEBIAN_FRONTEND": "noninteractive"}
    runner(privileged(["apt-get", "update", "-qq"]))
    runner(
        privileged(["apt-get", "install", "-y", *packages], preserve_env=["DEBIAN_FRONTEND"]),
        env=env,
    )


def ensure_dependencies(
    tools: Iterable[tuple[str, str]] = REQUIRED_TOOLS,
    *,
    install: bool = True,
    runner: CommandRunner = run_command,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> list[str]:
    """Make sure every tool in ``tools`` is on PATH.

    Returns:
        The apt packages that were installed (empty when nothing was missing).

    Raises:
        DependencyError: A tool is missing and installation is disabled,
            failed, or did not provide it.
    """
    tools = list(tools)
    missing = find_missing_tools(tools, which)
    if not missing:
        log.debug("All required tools present")
        return []
    for command, package in missing:
        log.info(f"{command} not found (package {package})")
    if not install:
        command, package = missing[0]
        raise DependencyError(command, package, "automatic installation disabled")
    packages = sorted({package for _, package in missing})
    try:
        install_packages(packages, runner=runner)
    except CommandError as error:
        command, package = missing[0]
        raise DependencyError(command, package, f"failed to install {package}") from error
    still_missing = find_missing_tools(tools, which)
    if still_missing:
        command, package = still_missing[0]
        raise DependencyError(command, package, "still missing after installation")
    return packages


def report_optional_tools(
    tools: Iterable[tuple[str, str]] = OPTIONAL_TOOLS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> list[str]:
    """Warn about missing optional tools and return their commands."""
    missing = find_missing_tools(tools, which)
    for command, package in missing:
        log.warning(f"{command} not found (package {package}); TPM2 enrollment will be skipped")
    return [command for command, _ in missing]
