"""Mount helpers for inspecting and modifying attached images."""

import os
from pathlib import Path
from typing import Optional

from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command

log = LoggerFactory.for_system()


def is_mountpoint_active(mountpoint) -> bool:
    """Check if a mountpoint is currently active."""
    mountpoint = os.path.normpath(str(mountpoint))
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def mount(
    device: str,
    mountpoint,
    *,
    fstype: Optional[str] = None,
    readonly: bool = False,
    runner: CommandRunner = run_command,
) -> None:
    """Mount ``device`` at ``mountpoint``, creating the directory if needed."""
    runner(privileged(["mkdir", "-p", str(mountpoint)]))
    command = ["mount"]
    if fstype:
        command.extend(["-t", fstype])
    if readonly:
        command.extend(["-o", "ro"])
    command.extend([device, str(mountpoint)])
    runner(privileged(command))
    log.debug(f"Mounted {device} at {mountpoint}")


def unmount(mountpoint, *, runner: CommandRunner = run_command, is_active=is_mountpoint_active) -> None:
    """Unmount ``mountpoint`` if it is mounted; unmounted paths are ignored."""
    if not is_active(mountpoint):
        log.debug(f"{mountpoint} not mounted")
        return
    runner(privileged(["umount", str(Path(mountpoint))]))
    log.debug(f"Unmounted {mountpoint}")
