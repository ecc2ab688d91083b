"""Loop device attach/detach through losetup.

Loop devices are a host-wide resource: every attach must be paired with a
detach on every exit path. Callers either use the ``loop_device`` context
manager or register ``detach`` with a ResourceScope.
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Sequence

from rawdisk_encryptor.domain.models import partition_device_path
from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command
from .exceptions import CommandError, PartitionNotFoundError

log = LoggerFactory.for_loop()


def attach(image_path, *, partscan: bool = False, runner: CommandRunner = run_command) -> str:
    """Attach ``image_path`` to the first free loop device and return its node."""
    command = ["losetup", "--show", "--find"]
    if partscan:
        command.append("--partscan")
    command.append(str(image_path))
    result = runner(privileged(command))
    loop_device = result.stdout.strip()
    if not loop_device.startswith("/dev/"):
        raise CommandError(command, result.returncode, f"unexpected losetup output: {loop_device!r}")
    log.info(f"Attached {image_path} as {loop_device}")
    return loop_device


def detach(loop_device: str, *, runner: CommandRunner = run_command) -> bool:
    """Detach ``loop_device``; a device that is already gone counts as success."""
    result = runner(privileged(["losetup", "-d", loop_device]), check=False)
    if result.returncode == 0:
        log.info(f"Detached {loop_device}")
        return True
    stderr = (result.stderr or "").lower()
    if "no such device" in stderr or "no such file" in stderr:
        log.debug(f"{loop_device} already detached")
        return True
    raise CommandError(["losetup", "-d", loop_device], result.returncode, result.stderr)


def refresh_partitions(loop_device: str, *, runner: CommandRunner = run_command) -> None:
    """Force the kernel to re-read the partition table of ``loop_device``."""
    runner(privileged(["partx", "-u", loop_device]))


def settle(runner: CommandRunner = run_command) -> None:
    """Wait for udev to finish processing pending device events."""
    runner(privileged(["udevadm", "settle", "--timeout=10"]), check=False)


def partition_paths(loop_device: str, count: int = 3) -> list[str]:
    return [partition_device_path(loop_device, number) for number in range(1, count + 1)]


def wait_for_partitions(
    paths: Sequence[str],
    *,
    attempts: int = 10,
    interval: float = 0.5,
    exists: Callable[[str], bool] = os.path.exists,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Wait for partition nodes to appear.

    Raises:
        PartitionNotFoundError: for the first node still missing after
            ``attempts`` polls.
    """
    missing = list(paths)
    for attempt in range(attempts):
        missing = [path for path in missing if not exists(path)]
        if not missing:
            return
        if attempt < attempts - 1:
            sleep(interval)
    raise PartitionNotFoundError(missing[0])


@contextmanager
def loop_device(
    image_path, *, partscan: bool = False, runner: CommandRunner = run_command
) -> Iterator[str]:
    device = attach(image_path, partscan=partscan, runner=runner)
    try:
        yield device
    finally:
        detach(device, runner=runner)
