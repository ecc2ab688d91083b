"""Target raw image creation and GPT partitioning."""

from __future__ import annotations

from typing import Protocol

from rawdisk_encryptor.domain.models import SizePlan
from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command

log = LoggerFactory.for_build()


class ImageFormatter(Protocol):
    def create_image(self, path, size_bytes: int) -> None: ...

    def write_partition_table(self, device: str, plan: SizePlan) -> None: ...


def build_parted_script(plan: SizePlan) -> list[str]:
    """parted arguments creating the GPT layout described by ``plan``.

    Partition 1 is flagged as the EFI System Partition and bootable.
    """
    efi, boot, root = plan.extents
    return [
        "mklabel", "gpt",
        "mkpart", efi.name, efi.fs_type, f"{efi.start_sector}s", f"{efi.end_sector}s",
        "set", "1", "esp", "on",
        "set", "1", "boot", "on",
        "mkpart", boot.name, boot.fs_type, f"{boot.start_sector}s", f"{boot.end_sector}s",
        "mkpart", root.name, root.fs_type, f"{root.start_sector}s", f"{root.end_sector}s",
    ]


class QemuImageFormatter:
    """ImageFormatter using qemu-img for allocation and parted for the GPT."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def create_image(self, path, size_bytes: int) -> None:
        log.info(f"Creating target raw image of size: {size_bytes} bytes")
        self.runner(["qemu-img", "create", "-f", "raw", str(path), str(size_bytes)])

    def write_partition_table(self, device: str, plan: SizePlan) -> None:
        log.info(f"Writing GPT partition table to {device}")
        self.runner(privileged(["parted", "-s", device, "--", *build_parted_script(plan)]))
