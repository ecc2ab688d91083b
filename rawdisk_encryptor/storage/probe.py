"""Source image introspection and filesystem validation.

The source image must hold exactly three partitions in fixed order:

    p1  EFI System Partition, FAT32
    p2  /boot, ext4
    p3  /, ext4

Each partition is examined through several independent mechanisms so that a
single misreporting tool does not decide the outcome:

    - GPT partition type GUID (``sfdisk --json``)
    - filesystem name from the partition table (``parted -m print``)
    - on-disk signature (``blkid``)
    - content sniffing (``file -s``)
    - udev filesystem type (``lsblk -no FSTYPE``)

EFI type-GUID, blkid and ``file`` mismatches are warnings; a non-FAT32 EFI
filesystem or a non-ext4 boot/root filesystem aborts the build.
"""

from __future__ import annotations

import json
import os
import re
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

from rawdisk_encryptor.domain.models import PartitionInfo, SourceImage
from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command
from .exceptions import FilesystemTypeError
from .loop import partition_paths, wait_for_partitions

log = LoggerFactory.for_probe()

EFI_SYSTEM_GUID = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"


class PartitionProbe(Protocol):
    """Read-only queries against a block device and its partitions."""

    def partition_types(self, device: str) -> dict[int, str]:
        """Map partition number to GPT type GUID (upper case)."""

    def parted_filesystems(self, device: str) -> dict[int, str]:
        """Map partition number to the filesystem name parted reports."""

    def blkid_type(self, partition: str) -> Optional[str]: ...

    def file_signature(self, partition: str) -> str: ...

    def fstype(self, partition: str) -> Optional[str]: ...

    def size_bytes(self, partition: str) -> int: ...


def get_partition_number(name: str) -> Optional[int]:
    """Extract partition number from a device node (``/dev/loop0p3`` -> 3)."""
    if not name:
        return None
    match = re.search(r"(?:p)?(\d+)$", name)
    if not match:
        return None
    return int(match.group(1))


class HostPartitionProbe:
    """PartitionProbe backed by the util-linux, parted and file tools."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def partition_types(self, device: str) -> dict[int, str]:
        result = self.runner(privileged(["sfdisk", "--json", device]), log_output=False)
        try:
            table = json.loads(result.stdout).get("partitiontable", {})
        except json.JSONDecodeError:
            log.warning(f"sfdisk returned invalid JSON for {device}")
            return {}
        types = {}
        for partition in table.get("partitions", []):
            number = get_partition_number(partition.get("node", ""))
            if number is not None:
                types[number] = str(partition.get("type", "")).upper()
        return types

    def parted_filesystems(self, device: str) -> dict[int, str]:
        result = self.runner(privileged(["parted", "-s", "-m", device, "unit", "B", "print"]))
        filesystems = {}
        for line in result.stdout.splitlines():
            fields = line.rstrip(";").split(":")
            if len(fields) >= 5 and fields[0].isdigit():
                filesystems[int(fields[0])] = fields[4].strip()
        return filesystems

    def blkid_type(self, partition: str) -> Optional[str]:
        result = self.runner(
            privileged(["blkid", "-s", "TYPE", "-o", "value", partition]), check=False
        )
        return result.stdout.strip() or None

    def file_signature(self, partition: str) -> str:
        result = self.runner(privileged(["file", "-s", partition]), check=False)
        return result.stdout.strip()

    def fstype(self, partition: str) -> Optional[str]:
        result = self.runner(["lsblk", "-no", "FSTYPE", partition], check=False)
        fstype = result.stdout.strip()
        if fstype:
            return fstype
        # udev may not have probed a freshly attached loop device yet
        return self.blkid_type(partition)

    def size_bytes(self, partition: str) -> int:
        result = self.runner(privileged(["blockdev", "--getsize64", partition]))
        return int(result.stdout.strip())


def validate_efi_partition(efi: PartitionInfo) -> None:
    """Check the EFI System Partition; only a non-FAT32 filesystem is fatal."""
    if efi.type_guid and efi.type_guid.upper() == EFI_SYSTEM_GUID:
        log.info("EFI partition confirmed as EFI System type")
    else:
        log.warning(
            f"EFI partition type is not EFI System (found: {efi.type_guid or 'unknown'}); "
            "proceeding, but may not be UEFI-compatible"
        )
    if (efi.parted_fs or "").lower() != "fat32":
        raise FilesystemTypeError("EFI", "fat32", efi.parted_fs)
    if efi.blkid_type != "vfat":
        log.warning(
            f"blkid did not detect vfat for EFI partition (found: {efi.blkid_type}), "
            "but parted confirms fat32; proceeding"
        )
    else:
        log.info("EFI partition confirmed as vfat by blkid")
    if "FAT (32-bit)" not in (efi.file_description or ""):
        log.warning("file command did not confirm FAT32, but parted reports fat32; proceeding")
    else:
        log.info("EFI partition confirmed as FAT32 by file command")


def validate_linux_partition(name: str, partition: PartitionInfo, expected: str = "ext4") -> None:
    if partition.fstype != expected:
        raise FilesystemTypeError(name, expected, partition.fstype)
    log.debug(f"{name} partition confirmed as {expected}")


def inspect_partition(
    probe: PartitionProbe,
    number: int,
    device_path: str,
    types: dict[int, str],
    filesystems: dict[int, str],
    *,
    sniff_fat: bool = False,
) -> PartitionInfo:
    return PartitionInfo(
        number=number,
        device_path=device_path,
        size_bytes=probe.size_bytes(device_path),
        type_guid=types.get(number),
        parted_fs=filesystems.get(number),
        blkid_type=probe.blkid_type(device_path) if sniff_fat else None,
        file_description=probe.file_signature(device_path) if sniff_fat else None,
        fstype=probe.fstype(device_path),
    )


def introspect_source_image(
    image_path,
    loop_device: str,
    probe: PartitionProbe,
    *,
    exists: Callable[[str], bool] = os.path.exists,
    sleep: Callable[[float], None] = time.sleep,
) -> SourceImage:
    """Describe and validate the three partitions of an attached source image.

    Raises:
        PartitionNotFoundError: If p1, p2 or p3 never gets a device node
        FilesystemTypeError: If EFI is not FAT32 or boot/root are not ext4
    """
    efi_path, boot_path, root_path = partition_paths(loop_device, 3)
    wait_for_partitions([efi_path, boot_path, root_path], exists=exists, sleep=sleep)

    types = probe.partition_types(loop_device)
    filesystems = probe.parted_filesystems(loop_device)
    efi = inspect_partition(probe, 1, efi_path, types, filesystems, sniff_fat=True)
    boot = inspect_partition(probe, 2, boot_path, types, filesystems)
    root = inspect_partition(probe, 3, root_path, types, filesystems)

    validate_efi_partition(efi)
    validate_linux_partition("Boot", boot)
    validate_linux_partition("Root", root)

    log.info(
        f"Source partitions: EFI={efi.size_bytes} B, boot={boot.size_bytes} B, "
        f"root={root.size_bytes} B"
    )
    return SourceImage(
        path=Path(image_path),
        loop_device=loop_device,
        efi=efi,
        boot=boot,
        root=root,
    )
