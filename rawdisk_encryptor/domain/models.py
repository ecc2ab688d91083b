"""Domain model for encrypted image builds.

Every entity here is transient and process-local; the only durable artifact
of a build is the encrypted raw image file itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


SECTOR_SIZE = 512
MIB = 1024 * 1024
LUKS_HEADER_SIZE = 16 * MIB
DEFAULT_PAD = MIB

DEFAULT_CIPHER = "aes-xts-plain64"
DEFAULT_KEY_SIZE = 512
DEFAULT_MAPPER_NAME = "encrypted_root"
DEFAULT_BLOCK_SIZE = "4M"
DEFAULT_TPM2_PCRS = (1, 3, 5, 7, 11, 12, 14, 15)
DEFAULT_TPM2_WIPE_SLOT = 1


# ==============================================================================
# Layout Domain
# ==============================================================================


class AlignmentMode(Enum):
    """Granularity that partition sizes are rounded up to."""

    SECTOR = "sector"
    MIB = "mib"

    @property
    def unit(self) -> int:
        return SECTOR_SIZE if self is AlignmentMode.SECTOR else MIB

    @classmethod
    def parse(cls, value: str | AlignmentMode) -> AlignmentMode:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Unknown alignment {value!r} (expected {choices})") from None


@dataclass(frozen=True)
class PartitionExtent:
    """A partition's position on the target disk, in 512-byte sectors.

    ``end_sector`` is inclusive, matching parted's ``<n>s`` notation.
    """

    name: str
    fs_type: str
    start_sector: int
    end_sector: int

    @property
    def size_sectors(self) -> int:
        return self.end_sector - self.start_sector + 1

    @property
    def start_bytes(self) -> int:
        return self.start_sector * SECTOR_SIZE

    @property
    def size_bytes(self) -> int:
        return self.size_sectors * SECTOR_SIZE


@dataclass(frozen=True)
class SizePlan:
    """Immutable target layout computed from the source partition sizes."""

    alignment: AlignmentMode
    efi_size: int
    boot_size: int
    root_size: int
    luks_header_size: int
    leading_pad: int
    trailing_pad: int
    total_bytes: int
    efi: PartitionExtent
    boot: PartitionExtent
    root: PartitionExtent
    sector_size: int = SECTOR_SIZE

    @property
    def extents(self) -> tuple[PartitionExtent, PartitionExtent, PartitionExtent]:
        return (self.efi, self.boot, self.root)


# ==============================================================================
# Image Domain
# ==============================================================================


@dataclass(frozen=True)
class PartitionInfo:
    """One partition of the source image as seen by the probe tools.

    Each field comes from an independent mechanism so the introspector can
    cross-check them: the GPT type GUID (sfdisk), the filesystem name parted
    reports, the blkid signature, ``file -s`` content sniffing and lsblk.
    """

    number: int
    device_path: str
    size_bytes: int
    type_guid: Optional[str] = None
    parted_fs: Optional[str] = None
    blkid_type: Optional[str] = None
    file_description: Optional[str] = None
    fstype: Optional[str] = None


@dataclass(frozen=True)
class SourceImage:
    """The unencrypted input image attached as a loop device."""

    path: Path
    loop_device: str
    efi: PartitionInfo
    boot: PartitionInfo
    root: PartitionInfo

    @property
    def partitions(self) -> tuple[PartitionInfo, PartitionInfo, PartitionInfo]:
        return (self.efi, self.boot, self.root)


@dataclass(frozen=True)
class TargetImage:
    """The freshly created output image attached as a loop device."""

    path: Path
    loop_device: str
    plan: SizePlan

    def partition_path(self, number: int) -> str:
        return partition_device_path(self.loop_device, number)

    @property
    def efi_path(self) -> str:
        return self.partition_path(1)

    @property
    def boot_path(self) -> str:
        return self.partition_path(2)

    @property
    def root_path(self) -> str:
        return self.partition_path(3)


def partition_device_path(device: str, number: int) -> str:
    """Return the node of partition ``number`` (``/dev/loop0`` -> ``/dev/loop0p3``)."""
    separator = "p" if device[-1:].isdigit() else ""
    return f"{device}{separator}{number}"


# ==============================================================================
# Encryption Domain
# ==============================================================================


class LuksState(Enum):
    UNFORMATTED = "unformatted"
    FORMATTED = "formatted"
    OPENED = "opened"
    POPULATED = "populated"
    CLOSED = "closed"


@dataclass
class LuksVolume:
    """The encrypted root partition and its device-mapper name."""

    device: str
    mapper_name: str = DEFAULT_MAPPER_NAME
    cipher: str = DEFAULT_CIPHER
    key_size: int = DEFAULT_KEY_SIZE
    header_size: int = LUKS_HEADER_SIZE
    state: LuksState = LuksState.UNFORMATTED

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"

    @property
    def is_open(self) -> bool:
        return self.state in (LuksState.OPENED, LuksState.POPULATED)


@dataclass
class Tpm2Enrollment:
    """A TPM2-sealed key slot bound to a set of PCRs."""

    device: str
    wipe_slot: int = DEFAULT_TPM2_WIPE_SLOT
    pcrs: tuple[int, ...] = DEFAULT_TPM2_PCRS
    enrolled: bool = False

    @property
    def pcr_argument(self) -> str:
        """PCR list in systemd-cryptenroll notation (e.g. ``1+3+5``)."""
        return "+".join(str(pcr) for pcr in self.pcrs)


# ==============================================================================
# Build Domain
# ==============================================================================


@dataclass
class BuildOptions:
    input_path: Path
    output_path: Path
    passphrase: str = field(repr=False)
    cipher: str = DEFAULT_CIPHER
    key_size: int = DEFAULT_KEY_SIZE
    skip_tpm2: bool = False
    alignment: AlignmentMode = AlignmentMode.MIB
    mapper_name: str = DEFAULT_MAPPER_NAME
    block_size: str = DEFAULT_BLOCK_SIZE
    luks_header_size: int = LUKS_HEADER_SIZE
    tpm2_pcrs: tuple[int, ...] = DEFAULT_TPM2_PCRS
    tpm2_wipe_slot: int = DEFAULT_TPM2_WIPE_SLOT
    tpm2_timeout: float = 120.0
    reclaim_stale_mapper: bool = True
    check_dependencies: bool = True
    install_missing_tools: bool = True


@dataclass(frozen=True)
class BuildResult:
    output_path: Path
    plan: SizePlan
    tpm2_enrolled: bool
