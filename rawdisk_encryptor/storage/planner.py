"""Target image size and partition layout planning.

Pure arithmetic, no I/O. The target disk is laid out as::

    | pad | EFI | boot | root + LUKS2 header | pad |

Each partition size is rounded up to the alignment unit (one 512-byte sector
or 1 MiB). The root partition additionally reserves the LUKS2 header so that,
once the header is subtracted, the decrypted mapping is at least as large as
the source root filesystem. The trailing pad leaves room for the backup GPT.
"""

from rawdisk_encryptor.domain.models import (
    DEFAULT_PAD,
    LUKS_HEADER_SIZE,
    SECTOR_SIZE,
    AlignmentMode,
    PartitionExtent,
    SizePlan,
)


def align_up(size: int, unit: int) -> int:
    """Round ``size`` up to the next multiple of ``unit``."""
    return (size + unit - 1) // unit * unit


def plan_layout(
    efi_size: int,
    boot_size: int,
    root_size: int,
    *,
    alignment: AlignmentMode = AlignmentMode.MIB,
    luks_header_size: int = LUKS_HEADER_SIZE,
    pad: int = DEFAULT_PAD,
) -> SizePlan:
    """Compute the SizePlan for the given raw partition sizes in bytes.

    Raises:
        ValueError: If a size is not positive, or the pad or header size is
            not a whole number of alignment units.
    """
    alignment = AlignmentMode.parse(alignment)
    unit = alignment.unit
    for name, size in (("EFI", efi_size), ("boot", boot_size), ("root", root_size)):
        if size <= 0:
            raise ValueError(f"{name} partition size must be positive, got {size}")
    if pad % unit or pad <= 0:
        raise ValueError(f"Alignment pad {pad} is not a multiple of {unit}")
    if luks_header_size % unit or luks_header_size <= 0:
        raise ValueError(f"LUKS header size {luks_header_size} is not a multiple of {unit}")

    efi = align_up(efi_size, unit)
    boot = align_up(boot_size, unit)
    root = align_up(root_size, unit)
    total = pad + efi + boot + root + luks_header_size + pad

    efi_start = pad // SECTOR_SIZE
    efi_end = efi_start + efi // SECTOR_SIZE - 1
    boot_start = efi_end + 1
    boot_end = boot_start + boot // SECTOR_SIZE - 1
    root_start = boot_end + 1
    root_end = root_start + (root + luks_header_size) // SECTOR_SIZE - 1

    return SizePlan(
        alignment=alignment,
        efi_size=efi,
        boot_size=boot,
        root_size=root,
        luks_header_size=luks_header_size,
        leading_pad=pad,
        trailing_pad=pad,
        total_bytes=total,
        efi=PartitionExtent("EFI", "fat32", efi_start, efi_end),
        boot=PartitionExtent("boot", "ext4", boot_start, boot_end),
        root=PartitionExtent("root", "ext4", root_start, root_end),
    )


def describe_plan(plan: SizePlan) -> list[str]:
    """Human-readable summary lines for the build log."""
    mib = 1024 * 1024
    return [
        f"Partition sizes: EFI={plan.efi_size // mib} MiB, "
        f"Boot={plan.boot_size // mib} MiB, Root={plan.root_size // mib} MiB",
        f"LUKS header: {plan.luks_header_size // mib} MiB, "
        f"Alignment: {plan.leading_pad // mib} MiB x 2 ({plan.alignment.value})",
        *(
            f"{extent.name}: sectors {extent.start_sector}-{extent.end_sector}"
            for extent in plan.extents
        ),
    ]
