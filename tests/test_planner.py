"""Tests for target image layout planning."""

import pytest

from rawdisk_encryptor.domain.models import LUKS_HEADER_SIZE, MIB, SECTOR_SIZE, AlignmentMode
from rawdisk_encryptor.storage.planner import align_up, describe_plan, plan_layout

SIZES = [
    (512 * MIB, 1024 * MIB, 8 * 1024 * MIB),
    (100 * MIB + 1, 200 * MIB - 7, 3000 * MIB + 513),
    (1, 1, 1),
    (SECTOR_SIZE * 3, MIB + SECTOR_SIZE, 12345678),
]


class TestAlignUp:
    @pytest.mark.parametrize(
        "size, unit, expected",
        [(0, 512, 0), (1, 512, 512), (512, 512, 512), (MIB + 1, MIB, 2 * MIB)],
    )
    def test_align_up(self, size, unit, expected):
        assert align_up(size, unit) == expected


class TestPlanLayout:
    """Size invariants of the target layout."""

    @pytest.mark.parametrize("alignment", list(AlignmentMode))
    @pytest.mark.parametrize("efi, boot, root", SIZES)
    def test_total_is_aligned_sum_plus_header_and_pads(self, efi, boot, root, alignment):
        plan = plan_layout(efi, boot, root, alignment=alignment)
        unit = alignment.unit

        assert plan.efi_size == align_up(efi, unit)
        assert plan.boot_size == align_up(boot, unit)
        assert plan.root_size == align_up(root, unit)
        assert plan.total_bytes == (
            plan.efi_size + plan.boot_size + plan.root_size + LUKS_HEADER_SIZE + 2 * MIB
        )
        assert plan.total_bytes >= efi + boot + root + LUKS_HEADER_SIZE + 2 * MIB

    @pytest.mark.parametrize("alignment", list(AlignmentMode))
    @pytest.mark.parametrize("efi, boot, root", SIZES)
    def test_starts_increase_and_are_aligned(self, efi, boot, root, alignment):
        plan = plan_layout(efi, boot, root, alignment=alignment)
        extents = plan.extents

        starts = [extent.start_bytes for extent in extents]
        assert starts == sorted(starts)
        assert len(set(starts)) == 3
        for extent in extents:
            assert extent.start_bytes % alignment.unit == 0
        for previous, current in zip(extents, extents[1:]):
            assert current.start_sector == previous.end_sector + 1

    @pytest.mark.parametrize("efi, boot, root", SIZES)
    def test_root_reserves_luks_header(self, efi, boot, root):
        plan = plan_layout(efi, boot, root)
        assert plan.root.size_bytes == plan.root_size + LUKS_HEADER_SIZE
        assert plan.root.size_bytes - LUKS_HEADER_SIZE >= root

    @pytest.mark.parametrize("efi, boot, root", SIZES)
    def test_layout_fits_inside_image_with_trailing_pad(self, efi, boot, root):
        plan = plan_layout(efi, boot, root)
        last_byte = (plan.root.end_sector + 1) * SECTOR_SIZE
        assert plan.total_bytes - last_byte == MIB

    def test_known_layout(self):
        plan = plan_layout(512 * MIB, 1024 * MIB, 4096 * MIB)

        assert plan.efi.start_sector == 2048
        assert plan.efi.end_sector == 2048 + 512 * 2048 - 1
        assert plan.boot.start_sector == plan.efi.end_sector + 1
        assert plan.root.end_sector == plan.root.start_sector + (4096 + 16) * 2048 - 1
        assert plan.total_bytes == (1 + 512 + 1024 + 4096 + 16 + 1) * MIB

    def test_sector_alignment_keeps_odd_sizes_tighter(self):
        mib_plan = plan_layout(MIB + 512, MIB, MIB, alignment="mib")
        sector_plan = plan_layout(MIB + 512, MIB, MIB, alignment="sector")
        assert sector_plan.total_bytes < mib_plan.total_bytes
        assert sector_plan.efi_size == MIB + 512

    @pytest.mark.parametrize("sizes", [(0, 1, 1), (1, -5, 1), (1, 1, 0)])
    def test_rejects_non_positive_sizes(self, sizes):
        with pytest.raises(ValueError, match="must be positive"):
            plan_layout(*sizes)

    def test_rejects_misaligned_header(self):
        with pytest.raises(ValueError, match="LUKS header size"):
            plan_layout(MIB, MIB, MIB, luks_header_size=MIB + 512)

    def test_describe_plan(self):
        lines = describe_plan(plan_layout(512 * MIB, 1024 * MIB, 4096 * MIB))
        assert lines[0] == "Partition sizes: EFI=512 MiB, Boot=1024 MiB, Root=4096 MiB"
        assert lines[1] == "LUKS header: 16 MiB, Alignment: 1 MiB x 2 (mib)"
        assert lines[2].startswith("EFI: sectors 2048-")
