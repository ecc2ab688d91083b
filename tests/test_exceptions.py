"""Tests for image build exception classes."""

import pytest

from rawdisk_encryptor.storage.exceptions import (
    BuildInterrupted,
    CommandError,
    DependencyError,
    FilesystemTypeError,
    ImageBuildError,
    InputNotFoundError,
    InsufficientSpaceError,
    LuksError,
    LuksStateError,
    MapperBusyError,
    OutputExistsError,
    OutputNotWritableError,
    PartitionNotFoundError,
    PassphraseMissingError,
    PreconditionError,
    Tpm2EnrollmentError,
    VerificationError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    @pytest.mark.parametrize(
        "error",
        [
            InputNotFoundError("in.raw"),
            PassphraseMissingError(),
            OutputExistsError("out.raw"),
            OutputNotWritableError("/ro"),
            InsufficientSpaceError("/tmp", 10, 5),
            PartitionNotFoundError("/dev/loop0p3"),
            FilesystemTypeError("Root", "ext4", "xfs"),
        ],
    )
    def test_precondition_errors(self, error):
        """Every precondition failure is a PreconditionError."""
        assert isinstance(error, PreconditionError)
        assert isinstance(error, ImageBuildError)

    def test_luks_errors_inherit_from_luks_error(self):
        assert isinstance(LuksStateError("root", "closed", "populate"), LuksError)
        assert isinstance(MapperBusyError("root"), LuksError)

    @pytest.mark.parametrize(
        "error",
        [
            DependencyError("cryptsetup", "cryptsetup"),
            CommandError(["false"], 1),
            Tpm2EnrollmentError("/dev/loop0p3", "boom"),
            VerificationError("a", "b"),
            BuildInterrupted("SIGINT"),
        ],
    )
    def test_everything_is_an_image_build_error(self, error):
        assert isinstance(error, ImageBuildError)


class TestMessages:
    """Test user-facing error messages."""

    def test_passphrase_missing_explains_export(self):
        """Test the message tells the user how to provide the passphrase."""
        error = PassphraseMissingError()
        assert "LUKS_PASSWORD not set" in str(error)
        assert "export LUKS_PASSWORD=" in str(error)

    def test_output_exists(self):
        error = OutputExistsError("/images/out.raw")
        assert error.path == "/images/out.raw"
        assert "already exists" in str(error)

    def test_insufficient_space_reports_mib(self):
        error = InsufficientSpaceError("/images", 300 * 1024 * 1024, 100 * 1024 * 1024)
        assert "need 300 MiB" in str(error)
        assert "available 100 MiB" in str(error)

    def test_partition_not_found_lists_expected_layout(self):
        error = PartitionNotFoundError("/dev/loop3p2")
        assert "/dev/loop3p2" in str(error)
        assert "EFI (p1), /boot (p2), and / (p3)" in str(error)

    def test_filesystem_type_error_unknown(self):
        error = FilesystemTypeError("EFI", "fat32", None)
        assert str(error) == "EFI partition is not fat32 (found: unknown)"

    def test_dependency_error_with_reason(self):
        error = DependencyError("qemu-img", "qemu-utils", "automatic installation disabled")
        assert str(error) == (
            "Required tool qemu-img (package qemu-utils) is unavailable: "
            "automatic installation disabled"
        )

    def test_command_error_prefers_stderr(self):
        error = CommandError(["cryptsetup", "luksOpen"], 2, "No key available", "ignored")
        assert error.returncode == 2
        assert error.command == ["cryptsetup", "luksOpen"]
        assert str(error) == "Command failed (cryptsetup luksOpen): No key available"

    def test_command_error_falls_back_to_stdout(self):
        error = CommandError(["parted"], 1, "", "bad table")
        assert str(error).endswith(": bad table")

    def test_command_error_without_output(self):
        error = CommandError(["false"], 1)
        assert str(error) == "Command failed (false): Command failed"

    def test_luks_state_error(self):
        error = LuksStateError("encrypted_root", "unformatted", "open")
        assert str(error) == "Cannot open LUKS volume encrypted_root while it is unformatted"

    def test_build_interrupted(self):
        assert str(BuildInterrupted("SIGTERM")) == "Interrupted by SIGTERM"
