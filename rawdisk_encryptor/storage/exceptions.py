"""Custom exceptions for image build operations.

This module defines a hierarchy of exceptions for the encrypted image pipeline
so the CLI can report every fatal condition uniformly while the services can
still handle specific failures.

Exception Hierarchy:
    ImageBuildError (base)
        ├── PreconditionError
        │   ├── InputNotFoundError
        │   ├── PassphraseMissingError
        │   ├── OutputExistsError
        │   ├── OutputNotWritableError
        │   ├── InsufficientSpaceError
        │   ├── PartitionNotFoundError
        │   └── FilesystemTypeError
        ├── DependencyError
        ├── CommandError
        ├── LuksError
        │   ├── LuksStateError
        │   └── MapperBusyError
        ├── Tpm2EnrollmentError
        ├── VerificationError
        └── BuildInterrupted

Usage:
    from rawdisk_encryptor.storage.exceptions import OutputExistsError

    if output_path.exists():
        raise OutputExistsError(output_path)
"""

from __future__ import annotations

from typing import Optional, Sequence


class ImageBuildError(Exception):
    """Base exception for all image build operations."""


class PreconditionError(ImageBuildError):
    """A check that must pass before any destructive step failed."""


class InputNotFoundError(PreconditionError):
    """Input image (or another required input file) does not exist."""

    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"Input file '{self.path}' not found")


class PassphraseMissingError(PreconditionError):
    """The LUKS passphrase environment variable is unset or empty."""

    def __init__(self, variable: str = "LUKS_PASSWORD"):
        self.variable = variable
        super().__init__(
            f"{variable} not set. Use: export {variable}='your_password'"
        )


class OutputExistsError(PreconditionError):
    """The output image path is already taken."""

    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"Output file '{self.path}' already exists")


class OutputNotWritableError(PreconditionError):
    """The directory that should receive the output image is not writable."""

    def __init__(self, path):
        self.path = str(path)
        super().__init__(f"Output directory '{self.path}' is not writable")


class InsufficientSpaceError(PreconditionError):
    """The output filesystem cannot hold the planned image."""

    def __init__(self, path, required_bytes: int, available_bytes: int):
        self.path = str(path)
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Not enough disk space in {self.path}: need "
            f"{required_bytes // (1024 * 1024)} MiB, available "
            f"{available_bytes // (1024 * 1024)} MiB"
        )


class PartitionNotFoundError(PreconditionError):
    """An expected partition device node did not appear."""

    def __init__(self, device_path: str):
        self.device_path = device_path
        super().__init__(
            f"Missing partition {device_path}. "
            "Expecting EFI (p1), /boot (p2), and / (p3)."
        )


class FilesystemTypeError(PreconditionError):
    """A partition carries the wrong filesystem."""

    def __init__(self, partition: str, expected: str, found: Optional[str]):
        self.partition = partition
        self.expected = expected
        self.found = found
        super().__init__(
            f"{partition} partition is not {expected} (found: {found or 'unknown'})"
        )


class DependencyError(ImageBuildError):
    """A required external tool is missing and could not be installed."""

    def __init__(self, command: str, package: str, reason: str = ""):
        self.command = command
        self.package = package
        self.reason = reason
        msg = f"Required tool {command} (package {package}) is unavailable"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class CommandError(ImageBuildError):
    """An external command exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
        stdout: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        self.stdout = stdout or ""
        message = self.stderr.strip() or self.stdout.strip() or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class LuksError(ImageBuildError):
    """Base exception for LUKS volume handling."""


class LuksStateError(LuksError):
    """A LUKS operation was requested out of order."""

    def __init__(self, mapper_name: str, current: str, attempted: str):
        self.mapper_name = mapper_name
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} LUKS volume {mapper_name} while it is {current}"
        )


class MapperBusyError(LuksError):
    """A device-mapper entry with the reserved name is already active."""

    def __init__(self, mapper_name: str):
        self.mapper_name = mapper_name
        super().__init__(
            f"Mapping {mapper_name} already exists; another build may be running"
        )


class Tpm2EnrollmentError(ImageBuildError):
    """TPM2 hardware was present but enrollment failed."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Failed to enroll TPM2 key on {device}: {reason}")


class VerificationError(ImageBuildError):
    """Decrypted root contents differ from the source root partition."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Encrypted root does not match source: expected sha256 {expected}, "
            f"got {actual}"
        )


class BuildInterrupted(ImageBuildError):
    """The process received a termination signal mid-build."""

    def __init__(self, signal_name: str):
        self.signal_name = signal_name
        super().__init__(f"Interrupted by {signal_name}")
