"""Encrypted raw image build pipeline.

Turns an unencrypted three-partition (EFI / boot / root) raw image into a new
raw image whose root partition is LUKS2-encrypted:

    1. check preconditions and host tools
    2. attach the source image and validate its partitions
    3. plan the target layout and check free space
    4. create and partition the target image
    5. copy EFI and boot verbatim
    6. format, open, populate and close the encrypted root
    7. optionally enroll a TPM2 key slot
    8. release loop devices and mappings (always)

Every step runs sequentially; each external tool finishes before the next
starts. Loop devices and the dm-crypt mapping are registered with a
ResourceScope the moment they exist, so errors and signals still release
them. A partially written output image is kept for inspection.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, Optional

from rawdisk_encryptor.domain.models import (
    BuildOptions,
    BuildResult,
    LuksVolume,
    TargetImage,
)
from rawdisk_encryptor.logging import EventLogger, operation_context, register_secret
from rawdisk_encryptor.storage import loop
from rawdisk_encryptor.storage.cleanup import ResourceScope, interrupt_guard
from rawdisk_encryptor.storage.commands import CommandRunner, run_command
from rawdisk_encryptor.storage.copy import copy_block_device
from rawdisk_encryptor.storage.dependencies import ensure_dependencies, report_optional_tools
from rawdisk_encryptor.storage.exceptions import PassphraseMissingError
from rawdisk_encryptor.storage.image import ImageFormatter, QemuImageFormatter
from rawdisk_encryptor.storage.luks import (
    CryptsetupBackend,
    EncryptedVolume,
    EncryptionBackend,
)
from rawdisk_encryptor.storage.planner import describe_plan, plan_layout
from rawdisk_encryptor.storage.probe import (
    HostPartitionProbe,
    PartitionProbe,
    introspect_source_image,
)
from rawdisk_encryptor.storage.tpm import SystemdTpm2Enroller, Tpm2Enroller, enroll_tpm2
from rawdisk_encryptor.storage.validation import (
    ensure_free_space,
    output_directory,
    validate_input_image,
    validate_output_path,
)


@dataclass
class BuildBackends:
    """Host adapters used by the pipeline; tests substitute fakes."""

    runner: CommandRunner = run_command
    probe: Optional[PartitionProbe] = None
    formatter: Optional[ImageFormatter] = None
    encryption: Optional[EncryptionBackend] = None
    tpm: Optional[Tpm2Enroller] = None
    copier: Callable[..., object] = copy_block_device
    disk_usage: Callable = shutil.disk_usage
    exists: Callable[[str], bool] = field(default=os.path.exists)
    which: Callable[[str], Optional[str]] = shutil.which

    def __post_init__(self):
        if self.probe is None:
            self.probe = HostPartitionProbe(self.runner)
        if self.formatter is None:
            self.formatter = QemuImageFormatter(self.runner)
        if self.encryption is None:
            self.encryption = CryptsetupBackend(self.runner)
        if self.tpm is None:
            self.tpm = SystemdTpm2Enroller(self.runner, self.which)


def validate_build_preconditions(options: BuildOptions) -> None:
    if not options.passphrase:
        raise PassphraseMissingError()
    validate_input_image(options.input_path)
    validate_output_path(options.output_path)


def build_encrypted_image(
    options: BuildOptions, backends: Optional[BuildBackends] = None
) -> BuildResult:
    """Run the whole pipeline for ``options``.

    Raises:
        PreconditionError: Input, output, passphrase, space or partition checks
        DependencyError: A required tool is missing and cannot be installed
        CommandError: Any external tool failed
        LuksError: The mapper name is taken or the LUKS sequence broke
        Tpm2EnrollmentError: TPM2 was available but enrollment failed
        BuildInterrupted: SIGINT/SIGTERM arrived mid-build
    """
    backends = backends or BuildBackends()
    runner = backends.runner
    register_secret(options.passphrase)
    validate_build_preconditions(options)
    if options.check_dependencies:
        ensure_dependencies(
            install=options.install_missing_tools, runner=runner, which=backends.which
        )
        if not options.skip_tpm2:
            report_optional_tools(which=backends.which)

    with operation_context(
        "build", source=str(options.input_path), target=str(options.output_path)
    ) as log, interrupt_guard(), ResourceScope(log) as scope:
        EventLogger.log_build_started(
            log,
            str(options.input_path),
            str(options.output_path),
            options.cipher,
            options.key_size,
        )

        log.info("Setting up input loop device...")
        source_loop = loop.attach(options.input_path, partscan=True, runner=runner)
        scope.register(
            f"detach source loop {source_loop}",
            lambda: loop.detach(source_loop, runner=runner),
        )
        loop.refresh_partitions(source_loop, runner=runner)
        source = introspect_source_image(
            options.input_path, source_loop, backends.probe, exists=backends.exists
        )

        plan = plan_layout(
            source.efi.size_bytes,
            source.boot.size_bytes,
            source.root.size_bytes,
            alignment=options.alignment,
            luks_header_size=options.luks_header_size,
        )
        for line in describe_plan(plan):
            log.info(line)
        EventLogger.log_size_plan(
            log,
            plan.total_bytes,
            efi_bytes=plan.efi_size,
            boot_bytes=plan.boot_size,
            root_bytes=plan.root_size,
        )
        ensure_free_space(
            output_directory(options.output_path), plan.total_bytes, backends.disk_usage
        )

        backends.formatter.create_image(options.output_path, plan.total_bytes)
        target_loop = loop.attach(options.output_path, runner=runner)
        scope.register(
            f"detach target loop {target_loop}",
            lambda: loop.detach(target_loop, runner=runner),
        )
        backends.formatter.write_partition_table(target_loop, plan)
        loop.refresh_partitions(target_loop, runner=runner)
        loop.settle(runner)
        target = TargetImage(options.output_path, target_loop, plan)
        loop.wait_for_partitions(
            [target.efi_path, target.boot_path, target.root_path], exists=backends.exists
        )

        log.info("Copying EFI and /boot partitions...")
        backends.copier(
            source.efi.device_path,
            target.efi_path,
            total_bytes=source.efi.size_bytes,
            block_size=options.block_size,
            label="EFI",
        )
        backends.copier(
            source.boot.device_path,
            target.boot_path,
            total_bytes=source.boot.size_bytes,
            block_size=options.block_size,
            label="boot",
        )

        volume = EncryptedVolume(
            LuksVolume(
                device=target.root_path,
                mapper_name=options.mapper_name,
                cipher=options.cipher,
                key_size=options.key_size,
                header_size=options.luks_header_size,
            ),
            backends.encryption,
            copier=backends.copier,
        )
        scope.register(f"close mapping {options.mapper_name}", volume.release)
        volume.format(options.passphrase)
        volume.open(options.passphrase, reclaim_stale=options.reclaim_stale_mapper)
        volume.populate(
            source.root.device_path,
            total_bytes=source.root.size_bytes,
            block_size=options.block_size,
        )
        volume.close()

        enrollment = enroll_tpm2(
            target.root_path,
            options.passphrase,
            backends.tpm,
            skip=options.skip_tpm2,
            wipe_slot=options.tpm2_wipe_slot,
            pcrs=options.tpm2_pcrs,
            timeout=options.tpm2_timeout,
        )

        log.info(f"Encrypted image created: {options.output_path}")

    return BuildResult(
        output_path=options.output_path,
        plan=plan,
        tpm2_enrolled=bool(enrollment and enrollment.enrolled),
    )
