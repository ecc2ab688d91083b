"""Round-trip verification of a built image.

Reopens the encrypted root of the output image read-only with the build
passphrase and checks that the first ``len(source root)`` bytes of the
decrypted mapping hash to the same SHA-256 as the source root partition.
A wrong passphrase fails at ``luksOpen`` with CommandError.
"""

from __future__ import annotations

import hashlib
import subprocess
from dataclasses import dataclass
from typing import Callable, Optional

from rawdisk_encryptor.domain.models import LuksState, LuksVolume, partition_device_path
from rawdisk_encryptor.logging import operation_context, register_secret
from rawdisk_encryptor.services.build import BuildBackends
from rawdisk_encryptor.storage import loop
from rawdisk_encryptor.storage.cleanup import ResourceScope, interrupt_guard
from rawdisk_encryptor.storage.commands import privileged, stop_process
from rawdisk_encryptor.storage.exceptions import CommandError, VerificationError
from rawdisk_encryptor.storage.luks import EncryptedVolume
from rawdisk_encryptor.storage.validation import validate_input_image

VERIFY_MAPPER_NAME = "verify_root"
CHUNK_SIZE = 4 * 1024 * 1024


@dataclass(frozen=True)
class VerificationResult:
    source_sha256: str
    decrypted_sha256: str
    compared_bytes: int


def compute_sha256(device_node: str, total_bytes: Optional[int] = None) -> str:
    """SHA-256 of the first ``total_bytes`` of ``device_node`` (all of it if None).

    The device is read through a privileged dd so block devices owned by
    root can be hashed from an unprivileged process.
    """
    dd_cmd = [
        "dd",
        f"if={device_node}",
        "bs=4M",
        "status=none",
    ]
    if total_bytes:
        dd_cmd.extend([f"count={int(total_bytes)}", "iflag=count_bytes"])
    dd_cmd = privileged(dd_cmd)
    digest = hashlib.sha256()
    process = subprocess.Popen(dd_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    try:
        for chunk in iter(lambda: process.stdout.read(CHUNK_SIZE), b""):
            digest.update(chunk)
        stderr = process.stderr.read().decode("utf-8", errors="replace")
        process.wait()
    finally:
        stop_process(process)
    if process.returncode != 0:
        raise CommandError(dd_cmd, process.returncode, stderr)
    return digest.hexdigest()


def verify_encrypted_image(
    source_path,
    encrypted_path,
    passphrase: str,
    backends: Optional[BuildBackends] = None,
    *,
    mapper_name: str = VERIFY_MAPPER_NAME,
    hasher: Optional[Callable[[str, Optional[int]], str]] = None,
) -> VerificationResult:
    """Compare the decrypted root of ``encrypted_path`` with ``source_path``'s root.

    Raises:
        InputNotFoundError: Either image is missing
        CommandError: Attaching, unlocking or reading failed
        VerificationError: The contents differ
    """
    backends = backends or BuildBackends()
    runner = backends.runner
    hasher = hasher or compute_sha256
    register_secret(passphrase)
    validate_input_image(source_path)
    validate_input_image(encrypted_path)

    with operation_context(
        "verify", source=str(source_path), target=str(encrypted_path)
    ) as log, interrupt_guard(), ResourceScope(log) as scope:
        source_loop = loop.attach(source_path, partscan=True, runner=runner)
        scope.register(
            f"detach source loop {source_loop}",
            lambda: loop.detach(source_loop, runner=runner),
        )
        target_loop = loop.attach(encrypted_path, partscan=True, runner=runner)
        scope.register(
            f"detach target loop {target_loop}",
            lambda: loop.detach(target_loop, runner=runner),
        )
        source_root = partition_device_path(source_loop, 3)
        target_root = partition_device_path(target_loop, 3)
        loop.wait_for_partitions([source_root, target_root], exists=backends.exists)

        volume = EncryptedVolume(
            LuksVolume(device=target_root, mapper_name=mapper_name, state=LuksState.CLOSED),
            backends.encryption,
        )
        scope.register(f"close mapping {mapper_name}", volume.release)
        volume.open(passphrase, readonly=True)

        root_size = backends.probe.size_bytes(source_root)
        log.info(f"Hashing {root_size} bytes of source and decrypted root...")
        expected = hasher(source_root, root_size)
        actual = hasher(volume.volume.mapper_path, root_size)
        volume.close()

        if expected != actual:
            raise VerificationError(expected, actual)
        log.info(f"Decrypted root matches source (sha256 {expected})")

    return VerificationResult(expected, actual, root_size)
