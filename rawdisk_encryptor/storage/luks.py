"""LUKS2 encryption of the target root partition.

The root volume moves through a fixed sequence of states::

    unformatted -> formatted -> opened -> populated -> closed

``EncryptedVolume`` enforces that order. ``close`` is also accepted straight
after ``open`` so a failed copy can still tear the mapping down, and a closed
(or formatted but never opened) volume may be opened again for verification.

The passphrase reaches cryptsetup on stdin, terminated by a newline, exactly
as an interactive user would type it. It never appears in argv, so it is
never visible in the process table or in the command log.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol

from rawdisk_encryptor.domain.models import DEFAULT_BLOCK_SIZE, LuksState, LuksVolume
from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command
from .copy import copy_block_device
from .exceptions import LuksStateError, MapperBusyError

log = LoggerFactory.for_luks()

_GONE_MARKERS = ("not active", "doesn't exist", "does not exist", "not found", "no such")


class EncryptionBackend(Protocol):
    def format(self, device: str, passphrase: str, *, cipher: str, key_size: int) -> None: ...

    def open(
        self,
        device: str,
        mapper_name: str,
        passphrase: Optional[str] = None,
        *,
        key_file: Optional[str] = None,
        readonly: bool = False,
    ) -> None: ...

    def is_active(self, mapper_name: str) -> bool: ...

    def close(self, mapper_name: str) -> bool:
        """Return True when the mapping is gone (closed now or already absent)."""

    def force_remove(self, mapper_name: str) -> None: ...

    def flush(self, mapper_name: str) -> None: ...


class CryptsetupBackend:
    """EncryptionBackend driving cryptsetup and dmsetup."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def format(self, device: str, passphrase: str, *, cipher: str, key_size: int) -> None:
        self.runner(
            privileged(
                [
                    "cryptsetup",
                    "luksFormat",
                    "--type",
                    "luks2",
                    "--cipher",
                    cipher,
                    "--key-size",
                    str(key_size),
                    "--batch-mode",
                    device,
                ]
            ),
            input_text=f"{passphrase}\n",
        )

    def open(
        self,
        device: str,
        mapper_name: str,
        passphrase: Optional[str] = None,
        *,
        key_file: Optional[str] = None,
        readonly: bool = False,
    ) -> None:
        if passphrase is None and key_file is None:
            raise ValueError("open requires a passphrase or a key file")
        command = ["cryptsetup", "luksOpen"]
        if readonly:
            command.append("--readonly")
        if key_file is not None:
            command.append(f"--key-file={key_file}")
        command.extend([device, mapper_name])
        input_text = None if key_file is not None else f"{passphrase}\n"
        self.runner(privileged(command), input_text=input_text)

    def is_active(self, mapper_name: str) -> bool:
        result = self.runner(privileged(["cryptsetup", "status", mapper_name]), check=False)
        return result.returncode == 0

    def close(self, mapper_name: str) -> bool:
        result = self.runner(privileged(["cryptsetup", "luksClose", mapper_name]), check=False)
        if result.returncode == 0:
            return True
        stderr = (result.stderr or "").lower()
        if any(marker in stderr for marker in _GONE_MARKERS):
            log.debug(f"Mapping {mapper_name} already removed")
            return True
        log.warning(f"cryptsetup luksClose {mapper_name} failed: {result.stderr.strip()}")
        return False

    def force_remove(self, mapper_name: str) -> None:
        self.runner(privileged(["dmsetup", "remove", "--force", mapper_name]))

    def flush(self, mapper_name: str) -> None:
        self.runner(privileged(["sync"]))
        self.runner(privileged(["blockdev", "--flushbufs", f"/dev/mapper/{mapper_name}"]))
        self.runner(privileged(["udevadm", "settle"]), check=False)


def close_mapping(backend: EncryptionBackend, mapper_name: str) -> None:
    """Close ``mapper_name``, falling back to ``dmsetup remove --force``."""
    if backend.close(mapper_name):
        return
    log.warning(f"Retrying removal of {mapper_name} with dmsetup...")
    backend.force_remove(mapper_name)


def reclaim_mapper(backend: EncryptionBackend, mapper_name: str, *, force: bool = True) -> bool:
    """Deal with a leftover mapping that carries our reserved name.

    Returns:
        True if a stale mapping was found and removed.

    Raises:
        MapperBusyError: If the mapping exists and ``force`` is False
    """
    if not backend.is_active(mapper_name):
        return False
    if not force:
        raise MapperBusyError(mapper_name)
    log.warning(f"Mapping {mapper_name} already exists, closing...")
    close_mapping(backend, mapper_name)
    return True


class EncryptedVolume:
    """Drives one LuksVolume through format, open, populate and close."""

    def __init__(
        self,
        volume: LuksVolume,
        backend: EncryptionBackend,
        *,
        copier: Callable[..., object] = copy_block_device,
    ):
        self.volume = volume
        self.backend = backend
        self.copier = copier

    @property
    def state(self) -> LuksState:
        return self.volume.state

    def _require(self, action: str, *allowed: LuksState) -> None:
        if self.volume.state not in allowed:
            raise LuksStateError(self.volume.mapper_name, self.volume.state.value, action)

    def format(self, passphrase: str) -> None:
        self._require("format", LuksState.UNFORMATTED)
        log.info(
            f"Encrypting {self.volume.device} with LUKS2 "
            f"({self.volume.cipher}, {self.volume.key_size}-bit key)"
        )
        self.backend.format(
            self.volume.device,
            passphrase,
            cipher=self.volume.cipher,
            key_size=self.volume.key_size,
        )
        self.volume.state = LuksState.FORMATTED

    def open(
        self,
        passphrase: Optional[str] = None,
        *,
        key_file: Optional[str] = None,
        readonly: bool = False,
        reclaim_stale: bool = True,
    ) -> None:
        self._require("open", LuksState.FORMATTED, LuksState.CLOSED)
        reclaim_mapper(self.backend, self.volume.mapper_name, force=reclaim_stale)
        log.info(f"Opening {self.volume.device} as {self.volume.mapper_path}")
        self.backend.open(
            self.volume.device,
            self.volume.mapper_name,
            passphrase,
            key_file=key_file,
            readonly=readonly,
        )
        self.volume.state = LuksState.OPENED

    def populate(
        self,
        source: str,
        *,
        total_bytes: Optional[int] = None,
        block_size: str = DEFAULT_BLOCK_SIZE,
    ) -> None:
        """Copy ``source`` into the decrypted mapping, then flush and settle."""
        self._require("populate", LuksState.OPENED)
        self.copier(
            source,
            self.volume.mapper_path,
            total_bytes=total_bytes,
            block_size=block_size,
            label="root",
        )
        log.info("Flushing and syncing...")
        self.backend.flush(self.volume.mapper_name)
        self.volume.state = LuksState.POPULATED

    def close(self) -> None:
        self._require("close", LuksState.OPENED, LuksState.POPULATED)
        log.info(f"Closing LUKS mapper {self.volume.mapper_name}...")
        close_mapping(self.backend, self.volume.mapper_name)
        self.volume.state = LuksState.CLOSED

    def release(self) -> None:
        """Cleanup hook: close the mapping if this volume still holds it."""
        if self.volume.is_open:
            self.close()
        elif self.volume.state is LuksState.FORMATTED and self.backend.is_active(
            self.volume.mapper_name
        ):
            # interrupted between luksOpen returning and the state update
            close_mapping(self.backend, self.volume.mapper_name)
            self.volume.state = LuksState.CLOSED
