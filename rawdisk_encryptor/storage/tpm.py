"""TPM2 key-slot enrollment through systemd-cryptenroll.

Enrollment is non-interactive: the existing passphrase is handed to
systemd-cryptenroll through its ``PASSWORD`` environment variable instead of
answering a terminal prompt, and the call is bounded by a timeout.

Failure semantics:
    - enrollment skipped on request: info, no command issued
    - systemd-cryptenroll missing or no TPM2 device: warning, the image stays
      passphrase-unlockable
    - TPM2 present but enrollment fails: Tpm2EnrollmentError (fatal)
"""

from __future__ import annotations

import shutil
from typing import Callable, Optional, Protocol

from rawdisk_encryptor.domain.models import (
    DEFAULT_TPM2_PCRS,
    DEFAULT_TPM2_WIPE_SLOT,
    Tpm2Enrollment,
)
from rawdisk_encryptor.logging import LoggerFactory

from .commands import CommandRunner, privileged, run_command
from .exceptions import CommandError, Tpm2EnrollmentError

log = LoggerFactory.for_tpm()

ENROLL_TOOL = "systemd-cryptenroll"
DEFAULT_TIMEOUT_SECONDS = 120.0


class Tpm2Enroller(Protocol):
    def tool_available(self) -> bool: ...

    def device_available(self) -> bool: ...

    def enroll(self, enrollment: Tpm2Enrollment, passphrase: str, *, timeout: float) -> None: ...


class SystemdTpm2Enroller:
    """Tpm2Enroller backed by systemd-cryptenroll."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.runner = runner
        self.which = which

    def tool_available(self) -> bool:
        return self.which(ENROLL_TOOL) is not None

    def device_available(self) -> bool:
        result = self.runner(privileged([ENROLL_TOOL, "--tpm2-device=list"]), check=False)
        if result.returncode != 0:
            return False
        return any(line.startswith("/dev/tpm") for line in result.stdout.splitlines())

    def enroll(self, enrollment: Tpm2Enrollment, passphrase: str, *, timeout: float) -> None:
        command = privileged(
            [
                ENROLL_TOOL,
                f"--wipe-slot={enrollment.wipe_slot}",
                "--tpm2-device=auto",
                f"--tpm2-pcrs={enrollment.pcr_argument}",
                enrollment.device,
            ],
            preserve_env=["PASSWORD"],
        )
        self.runner(command, env={"PASSWORD": passphrase}, timeout=timeout)


def enroll_tpm2(
    device: str,
    passphrase: str,
    enroller: Tpm2Enroller,
    *,
    skip: bool = False,
    wipe_slot: int = DEFAULT_TPM2_WIPE_SLOT,
    pcrs: tuple[int, ...] = DEFAULT_TPM2_PCRS,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Optional[Tpm2Enrollment]:
    """Enroll a TPM2-sealed key slot on ``device`` when possible.

    Returns:
        The completed enrollment, or None when it was skipped or no TPM2 is
        available.

    Raises:
        Tpm2EnrollmentError: If TPM2 is available but enrollment failed
    """
    if skip:
        log.info("Skipping TPM2 enrollment as requested")
        return None
    log.info("Checking TPM2 availability...")
    if not enroller.tool_available():
        log.warning(f"{ENROLL_TOOL} not installed, skipping TPM2 enrollment")
        return None
    if not enroller.device_available():
        log.warning("TPM2 not available, skipping enrollment")
        return None

    enrollment = Tpm2Enrollment(device=device, wipe_slot=wipe_slot, pcrs=tuple(pcrs))
    log.info(f"Enrolling TPM2 key on {device} (PCRs {enrollment.pcr_argument})")
    try:
        enroller.enroll(enrollment, passphrase, timeout=timeout)
    except CommandError as error:
        raise Tpm2EnrollmentError(device, str(error)) from error
    enrollment.enrolled = True
    log.info("New TPM2 token enrolled")
    return enrollment
