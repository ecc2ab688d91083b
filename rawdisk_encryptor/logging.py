from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "RAWDISK_ENCRYPTOR_LOG_DIR",
        Path.home() / ".local" / "state" / "rawdisk-encryptor" / "logs",
    )
)

REDACTED = "********"

# Values that must never reach a sink (passphrases, password hashes).
_secrets: set[str] = set()


def register_secret(value: str | None) -> None:
    """Mask ``value`` in every log record emitted from now on."""
    if value:
        _secrets.add(value)


def clear_secrets() -> None:
    _secrets.clear()


def _redact_secrets(record) -> None:
    """Patcher that scrubs registered secrets before any sink formats a record."""
    if not _secrets:
        return
    message = record["message"]
    for secret in _secrets:
        if secret in message:
            message = message.replace(secret, REDACTED)
    record["message"] = message


def _should_log_progress(record) -> bool:
    """Filter dd progress chatter - only show in DEBUG mode."""
    tags = record["extra"].get("tags", [])

    # Always log warnings and errors
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "progress" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _should_log_command_output(record) -> bool:
    """Filter echoed stdout/stderr of external tools - TRACE only."""
    message = record["message"]
    tags = record["extra"].get("tags", [])

    if "command" in tags and message.startswith(("stdout:", "stderr:")):
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_progress(record) and _should_log_command_output(record)


logger.configure(patcher=_redact_secrets)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Fatal build failures (precondition or tool errors)
    - WARNING: Soft failures (EFI type ambiguity, TPM2 absent)
    - SUCCESS/INFO: Pipeline stages and size plan
    - DEBUG: Every external command, dd progress
    - TRACE: Raw stdout/stderr of external commands

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/rawdisk-encryptor/logs)
        file_logging: Disable to log to stderr only
    """
    logger.remove()
    logger.configure(
        extra={"job_id": "-", "tags": [], "source": "app"},
        patcher=_redact_secrets,
    )

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - timestamped, leveled, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=None,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            # diagnose would print local variables, passphrases included
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["luks", "storage"])
        source: Source component (e.g., "build", "luks", "tpm")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "build", "verify", "inject")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("build", source="in.raw", target="out.raw") as log:
            log.debug("Attaching loop devices")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_build(job_id: str | None = None, **details) -> Logger:
        """Logger for the encrypted image pipeline."""
        if job_id is None:
            job_id = f"build-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="build", tags=["build", "storage"], **details
        )

    @staticmethod
    def for_probe() -> Logger:
        """Logger for source image introspection."""
        return logger.bind(source="probe", tags=["probe", "storage"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device attach/detach."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_luks() -> Logger:
        """Logger for LUKS format/open/close."""
        return logger.bind(source="luks", tags=["luks", "crypto"])

    @staticmethod
    def for_tpm() -> Logger:
        """Logger for TPM2 enrollment."""
        return logger.bind(source="tpm", tags=["tpm", "crypto"])

    @staticmethod
    def for_copy() -> Logger:
        """Logger for block copies; progress lines are tagged for filtering."""
        return logger.bind(source="copy", tags=["copy", "progress"])

    @staticmethod
    def for_firstboot() -> Logger:
        """Logger for first-boot configuration injection."""
        return logger.bind(source="firstboot", tags=["firstboot"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, dependencies, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for dd progress, which reports several times per second.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging pipeline events with consistent fields so
    structured.jsonl can be analysed after the fact.
    """

    @staticmethod
    def log_build_started(
        log: Logger, source: str, target: str, cipher: str, key_size: int, **extra
    ) -> None:
        """Log build start."""
        log.info(
            "Encrypted image build started",
            event_type="build_started",
            source_image=source,
            target_image=target,
            cipher=cipher,
            key_size=key_size,
            **extra,
        )

    @staticmethod
    def log_size_plan(log: Logger, total_bytes: int, **sizes) -> None:
        """Log the computed target image layout."""
        log.info(
            f"Total size: {total_bytes / 1024 ** 3:.2f} GiB ({total_bytes} bytes)",
            event_type="size_plan",
            total_bytes=total_bytes,
            **sizes,
        )
