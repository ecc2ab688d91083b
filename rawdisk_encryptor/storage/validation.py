"""Precondition checks run before any destructive operation.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from rawdisk_encryptor.storage.validation import validate_output_path

    try:
        validate_output_path(Path("encrypted.raw"))
    except OutputExistsError:
        # Refuse to overwrite
        pass
"""

import os
import shutil
from pathlib import Path
from typing import Callable, Mapping, Optional

from .exceptions import (
    InputNotFoundError,
    InsufficientSpaceError,
    OutputExistsError,
    OutputNotWritableError,
    PassphraseMissingError,
)

PASSPHRASE_VARIABLE = "LUKS_PASSWORD"


def validate_input_image(path) -> None:
    """Validate that the source image is an existing regular file.

    Raises:
        InputNotFoundError: If the file does not exist
    """
    if not Path(path).is_file():
        raise InputNotFoundError(path)


def require_passphrase(
    environ: Optional[Mapping[str, str]] = None, variable: str = PASSPHRASE_VARIABLE
) -> str:
    """Return the LUKS passphrase from the environment.

    Raises:
        PassphraseMissingError: If the variable is unset or empty
    """
    environ = os.environ if environ is None else environ
    passphrase = environ.get(variable, "")
    if not passphrase:
        raise PassphraseMissingError(variable)
    return passphrase


def output_directory(path) -> Path:
    return Path(path).resolve().parent


def validate_output_path(path) -> None:
    """Validate that ``path`` is free and its directory writable.

    A pre-existing output is never overwritten, so a second run against the
    same path fails here every time.

    Raises:
        OutputExistsError: If anything (file, link, directory) is at ``path``
        OutputNotWritableError: If the parent directory is missing or read-only
    """
    path = Path(path)
    if path.exists() or path.is_symlink():
        raise OutputExistsError(path)
    directory = output_directory(path)
    if not directory.is_dir() or not os.access(directory, os.W_OK):
        raise OutputNotWritableError(directory)


def ensure_free_space(
    directory,
    required_bytes: int,
    disk_usage: Callable = shutil.disk_usage,
) -> int:
    """Validate that ``directory``'s filesystem has more than ``required_bytes`` free.

    Returns:
        Available bytes

    Raises:
        InsufficientSpaceError: If free space does not exceed the requirement
    """
    available = disk_usage(str(directory)).free
    if available <= required_bytes:
        raise InsufficientSpaceError(directory, required_bytes, available)
    return available
