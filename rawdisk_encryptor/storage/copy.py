"""Verbatim block copies between partitions using dd."""

from __future__ import annotations

import os
from typing import Callable, Optional

from rawdisk_encryptor.domain.models import DEFAULT_BLOCK_SIZE
from rawdisk_encryptor.logging import LoggerFactory

from .commands import privileged, run_with_progress
from .progress import human_size

log = LoggerFactory.for_build()

Streamer = Callable[..., object]


def build_dd_command(source: str, target: str, block_size: str = DEFAULT_BLOCK_SIZE) -> list[str]:
    """dd invocation with a fixed transfer size and a final data+metadata fsync."""
    return [
        "dd",
        f"if={source}",
        f"of={target}",
        f"bs={block_size}",
        "status=progress",
        "conv=fsync",
    ]


def copy_block_device(
    source: str,
    target: str,
    *,
    total_bytes: Optional[int] = None,
    block_size: str = DEFAULT_BLOCK_SIZE,
    label: Optional[str] = None,
    streamer: Streamer = run_with_progress,
) -> None:
    """Copy every byte of ``source`` to ``target``.

    Raises:
        CommandError: If dd fails
    """
    label = label or os.path.basename(target)
    size_label = f" ({human_size(total_bytes)})" if total_bytes else ""
    log.info(f"Copying {source} -> {target}{size_label}")
    streamer(
        privileged(build_dd_command(source, target, block_size)),
        total_bytes=total_bytes,
        label=label,
    )
