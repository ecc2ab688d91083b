"""Progress parsing and formatting for dd-driven block copies."""

import re

_BYTES_RE = re.compile(r"(\d+)\s+bytes")
_RATE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([kMG]B|[KMG]iB)/s")

_RATE_UNITS = {
    "kB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
}


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def parse_dd_progress(line):
    """Extract ``(bytes_copied, bytes_per_second)`` from one dd status line.

    Either value is None when the line does not carry it.
    """
    bytes_copied = None
    rate = None
    bytes_match = _BYTES_RE.search(line)
    if bytes_match:
        bytes_copied = int(bytes_match.group(1))
    rate_match = _RATE_RE.search(line)
    if rate_match:
        rate = float(rate_match.group(1)) * _RATE_UNITS[rate_match.group(2)]
    return bytes_copied, rate


def format_progress_line(label, bytes_copied, total_bytes=None, rate=None):
    """Format one progress line: ``EFI: 12.0MB / 512.0MB 2.3% 40.0MB/s ETA 00:12``."""
    parts = [f"{label}:", human_size(bytes_copied)]
    if total_bytes:
        parts.append(f"/ {human_size(total_bytes)}")
        parts.append(f"{min(bytes_copied / total_bytes, 1.0) * 100:.1f}%")
    if rate:
        parts.append(f"{human_size(rate)}/s")
        if total_bytes and bytes_copied <= total_bytes:
            eta = format_eta((total_bytes - bytes_copied) / rate)
            if eta:
                parts.append(f"ETA {eta}")
    return " ".join(parts)
