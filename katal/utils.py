"""
utils.py — small formatting helpers shared by replies, logs and the dashboard.
"""

import math
import secrets
import string
from typing import Optional, Tuple

SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]
MIB = 1024 * 1024
UNLOCK_CODE_ALPHABET = string.ascii_uppercase + string.digits


def bytes_to_size(num_bytes: float) -> str:
    """Human readable size: 1536 -> '1.50 KB'."""
    num_bytes = float(num_bytes or 0)
    if num_bytes <= 0:
        return "0 Bytes"
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(SIZE_UNITS) - 1)
    i = max(i, 0)
    return f"{num_bytes / 1024 ** i:.2f} {SIZE_UNITS[i]}"


def download_progress(completed_length: float, total_length: float) -> Tuple[str, str, str]:
    """
    (completed MB, total MB, percent) as display strings.

    percent has one decimal, or is plain "0" when the total is unknown (0).
    """
    completed = float(completed_length or 0)
    total = float(total_length or 0)
    percent = f"{completed / total * 100:.1f}" if total > 0 else "0"
    return f"{completed / MIB:.2f}", f"{total / MIB:.2f}", percent


def format_progress(completed_length: float, total_length: float) -> str:
    """'50.00/200.00 MB (25.0%)'."""
    done, total, percent = download_progress(completed_length, total_length)
    return f"{done}/{total} MB ({percent}%)"


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m {seconds % 60}s"


def short(value: Optional[str]) -> Optional[str]:
    """Shorten an identity for logs: 'abcdef...6789'."""
    if not value:
        return value
    return f"{value[:6]}...{value[-4:]}"


def random_code(length: int = 6) -> str:
    """Unlock code used when none is configured."""
    return "".join(secrets.choice(UNLOCK_CODE_ALPHABET) for _ in range(length))
