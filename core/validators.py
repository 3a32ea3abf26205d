"""
Input validation utilities for the door access service.
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple


def validate_image_extension(filename: Optional[str], allowed_extensions) -> Optional[str]:
    """
    Return the lowercased extension of filename if it is allowed, else None.

    Only the suffix is used; the uploaded name is never written to disk.
    """
    if not filename:
        return None
    ext = Path(filename).suffix.lower()
    return ext if ext in allowed_extensions else None


def validate_file_size(file_size: int, max_size_bytes: int) -> Tuple[bool, Optional[str]]:
    """
    Validate file size.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if file_size <= 0:
        return False, "File size must be greater than 0"

    if file_size > max_size_bytes:
        max_size_mb = max_size_bytes / (1024 * 1024)
        return False, f"File too large (max: {max_size_mb:.0f}MB)"

    return True, None


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Timestamps are stored as naive UTC. Aware inputs are converted; naive
    inputs are taken to be UTC already.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
