"""Shared dedupe helpers."""

from .dedupe import (
    EXISTING_PREFIX,
    compute_content_hash,
    make_existing_ref,
    normalize_mime_type,
    parse_existing_ref,
    sanitize_filename,
)

__all__ = [
    "EXISTING_PREFIX",
    "compute_content_hash",
    "make_existing_ref",
    "normalize_mime_type",
    "parse_existing_ref",
    "sanitize_filename",
]
