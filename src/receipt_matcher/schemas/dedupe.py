"""
Content dedupe keys (CRITICAL).

This module defines THE content hash used to deduplicate stored files.
This is the ONLY way to compute a file's dedupe key in the system.

Rules:
- Key = SHA256 over the raw bytes, lowercase hex
- Keys are unique per user; identical bytes never create a second record
- An "existing:" reference points callers at the record that owns the key
"""

import hashlib
import re

# Prefix returned by ingestion when the content hash already has an owner
EXISTING_PREFIX = "existing:"

# Generic MIME type reported by mail providers for unknown attachments
OCTET_STREAM = "application/octet-stream"

# Extension -> MIME type used when the source reports a generic type
EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def compute_content_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()


def make_existing_ref(file_id: str) -> str:
    """Build the reference returned for an already stored file."""
    return f"{EXISTING_PREFIX}{file_id}"


def parse_existing_ref(result: str) -> str | None:
    """Return the file id of an "existing:" reference, None for a new id."""
    if result.startswith(EXISTING_PREFIX):
        return result[len(EXISTING_PREFIX):]
    return None


def normalize_mime_type(mime_type: str | None, filename: str) -> str:
    """
    Replace a generic octet-stream type with one inferred from the extension.

    Args:
        mime_type: Type reported by the source (may be None)
        filename: Original file name

    Returns:
        The reported type, or the inferred one for octet-stream
    """
    reported = (mime_type or OCTET_STREAM).lower()
    if reported != OCTET_STREAM:
        return reported

    lower = filename.lower()
    for extension, inferred in EXTENSION_MIME_TYPES.items():
        if lower.endswith(extension):
            return inferred
    return reported


def sanitize_filename(filename: str) -> str:
    """Replace everything but letters, digits, dot and dash with underscores."""
    return re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
