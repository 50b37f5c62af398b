from pathlib import PurePosixPath
import logging

import filetype

from craftcfg.errors import (
    CONTENT_MISMATCH,
    DISALLOWED_CONTENT_TYPE,
    DISALLOWED_EXTENSION,
    INVALID_FILENAME,
    NO_FILE,
    OVERSIZED,
    UNVERIFIABLE_CONTENT,
    UploadRejected,
)

logger = logging.getLogger("craftcfg.validation")

ARCHIVE_EXTENSIONS: dict[str, str] = {
    ".zip": "application/zip",
}

TEXT_EXTENSIONS = {
    ".cfg",
    ".conf",
    ".json",
    ".toml",
    ".txt",
    ".yml",
    ".yaml",
    ".properties",
}

ALLOWED_EXTENSIONS = set(ARCHIVE_EXTENSIONS) | TEXT_EXTENSIONS

ALLOWED_CONTENT_TYPES = set(ARCHIVE_EXTENSIONS.values())

# Everything filetype reports as a container format, allowed or not.
ARCHIVE_CONTENT_TYPES = {
    "application/zip",
    "application/x-tar",
    "application/x-rar-compressed",
    "application/vnd.rar",
    "application/x-7z-compressed",
    "application/gzip",
    "application/x-bzip2",
    "application/x-xz",
    "application/zstd",
    "application/x-lzip",
    "application/x-compress",
    "application/vnd.ms-cab-compressed",
    "application/x-deb",
    "application/x-rpm",
    "application/epub+zip",
    "application/java-archive",
}

MAX_FILENAME_LENGTH = 255


def sanitize_filename(raw: str | None) -> str:
    """Strip path components from an uploaded filename."""
    if not raw:
        raise UploadRejected(400, NO_FILE, "No file provided")

    # Strip path components (defence against path-traversal)
    name = PurePosixPath(raw).name
    # Also handle Windows-style backslash paths
    name = name.split("\\")[-1]

    if not name or name in (".", ".."):
        raise UploadRejected(400, INVALID_FILENAME, "Invalid filename")

    if len(name) > MAX_FILENAME_LENGTH:
        raise UploadRejected(400, INVALID_FILENAME, "Filename too long")

    return name


def check_extension(filename: str) -> str:
    ext = PurePosixPath(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        allowed = ", ".join(sorted(ALLOWED_EXTENSIONS))
        raise UploadRejected(
            415,
            DISALLOWED_EXTENSION,
            f"File type '{ext or filename}' not allowed. Allowed types: {allowed}",
            extension=ext,
            allowed_extensions=sorted(ALLOWED_EXTENSIONS),
        )
    return ext


def check_size(size: int, max_size: int) -> None:
    if size > max_size:
        raise UploadRejected(
            413,
            OVERSIZED,
            f"File size exceeds {max_size // (1024 * 1024)}MB limit",
            max_size_bytes=max_size,
        )


def sniff_content_type(content: bytes) -> str | None:
    """Media type from magic bytes, or None for unrecognized (e.g. plain text)."""
    kind = filetype.guess(content)
    if kind is None:
        return None
    return kind.mime


def check_content(filename: str, ext: str, content: bytes) -> str | None:
    """
    Reconcile the sniffed media type with the declared extension.

    Returns the sniffed type (None for text formats the sniffer cannot
    classify) or raises UploadRejected.
    """
    sniffed = sniff_content_type(content)

    if sniffed is None:
        if ext in TEXT_EXTENSIONS:
            return None
        raise UploadRejected(
            415,
            UNVERIFIABLE_CONTENT,
            f"Could not verify the contents of '{filename}' as a {ext} file",
            extension=ext,
        )

    if sniffed in ARCHIVE_CONTENT_TYPES and ext not in ARCHIVE_EXTENSIONS:
        logger.warning("Archive disguised as %s: file=%s sniffed=%s", ext, filename, sniffed)
        raise UploadRejected(
            415,
            CONTENT_MISMATCH,
            f"File extension '{ext}' does not match its content ({sniffed})",
            extension=ext,
            content_type=sniffed,
        )

    expected = ARCHIVE_EXTENSIONS.get(ext)
    if expected is not None and sniffed != expected:
        logger.warning("Extension/content mismatch: file=%s ext=%s sniffed=%s", filename, ext, sniffed)
        raise UploadRejected(
            415,
            CONTENT_MISMATCH,
            f"File extension '{ext}' does not match its content ({sniffed})",
            extension=ext,
            content_type=sniffed,
        )

    if sniffed not in ALLOWED_CONTENT_TYPES:
        raise UploadRejected(
            415,
            DISALLOWED_CONTENT_TYPE,
            f"Content type '{sniffed}' is not allowed",
            extension=ext,
            content_type=sniffed,
        )

    return sniffed
