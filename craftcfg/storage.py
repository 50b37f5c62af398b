from pathlib import Path
import logging
import os
import re
import secrets
import time

import aiofiles
import aiofiles.os

logger = logging.getLogger("craftcfg.storage")

UPLOAD_ROOT = Path(os.getenv("UPLOAD_ROOT", "uploads"))
UPLOAD_SUBDIR = "configs"
URL_PREFIX = f"/uploads/{UPLOAD_SUBDIR}"

RANDOM_BYTES = 8
# Most filesystems cap a single path component at 255 bytes
MAX_STORAGE_NAME_LENGTH = 255
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9.-]")
STORAGE_NAME_RE = re.compile(r"^\d+-[0-9a-f]{%d}-[A-Za-z0-9._-]+$" % (RANDOM_BYTES * 2))


def upload_dir() -> Path:
    return UPLOAD_ROOT / UPLOAD_SUBDIR


def _fit(sanitized: str, budget: int) -> str:
    """Shorten the stem so the name fits in budget characters, keeping the extension."""
    if len(sanitized) <= budget:
        return sanitized
    stem, dot, suffix = sanitized.rpartition(".")
    if not dot or not stem or len(suffix) + 2 > budget:
        return sanitized[:budget]
    return f"{stem[: budget - len(suffix) - 1]}.{suffix}"


def build_storage_name(original: str, now: float | None = None) -> str:
    """<epoch-ms>-<random hex>-<original with unsafe characters replaced>

    The result is ASCII and never longer than MAX_STORAGE_NAME_LENGTH.
    """
    timestamp = int((time.time() if now is None else now) * 1000)
    prefix = f"{timestamp}-{secrets.token_hex(RANDOM_BYTES)}-"
    sanitized = _UNSAFE_CHARS_RE.sub("_", original)
    return prefix + _fit(sanitized, MAX_STORAGE_NAME_LENGTH - len(prefix))


def file_url(storage_name: str) -> str:
    return f"{URL_PREFIX}/{storage_name}"


def resolve_stored_path(storage_name: str) -> Path | None:
    """Path for a generated name, or None if the name could not have come from us."""
    if not STORAGE_NAME_RE.match(storage_name) or storage_name.startswith("."):
        return None
    base = upload_dir().resolve()
    path = (base / storage_name).resolve()
    if path.parent != base:
        return None
    return path


async def write_file(storage_name: str, content: bytes) -> Path:
    directory = upload_dir()
    await aiofiles.os.makedirs(directory, exist_ok=True)
    path = directory / storage_name
    # "xb": never overwrite an existing upload
    async with aiofiles.open(path, "xb") as fh:
        await fh.write(content)
        await fh.flush()
    return path


async def delete_file(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        logger.warning("Stored file already gone: %s", path.name)
