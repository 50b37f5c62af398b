from datetime import UTC, datetime
from hashlib import sha256
import logging
import os

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import FileResponse

from craftcfg.alerts import INFECTED_UPLOAD, SCANNER_UNAVAILABLE as SCANNER_UNAVAILABLE_EVENT, maybe_send_alert
from craftcfg.auth import get_current_user, rate_limit_identity
from craftcfg.db import ensure_upload_indexes, get_db
from craftcfg.errors import (
    INFECTED,
    NO_FILE,
    RATE_LIMITED,
    SCANNER_UNAVAILABLE,
    ScannerUnavailableError,
    UploadRejected,
)
from craftcfg.logging_config import setup_logging
from craftcfg.models import StoredFile, UploadRecord
from craftcfg.rate_limit import MongoUploadRateLimiter, get_rate_limiter
from craftcfg.scanner import ScanVerdict, scan_file
from craftcfg.storage import (
    build_storage_name,
    delete_file,
    file_url,
    resolve_stored_path,
    write_file,
)
from craftcfg.validation import check_content, check_extension, check_size, sanitize_filename

logger = logging.getLogger("craftcfg")

app = FastAPI(title="craftcfg Upload API")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


SCANNER_ERROR_POLICIES = ("allow", "reject")


def _scanner_error_policy() -> str:
    """allow: log, alert and accept the file; reject: delete it and fail the upload."""
    value = os.getenv("SCANNER_ERROR_POLICY", "allow").strip().lower()
    if value not in SCANNER_ERROR_POLICIES:
        logger.error("Unknown SCANNER_ERROR_POLICY=%r, failing closed with 'reject'", value)
        return "reject"
    return value


MAX_UPLOAD_SIZE_BYTES = _env_int("MAX_UPLOAD_SIZE_BYTES", 10 * 1024 * 1024)
# Content-Length covers the whole multipart body, not just the file
MULTIPART_ENVELOPE_BYTES = 16 * 1024

SCANNER_ERROR_POLICY = _scanner_error_policy()

# Infected uploads only use up quota when this is set.
RATE_LIMIT_COUNT_REJECTED = _env_flag("RATE_LIMIT_COUNT_REJECTED")

DEFAULT_UPLOAD_LIST_LIMIT = _env_int("UPLOAD_LIST_LIMIT_DEFAULT", 25)
MAX_UPLOAD_LIST_LIMIT = _env_int("UPLOAD_LIST_LIMIT_MAX", 100)

upload_rate_limiter = get_rate_limiter()


async def enforce_upload_rate_limit(identity: str) -> None:
    retry_after = await upload_rate_limiter.retry_after(identity)
    if retry_after:
        logger.warning("Rate limit exceeded for %s (retry after %ss)", identity, retry_after)
        raise UploadRejected(
            429,
            RATE_LIMITED,
            f"Too many uploads, retry after {retry_after} seconds",
            headers={"Retry-After": str(retry_after)},
            retry_after=retry_after,
        )


async def _store_record(record: UploadRecord) -> str:
    try:
        await get_db().uploads.insert_one(record.model_dump())
        return "stored"
    except Exception:
        logger.exception("Failed to store upload record for %s", record.filename)
        return "unavailable"


@app.exception_handler(UploadRejected)
async def upload_rejected_handler(request: Request, exc: UploadRejected):
    logger.info(
        "Upload rejected: reason=%s status=%s",
        exc.reason, exc.status_code,
        extra={
            "reason": exc.reason,
            "status_code": exc.status_code,
            "identity": getattr(request.state, "identity", None),
        },
    )
    return await http_exception_handler(request, exc)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.on_event("startup")
async def startup():
    setup_logging()
    try:
        await ensure_upload_indexes()
    except Exception:
        # App should stay available even if DB indexes can't be ensured at startup.
        logger.exception("Failed to ensure MongoDB indexes on startup")
    if isinstance(upload_rate_limiter, MongoUploadRateLimiter):
        try:
            await upload_rate_limiter.ensure_indexes()
        except Exception:
            logger.exception("Failed to ensure rate limit indexes on startup")


@app.post("/upload")
async def upload(
    request: Request,
    file: UploadFile | None = File(None),
    user_id: str = Depends(get_current_user),
):
    client_ip = request.client.host if request.client else "unknown"
    identity = rate_limit_identity(user_id, request)
    request.state.identity = identity
    await enforce_upload_rate_limit(identity)

    if file is None:
        raise UploadRejected(400, NO_FILE, "No file provided")
    filename = sanitize_filename(file.filename)
    ext = check_extension(filename)

    # Early rejection based on Content-Length header (before reading body)
    cl = request.headers.get("content-length")
    if cl and cl.isdigit() and int(cl) > MAX_UPLOAD_SIZE_BYTES + MULTIPART_ENVELOPE_BYTES:
        check_size(int(cl), MAX_UPLOAD_SIZE_BYTES)

    # Read with a limit to avoid unbounded memory usage
    content = await file.read(MAX_UPLOAD_SIZE_BYTES + 1)
    check_size(len(content), MAX_UPLOAD_SIZE_BYTES)

    content_type = check_content(filename, ext, content)
    file_sha256 = sha256(content).hexdigest()

    storage_name = build_storage_name(filename)
    path = await write_file(storage_name, content)

    try:
        verdict = await scan_file(path)
    except ScannerUnavailableError as exc:
        verdict = ScanVerdict(infected=False, engine="none", detail=str(exc), scanner_unavailable=True)
    except Exception:
        await delete_file(path)
        raise

    scan_skipped = verdict.scanner_unavailable
    if scan_skipped:
        if SCANNER_ERROR_POLICY == "reject":
            await delete_file(path)
            logger.warning("Upload rejected: scanner unavailable file=%s detail=%s", filename, verdict.detail)
            raise UploadRejected(
                503,
                SCANNER_UNAVAILABLE,
                "The file could not be scanned for malware, please try again later",
            )
        logger.warning(
            "Scanner unavailable, accepting file=%s without ClamAV (engine=%s SCANNER_ERROR_POLICY=%s): %s",
            filename, verdict.engine, SCANNER_ERROR_POLICY, verdict.detail,
        )
        await maybe_send_alert(
            event=SCANNER_UNAVAILABLE_EVENT,
            filename=filename,
            sha256=file_sha256,
            scan_engine=verdict.engine,
            user_id=user_id,
            client_ip=client_ip,
        )

    if verdict.infected:
        await delete_file(path)
        logger.warning(
            "Upload rejected: infected file=%s engine=%s signatures=%s user=%s",
            filename, verdict.engine, verdict.signatures, user_id,
        )
        if RATE_LIMIT_COUNT_REJECTED:
            await upload_rate_limiter.record(identity)
        await _store_record(
            UploadRecord(
                user_id=user_id,
                filename=filename,
                file_size=len(content),
                sha256=file_sha256,
                extension=ext,
                content_type=content_type,
                status="rejected",
                reason=INFECTED,
                signatures=verdict.signatures,
                scan_engine=verdict.engine,
            )
        )
        await maybe_send_alert(
            event=INFECTED_UPLOAD,
            filename=filename,
            sha256=file_sha256,
            scan_engine=verdict.engine,
            signatures=verdict.signatures,
            user_id=user_id,
            client_ip=client_ip,
        )
        signatures = ", ".join(verdict.signatures) or "unknown signature"
        raise UploadRejected(
            422,
            INFECTED,
            f"File failed the security scan ({signatures})",
            signatures=verdict.signatures,
        )

    await upload_rate_limiter.record(identity)

    stored = StoredFile(
        original_filename=filename,
        storage_name=storage_name,
        file_url=file_url(storage_name),
        file_size=len(content),
        extension=ext,
        content_type=content_type,
        sha256=file_sha256,
        uploaded_at=datetime.now(UTC),
    )
    logger.info(
        "Upload accepted: file=%s stored_as=%s engine=%s skipped_scan=%s user=%s",
        filename, storage_name, verdict.engine, scan_skipped, user_id,
    )

    db_status = await _store_record(
        UploadRecord(
            created_at=stored.uploaded_at,
            user_id=user_id,
            filename=filename,
            storage_name=storage_name,
            file_url=stored.file_url,
            file_size=stored.file_size,
            sha256=file_sha256,
            extension=ext,
            content_type=content_type,
            scan_engine=verdict.engine,
            scan_skipped=scan_skipped,
        )
    )

    return {
        "file_url": stored.file_url,
        "filename": stored.original_filename,
        "file_size": stored.file_size,
        "uploaded_at": stored.uploaded_at.isoformat(),
        "storage_name": stored.storage_name,
        "sha256": stored.sha256,
        "content_type": stored.content_type,
        "scan_engine": verdict.engine,
        "scan_skipped": scan_skipped,
        "user_id": user_id,
        "db_status": db_status,
    }


@app.get("/uploads/configs/{storage_name}")
async def download_config(storage_name: str):
    path = resolve_stored_path(storage_name)
    if path is None or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type="application/octet-stream", filename=storage_name)


@app.get("/uploads")
async def list_uploads(limit: int = DEFAULT_UPLOAD_LIST_LIMIT, user_id: str | None = None):
    try:
        safe_limit = max(1, min(limit, MAX_UPLOAD_LIST_LIMIT))
        query = {"user_id": user_id} if user_id else {}
        db = get_db()
        cursor = db.uploads.find(query, {"_id": 0}).sort("_id", -1).limit(safe_limit)
        items = [item async for item in cursor]
        return {"items": items}
    except Exception:
        logger.exception("Failed to list uploads from database")
        raise HTTPException(status_code=503, detail="Database unavailable")
