from fastapi import HTTPException

NO_FILE = "no_file"
INVALID_FILENAME = "invalid_filename"
RATE_LIMITED = "rate_limited"
OVERSIZED = "oversized"
DISALLOWED_EXTENSION = "disallowed_extension"
CONTENT_MISMATCH = "content_mismatch"
UNVERIFIABLE_CONTENT = "unverifiable_content"
DISALLOWED_CONTENT_TYPE = "disallowed_content_type"
INFECTED = "infected"
SCANNER_UNAVAILABLE = "scanner_unavailable"


class UploadRejected(HTTPException):
    """A pipeline gate refused the upload.

    ``detail`` is rendered as ``{"reason": ..., "message": ..., **extra}`` so
    clients can branch on ``reason`` and show ``message`` as is.
    """

    def __init__(
        self,
        status_code: int,
        reason: str,
        message: str,
        headers: dict[str, str] | None = None,
        **extra,
    ):
        self.reason = reason
        self.message = message
        self.extra = extra
        super().__init__(
            status_code=status_code,
            detail={"reason": reason, "message": message, **extra},
            headers=headers,
        )


class ScannerUnavailableError(Exception):
    """The malware scanning engine could not produce a verdict."""
