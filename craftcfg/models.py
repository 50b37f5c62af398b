from datetime import UTC, datetime
from pydantic import BaseModel, Field


class StoredFile(BaseModel):
    original_filename: str
    storage_name: str
    file_url: str
    file_size: int = Field(ge=0)
    extension: str
    content_type: str | None = None
    sha256: str
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class UploadRecord(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    user_id: str = Field(default="anonymous")
    filename: str
    storage_name: str | None = None
    file_url: str | None = None
    file_size: int = Field(default=0, ge=0)
    sha256: str
    extension: str
    content_type: str | None = None
    status: str = Field(default="accepted")
    reason: str | None = None
    signatures: list[str] = Field(default_factory=list)
    scan_engine: str = Field(default="mock")
    scan_skipped: bool = Field(default=False)
