"""Request and response bodies for the chunked upload protocol."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class ChunkedUploadInitRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str = Field(min_length=1, max_length=255)
    file_size: int = Field(gt=0)
    tags: list[str] | None = None
    description: str | None = Field(default=None, max_length=2000)

    @field_validator("filename", "content_type")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ChunkedUploadInitResponse(BaseModel):
    upload_id: str
    total_chunks: int
    chunk_size: int
    expires_at: datetime


class ChunkUploadResponse(BaseModel):
    chunk_index: int
    completed_chunks: int
    total_chunks: int
    uploaded_chunks: list[int]
    progress_percent: float


class ChunkedUploadStatusResponse(BaseModel):
    upload_id: str
    filename: str
    completed_chunks: int
    total_chunks: int
    uploaded_chunks: list[int]
    missing_chunks: list[int]
    progress_percent: float
    status: str
    created_at: datetime
    expires_at: datetime


class ChunkedUploadCompleteRequest(BaseModel):
    """Optional overrides applied to the document record on completion."""

    tags: list[str] | None = None
    description: str | None = Field(default=None, max_length=2000)
