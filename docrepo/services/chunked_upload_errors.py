"""Typed failures raised by the chunked upload service."""

from __future__ import annotations

from collections.abc import Iterable


class ChunkedUploadError(Exception):
    """Base class for chunked upload failures."""

    status_code = 500
    code = "chunked_upload_error"

    def __init__(self, message: str, details: object | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class UploadNotFoundError(ChunkedUploadError):
    """Unknown upload id, or the session was already torn down."""

    status_code = 404
    code = "upload_not_found"

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"Upload session not found: {upload_id}")
        self.upload_id = upload_id


class UploadExpiredError(ChunkedUploadError):
    status_code = 410
    code = "upload_expired"

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"Upload session expired: {upload_id}")
        self.upload_id = upload_id


class InvalidChunkError(ChunkedUploadError):
    """Bad chunk index, chunk length, checksum or declared file size."""

    status_code = 400
    code = "invalid_argument"


class UploadIncompleteError(ChunkedUploadError):
    status_code = 400
    code = "upload_incomplete"

    def __init__(self, upload_id: str, missing_chunks: Iterable[int]) -> None:
        missing = sorted(missing_chunks)
        super().__init__(
            f"Upload not complete. Missing chunks: {missing}",
            details={"missing_chunks": missing},
        )
        self.upload_id = upload_id
        self.missing_chunks = frozenset(missing)


class UploadConflictError(ChunkedUploadError):
    """The session is being assembled by another completion request."""

    status_code = 409
    code = "upload_conflict"


class UploadStorageError(ChunkedUploadError):
    """Disk or object storage failure. Safe to retry the same call."""

    status_code = 500
    code = "storage_failure"
