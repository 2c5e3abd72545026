"""Chunked upload session value and its state transitions.

An ``UploadSession`` is immutable. Every change goes through ``apply()``,
which validates an event against the current value and returns the next
value (or raises). The registry stores whatever ``apply()`` returns.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta


class UploadStatus(enum.Enum):
    initialized = "INITIALIZED"
    in_progress = "IN_PROGRESS"
    complete = "COMPLETE"
    expired = "EXPIRED"


@dataclass(frozen=True)
class ChunkReceived:
    chunk_index: int


@dataclass(frozen=True)
class AssemblyStarted:
    pass


@dataclass(frozen=True)
class AssemblyAborted:
    pass


@dataclass(frozen=True)
class Cancelled:
    """Session is about to be dropped (cancel or expiry eviction)."""


UploadEvent = ChunkReceived | AssemblyStarted | AssemblyAborted | Cancelled


def compute_total_chunks(file_size: int, chunk_size: int) -> int:
    if file_size <= 0:
        raise ValueError("file_size must be positive")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return (file_size + chunk_size - 1) // chunk_size


def new_upload_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class UploadSession:
    upload_id: str
    filename: str
    content_type: str
    file_size: int
    chunk_size: int
    total_chunks: int
    owner_id: str
    owner_username: str
    created_at: datetime
    expires_at: datetime
    tags: tuple[str, ...] | None = None
    description: str | None = None
    uploaded_chunks: frozenset[int] = field(default_factory=frozenset)
    assembling: bool = False

    @property
    def completed_chunks(self) -> int:
        return len(self.uploaded_chunks)

    @property
    def missing_chunks(self) -> frozenset[int]:
        return frozenset(range(self.total_chunks)) - self.uploaded_chunks

    @property
    def progress_percent(self) -> float:
        if self.total_chunks == 0:
            return 0.0
        return self.completed_chunks / self.total_chunks * 100

    @property
    def is_complete(self) -> bool:
        return self.completed_chunks == self.total_chunks

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) > self.expires_at

    def status(self, now: datetime | None = None) -> UploadStatus:
        if self.is_expired(now):
            return UploadStatus.expired
        if self.is_complete:
            return UploadStatus.complete
        if not self.uploaded_chunks:
            return UploadStatus.initialized
        return UploadStatus.in_progress

    def has_chunk_index(self, chunk_index: int) -> bool:
        return 0 <= chunk_index < self.total_chunks

    def expected_chunk_length(self, chunk_index: int) -> int:
        """Byte length a chunk must have; only the last chunk may be short."""
        if chunk_index == self.total_chunks - 1:
            return self.file_size - self.chunk_size * (self.total_chunks - 1)
        return self.chunk_size


def create_session(
    *,
    filename: str,
    content_type: str,
    file_size: int,
    chunk_size: int,
    owner_id: str,
    owner_username: str,
    ttl: timedelta,
    tags: list[str] | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> UploadSession:
    created_at = now or datetime.now(UTC)
    return UploadSession(
        upload_id=new_upload_id(),
        filename=filename,
        content_type=content_type,
        file_size=file_size,
        chunk_size=chunk_size,
        total_chunks=compute_total_chunks(file_size, chunk_size),
        owner_id=owner_id,
        owner_username=owner_username,
        created_at=created_at,
        expires_at=created_at + ttl,
        tags=tuple(tags) if tags is not None else None,
        description=description,
    )


class TransitionError(Exception):
    """An event is not valid for the session's current state."""

    def __init__(
        self, reason: str, message: str, missing_chunks: frozenset[int] | None = None
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.missing_chunks = missing_chunks or frozenset()


def apply(
    session: UploadSession, event: UploadEvent, now: datetime | None = None
) -> UploadSession:
    """Return the session that results from ``event``.

    Raises ``TransitionError`` with ``reason`` one of ``expired``,
    ``invalid_index``, ``assembling`` or ``incomplete``.
    """
    if isinstance(event, AssemblyAborted):
        return replace(session, assembling=False)

    # Expired sessions may still be dropped, unless a completion holds them.
    if isinstance(event, Cancelled):
        if session.assembling:
            raise TransitionError("assembling", "Upload is being completed")
        return session

    if session.is_expired(now):
        raise TransitionError("expired", f"Upload session expired: {session.upload_id}")

    if isinstance(event, ChunkReceived):
        if not session.has_chunk_index(event.chunk_index):
            raise TransitionError(
                "invalid_index",
                f"Invalid chunk index: {event.chunk_index} "
                f"(expected 0..{session.total_chunks - 1})",
            )
        if session.assembling:
            raise TransitionError("assembling", "Upload is being assembled")
        if event.chunk_index in session.uploaded_chunks:
            return session
        return replace(
            session, uploaded_chunks=session.uploaded_chunks | {event.chunk_index}
        )

    if isinstance(event, AssemblyStarted):
        if session.assembling:
            raise TransitionError("assembling", "Upload is already being completed")
        if not session.is_complete:
            raise TransitionError(
                "incomplete",
                f"Upload not complete. Missing chunks: {sorted(session.missing_chunks)}",
                session.missing_chunks,
            )
        return replace(session, assembling=True)

    raise TypeError(f"Unsupported upload event: {event!r}")
