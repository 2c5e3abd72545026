"""Resumable chunked uploads.

A client declares a file at init, uploads fixed-size chunks in any order
(and in parallel), polls status, and finally completes. Completion streams
the chunks, in index order, into object storage and records the document.

Session state lives in memory (``SessionRegistry``) and chunk bytes on
local disk (``ChunkStore``); both are created together at init and torn
down together on completion, cancellation or expiry. Sessions do not
survive a restart; clients start over in that case.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import BinaryIO, NoReturn

from sqlalchemy.orm import Session

from docrepo.config import settings
from docrepo.metrics import UPLOAD_ASSEMBLY_BYTES, record_chunk, record_session_event
from docrepo.schemas.chunked_upload import (
    ChunkedUploadCompleteRequest,
    ChunkedUploadInitRequest,
    ChunkedUploadInitResponse,
    ChunkedUploadStatusResponse,
    ChunkUploadResponse,
)
from docrepo.schemas.document import DocumentRead
from docrepo.services.chunk_assembler import open_assembled_stream
from docrepo.services.chunk_store import ChunkStore, ChunkStoreError, ChunkValidationError
from docrepo.services.chunked_upload_errors import (
    InvalidChunkError,
    UploadConflictError,
    UploadExpiredError,
    UploadIncompleteError,
    UploadNotFoundError,
    UploadStorageError,
)
from docrepo.services.documents import Documents, documents
from docrepo.services.object_storage import ObjectStorageError, StorageService, get_s3_storage
from docrepo.services.session_registry import SessionRegistry
from docrepo.services.upload_sessions import (
    AssemblyAborted,
    AssemblyStarted,
    Cancelled,
    ChunkReceived,
    TransitionError,
    UploadSession,
    apply,
    create_session,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChunkedUploadService:
    def __init__(
        self,
        *,
        chunk_store: ChunkStore | None = None,
        registry: SessionRegistry | None = None,
        storage: StorageService | None = None,
        metadata: Documents | None = None,
        chunk_size: int | None = None,
        session_ttl: timedelta | None = None,
        max_file_size: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.chunk_store = chunk_store or ChunkStore(settings.chunked_upload_temp_dir)
        self.registry = registry or SessionRegistry()
        self.storage = storage
        self.metadata = metadata or documents
        self.chunk_size = chunk_size or settings.chunked_upload_chunk_size
        self.session_ttl = session_ttl or timedelta(
            hours=settings.chunked_upload_session_ttl_hours
        )
        self.max_file_size = max_file_size or settings.chunked_upload_max_file_size
        self._clock = clock or _utcnow

    def _storage_client(self) -> StorageService:
        if self.storage is None:
            self.storage = get_s3_storage()
        return self.storage

    def now(self) -> datetime:
        return self._clock()

    # -- operations ---------------------------------------------------------

    def init_upload(
        self,
        payload: ChunkedUploadInitRequest,
        owner_id: str,
        owner_username: str,
    ) -> ChunkedUploadInitResponse:
        if payload.file_size <= 0:
            raise InvalidChunkError("File size must be positive")
        if payload.file_size > self.max_file_size:
            raise InvalidChunkError(
                f"File too large ({payload.file_size} bytes). "
                f"Maximum size: {self.max_file_size} bytes"
            )

        session = create_session(
            filename=payload.filename,
            content_type=payload.content_type,
            file_size=payload.file_size,
            chunk_size=self.chunk_size,
            owner_id=owner_id,
            owner_username=owner_username,
            ttl=self.session_ttl,
            tags=payload.tags,
            description=payload.description,
            now=self.now(),
        )

        # Directory first: a session is never visible without its chunk area.
        try:
            self.chunk_store.allocate(session.upload_id)
        except ChunkStoreError as exc:
            logger.error(
                "chunked_upload_init_failed upload_id=%s error=%s", session.upload_id, exc
            )
            raise UploadStorageError("Failed to create upload directory") from exc
        try:
            self.registry.add(session)
        except KeyError as exc:
            self.chunk_store.teardown(session.upload_id)
            raise UploadStorageError("Upload id collision, retry the request") from exc

        record_session_event("initialized")
        logger.info(
            "chunked_upload_init upload_id=%s filename=%s size=%d total_chunks=%d owner=%s",
            session.upload_id,
            session.filename,
            session.file_size,
            session.total_chunks,
            owner_username,
        )
        return ChunkedUploadInitResponse(
            upload_id=session.upload_id,
            total_chunks=session.total_chunks,
            chunk_size=session.chunk_size,
            expires_at=session.expires_at,
        )

    def upload_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        data: bytes | BinaryIO,
        checksum: str | None = None,
    ) -> ChunkUploadResponse:
        session = self._live_session(upload_id)
        if not session.has_chunk_index(chunk_index):
            record_chunk("rejected")
            raise InvalidChunkError(
                f"Invalid chunk index: {chunk_index} "
                f"(expected 0..{session.total_chunks - 1})"
            )
        if session.assembling:
            raise UploadConflictError("Upload is being assembled; chunks are closed")

        try:
            staged = self.chunk_store.stage_chunk(
                upload_id,
                chunk_index,
                data,
                expected_size=session.expected_chunk_length(chunk_index),
                expected_sha256=checksum,
            )
        except ChunkValidationError as exc:
            record_chunk("rejected")
            raise InvalidChunkError(str(exc)) from exc
        except ChunkStoreError as exc:
            if self.registry.get(upload_id) is None:
                raise UploadNotFoundError(upload_id) from exc
            self._chunk_write_failed(upload_id, chunk_index, exc)

        # The rename and the mark happen under the session's lock, so a
        # completion claim either sees the new bytes recorded or rejects them
        # while the previous file stays in place.
        now = self.now()

        def _store(current: UploadSession) -> UploadSession:
            updated = apply(current, ChunkReceived(chunk_index), now)
            self.chunk_store.commit_chunk(staged)
            return updated

        try:
            updated = self.registry.update(upload_id, _store)
        except TransitionError as exc:
            self.chunk_store.discard_chunk(staged)
            self._raise_for_transition(upload_id, exc)
        except ChunkStoreError as exc:
            self._chunk_write_failed(upload_id, chunk_index, exc)
        if updated is None:
            self.chunk_store.discard_chunk(staged)
            raise UploadNotFoundError(upload_id)

        record_chunk("stored")
        logger.debug(
            "chunked_upload_chunk upload_id=%s chunk=%d size=%d progress=%.1f",
            upload_id,
            chunk_index,
            staged.size,
            updated.progress_percent,
        )
        return ChunkUploadResponse(
            chunk_index=chunk_index,
            completed_chunks=updated.completed_chunks,
            total_chunks=updated.total_chunks,
            uploaded_chunks=sorted(updated.uploaded_chunks),
            progress_percent=updated.progress_percent,
        )

    def get_status(self, upload_id: str) -> ChunkedUploadStatusResponse:
        """Read-only view; reports EXPIRED instead of evicting."""
        session = self.registry.get(upload_id)
        if session is None:
            raise UploadNotFoundError(upload_id)
        return ChunkedUploadStatusResponse(
            upload_id=session.upload_id,
            filename=session.filename,
            completed_chunks=session.completed_chunks,
            total_chunks=session.total_chunks,
            uploaded_chunks=sorted(session.uploaded_chunks),
            missing_chunks=sorted(session.missing_chunks),
            progress_percent=session.progress_percent,
            status=session.status(self.now()).value,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )

    def complete_upload(
        self,
        db: Session,
        upload_id: str,
        payload: ChunkedUploadCompleteRequest | None = None,
    ) -> DocumentRead:
        self._live_session(upload_id)
        now = self.now()
        try:
            session = self.registry.update(
                upload_id, lambda current: apply(current, AssemblyStarted(), now)
            )
        except TransitionError as exc:
            self._raise_for_transition(upload_id, exc)
        if session is None:
            raise UploadNotFoundError(upload_id)

        logger.info(
            "chunked_upload_complete_started upload_id=%s total_chunks=%d size=%d",
            upload_id,
            session.total_chunks,
            session.file_size,
        )
        try:
            storage_key = self._assemble_and_store(session)
        except (ChunkStoreError, ObjectStorageError) as exc:
            self._release(upload_id)
            logger.error(
                "chunked_upload_complete_failed upload_id=%s error=%s", upload_id, exc
            )
            raise UploadStorageError("Failed to complete upload") from exc
        except Exception:
            self._release(upload_id)
            raise

        tags = session.tags
        description = session.description
        if payload is not None:
            if payload.tags is not None:
                tags = tuple(payload.tags)
            if payload.description is not None:
                description = payload.description

        # A claimed session is never dropped by cancel or expiry; stop if it
        # is gone anyway rather than record a document nobody is waiting for.
        if upload_id not in self.registry:
            self.chunk_store.teardown(upload_id)
            logger.error(
                "chunked_upload_orphaned_object upload_id=%s storage_key=%s error=%s",
                upload_id,
                storage_key,
                "session removed during assembly",
            )
            raise UploadNotFoundError(upload_id)

        try:
            document = self.metadata.create(
                db,
                owner_id=session.owner_id,
                owner_username=session.owner_username,
                filename=session.filename,
                content_type=session.content_type,
                size=session.file_size,
                storage_key=storage_key,
                tags=tags,
                description=description,
            )
        except Exception as exc:
            logger.error(
                "chunked_upload_orphaned_object upload_id=%s storage_key=%s error=%s",
                upload_id,
                storage_key,
                exc,
            )
            raise UploadStorageError("Failed to record document metadata") from exc
        finally:
            self._teardown(upload_id)

        record_session_event("completed")
        logger.info(
            "chunked_upload_completed upload_id=%s document_id=%s key=%s",
            upload_id,
            document.id,
            storage_key,
        )
        return self.metadata.to_read_schema(document)

    def cancel_upload(self, upload_id: str) -> None:
        """Drop a session and its chunks; Conflict while a completion holds it."""
        if self._remove_unclaimed(upload_id) is None:
            raise UploadNotFoundError(upload_id)
        self.chunk_store.teardown(upload_id)
        record_session_event("cancelled")
        logger.info("chunked_upload_cancelled upload_id=%s", upload_id)

    def sweep_expired(self) -> dict[str, int]:
        """Evict expired sessions and stale chunk directories.

        Sessions that a completion is currently assembling are left to it.
        Directories with no live session (left from a previous process) are
        removed once they are older than the session TTL.
        """
        now = self.now()
        expired = 0
        failed = 0
        for session in self.registry.snapshot():
            if session.assembling or not session.is_expired(now):
                continue
            try:
                if self._remove_unclaimed(session.upload_id) is None:
                    continue
            except UploadConflictError:
                continue
            expired += 1
            record_session_event("expired")
            if not self.chunk_store.teardown(session.upload_id):
                failed += 1
            logger.info("chunked_upload_expired upload_id=%s", session.upload_id)

        orphaned = 0
        cutoff = now.timestamp() - self.session_ttl.total_seconds()
        for upload_id in self.chunk_store.upload_ids_on_disk():
            if upload_id in self.registry:
                continue
            modified = self.chunk_store.last_modified(upload_id)
            if modified is None or modified > cutoff:
                continue
            orphaned += 1
            if not self.chunk_store.teardown(upload_id):
                failed += 1
            logger.info("chunked_upload_orphan_dir_removed upload_id=%s", upload_id)

        return {"expired": expired, "orphaned": orphaned, "failed": failed}

    # -- helpers ------------------------------------------------------------

    def _live_session(self, upload_id: str) -> UploadSession:
        session = self.registry.get(upload_id)
        if session is None:
            raise UploadNotFoundError(upload_id)
        if session.is_expired(self.now()):
            self._expire(upload_id)
            raise UploadExpiredError(upload_id)
        return session

    def _assemble_and_store(self, session: UploadSession) -> str:
        started = time.monotonic()
        with open_assembled_stream(self.chunk_store, session) as stream:
            storage_key = self._storage_client().put(
                stream, session.content_type, session.file_size, session.filename
            )
        UPLOAD_ASSEMBLY_BYTES.observe(session.file_size)
        logger.info(
            "chunked_upload_stored upload_id=%s key=%s size=%d duration=%.2fs",
            session.upload_id,
            storage_key,
            session.file_size,
            time.monotonic() - started,
        )
        return storage_key

    def _raise_for_transition(self, upload_id: str, exc: TransitionError) -> NoReturn:
        if exc.reason == "expired":
            self._expire(upload_id)
            raise UploadExpiredError(upload_id) from exc
        if exc.reason == "invalid_index":
            raise InvalidChunkError(str(exc)) from exc
        if exc.reason == "incomplete":
            raise UploadIncompleteError(upload_id, exc.missing_chunks) from exc
        if exc.reason == "assembling":
            raise UploadConflictError(str(exc)) from exc
        raise exc

    def _release(self, upload_id: str) -> None:
        self.registry.update(upload_id, lambda current: apply(current, AssemblyAborted()))

    def _remove_unclaimed(self, upload_id: str) -> UploadSession | None:
        try:
            return self.registry.remove(
                upload_id, check=lambda current: apply(current, Cancelled())
            )
        except TransitionError as exc:
            raise UploadConflictError(str(exc)) from exc

    def _chunk_write_failed(
        self, upload_id: str, chunk_index: int, exc: ChunkStoreError
    ) -> NoReturn:
        record_chunk("failed")
        logger.error(
            "chunked_upload_chunk_write_failed upload_id=%s chunk=%d error=%s",
            upload_id,
            chunk_index,
            exc,
        )
        raise UploadStorageError("Failed to save chunk") from exc

    def _expire(self, upload_id: str) -> None:
        if self._remove_unclaimed(upload_id) is not None:
            record_session_event("expired")
            logger.info("chunked_upload_expired upload_id=%s", upload_id)
        self.chunk_store.teardown(upload_id)

    def _teardown(self, upload_id: str) -> None:
        self.registry.remove(upload_id)
        self.chunk_store.teardown(upload_id)


chunked_uploads = ChunkedUploadService()
