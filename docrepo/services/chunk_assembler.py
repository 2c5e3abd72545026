"""Concatenate stored chunks, in index order, into one readable stream."""

from __future__ import annotations

import io
import logging
from typing import BinaryIO

from docrepo.services.chunk_store import ChunkStore, ChunkStoreError
from docrepo.services.upload_sessions import UploadSession

logger = logging.getLogger(__name__)


class AssembledStream(io.RawIOBase):
    """Read-only stream over ``chunk-0 .. chunk-(n-1)``.

    Only one chunk file is open at a time and nothing is buffered beyond
    what the caller asks for, so memory use does not grow with file size.
    """

    def __init__(self, store: ChunkStore, upload_id: str, total_chunks: int) -> None:
        super().__init__()
        self._store = store
        self._upload_id = upload_id
        self._total_chunks = total_chunks
        self._index = 0
        self._current: BinaryIO | None = None
        self._bytes_read = 0

    @property
    def bytes_read(self) -> int:
        return self._bytes_read

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while self._index < self._total_chunks:
            if self._current is None:
                self._current = self._store.open_chunk(self._upload_id, self._index)
            count = self._current.readinto(buffer)
            if count:
                self._bytes_read += count
                return count
            self._current.close()
            self._current = None
            self._index += 1
        return 0

    def close(self) -> None:
        if self._current is not None:
            self._current.close()
            self._current = None
        super().close()


def open_assembled_stream(store: ChunkStore, session: UploadSession) -> AssembledStream:
    """Verify every chunk file is present and sized as declared, then open.

    Raises ChunkStoreError instead of producing a truncated object.
    """
    missing = store.missing_files(session.upload_id, range(session.total_chunks))
    if missing:
        logger.error(
            "chunked_upload_chunk_files_missing upload_id=%s missing=%s",
            session.upload_id,
            missing,
        )
        raise ChunkStoreError(f"Chunk files missing on disk: {missing}")

    total_size = sum(
        store.chunk_size_on_disk(session.upload_id, index)
        for index in range(session.total_chunks)
    )
    if total_size != session.file_size:
        logger.error(
            "chunked_upload_size_mismatch upload_id=%s expected=%d actual=%d",
            session.upload_id,
            session.file_size,
            total_size,
        )
        raise ChunkStoreError(
            f"Stored chunks total {total_size} bytes, expected {session.file_size}"
        )
    return AssembledStream(store, session.upload_id, session.total_chunks)
