"""On-disk scratch area holding uploaded chunks until assembly.

Layout: ``<root>/<upload_id>/chunk-<index>``. Each upload owns exactly one
directory, created at session init and removed with the session.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

SAFE_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$")
CHUNK_PREFIX = "chunk-"
COPY_BUFFER_SIZE = 1024 * 1024


class ChunkStoreError(Exception):
    """Disk failure while allocating, writing or reading chunks."""


class ChunkValidationError(ValueError):
    """Chunk bytes did not match the expected length or checksum."""


class PathTraversalError(ChunkStoreError):
    """Attempted path traversal detected."""


@dataclass(frozen=True)
class ChunkWriteResult:
    chunk_index: int
    size: int
    sha256: str


@dataclass(frozen=True)
class StagedChunk:
    upload_id: str
    chunk_index: int
    size: int
    sha256: str
    temp_path: Path
    final_path: Path


def chunk_filename(chunk_index: int) -> str:
    return f"{CHUNK_PREFIX}{chunk_index}"


class ChunkStore:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root.resolve()

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def upload_dir(self, upload_id: str) -> Path:
        if not SAFE_SEGMENT_RE.match(upload_id):
            raise PathTraversalError("Unsafe upload id")
        target = (self.root / upload_id).resolve()
        if target.parent != self.root:
            raise PathTraversalError(
                "Path traversal detected: target is outside chunk directory"
            )
        return target

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.upload_dir(upload_id) / chunk_filename(chunk_index)

    def allocate(self, upload_id: str) -> Path:
        """Create the directory for a new upload. Fails if it already exists."""
        target = self.upload_dir(upload_id)
        try:
            self.ensure_root()
            target.mkdir()
        except OSError as exc:
            raise ChunkStoreError(f"Failed to create upload directory: {upload_id}") from exc
        return target

    def exists(self, upload_id: str) -> bool:
        return self.upload_dir(upload_id).is_dir()

    def write_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        source: bytes | BinaryIO,
        expected_size: int | None = None,
        expected_sha256: str | None = None,
    ) -> ChunkWriteResult:
        """Durably store one chunk, replacing any earlier bytes for the index."""
        staged = self.stage_chunk(
            upload_id,
            chunk_index,
            source,
            expected_size=expected_size,
            expected_sha256=expected_sha256,
        )
        return self.commit_chunk(staged)

    def stage_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        source: bytes | BinaryIO,
        expected_size: int | None = None,
        expected_sha256: str | None = None,
    ) -> StagedChunk:
        """Write and validate a chunk under a temporary name.

        Bytes go to a temporary file in the upload directory and are
        fsynced. Nothing is visible under ``chunk-<index>`` until
        ``commit_chunk`` renames it; ``discard_chunk`` drops it instead.
        A chunk that fails validation is discarded here. The upload
        directory is never recreated, so a chunk racing a teardown fails
        instead of leaving an orphan directory behind.
        """
        upload_dir = self.upload_dir(upload_id)
        final_path = upload_dir / chunk_filename(chunk_index)
        temp_path = upload_dir / f".{chunk_filename(chunk_index)}.{uuid.uuid4().hex}.part"

        digest = hashlib.sha256()
        size = 0
        try:
            with open(temp_path, "xb") as handle:
                if isinstance(source, (bytes, bytearray, memoryview)):
                    data = bytes(source)
                    handle.write(data)
                    digest.update(data)
                    size = len(data)
                else:
                    for block in iter(lambda: source.read(COPY_BUFFER_SIZE), b""):
                        handle.write(block)
                        digest.update(block)
                        size += len(block)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            self._discard(temp_path)
            raise ChunkStoreError(
                f"Failed to save chunk {chunk_index} for upload {upload_id}"
            ) from exc

        checksum = digest.hexdigest()
        if expected_size is not None and size != expected_size:
            self._discard(temp_path)
            raise ChunkValidationError(
                f"Chunk {chunk_index} has {size} bytes, expected {expected_size}"
            )
        if expected_sha256 is not None and checksum != expected_sha256.strip().lower():
            self._discard(temp_path)
            raise ChunkValidationError(f"Checksum mismatch for chunk {chunk_index}")

        return StagedChunk(
            upload_id=upload_id,
            chunk_index=chunk_index,
            size=size,
            sha256=checksum,
            temp_path=temp_path,
            final_path=final_path,
        )

    def commit_chunk(self, staged: StagedChunk) -> ChunkWriteResult:
        try:
            os.replace(staged.temp_path, staged.final_path)
        except OSError as exc:
            self._discard(staged.temp_path)
            raise ChunkStoreError(
                f"Failed to save chunk {staged.chunk_index} for upload {staged.upload_id}"
            ) from exc
        return ChunkWriteResult(
            chunk_index=staged.chunk_index, size=staged.size, sha256=staged.sha256
        )

    def discard_chunk(self, staged: StagedChunk) -> None:
        self._discard(staged.temp_path)

    def missing_files(self, upload_id: str, chunk_indexes: Iterable[int]) -> list[int]:
        upload_dir = self.upload_dir(upload_id)
        return sorted(
            index
            for index in chunk_indexes
            if not (upload_dir / chunk_filename(index)).is_file()
        )

    def chunk_size_on_disk(self, upload_id: str, chunk_index: int) -> int:
        try:
            return self.chunk_path(upload_id, chunk_index).stat().st_size
        except OSError as exc:
            raise ChunkStoreError(
                f"Chunk {chunk_index} file not found for upload {upload_id}"
            ) from exc

    def open_chunk(self, upload_id: str, chunk_index: int) -> BinaryIO:
        try:
            return open(self.chunk_path(upload_id, chunk_index), "rb")
        except OSError as exc:
            raise ChunkStoreError(
                f"Chunk {chunk_index} file not found for upload {upload_id}"
            ) from exc

    def teardown(self, upload_id: str) -> bool:
        """Best-effort removal of an upload directory.

        Returns False (and logs) when something could not be deleted.
        """
        target = self.upload_dir(upload_id)
        if not target.exists():
            return True
        try:
            shutil.rmtree(target)
        except OSError as exc:
            logger.warning(
                "chunk_store_delete_failed upload_id=%s path=%s error=%s",
                upload_id,
                getattr(exc, "filename", None) or target,
                exc,
            )
            return False
        return True

    def upload_ids_on_disk(self) -> list[str]:
        root = self.root
        if not root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in root.iterdir()
            if entry.is_dir() and SAFE_SEGMENT_RE.match(entry.name)
        )

    def last_modified(self, upload_id: str) -> float | None:
        try:
            return self.upload_dir(upload_id).stat().st_mtime
        except OSError:
            return None

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("chunk_store_temp_cleanup_failed path=%s error=%s", path, exc)
