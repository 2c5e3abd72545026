"""In-memory registry of live upload sessions."""

from __future__ import annotations

import threading
import zlib
from collections.abc import Callable, Iterator

from docrepo.services.upload_sessions import UploadSession

DEFAULT_STRIPES = 32


class SessionRegistry:
    """Concurrent ``upload_id -> UploadSession`` map.

    Entries are spread over lock stripes so that requests for unrelated
    uploads rarely contend. Sessions are immutable values; ``update`` swaps
    the stored value under the entry's stripe lock, so concurrent writers
    on the same upload never lose each other's changes.
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._maps: list[dict[str, UploadSession]] = [{} for _ in range(stripes)]

    def _index(self, upload_id: str) -> int:
        return zlib.crc32(upload_id.encode("utf-8")) % len(self._locks)

    def add(self, session: UploadSession) -> None:
        idx = self._index(session.upload_id)
        with self._locks[idx]:
            if session.upload_id in self._maps[idx]:
                raise KeyError(f"Upload session already registered: {session.upload_id}")
            self._maps[idx][session.upload_id] = session

    def get(self, upload_id: str) -> UploadSession | None:
        idx = self._index(upload_id)
        with self._locks[idx]:
            return self._maps[idx].get(upload_id)

    def update(
        self, upload_id: str, transition: Callable[[UploadSession], UploadSession]
    ) -> UploadSession | None:
        """Replace the stored session with ``transition(current)``.

        Returns the new session, or None when the upload is not registered.
        Exceptions raised by ``transition`` leave the entry untouched.
        """
        idx = self._index(upload_id)
        with self._locks[idx]:
            current = self._maps[idx].get(upload_id)
            if current is None:
                return None
            updated = transition(current)
            self._maps[idx][upload_id] = updated
            return updated

    def remove(
        self,
        upload_id: str,
        check: Callable[[UploadSession], object] | None = None,
    ) -> UploadSession | None:
        """Drop the entry and return it, or None when it was not registered.

        ``check`` runs on the current session under the stripe lock; if it
        raises, the entry is kept.
        """
        idx = self._index(upload_id)
        with self._locks[idx]:
            current = self._maps[idx].get(upload_id)
            if current is None:
                return None
            if check is not None:
                check(current)
            return self._maps[idx].pop(upload_id)

    def snapshot(self) -> list[UploadSession]:
        sessions: list[UploadSession] = []
        for lock, entries in zip(self._locks, self._maps):
            with lock:
                sessions.extend(entries.values())
        return sessions

    def __contains__(self, upload_id: object) -> bool:
        if not isinstance(upload_id, str):
            return False
        return self.get(upload_id) is not None

    def __len__(self) -> int:
        return len(self.snapshot())

    def __iter__(self) -> Iterator[UploadSession]:
        return iter(self.snapshot())
