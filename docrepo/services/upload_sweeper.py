"""Periodic removal of expired chunked upload sessions."""

from __future__ import annotations

import asyncio
import logging
import time

from docrepo.config import settings
from docrepo.metrics import observe_job
from docrepo.services.chunked_upload import ChunkedUploadService, chunked_uploads

logger = logging.getLogger(__name__)

SWEEP_TASK_NAME = "chunked_upload_sweep"


class UploadSweeper:
    """Runs ``ChunkedUploadService.sweep_expired`` on a fixed interval.

    The loop lives on the application's event loop; each sweep runs in a
    worker thread because it touches the disk. A failing sweep is logged
    and the loop keeps going.
    """

    def __init__(
        self,
        service: ChunkedUploadService | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.service = service or chunked_uploads
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.chunked_upload_sweep_interval_seconds
        )
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("upload_sweeper_started interval=%ss", self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("upload_sweeper_stopped")

    async def sweep_once(self) -> dict[str, int] | None:
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(self.service.sweep_expired)
        except Exception:
            observe_job(SWEEP_TASK_NAME, "error", time.monotonic() - started)
            logger.exception("upload_sweeper_failed")
            return None
        observe_job(SWEEP_TASK_NAME, "success", time.monotonic() - started)
        if any(result.values()):
            logger.info(
                "upload_sweeper_sweep expired=%d orphaned=%d failed=%d",
                result["expired"],
                result["orphaned"],
                result["failed"],
            )
        return result

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep_once()


upload_sweeper = UploadSweeper()
