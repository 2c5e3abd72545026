import logging

from fastapi import Depends, FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from docrepo.api.chunked_uploads import router as chunked_uploads_router
from docrepo.api.deps import require_any_role
from docrepo.config import settings
from docrepo.errors import register_error_handlers
from docrepo.logging import configure_logging
from docrepo.observability import ObservabilityMiddleware
from docrepo.services.chunked_upload import chunked_uploads
from docrepo.services.object_storage import ensure_storage_bucket
from docrepo.services.upload_sweeper import upload_sweeper

app = FastAPI(title="docrepo API")
logger = logging.getLogger(__name__)

configure_logging()
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(
    chunked_uploads_router,
    dependencies=[Depends(require_any_role("admin", "editor"))],
)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _prepare_storage():
    try:
        ensure_storage_bucket()
    except Exception:
        logger.exception("Failed to ensure storage bucket during startup")
    chunked_uploads.chunk_store.ensure_root()


@app.on_event("startup")
async def _start_upload_sweeper():
    if settings.chunked_upload_sweep_enabled:
        await upload_sweeper.start()


@app.on_event("shutdown")
async def _stop_upload_sweeper():
    await upload_sweeper.stop()
