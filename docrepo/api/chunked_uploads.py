"""Resumable chunked document upload endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, File, Header, HTTPException, Response, UploadFile
from sqlalchemy.orm import Session

from docrepo.api.deps import get_current_user, get_db
from docrepo.schemas.chunked_upload import (
    ChunkedUploadCompleteRequest,
    ChunkedUploadInitRequest,
    ChunkedUploadInitResponse,
    ChunkedUploadStatusResponse,
    ChunkUploadResponse,
)
from docrepo.schemas.document import DocumentRead
from docrepo.services.chunked_upload import chunked_uploads
from docrepo.services.chunked_upload_errors import ChunkedUploadError

router = APIRouter(prefix="/documents/upload", tags=["chunked-uploads"])


def _http_error(exc: ChunkedUploadError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post("/init", response_model=ChunkedUploadInitResponse, status_code=201)
def init_upload(
    payload: ChunkedUploadInitRequest,
    current_user: dict = Depends(get_current_user),
):
    try:
        return chunked_uploads.init_upload(
            payload,
            owner_id=current_user["owner_id"],
            owner_username=current_user["owner_username"],
        )
    except ChunkedUploadError as exc:
        raise _http_error(exc) from exc


@router.post("/{upload_id}/chunk/{chunk_index}", response_model=ChunkUploadResponse)
def upload_chunk(
    upload_id: str,
    chunk_index: int,
    chunk: UploadFile = File(...),
    x_chunk_checksum: str | None = Header(default=None),
):
    try:
        return chunked_uploads.upload_chunk(
            upload_id, chunk_index, chunk.file, checksum=x_chunk_checksum
        )
    except ChunkedUploadError as exc:
        raise _http_error(exc) from exc


@router.get("/{upload_id}/status", response_model=ChunkedUploadStatusResponse)
def get_upload_status(upload_id: str):
    try:
        return chunked_uploads.get_status(upload_id)
    except ChunkedUploadError as exc:
        raise _http_error(exc) from exc


@router.post("/{upload_id}/complete", response_model=DocumentRead, status_code=201)
def complete_upload(
    upload_id: str,
    payload: ChunkedUploadCompleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
):
    try:
        return chunked_uploads.complete_upload(db, upload_id, payload)
    except ChunkedUploadError as exc:
        raise _http_error(exc) from exc


@router.delete("/{upload_id}", status_code=204)
def cancel_upload(upload_id: str):
    try:
        chunked_uploads.cancel_upload(upload_id)
    except ChunkedUploadError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)
