"""Document metadata records."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy.orm import Session

from docrepo.models.document import Document
from docrepo.schemas.document import DocumentRead

logger = logging.getLogger(__name__)


class Documents:
    @staticmethod
    def create(
        db: Session,
        *,
        owner_id: str,
        owner_username: str,
        filename: str,
        content_type: str,
        size: int,
        storage_key: str,
        tags: Sequence[str] | None = None,
        description: str | None = None,
    ) -> Document:
        document = Document(
            filename=filename,
            original_filename=filename,
            content_type=content_type,
            size=size,
            storage_key=storage_key,
            owner_id=owner_id,
            owner_username=owner_username,
            tags=list(tags) if tags is not None else None,
            description=description,
        )
        db.add(document)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(document)
        logger.info(
            "document_created document_id=%s owner_id=%s key=%s",
            document.id,
            owner_id,
            storage_key,
        )
        return document

    @staticmethod
    def to_read_schema(document: Document) -> DocumentRead:
        return DocumentRead.model_validate(document)


documents = Documents()
