from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    filename: str
    original_filename: str
    content_type: str
    size: int
    owner_id: str
    owner_username: str
    tags: list[str] | None = None
    description: str | None = None
    created_at: datetime
    updated_at: datetime
