from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from app.models.post import PostState


class PostAssetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    public_url: str
    width: int | None = None
    height: int | None = None


class PostRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    author_id: UUID
    content: str
    category: str
    state: PostState
    created_at: datetime
    expires_at: datetime
    deleted_at: datetime | None = None
    assets: list[PostAssetRead] = []


class FeedPage(BaseModel):
    items: list[PostRead]
    total: int
    page: int
    limit: int
    total_pages: int


class PostDeleteResponse(BaseModel):
    id: UUID
    state: PostState
    assets_reaped: int
