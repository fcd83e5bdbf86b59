from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.exceptions import IllegalTransition
from app.db.base import Base


class PostState(str, enum.Enum):
    active = "active"
    expired = "expired"
    purged = "purged"


_ALLOWED_TRANSITIONS: dict[PostState, frozenset[PostState]] = {
    PostState.active: frozenset({PostState.expired, PostState.purged}),
    PostState.expired: frozenset({PostState.purged}),
    PostState.purged: frozenset(),
}


def can_transition(current: PostState, target: PostState) -> bool:
    return target in _ALLOWED_TRANSITIONS[PostState(current)]


def transition(current: PostState, target: PostState) -> PostState:
    """Return ``target`` when the move is legal, else raise ``IllegalTransition``.

    States only move forward: active -> expired -> purged, with active -> purged
    allowed for an explicit delete by the author.
    """
    current = PostState(current)
    target = PostState(target)
    if not can_transition(current, target):
        raise IllegalTransition(f"Cannot move post from {current.value} to {target.value}")
    return target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    author_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="Ideas")
    state: Mapped[PostState] = mapped_column(
        Enum(PostState), nullable=False, default=PostState.active, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    author: Mapped["User"] = relationship("User", back_populates="posts", lazy="raise_on_sql")
    assets: Mapped[list["MediaAsset"]] = relationship(
        "MediaAsset", back_populates="owner_post", lazy="selectin", passive_deletes=True
    )
