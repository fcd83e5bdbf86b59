from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.post import Post, PostState

MAX_PAGE_SIZE = 50


async def list_active_posts(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    author_id: UUID | None = None,
    category: str | None = None,
) -> tuple[list[Post], int]:
    """Newest-first page of posts still visible in the feed."""
    page = max(1, int(page))
    limit = min(max(1, int(limit)), MAX_PAGE_SIZE)
    criteria = [Post.state == PostState.active]
    if author_id is not None:
        criteria.append(Post.author_id == author_id)
    if category:
        criteria.append(Post.category == category)

    total = int(await session.scalar(select(func.count(Post.id)).where(*criteria)) or 0)
    items = (
        await session.execute(
            select(Post)
            .options(selectinload(Post.assets))
            .where(*criteria)
            .order_by(Post.created_at.desc(), Post.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    return list(items), total
