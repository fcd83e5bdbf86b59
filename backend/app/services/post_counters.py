from __future__ import annotations

import logging
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.post import Post, PostState
from app.models.user import User

logger = logging.getLogger(__name__)


async def count_active_posts(session: AsyncSession, author_ids: list[UUID]) -> dict[UUID, int]:
    if not author_ids:
        return {}
    rows = await session.execute(
        select(Post.author_id, func.count(Post.id))
        .where(Post.author_id.in_(author_ids), Post.state == PostState.active)
        .group_by(Post.author_id)
    )
    return {author_id: int(count) for author_id, count in rows.all()}


async def sync_author_post_counts(session: AsyncSession, author_ids: Iterable[UUID]) -> int:
    """Overwrite ``posts_count`` for each author with a fresh count of active posts.

    Runs in its own commit after the state change it follows; if the process
    dies in between the counter stays stale until the next sweep recomputes it.
    """
    ids = sorted(set(author_ids), key=str)
    if not ids:
        return 0
    counts = await count_active_posts(session, ids)
    for author_id in ids:
        await session.execute(
            update(User).where(User.id == author_id).values(posts_count=counts.get(author_id, 0))
        )
    await session.commit()
    logger.debug("author_post_counts_synced", extra={"authors": len(ids)})
    return len(ids)
