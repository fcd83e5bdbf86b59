"""Post state machine: active -> expired -> purged.

A sweep first soft-deletes posts older than the TTL, recounts the affected
authors, then hard-deletes expired posts past the purge age together with
their images. Every transition is a conditional statement on the current
state so two sweepers racing on the same rows produce one effective change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.exceptions import NotFound, StorageFailure
from app.models.media import MediaAsset
from app.models.post import Post, PostState, transition
from app.schemas.lifecycle import LifecycleStats, LifecycleSweepResult
from app.services import asset_reaper, post_counters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PurgeTarget:
    post_id: UUID
    author_id: UUID
    asset_ids: tuple[UUID, ...]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def expiry_cutoff(now: datetime) -> datetime:
    return now - timedelta(hours=max(1, int(settings.post_ttl_hours)))


def purge_cutoff(now: datetime) -> datetime:
    return now - timedelta(days=max(1, int(settings.post_purge_after_days)))


def _batch_limit() -> int:
    return max(1, int(settings.lifecycle_batch_limit or 500))


async def create_post(
    session: AsyncSession,
    *,
    author_id: UUID,
    content: str,
    category: str = "Ideas",
    asset_ids: list[UUID] | None = None,
    created_at: datetime | None = None,
) -> Post:
    created = created_at or _now()
    post = Post(
        author_id=author_id,
        content=content,
        category=category,
        state=PostState.active,
        created_at=created,
        expires_at=created + timedelta(hours=max(1, int(settings.post_ttl_hours))),
    )
    session.add(post)
    await session.flush()
    if asset_ids:
        await session.execute(
            update(MediaAsset)
            .where(MediaAsset.id.in_(asset_ids), MediaAsset.reaped_at.is_(None))
            .values(owner_post_id=post.id)
        )
    await session.commit()
    await post_counters.sync_author_post_counts(session, [author_id])
    return post


async def get_post_or_404(session: AsyncSession, post_id: UUID) -> Post:
    post = await session.scalar(
        select(Post)
        .options(selectinload(Post.assets))
        .where(Post.id == post_id)
        .execution_options(populate_existing=True)
    )
    if post is None:
        raise NotFound("Post not found")
    return post


async def expire_due_posts(session: AsyncSession, *, now: datetime, limit: int | None = None) -> tuple[int, set[UUID]]:
    """Soft-delete active posts whose age reached the TTL.

    Returns the number of rows actually moved and the set of touched authors.
    """
    target = transition(PostState.active, PostState.expired)
    cutoff = expiry_cutoff(now)
    batch = limit or _batch_limit()
    expired = 0
    authors: set[UUID] = set()
    while True:
        rows = (
            await session.execute(
                select(Post.id, Post.author_id)
                .where(Post.state == PostState.active, Post.created_at <= cutoff)
                .order_by(Post.created_at.asc())
                .limit(batch)
            )
        ).all()
        if not rows:
            break
        ids = [row.id for row in rows]
        result = await session.execute(
            update(Post)
            .where(Post.id.in_(ids), Post.state == PostState.active)
            .values(state=target, deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        expired += int(result.rowcount or 0)
        authors.update(row.author_id for row in rows)
        if len(rows) < batch:
            break
    return expired, authors


async def _purge(session: AsyncSession, target: _PurgeTarget, *, from_states: tuple[PostState, ...]) -> bool:
    for state in from_states:
        transition(state, PostState.purged)
    for asset_id in target.asset_ids:
        summary = await asset_reaper.reap_asset(session, asset_id, raise_on_failure=False, commit=False)
        if summary.outcome == asset_reaper.ReapOutcome.failed:
            # Leave the post in place; the next sweep retries the whole purge.
            await session.rollback()
            return False
    result = await session.execute(
        delete(Post)
        .where(Post.id == target.post_id, Post.state.in_(from_states))
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        await session.rollback()
        return False
    await session.commit()
    return True


async def purge_due_posts(session: AsyncSession, *, now: datetime, limit: int | None = None) -> int:
    """Hard-delete expired posts past the purge age and reap their images.

    Runs batch after batch until nothing qualifies. Posts whose purge failed
    are skipped for the rest of this sweep and retried on the next one.
    """
    cutoff = purge_cutoff(now)
    batch = limit or _batch_limit()
    skipped: set[UUID] = set()
    purged = 0
    while True:
        stmt = (
            select(Post)
            .options(selectinload(Post.assets))
            .where(Post.state == PostState.expired, Post.created_at <= cutoff)
            .order_by(Post.created_at.asc(), Post.id.asc())
            .limit(batch)
            .execution_options(populate_existing=True)
        )
        if skipped:
            stmt = stmt.where(Post.id.not_in(skipped))
        rows = (await session.execute(stmt)).scalars().all()
        if not rows:
            break
        targets = [
            _PurgeTarget(post_id=post.id, author_id=post.author_id, asset_ids=tuple(a.id for a in post.assets))
            for post in rows
        ]
        for target in targets:
            if await _purge(session, target, from_states=(PostState.expired,)):
                purged += 1
            else:
                skipped.add(target.post_id)
                logger.warning("post_purge_skipped", extra={"post_id": str(target.post_id)})
        if len(rows) < batch:
            break
    return purged


async def delete_post(session: AsyncSession, post: Post) -> int:
    """Explicit delete by the author: straight to purged, images included.

    Returns the number of images reaped.
    """
    transition(post.state, PostState.purged)
    target = _PurgeTarget(
        post_id=post.id,
        author_id=post.author_id,
        asset_ids=tuple(a.id for a in post.assets),
    )
    try:
        for asset_id in target.asset_ids:
            await asset_reaper.reap_asset(session, asset_id, raise_on_failure=True, commit=False)
    except StorageFailure:
        await session.rollback()
        raise
    result = await session.execute(
        delete(Post)
        .where(Post.id == target.post_id, Post.state.in_((PostState.active, PostState.expired)))
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        await session.rollback()
        raise NotFound("Post not found")
    await session.commit()
    await post_counters.sync_author_post_counts(session, [target.author_id])
    logger.info("post_deleted", extra={"post_id": str(target.post_id), "assets": len(target.asset_ids)})
    return len(target.asset_ids)


async def run_sweep(session: AsyncSession, *, now: datetime | None = None) -> LifecycleSweepResult:
    now = now or _now()
    soft_deleted, authors = await expire_due_posts(session, now=now)
    users_updated = await post_counters.sync_author_post_counts(session, authors)
    hard_deleted = await purge_due_posts(session, now=now)
    result = LifecycleSweepResult(
        soft_deleted=soft_deleted,
        hard_deleted=hard_deleted,
        users_updated=users_updated,
    )
    if soft_deleted or hard_deleted:
        logger.info("post_lifecycle_sweep_completed", extra=result.model_dump())
    return result


async def get_stats(session: AsyncSession, *, now: datetime | None = None) -> LifecycleStats:
    now = now or _now()
    window = timedelta(minutes=max(0, int(settings.lifecycle_expiring_soon_window_minutes)))

    async def _count(*criteria) -> int:
        return int(await session.scalar(select(func.count(Post.id)).where(*criteria)) or 0)

    return LifecycleStats(
        active_posts=await _count(Post.state == PostState.active),
        expired_posts=await _count(Post.state == PostState.expired),
        posts_nearing_expiry=await _count(
            Post.state == PostState.active, Post.expires_at > now, Post.expires_at <= now + window
        ),
        posts_eligible_for_purge=await _count(Post.state == PostState.expired, Post.created_at <= purge_cutoff(now)),
    )
