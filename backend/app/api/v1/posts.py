from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import get_current_user
from app.db.session import get_session
from app.models.post import PostState
from app.models.user import User, UserRole
from app.schemas.post import FeedPage, PostDeleteResponse, PostRead
from app.services import feed as feed_service
from app.services import post_lifecycle

router = APIRouter(prefix="/posts", tags=["posts"])


@router.get("/feed", response_model=FeedPage)
async def get_feed(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=feed_service.MAX_PAGE_SIZE),
    author_id: UUID | None = Query(default=None),
    category: str | None = Query(default=None, max_length=64),
    session: AsyncSession = Depends(get_session),
) -> FeedPage:
    items, total = await feed_service.list_active_posts(
        session, page=page, limit=limit, author_id=author_id, category=category
    )
    total_pages = (total + limit - 1) // limit if total else 0
    return FeedPage(
        items=[PostRead.model_validate(post) for post in items],
        total=total,
        page=page,
        limit=limit,
        total_pages=total_pages,
    )


@router.delete("/{post_id}", response_model=PostDeleteResponse)
async def delete_post(
    post_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> PostDeleteResponse:
    post = await post_lifecycle.get_post_or_404(session, post_id)
    if post.author_id != user.id and user.role != UserRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to delete this post")
    reaped = await post_lifecycle.delete_post(session, post)
    return PostDeleteResponse(id=post_id, state=PostState.purged, assets_reaped=reaped)
