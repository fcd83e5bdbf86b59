from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.dependencies import get_current_user
from app.core.exceptions import NotFound
from app.db.session import get_session
from app.models.post import PostState
from app.models.user import User, UserRole
from app.schemas.media import AssetDeleteResponse, AssetMetadataRead, AssetUploadResponse
from app.services import asset_reaper, post_lifecycle
from app.services import assets as assets_service

router = APIRouter(prefix="/assets", tags=["assets"])

RESIZE_CACHE_CONTROL = "public, max-age=86400"


@router.post("", response_model=AssetUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_images(
    images: list[UploadFile] = File(...),
    post_id: UUID | None = Form(default=None),
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> AssetUploadResponse:
    if not images:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No images provided")
    if len(images) > settings.max_images_per_upload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.max_images_per_upload} images per upload",
        )
    if post_id is not None:
        post = await post_lifecycle.get_post_or_404(session, post_id)
        if post.author_id != user.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to attach images to this post")
        if post.state != PostState.active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Post is no longer active")

    ingested = await assets_service.ingest_batch(
        session,
        images,
        owner_post_id=post_id,
        uploaded_by_user_id=user.id,
    )
    items = [assets_service.asset_to_upload_read(asset) for asset in ingested]
    return AssetUploadResponse(images=items, count=len(items))


@router.get("/{asset_id}/metadata", response_model=AssetMetadataRead)
async def get_asset_metadata(
    asset_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> AssetMetadataRead:
    return await assets_service.read_metadata(session, asset_id)


@router.get("/{asset_id}/resize", response_class=StreamingResponse)
async def resize_asset(
    asset_id: UUID,
    width: int | None = Query(default=None, ge=1, le=4096),
    height: int | None = Query(default=None, ge=1, le=4096),
    quality: int | None = Query(default=None, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> StreamingResponse:
    data, mime_type = await assets_service.resize_on_demand(
        session, asset_id, width=width, height=height, quality=quality
    )
    return StreamingResponse(iter([data]), media_type=mime_type, headers={"Cache-Control": RESIZE_CACHE_CONTROL})


@router.delete("/{asset_id}", response_model=AssetDeleteResponse)
async def delete_asset(
    asset_id: UUID,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
) -> AssetDeleteResponse:
    asset = await assets_service.get_asset(session, asset_id)
    if asset is None:
        raise NotFound("Image not found")
    uploader = asset.uploaded_by_user_id
    if uploader is not None and uploader != user.id and user.role != UserRole.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to delete this image")
    summary = await asset_reaper.reap_asset(session, asset_id)
    return AssetDeleteResponse(
        id=summary.asset_id,
        outcome=summary.outcome.value,
        removed=len(summary.removed),
        missing=len(summary.missing),
    )
