from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import anyio
from PIL import Image, UnidentifiedImageError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.exceptions import InvalidAsset, InvalidRequest, NotFound, PartialDerivativeFailure, StorageFailure
from app.models.media import MediaAsset, MediaAssetDerivative
from app.schemas.media import AssetImageMetadata, AssetMetadataRead, AssetUploadRead, DerivativeRead
from app.services import asset_reaper, derivatives, storage

logger = logging.getLogger(__name__)

_EXIF_ORIENTATION = 0x0112


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _read_upload(file: Any, max_bytes: int) -> bytes:
    # One byte over the limit is enough to reject without buffering everything.
    return file.file.read(max_bytes + 1)


def _probe_dimensions(path: Path) -> tuple[int, int]:
    with Image.open(path) as img:
        width, height = img.size
        return int(width), int(height)


def _discard_files(asset_id: UUID, keys: list[str]) -> None:
    for key in keys:
        try:
            path = storage.path_for_key(key)
        except InvalidAsset:
            continue
        storage.remove_quietly(path)
    logger.info("asset_ingest_rolled_back", extra={"asset_id": str(asset_id), "files": len(keys)})


def _all_keys_for(asset_id: UUID, original_key: str) -> list[str]:
    extension = Path(original_key).suffix
    keys = [original_key]
    for profile in derivatives.configured_profiles():
        keys.append(derivatives.derivative_key(asset_id, profile.name, extension))
    return keys


async def ingest_upload(
    session: AsyncSession,
    file: Any,
    *,
    owner_post_id: UUID | None = None,
    uploaded_by_user_id: UUID | None = None,
) -> MediaAsset:
    """Validate, store and render one uploaded image.

    Returns only once the original and every configured derivative exist and
    the asset row is committed. Any failure removes whatever was written.
    """
    max_bytes = int(settings.upload_max_bytes)
    content = await anyio.to_thread.run_sync(_read_upload, file, max_bytes)
    content_type = storage.validate_upload(content, content_type=getattr(file, "content_type", None), max_bytes=max_bytes)

    asset_id = uuid4()
    storage_key = f"{asset_id}{storage.extension_for_mime(content_type)}"
    original_path = storage.path_for_key(storage_key)
    await anyio.to_thread.run_sync(storage.write_file, original_path, content)

    try:
        width, height = await anyio.to_thread.run_sync(_probe_dimensions, original_path)
        rendered = await derivatives.generate_derivatives_async(asset_id, original_path)
    except PartialDerivativeFailure as exc:
        await anyio.to_thread.run_sync(_discard_files, asset_id, [storage_key, *exc.written])
        raise
    except (OSError, UnidentifiedImageError, StorageFailure) as exc:
        await anyio.to_thread.run_sync(_discard_files, asset_id, _all_keys_for(asset_id, storage_key))
        if isinstance(exc, StorageFailure):
            raise
        raise StorageFailure(f"Could not process image: {exc}") from exc

    asset = MediaAsset(
        id=asset_id,
        owner_post_id=owner_post_id,
        uploaded_by_user_id=uploaded_by_user_id,
        storage_key=storage_key,
        public_url=storage.public_url_for_key(storage_key),
        original_filename=Path(getattr(file, "filename", None) or "").name or None,
        mime_type=content_type,
        size_bytes=len(content),
        width=width,
        height=height,
        created_at=_now(),
    )
    asset.derivatives = [
        MediaAssetDerivative(
            profile=item.profile,
            storage_key=item.storage_key,
            public_url=item.public_url,
            width=item.width,
            height=item.height,
            size_bytes=item.size_bytes,
        )
        for item in rendered
    ]
    session.add(asset)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        await anyio.to_thread.run_sync(_discard_files, asset_id, _all_keys_for(asset_id, storage_key))
        raise
    logger.info(
        "asset_ingested",
        extra={"asset_id": str(asset_id), "mime_type": content_type, "derivatives": len(rendered)},
    )
    return asset


async def ingest_batch(
    session: AsyncSession,
    files: list[Any],
    *,
    owner_post_id: UUID | None = None,
    uploaded_by_user_id: UUID | None = None,
) -> list[MediaAsset]:
    """Ingest several uploads; if one fails the ones already stored are reaped."""
    ingested: list[MediaAsset] = []
    try:
        for file in files:
            ingested.append(
                await ingest_upload(
                    session,
                    file,
                    owner_post_id=owner_post_id,
                    uploaded_by_user_id=uploaded_by_user_id,
                )
            )
    except Exception:
        for asset in ingested:
            try:
                await asset_reaper.reap_asset(session, asset.id, raise_on_failure=False)
            except Exception as exc:
                logger.warning("asset_batch_cleanup_failed", extra={"asset_id": str(asset.id), "error": str(exc)})
        raise
    return ingested


def asset_format(asset: MediaAsset) -> str | None:
    mime = asset.mime_type or ""
    return mime.split("/", 1)[1] if "/" in mime else None


def asset_to_upload_read(asset: MediaAsset) -> AssetUploadRead:
    thumbnails = {
        row.profile: DerivativeRead(url=row.public_url, width=row.width, height=row.height)
        for row in sorted(asset.derivatives or [], key=lambda r: r.profile)
    }
    return AssetUploadRead(
        id=asset.id,
        url=asset.public_url,
        filename=asset.storage_key,
        original_name=asset.original_filename,
        mime_type=asset.mime_type,
        size=asset.size_bytes,
        thumbnails=thumbnails,
        metadata=AssetImageMetadata(width=asset.width, height=asset.height, format=asset_format(asset)),
        uploaded_at=asset.created_at,
    )


async def get_asset(session: AsyncSession, asset_id: UUID) -> MediaAsset | None:
    return await session.scalar(
        select(MediaAsset).options(selectinload(MediaAsset.derivatives)).where(MediaAsset.id == asset_id)
    )


async def get_live_asset_or_404(session: AsyncSession, asset_id: UUID) -> MediaAsset:
    asset = await get_asset(session, asset_id)
    if asset is None or asset.reaped_at is not None:
        raise NotFound("Image not found")
    return asset


def _original_path_or_404(asset: MediaAsset) -> Path:
    path = storage.path_for_key(asset.storage_key)
    if not path.is_file():
        raise NotFound("Image not found")
    return path


def _probe_metadata(path: Path) -> dict[str, Any]:
    stat = path.stat()
    try:
        with Image.open(path) as img:
            width, height = img.size
            image_format = img.format
            has_profile = bool(img.info.get("icc_profile"))
            orientation = img.getexif().get(_EXIF_ORIENTATION)
            dpi = img.info.get("dpi")
    except (UnidentifiedImageError, OSError) as exc:
        raise StorageFailure(f"Stored image is unreadable: {exc}") from exc
    density = None
    if dpi:
        density = int(round(float(dpi[0] if isinstance(dpi, tuple) else dpi)))
    return {
        "size": int(stat.st_size),
        "width": int(width),
        "height": int(height),
        "format": image_format.lower() if image_format else None,
        "mime_type": storage.mime_for_format(image_format),
        "has_profile": has_profile,
        "orientation": int(orientation) if orientation else None,
        "density": density,
        "created_at": datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
        "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    }


async def read_metadata(session: AsyncSession, asset_id: UUID) -> AssetMetadataRead:
    """Stat and probe the stored original on every call; nothing is cached."""
    asset = await get_live_asset_or_404(session, asset_id)
    path = _original_path_or_404(asset)
    probed = await anyio.to_thread.run_sync(_probe_metadata, path)
    return AssetMetadataRead(id=asset.id, filename=asset.storage_key, **probed)


def _render_on_demand(path: Path, *, width: int | None, height: int | None, quality: int) -> bytes:
    image_format = derivatives.format_for_extension(path.suffix)
    try:
        resized = derivatives.resize_image(path, width=width, height=height)
        return derivatives.encode_image(resized, image_format, quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise StorageFailure(f"Stored image is unreadable: {exc}") from exc


async def resize_on_demand(
    session: AsyncSession,
    asset_id: UUID,
    *,
    width: int | None,
    height: int | None,
    quality: int | None = None,
) -> tuple[bytes, str]:
    """Re-encode the original at an arbitrary size without persisting anything."""
    if not width and not height:
        raise InvalidRequest("Width or height parameter required")
    if (width is not None and width < 1) or (height is not None and height < 1):
        raise InvalidRequest("Width and height must be positive")
    q = settings.derivative_quality if quality is None else int(quality)
    if not 1 <= q <= 100:
        raise InvalidRequest("Quality must be between 1 and 100")

    asset = await get_live_asset_or_404(session, asset_id)
    path = _original_path_or_404(asset)
    data = await anyio.to_thread.run_sync(
        lambda: _render_on_demand(path, width=width, height=height, quality=q)
    )
    return data, asset.mime_type


async def regenerate_derivatives(
    session: AsyncSession,
    asset_id: UUID,
    *,
    profile_names: list[str] | None = None,
) -> MediaAsset:
    """Re-render persisted derivatives in place, overwriting existing files."""
    asset = await get_live_asset_or_404(session, asset_id)
    path = _original_path_or_404(asset)
    profiles = derivatives.configured_profiles()
    if profile_names:
        wanted = set(profile_names)
        unknown = wanted - {p.name for p in profiles}
        if unknown:
            raise InvalidRequest(f"Unknown profile(s): {', '.join(sorted(unknown))}")
        profiles = [p for p in profiles if p.name in wanted]

    rendered = await derivatives.generate_derivatives_async(asset.id, path, profiles=profiles)
    existing = {row.profile: row for row in asset.derivatives}
    for item in rendered:
        row = existing.get(item.profile)
        if row is None:
            row = MediaAssetDerivative(profile=item.profile)
            asset.derivatives.append(row)
        elif row.storage_key != item.storage_key:
            storage.remove_quietly(storage.path_for_key(row.storage_key))
        row.storage_key = item.storage_key
        row.public_url = item.public_url
        row.width = item.width
        row.height = item.height
        row.size_bytes = item.size_bytes
    session.add(asset)
    await session.commit()
    logger.info("asset_derivatives_regenerated", extra={"asset_id": str(asset.id), "profiles": len(rendered)})
    return asset
