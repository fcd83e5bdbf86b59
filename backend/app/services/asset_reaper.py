from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from uuid import UUID

import anyio
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from app.core.exceptions import NotFound, StorageFailure
from app.models.media import MediaAsset, MediaAssetDerivative
from app.services import derivatives, storage

logger = logging.getLogger(__name__)


class ReapOutcome(str, enum.Enum):
    ok = "ok"
    missing_files = "missing_files"
    failed = "failed"


@dataclass
class ReapSummary:
    asset_id: UUID
    outcome: ReapOutcome = ReapOutcome.ok
    removed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def asset_storage_keys(asset: MediaAsset) -> list[str]:
    """Original plus every derivative key, known rows and configured profiles alike."""
    extension = Path(asset.storage_key).suffix.lower()
    keys: list[str] = [asset.storage_key]
    for row in asset.derivatives or []:
        if row.storage_key not in keys:
            keys.append(row.storage_key)
    for profile in derivatives.configured_profiles():
        key = derivatives.derivative_key(asset.id, profile.name, extension)
        if key not in keys:
            keys.append(key)
    return keys


def reap_files(asset_id: UUID, keys: list[str]) -> ReapSummary:
    summary = ReapSummary(asset_id=asset_id)
    for key in keys:
        try:
            removed = storage.remove_file(storage.path_for_key(key))
        except StorageFailure as exc:
            summary.errors[key] = exc.detail
            continue
        if removed:
            summary.removed.append(key)
        else:
            summary.missing.append(key)
    if summary.errors:
        summary.outcome = ReapOutcome.failed
    elif summary.missing:
        summary.outcome = ReapOutcome.missing_files
    return summary


async def reap_asset(
    session: AsyncSession,
    asset_id: UUID,
    *,
    raise_on_failure: bool = True,
    commit: bool = True,
) -> ReapSummary:
    """Delete an asset's original and derivatives, then tombstone its row.

    Files that are already gone count as success, so replaying a reap is a
    no-op. A hard I/O failure leaves the row untouched for a later retry and
    raises ``StorageFailure`` unless ``raise_on_failure`` is false.
    """
    asset = await session.scalar(
        select(MediaAsset).options(selectinload(MediaAsset.derivatives)).where(MediaAsset.id == asset_id)
    )
    if asset is None:
        raise NotFound("Image not found")

    keys = asset_storage_keys(asset)
    summary = await anyio.to_thread.run_sync(reap_files, asset.id, keys)

    if summary.outcome == ReapOutcome.failed:
        logger.warning(
            "asset_reap_failed",
            extra={"asset_id": str(asset_id), "errors": summary.errors},
        )
        if raise_on_failure:
            raise StorageFailure(f"Could not delete all files for asset {asset_id}")
        return summary

    if summary.missing and asset.reaped_at is None:
        logger.info("asset_reap_missing", extra={"asset_id": str(asset_id), "missing": summary.missing})

    if asset.reaped_at is None:
        asset.reaped_at = datetime.now(timezone.utc)
    asset.owner_post_id = None
    # Bulk delete: a concurrent reap may already have removed these rows.
    for row in list(asset.derivatives):
        session.expunge(row)
    set_committed_value(asset, "derivatives", [])
    await session.execute(delete(MediaAssetDerivative).where(MediaAssetDerivative.asset_id == asset.id))
    session.add(asset)
    if commit:
        await session.commit()
    return summary
