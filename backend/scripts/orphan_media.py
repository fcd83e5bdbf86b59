"""List (and optionally delete) files under the media root that no live asset references.

Leftovers come from crashes between writing files and committing the asset
row, or from a purge that was interrupted after the post row went away.
"""

import argparse
import asyncio
import time
from pathlib import Path

from sqlalchemy import select

from app.core.config import settings
from app.db.session import SessionLocal
from app.models.media import MediaAsset, MediaAssetDerivative
from app.services import storage


async def collect_references() -> set[str]:
    refs: set[str] = set()
    async with SessionLocal() as session:
        originals = (
            await session.execute(select(MediaAsset.storage_key).where(MediaAsset.reaped_at.is_(None)))
        ).scalars().all()
        derived = (
            await session.execute(
                select(MediaAssetDerivative.storage_key)
                .join(MediaAsset, MediaAsset.id == MediaAssetDerivative.asset_id)
                .where(MediaAsset.reaped_at.is_(None))
            )
        ).scalars().all()
    refs.update(key for key in [*originals, *derived] if key)
    return refs


def walk_media(grace_seconds: float = 0) -> set[str]:
    """Relative keys of files old enough to judge.

    Files modified within the grace period may belong to an ingest that has
    not committed its row yet. Atomic-write temp files are never reported.
    """
    root = Path(settings.media_root)
    existing: set[str] = set()
    if not root.exists():
        return existing
    cutoff = time.time() - max(0.0, grace_seconds)
    for path in root.rglob("*"):
        if not path.is_file() or path.name.endswith(".tmp"):
            continue
        if path.stat().st_mtime > cutoff:
            continue
        existing.add(path.relative_to(root).as_posix())
    return existing


async def main(delete: bool, grace_minutes: float = 60) -> None:
    referenced = await collect_references()
    orphans = walk_media(grace_minutes * 60) - referenced
    if not orphans:
        print("No orphaned media files found.")
        return
    print(f"Found {len(orphans)} orphaned files:")
    for key in sorted(orphans):
        print(f" - {key}")
        if delete:
            storage.remove_file(storage.path_for_key(key))
    if delete:
        print("Deleted orphaned files.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Scan for orphaned media files.")
    parser.add_argument("--delete", action="store_true", help="Delete orphaned files after listing")
    parser.add_argument(
        "--grace-minutes",
        type=float,
        default=60,
        help="Ignore files modified more recently than this (default: 60)",
    )
    args = parser.parse_args()
    asyncio.run(main(args.delete, args.grace_minutes))
