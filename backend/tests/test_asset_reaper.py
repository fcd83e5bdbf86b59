import asyncio
from io import BytesIO
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.exceptions import NotFound, StorageFailure
from app.db.base import Base
from app.models.media import MediaAssetDerivative
from app.services import asset_reaper, storage
from app.services import assets as assets_service

from conftest import image_bytes, media_files


class DummyUpload:
    def __init__(self, content: bytes, *, filename: str, content_type: str | None):
        self.file = BytesIO(content)
        self.filename = filename
        self.content_type = content_type


async def _ingest(session):
    return await assets_service.ingest_upload(
        session, DummyUpload(image_bytes(fmt="PNG"), filename="a.png", content_type="image/png")
    )


@pytest.mark.anyio
async def test_reap_removes_every_file_and_is_idempotent(session_factory, media_root: Path) -> None:
    async with session_factory() as session:
        asset = await _ingest(session)
        assert len(media_files(media_root)) == 4

        first = await asset_reaper.reap_asset(session, asset.id)
        assert first.outcome == asset_reaper.ReapOutcome.ok
        assert len(first.removed) == 4
        assert media_files(media_root) == []

        second = await asset_reaper.reap_asset(session, asset.id)
        assert second.outcome == asset_reaper.ReapOutcome.missing_files
        assert second.removed == []

        reloaded = await assets_service.get_asset(session, asset.id)
        assert reloaded is not None and reloaded.reaped_at is not None
        with pytest.raises(NotFound):
            await assets_service.get_live_asset_or_404(session, asset.id)


@pytest.mark.anyio
async def test_reap_tolerates_files_already_missing(session_factory, media_root: Path) -> None:
    async with session_factory() as session:
        asset = await _ingest(session)
        (media_root / f"{asset.id}_medium.png").unlink()

        summary = await asset_reaper.reap_asset(session, asset.id)

        assert summary.outcome == asset_reaper.ReapOutcome.missing_files
        assert summary.missing == [f"{asset.id}_medium.png"]
        assert media_files(media_root) == []


@pytest.mark.anyio
async def test_reap_unknown_asset_is_not_found(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(NotFound):
            await asset_reaper.reap_asset(session, uuid4())


@pytest.mark.anyio
async def test_reap_io_failure_leaves_row_for_retry(
    session_factory, media_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    async with session_factory() as session:
        asset = await _ingest(session)
        real_remove = storage.remove_file

        def _flaky_remove(path):
            if path.name.endswith("_small.png"):
                raise StorageFailure("permission denied")
            return real_remove(path)

        monkeypatch.setattr(storage, "remove_file", _flaky_remove)

        with pytest.raises(StorageFailure):
            await asset_reaper.reap_asset(session, asset.id)
        summary = await asset_reaper.reap_asset(session, asset.id, raise_on_failure=False)
        assert summary.outcome == asset_reaper.ReapOutcome.failed

        reloaded = await assets_service.get_asset(session, asset.id)
        assert reloaded is not None and reloaded.reaped_at is None

        monkeypatch.setattr(storage, "remove_file", real_remove)
        await asset_reaper.reap_asset(session, asset.id)
        assert media_files(media_root) == []


@pytest.mark.anyio
@pytest.mark.filterwarnings("error::sqlalchemy.exc.SAWarning")
async def test_concurrent_reaps_of_one_asset_both_succeed(tmp_path: Path, media_root: Path) -> None:
    # Separate connections so the two reapers really interleave.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", future=True)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        async with factory() as session:
            asset = await _ingest(session)

        async def _reap():
            async with factory() as session:
                return await asset_reaper.reap_asset(session, asset.id)

        first, second = await asyncio.gather(_reap(), _reap())

        assert {first.outcome, second.outcome} <= {asset_reaper.ReapOutcome.ok, asset_reaper.ReapOutcome.missing_files}
        assert sorted(first.removed + second.removed) == sorted(
            [f"{asset.id}.png", f"{asset.id}_small.png", f"{asset.id}_medium.png", f"{asset.id}_large.png"]
        )
        assert media_files(media_root) == []
        async with factory() as session:
            reloaded = await assets_service.get_asset(session, asset.id)
            assert reloaded is not None and reloaded.reaped_at is not None
            rows = await session.scalar(
                select(func.count()).select_from(MediaAssetDerivative).where(MediaAssetDerivative.asset_id == asset.id)
            )
            assert rows == 0
    finally:
        await engine.dispose()
