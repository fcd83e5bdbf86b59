import os
import time
from io import BytesIO
from pathlib import Path

import pytest

from app.services import asset_reaper
from app.services import assets as assets_service
from scripts import orphan_media

from conftest import image_bytes, media_files


class DummyUpload:
    def __init__(self, content: bytes, *, filename: str, content_type: str | None):
        self.file = BytesIO(content)
        self.filename = filename
        self.content_type = content_type


@pytest.mark.anyio
async def test_orphan_scan_deletes_only_unreferenced_files(
    session_factory, media_root: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(orphan_media, "SessionLocal", session_factory)
    async with session_factory() as session:
        kept = await assets_service.ingest_upload(
            session, DummyUpload(image_bytes(fmt="PNG"), filename="a.png", content_type="image/png")
        )
        reaped = await assets_service.ingest_upload(
            session, DummyUpload(image_bytes(fmt="PNG"), filename="b.png", content_type="image/png")
        )
        await asset_reaper.reap_asset(session, reaped.id)
    stale = media_root / "leftover_small.png"
    stale.write_bytes(b"stale")
    two_hours_ago = time.time() - 2 * 3600
    os.utime(stale, (two_hours_ago, two_hours_ago))

    await orphan_media.main(delete=True)

    assert "leftover_small.png" in capsys.readouterr().out
    assert media_files(media_root) == sorted(
        [f"{kept.id}.png", f"{kept.id}_small.png", f"{kept.id}_medium.png", f"{kept.id}_large.png"]
    )


@pytest.mark.anyio
async def test_orphan_scan_leaves_recent_and_temp_files(
    session_factory, media_root: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(orphan_media, "SessionLocal", session_factory)
    media_root.mkdir(parents=True, exist_ok=True)
    (media_root / "in_flight.png").write_bytes(b"being ingested")
    temp = media_root / ".in_flight_small.png.0123abcd.tmp"
    temp.write_bytes(b"partial")
    two_hours_ago = time.time() - 2 * 3600
    os.utime(temp, (two_hours_ago, two_hours_ago))

    await orphan_media.main(delete=True, grace_minutes=30)

    assert "No orphaned media files found." in capsys.readouterr().out
    assert media_files(media_root) == sorted([".in_flight_small.png.0123abcd.tmp", "in_flight.png"])
