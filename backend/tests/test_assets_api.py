import asyncio
from pathlib import Path
from typing import Dict
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.user import User
from app.services import post_lifecycle

from conftest import image_bytes, media_files


@pytest.fixture
def test_app() -> Dict[str, object]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


def create_user_token(session_factory, name: str) -> tuple[str, str]:
    async def create_and_token():
        async with session_factory() as session:
            user = User(email=f"{name}@example.com", username=name)
            session.add(user)
            await session.commit()
            return str(user.id), create_access_token(str(user.id))

    return asyncio.run(create_and_token())


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _upload(client: TestClient, token: str, *files: tuple[str, bytes, str], data: dict | None = None):
    return client.post(
        "/api/v1/assets",
        files=[("images", f) for f in files],
        data=data or {},
        headers=auth_headers(token),
    )


def test_upload_returns_images_with_thumbnails(test_app: Dict[str, object], media_root: Path) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    _user_id, token = create_user_token(test_app["session_factory"], "ana")

    res = _upload(client, token, ("beach.jpg", image_bytes(), "image/jpeg"), ("dog.png", image_bytes(fmt="PNG"), "image/png"))

    assert res.status_code == 201, res.text
    body = res.json()
    assert body["count"] == 2
    first = body["images"][0]
    assert first["originalName"] == "beach.jpg"
    assert first["mimeType"] == "image/jpeg"
    assert first["url"] == f"/media/{first['filename']}"
    assert set(first["thumbnails"]) == {"small", "medium", "large"}
    assert first["thumbnails"]["small"] == {"url": f"/media/{first['id']}_small.jpg", "width": 150, "height": 120}
    assert first["metadata"] == {"width": 1000, "height": 800, "format": "jpeg"}
    assert "uploadedAt" in first
    assert len(media_files(media_root)) == 8


def test_upload_requires_authentication(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = client.post("/api/v1/assets", files=[("images", ("a.jpg", image_bytes(), "image/jpeg"))])
    assert res.status_code == 401


def test_upload_rejects_invalid_images(
    test_app: Dict[str, object], media_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    _user_id, token = create_user_token(test_app["session_factory"], "ana")

    res = _upload(client, token, ("notes.txt", b"hello", "text/plain"))
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_asset"

    monkeypatch.setattr(settings, "max_images_per_upload", 1)
    res = _upload(client, token, ("a.jpg", image_bytes(), "image/jpeg"), ("b.jpg", image_bytes(), "image/jpeg"))
    assert res.status_code == 400
    assert media_files(media_root) == []


def test_upload_to_someone_elses_post_is_forbidden(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    owner_id, _owner_token = create_user_token(session_factory, "owner")
    _other_id, other_token = create_user_token(session_factory, "other")

    async def _create_post():
        async with session_factory() as session:
            post = await post_lifecycle.create_post(session, author_id=UUID(owner_id), content="mine")
            return str(post.id)

    post_id = asyncio.run(_create_post())

    res = _upload(client, other_token, ("a.jpg", image_bytes(), "image/jpeg"), data={"post_id": post_id})
    assert res.status_code == 403

    res = _upload(client, other_token, ("a.jpg", image_bytes(), "image/jpeg"), data={"post_id": str(uuid4())})
    assert res.status_code == 404


def test_metadata_and_resize(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    _user_id, token = create_user_token(test_app["session_factory"], "ana")
    asset_id = _upload(client, token, ("a.png", image_bytes(size=(640, 480), fmt="PNG"), "image/png")).json()["images"][0]["id"]

    meta = client.get(f"/api/v1/assets/{asset_id}/metadata")
    assert meta.status_code == 200, meta.text
    body = meta.json()
    assert (body["width"], body["height"], body["format"], body["mimeType"]) == (640, 480, "png", "image/png")
    assert {"createdAt", "modifiedAt", "hasProfile", "size"} <= set(body)

    resized = client.get(f"/api/v1/assets/{asset_id}/resize", params={"width": 64})
    assert resized.status_code == 200
    assert resized.headers["content-type"] == "image/png"
    assert resized.headers["cache-control"] == "public, max-age=86400"

    missing_dims = client.get(f"/api/v1/assets/{asset_id}/resize")
    assert missing_dims.status_code == 400
    assert missing_dims.json()["code"] == "invalid_request"

    assert client.get(f"/api/v1/assets/{asset_id}/resize", params={"width": 0}).status_code == 422
    assert client.get(f"/api/v1/assets/{uuid4()}/metadata").status_code == 404


def test_resize_of_a_corrupt_original_is_a_storage_failure(test_app: Dict[str, object], media_root: Path) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    _user_id, token = create_user_token(test_app["session_factory"], "ana")
    asset_id = _upload(client, token, ("a.png", image_bytes(fmt="PNG"), "image/png")).json()["images"][0]["id"]
    (media_root / f"{asset_id}.png").write_bytes(b"not an image any more")

    resp = client.get(f"/api/v1/assets/{asset_id}/resize", params={"width": 50})

    assert resp.status_code == 500
    assert resp.json()["code"] == "storage_failure"


def test_delete_is_idempotent_for_known_assets(test_app: Dict[str, object], media_root: Path) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    _user_id, token = create_user_token(test_app["session_factory"], "ana")
    asset_id = _upload(client, token, ("a.jpg", image_bytes(), "image/jpeg")).json()["images"][0]["id"]

    first = client.delete(f"/api/v1/assets/{asset_id}", headers=auth_headers(token))
    assert first.status_code == 200
    assert first.json()["outcome"] == "ok"
    assert media_files(media_root) == []

    second = client.delete(f"/api/v1/assets/{asset_id}", headers=auth_headers(token))
    assert second.status_code == 200
    assert second.json()["outcome"] == "missing_files"

    assert client.get(f"/api/v1/assets/{asset_id}/metadata").status_code == 404
    unknown = client.delete(f"/api/v1/assets/{uuid4()}", headers=auth_headers(token))
    assert unknown.status_code == 404
    assert unknown.json() == {"detail": "Image not found", "code": "not_found"}
