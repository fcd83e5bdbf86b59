import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_session
from app.main import app
from app.models.user import User, UserRole
from app.services import post_lifecycle, post_lifecycle_scheduler


@pytest.fixture
def test_app(monkeypatch: pytest.MonkeyPatch) -> Dict[str, object]:
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
    monkeypatch.setattr(post_lifecycle_scheduler, "SessionLocal", SessionLocal)
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def create_user(session_factory, name: str, role: UserRole = UserRole.member) -> tuple[UUID, str]:
    async def _create():
        async with session_factory() as session:
            user = User(email=f"{name}@example.com", username=name, role=role)
            session.add(user)
            await session.commit()
            return user.id

    user_id = asyncio.run(_create())
    return user_id, create_access_token(str(user_id))


def create_post(session_factory, author_id: UUID, *, age: timedelta = timedelta(0), category: str = "Ideas") -> str:
    async def _create():
        async with session_factory() as session:
            post = await post_lifecycle.create_post(
                session,
                author_id=author_id,
                content="hello",
                category=category,
                created_at=datetime.now(timezone.utc) - age,
            )
            return str(post.id)

    return asyncio.run(_create())


def posts_count(session_factory, user_id: UUID) -> int:
    async def _read():
        async with session_factory() as session:
            return await session.scalar(select(User.posts_count).where(User.id == user_id))

    return asyncio.run(_read())


def test_feed_lists_only_active_posts_newest_first(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    author_id, _token = create_user(session_factory, "ana")
    older = create_post(session_factory, author_id, age=timedelta(hours=2), category="Tech")
    newer = create_post(session_factory, author_id, age=timedelta(minutes=5))
    create_post(session_factory, author_id, age=timedelta(days=2))
    _admin_id, admin_token = create_user(session_factory, "root", UserRole.admin)

    assert client.post("/api/v1/admin/lifecycle/run", headers=auth_headers(admin_token)).status_code == 200

    res = client.get("/api/v1/posts/feed", params={"limit": 10})
    assert res.status_code == 200, res.text
    body = res.json()
    assert [item["id"] for item in body["items"]] == [newer, older]
    assert (body["total"], body["page"], body["total_pages"]) == (2, 1, 1)

    tech = client.get("/api/v1/posts/feed", params={"category": "Tech"}).json()
    assert [item["id"] for item in tech["items"]] == [older]
    assert client.get("/api/v1/posts/feed", params={"limit": 500}).status_code == 422


def test_delete_post_checks_ownership_and_is_final(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    author_id, author_token = create_user(session_factory, "ana")
    _other_id, other_token = create_user(session_factory, "bob")
    post_id = create_post(session_factory, author_id)
    assert posts_count(session_factory, author_id) == 1

    assert client.delete(f"/api/v1/posts/{post_id}", headers=auth_headers(other_token)).status_code == 403

    res = client.delete(f"/api/v1/posts/{post_id}", headers=auth_headers(author_token))
    assert res.status_code == 200, res.text
    assert res.json() == {"id": post_id, "state": "purged", "assets_reaped": 0}
    assert posts_count(session_factory, author_id) == 0

    assert client.delete(f"/api/v1/posts/{post_id}", headers=auth_headers(author_token)).status_code == 404
    assert client.delete(f"/api/v1/posts/{uuid4()}", headers=auth_headers(author_token)).status_code == 404


def test_admin_lifecycle_run_and_stats(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory = test_app["session_factory"]
    author_id, member_token = create_user(session_factory, "ana")
    _admin_id, admin_token = create_user(session_factory, "root", UserRole.admin)
    create_post(session_factory, author_id)
    create_post(session_factory, author_id, age=timedelta(hours=25))
    create_post(session_factory, author_id, age=timedelta(days=8))

    assert client.post("/api/v1/admin/lifecycle/run").status_code == 401
    assert client.post("/api/v1/admin/lifecycle/run", headers=auth_headers(member_token)).status_code == 403

    run = client.post("/api/v1/admin/lifecycle/run", headers=auth_headers(admin_token))
    assert run.status_code == 200, run.text
    assert run.json() == {"softDeleted": 2, "hardDeleted": 1, "usersUpdated": 1}
    assert posts_count(session_factory, author_id) == 1

    stats = client.get("/api/v1/admin/lifecycle/stats", headers=auth_headers(admin_token))
    assert stats.status_code == 200
    assert stats.json() == {
        "activePosts": 1,
        "expiredPosts": 1,
        "postsNearingExpiry": 0,
        "postsEligibleForPurge": 0,
    }


def test_admin_run_reports_sweep_failure(test_app: Dict[str, object], monkeypatch: pytest.MonkeyPatch) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    _admin_id, admin_token = create_user(test_app["session_factory"], "root", UserRole.admin)

    async def _boom(session, *, now=None):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(post_lifecycle, "run_sweep", _boom)

    res = client.post("/api/v1/admin/lifecycle/run", headers=auth_headers(admin_token))
    assert res.status_code == 500
    assert res.json()["code"] == "sweep_failure"
