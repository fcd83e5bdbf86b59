from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import Awaitable, Callable
from contextlib import suppress

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.exceptions import SweepFailure
from app.db.session import SessionLocal, engine
from app.schemas.lifecycle import LifecycleSweepResult
from app.services import post_lifecycle

logger = logging.getLogger(__name__)

LOCK_NAME = "post_lifecycle_scheduler"
_MAX_STARTUP_DELAY_SECONDS = 300


def _interval_seconds() -> int:
    return max(60, int(getattr(settings, "lifecycle_sweep_interval_seconds", 3600) or 3600))


def _startup_delay_seconds() -> int:
    delay = int(getattr(settings, "lifecycle_startup_delay_seconds", 5) or 0)
    return min(max(0, delay), _MAX_STARTUP_DELAY_SECONDS)


async def _run_once() -> LifecycleSweepResult:
    async with SessionLocal() as session:
        return await post_lifecycle.run_sweep(session)


async def run_now(lock: asyncio.Lock | None = None) -> LifecycleSweepResult:
    """Administrative trigger; same result shape as a scheduled sweep.

    Errors are re-raised as ``SweepFailure`` for the caller to report.
    """
    try:
        if lock is None:
            return await _run_once()
        async with lock:
            return await _run_once()
    except SweepFailure:
        raise
    except Exception as exc:
        logger.exception("post_lifecycle_sweep_error")
        raise SweepFailure(f"Lifecycle sweep failed: {exc}") from exc


async def _sweep_guarded(lock: asyncio.Lock | None) -> None:
    try:
        result = await run_now(lock)
    except SweepFailure as exc:
        # Logged and dropped: the next tick is the retry.
        logger.error("post_lifecycle_sweep_failed", extra={"error": exc.detail})
        return
    logger.info("post_lifecycle_sweep_tick", extra=result.model_dump())


def _make_loop(lock: asyncio.Lock | None):
    async def _loop(stop: asyncio.Event) -> None:
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=_startup_delay_seconds())
        interval = _interval_seconds()
        while not stop.is_set():
            try:
                await _sweep_guarded(lock)
            except asyncio.CancelledError:
                break

            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)

    return _loop


def _advisory_key() -> int:
    # pg_try_advisory_lock takes a signed BIGINT; crc32 of the name fits in it.
    return zlib.crc32(LOCK_NAME.encode("utf-8"))


async def _lead(stop: asyncio.Event, loop: Callable[[asyncio.Event], Awaitable[None]]) -> None:
    """Run the sweep loop on whichever replica holds the advisory lock.

    Followers check again once per sweep interval, so a dead leader costs at
    most one missed sweep. Without Postgres there is nothing to coordinate and
    the loop runs directly.
    """
    if (engine.url.get_backend_name() or "").lower() != "postgresql":
        await loop(stop)
        return

    key = _advisory_key()
    while not stop.is_set():
        try:
            async with engine.connect() as conn:
                held = (await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})).scalar()
                if held:
                    logger.info("post_lifecycle_leader_acquired", extra={"lock_key": key})
                    try:
                        await loop(stop)
                    finally:
                        await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    return
        except asyncio.CancelledError:
            raise
        except SQLAlchemyError as exc:
            logger.warning("post_lifecycle_leader_unavailable", extra={"error": str(exc)})
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=_interval_seconds())


def start(app: FastAPI) -> None:
    if not bool(getattr(settings, "lifecycle_scheduler_enabled", True)):
        return
    if getattr(app.state, "post_lifecycle_scheduler_task", None) is not None:
        return

    stop = asyncio.Event()
    lock = asyncio.Lock()
    task = asyncio.create_task(_lead(stop, _make_loop(lock)))
    app.state.post_lifecycle_sweep_lock = lock
    app.state.post_lifecycle_scheduler_stop = stop
    app.state.post_lifecycle_scheduler_task = task
    logger.info(
        "post_lifecycle_scheduler_started",
        extra={"interval_seconds": _interval_seconds(), "startup_delay_seconds": _startup_delay_seconds()},
    )


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "post_lifecycle_scheduler_stop", None)
    task = getattr(app.state, "post_lifecycle_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    for attr in ("post_lifecycle_scheduler_stop", "post_lifecycle_scheduler_task", "post_lifecycle_sweep_lock"):
        if getattr(app.state, attr, None) is not None:
            delattr(app.state, attr)
