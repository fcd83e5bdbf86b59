from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dependencies import require_admin
from app.db.session import get_session
from app.schemas.lifecycle import LifecycleStats, LifecycleSweepResult
from app.services import post_lifecycle, post_lifecycle_scheduler

router = APIRouter(prefix="/admin/lifecycle", tags=["lifecycle"])


@router.post("/run", response_model=LifecycleSweepResult)
async def run_lifecycle_sweep(
    request: Request,
    _: object = Depends(require_admin),
) -> LifecycleSweepResult:
    """Run one sweep now, serialized with the scheduled loop when it is running."""
    lock = getattr(request.app.state, "post_lifecycle_sweep_lock", None)
    return await post_lifecycle_scheduler.run_now(lock)


@router.get("/stats", response_model=LifecycleStats)
async def lifecycle_stats(
    session: AsyncSession = Depends(get_session),
    _: object = Depends(require_admin),
) -> LifecycleStats:
    return await post_lifecycle.get_stats(session)
