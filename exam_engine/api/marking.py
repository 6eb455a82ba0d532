from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.models import Actor, ActorType, Attempt, CompleteMarkingRequest, ManualScoreRequest
from exam_engine.settings import settings
from exam_engine.wiring import get_engine

router = APIRouter(prefix="/marking", tags=["marking"])


def _teacher(marker_id: Optional[str]) -> Optional[Actor]:
    # Identity comes from the calling portal; without one the engine records itself
    if not marker_id:
        return None
    return Actor(type=ActorType.teacher, id=marker_id)


@router.get("/pending", response_model=list[Attempt])
async def list_pending_marking(
    tenant_id: Optional[str] = None,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> list[Attempt]:
    """Submitted attempts waiting for free-text answers to be marked."""
    return await engine.list_pending_marking(tenant_id or settings.default_tenant_id)


@router.post("/attempts/{attempt_id}/scores", response_model=Attempt)
async def record_manual_score(
    attempt_id: str,
    req: ManualScoreRequest,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> Attempt:
    return await engine.record_manual_score(attempt_id, req.question_id, req.marks, actor=_teacher(req.marker_id))


@router.post("/attempts/{attempt_id}/complete", response_model=Attempt)
async def complete_marking(
    attempt_id: str,
    req: CompleteMarkingRequest,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> Attempt:
    return await engine.complete_marking(attempt_id, req.remarks, actor=_teacher(req.marker_id))
