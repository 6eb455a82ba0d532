from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.models import (
    Attempt,
    AttemptEvent,
    ReapResponse,
    SaveStateRequest,
    StartExamRequest,
    StartExamResponse,
    StudentQuestion,
    SubmitExamRequest,
    SubmitExamResponse,
    VisibilityChangeRequest,
)
from exam_engine.settings import settings
from exam_engine.wiring import get_engine

router = APIRouter(prefix="/exam", tags=["exam"])


@router.post("/start", response_model=StartExamResponse)
async def start_exam(
    req: StartExamRequest,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> StartExamResponse:
    """Start a new attempt, or resume the student's in-progress one."""
    attempt = await engine.start_exam(req.test_id, req.student_id, req.tenant_id)
    questions = await engine.get_attempt_questions(attempt.attempt_id)
    return StartExamResponse(
        attempt=attempt,
        questions=questions,
        duration_minutes=attempt.duration_seconds // 60,
        autosave_interval_seconds=settings.autosave_interval_seconds,
    )


@router.get("/active", response_model=Optional[Attempt])
async def get_active_attempt(
    test_id: str,
    student_id: str,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> Optional[Attempt]:
    return await engine.get_active_attempt(test_id, student_id)


@router.post("/reap", response_model=ReapResponse)
async def reap_expired(engine: AttemptLifecycleController = Depends(get_engine)) -> ReapResponse:
    return ReapResponse(submitted=await engine.reap_expired())


@router.get("/attempts/{attempt_id}", response_model=Attempt)
async def get_attempt(attempt_id: str, engine: AttemptLifecycleController = Depends(get_engine)) -> Attempt:
    return await engine.get_attempt(attempt_id)


@router.get("/attempts/{attempt_id}/questions", response_model=list[StudentQuestion])
async def get_attempt_questions(
    attempt_id: str, engine: AttemptLifecycleController = Depends(get_engine)
) -> list[StudentQuestion]:
    return await engine.get_attempt_questions(attempt_id)


@router.post("/attempts/{attempt_id}/state")
async def save_state(
    attempt_id: str,
    req: SaveStateRequest,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> dict[str, bool]:
    await engine.save_state(
        attempt_id,
        answers=req.answers,
        question_statuses=req.question_statuses,
        marked_for_review=req.marked_for_review,
        time_remaining_seconds=req.time_remaining_seconds,
        current_question_id=req.current_question_id,
    )
    return {"success": True}


@router.post("/attempts/{attempt_id}/submit", response_model=SubmitExamResponse)
async def submit_exam(
    attempt_id: str,
    req: Optional[SubmitExamRequest] = None,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> SubmitExamResponse:
    req = req or SubmitExamRequest()
    return await engine.submit_exam(attempt_id, req.answers, req.time_remaining_seconds)


@router.post("/attempts/{attempt_id}/visibility", response_model=Attempt)
async def record_visibility_change(
    attempt_id: str,
    req: VisibilityChangeRequest,
    engine: AttemptLifecycleController = Depends(get_engine),
) -> Attempt:
    return await engine.record_visibility_change(attempt_id, req.hidden)


@router.get("/attempts/{attempt_id}/events", response_model=list[AttemptEvent])
async def list_events(
    attempt_id: str, engine: AttemptLifecycleController = Depends(get_engine)
) -> list[AttemptEvent]:
    return await engine.list_events(attempt_id)
