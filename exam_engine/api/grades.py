from __future__ import annotations

from fastapi import APIRouter, Depends

from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.models import Grade
from exam_engine.wiring import get_engine

router = APIRouter(prefix="/grades", tags=["grades"])


@router.get("/student/{student_id}", response_model=list[Grade])
async def list_grades_for_student(
    student_id: str, engine: AttemptLifecycleController = Depends(get_engine)
) -> list[Grade]:
    return await engine.list_grades_for_student(student_id)


@router.get("/test/{test_id}", response_model=list[Grade])
async def list_grades_for_test(test_id: str, engine: AttemptLifecycleController = Depends(get_engine)) -> list[Grade]:
    return await engine.list_grades_for_test(test_id)
