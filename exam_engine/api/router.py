from fastapi import APIRouter

from exam_engine.api.exams import router as exams_router
from exam_engine.api.grades import router as grades_router
from exam_engine.api.marking import router as marking_router

router = APIRouter()
router.include_router(exams_router)
router.include_router(marking_router)
router.include_router(grades_router)
