from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_exam_duration(total_marks: int) -> int:
    """Duration in minutes for a paper of ``total_marks`` marks."""
    if total_marks <= 40:
        return 90
    if total_marks <= 80:
        return 180
    return math.ceil(total_marks * 2.25)


class QuestionType(str, Enum):
    mcq = "mcq"
    true_false = "true_false"
    fill_blank = "fill_blank"
    matching = "matching"
    numerical = "numerical"
    short_answer = "short_answer"
    long_answer = "long_answer"


# Free-text types need a human-awarded mark.
SUBJECTIVE_TYPES = frozenset({QuestionType.short_answer, QuestionType.long_answer})


class QuestionStatus(str, Enum):
    not_visited = "not_visited"
    answered = "answered"
    marked_review = "marked_review"
    unanswered = "unanswered"


class AttemptStatus(str, Enum):
    in_progress = "in_progress"
    submitted = "submitted"
    marked = "marked"
    absent = "absent"


class ActorType(str, Enum):
    service = "service"
    student = "student"
    teacher = "teacher"


class Actor(BaseModel):
    type: ActorType
    id: str


SYSTEM_ACTOR = Actor(type=ActorType.service, id="exam-engine")


# ===== Collaborator records (read-only to the engine) =====


class Test(BaseModel):
    __test__ = False  # not a pytest class

    test_id: str
    tenant_id: str
    title: str = ""
    subject: str
    grade: str
    duration_minutes: Optional[int] = Field(default=None, ge=1)
    total_marks: int = Field(100, ge=1)
    question_count: int = Field(50, ge=1)
    question_ids: Optional[list[str]] = None
    is_active: bool = False

    def effective_duration_minutes(self) -> int:
        if self.duration_minutes:
            return self.duration_minutes
        return calculate_exam_duration(self.total_marks)


class Question(BaseModel):
    question_id: str
    tenant_id: str
    content: str = ""
    type: QuestionType
    options: Optional[list[str]] = None
    correct_answer: Optional[str] = None
    marks: int = Field(1, ge=1)
    subject: str
    chapter: str = ""
    topic: Optional[str] = None
    grade: str
    is_verified: bool = False
    is_assessment: bool = False
    passage_text: Optional[str] = None

    @property
    def is_subjective(self) -> bool:
        return self.type in SUBJECTIVE_TYPES


class StudentQuestion(BaseModel):
    """Question as shown to a student: no answer key."""

    question_id: str
    content: str
    type: QuestionType
    options: Optional[list[str]] = None
    marks: int
    passage_text: Optional[str] = None

    @classmethod
    def from_question(cls, q: Question) -> "StudentQuestion":
        return cls(
            question_id=q.question_id,
            content=q.content,
            type=q.type,
            options=q.options,
            marks=q.marks,
            passage_text=q.passage_text,
        )


# ===== Engine records =====


class Attempt(BaseModel):
    attempt_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    test_id: str
    student_id: str
    # Copied from the test at creation
    subject: str = ""
    grade: Optional[str] = None

    assigned_question_ids: list[str] = Field(default_factory=list)
    answers: dict[str, str] = Field(default_factory=dict)
    question_statuses: dict[str, QuestionStatus] = Field(default_factory=dict)
    marked_for_review: list[str] = Field(default_factory=list)

    # Timing
    duration_seconds: int = Field(..., ge=0)
    time_remaining_seconds: int = Field(..., ge=0)
    started_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    marked_at: Optional[datetime] = None
    last_saved_at: Optional[datetime] = None

    # Scoring
    total_marks: int = Field(..., ge=1)
    auto_score: Optional[float] = None
    score: Optional[float] = None
    percentage: Optional[float] = None
    needs_manual_marking: bool = False
    flagged_question_ids: list[str] = Field(default_factory=list)
    manual_scores: dict[str, float] = Field(default_factory=dict)
    teacher_remarks: Optional[str] = None

    status: AttemptStatus = AttemptStatus.in_progress
    auto_submitted: bool = False
    visibility_changes: int = 0

    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AttemptStatus.in_progress


class Grade(BaseModel):
    """Summary of a finalized attempt, consumed by reporting and results views."""

    grade_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    attempt_id: str
    student_id: str
    test_id: str
    subject: str
    grade: Optional[str] = None
    score: float = 0.0
    total_marks: int
    percentage: Optional[float] = None
    status: AttemptStatus
    graded_at: datetime = Field(default_factory=utcnow)


class EventType(str, Enum):
    ATTEMPT_STARTED = "ATTEMPT_STARTED"
    ATTEMPT_RESUMED = "ATTEMPT_RESUMED"
    CHECKPOINT_IGNORED = "CHECKPOINT_IGNORED"
    CLOCK_CLAMPED = "CLOCK_CLAMPED"
    ATTEMPT_SUBMITTED = "ATTEMPT_SUBMITTED"
    ATTEMPT_AUTO_SUBMITTED = "ATTEMPT_AUTO_SUBMITTED"
    MANUAL_SCORE_RECORDED = "MANUAL_SCORE_RECORDED"
    MARKING_COMPLETED = "MARKING_COMPLETED"
    VISIBILITY_CHANGED = "VISIBILITY_CHANGED"


class AttemptEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    attempt_id: str
    type: EventType
    ts: datetime = Field(default_factory=utcnow)
    actor: Actor = Field(default_factory=lambda: SYSTEM_ACTOR)
    data: dict[str, Any] = Field(default_factory=dict)


class QuestionResult(BaseModel):
    question_id: str
    marks_possible: int
    marks_awarded: float
    is_correct: Optional[bool] = None  # None for manually marked questions
    needs_manual_marking: bool = False


class ScoreResult(BaseModel):
    auto_score: float
    needs_manual_marking: bool
    flagged_question_ids: list[str] = Field(default_factory=list)
    percentage: Optional[float] = None
    question_results: list[QuestionResult] = Field(default_factory=list)


# ===== Request DTOs =====


class StartExamRequest(BaseModel):
    test_id: str
    student_id: str
    tenant_id: Optional[str] = None


class SaveStateRequest(BaseModel):
    answers: dict[str, str] = Field(default_factory=dict)
    question_statuses: dict[str, QuestionStatus] = Field(default_factory=dict)
    marked_for_review: list[str] = Field(default_factory=list)
    time_remaining_seconds: int = Field(..., ge=0)
    current_question_id: Optional[str] = None


class SubmitExamRequest(BaseModel):
    answers: Optional[dict[str, str]] = None
    time_remaining_seconds: Optional[int] = Field(default=None, ge=0)


class ManualScoreRequest(BaseModel):
    question_id: str
    marks: float = Field(..., ge=0)
    marker_id: Optional[str] = None


class CompleteMarkingRequest(BaseModel):
    remarks: Optional[str] = None
    marker_id: Optional[str] = None


class VisibilityChangeRequest(BaseModel):
    hidden: bool = True


# ===== Response DTOs =====


class StartExamResponse(BaseModel):
    attempt: Attempt
    questions: list[StudentQuestion]
    duration_minutes: int
    autosave_interval_seconds: int


class SubmitExamResponse(BaseModel):
    attempt_id: str
    status: AttemptStatus
    score: float
    total_marks: int
    percentage: Optional[float] = None
    needs_manual_marking: bool
    flagged_question_ids: list[str] = Field(default_factory=list)
    submitted_at: datetime


class ReapResponse(BaseModel):
    submitted: list[str] = Field(default_factory=list)
