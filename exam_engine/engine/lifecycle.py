"""
Attempt lifecycle controller.

State machine::

    (start) -> in_progress --submit--> submitted --complete marking--> marked
                           \\--submit (objective only)--> marked

``absent`` is set outside the engine and is terminal. Writes to one attempt are
serialized by a per-attempt lock and guarded by the store's version check;
starts are serialized per (test, student).
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Mapping, Optional

from exam_engine.catalog.client import Catalog
from exam_engine.engine import navigation
from exam_engine.engine.clock import ClampResult, SessionClock
from exam_engine.engine.locks import KeyedLock
from exam_engine.engine.scoring import compute_percentage, score_attempt
from exam_engine.engine.selector import select_questions
from exam_engine.errors import (
    ConcurrentModification,
    ExamDisabled,
    InvalidStateTransition,
    ManualScoreRejected,
)
from exam_engine.models import (
    SYSTEM_ACTOR,
    Actor,
    ActorType,
    Attempt,
    AttemptEvent,
    AttemptStatus,
    EventType,
    Grade,
    QuestionStatus,
    StudentQuestion,
    SubmitExamResponse,
)
from exam_engine.observability import get_tracer, track_operation
from exam_engine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)

# A mutation returns the attempt to write (None for no write) and the events to record once committed.
Mutation = Callable[[Attempt], Awaitable[tuple[Optional[Attempt], list[AttemptEvent]]]]


def _student(attempt: Attempt) -> Actor:
    return Actor(type=ActorType.student, id=attempt.student_id)


class AttemptLifecycleController:
    def __init__(
        self,
        repo: AttemptRepository,
        catalog: Catalog,
        clock: Optional[SessionClock] = None,
        *,
        expiry_grace_seconds: int = 120,
        reject_late_checkpoints: bool = False,
        checkpoint_retry_attempts: int = 1,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.repo = repo
        self.catalog = catalog
        self.clock = clock or SessionClock()
        self.expiry_grace_seconds = expiry_grace_seconds
        self.reject_late_checkpoints = reject_late_checkpoints
        self.checkpoint_retry_attempts = checkpoint_retry_attempts
        self.rng = rng or random.Random()
        self._start_locks = KeyedLock()
        self._attempt_locks = KeyedLock()

    # ===== Start =====

    @track_operation("start_exam")
    async def start_exam(self, test_id: str, student_id: str, tenant_id: Optional[str] = None) -> Attempt:
        tracer = get_tracer()
        with tracer.start_as_current_span("attempt.start") as span:
            span.set_attribute("test.id", test_id)
            span.set_attribute("student.id", student_id)

            test = await self.catalog.get_test(test_id)
            tenant_id = tenant_id or test.tenant_id
            span.set_attribute("tenant.id", tenant_id)

            if not await self.catalog.is_exam_enabled(tenant_id):
                raise ExamDisabled(tenant_id, test_id, "Exam is currently disabled by admin")
            if not test.is_active:
                raise ExamDisabled(tenant_id, test_id, "Test is not active")

            async with self._start_locks.hold((test_id, student_id)):
                existing = await self.repo.find_active_attempt(test_id, student_id)
                if existing is not None:
                    logger.info(f"Student {student_id} resumed attempt {existing.attempt_id} on test {test_id}")
                    await self.repo.append_event(
                        AttemptEvent(
                            attempt_id=existing.attempt_id, type=EventType.ATTEMPT_RESUMED, actor=_student(existing)
                        )
                    )
                    span.set_attribute("attempt.resumed", True)
                    return existing

                question_ids = await select_questions(test, self.catalog, self.rng)
                duration_seconds = test.effective_duration_minutes() * 60
                attempt = Attempt(
                    tenant_id=tenant_id,
                    test_id=test_id,
                    student_id=student_id,
                    subject=test.subject,
                    grade=test.grade,
                    assigned_question_ids=question_ids,
                    question_statuses=navigation.initial_statuses(question_ids),
                    duration_seconds=duration_seconds,
                    time_remaining_seconds=duration_seconds,
                    total_marks=test.total_marks,
                    started_at=self.clock.now(),
                )
                stored, created = await self.repo.create_attempt_if_absent(attempt)

            span.set_attribute("attempt.id", stored.attempt_id)
            span.set_attribute("attempt.resumed", not created)
            if created:
                logger.info(
                    f"Student {student_id} started test {test_id}: attempt {stored.attempt_id}, "
                    f"{len(question_ids)} questions, {duration_seconds}s"
                )
                await self.repo.append_event(
                    AttemptEvent(
                        attempt_id=stored.attempt_id,
                        type=EventType.ATTEMPT_STARTED,
                        actor=_student(stored),
                        data={"question_count": len(question_ids), "duration_seconds": duration_seconds},
                    )
                )
            return stored

    # ===== Reads =====

    async def get_attempt(self, attempt_id: str) -> Attempt:
        return await self.repo.get_attempt(attempt_id)

    async def get_active_attempt(self, test_id: str, student_id: str) -> Optional[Attempt]:
        return await self.repo.find_active_attempt(test_id, student_id)

    async def get_attempt_questions(self, attempt_id: str) -> list[StudentQuestion]:
        attempt = await self.repo.get_attempt(attempt_id)
        questions = await self.catalog.get_questions_by_ids(attempt.assigned_question_ids)
        return [StudentQuestion.from_question(q) for q in questions]

    async def list_events(self, attempt_id: str) -> list[AttemptEvent]:
        return await self.repo.list_events(attempt_id)

    async def list_pending_marking(self, tenant_id: str) -> list[Attempt]:
        return await self.repo.list_submitted_attempts(tenant_id)

    async def list_grades_for_student(self, student_id: str) -> list[Grade]:
        return await self.repo.list_grades_by_student(student_id)

    async def list_grades_for_test(self, test_id: str) -> list[Grade]:
        return await self.repo.list_grades_by_test(test_id)

    # ===== Checkpoint =====

    @track_operation("save_state")
    async def save_state(
        self,
        attempt_id: str,
        answers: Mapping[str, str],
        question_statuses: Mapping[str, QuestionStatus],
        marked_for_review: list[str],
        time_remaining_seconds: int,
        current_question_id: Optional[str] = None,
    ) -> Attempt:
        expired_now = False

        async def checkpoint(attempt: Attempt) -> tuple[Optional[Attempt], list[AttemptEvent]]:
            nonlocal expired_now
            expired_now = False
            if attempt.status != AttemptStatus.in_progress:
                if self.reject_late_checkpoints:
                    raise InvalidStateTransition(attempt.attempt_id, attempt.status.value, "checkpoint")
                logger.info(f"Ignoring checkpoint for attempt {attempt.attempt_id}: status {attempt.status.value}")
                event = AttemptEvent(
                    attempt_id=attempt.attempt_id,
                    type=EventType.CHECKPOINT_IGNORED,
                    actor=_student(attempt),
                    data={"status": attempt.status.value},
                )
                return None, [event]

            now = self.clock.now()
            if self._past_deadline(attempt, now):
                # The incoming answers arrived after the deadline; finalize what was saved in time
                logger.warning(
                    f"Checkpoint for attempt {attempt.attempt_id} arrived after the deadline; auto-submitting"
                )
                expired_now = True
                return await self._submission(None, None, expired=True)(attempt)

            assigned = attempt.assigned_question_ids
            saved_answers = navigation.normalize_answers(assigned, answers)
            review = navigation.normalize_review(assigned, marked_for_review)
            statuses = navigation.reconcile(
                assigned, attempt.question_statuses, question_statuses, saved_answers, review, current_question_id
            )
            clamp = self.clock.clamp(attempt, time_remaining_seconds, now)
            updated = attempt.model_copy(
                update={
                    "answers": saved_answers,
                    "marked_for_review": review,
                    "question_statuses": statuses,
                    "time_remaining_seconds": clamp.value,
                    "last_saved_at": now,
                },
                deep=True,
            )
            return updated, self._clamp_events(attempt, clamp)

        async with self._attempt_locks.hold(attempt_id):
            attempt = await self._commit(attempt_id, checkpoint)
        if expired_now:
            await self._record_submission(attempt)
        return attempt

    # ===== Submit =====

    @track_operation("submit_exam")
    async def submit_exam(
        self,
        attempt_id: str,
        answers: Optional[Mapping[str, str]] = None,
        time_remaining_seconds: Optional[int] = None,
    ) -> SubmitExamResponse:
        return await self._submit(attempt_id, answers, time_remaining_seconds, expired=False)

    @track_operation("auto_submit")
    async def auto_submit(self, attempt_id: str) -> SubmitExamResponse:
        """Submit with the last saved answers and no time left."""
        return await self._submit(attempt_id, None, 0, expired=True)

    def _submission(
        self,
        answers: Optional[Mapping[str, str]],
        time_remaining_seconds: Optional[int],
        expired: bool,
    ) -> Mutation:
        """Mutation that scores and finalizes an in-progress attempt.

        A student submit that reaches the server after the deadline plus grace
        is treated as an auto-submit: the answers it carries are discarded.
        """

        async def submit(attempt: Attempt) -> tuple[Optional[Attempt], list[AttemptEvent]]:
            if attempt.status != AttemptStatus.in_progress:
                raise InvalidStateTransition(attempt.attempt_id, attempt.status.value, "submit")

            now = self.clock.now()
            assigned = attempt.assigned_question_ids
            events: list[AttemptEvent] = []

            auto = expired
            if not auto and self._past_deadline(attempt, now):
                logger.warning(
                    f"Submit for attempt {attempt.attempt_id} arrived after the deadline; using saved answers"
                )
                auto = True

            if answers is None or auto:
                final_answers = dict(attempt.answers)
                statuses = dict(attempt.question_statuses)
            else:
                final_answers = navigation.normalize_answers(assigned, answers)
                statuses = navigation.reconcile(
                    assigned, attempt.question_statuses, {}, final_answers, attempt.marked_for_review
                )

            if auto:
                remaining = 0
            elif time_remaining_seconds is not None:
                clamp = self.clock.clamp(attempt, time_remaining_seconds, now)
                remaining = clamp.value
                events.extend(self._clamp_events(attempt, clamp))
            else:
                remaining = attempt.time_remaining_seconds

            questions = await self.catalog.get_questions_by_ids(assigned)
            result = score_attempt(assigned, final_answers, questions, attempt.total_marks)
            score = self._bounded_score(attempt, result.auto_score)

            status = AttemptStatus.submitted if result.needs_manual_marking else AttemptStatus.marked
            updated = attempt.model_copy(
                update={
                    "answers": final_answers,
                    "question_statuses": statuses,
                    "time_remaining_seconds": remaining,
                    "auto_score": result.auto_score,
                    "score": score,
                    "percentage": None if result.needs_manual_marking else compute_percentage(score, attempt.total_marks),
                    "needs_manual_marking": result.needs_manual_marking,
                    "flagged_question_ids": result.flagged_question_ids,
                    "status": status,
                    "submitted_at": now,
                    "marked_at": None if result.needs_manual_marking else now,
                    "last_saved_at": now,
                    "auto_submitted": auto,
                },
                deep=True,
            )
            events.append(
                AttemptEvent(
                    attempt_id=attempt.attempt_id,
                    type=EventType.ATTEMPT_AUTO_SUBMITTED if auto else EventType.ATTEMPT_SUBMITTED,
                    actor=SYSTEM_ACTOR if auto else _student(attempt),
                    data={
                        "auto_score": result.auto_score,
                        "needs_manual_marking": result.needs_manual_marking,
                        "flagged_question_ids": result.flagged_question_ids,
                        "time_remaining_seconds": remaining,
                    },
                )
            )
            return updated, events

        return submit

    async def _submit(
        self,
        attempt_id: str,
        answers: Optional[Mapping[str, str]],
        time_remaining_seconds: Optional[int],
        expired: bool,
    ) -> SubmitExamResponse:
        tracer = get_tracer()
        with tracer.start_as_current_span("attempt.submit") as span:
            span.set_attribute("attempt.id", attempt_id)
            span.set_attribute("attempt.expired", expired)
            async with self._attempt_locks.hold(attempt_id):
                attempt = await self._commit(attempt_id, self._submission(answers, time_remaining_seconds, expired))
            span.set_attribute("attempt.status", attempt.status.value)
            span.set_attribute("attempt.auto_submitted", attempt.auto_submitted)

        await self._record_submission(attempt)
        return SubmitExamResponse(
            attempt_id=attempt.attempt_id,
            status=attempt.status,
            score=attempt.score or 0.0,
            total_marks=attempt.total_marks,
            percentage=attempt.percentage,
            needs_manual_marking=attempt.needs_manual_marking,
            flagged_question_ids=attempt.flagged_question_ids,
            submitted_at=attempt.submitted_at,
        )

    async def _record_submission(self, attempt: Attempt) -> None:
        await self.repo.upsert_grade(self._grade_from(attempt))
        logger.info(
            f"Attempt {attempt.attempt_id} {'auto-submitted' if attempt.auto_submitted else 'submitted'}: "
            f"score {attempt.score}/{attempt.total_marks}, status {attempt.status.value}"
        )

    # ===== Manual marking =====

    @track_operation("record_manual_score")
    async def record_manual_score(
        self, attempt_id: str, question_id: str, marks: float, actor: Optional[Actor] = None
    ) -> Attempt:
        actor = actor or SYSTEM_ACTOR

        async def mark(attempt: Attempt) -> tuple[Optional[Attempt], list[AttemptEvent]]:
            if attempt.status != AttemptStatus.submitted:
                raise InvalidStateTransition(attempt.attempt_id, attempt.status.value, "record a manual score for")
            if question_id not in attempt.assigned_question_ids:
                raise ManualScoreRejected(attempt.attempt_id, question_id, "question is not part of this attempt")
            if question_id not in attempt.flagged_question_ids:
                raise ManualScoreRejected(
                    attempt.attempt_id, question_id, "only free-text answers are marked manually"
                )

            found = await self.catalog.get_questions_by_ids([question_id])
            if not found:
                raise ManualScoreRejected(attempt.attempt_id, question_id, "question no longer exists")
            max_marks = found[0].marks
            if marks < 0 or marks > max_marks:
                raise ManualScoreRejected(
                    attempt.attempt_id, question_id, f"marks must be between 0 and {max_marks}"
                )

            manual_scores = {**attempt.manual_scores, question_id: float(marks)}
            score = (attempt.auto_score or 0.0) + sum(manual_scores.values())
            if score > attempt.total_marks:
                raise ManualScoreRejected(
                    attempt.attempt_id, question_id, f"score {score} would exceed total marks {attempt.total_marks}"
                )

            updated = attempt.model_copy(update={"manual_scores": manual_scores, "score": score}, deep=True)
            event = AttemptEvent(
                attempt_id=attempt.attempt_id,
                type=EventType.MANUAL_SCORE_RECORDED,
                actor=actor,
                data={"question_id": question_id, "marks": float(marks), "score": score},
            )
            return updated, [event]

        async with self._attempt_locks.hold(attempt_id):
            return await self._commit(attempt_id, mark)

    @track_operation("complete_marking")
    async def complete_marking(
        self, attempt_id: str, remarks: Optional[str] = None, actor: Optional[Actor] = None
    ) -> Attempt:
        actor = actor or SYSTEM_ACTOR

        async def complete(attempt: Attempt) -> tuple[Optional[Attempt], list[AttemptEvent]]:
            if attempt.status != AttemptStatus.submitted:
                raise InvalidStateTransition(attempt.attempt_id, attempt.status.value, "complete marking for")

            unmarked = [qid for qid in attempt.flagged_question_ids if qid not in attempt.manual_scores]
            if unmarked:
                logger.warning(f"Completing marking of {attempt.attempt_id} with {len(unmarked)} unmarked answers")

            score = self._bounded_score(attempt, (attempt.auto_score or 0.0) + sum(attempt.manual_scores.values()))
            percentage = compute_percentage(score, attempt.total_marks)
            now = self.clock.now()
            updated = attempt.model_copy(
                update={
                    "score": score,
                    "percentage": percentage,
                    "teacher_remarks": remarks,
                    "status": AttemptStatus.marked,
                    "marked_at": now,
                },
                deep=True,
            )
            event = AttemptEvent(
                attempt_id=attempt.attempt_id,
                type=EventType.MARKING_COMPLETED,
                actor=actor,
                data={"score": score, "percentage": percentage, "unmarked_question_ids": unmarked},
            )
            return updated, [event]

        async with self._attempt_locks.hold(attempt_id):
            attempt = await self._commit(attempt_id, complete)

        await self.repo.upsert_grade(self._grade_from(attempt))
        logger.info(f"Marking completed for attempt {attempt_id}: {attempt.score}/{attempt.total_marks}")
        return attempt

    # ===== Visibility signal =====

    @track_operation("record_visibility_change")
    async def record_visibility_change(self, attempt_id: str, hidden: bool = True) -> Attempt:
        async def record(attempt: Attempt) -> tuple[Optional[Attempt], list[AttemptEvent]]:
            if attempt.status != AttemptStatus.in_progress:
                raise InvalidStateTransition(
                    attempt.attempt_id, attempt.status.value, "record a visibility change for"
                )
            count = attempt.visibility_changes + (1 if hidden else 0)
            updated = attempt.model_copy(update={"visibility_changes": count})
            event = AttemptEvent(
                attempt_id=attempt.attempt_id,
                type=EventType.VISIBILITY_CHANGED,
                actor=_student(attempt),
                data={"hidden": hidden, "count": count},
            )
            return updated, [event]

        async with self._attempt_locks.hold(attempt_id):
            attempt = await self._commit(attempt_id, record)
        if hidden:
            logger.info(f"Attempt {attempt_id}: page hidden ({attempt.visibility_changes} times)")
        return attempt

    # ===== Expiry =====

    @track_operation("reap_expired")
    async def reap_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Auto-submit in-progress attempts past their duration plus grace."""
        now = now or self.clock.now()
        cutoff = now - timedelta(seconds=self.expiry_grace_seconds)
        candidates = await self.repo.list_in_progress_started_before(cutoff)

        submitted: list[str] = []
        for attempt in candidates:
            if not self._past_deadline(attempt, now):
                continue
            try:
                await self.auto_submit(attempt.attempt_id)
            except InvalidStateTransition:
                logger.info(f"Attempt {attempt.attempt_id} was finalized before the reaper reached it")
                continue
            except ConcurrentModification:
                logger.warning(f"Attempt {attempt.attempt_id} kept changing; reaper will retry next pass")
                continue
            submitted.append(attempt.attempt_id)

        if submitted:
            logger.info(f"Reaper auto-submitted {len(submitted)} expired attempts")
        return submitted

    # ===== Internals =====

    async def _commit(self, attempt_id: str, mutate: Mutation) -> Attempt:
        retries = 0
        while True:
            current = await self.repo.get_attempt(attempt_id)
            updated, events = await mutate(current)
            if updated is None:
                for event in events:
                    await self.repo.append_event(event)
                return current
            try:
                saved = await self.repo.replace_attempt(updated, expected_version=current.version)
            except ConcurrentModification:
                if retries >= self.checkpoint_retry_attempts:
                    logger.warning(f"Giving up on attempt {attempt_id} after {retries + 1} conflicting writes")
                    raise
                retries += 1
                logger.info(f"Write conflict on attempt {attempt_id}, retrying")
                continue
            for event in events:
                await self.repo.append_event(event)
            return saved

    def _past_deadline(self, attempt: Attempt, now: datetime) -> bool:
        return self.clock.is_expired(attempt, self.expiry_grace_seconds, now)

    def _clamp_events(self, attempt: Attempt, clamp: ClampResult) -> list[AttemptEvent]:
        if not self.clock.is_anomaly(clamp):
            return []
        return [
            AttemptEvent(
                attempt_id=attempt.attempt_id,
                type=EventType.CLOCK_CLAMPED,
                actor=_student(attempt),
                data={"reported": clamp.reported, "allowed": clamp.allowed, "stored": clamp.value},
            )
        ]

    def _bounded_score(self, attempt: Attempt, score: float) -> float:
        if score > attempt.total_marks:
            logger.warning(
                f"Attempt {attempt.attempt_id} scored {score} above total marks {attempt.total_marks}; capping"
            )
            return float(attempt.total_marks)
        return score

    def _grade_from(self, attempt: Attempt) -> Grade:
        return Grade(
            tenant_id=attempt.tenant_id,
            attempt_id=attempt.attempt_id,
            student_id=attempt.student_id,
            test_id=attempt.test_id,
            subject=attempt.subject,
            grade=attempt.grade,
            score=attempt.score or 0.0,
            total_marks=attempt.total_marks,
            percentage=attempt.percentage,
            status=attempt.status,
            graded_at=self.clock.now(),
        )
