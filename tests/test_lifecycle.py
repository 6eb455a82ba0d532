import asyncio
import random

import pytest

from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.errors import (
    AttemptNotFound,
    ConcurrentModification,
    ExamDisabled,
    InsufficientQuestionPool,
    InvalidStateTransition,
    ManualScoreRejected,
    TestNotFound,
)
from exam_engine.models import Actor, ActorType, AttemptStatus, EventType, QuestionStatus, Test
from exam_engine.storage.inmemory import InMemoryAttemptRepository


async def _event_types(engine, attempt_id):
    return [e.type for e in await engine.list_events(attempt_id)]


# ===== Start =====


async def test_start_creates_fresh_attempt(engine):
    attempt = await engine.start_exam("t-objective", "student-1")

    assert attempt.status == AttemptStatus.in_progress
    assert sorted(attempt.assigned_question_ids) == ["q1", "q2", "q3", "q4"]
    assert attempt.question_statuses == {qid: QuestionStatus.not_visited for qid in attempt.assigned_question_ids}
    assert attempt.duration_seconds == 3600
    assert attempt.time_remaining_seconds == 3600
    assert attempt.total_marks == 4
    assert attempt.tenant_id == "tenant-a"
    assert attempt.subject == "Science"
    assert await _event_types(engine, attempt.attempt_id) == [EventType.ATTEMPT_STARTED]


async def test_start_resumes_in_progress_attempt(engine):
    first = await engine.start_exam("t-objective", "student-1")
    await engine.save_state(first.attempt_id, {"q1": "B"}, {}, [], 3500)

    again = await engine.start_exam("t-objective", "student-1")

    assert again.attempt_id == first.attempt_id
    assert again.answers == {"q1": "B"}
    assert again.assigned_question_ids == first.assigned_question_ids
    assert EventType.ATTEMPT_RESUMED in await _event_types(engine, first.attempt_id)


async def test_concurrent_starts_create_one_attempt(engine, repo):
    attempts = await asyncio.gather(*(engine.start_exam("t-pool", "student-1") for _ in range(5)))
    assert len({a.attempt_id for a in attempts}) == 1
    assert len(repo.attempts) == 1


async def test_new_attempt_after_submission(engine):
    first = await engine.start_exam("t-objective", "student-1")
    await engine.submit_exam(first.attempt_id)

    second = await engine.start_exam("t-objective", "student-1")
    assert second.attempt_id != first.attempt_id


async def test_start_refused_when_tenant_disables_exams(engine, catalog):
    catalog.set_config("tenant-a", "ExamActive", "false")
    with pytest.raises(ExamDisabled):
        await engine.start_exam("t-objective", "student-1")


async def test_start_refused_for_inactive_test(engine):
    with pytest.raises(ExamDisabled):
        await engine.start_exam("t-inactive", "student-1")


async def test_start_unknown_test(engine):
    with pytest.raises(TestNotFound):
        await engine.start_exam("nope", "student-1")


async def test_start_with_small_pool_creates_nothing(engine, catalog, repo):
    catalog.add_test(
        Test(test_id="big", tenant_id="tenant-a", subject="Science", grade="10", question_count=30, is_active=True)
    )
    with pytest.raises(InsufficientQuestionPool):
        await engine.start_exam("big", "student-1")
    assert repo.attempts == {}


# ===== Checkpoint =====


async def test_checkpoint_saves_answers_and_statuses(engine):
    attempt = await engine.start_exam("t-objective", "student-1")

    saved = await engine.save_state(
        attempt.attempt_id,
        answers={"q1": "B", "q2": "", "unknown": "A"},
        question_statuses={"q2": QuestionStatus.unanswered},
        marked_for_review=["q3", "q3"],
        time_remaining_seconds=3590,
        current_question_id="q4",
    )

    assert saved.answers == {"q1": "B"}
    assert saved.marked_for_review == ["q3"]
    assert set(saved.question_statuses) == set(attempt.assigned_question_ids)
    assert saved.question_statuses == {
        "q1": QuestionStatus.answered,
        "q2": QuestionStatus.unanswered,
        "q3": QuestionStatus.marked_review,
        "q4": QuestionStatus.unanswered,
    }
    assert saved.time_remaining_seconds == 3590
    assert saved.last_saved_at is not None

    stored = await engine.get_attempt(attempt.attempt_id)
    assert stored.answers == saved.answers
    assert stored.question_statuses == saved.question_statuses


async def test_checkpoint_round_trips_consistent_state(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    statuses = {
        "q1": QuestionStatus.answered,
        "q2": QuestionStatus.marked_review,
        "q3": QuestionStatus.unanswered,
        "q4": QuestionStatus.not_visited,
    }
    answers = {"q1": "A", "q2": "C"}

    await engine.save_state(attempt.attempt_id, answers, statuses, ["q2"], 3000)
    stored = await engine.get_attempt(attempt.attempt_id)

    assert stored.answers == answers
    assert stored.question_statuses == statuses
    assert stored.marked_for_review == ["q2"]
    assert stored.time_remaining_seconds == 3000


async def test_checkpoint_clamps_inflated_time(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    now.advance(600)

    saved = await engine.save_state(attempt.attempt_id, {}, {}, [], 3600)

    assert saved.time_remaining_seconds == 3000
    events = await engine.list_events(attempt.attempt_id)
    clamped = [e for e in events if e.type == EventType.CLOCK_CLAMPED]
    assert len(clamped) == 1
    assert clamped[0].data["reported"] == 3600


async def test_remaining_time_only_decreases(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    now.advance(30)
    await engine.save_state(attempt.attempt_id, {}, {}, [], 3000)
    now.advance(30)

    saved = await engine.save_state(attempt.attempt_id, {}, {}, [], 3300)
    assert saved.time_remaining_seconds == 3000


async def test_checkpoint_unknown_attempt(engine):
    with pytest.raises(AttemptNotFound):
        await engine.save_state("missing", {}, {}, [], 10)


async def test_late_checkpoint_is_ignored(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.save_state(attempt.attempt_id, {"q1": "B"}, {}, [], 3500)
    await engine.submit_exam(attempt.attempt_id)
    before = await engine.get_attempt(attempt.attempt_id)

    result = await engine.save_state(attempt.attempt_id, {"q1": "A", "q2": "B"}, {}, [], 10)

    after = await engine.get_attempt(attempt.attempt_id)
    assert result == before
    assert after == before
    assert EventType.CHECKPOINT_IGNORED in await _event_types(engine, attempt.attempt_id)


async def test_late_checkpoint_can_be_rejected(repo, catalog, clock):
    engine = AttemptLifecycleController(repo, catalog, clock, reject_late_checkpoints=True)
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.submit_exam(attempt.attempt_id)

    with pytest.raises(InvalidStateTransition):
        await engine.save_state(attempt.attempt_id, {}, {}, [], 10)


class ContendedRepository(InMemoryAttemptRepository):
    """Simulates another writer updating the attempt before each of the first ``conflicts`` writes."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def replace_attempt(self, attempt, expected_version):
        if self.conflicts > 0:
            self.conflicts -= 1
            self.attempts[attempt.attempt_id].version += 1
        return await super().replace_attempt(attempt, expected_version)


async def test_checkpoint_retries_once_after_conflict(catalog, clock):
    repo = ContendedRepository(conflicts=0)
    engine = AttemptLifecycleController(repo, catalog, clock, checkpoint_retry_attempts=1)
    attempt = await engine.start_exam("t-objective", "student-1")

    repo.conflicts = 1
    saved = await engine.save_state(attempt.attempt_id, {"q1": "B"}, {}, [], 3500)
    assert saved.answers == {"q1": "B"}


async def test_persistent_conflict_surfaces(catalog, clock):
    repo = ContendedRepository(conflicts=0)
    engine = AttemptLifecycleController(repo, catalog, clock, checkpoint_retry_attempts=1)
    attempt = await engine.start_exam("t-objective", "student-1")

    repo.conflicts = 2
    with pytest.raises(ConcurrentModification):
        await engine.save_state(attempt.attempt_id, {"q1": "B"}, {}, [], 3500)


# ===== Submit =====


async def test_objective_submission_is_marked_immediately(engine, repo):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.save_state(attempt.attempt_id, {"q1": "B", "q2": " b ", "q3": "A"}, {}, [], 3000)

    result = await engine.submit_exam(attempt.attempt_id)

    assert result.status == AttemptStatus.marked
    assert result.score == 2.0
    assert result.percentage == 50.0
    assert result.needs_manual_marking is False

    stored = await engine.get_attempt(attempt.attempt_id)
    assert stored.status == AttemptStatus.marked
    assert stored.submitted_at is not None
    assert stored.time_remaining_seconds == 3000

    grades = await engine.list_grades_for_student("student-1")
    assert len(grades) == 1
    assert grades[0].score == 2.0
    assert grades[0].status == AttemptStatus.marked


async def test_submit_with_final_answers_and_time(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    now.advance(120)

    result = await engine.submit_exam(
        attempt.attempt_id, answers={"q1": "B", "q2": "B", "q3": "B", "q4": "B"}, time_remaining_seconds=3470
    )

    stored = await engine.get_attempt(attempt.attempt_id)
    assert result.score == 4.0
    assert result.percentage == 100.0
    assert stored.time_remaining_seconds == 3470
    assert all(s == QuestionStatus.answered for s in stored.question_statuses.values())


async def test_blank_submission_scores_zero(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    result = await engine.submit_exam(attempt.attempt_id)
    assert result.score == 0.0
    assert result.percentage == 0.0
    assert result.status == AttemptStatus.marked


async def test_submit_twice_is_rejected(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.submit_exam(attempt.attempt_id)

    with pytest.raises(InvalidStateTransition) as exc_info:
        await engine.submit_exam(attempt.attempt_id)
    assert exc_info.value.current == "marked"


async def test_concurrent_submits_score_once(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    results = await asyncio.gather(
        engine.submit_exam(attempt.attempt_id),
        engine.submit_exam(attempt.attempt_id),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, InvalidStateTransition)) == 1
    events = await _event_types(engine, attempt.attempt_id)
    assert events.count(EventType.ATTEMPT_SUBMITTED) == 1


# ===== Manual marking =====


async def _submitted_mixed(engine):
    attempt = await engine.start_exam("t-mixed", "student-2")
    answers = {"q1": "B", "q2": "B", "s1": "Force is mass times acceleration"}
    await engine.save_state(attempt.attempt_id, answers, {}, [], 3000)
    return await engine.submit_exam(attempt.attempt_id)


async def test_free_text_answers_wait_for_teacher(engine):
    result = await _submitted_mixed(engine)

    assert result.status == AttemptStatus.submitted
    assert result.needs_manual_marking is True
    assert result.flagged_question_ids == ["s1"]
    assert result.score == 2.0
    assert result.percentage is None

    pending = await engine.list_pending_marking("tenant-a")
    assert [a.attempt_id for a in pending] == [result.attempt_id]


async def test_manual_marking_completes_score(engine):
    result = await _submitted_mixed(engine)
    teacher = Actor(type=ActorType.teacher, id="teacher-1")

    marked = await engine.record_manual_score(result.attempt_id, "s1", 4, actor=teacher)
    assert marked.score == 6.0
    assert marked.status == AttemptStatus.submitted

    # Re-marking replaces the earlier mark
    marked = await engine.record_manual_score(result.attempt_id, "s1", 3, actor=teacher)
    assert marked.score == 5.0

    done = await engine.complete_marking(result.attempt_id, remarks="Good effort", actor=teacher)
    assert done.status == AttemptStatus.marked
    assert done.percentage == round(5 / 7 * 100, 2)
    assert done.teacher_remarks == "Good effort"
    assert done.marked_at is not None

    grades = await engine.list_grades_for_test("t-mixed")
    assert len(grades) == 1
    assert grades[0].status == AttemptStatus.marked
    assert grades[0].score == 5.0
    assert await engine.list_pending_marking("tenant-a") == []


async def test_manual_score_above_question_marks_is_rejected(engine):
    result = await _submitted_mixed(engine)
    with pytest.raises(ManualScoreRejected):
        await engine.record_manual_score(result.attempt_id, "s1", 6)


async def test_manual_score_for_objective_question_is_rejected(engine):
    result = await _submitted_mixed(engine)
    with pytest.raises(ManualScoreRejected):
        await engine.record_manual_score(result.attempt_id, "q1", 1)


async def test_manual_score_for_unassigned_question_is_rejected(engine):
    result = await _submitted_mixed(engine)
    with pytest.raises(ManualScoreRejected):
        await engine.record_manual_score(result.attempt_id, "q6", 1)


async def test_manual_score_for_removed_question_is_rejected(engine, catalog):
    result = await _submitted_mixed(engine)
    del catalog.questions["s1"]

    with pytest.raises(ManualScoreRejected):
        await engine.record_manual_score(result.attempt_id, "s1", 1)
    assert (await engine.get_attempt(result.attempt_id)).manual_scores == {}


async def test_manual_score_needs_submitted_attempt(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    with pytest.raises(InvalidStateTransition):
        await engine.record_manual_score(attempt.attempt_id, "q1", 1)


async def test_complete_marking_needs_submitted_attempt(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.submit_exam(attempt.attempt_id)
    with pytest.raises(InvalidStateTransition):
        await engine.complete_marking(attempt.attempt_id)


# ===== Visibility and expiry =====


async def test_visibility_changes_are_counted(engine):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.record_visibility_change(attempt.attempt_id, hidden=True)
    await engine.record_visibility_change(attempt.attempt_id, hidden=False)
    updated = await engine.record_visibility_change(attempt.attempt_id, hidden=True)

    assert updated.visibility_changes == 2
    events = await _event_types(engine, attempt.attempt_id)
    assert events.count(EventType.VISIBILITY_CHANGED) == 3


async def test_checkpoint_after_deadline_finalizes_saved_answers(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.save_state(attempt.attempt_id, {"q1": "B"}, {}, [], 3500)
    now.advance(3600 + 120 + 600)

    result = await engine.save_state(attempt.attempt_id, {"q1": "B", "q2": "B"}, {}, [], 100)

    assert result.status == AttemptStatus.marked
    assert result.auto_submitted is True
    assert result.answers == {"q1": "B"}
    assert result.score == 1.0
    assert result.time_remaining_seconds == 0
    assert len(await engine.list_grades_for_student("student-1")) == 1
    assert EventType.ATTEMPT_AUTO_SUBMITTED in await _event_types(engine, attempt.attempt_id)


async def test_submit_after_deadline_ignores_new_answers(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.save_state(attempt.attempt_id, {"q1": "B"}, {}, [], 3500)
    now.advance(3600 + 120 + 600)

    result = await engine.submit_exam(
        attempt.attempt_id, answers={"q1": "B", "q2": "B", "q3": "B", "q4": "B"}, time_remaining_seconds=3000
    )

    assert result.score == 1.0
    stored = await engine.get_attempt(attempt.attempt_id)
    assert stored.auto_submitted is True
    assert stored.answers == {"q1": "B"}
    assert stored.time_remaining_seconds == 0


async def test_submit_within_grace_keeps_final_answers(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    now.advance(3600 + 60)

    result = await engine.submit_exam(attempt.attempt_id, answers={"q1": "B", "q2": "B", "q3": "B", "q4": "B"})

    assert result.score == 4.0
    assert (await engine.get_attempt(attempt.attempt_id)).auto_submitted is False


async def test_reaper_submits_abandoned_attempt(engine, now):
    attempt = await engine.start_exam("t-objective", "student-1")
    await engine.save_state(attempt.attempt_id, {"q1": "B"}, {}, [], 3400)

    now.advance(3600 + 60)
    assert await engine.reap_expired() == []

    now.advance(61)
    assert await engine.reap_expired() == [attempt.attempt_id]

    stored = await engine.get_attempt(attempt.attempt_id)
    assert stored.status == AttemptStatus.marked
    assert stored.auto_submitted is True
    assert stored.time_remaining_seconds == 0
    assert stored.score == 1.0
    assert EventType.ATTEMPT_AUTO_SUBMITTED in await _event_types(engine, attempt.attempt_id)

    # Nothing left to reap
    assert await engine.reap_expired() == []


async def test_reaper_leaves_live_attempts_alone(engine, now):
    old = await engine.start_exam("t-objective", "student-1")
    now.advance(3000)
    fresh = await engine.start_exam("t-objective", "student-2")
    now.advance(900)

    assert await engine.reap_expired() == [old.attempt_id]
    assert (await engine.get_attempt(fresh.attempt_id)).status == AttemptStatus.in_progress


async def test_each_attempt_draws_its_own_questions(repo, catalog, clock):
    engine = AttemptLifecycleController(repo, catalog, clock, rng=random.Random(5))
    orders = set()
    for i in range(8):
        attempt = await engine.start_exam("t-pool", f"student-{i}")
        assert len(attempt.assigned_question_ids) == 5
        orders.add(tuple(attempt.assigned_question_ids))
    assert len(orders) > 1
