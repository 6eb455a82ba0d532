from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from exam_engine.catalog.inmemory import InMemoryCatalog
from exam_engine.engine.clock import SessionClock
from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.models import Question, QuestionType, Test
from exam_engine.storage.inmemory import InMemoryAttemptRepository

TENANT = "tenant-a"


class FakeNow:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def make_question(qid: str, **overrides) -> Question:
    fields = dict(
        question_id=qid,
        tenant_id=TENANT,
        content=f"Question {qid}",
        type=QuestionType.mcq,
        options=["A", "B", "C", "D"],
        correct_answer="B",
        marks=1,
        subject="Science",
        chapter="Motion",
        grade="10",
        is_verified=True,
        is_assessment=True,
    )
    fields.update(overrides)
    return Question(**fields)


@pytest.fixture
def now() -> FakeNow:
    return FakeNow(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def clock(now: FakeNow) -> SessionClock:
    return SessionClock(now=now, skew_tolerance_seconds=5)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    catalog = InMemoryCatalog()
    catalog.add_questions([make_question(f"q{i}") for i in range(1, 7)])
    catalog.add_questions(
        [
            make_question("s1", type=QuestionType.short_answer, options=None, correct_answer=None, marks=5),
            # Not eligible for random draws
            make_question("draft1", is_verified=False),
            make_question("practice1", is_assessment=False),
            make_question("maths1", subject="Maths"),
            make_question("other-tenant", tenant_id="tenant-b"),
        ]
    )
    catalog.add_test(
        Test(
            test_id="t-objective",
            tenant_id=TENANT,
            title="Motion quiz",
            subject="Science",
            grade="10",
            duration_minutes=60,
            total_marks=4,
            question_ids=["q1", "q2", "q3", "q4"],
            is_active=True,
        )
    )
    catalog.add_test(
        Test(
            test_id="t-mixed",
            tenant_id=TENANT,
            subject="Science",
            grade="10",
            duration_minutes=60,
            total_marks=7,
            question_ids=["q1", "q2", "s1"],
            is_active=True,
        )
    )
    catalog.add_test(
        Test(
            test_id="t-pool",
            tenant_id=TENANT,
            subject="science",
            grade="10",
            total_marks=40,
            question_count=5,
            is_active=True,
        )
    )
    catalog.add_test(
        Test(test_id="t-inactive", tenant_id=TENANT, subject="Science", grade="10", question_ids=["q1"])
    )
    return catalog


@pytest.fixture
def repo() -> InMemoryAttemptRepository:
    return InMemoryAttemptRepository()


@pytest.fixture
def engine(repo, catalog, clock) -> AttemptLifecycleController:
    return AttemptLifecycleController(repo, catalog, clock, expiry_grace_seconds=120, rng=random.Random(42))
