from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from exam_engine.errors import AttemptNotFound, ConcurrentModification
from exam_engine.models import Attempt, AttemptEvent, AttemptStatus, Grade
from exam_engine.storage.repo import AttemptRepository


class InMemoryAttemptRepository(AttemptRepository):
    def __init__(self) -> None:
        self.attempts: Dict[str, Attempt] = {}
        # (test_id, student_id) -> attempt_id of the in-progress attempt
        self.active_index: Dict[tuple[str, str], str] = {}
        self.grades: Dict[str, Grade] = {}
        self.events: Dict[str, List[AttemptEvent]] = {}
        self._lock = asyncio.Lock()

    def _active_key(self, attempt: Attempt) -> tuple[str, str]:
        return (attempt.test_id, attempt.student_id)

    async def create_attempt_if_absent(self, attempt: Attempt) -> tuple[Attempt, bool]:
        async with self._lock:
            key = self._active_key(attempt)
            existing_id = self.active_index.get(key)
            if existing_id is not None:
                return self.attempts[existing_id].model_copy(deep=True), False

            stored = attempt.model_copy(deep=True)
            self.attempts[stored.attempt_id] = stored
            if stored.status == AttemptStatus.in_progress:
                self.active_index[key] = stored.attempt_id
            self.events.setdefault(stored.attempt_id, [])
            return stored.model_copy(deep=True), True

    async def get_attempt(self, attempt_id: str) -> Attempt:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id)
        return attempt.model_copy(deep=True)

    async def find_active_attempt(self, test_id: str, student_id: str) -> Optional[Attempt]:
        attempt_id = self.active_index.get((test_id, student_id))
        if attempt_id is None:
            return None
        return self.attempts[attempt_id].model_copy(deep=True)

    async def replace_attempt(self, attempt: Attempt, expected_version: int) -> Attempt:
        async with self._lock:
            current = self.attempts.get(attempt.attempt_id)
            if current is None:
                raise AttemptNotFound(attempt.attempt_id)
            if current.version != expected_version:
                raise ConcurrentModification(attempt.attempt_id)

            stored = attempt.model_copy(deep=True)
            stored.version = expected_version + 1
            self.attempts[stored.attempt_id] = stored

            key = self._active_key(stored)
            if stored.status == AttemptStatus.in_progress:
                self.active_index[key] = stored.attempt_id
            elif self.active_index.get(key) == stored.attempt_id:
                del self.active_index[key]
            return stored.model_copy(deep=True)

    async def list_attempts_by_test(self, test_id: str) -> list[Attempt]:
        return [a.model_copy(deep=True) for a in self.attempts.values() if a.test_id == test_id]

    async def list_attempts_by_student(self, student_id: str) -> list[Attempt]:
        return [a.model_copy(deep=True) for a in self.attempts.values() if a.student_id == student_id]

    async def list_submitted_attempts(self, tenant_id: str) -> list[Attempt]:
        return [
            a.model_copy(deep=True)
            for a in self.attempts.values()
            if a.tenant_id == tenant_id and a.status == AttemptStatus.submitted
        ]

    async def list_in_progress_started_before(self, cutoff: datetime) -> list[Attempt]:
        return [
            self.attempts[attempt_id].model_copy(deep=True)
            for attempt_id in list(self.active_index.values())
            if self.attempts[attempt_id].started_at <= cutoff
        ]

    async def upsert_grade(self, grade: Grade) -> Grade:
        existing = self.grades.get(grade.attempt_id)
        if existing is not None:
            grade = grade.model_copy(update={"grade_id": existing.grade_id})
        self.grades[grade.attempt_id] = grade
        return grade

    async def list_grades_by_student(self, student_id: str) -> list[Grade]:
        return [g for g in self.grades.values() if g.student_id == student_id]

    async def list_grades_by_test(self, test_id: str) -> list[Grade]:
        return [g for g in self.grades.values() if g.test_id == test_id]

    async def append_event(self, event: AttemptEvent) -> None:
        if event.attempt_id not in self.events:
            self.events[event.attempt_id] = []
        self.events[event.attempt_id].append(event)

    async def list_events(self, attempt_id: str) -> list[AttemptEvent]:
        if attempt_id not in self.attempts:
            raise AttemptNotFound(attempt_id)
        return list(self.events.get(attempt_id, []))
