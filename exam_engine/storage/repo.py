from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from exam_engine.models import Attempt, AttemptEvent, Grade


class AttemptRepository(ABC):
    @abstractmethod
    async def create_attempt_if_absent(self, attempt: Attempt) -> tuple[Attempt, bool]:
        """Atomically insert ``attempt`` unless (test_id, student_id) already has an
        in-progress attempt. Returns the stored attempt and whether it was created."""
        raise NotImplementedError

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Attempt:
        """Raises AttemptNotFound."""
        raise NotImplementedError

    @abstractmethod
    async def find_active_attempt(self, test_id: str, student_id: str) -> Optional[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def replace_attempt(self, attempt: Attempt, expected_version: int) -> Attempt:
        """Write ``attempt`` if the stored version still equals ``expected_version``.

        Raises AttemptNotFound or ConcurrentModification. The returned attempt
        carries the incremented version.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_attempts_by_test(self, test_id: str) -> list[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def list_attempts_by_student(self, student_id: str) -> list[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def list_submitted_attempts(self, tenant_id: str) -> list[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def list_in_progress_started_before(self, cutoff: datetime) -> list[Attempt]:
        raise NotImplementedError

    @abstractmethod
    async def upsert_grade(self, grade: Grade) -> Grade:
        """One grade per attempt; a later upsert replaces the earlier summary."""
        raise NotImplementedError

    @abstractmethod
    async def list_grades_by_student(self, student_id: str) -> list[Grade]:
        raise NotImplementedError

    @abstractmethod
    async def list_grades_by_test(self, test_id: str) -> list[Grade]:
        raise NotImplementedError

    @abstractmethod
    async def append_event(self, event: AttemptEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_events(self, attempt_id: str) -> list[AttemptEvent]:
        raise NotImplementedError
