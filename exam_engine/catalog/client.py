from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from exam_engine.models import Question, Test


class QuestionPool(ABC):
    @abstractmethod
    async def get_questions_by_ids(self, question_ids: list[str]) -> list[Question]:
        """Return the questions that exist, in the order of ``question_ids``."""
        raise NotImplementedError

    @abstractmethod
    async def get_eligible_questions(self, tenant_id: str, subject: str, grade: Optional[str]) -> list[Question]:
        """Verified, assessment-eligible questions for (subject, grade)."""
        raise NotImplementedError


class TestCatalog(ABC):
    __test__ = False

    @abstractmethod
    async def get_test(self, test_id: str) -> Test:
        raise NotImplementedError


class FeatureFlags(ABC):
    @abstractmethod
    async def is_exam_enabled(self, tenant_id: str) -> bool:
        raise NotImplementedError


class Catalog(QuestionPool, TestCatalog, FeatureFlags, ABC):
    """Everything the engine reads from the rest of the portal."""
