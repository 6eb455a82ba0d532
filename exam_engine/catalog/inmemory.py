from __future__ import annotations

from typing import Dict, Optional

from exam_engine.catalog.client import Catalog
from exam_engine.errors import TestNotFound
from exam_engine.models import Question, Test


class InMemoryCatalog(Catalog):
    """Dict-backed catalog for local development and tests."""

    def __init__(self, exam_enabled_key: str = "ExamActive") -> None:
        self.tests: Dict[str, Test] = {}
        self.questions: Dict[str, Question] = {}
        self.config: Dict[str, Dict[str, str]] = {}
        self.exam_enabled_key = exam_enabled_key

    def add_test(self, test: Test) -> Test:
        self.tests[test.test_id] = test
        return test

    def add_questions(self, questions: list[Question]) -> None:
        for q in questions:
            self.questions[q.question_id] = q

    def set_config(self, tenant_id: str, key: str, value: str) -> None:
        self.config.setdefault(tenant_id, {})[key] = value

    async def get_test(self, test_id: str) -> Test:
        test = self.tests.get(test_id)
        if test is None:
            raise TestNotFound(test_id)
        return test

    async def get_questions_by_ids(self, question_ids: list[str]) -> list[Question]:
        return [self.questions[qid] for qid in question_ids if qid in self.questions]

    async def get_eligible_questions(self, tenant_id: str, subject: str, grade: Optional[str]) -> list[Question]:
        return [
            q
            for q in self.questions.values()
            if q.tenant_id == tenant_id
            and q.is_assessment
            and q.is_verified
            and q.subject.lower() == subject.lower()
            and (not grade or q.grade == grade)
        ]

    async def is_exam_enabled(self, tenant_id: str) -> bool:
        value = self.config.get(tenant_id, {}).get(self.exam_enabled_key)
        return value != "false"
