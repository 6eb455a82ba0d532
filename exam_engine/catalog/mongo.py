from __future__ import annotations

import re
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from exam_engine.catalog.client import Catalog
from exam_engine.errors import TestNotFound
from exam_engine.models import Question, Test


class MongoCatalog(Catalog):
    """Reads tests, questions and tenant config owned by the rest of the portal."""

    def __init__(self, mongo_uri: str, db_name: str, exam_enabled_key: str = "ExamActive") -> None:
        self.client = AsyncIOMotorClient(mongo_uri, tz_aware=True)
        self.db = self.client[db_name]
        self.tests = self.db["tests"]
        self.questions = self.db["questions"]
        self.config = self.db["exam_config"]
        self.exam_enabled_key = exam_enabled_key

    async def get_test(self, test_id: str) -> Test:
        doc = await self.tests.find_one({"test_id": test_id})
        if not doc:
            raise TestNotFound(test_id)
        return Test.model_validate(doc)

    async def get_questions_by_ids(self, question_ids: list[str]) -> list[Question]:
        if not question_ids:
            return []
        cursor = self.questions.find({"question_id": {"$in": question_ids}})
        docs = await cursor.to_list(length=len(question_ids))
        by_id = {d["question_id"]: Question.model_validate(d) for d in docs}
        return [by_id[qid] for qid in question_ids if qid in by_id]

    async def get_eligible_questions(self, tenant_id: str, subject: str, grade: Optional[str]) -> list[Question]:
        query: dict = {
            "tenant_id": tenant_id,
            "is_assessment": True,
            "is_verified": True,
            "subject": {"$regex": f"^{re.escape(subject)}$", "$options": "i"},
        }
        if grade:
            query["grade"] = grade
        cursor = self.questions.find(query)
        docs = await cursor.to_list(length=None)
        return [Question.model_validate(d) for d in docs]

    async def is_exam_enabled(self, tenant_id: str) -> bool:
        doc = await self.config.find_one({"tenant_id": tenant_id, "key": self.exam_enabled_key})
        if not doc:
            return True
        return str(doc.get("value")).lower() != "false"
