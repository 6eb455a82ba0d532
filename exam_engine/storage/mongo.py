from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from exam_engine.errors import AttemptNotFound, ConcurrentModification
from exam_engine.models import Attempt, AttemptEvent, AttemptStatus, Grade
from exam_engine.storage.repo import AttemptRepository

logger = logging.getLogger(__name__)

_ATTEMPT_DATETIME_FIELDS = ("started_at", "submitted_at", "marked_at", "last_saved_at")


def _attempt_doc(attempt: Attempt) -> dict[str, Any]:
    doc = attempt.model_dump(mode="json")
    # Keep timestamps as BSON dates so range queries work
    for field in _ATTEMPT_DATETIME_FIELDS:
        doc[field] = getattr(attempt, field)
    return doc


def _strip_id(doc: dict[str, Any]) -> dict[str, Any]:
    doc.pop("_id", None)
    return doc


class MongoAttemptRepository(AttemptRepository):
    def __init__(self, mongo_uri: str, db_name: str) -> None:
        self.client = AsyncIOMotorClient(mongo_uri, tz_aware=True)
        self.db = self.client[db_name]
        self.attempts = self.db["attempts"]
        self.grades = self.db["grades"]
        self.events = self.db["attempt_events"]
        self._indexes_ready = False

    async def ensure_indexes(self) -> None:
        if self._indexes_ready:
            return
        await self.attempts.create_index("attempt_id", unique=True)
        # At most one in-progress attempt per (test, student)
        await self.attempts.create_index(
            [("test_id", ASCENDING), ("student_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"status": AttemptStatus.in_progress.value},
            name="one_active_attempt",
        )
        await self.attempts.create_index([("status", ASCENDING), ("started_at", ASCENDING)])
        await self.grades.create_index("attempt_id", unique=True)
        await self.events.create_index([("attempt_id", ASCENDING), ("ts", ASCENDING)])
        self._indexes_ready = True
        logger.info("Attempt store indexes ensured")

    async def create_attempt_if_absent(self, attempt: Attempt) -> tuple[Attempt, bool]:
        await self.ensure_indexes()
        try:
            await self.attempts.insert_one(_attempt_doc(attempt))
        except DuplicateKeyError:
            existing = await self.find_active_attempt(attempt.test_id, attempt.student_id)
            if existing is None:
                # The competing attempt finished between insert and lookup
                raise ConcurrentModification(attempt.attempt_id)
            return existing, False
        return attempt, True

    async def get_attempt(self, attempt_id: str) -> Attempt:
        doc = await self.attempts.find_one({"attempt_id": attempt_id})
        if not doc:
            raise AttemptNotFound(attempt_id)
        return Attempt.model_validate(_strip_id(doc))

    async def find_active_attempt(self, test_id: str, student_id: str) -> Optional[Attempt]:
        doc = await self.attempts.find_one(
            {"test_id": test_id, "student_id": student_id, "status": AttemptStatus.in_progress.value}
        )
        if not doc:
            return None
        return Attempt.model_validate(_strip_id(doc))

    async def replace_attempt(self, attempt: Attempt, expected_version: int) -> Attempt:
        stored = attempt.model_copy(update={"version": expected_version + 1})
        result = await self.attempts.replace_one(
            {"attempt_id": attempt.attempt_id, "version": expected_version},
            _attempt_doc(stored),
        )
        if result.matched_count == 0:
            # Distinguish a missing attempt from a lost race
            await self.get_attempt(attempt.attempt_id)
            raise ConcurrentModification(attempt.attempt_id)
        return stored

    async def _find_attempts(self, query: dict[str, Any]) -> list[Attempt]:
        cursor = self.attempts.find(query).sort("started_at", -1)
        docs = await cursor.to_list(length=10_000)
        return [Attempt.model_validate(_strip_id(d)) for d in docs]

    async def list_attempts_by_test(self, test_id: str) -> list[Attempt]:
        return await self._find_attempts({"test_id": test_id})

    async def list_attempts_by_student(self, student_id: str) -> list[Attempt]:
        return await self._find_attempts({"student_id": student_id})

    async def list_submitted_attempts(self, tenant_id: str) -> list[Attempt]:
        return await self._find_attempts({"tenant_id": tenant_id, "status": AttemptStatus.submitted.value})

    async def list_in_progress_started_before(self, cutoff: datetime) -> list[Attempt]:
        return await self._find_attempts(
            {"status": AttemptStatus.in_progress.value, "started_at": {"$lte": cutoff}}
        )

    async def upsert_grade(self, grade: Grade) -> Grade:
        doc = grade.model_dump(mode="json")
        doc["graded_at"] = grade.graded_at
        grade_id = doc.pop("grade_id")
        await self.grades.update_one(
            {"attempt_id": grade.attempt_id},
            {"$set": doc, "$setOnInsert": {"grade_id": grade_id}},
            upsert=True,
        )
        saved = await self.grades.find_one({"attempt_id": grade.attempt_id})
        return Grade.model_validate(_strip_id(saved))

    async def list_grades_by_student(self, student_id: str) -> list[Grade]:
        cursor = self.grades.find({"student_id": student_id}).sort("graded_at", -1)
        docs = await cursor.to_list(length=10_000)
        return [Grade.model_validate(_strip_id(d)) for d in docs]

    async def list_grades_by_test(self, test_id: str) -> list[Grade]:
        cursor = self.grades.find({"test_id": test_id}).sort("graded_at", -1)
        docs = await cursor.to_list(length=10_000)
        return [Grade.model_validate(_strip_id(d)) for d in docs]

    async def append_event(self, event: AttemptEvent) -> None:
        doc = event.model_dump(mode="json")
        doc["ts"] = event.ts
        await self.events.insert_one(doc)

    async def list_events(self, attempt_id: str) -> list[AttemptEvent]:
        await self.get_attempt(attempt_id)
        cursor = self.events.find({"attempt_id": attempt_id}).sort("ts", 1)
        docs = await cursor.to_list(length=10_000)
        return [AttemptEvent.model_validate(_strip_id(d)) for d in docs]
