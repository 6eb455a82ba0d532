from __future__ import annotations

import logging
import random
from typing import Optional

from exam_engine.catalog.client import QuestionPool
from exam_engine.errors import InsufficientQuestionPool
from exam_engine.models import Test

logger = logging.getLogger(__name__)


async def select_questions(test: Test, pool: QuestionPool, rng: Optional[random.Random] = None) -> list[str]:
    """Ordered question ids for one attempt of ``test``.

    A fixed question list keeps the same set and only scrambles its order.
    Otherwise ``question_count`` ids are drawn from the eligible pool for the
    test's subject and grade. Every call makes an independent draw.
    """
    rng = rng or random.Random()

    if test.question_ids:
        question_ids = list(test.question_ids)
        rng.shuffle(question_ids)
        return question_ids

    pool_questions = await pool.get_eligible_questions(test.tenant_id, test.subject, test.grade)
    needed = test.question_count
    if len(pool_questions) < needed:
        logger.warning(
            f"Question pool too small for test {test.test_id}: "
            f"{test.subject} grade {test.grade} needs {needed}, has {len(pool_questions)}"
        )
        raise InsufficientQuestionPool(test.subject, needed, len(pool_questions))

    question_ids = [q.question_id for q in pool_questions]
    rng.shuffle(question_ids)
    return question_ids[:needed]
