"""
Split scoring: objective questions are marked automatically at submission,
free-text questions are flagged for a teacher.

Objective answers match when they are equal after trimming surrounding
whitespace and ignoring case. There is no partial credit and no numeric
normalisation, so "7" and "7.0" do not match.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from exam_engine.models import Question, QuestionResult, ScoreResult

logger = logging.getLogger(__name__)


def normalize_answer(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def answers_match(submitted: Optional[str], correct: Optional[str]) -> bool:
    submitted_norm = normalize_answer(submitted)
    correct_norm = normalize_answer(correct)
    # An empty answer or a missing key never scores
    if not submitted_norm or not correct_norm:
        return False
    return submitted_norm == correct_norm


def compute_percentage(score: float, total_marks: int) -> float:
    if total_marks <= 0:
        return 0.0
    return round(score / total_marks * 100, 2)


def score_attempt(
    assigned_question_ids: list[str],
    answers: Mapping[str, str],
    questions: Iterable[Question],
    total_marks: int,
) -> ScoreResult:
    by_id = {q.question_id: q for q in questions}

    auto_score = 0.0
    needs_manual_marking = False
    flagged: list[str] = []
    results: list[QuestionResult] = []

    for qid in assigned_question_ids:
        question = by_id.get(qid)
        if question is None:
            logger.warning(f"Assigned question {qid} no longer resolves; scoring it as 0")
            results.append(QuestionResult(question_id=qid, marks_possible=0, marks_awarded=0.0, is_correct=False))
            continue

        if question.is_subjective:
            needs_manual_marking = True
            flagged.append(qid)
            results.append(
                QuestionResult(
                    question_id=qid,
                    marks_possible=question.marks,
                    marks_awarded=0.0,
                    needs_manual_marking=True,
                )
            )
            continue

        is_correct = answers_match(answers.get(qid), question.correct_answer)
        awarded = float(question.marks) if is_correct else 0.0
        auto_score += awarded
        results.append(
            QuestionResult(question_id=qid, marks_possible=question.marks, marks_awarded=awarded, is_correct=is_correct)
        )

    return ScoreResult(
        auto_score=auto_score,
        needs_manual_marking=needs_manual_marking,
        flagged_question_ids=flagged,
        percentage=None if needs_manual_marking else compute_percentage(auto_score, total_marks),
        question_results=results,
    )
