"""
Per-question navigation status.

Rules:
- a question in the review set is ``marked_review`` whatever its answer;
- otherwise a non-empty answer makes it ``answered``;
- otherwise a question that has been visited is ``unanswered``;
- a question never visited stays ``not_visited``. Once visited it never goes back.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from exam_engine.models import QuestionStatus


def initial_statuses(question_ids: Iterable[str]) -> dict[str, QuestionStatus]:
    return {qid: QuestionStatus.not_visited for qid in question_ids}


def status_for(answered: bool, in_review: bool, visited: bool) -> QuestionStatus:
    if in_review:
        return QuestionStatus.marked_review
    if answered:
        return QuestionStatus.answered
    if visited:
        return QuestionStatus.unanswered
    return QuestionStatus.not_visited


def normalize_answers(assigned: list[str], answers: Mapping[str, str]) -> dict[str, str]:
    """Keep answers for assigned questions only; an empty answer means cleared."""
    allowed = set(assigned)
    return {qid: text for qid, text in answers.items() if qid in allowed and text.strip()}


def normalize_review(assigned: list[str], marked_for_review: Iterable[str]) -> list[str]:
    allowed = set(assigned)
    seen: set[str] = set()
    result: list[str] = []
    for qid in marked_for_review:
        if qid in allowed and qid not in seen:
            seen.add(qid)
            result.append(qid)
    return result


def visit(
    statuses: Mapping[str, QuestionStatus], question_id: str, answers: Mapping[str, str]
) -> dict[str, QuestionStatus]:
    updated = dict(statuses)
    if updated.get(question_id) == QuestionStatus.not_visited and not answers.get(question_id):
        updated[question_id] = QuestionStatus.unanswered
    return updated


def record_answer(
    statuses: Mapping[str, QuestionStatus],
    question_id: str,
    answer: str,
    marked_for_review: Iterable[str],
) -> dict[str, QuestionStatus]:
    updated = dict(statuses)
    updated[question_id] = status_for(bool(answer.strip()), question_id in set(marked_for_review), visited=True)
    return updated


def toggle_review(
    statuses: Mapping[str, QuestionStatus],
    question_id: str,
    answers: Mapping[str, str],
    marked_for_review: list[str],
) -> tuple[dict[str, QuestionStatus], list[str]]:
    review = list(marked_for_review)
    if question_id in review:
        review.remove(question_id)
    else:
        review.append(question_id)
    updated = dict(statuses)
    updated[question_id] = status_for(bool(answers.get(question_id)), question_id in review, visited=True)
    return updated, review


def reconcile(
    assigned: list[str],
    previous: Mapping[str, QuestionStatus],
    reported: Mapping[str, QuestionStatus],
    answers: Mapping[str, str],
    marked_for_review: Iterable[str],
    current_question_id: Optional[str] = None,
) -> dict[str, QuestionStatus]:
    """Statuses for every assigned question after a checkpoint.

    ``answers`` and ``marked_for_review`` must already be normalized.
    """
    review = set(marked_for_review)
    result: dict[str, QuestionStatus] = {}
    for qid in assigned:
        visited = (
            previous.get(qid, QuestionStatus.not_visited) != QuestionStatus.not_visited
            or reported.get(qid, QuestionStatus.not_visited) != QuestionStatus.not_visited
            or qid == current_question_id
        )
        result[qid] = status_for(qid in answers, qid in review, visited)
    return result
