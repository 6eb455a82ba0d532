"""
Typed errors raised by the exam engine.

Each error carries a machine-readable ``code``, the HTTP status the API layer
answers with, and the data a caller needs to explain the failure.
"""

from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    code = "engine_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}


class ExamDisabled(EngineError):
    code = "exam_disabled"
    status_code = 403

    def __init__(self, tenant_id: str, test_id: Optional[str] = None, reason: str = "exam is disabled") -> None:
        super().__init__(reason)
        self.tenant_id = tenant_id
        self.test_id = test_id

    def details(self) -> dict[str, Any]:
        return {"tenant_id": self.tenant_id, "test_id": self.test_id}


class InsufficientQuestionPool(EngineError):
    code = "insufficient_question_pool"
    status_code = 409

    def __init__(self, subject: str, required: int, available: int) -> None:
        super().__init__(f"Not enough questions for {subject} (need {required}, have {available})")
        self.subject = subject
        self.required = required
        self.available = available

    def details(self) -> dict[str, Any]:
        return {"subject": self.subject, "required": self.required, "available": self.available}


class AttemptNotFound(EngineError):
    code = "attempt_not_found"
    status_code = 404

    def __init__(self, attempt_id: str) -> None:
        super().__init__("attempt not found")
        self.attempt_id = attempt_id

    def details(self) -> dict[str, Any]:
        return {"attempt_id": self.attempt_id}


class TestNotFound(EngineError):
    __test__ = False

    code = "test_not_found"
    status_code = 404

    def __init__(self, test_id: str) -> None:
        super().__init__("test not found")
        self.test_id = test_id

    def details(self) -> dict[str, Any]:
        return {"test_id": self.test_id}


class InvalidStateTransition(EngineError):
    code = "invalid_state_transition"
    status_code = 409

    def __init__(self, attempt_id: str, current: str, action: str) -> None:
        super().__init__(f"cannot {action} an attempt that is {current}")
        self.attempt_id = attempt_id
        self.current = current
        self.action = action

    def details(self) -> dict[str, Any]:
        return {"attempt_id": self.attempt_id, "current_status": self.current, "action": self.action}


class ConcurrentModification(EngineError):
    code = "concurrent_modification"
    status_code = 409

    def __init__(self, attempt_id: str) -> None:
        super().__init__("attempt was modified concurrently")
        self.attempt_id = attempt_id

    def details(self) -> dict[str, Any]:
        return {"attempt_id": self.attempt_id}


class ManualScoreRejected(EngineError):
    code = "manual_score_rejected"
    status_code = 422

    def __init__(self, attempt_id: str, question_id: str, reason: str) -> None:
        super().__init__(reason)
        self.attempt_id = attempt_id
        self.question_id = question_id

    def details(self) -> dict[str, Any]:
        return {"attempt_id": self.attempt_id, "question_id": self.question_id}
