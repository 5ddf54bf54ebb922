"""In-memory record of questions the chatbot could not answer.

Feeds the ``GET /unanswered`` listing so new question patterns can be added.
"""
from __future__ import annotations
import logging
import threading
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_ENTRIES = 500

_unanswered: list[dict] = []
_lock = threading.Lock()


def log_unanswered(question: str, answer: str, error_kind: str | None,
                   question_type: str | None = None, confidence: float | None = None) -> None:
    """Remember a turn that ended in an error or a clarification request."""
    entry = {
        "timestamp": datetime.now().isoformat(),
        "question": question,
        "answer": answer,
        "errorKind": error_kind,
        "questionType": question_type,
        "confidence": confidence,
    }
    with _lock:
        _unanswered.append(entry)
        del _unanswered[:-MAX_ENTRIES]
    logger.info("Unanswered question (%s): %s", error_kind or "clarification", question[:80])


def get_unanswered() -> list[dict]:
    """All entries, newest first."""
    with _lock:
        return list(reversed(_unanswered))


def clear_unanswered() -> None:
    with _lock:
        _unanswered.clear()
    logger.info("Cleared unanswered question log")
