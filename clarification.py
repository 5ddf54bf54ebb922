"""Failure classification, clarification prompts and question suggestions.

Runs at two points of a turn: after analysis/resolution (ambiguous or
unknown names, questions with nothing to plan) and after execution (empty
results that point at a misread name, or executor failures).
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher

from chat_models import PlanFailure, QuestionAnalysis, ResponseEnvelope
from entity_resolver import normalize_name
from errors import (
    AmbiguousEntity,
    ChatbotError,
    ConnectionUnavailable,
    EntityNotFound,
    ErrorKind,
    QueryExecutionFailure,
    error_for,
)

logger = logging.getLogger(__name__)

CONNECTION_APOLOGY = (
    "I'm sorry, I'm unable to access the club's database at the moment due to a "
    "network issue. Please try again later."
)
GENERIC_APOLOGY = (
    "I'm sorry, I encountered an error while processing your question. "
    "Please try again later."
)

QUESTION_TEMPLATES = [
    "How many goals has Luke Bangs scored?",
    "How many appearances has Luke Bangs made for the 1st XI?",
    "How many assists has Luke Bangs provided this season?",
    "How many clean sheets has the 2nd XI kept?",
    "How many goals has Luke Bangs scored against Hampton?",
    "What is Luke Bangs' goals per appearance?",
    "Who has scored the most goals for the 3rd XI?",
    "Who has made the most appearances?",
    "Who has the most Man of the Match awards in 2019/20?",
    "Compare Luke Bangs and Oli Goddard goals",
    "Who has Luke Bangs played with the most?",
    "How many goals has Luke Bangs scored per season?",
    "What is Luke Bangs' longest scoring streak?",
    "How many double game weeks has Luke Bangs played?",
    "Who is closest to 100 appearances?",
    "What was the 1st XI's biggest win?",
    "Show the 4th XI's recent results",
    "Who won the league in 2018/19?",
    "Where did the 2nd XI finish in 2021/22?",
    "How many players has the club used this season?",
    "What percentage of games has the 1st XI won?",
]

_KEYWORDS = {
    "goal": "How many goals has Luke Bangs scored?",
    "appear": "How many appearances has Luke Bangs made for the 1st XI?",
    "assist": "How many assists has Luke Bangs provided this season?",
    "clean": "How many clean sheets has the 2nd XI kept?",
    "most": "Who has scored the most goals for the 3rd XI?",
    "streak": "What is Luke Bangs' longest scoring streak?",
    "league": "Who won the league in 2018/19?",
    "result": "Show the 4th XI's recent results",
    "season": "How many goals has Luke Bangs scored per season?",
    "compare": "Compare Luke Bangs and Oli Goddard goals",
}

SUGGESTION_MIN_SCORE = 0.35


@dataclass
class FailureReport:
    kind: ErrorKind
    message: str
    suggestions: list[str] = field(default_factory=list)
    detail: str | None = None


def suggest_questions(question: str, limit: int = 3) -> list[str]:
    """Up to ``limit`` example questions close to the one asked. Never empty."""
    q = (question or "").lower().strip()
    scored = sorted(
        ((SequenceMatcher(None, q, t.lower()).ratio(), t) for t in QUESTION_TEMPLATES),
        key=lambda x: (-x[0], x[1]),
    )
    out = [t for s, t in scored if s >= SUGGESTION_MIN_SCORE][:limit]
    if len(out) < limit:
        for word, template in _KEYWORDS.items():
            if word in q and template not in out:
                out.append(template)
    for template in QUESTION_TEMPLATES:
        if len(out) >= limit:
            break
        if template not in out:
            out.append(template)
    return out[:limit]


def _did_you_mean(names: list[str]) -> str:
    if len(names) == 1:
        return f"Did you mean {names[0]}?"
    return f"Did you mean {', '.join(names[:-1])} or {names[-1]}?"


def classify_failure(analysis: QuestionAnalysis | None, outcome) -> FailureReport:
    """Map an exception or PlanFailure to the user-facing report."""
    question = analysis.raw_question if analysis else ""

    if isinstance(outcome, PlanFailure):
        outcome = error_for(outcome.kind, outcome.message)
    if isinstance(outcome, ConnectionUnavailable):
        return FailureReport(outcome.kind, CONNECTION_APOLOGY, detail=outcome.detail or outcome.message)
    if isinstance(outcome, QueryExecutionFailure):
        return FailureReport(outcome.kind, GENERIC_APOLOGY, detail=outcome.detail or outcome.message)
    if isinstance(outcome, AmbiguousEntity):
        return FailureReport(outcome.kind, _did_you_mean(outcome.candidates), list(outcome.candidates))
    if isinstance(outcome, EntityNotFound):
        message = f'I couldn\'t find a {outcome.entity_type} named "{outcome.name}".'
        if outcome.suggestions:
            message += f" Did you mean: {', '.join(outcome.suggestions)}?"
        else:
            message += " Please check the spelling and try again."
        return FailureReport(outcome.kind, message, list(outcome.suggestions))
    if isinstance(outcome, ChatbotError):
        return FailureReport(outcome.kind, outcome.message or GENERIC_APOLOGY,
                             suggest_questions(question), detail=outcome.detail)
    return FailureReport(ErrorKind.QUERY_EXECUTION_ERROR, GENERIC_APOLOGY,
                         detail=f"{type(outcome).__name__}: {outcome}")


def _partially_matches(fragment: str, name: str) -> bool:
    frag = normalize_name(fragment).split()
    tokens = normalize_name(name).split()
    return bool(frag) and all(any(t.startswith(f) for t in tokens) for f in frag)


def check_results(analysis: QuestionAnalysis, rows: list[dict]) -> FailureReport | None:
    """Catch an empty result that came from a fuzzy name swap the user didn't type."""
    if rows or not analysis.entities or not analysis.name_fragment:
        return None
    used = analysis.primary_entity
    if _partially_matches(analysis.name_fragment, used):
        return None
    logger.info("Empty result for %r resolved from %r", used, analysis.name_fragment)
    return FailureReport(ErrorKind.ENTITY_NOT_FOUND, f"Did you mean {used}?", [used])


def failure_envelope(report: FailureReport, debug: bool = False) -> ResponseEnvelope:
    return ResponseEnvelope(
        answer=report.message,
        suggestions=list(report.suggestions),
        error_kind=report.kind.value,
        debug={"detail": report.detail} if debug and report.detail else None,
    )


def clarification_envelope(message: str, suggestions=(), kind: ErrorKind | None = None) -> ResponseEnvelope:
    return ResponseEnvelope(
        answer=message,
        suggestions=list(suggestions),
        error_kind=kind.value if kind else None,
    )
