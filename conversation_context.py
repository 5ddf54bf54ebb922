"""Per-session conversation state.

The store keeps the last few turns and any pending clarification for each
session id. Turns for the same session must not interleave: callers wrap a
whole turn in ``ConversationContextManager.session(session_id)``, which holds
that session's lock. Different sessions never block each other.
"""
from __future__ import annotations
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace

import settings
from chat_models import (
    PLAYER_SCOPED_TYPES,
    ConversationContext,
    HistoryEntry,
    PendingClarification,
    QuestionAnalysis,
    QuestionType,
)
from question_analyzer import CLUB_MARKERS, NON_NAME_WORDS, QUESTION_WORDS, extract_metrics

logger = logging.getLogger(__name__)


class ContextStore(ABC):
    """Storage for ConversationContext objects keyed by session id."""

    @abstractmethod
    def get(self, session_id: str) -> ConversationContext | None:
        pass

    @abstractmethod
    def put(self, context: ConversationContext) -> None:
        pass

    @abstractmethod
    def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    def lock(self, session_id: str):
        """A context manager giving exclusive access to one session."""
        pass


class InMemoryContextStore(ContextStore):
    """Single-process store with TTL eviction and one lock per busy session.

    A session's lock lives only while some turn holds or waits on it, so the
    lock table never outgrows the number of sessions in flight.
    """

    def __init__(self, ttl: float = settings.CONTEXT_TTL, clock=time.time):
        self.ttl = ttl
        self.clock = clock
        self._contexts: dict[str, ConversationContext] = {}
        self._locks: dict[str, list] = {}   # session id -> [RLock, users]
        self._guard = threading.Lock()

    def _expired(self, ctx: ConversationContext) -> bool:
        return self.clock() - ctx.updated_at >= self.ttl

    def get(self, session_id: str) -> ConversationContext | None:
        with self._guard:
            ctx = self._contexts.get(session_id)
            if ctx is not None and self._expired(ctx):
                del self._contexts[session_id]
                return None
            return ctx

    def put(self, context: ConversationContext) -> None:
        with self._guard:
            context.updated_at = self.clock()
            self._contexts[context.session_id] = context
        self.cleanup()

    def delete(self, session_id: str) -> None:
        with self._guard:
            self._contexts.pop(session_id, None)

    @contextmanager
    def lock(self, session_id: str):
        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = self._locks[session_id] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[session_id]

    def cleanup(self) -> int:
        """Drop expired sessions. Returns how many were removed."""
        with self._guard:
            stale = [sid for sid, ctx in self._contexts.items() if self._expired(ctx)]
            for sid in stale:
                del self._contexts[sid]
        if stale:
            logger.debug("Evicted %d expired sessions", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._contexts)


def get_context_store() -> ContextStore:
    """Build the store named by the CONTEXT_STORE environment variable."""
    provider = settings.CONTEXT_STORE.lower()
    if provider == "memory":
        return InMemoryContextStore()
    raise ValueError(f"Unknown CONTEXT_STORE={provider}")


CONTINUATION_RE = re.compile(
    r"\b(?:he|him|his|she|her|they|them|their|also|too|as well|what about|how about|and)\b", re.I)
_NAME_REPLY_RE = re.compile(r"[A-Za-z][A-Za-z'-]*(?:\s+[A-Za-z][A-Za-z'-]*)*")

# Question types that never take a player subject
_SUBJECTLESS_TYPES = frozenset({
    QuestionType.LEAGUE_TABLE,
    QuestionType.RANKING,
    QuestionType.FIXTURE,
    QuestionType.MILESTONE,
    QuestionType.CLARIFICATION_NEEDED,
})


def looks_like_name_reply(text: str, max_words: int = settings.CLARIFICATION_MAX_WORDS) -> bool:
    """Short, punctuation-free, alphabetic, not a question and not a statistic."""
    s = (text or "").strip()
    if not s or not _NAME_REPLY_RE.fullmatch(s):
        return False
    words = s.split()
    if len(words) > max_words or words[0].lower() in QUESTION_WORDS:
        return False
    if all(w.lower() in NON_NAME_WORDS for w in words):
        return False
    return not extract_metrics(s)


def spliced_name(fragment: str, reply: str) -> str:
    """The name a reply makes of the fragment: 'Tom' + 'Smith' -> 'Tom Smith'."""
    reply = reply.strip()
    # A surname completes a first name; anything fuller replaces the fragment
    if " " in fragment.strip() or " " in reply or reply.lower() == fragment.lower():
        return reply
    return f"{fragment} {reply}"


def splice_reply(original_question: str, fragment: str, reply: str) -> str | None:
    """Put the reply where the ambiguous fragment was."""
    pattern = re.compile(r"\b" + re.escape(fragment) + r"\b", re.I)
    if not pattern.search(original_question):
        return None
    return pattern.sub(spliced_name(fragment, reply), original_question, count=1)


def pick_candidate(name: str, candidates) -> str | None:
    """The one offered candidate whose name contains every word of ``name``."""
    words = name.lower().split()
    hits = [c for c in candidates if all(w in c.lower().split() for w in words)]
    return hits[0] if len(hits) == 1 else None


class ConversationContextManager:
    def __init__(self, store: ContextStore | None = None,
                 max_history: int = settings.MAX_HISTORY, clock=time.time):
        self.store = store or get_context_store()
        self.max_history = max_history
        self.clock = clock

    @contextmanager
    def session(self, session_id: str):
        with self.store.lock(session_id):
            yield

    def _context(self, session_id: str) -> ConversationContext:
        ctx = self.store.get(session_id)
        if ctx is None:
            ctx = ConversationContext(session_id=session_id, updated_at=self.clock())
        return ctx

    def reset(self, session_id: str) -> None:
        self.store.delete(session_id)

    # -- history ----------------------------------------------------------

    def add_to_history(self, session_id: str, question: str, analysis: QuestionAnalysis) -> None:
        ctx = self._context(session_id)
        if analysis.type is QuestionType.CLARIFICATION_NEEDED:
            ctx.pending_clarification = PendingClarification(
                original_question=question,
                message=analysis.clarification_message or "",
                partial_name=analysis.name_fragment,
                analysis=analysis,
                timestamp=self.clock(),
                candidates=analysis.candidates,
            )
        else:
            ctx.pending_clarification = None
            ctx.history.insert(0, HistoryEntry(
                question=question,
                entities=analysis.entities,
                metrics=analysis.metrics,
                analysis=analysis,
                timestamp=self.clock(),
            ))
            del ctx.history[self.max_history:]
        self.store.put(ctx)

    def history(self, session_id: str) -> list[HistoryEntry]:
        ctx = self.store.get(session_id)
        return list(ctx.history) if ctx else []

    # -- pending clarification -------------------------------------------

    def set_pending_clarification(self, session_id: str, original_question: str, message: str,
                                  analysis: QuestionAnalysis, partial_name: str | None = None,
                                  candidates=()) -> None:
        ctx = self._context(session_id)
        ctx.pending_clarification = PendingClarification(
            original_question=original_question,
            message=message,
            partial_name=partial_name,
            analysis=analysis,
            timestamp=self.clock(),
            candidates=tuple(candidates),
        )
        self.store.put(ctx)

    def get_pending_clarification(self, session_id: str) -> PendingClarification | None:
        ctx = self.store.get(session_id)
        return ctx.pending_clarification if ctx else None

    def clear_pending_clarification(self, session_id: str) -> None:
        ctx = self.store.get(session_id)
        if ctx is not None and ctx.pending_clarification is not None:
            ctx.pending_clarification = None
            self.store.put(ctx)

    def combine_with_pending(self, session_id: str, reply: str) -> str | None:
        """The original question with the reply spliced in, or None if the reply is a new question."""
        pending = self.get_pending_clarification(session_id)
        if pending is None or not looks_like_name_reply(reply):
            return None
        if pending.partial_name:
            name = spliced_name(pending.partial_name, reply)
            if pending.candidates:
                name = pick_candidate(name, pending.candidates)
                if name is None:
                    logger.debug("Reply %r names none of %s", reply, pending.candidates)
                    return None
            combined = splice_reply(pending.original_question, pending.partial_name, name)
        else:
            # "Which player?" -> "Luke Bangs"
            combined = f"{pending.original_question.strip()} {reply.strip()}".strip()
        if combined:
            logger.debug("Clarification reply %r -> %r", reply, combined)
        return combined

    # -- merge --------------------------------------------------------------

    def merge_context(self, session_id: str, analysis: QuestionAnalysis) -> QuestionAnalysis:
        """Fill gaps in this turn's analysis from the previous turn."""
        ctx = self.store.get(session_id)
        if ctx is None or not ctx.history or analysis.type in _SUBJECTLESS_TYPES:
            return analysis
        prev = ctx.history[0].analysis
        text = analysis.normalized_question
        continuation = bool(CONTINUATION_RE.search(text))
        changes: dict = {}

        carry_entity = (
            not analysis.entities
            and prev.entities
            and not CLUB_MARKERS.search(text)
            and (continuation or not analysis.team_entities)
        )
        if carry_entity:
            changes["entities"] = prev.entities[:1]
            changes["name_fragment"] = prev.entities[0]
            if analysis.type in (QuestionType.GENERAL, QuestionType.CLUB, QuestionType.TEAM):
                changes["type"] = (QuestionType.TEMPORAL if analysis.time_range
                                   else QuestionType.PLAYER)

        if not analysis.metrics and prev.metrics and (continuation or carry_entity):
            changes["metrics"] = prev.metrics
            if analysis.type is QuestionType.GENERAL and analysis.team_entities and "type" not in changes:
                changes["type"] = QuestionType.TEAM

        if continuation and analysis.time_range is None and analysis.season is None:
            if prev.time_range is not None:
                changes["time_range"] = prev.time_range
            if prev.season is not None:
                changes["season"] = prev.season

        if not changes:
            return analysis

        merged = replace(analysis, **changes)
        if merged.type in PLAYER_SCOPED_TYPES and merged.entities and merged.metrics:
            merged = replace(merged, confidence=max(merged.confidence, 0.7))
        logger.debug("Merged context for %s: %s", session_id, sorted(changes))
        return merged
