from __future__ import annotations
import logging
import re
from abc import ABC, abstractmethod
from difflib import SequenceMatcher

import settings
from chat_models import EntityResolutionResult, FuzzyMatch
from ttl_cache import TTLCache

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("player", "team", "opposition")


class RosterSource(ABC):
    """Where canonical player / team / opposition names come from."""

    @abstractmethod
    def all_canonical_names(self, kind: str) -> list[str]:
        pass


class StaticRosterSource(RosterSource):
    """Fixed name lists, e.g. for a demo roster or tests."""

    def __init__(self, players=(), teams=(), oppositions=()):
        self._names = {
            "player": list(players),
            "team": list(teams),
            "opposition": list(oppositions),
        }

    def all_canonical_names(self, kind: str) -> list[str]:
        return list(self._names.get(kind, []))


def normalize_name(s: str) -> str:
    s = (s or "").strip()
    s = re.sub(r"[^\w\s]", "", s)
    s = re.sub(r"\s+", " ", s)
    return s.lower()


def _token_overlap(a: str, b: str) -> float:
    at, bt = a.split(), b.split()
    if not at or not bt:
        return 0.0
    total = 0.0
    for t in at:
        best = 0.0
        for u in bt:
            if t == u:
                best = 1.0
                break
            if len(t) >= 2 and len(u) >= 2 and (u.startswith(t) or t.startswith(u)):
                best = max(best, 0.8)
        total += best
    return total / max(len(at), len(bt))


def similarity(a: str, b: str) -> float:
    """Edit-distance / token-overlap hybrid in [0, 1]."""
    a, b = normalize_name(a), normalize_name(b)
    if not a or not b:
        return 0.0
    seq = SequenceMatcher(None, a, b).ratio()
    return round(0.6 * seq + 0.4 * _token_overlap(a, b), 4)


class EntityResolver:
    def __init__(
        self,
        source: RosterSource,
        min_confidence: float = settings.FUZZY_MIN_CONFIDENCE,
        decisive_margin: float = settings.FUZZY_DECISIVE_MARGIN,
        max_suggestions: int = settings.FUZZY_MAX_SUGGESTIONS,
        cache_ttl: float = settings.ROSTER_CACHE_TTL,
    ):
        self.source = source
        self.min_confidence = min_confidence
        self.decisive_margin = decisive_margin
        self.max_suggestions = max_suggestions
        self._cache = TTLCache(ttl=cache_ttl)

    def names(self, kind: str) -> list[str]:
        hit, names = self._cache.get(kind)
        if hit:
            return names
        names = [n for n in self.source.all_canonical_names(kind) if n]
        self._cache.set(kind, names)
        logger.debug("Loaded %d %s names", len(names), kind)
        return names

    def invalidate(self) -> None:
        self._cache.invalidate()

    def resolve(self, fragment: str, kind: str = "player") -> EntityResolutionResult:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {kind}")
        key = normalize_name(fragment)
        if not key:
            return EntityResolutionResult()

        names = self.names(kind)
        for n in names:
            if normalize_name(n) == key:
                return EntityResolutionResult(exact_match=n)

        scored = [(similarity(fragment, n), n) for n in names]
        scored = [(s, n) for s, n in scored if s >= self.min_confidence]
        scored.sort(key=lambda x: (-x[0], x[1]))
        matches = [FuzzyMatch(name=n, confidence=s) for s, n in scored[: self.max_suggestions]]

        ambiguous = (
            len(matches) >= 2
            and matches[0].confidence - matches[1].confidence < self.decisive_margin
        )
        if matches:
            logger.debug("Fuzzy %s match for %r: %s (ambiguous=%s)",
                         kind, fragment, [(m.name, m.confidence) for m in matches], ambiguous)
        return EntityResolutionResult(fuzzy_matches=matches, ambiguous=ambiguous)

    def partial_matches(self, fragment: str, kind: str = "player") -> list[str]:
        """Roster names one of whose words is the fragment (or, failing that, starts with it)."""
        key = normalize_name(fragment)
        if not key or " " in key:
            return []
        names = self.names(kind)
        exact = [n for n in names if key in normalize_name(n).split()]
        if exact:
            return sorted(exact)
        if len(key) < 3:
            return []
        return sorted(
            n for n in names if any(t.startswith(key) for t in normalize_name(n).split())
        )

    def suggestions(self, fragment: str, kind: str = "player") -> list[str]:
        """Loose "did you mean" candidates: fuzzy matches, then prefix and substring hits."""
        out = self.resolve(fragment, kind).candidates
        key = normalize_name(fragment)
        if key:
            names = self.names(kind)
            starts = [n for n in names if normalize_name(n).startswith(key)]
            contains = [n for n in names if key in normalize_name(n)]
            for n in starts + contains:
                if n not in out:
                    out.append(n)
        return out[: self.max_suggestions]
