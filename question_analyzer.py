"""Rule-based question analysis.

A question goes through small matcher functions (names, metrics, teams,
filters) and then an ordered list of intent detectors; the first detector that
fires decides the question type. Nothing here raises on odd input: an
unusable question comes back as ``clarification_needed`` or ``general``.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Callable

import settings
from chat_models import PLAYER_SCOPED_TYPES, QuestionAnalysis, QuestionType, TimeRange
from metric_registry import aliases_by_specificity

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'", "´": "'",
                              "“": '"', "”": '"'})

COLLOQUIALISMS = (
    (re.compile(r"\bbang(?:ed|s)? in\b"), "scored"),
    (re.compile(r"\bbagged\b", re.I), "scored"),
    (re.compile(r"\bnetted\b", re.I), "scored"),
    (re.compile(r"\bput away\b", re.I), "scored"),
    (re.compile(r"\bgot on the scoresheet\b", re.I), "scored"),
    (re.compile(r"\bfound the net\b", re.I), "scored"),
    (re.compile(r"\bturned out\b", re.I), "played"),
)


def normalize(question: str) -> str:
    """Unify apostrophes, swap colloquial verbs, collapse whitespace. Case is kept."""
    text = (question or "").translate(_APOSTROPHES)
    for pattern, repl in COLLOQUIALISMS:
        text = pattern.sub(repl, text)
    return re.sub(r"\s+", " ", text).strip()


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

_ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4,
    "fifth": 5, "sixth": 6, "seventh": 7, "eighth": 8,
}
_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_MONTH_WORDS = {
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december", *_MONTHS, "sept",
}
_CALENDAR_WORDS = {
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "mondays", "tuesdays", "wednesdays", "thursdays", "fridays", "saturdays", "sundays",
    "weekend", "weekends", "weekday", "weekdays", "today", "yesterday", "tonight",
    "christmas", "easter",
}

_TEAM_RE = re.compile(
    r"\b(?:([1-8])(?:s|st|nd|rd|th)"
    r"|(first|second|third|fourth|fifth|sixth|seventh|eighth)(?=\s+(?:team|teams|xi|side|eleven)\b))"
    r"(?:\s+(?:team|teams|xi|side|eleven))?\b"
    r"(?!\s+(?:of\b|" + "|".join(_MONTHS) + r"))",
    re.I,
)


def _ordinal_suffix(n: int) -> str:
    return {1: "st", 2: "nd", 3: "rd"}.get(n, "th")


def team_label(n: int) -> str:
    return f"{n}{_ordinal_suffix(n)} XI"


def map_team(text: str) -> str | None:
    """'2s', '2nd', 'second team' -> '2nd XI'."""
    m = _TEAM_RE.fullmatch((text or "").strip())
    if not m:
        return None
    n = int(m.group(1)) if m.group(1) else _ORDINAL_WORDS[m.group(2).lower()]
    return team_label(n)


def extract_teams(text: str) -> tuple[list[str], list[tuple[int, int]]]:
    teams, spans = [], []
    for m in _TEAM_RE.finditer(text):
        n = int(m.group(1)) if m.group(1) else _ORDINAL_WORDS[m.group(2).lower()]
        label = team_label(n)
        if label not in teams:
            teams.append(label)
        spans.append(m.span())
    return teams, spans


# ---------------------------------------------------------------------------
# Seasons and dates
# ---------------------------------------------------------------------------

SEASON_START_MONTH = 9

_SEASON_RE = re.compile(r"\b(20\d{2})\s*[/-]\s*(20\d{2}|\d{2})\b")
_SEASON_WORD_RE = re.compile(r"\b(20\d{2})\s+season\b", re.I)
_RELATIVE_SEASON_RE = re.compile(r"\b(this|current|last|previous)\s+season\b", re.I)

_NUMERIC_DATE = r"\d{1,2}/\d{1,2}/\d{4}"
_WORD_DATE = r"\d{1,2}(?:st|nd|rd|th)?\s+(?:" + "|".join(_MONTHS) + r")[a-z]*\s+\d{4}"
_DATE = rf"(?:{_NUMERIC_DATE}|{_WORD_DATE})"
_SEASON = r"20\d{2}\s*[/-]\s*(?:20\d{2}|\d{2})"
_POINT = rf"(?:{_DATE}|{_SEASON}|20\d{{2}})"

_BETWEEN_RE = re.compile(rf"\bbetween\s+({_POINT})\s+and\s+({_POINT})", re.I)
_FROM_TO_RE = re.compile(rf"\bfrom\s+({_POINT})\s+(?:to|until|till)\s+({_POINT})", re.I)
_SINCE_RE = re.compile(rf"\b(?:since|after)\s+(?:the\s+)?(?:start\s+of\s+)?({_POINT})", re.I)
_BEFORE_RE = re.compile(rf"\b(?:before|prior\s+to)\s+(?:the\s+)?({_POINT})", re.I)
_IN_YEAR_RE = re.compile(r"\b(?:in|during)\s+(20\d{2})\b(?!\s*[/-]\s*\d)(?!\s+season)", re.I)


def season_label(start_year: int) -> str:
    return f"{start_year}/{str(start_year + 1)[-2:]}"


def normalize_season(raw: str) -> str | None:
    """'2019-20', '2019/2020', '2019 / 20' -> '2019/20'."""
    m = _SEASON_RE.search(raw or "")
    if not m:
        return None
    return season_label(int(m.group(1)))


def current_season(today: date) -> str:
    start = today.year if today.month >= SEASON_START_MONTH else today.year - 1
    return season_label(start)


def season_start(season: str) -> date:
    return date(int(season[:4]), SEASON_START_MONTH, 1)


def parse_date(raw: str) -> date | None:
    raw = raw.strip()
    m = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", raw)
    if m:
        d, mth, y = (int(x) for x in m.groups())
    else:
        m = re.fullmatch(r"(\d{1,2})(?:st|nd|rd|th)?\s+([a-z]+)\s+(\d{4})", raw, re.I)
        if not m:
            return None
        prefix = m.group(2)[:3].lower()
        if prefix not in _MONTHS:
            return None
        d, mth, y = int(m.group(1)), _MONTHS.index(prefix) + 1, int(m.group(3))
    try:
        return date(y, mth, d)
    except ValueError:
        return None


def _point_start(raw: str) -> date | None:
    """First day a point in time covers."""
    season = normalize_season(raw)
    if season:
        return season_start(season)
    if re.fullmatch(r"20\d{2}", raw.strip()):
        return date(int(raw), 1, 1)
    return parse_date(raw)


def _point_end(raw: str) -> date | None:
    """Last day a point in time covers."""
    season = normalize_season(raw)
    if season:
        return date(int(season[:4]) + 1, SEASON_START_MONTH, 1) - timedelta(days=1)
    if re.fullmatch(r"20\d{2}", raw.strip()):
        return date(int(raw), 12, 31)
    return parse_date(raw)


def extract_time_range(text: str) -> tuple[TimeRange | None, list[tuple[int, int]]]:
    """Explicit ranges: between/from-to, since/after, before, in YEAR."""
    for rx in (_BETWEEN_RE, _FROM_TO_RE):
        m = rx.search(text)
        if m:
            start, end = _point_start(m.group(1)), _point_end(m.group(2))
            if start and end:
                if start > end:
                    start, end = _point_start(m.group(2)), _point_end(m.group(1))
                return TimeRange(start.isoformat(), end.isoformat()), [m.span()]

    m = _SINCE_RE.search(text)
    if m:
        raw = m.group(1).strip()
        if re.fullmatch(r"20\d{2}", raw):
            # a bare year means "after that year"
            start = date(int(raw) + 1, 1, 1)
        else:
            start = _point_start(raw)
        if start:
            return TimeRange(date_from=start.isoformat()), [m.span()]

    m = _BEFORE_RE.search(text)
    if m:
        start = _point_start(m.group(1))
        if start:
            return TimeRange(date_to=(start - timedelta(days=1)).isoformat()), [m.span()]

    m = _IN_YEAR_RE.search(text)
    if m:
        y = int(m.group(1))
        return TimeRange(date(y, 1, 1).isoformat(), date(y, 12, 31).isoformat()), [m.span()]

    return None, []


def extract_season(text: str, today: date) -> tuple[str | None, list[tuple[int, int]]]:
    m = _SEASON_RE.search(text)
    if m:
        return season_label(int(m.group(1))), [m.span()]
    m = _SEASON_WORD_RE.search(text)
    if m:
        return season_label(int(m.group(1))), [m.span()]
    m = _RELATIVE_SEASON_RE.search(text)
    if m:
        current = current_season(today)
        if m.group(1).lower() in ("last", "previous"):
            return season_label(int(current[:4]) - 1), [m.span()]
        return current, [m.span()]
    return None, []


# ---------------------------------------------------------------------------
# Other filters
# ---------------------------------------------------------------------------

_HOME_RE = re.compile(r"\b(?:at home|home (?:games|matches|fixtures)|at pixham)\b", re.I)
_AWAY_RE = re.compile(r"\b(?:away from home|away (?:games|matches|fixtures)|on the road|away)\b", re.I)

COMPETITIONS = {
    "afa senior cup": "AFA Senior Cup",
    "senior cup": "AFA Senior Cup",
    "afa intermediate cup": "AFA Intermediate Cup",
    "intermediate cup": "AFA Intermediate Cup",
    "afa junior cup": "AFA Junior Cup",
    "junior cup": "AFA Junior Cup",
    "old boys cup": "London Old Boys Cup",
    "london old boys cup": "London Old Boys Cup",
    "amateur football combination": "Amateur Football Combination",
    "afc": "Amateur Football Combination",
}
_COMPETITION_RES = [
    (re.compile(r"\b" + re.escape(alias) + r"\b", re.I), name)
    for alias, name in sorted(COMPETITIONS.items(), key=lambda kv: -len(kv[0]))
]

_COMP_TYPE_RES = (
    (re.compile(r"\b(?:in\s+(?:the\s+)?league|league\s+(?:games|matches|fixtures|goals|appearances))\b", re.I), "league"),
    (re.compile(r"\b(?:in\s+(?:the\s+)?cups?|cup\s+(?:games|matches|fixtures|ties|goals|appearances))\b", re.I), "cup"),
    (re.compile(r"\b(?:in\s+friendlies|friendly\s+(?:games|matches|fixtures))\b", re.I), "friendly"),
)

_RESULT_RES = (
    (re.compile(r"\bin\s+(?:our\s+|the\s+)?(?:wins|victories|winning\s+games)\b|\bin\s+games\s+(?:we|they)\s+won\b", re.I), "W"),
    (re.compile(r"\bin\s+(?:our\s+|the\s+)?draws\b|\bin\s+(?:drawn\s+games|games\s+(?:we|they)\s+drew)\b", re.I), "D"),
    (re.compile(r"\bin\s+(?:our\s+|the\s+)?(?:defeats|losses)\b|\bin\s+games\s+(?:we|they)\s+lost\b", re.I), "L"),
)

_PER_SEASON_RE = re.compile(r"\b(?:per|each|every|by)\s+season\b|\bseason\s+by\s+season\b", re.I)
_TOP_N_RE = re.compile(r"\btop\s+(\d{1,3})\b", re.I)
_ASC_RE = re.compile(r"\b(?:least|fewest|lowest|worst)\b", re.I)
_MILESTONE_NUMBER_RE = re.compile(
    r"\b(?:closest to|nearest to|close to|reach(?:ing)?|hit(?:ting)?|milestone of)\s+(\d{1,4})\b", re.I)


def extract_locations(text: str) -> list[str]:
    out = []
    if _HOME_RE.search(text):
        out.append("home")
    if _AWAY_RE.search(text):
        out.append("away")
    return out


def extract_competitions(text: str) -> tuple[list[str], list[tuple[int, int]]]:
    names, spans = [], []
    taken: list[tuple[int, int]] = []
    for rx, name in _COMPETITION_RES:
        for m in rx.finditer(text):
            if _overlaps(m.span(), taken):
                continue
            taken.append(m.span())
            if name not in names:
                names.append(name)
            spans.append(m.span())
    return names, spans


def extract_competition_types(text: str) -> list[str]:
    return [kind for rx, kind in _COMP_TYPE_RES if rx.search(text)]


def extract_results(text: str) -> list[str]:
    return [code for rx, code in _RESULT_RES if rx.search(text)]


# ---------------------------------------------------------------------------
# Opposition and player names
# ---------------------------------------------------------------------------

_CAP = r"[A-Z][\w'&.-]*"
_OPPOSITION_CAP_RE = re.compile(
    rf"\b(?:against|vs\.?|versus|v)\s+(?:the\s+)?({_CAP}(?:\s+(?:{_CAP}|of|and|&))*)")
_OPPOSITION_LOWER_RE = re.compile(
    r"\b(?:against|vs\.?|versus)\s+(?:the\s+)?([a-z][\w'&.-]*(?:\s+[a-z][\w'&.-]*){0,3}?)"
    r"(?=\s+(?:in|during|since|before|after|at|for|this|last|between|on|when)\b|\s*[?.!,]|\s*$)",
    re.I,
)

_NAME_VERBS = (
    r"scored|score|scores|made|make|got|get|kept|keep|received|receive|played|play|won|win|"
    r"missed|miss|saved|save|conceded|concede|provided|provide|earned|earn|had|recorded|record|"
    r"registered|averaged|average|taken|take|managed|assisted|assist|racked up|picked up|been|have"
)
_HAS_NAME_VERB_RE = re.compile(
    r"\b(?:has|have|did|does|do|is)\s+([A-Za-z][\w'-]*(?:\s+[A-Za-z][\w'-]*){0,3}?)\s+(?:" + _NAME_VERBS + r")\b",
    re.I,
)
_POSSESSIVE_RE = re.compile(rf"\b({_CAP}(?:\s+{_CAP}){{0,3}})(?:'s\b|(?<=s)'(?=\s|$))")
_PREPOSITION_NAME_RE = re.compile(rf"\b(?:for|by|about|of|from)\s+({_CAP}(?:\s+{_CAP}){{0,3}})")
_CAP_RUN_RE = re.compile(rf"\b{_CAP}(?:\s+{_CAP})*")

QUESTION_WORDS = {
    "how", "what", "who", "whom", "whose", "which", "when", "where", "why",
    "is", "are", "was", "were", "did", "does", "do", "has", "have", "had",
    "can", "could", "would", "will", "show", "tell", "give", "list", "find", "compare",
}
FIRST_PERSON = {"i", "me", "my", "mine", "myself", "i've", "ive", "im", "i'm"}
THIRD_PERSON = {"he", "him", "his", "she", "her", "hers", "they", "them", "their", "theirs", "he's", "she's"}
CLUB_MARKERS = re.compile(r"\b(?:we|us|our|the club|whole club|club)\b", re.I)
WHICH_PLAYER_MESSAGE = "Which player are you asking about?"

NON_NAME_WORDS = (
    QUESTION_WORDS | FIRST_PERSON | THIRD_PERSON | _MONTH_WORDS | _CALENDAR_WORDS | {
        "the", "a", "an", "and", "or", "in", "on", "at", "for", "of", "to", "vs", "versus",
        "against", "it", "we", "us", "our", "this", "that", "these", "those", "there",
        "season", "seasons", "team", "teams", "club", "league", "cup", "division", "xi",
        "home", "away", "total", "many", "much", "most", "least", "top", "best", "all",
        "time", "career", "player", "players", "games", "game", "match", "matches",
        "ever", "also", "too", "so", "far", "per", "each", "every", "since", "before",
        "after", "between", "during", "than", "more", "fewer", "same", "any", "not",
        "afa", "senior", "junior", "intermediate", "premier", "won", "win", "pixham",
        "football", "fc", "stats", "statistics", "record", "details", "please", "yes", "no",
    }
)


def _overlaps(span: tuple[int, int], spans: list[tuple[int, int]]) -> bool:
    return any(span[0] < e and s < span[1] for s, e in spans)


def _mask(text: str, spans: list[tuple[int, int]]) -> str:
    chars = list(text)
    for s, e in spans:
        for i in range(s, min(e, len(chars))):
            chars[i] = " "
    return "".join(chars)


def _clean_name(span: str, club_name: str = "") -> str | None:
    tokens = []
    for tok in span.split():
        tok = re.sub(r"'s$|'$", "", tok).strip(".,?!\"")
        if not tok:
            continue
        low = tok.lower()
        if low in NON_NAME_WORDS or low == club_name.lower() or any(ch.isdigit() for ch in tok):
            if tokens:
                break
            continue
        tokens.append(tok)
    if not tokens:
        return None
    return " ".join(t if any(c.isupper() for c in t) else t[:1].upper() + t[1:] for t in tokens)


def _is_filler(span: str) -> bool:
    return all(t.lower() in NON_NAME_WORDS for t in span.split())


def extract_oppositions(text: str) -> tuple[list[str], list[tuple[int, int]]]:
    names, spans = [], []
    for m in _OPPOSITION_CAP_RE.finditer(text):
        name = re.sub(r"\s+(?:of|and|&)$", "", m.group(1)).strip(" .,?!")
        if name and name not in names and not _is_filler(name):
            names.append(name)
            spans.append(m.span())
    if not names:
        m = _OPPOSITION_LOWER_RE.search(text)
        if m and not _TEAM_RE.fullmatch(m.group(1)) and not _is_filler(m.group(1)):
            name = " ".join(t[:1].upper() + t[1:] for t in m.group(1).split())
            names.append(name)
            spans.append(m.span())
    return names, spans


def extract_player_names(text: str, club_name: str = "",
                         skip_spans: list[tuple[int, int]] = ()) -> list[tuple[str, str]]:
    """Name-like spans in order of appearance as (clean name, raw fragment).

    ``text`` must already have team, opposition, competition and date spans
    blanked out. ``skip_spans`` (metric phrases) are hidden from the
    capitalization heuristic only, since the positional patterns need the verbs.
    """
    found: list[tuple[int, str, str]] = []
    taken: list[tuple[int, int]] = []

    def _add(m: re.Match, group: int = 1) -> None:
        span = m.span(group)
        if _overlaps(span, taken):
            return
        name = _clean_name(m.group(group), club_name)
        if not name:
            return
        taken.append(span)
        found.append((span[0], name, m.group(group).strip()))

    for m in _POSSESSIVE_RE.finditer(text):
        _add(m)
    for m in _HAS_NAME_VERB_RE.finditer(text):
        _add(m)
    for m in _PREPOSITION_NAME_RE.finditer(text):
        _add(m)

    # Capitalization heuristic for whatever the positional patterns missed
    for m in _CAP_RUN_RE.finditer(_mask(text, list(skip_spans))):
        if _overlaps(m.span(), taken):
            continue
        name = _clean_name(m.group(0), club_name)
        if not name:
            continue
        # A lone capitalized word opening the sentence is just a capital letter
        if m.start() == 0 and " " not in name and name.lower() == m.group(0).split()[0].lower():
            continue
        taken.append(m.span())
        found.append((m.start(), name, m.group(0).strip()))

    found.sort(key=lambda x: x[0])
    out, seen = [], set()
    for _, name, raw in found:
        if name.lower() in seen:
            continue
        seen.add(name.lower())
        out.append((name, raw))
    return out


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_PENALTY_VERB_KEYS = {"scored": "PSC", "missed": "PM", "saved": "PSV", "conceded": "PCO"}
_RESULT_VERB_KEYS = {"won": "WINS", "win": "WINS", "drawn": "DRAWS", "drew": "DRAWS", "draw": "DRAWS",
                     "lost": "LOSSES", "lose": "LOSSES"}


def _games_result_key(m: re.Match) -> str:
    """'home games ... won' -> HOMEWINS, 'games ... drawn' -> DRAWS."""
    key = _RESULT_VERB_KEYS[m.group(2).lower()]
    if key == "WINS" and m.group(1):
        return m.group(1).upper() + "WINS"
    return key


# Phrases whose words are split around the player's name. Checked before the
# contiguous aliases.
SPLIT_METRIC_MATCHERS = (
    (re.compile(r"(?:\bpercentage|%)\s+of\s+(?:(home|away)\s+)?(?:games|matches)\b"
                r"(?:\W+\w+){0,6}?\W+(?:won|win)\b", re.I),
     lambda m: (m.group(1) or "").upper() + "GAMES%WON"),
    (re.compile(r"(?<!\bin\s)\b(?:(home|away)\s+)?(?:games|matches)\b(?:\W+\w+){0,5}?\W+"
                r"(won|win|drawn|drew|draw|lost|lose)\b", re.I),
     _games_result_key),
    (re.compile(r"\bpenalt(?:y|ies)\b(?:\W+\w+){0,5}?\W+(scored|missed|saved|conceded)\b", re.I),
     lambda m: _PENALTY_VERB_KEYS[m.group(1).lower()]),
    (re.compile(r"\bgoals?\b(?:\W+\w+){0,6}?\W+(?:per\s+(?:game|appearance|match|app)|on\s+average)\b", re.I),
     lambda m: "GperAPP"),
    (re.compile(r"\bminutes\b(?:\W+\w+){0,6}?\W+per\s+goal\b", re.I),
     lambda m: "MperG"),
    (re.compile(r"\bgoals?\b(?:\W+\w+){0,5}?\W+conceded\b", re.I),
     lambda m: "C"),
    (re.compile(r"\bgoals?\s+(?:and|\+|&)\s+assists\b", re.I),
     lambda m: "GI"),
)

_ALIAS_RES = [
    (re.compile(r"(?<![\w%])" + re.escape(alias) + r"(?!\w)", re.I), key)
    for alias, key in aliases_by_specificity()
]


def metric_hits(text: str) -> list[tuple[int, int, str]]:
    """(start, end, key) for every metric phrase, most specific phrase wins."""
    hits: list[tuple[int, int, str]] = []
    taken: list[tuple[int, int]] = []
    for rx, to_key in SPLIT_METRIC_MATCHERS:
        for m in rx.finditer(text):
            if _overlaps(m.span(), taken):
                continue
            taken.append(m.span())
            hits.append((m.start(), m.end(), to_key(m)))
    for rx, key in _ALIAS_RES:
        for m in rx.finditer(text):
            if _overlaps(m.span(), taken):
                continue
            taken.append(m.span())
            hits.append((m.start(), m.end(), key))
    hits.sort(key=lambda h: h[0])
    return hits


def extract_metrics(text: str) -> list[str]:
    """Canonical metric keys in order of appearance."""
    out: list[str] = []
    for _, _, key in metric_hits(text):
        if key not in out:
            out.append(key)
    return out


# ---------------------------------------------------------------------------
# Intent detection
# ---------------------------------------------------------------------------

@dataclass
class _Signals:
    text: str
    lower: str
    entities: list[str]
    teams: list[str]
    oppositions: list[str]
    metrics: list[str]
    time_range: TimeRange | None
    season: str | None
    results: list[str] = field(default_factory=list)


_LEAGUE_TABLE_RE = re.compile(
    r"\b(?:won|win|winners?\s+of|champions?\s+of|top\s+of)\s+(?:the\s+)?(?:league|division)\b"
    r"|\bleague\s+(?:table|position|standings?|finish)\b"
    r"|\bwhere\s+did\b.*\bfinish\b"
    r"|\bfinish(?:ed)?\s+(?:in\s+the\s+league|top|bottom|\d+(?:st|nd|rd|th))\b"
    r"|\bwhat\s+position\b"
    r"|\bwho\s+were\s+(?:the\s+)?champions\b",
    re.I,
)
_STREAK_RE = re.compile(r"\b(?:in a row|consecutive|streak|run of|successive|straight games)\b", re.I)
_DOUBLE_GAME_RE = re.compile(r"\bdouble\s+game", re.I)
_MILESTONE_RE = re.compile(
    r"\b(?:closest to|nearest to|milestones?|next to reach|about to reach|close to reaching)\b", re.I)
_TEAMMATES_RE = re.compile(
    r"\bplay(?:ed|s|ing)?\s+(?:(?:the\s+)?most\s+(?:(?:games|matches)\s+)?)?(?:with|alongside)\b"
    r"(?!\s+(?:the\s+)?(?:[1-8](?:s|st|nd|rd|th)|first|second|third|fourth|fifth|sixth|seventh|eighth)\b)"
    r"|\bteam[- ]?mates?\b",
    re.I,
)
_RANKING_RE = re.compile(
    r"\b(?:who|which\s+players?)\b.*\b(?:most|fewest|least|highest|lowest|best|top)\b"
    r"|\btop\s+\d*\s*(?:goal)?(?:scorers?|players?|assisters?|appearance\s+makers?)\b"
    r"|\b(?:leading|all[- ]time)\s+(?:goal)?(?:scorers?|appearance\s+makers?)\b"
    r"|\bmost\s+(?!recent\b)\w+",
    re.I,
)
_FIXTURE_RE = re.compile(
    r"\b(?:biggest|largest|heaviest|worst|best)\s+(?:win|victory|defeat|loss|result)\b"
    r"|\b(?:last|most\s+recent|latest|previous)\s+(?:game|match|fixture|result)s?\b"
    r"|\bresults?\s+(?:against|vs|v)\b"
    r"|\bwhen\s+did\b.*\bplay\b"
    r"|\bfixtures?\b|\bresults\b"
    r"|\bhow\s+did\b.*\b(?:get\s+on|do)\b",
    re.I,
)


def _is_league_table(s: _Signals) -> bool:
    return bool(_LEAGUE_TABLE_RE.search(s.text)) and not s.entities


def _is_streak(s: _Signals) -> bool:
    return bool(_STREAK_RE.search(s.text))


def _is_double_game(s: _Signals) -> bool:
    return bool(_DOUBLE_GAME_RE.search(s.text))


def _is_milestone(s: _Signals) -> bool:
    return bool(_MILESTONE_RE.search(s.text)) and not s.entities


def _is_teammates(s: _Signals) -> bool:
    return bool(_TEAMMATES_RE.search(s.text))


def _is_comparison(s: _Signals) -> bool:
    return len(s.entities) >= 2


def _is_ranking(s: _Signals) -> bool:
    return not s.entities and bool(_RANKING_RE.search(s.text))


def _is_fixture(s: _Signals) -> bool:
    return not s.entities and bool(_FIXTURE_RE.search(s.text))


def _is_temporal(s: _Signals) -> bool:
    return bool(s.entities) and s.time_range is not None


def _is_player(s: _Signals) -> bool:
    return bool(s.entities)


def _is_team(s: _Signals) -> bool:
    return bool(s.teams) and bool(s.metrics)


def _is_club(s: _Signals) -> bool:
    return bool(s.metrics) or bool(CLUB_MARKERS.search(s.text))


# Order is precedence: the first detector that fires wins. A named player
# outranks team and club aggregates because those detectors come later.
INTENT_DETECTORS: tuple[tuple[QuestionType, Callable[[_Signals], bool]], ...] = (
    (QuestionType.LEAGUE_TABLE, _is_league_table),
    (QuestionType.STREAK, _is_streak),
    (QuestionType.DOUBLE_GAME, _is_double_game),
    (QuestionType.MILESTONE, _is_milestone),
    (QuestionType.TEAMMATES, _is_teammates),
    (QuestionType.COMPARISON, _is_comparison),
    (QuestionType.RANKING, _is_ranking),
    (QuestionType.FIXTURE, _is_fixture),
    (QuestionType.TEMPORAL, _is_temporal),
    (QuestionType.PLAYER, _is_player),
    (QuestionType.TEAM, _is_team),
    (QuestionType.CLUB, _is_club),
)


def detect_intent(s: _Signals) -> QuestionType:
    for qtype, detector in INTENT_DETECTORS:
        if detector(s):
            return qtype
    return QuestionType.GENERAL


# Default metric for intents that imply one
_IMPLIED_METRICS = {
    QuestionType.DOUBLE_GAME: "DGW",
    QuestionType.STREAK: "G",
    QuestionType.MILESTONE: "APP",
    QuestionType.TEAMMATES: "APP",
}

# Metrics that already carry a home/away condition
_LOCATION_METRICS = {
    "HOME": "home", "HOMEWINS": "home", "HOMEGAMES%WON": "home",
    "AWAY": "away", "AWAYWINS": "away", "AWAYGAMES%WON": "away",
}


def _required_slots(qtype: QuestionType, s: _Signals) -> list[bool]:
    if qtype in PLAYER_SCOPED_TYPES:
        return [bool(s.entities), bool(s.metrics)]
    if qtype is QuestionType.COMPARISON:
        return [len(s.entities) >= 2, bool(s.metrics)]
    if qtype is QuestionType.TEAM:
        return [bool(s.teams), bool(s.metrics)]
    if qtype in (QuestionType.RANKING, QuestionType.CLUB, QuestionType.MILESTONE):
        return [bool(s.metrics)]
    if qtype is QuestionType.LEAGUE_TABLE:
        return [bool(s.season or s.teams)]
    if qtype is QuestionType.FIXTURE:
        return [True]
    return [False]


def _confidence(qtype: QuestionType, s: _Signals) -> float:
    if qtype is QuestionType.GENERAL:
        return 0.2
    slots = _required_slots(qtype, s)
    return round(0.3 + 0.7 * sum(slots) / len(slots), 2)


def _join_names(names: list[str]) -> str:
    if len(names) <= 1:
        return "".join(names)
    return ", ".join(names[:-1]) + " and " + names[-1]


class QuestionAnalyzer:
    """Turns a question into a ``QuestionAnalysis``.

    ``resolver`` (an ``EntityResolver``) is optional; without it the
    single-name ambiguity check and the "vs <player>" rescue are skipped.
    """

    def __init__(self, resolver=None, today: Callable[[], date] = date.today,
                 club_name: str = settings.CLUB_NAME):
        self.resolver = resolver
        self.today = today
        self.club_name = club_name

    def analyze(self, question: str, hint_entity: str | None = None) -> QuestionAnalysis:
        raw = question if isinstance(question, str) else ""
        text = normalize(raw)
        lower = text.lower()

        if not re.search(r"[A-Za-z]", text):
            return QuestionAnalysis(
                type=QuestionType.CLARIFICATION_NEEDED,
                raw_question=raw,
                normalized_question=lower,
                requires_clarification=True,
                clarification_message=(
                    "Please ask me a question about the club's players, teams or results."
                ),
            )

        time_range, range_spans = extract_time_range(text)
        season, season_spans = extract_season(_mask(text, range_spans), self.today())
        teams, team_spans = extract_teams(text)
        competitions, comp_spans = extract_competitions(text)
        oppositions, opp_spans = extract_oppositions(_mask(text, team_spans))

        # "Luke Bangs vs Oli Goddard" names a player, not an opposition club
        player_vs = []
        if self.resolver is not None:
            for opp in list(oppositions):
                if self.resolver.resolve(opp, "player").exact_match:
                    player_vs.append(opp)
                    oppositions.remove(opp)

        masked = _mask(text, range_spans + season_spans + team_spans + comp_spans + opp_spans)
        hits = metric_hits(masked)
        named = extract_player_names(masked, self.club_name, [(s, e) for s, e, _ in hits])
        for p in player_vs:
            named.append((p, p))

        tokens = set(re.findall(r"[a-z']+", lower))
        entities = [n for n, _ in named]
        fragment = named[0][1] if named else None
        if hint_entity and tokens & FIRST_PERSON:
            entities = [hint_entity] + [e for e in entities if e != hint_entity]
            fragment = hint_entity

        metrics = []
        for _, _, key in hits:
            if key not in metrics:
                metrics.append(key)
        locations = extract_locations(text)
        results = extract_results(text)

        signals = _Signals(
            text=text, lower=lower, entities=entities, teams=teams,
            oppositions=oppositions, metrics=metrics, time_range=time_range,
            season=season, results=results,
        )
        qtype = detect_intent(signals)

        # A selected player stands in for a missing subject
        if (
            hint_entity
            and not entities
            and not teams
            and metrics
            and qtype in (QuestionType.CLUB, QuestionType.GENERAL)
            and not CLUB_MARKERS.search(text)
            and not tokens & THIRD_PERSON
        ):
            entities = [hint_entity]
            fragment = hint_entity
            signals.entities = entities
            qtype = detect_intent(signals)

        # "How many goals have I scored?" with nobody selected
        if (
            not entities
            and (metrics or qtype is QuestionType.TEAMMATES)
            and tokens & FIRST_PERSON
            and qtype in (QuestionType.CLUB, QuestionType.GENERAL, QuestionType.TEAMMATES)
            and not CLUB_MARKERS.search(text)
        ):
            return QuestionAnalysis(
                type=QuestionType.CLARIFICATION_NEEDED,
                raw_question=raw,
                normalized_question=lower,
                team_entities=tuple(teams),
                metrics=tuple(metrics),
                confidence=0.3,
                requires_clarification=True,
                clarification_message=WHICH_PLAYER_MESSAGE,
            )

        implied = _IMPLIED_METRICS.get(qtype)
        if implied and implied not in metrics:
            if qtype in (QuestionType.DOUBLE_GAME, QuestionType.TEAMMATES) or not metrics:
                metrics = [implied] + metrics
                signals.metrics = metrics

        if metrics and _LOCATION_METRICS.get(metrics[0]) in locations:
            locations = [loc for loc in locations if loc != _LOCATION_METRICS[metrics[0]]]

        top_n = _TOP_N_RE.search(text)
        milestone = _MILESTONE_NUMBER_RE.search(text)

        analysis = QuestionAnalysis(
            type=qtype,
            raw_question=raw,
            normalized_question=lower,
            entities=tuple(entities),
            team_entities=tuple(teams),
            opposition_entities=tuple(oppositions),
            metrics=tuple(metrics),
            time_range=time_range,
            season=season,
            locations=tuple(locations),
            competitions=tuple(competitions),
            competition_types=tuple(extract_competition_types(text)),
            results=tuple(results),
            per_season=bool(_PER_SEASON_RE.search(text)),
            limit=int(top_n.group(1)) if top_n else None,
            order="asc" if _ASC_RE.search(text) else "desc",
            milestone=int(milestone.group(1)) if milestone and qtype is QuestionType.MILESTONE else None,
            name_fragment=fragment,
            confidence=_confidence(qtype, signals),
        )
        analysis = self._check_ambiguous_names(analysis, hint_entity)
        logger.debug("Analysis: %s", analysis.to_dict())
        return analysis

    def _check_ambiguous_names(self, analysis: QuestionAnalysis, hint_entity: str | None) -> QuestionAnalysis:
        """Expand or flag single-word player names using the roster."""
        if self.resolver is None or not analysis.entities:
            return analysis
        if analysis.type not in PLAYER_SCOPED_TYPES and analysis.type is not QuestionType.COMPARISON:
            return analysis

        expanded = []
        for name in analysis.entities:
            if " " in name.strip() or name == hint_entity:
                expanded.append(name)
                continue
            matches = self.resolver.partial_matches(name, "player")
            if len(matches) >= 2:
                return replace(
                    analysis,
                    type=QuestionType.CLARIFICATION_NEEDED,
                    name_fragment=name,
                    confidence=min(analysis.confidence, 0.5),
                    candidates=tuple(matches),
                    requires_clarification=True,
                    clarification_message=(
                        f'I found more than one player called "{name}": '
                        f"{_join_names(matches[:5])}. Which one do you mean? "
                        f"You can reply with just the surname."
                    ),
                )
            expanded.append(matches[0] if len(matches) == 1 else name)

        if tuple(expanded) == analysis.entities:
            return analysis
        return replace(analysis, entities=tuple(expanded))
