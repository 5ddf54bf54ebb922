"""Turn executed query rows into a ResponseEnvelope.

``synthesize`` dispatches on the plan's ResultKind. Every branch decides
between three different "nothing to report" outcomes before it writes a
sentence: the entity was not found (no rows), the metric does not apply to
the entity (a null value) or the value is a genuine zero.
"""
from __future__ import annotations
import logging

import settings
from chat_models import (
    QueryPlan,
    QuestionAnalysis,
    ResponseEnvelope,
    ResultKind,
    TemplateId,
    Visualization,
    VisualizationKind,
)
from errors import ErrorKind
from metric_registry import MetricSpec, get_metric
from query_planner import METRIC_RULES, fixture_mode, safe_ratio

logger = logging.getLogger(__name__)

_GENERIC_METRIC = MetricSpec("RECORDS", "record", "records", "recorded",
                             "no records", ())

_RESULT_WORDS = {"W": "win", "D": "draw", "L": "defeat"}
_RESULT_FILTER_WORDS = {"W": "wins", "D": "draws", "L": "defeats"}
_COMP_TYPE_WORDS = {"league": "league games", "cup": "cup games", "friendly": "friendlies"}


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------

def _to_float(value) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return None


def as_percentage(value) -> float | None:
    """Percentage points for a percentage-typed value.

    Strings already ending in "%" are read as given, fractions (|v| <= 1) are
    scaled by 100, anything larger is assumed to already be a percentage.
    """
    if isinstance(value, str) and value.strip().endswith("%"):
        return _to_float(value.strip()[:-1])
    v = _to_float(value)
    if v is None:
        return None
    return v * 100 if abs(v) <= 1 else v


def format_value(value, spec: MetricSpec | None) -> str:
    spec = spec or _GENERIC_METRIC
    if spec.is_percentage:
        if isinstance(value, str) and value.strip().endswith("%"):
            return value.strip()
        pct = as_percentage(value)
        if pct is None:
            return str(value)
        return f"{pct:.{spec.decimal_places}f}%"
    v = _to_float(value)
    if v is None:
        return str(value)
    if spec.decimal_places == 0:
        return str(int(round(v)))
    return f"{v:.{spec.decimal_places}f}"


def unformat_value(text: str, spec: MetricSpec | None) -> float | None:
    """Inverse of format_value: "51.8%" -> 0.518, "12" -> 12.0.

    Percentages up to 100 come back as fractions; larger ones stay in
    percentage points ("150.0%" -> 150.0) so format_value reads them back
    unchanged.
    """
    spec = spec or _GENERIC_METRIC
    s = str(text).strip()
    is_pct = s.endswith("%")
    v = _to_float(s[:-1] if is_pct else s)
    if v is None:
        return None
    if is_pct or (spec.is_percentage and abs(v) > 1):
        return v / 100 if abs(v) <= 100 else v
    return v


def rounded_value(value, spec: MetricSpec | None):
    """The number reported as answerValue."""
    spec = spec or _GENERIC_METRIC
    if spec.is_percentage:
        pct = as_percentage(value)
        return None if pct is None else round(pct, spec.decimal_places)
    v = _to_float(value)
    if v is None:
        return value
    if spec.decimal_places == 0:
        return int(round(v))
    return round(v, spec.decimal_places)


def _shown(rounded, spec: MetricSpec) -> str:
    """Display text for a value that has already been through rounded_value."""
    if spec.is_percentage and rounded is not None:
        return f"{rounded:.{spec.decimal_places}f}%"
    return format_value(rounded, spec)


def _is_zero(value) -> bool:
    v = _to_float(value)
    return v is not None and v == 0


def _row_value(row: dict, metric: str | None):
    """The metric value of a row, recomputing ratios with the zero guard."""
    rule = METRIC_RULES.get(metric) if metric else None
    if rule is not None and rule.is_ratio and "numerator" in row:
        return safe_ratio(row.get("numerator"), row.get("denominator"), rule.scale)
    return row.get("value")


# ---------------------------------------------------------------------------
# Wording helpers
# ---------------------------------------------------------------------------

def _join(items) -> str:
    items = list(items)
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + " and " + items[-1]


def _possessive(name: str) -> str:
    return f"{name}'" if name.endswith("s") else f"{name}'s"


def _ordinal(n) -> str:
    try:
        n = int(n)
    except (TypeError, ValueError):
        return str(n)
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def _uk_date(iso) -> str:
    s = str(iso or "")[:10]
    parts = s.split("-")
    if len(parts) != 3:
        return s
    return f"{parts[2]}/{parts[1]}/{parts[0]}"


def context_suffix(a: QuestionAnalysis, include_team: bool = True) -> str:
    """" for the 2nd XI against Hampton in 2019/20 at home" style qualifiers."""
    parts = []
    if include_team and a.team_entities:
        parts.append(f" for the {_join(a.team_entities)}")
    if a.opposition_entities:
        parts.append(f" against {_join(a.opposition_entities)}")
    if a.season:
        parts.append(f" in {a.season}")
    if a.time_range:
        described = a.time_range.describe()
        if described:
            parts.append(f" {described}")
    if a.locations == ("home",):
        parts.append(" at home")
    elif a.locations == ("away",):
        parts.append(" away from home")
    if a.competitions:
        parts.append(f" in the {_join(a.competitions)}")
    if a.competition_types:
        parts.append(" in " + _join(_COMP_TYPE_WORDS.get(c, c) for c in a.competition_types))
    if a.results:
        parts.append(" in " + _join(_RESULT_FILTER_WORDS.get(r, r) for r in a.results))
    return "".join(parts)


def stat_sentence(subject: str, spec: MetricSpec, value, suffix: str = "",
                  team: bool = False) -> str:
    """'Luke Bangs has scored 12 goals for the 2nd XI.' or the zero phrasing."""
    if _is_zero(value):
        return f"{subject} has {spec.zero_phrase}{suffix}."
    verb = (spec.team_verb if team and spec.team_verb else spec.verb)
    if team and spec.team_plural:
        label = spec.team_plural if _to_float(value) != 1 else spec.team_plural.rstrip("s")
    else:
        label = spec.label(value)
    return f"{subject} has {verb} {format_value(value, spec)} {label}{suffix}."


def _clause(subject: str, spec: MetricSpec, value) -> str:
    return stat_sentence(subject, spec, value).rstrip(".")


# ---------------------------------------------------------------------------
# Visualizations
# ---------------------------------------------------------------------------

def number_card(value, spec: MetricSpec) -> Visualization:
    return Visualization(
        kind=VisualizationKind.NUMBER_CARD,
        data={"value": rounded_value(value, spec), "label": spec.display_name},
        config={"icon": spec.icon_id},
    )


def table(rows: list[dict], columns: list[tuple[str, str]]) -> Visualization:
    return Visualization(
        kind=VisualizationKind.TABLE,
        data=rows,
        config={
            "columns": [{"key": k, "label": label} for k, label in columns],
            "initialDisplayLimit": settings.TABLE_DISPLAY_LIMIT,
            "expandable": len(rows) > settings.TABLE_DISPLAY_LIMIT,
            "totalRows": len(rows),
        },
    )


def chart(points: list[dict], spec: MetricSpec) -> Visualization:
    return Visualization(
        kind=VisualizationKind.CHART,
        data=points,
        config={"xKey": "season", "yKey": "value", "label": spec.display_name},
    )


def _envelope(answer: str, plan: QueryPlan, value=None, visualization=None,
              error_kind: ErrorKind | None = None) -> ResponseEnvelope:
    return ResponseEnvelope(
        answer=answer,
        answer_value=value,
        visualization=visualization,
        sources=list(settings.SOURCES),
        query_plan_description=plan.description,
        error_kind=error_kind.value if error_kind else None,
    )


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------

def _player_stat(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    player = a.primary_entity or "That player"
    if not rows:
        return _envelope(f'I couldn\'t find a player called "{player}".', plan,
                         error_kind=ErrorKind.ENTITY_NOT_FOUND)
    row = rows[0]
    value = _row_value(row, plan.metric)
    if value is None:
        return _envelope(f"I don't have any {spec.display_name} recorded for {player}.", plan)
    answer = stat_sentence(player, spec, value, context_suffix(a))
    return _envelope(answer, plan, rounded_value(value, spec), number_card(value, spec))


def _team_stat(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    subject = f"The {_join(a.team_entities)}" if a.team_entities else "The club"
    suffix = context_suffix(a, include_team=False)
    row = rows[0] if rows else {}
    value = _row_value(row, plan.metric)
    if not rows or (row.get("games") == 0 and _is_zero(value or 0)):
        return _envelope(f"I couldn't find any games for {subject.replace('The ', 'the ', 1)}{suffix}.",
                         plan, error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    if value is None:
        value = 0
    answer = stat_sentence(subject, spec, value, suffix, team=True)
    return _envelope(answer, plan, rounded_value(value, spec), number_card(value, spec))


def _season_breakdown(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    if a.primary_entity and plan.template_id is TemplateId.PLAYER_PER_SEASON:
        subject = a.primary_entity
    elif a.team_entities:
        subject = f"The {_join(a.team_entities)}"
    else:
        subject = "The club"
    include_team = plan.template_id is TemplateId.PLAYER_PER_SEASON
    suffix = context_suffix(a, include_team=include_team)
    if not rows:
        return _envelope(stat_sentence(subject, spec, 0, suffix), plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    points = [{"season": r.get("season"), "value": rounded_value(_row_value(r, plan.metric) or 0, spec)}
              for r in rows]
    best = max(points, key=lambda p: p["value"] if p["value"] is not None else 0)
    if _is_zero(best["value"]):
        return _envelope(stat_sentence(subject, spec, 0, suffix), plan, 0, chart(points, spec))
    answer = (f"Here are {_possessive(subject)} {spec.display_name} by season{suffix}. "
              f"The best season was {best['season']} with {_shown(best['value'], spec)}.")
    return _envelope(answer, plan, best["value"], chart(points, spec))


def _ranked_list(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    suffix = context_suffix(a)
    if not rows:
        return _envelope(f"I couldn't find any players with {spec.display_name}{suffix}.", plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    ranked = [{"rank": i + 1, "playerName": r.get("playerName"),
               "value": rounded_value(_row_value(r, plan.metric), spec)}
              for i, r in enumerate(rows)]
    top_value = ranked[0]["value"]
    leaders = [r["playerName"] for r in ranked if r["value"] == top_value]
    extreme = "fewest" if a.order == "asc" else "most"
    if plan.metric and METRIC_RULES[plan.metric].is_ratio:
        extreme = "lowest" if a.order == "asc" else "highest"
    shown = _shown(top_value, spec)
    if len(leaders) > 1:
        answer = f"{_join(leaders)} share the {extreme} {spec.display_name}{suffix} with {shown}."
    else:
        answer = f"{leaders[0]} has the {extreme} {spec.display_name}{suffix} with {shown}."
    viz = table(ranked, [("rank", "#"), ("playerName", "Player"), ("value", spec.display_name.capitalize())])
    return _envelope(answer, plan, top_value, viz)


def _comparison(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    found = {r.get("playerName"): _row_value(r, plan.metric) for r in rows}
    missing = [name for name in a.entities if name not in found]
    if not rows:
        return _envelope(f"I couldn't find records for {_join(a.entities)}.", plan,
                         error_kind=ErrorKind.ENTITY_NOT_FOUND)
    clauses = [_clause(name, spec, value or 0) for name, value in found.items()]
    answer = _join(clauses) + context_suffix(a) + "."
    if missing:
        answer += f" I couldn't find any records for {_join(missing)}."
    data = [{"playerName": name, "value": rounded_value(value or 0, spec)} for name, value in found.items()]
    viz = table(data, [("playerName", "Player"), ("value", spec.display_name.capitalize())])
    return _envelope(answer, plan, data[0]["value"], viz)


def _games(n: int) -> str:
    return f"{n} game" if n == 1 else f"{n} games"


def _teammates(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    player = a.primary_entity
    suffix = context_suffix(a)
    if plan.template_id is TemplateId.GAMES_TOGETHER:
        other = a.entities[1]
        together = int(_to_float(rows[0].get("value")) or 0) if rows else 0
        if together == 0:
            answer = f"{player} and {other} haven't played together{suffix}."
        else:
            answer = f"{player} and {other} have played {_games(together)} together{suffix}."
        card = Visualization(kind=VisualizationKind.NUMBER_CARD,
                             data={"value": together, "label": "games together"},
                             config={"icon": spec.icon_id})
        return _envelope(answer, plan, together, card)

    if not rows:
        return _envelope(f"I couldn't find any games {player} has played with team-mates{suffix}.", plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    ranked = [{"rank": i + 1, "playerName": r.get("playerName"), "value": int(_to_float(r.get("value")) or 0)}
              for i, r in enumerate(rows)]
    top = ranked[0]["value"]
    leaders = [r["playerName"] for r in ranked if r["value"] == top]
    if len(leaders) > 1:
        answer = f"{player} has played most often with {_join(leaders)}{suffix}: {_games(top)} each."
    else:
        answer = f"{player} has played most often with {leaders[0]}{suffix}: {_games(top)} together."
    viz = table(ranked, [("rank", "#"), ("playerName", "Team-mate"), ("value", "Games together")])
    return _envelope(answer, plan, top, viz)


def longest_run(rows: list[dict]) -> tuple[int, str | None, str | None]:
    """Longest run of consecutive rows with a positive value: (length, first date, last date)."""
    best = (0, None, None)
    length, start = 0, None
    for row in rows:
        v = _to_float(row.get("value")) or 0
        if v > 0:
            if length == 0:
                start = row.get("date")
            length += 1
            if length > best[0]:
                best = (length, start, row.get("date"))
        else:
            length = 0
    return best


def _streak(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    player = a.primary_entity or "That player"
    suffix = context_suffix(a)
    if not rows:
        return _envelope(f"I couldn't find any games for {player}{suffix}.", plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    length, first, last = longest_run(rows)
    if length == 0:
        return _envelope(stat_sentence(player, spec, 0, suffix), plan, 0,
                         number_card(0, spec))
    games = "game" if length == 1 else "consecutive games"
    answer = (f"{_possessive(player)} longest run with {spec.display_name}{suffix} is "
              f"{length} {games}, from {_uk_date(first)} to {_uk_date(last)}.")
    viz = Visualization(
        kind=VisualizationKind.NUMBER_CARD,
        data={"value": length, "label": f"consecutive games with {spec.display_name}"},
        config={"icon": spec.icon_id},
    )
    return _envelope(answer, plan, length, viz)


def _fixture_list(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    suffix = context_suffix(a)
    if not rows:
        return _envelope(f"I couldn't find any fixtures{suffix}.", plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    data = [{
        "date": _uk_date(r.get("date")),
        "team": r.get("team"),
        "opposition": r.get("opposition"),
        "homeOrAway": r.get("homeOrAway"),
        "result": r.get("result"),
        "score": f"{r.get('goalsFor', 0)}-{r.get('goalsAgainst', 0)}",
        "competition": r.get("competition"),
    } for r in rows]
    top = data[0]
    outcome = _RESULT_WORDS.get(top["result"], "result")
    mode = fixture_mode(a)
    if mode == "biggest_win":
        lead = "The biggest win"
    elif mode == "heaviest_defeat":
        lead = "The heaviest defeat"
    else:
        lead = "The most recent result"
    answer = (f"{lead}{suffix} was a {top['score']} {outcome} for the {top['team']} "
              f"against {top['opposition']} on {top['date']}.")
    viz = table(data, [("date", "Date"), ("team", "Team"), ("opposition", "Opposition"),
                       ("homeOrAway", "H/A"), ("result", "Result"), ("score", "Score"),
                       ("competition", "Competition")])
    return _envelope(answer, plan, top["score"], viz)


def _league_table(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    suffix = context_suffix(a, include_team=False)
    if not rows:
        return _envelope(f"I couldn't find any league table data{suffix}.", plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    sentences = []
    for r in rows[:3]:
        if plan.template_id is TemplateId.LEAGUE_POSITION:
            sentences.append(f"The {r.get('clubTeam')} finished {_ordinal(r.get('position'))} "
                             f"in {r.get('division')} in {r.get('season')} with {r.get('points')} points.")
        else:
            winner = f"The {r.get('clubTeam')}" if r.get("isClub") else r.get("teamName")
            sentences.append(f"{winner} won {r.get('division')} in {r.get('season')} "
                             f"with {r.get('points')} points.")
    answer = " ".join(sentences)
    if len(rows) > 3:
        answer += f" See the table for all {len(rows)} seasons."
    value = rows[0].get("position") if plan.template_id is TemplateId.LEAGUE_POSITION else rows[0].get("teamName")
    viz = table([dict(r) for r in rows], [("season", "Season"), ("division", "Division"),
                                          ("teamName", "Team"), ("position", "Pos"), ("points", "Pts")])
    return _envelope(answer, plan, value, viz)


def _milestone(rows, a: QuestionAnalysis, plan: QueryPlan, spec: MetricSpec) -> ResponseEnvelope:
    if not rows:
        return _envelope(f"No players are approaching a {spec.display_name} milestone.", plan,
                         error_kind=ErrorKind.NO_DATA_FOR_FILTERS)
    data = [{"playerName": r.get("playerName"), "value": r.get("value"),
             "milestone": r.get("milestone"), "remaining": r.get("remaining")} for r in rows]
    top = data[0]
    more = spec.singular if top["remaining"] == 1 else spec.plural
    answer = (f"{top['playerName']} is closest to {top['milestone']} {spec.display_name}, "
              f"needing {top['remaining']} more {more} (currently {top['value']}).")
    viz = table(data, [("playerName", "Player"), ("value", "Current"),
                       ("milestone", "Milestone"), ("remaining", "Remaining")])
    return _envelope(answer, plan, top["remaining"], viz)


_BRANCHES = {
    ResultKind.PLAYER_STAT: _player_stat,
    ResultKind.TEAM_STAT: _team_stat,
    ResultKind.SEASON_BREAKDOWN: _season_breakdown,
    ResultKind.RANKED_LIST: _ranked_list,
    ResultKind.COMPARISON: _comparison,
    ResultKind.TEAMMATES: _teammates,
    ResultKind.STREAK: _streak,
    ResultKind.FIXTURE_LIST: _fixture_list,
    ResultKind.LEAGUE_TABLE: _league_table,
    ResultKind.MILESTONE: _milestone,
}


def synthesize(rows: list[dict], analysis: QuestionAnalysis, plan: QueryPlan) -> ResponseEnvelope:
    branch = _BRANCHES.get(plan.result_kind)
    if branch is None:
        raise ValueError(f"Unhandled result kind: {plan.result_kind}")
    spec = get_metric(plan.metric) or _GENERIC_METRIC
    logger.debug("Synthesizing %s from %d rows", plan.result_kind.value, len(rows))
    return branch(rows, analysis, plan, spec)
