"""Compile a QuestionAnalysis into a parameterized Cypher plan.

Graph vocabulary:

    (p:Player {playerName, appearances, allGoalsScored, ...})
        -[:PLAYED_IN]->
    (md:MatchDetail {team, date, season, opposition, homeOrAway, competition,
                     compType, result, goals, penaltiesScored, assists, ...})
        <-[:HAS_MATCH_DETAILS]-
    (f:Fixture {team, opposition, date, season, homeOrAway, competition,
                compType, result, goalsScored, conceded})

    (l:LeagueTable {season, division, teamName, position, points, clubTeam, isClub})

MatchDetail repeats the fixture fields a match record needs, so team-scoped
counters can filter on ``md`` alone.
Two players were team-mates in a game when their match records hang off the
same fixture.

``build_plan`` is a pure function: the same analysis always gives an equal
plan. It never raises for an unknown metric; it returns a ``PlanFailure``.
"""
from __future__ import annotations
import logging
import math
import re
from dataclasses import dataclass

import settings
from chat_models import (
    PlanFailure,
    Predicate,
    PredicateKind,
    QueryPlan,
    QuestionAnalysis,
    QuestionType,
    Relation,
    ResultKind,
    Selectivity,
    TemplateId,
)
from errors import ErrorKind
from metric_registry import get_metric, resolve_alias

logger = logging.getLogger(__name__)

MD = Relation.MATCH_DETAIL
FX = Relation.FIXTURE

_GOALS = "coalesce(md.goals, 0) + coalesce(md.penaltiesScored, 0)"
_WON = "CASE WHEN f.result = 'W' THEN 1 ELSE 0 END"
_DRAWN = "CASE WHEN f.result = 'D' THEN 1 ELSE 0 END"
_LOST = "CASE WHEN f.result = 'L' THEN 1 ELSE 0 END"
_HOME = (("f.homeOrAway", "homeOrAway", "Home"),)
_AWAY = (("f.homeOrAway", "homeOrAway", "Away"),)


@dataclass(frozen=True)
class MetricRule:
    """How one metric is computed.

    ``expr`` is summed over match rows; ``player_property`` is the Player
    node counter used when nothing narrows the question; ``team_expr`` is
    summed over Fixture rows for team and club totals. Ratio metrics set
    ``numerator``/``denominator`` instead of ``expr``.
    """
    expr: str | None = None
    player_property: str | None = None
    intrinsic: frozenset = frozenset({MD})
    implicit: tuple = ()
    team_expr: str | None = None
    numerator: str | None = None
    denominator: str | None = None
    team_numerator: str | None = None
    team_denominator: str | None = None
    scale: float = 1.0
    team_scoped: bool = False
    distinct_players: bool = False

    @property
    def is_ratio(self) -> bool:
        return self.numerator is not None


def _counter(prop: str, team_expr: str | None = None) -> MetricRule:
    return MetricRule(expr=f"coalesce(md.{prop}, 0)", player_property=prop, team_expr=team_expr)


METRIC_RULES: dict[str, MetricRule] = {
    "APP": MetricRule(expr="1", player_property="appearances", team_expr="1", team_scoped=True),
    "G": MetricRule(expr=_GOALS, player_property="allGoalsScored",
                    team_expr="coalesce(f.goalsScored, 0)", team_scoped=True),
    "MIN": _counter("minutes"),
    "MOM": _counter("mom"),
    "A": _counter("assists"),
    "GI": MetricRule(expr=f"{_GOALS} + coalesce(md.assists, 0)"),
    "Y": _counter("yellowCards"),
    "R": _counter("redCards"),
    "SAVES": _counter("saves"),
    "OG": _counter("ownGoals"),
    "C": _counter("conceded", team_expr="coalesce(f.conceded, 0)"),
    "CLS": _counter("cleanSheets", team_expr="CASE WHEN coalesce(f.conceded, 0) = 0 THEN 1 ELSE 0 END"),
    "PSC": _counter("penaltiesScored"),
    "PM": _counter("penaltiesMissed"),
    "PCO": _counter("penaltiesConceded"),
    "PSV": _counter("penaltiesSaved"),
    "FTP": _counter("fantasyPoints"),
    "WINS": MetricRule(expr=_WON, intrinsic=frozenset({MD, FX}), team_expr=_WON),
    "DRAWS": MetricRule(expr=_DRAWN, intrinsic=frozenset({MD, FX}), team_expr=_DRAWN),
    "LOSSES": MetricRule(expr=_LOST, intrinsic=frozenset({MD, FX}), team_expr=_LOST),
    "HOME": MetricRule(expr="1", intrinsic=frozenset({MD, FX}), implicit=_HOME, team_expr="1"),
    "AWAY": MetricRule(expr="1", intrinsic=frozenset({MD, FX}), implicit=_AWAY, team_expr="1"),
    "HOMEWINS": MetricRule(expr=_WON, intrinsic=frozenset({MD, FX}), implicit=_HOME, team_expr=_WON),
    "AWAYWINS": MetricRule(expr=_WON, intrinsic=frozenset({MD, FX}), implicit=_AWAY, team_expr=_WON),
    "GperAPP": MetricRule(numerator=_GOALS, denominator="1",
                          team_numerator="coalesce(f.goalsScored, 0)", team_denominator="1"),
    "CperAPP": MetricRule(numerator="coalesce(md.conceded, 0)", denominator="1",
                          team_numerator="coalesce(f.conceded, 0)", team_denominator="1"),
    "MperG": MetricRule(numerator="coalesce(md.minutes, 0)", denominator=_GOALS),
    "MINperAPP": MetricRule(numerator="coalesce(md.minutes, 0)", denominator="1"),
    "FTPperAPP": MetricRule(numerator="coalesce(md.fantasyPoints, 0)", denominator="1"),
    "GAMES%WON": MetricRule(numerator=_WON, denominator="1", intrinsic=frozenset({MD, FX}),
                            team_numerator=_WON, team_denominator="1"),
    "HOMEGAMES%WON": MetricRule(numerator=_WON, denominator="1", intrinsic=frozenset({MD, FX}),
                                implicit=_HOME, team_numerator=_WON, team_denominator="1"),
    "AWAYGAMES%WON": MetricRule(numerator=_WON, denominator="1", intrinsic=frozenset({MD, FX}),
                                implicit=_AWAY, team_numerator=_WON, team_denominator="1"),
    "PEN%": MetricRule(numerator="coalesce(md.penaltiesScored, 0)",
                       denominator="coalesce(md.penaltiesScored, 0) + coalesce(md.penaltiesMissed, 0)"),
    "PLAYERS": MetricRule(distinct_players=True, team_scoped=True),
    "DGW": MetricRule(),
}

MILESTONE_STEPS = {"APP": 50, "G": 25, "A": 25, "MOM": 10, "CLS": 25}

LOCATION_VALUES = {"home": "Home", "away": "Away"}
COMPETITION_TYPE_VALUES = {"league": "League", "cup": "Cup", "friendly": "Friendly"}

_BIGGEST_WIN_RE = re.compile(r"\b(?:biggest|largest|best)\s+(?:win|victory|result)\b")
_HEAVIEST_DEFEAT_RE = re.compile(r"\b(?:heaviest|biggest|worst)\s+(?:defeat|loss)\b|\bworst\s+result\b")

NEED_METRIC_MESSAGE = (
    "I need to know what statistic you're asking about. "
    "Please specify goals, appearances, assists, or another statistic."
)


def safe_ratio(numerator, denominator, scale: float = 1.0) -> float:
    """numerator / denominator * scale, or exactly 0 when that is undefined."""
    try:
        num = float(numerator or 0)
        den = float(denominator or 0)
    except (TypeError, ValueError):
        return 0.0
    if den <= 0 or math.isnan(num) or math.isnan(den):
        return 0.0
    value = num / den * scale
    return 0.0 if math.isnan(value) or math.isinf(value) else value


class _Predicates:
    """Collects predicates and their parameters in insertion order."""

    def __init__(self):
        self.items: list[Predicate] = []
        self.params: dict = {}

    def eq(self, fld: str, param: str, value, selectivity: Selectivity = Selectivity.IDENTITY) -> None:
        self.items.append(Predicate(PredicateKind.EQUALITY, fld, (param,), selectivity))
        self.params[param] = value

    def between(self, fld: str, lower=None, upper=None) -> None:
        params, ops = [], []
        if lower is not None:
            params.append(lower[0])
            ops.append(">=")
            self.params[lower[0]] = lower[1]
        if upper is not None:
            params.append(upper[0])
            ops.append("<=")
            self.params[upper[0]] = upper[1]
        if params:
            self.items.append(Predicate(PredicateKind.RANGE, fld, tuple(params), Selectivity.RANGE, tuple(ops)))

    def member(self, fld: str, param: str, values, selectivity: Selectivity = Selectivity.MEMBERSHIP) -> None:
        self.items.append(Predicate(PredicateKind.MEMBERSHIP, fld, (param,), selectivity))
        self.params[param] = list(values)

    def exists(self, fld: str) -> None:
        self.items.append(Predicate(PredicateKind.EXISTENCE, fld, (), Selectivity.OTHER))

    def ordered(self) -> tuple[Predicate, ...]:
        # sorted() is stable, so insertion order breaks ties
        return tuple(sorted(self.items, key=lambda p: p.selectivity))


@dataclass
class _Scope:
    """Which relation carries each filter for this plan."""
    prefix: str = "f"

    def field(self, name: str) -> str:
        return f"{self.prefix}.{name}"


def _match_scope() -> _Scope:
    return _Scope(prefix="md")


def _apply_filters(preds: _Predicates, a: QuestionAnalysis, scope: _Scope) -> None:
    """Add the analysis' filter predicates."""
    if a.team_entities:
        if len(a.team_entities) == 1:
            preds.eq(scope.field("team"), "team", a.team_entities[0])
        else:
            preds.member(scope.field("team"), "teams", a.team_entities, Selectivity.IDENTITY)
    if a.season:
        preds.eq(scope.field("season"), "season", a.season, Selectivity.RANGE)
    if a.time_range:
        preds.between(
            scope.field("date"),
            ("dateFrom", a.time_range.date_from) if a.time_range.date_from else None,
            ("dateTo", a.time_range.date_to) if a.time_range.date_to else None,
        )

    if a.opposition_entities:
        if len(a.opposition_entities) == 1:
            preds.eq(scope.field("opposition"), "opposition", a.opposition_entities[0])
        else:
            preds.member(scope.field("opposition"), "oppositions", a.opposition_entities,
                         Selectivity.IDENTITY)
    if a.locations:
        preds.member(scope.field("homeOrAway"), "locations", [LOCATION_VALUES[x] for x in a.locations])
    if a.competitions:
        preds.member(scope.field("competition"), "competitions", a.competitions)
    if a.competition_types:
        preds.member(scope.field("compType"), "compTypes",
                     [COMPETITION_TYPE_VALUES[x] for x in a.competition_types])
    if a.results:
        preds.member(scope.field("result"), "results", a.results)


def _apply_implicit(preds: _Predicates, rule: MetricRule) -> None:
    for fld, param, value in rule.implicit:
        if param not in preds.params:
            preds.eq(fld, param, value, Selectivity.OTHER)


def _joins(predicates, rule: MetricRule | None, by_season: bool = False) -> frozenset:
    """The relations a plan must read, derived only from its predicates, metric and grouping."""
    rels = {p.relation for p in predicates if p.relation is not None}
    if rule is not None:
        rels |= set(rule.intrinsic)
    if by_season:
        rels.add(FX)
    if FX in rels:
        rels.add(MD)
    return frozenset(rels)


def _pattern(joins: frozenset, anchor: str = "(p)") -> str:
    if FX in joins:
        return f"{anchor}-[:PLAYED_IN]->(md:MatchDetail)<-[:HAS_MATCH_DETAILS]-(f:Fixture)"
    return f"{anchor}-[:PLAYED_IN]->(md:MatchDetail)"


def _where(predicates) -> str:
    return " AND ".join(p.to_cypher() for p in predicates)


def _guard(expr: str) -> str:
    """Zero for the null row an OPTIONAL MATCH produces."""
    return f"CASE WHEN md IS NULL THEN 0 ELSE {expr} END"


def _ratio_return(scale: float) -> str:
    return (
        "CASE WHEN denominator > 0 "
        f"THEN toFloat(numerator) / denominator * {scale} ELSE 0 END AS value"
    )


def _describe(template: TemplateId, metric: str | None, subject: str, predicates, joins) -> str:
    spec = get_metric(metric)
    what = spec.display_name if spec else (metric or "records")
    parts = [f"{template.value}: {what} for {subject}"]
    if predicates:
        parts.append("filters " + "; ".join(p.to_cypher() for p in predicates))
    parts.append("joins " + (", ".join(sorted(r.value for r in joins)) if joins else "none"))
    return " | ".join(parts)


def _failure(message: str, kind: ErrorKind = ErrorKind.UNSUPPORTED_METRIC) -> PlanFailure:
    return PlanFailure(kind=kind, message=message)


def _unsupported(metric: str, context: str) -> PlanFailure:
    spec = get_metric(metric)
    name = spec.display_name if spec else metric
    return _failure(f"I can't work out {name} for {context} yet.")


# ---------------------------------------------------------------------------
# Player templates
# ---------------------------------------------------------------------------

def _player_scope(a: QuestionAnalysis, rule: MetricRule) -> _Scope:
    # Team-scoped counters read every filter straight off the match record
    if rule.team_scoped and a.team_entities and not rule.distinct_players:
        return _match_scope()
    return _Scope()


def _plan_player(a: QuestionAnalysis, metric: str, rule: MetricRule) -> QueryPlan | PlanFailure:
    if rule.distinct_players or (rule.expr is None and not rule.is_ratio):
        return _unsupported(metric, "a single player")
    player = a.primary_entity
    preds = _Predicates()
    preds.eq("p.playerName", "playerName", player)
    scope = _player_scope(a, rule)
    _apply_filters(preds, a, scope)
    _apply_implicit(preds, rule)
    predicates = preds.ordered()
    player_preds = [p for p in predicates if p.relation is None]
    match_preds = [p for p in predicates if p.relation is not None]

    if a.per_season:
        return _plan_player_per_season(a, metric, rule, preds, scope)

    if not match_preds and rule.player_property and not rule.is_ratio:
        joins = frozenset()
        cypher = (
            "MATCH (p:Player)\n"
            f"WHERE {_where(player_preds)}\n"
            f"RETURN p.playerName AS playerName, p.{rule.player_property} AS value"
        )
        template = TemplateId.PLAYER_STAT
    else:
        joins = _joins(match_preds, rule)
        lines = ["MATCH (p:Player)", f"WHERE {_where(player_preds)}",
                 f"OPTIONAL MATCH {_pattern(joins)}"]
        if match_preds:
            lines.append(f"WHERE {_where(match_preds)}")
        if rule.is_ratio:
            lines.append(f"WITH p, sum({_guard(rule.numerator)}) AS numerator, "
                         f"sum({_guard(rule.denominator)}) AS denominator, count(md) AS games")
            lines.append("RETURN p.playerName AS playerName, numerator, denominator, games, "
                         + _ratio_return(rule.scale))
            template = TemplateId.PLAYER_RATIO
        else:
            lines.append(f"RETURN p.playerName AS playerName, sum({_guard(rule.expr)}) AS value, "
                         "count(md) AS games")
            template = TemplateId.PLAYER_STAT
        cypher = "\n".join(lines)

    return QueryPlan(
        template_id=template,
        result_kind=ResultKind.PLAYER_STAT,
        cypher=cypher,
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=joins,
        metric=metric,
        description=_describe(template, metric, player, predicates, joins),
    )


def _plan_player_per_season(a, metric, rule, preds: _Predicates, scope: _Scope) -> QueryPlan:
    predicates = preds.ordered()
    season = scope.field("season")
    joins = _joins(predicates, rule, by_season=scope.prefix == "f") | {MD}
    lines = [f"MATCH {_pattern(joins, '(p:Player)')}", f"WHERE {_where(predicates)}"]
    if rule.is_ratio:
        lines.append(f"WITH {season} AS season, sum({rule.numerator}) AS numerator, "
                     f"sum({rule.denominator}) AS denominator")
        lines.append("RETURN season, numerator, denominator, " + _ratio_return(rule.scale))
    else:
        lines.append(f"RETURN {season} AS season, sum({rule.expr}) AS value")
    lines.append("ORDER BY season ASC")
    return QueryPlan(
        template_id=TemplateId.PLAYER_PER_SEASON,
        result_kind=ResultKind.SEASON_BREAKDOWN,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=joins,
        metric=metric,
        description=_describe(TemplateId.PLAYER_PER_SEASON, metric, a.primary_entity, predicates, joins),
    )


def _plan_comparison(a: QuestionAnalysis, metric: str, rule: MetricRule) -> QueryPlan | PlanFailure:
    if rule.distinct_players or (rule.expr is None and not rule.is_ratio):
        return _unsupported(metric, "a comparison")
    preds = _Predicates()
    preds.member("p.playerName", "playerNames", a.entities, Selectivity.IDENTITY)
    _apply_filters(preds, a, _player_scope(a, rule))
    _apply_implicit(preds, rule)
    predicates = preds.ordered()
    player_preds = [p for p in predicates if p.relation is None]
    match_preds = [p for p in predicates if p.relation is not None]

    if not match_preds and rule.player_property and not rule.is_ratio:
        joins = frozenset()
        lines = ["MATCH (p:Player)", f"WHERE {_where(player_preds)}",
                 f"RETURN p.playerName AS playerName, p.{rule.player_property} AS value"]
    else:
        joins = _joins(match_preds, rule)
        lines = ["MATCH (p:Player)", f"WHERE {_where(player_preds)}",
                 f"OPTIONAL MATCH {_pattern(joins)}"]
        if match_preds:
            lines.append(f"WHERE {_where(match_preds)}")
        if rule.is_ratio:
            lines.append(f"WITH p, sum({_guard(rule.numerator)}) AS numerator, "
                         f"sum({_guard(rule.denominator)}) AS denominator")
            lines.append("RETURN p.playerName AS playerName, numerator, denominator, "
                         + _ratio_return(rule.scale))
        else:
            lines.append(f"RETURN p.playerName AS playerName, sum({_guard(rule.expr)}) AS value")
    lines.append("ORDER BY value DESC, playerName ASC")
    return QueryPlan(
        template_id=TemplateId.COMPARISON,
        result_kind=ResultKind.COMPARISON,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=joins,
        metric=metric,
        description=_describe(TemplateId.COMPARISON, metric, " vs ".join(a.entities), predicates, joins),
    )


def _plan_streak(a: QuestionAnalysis, metric: str, rule: MetricRule) -> QueryPlan | PlanFailure:
    if rule.expr is None or rule.expr == "1":
        return _unsupported(metric, "a streak")
    preds = _Predicates()
    preds.eq("p.playerName", "playerName", a.primary_entity)
    _apply_filters(preds, a, _Scope())
    _apply_implicit(preds, rule)
    predicates = preds.ordered()
    joins = _joins(predicates, rule) | {MD}
    cypher = "\n".join([
        f"MATCH {_pattern(joins, '(p:Player)')}",
        f"WHERE {_where(predicates)}",
        f"RETURN md.date AS date, {rule.expr} AS value",
        "ORDER BY date ASC",
    ])
    return QueryPlan(
        template_id=TemplateId.STREAK,
        result_kind=ResultKind.STREAK,
        cypher=cypher,
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=frozenset(joins),
        metric=metric,
        description=_describe(TemplateId.STREAK, metric, a.primary_entity, predicates, joins),
    )


def _plan_double_game(a: QuestionAnalysis) -> QueryPlan:
    preds = _Predicates()
    preds.eq("p.playerName", "playerName", a.primary_entity)
    _apply_filters(preds, a, _Scope())
    predicates = preds.ordered()
    joins = _joins(predicates, None) | {MD}
    cypher = "\n".join([
        f"MATCH {_pattern(joins, '(p:Player)')}",
        f"WHERE {_where(predicates)}",
        "WITH date(md.date) AS d",
        "WITH d.weekYear AS weekYear, d.week AS week, count(*) AS games",
        "WHERE games >= 2",
        "RETURN count(*) AS value",
    ])
    return QueryPlan(
        template_id=TemplateId.DOUBLE_GAME,
        result_kind=ResultKind.PLAYER_STAT,
        cypher=cypher,
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=frozenset(joins),
        metric="DGW",
        description=_describe(TemplateId.DOUBLE_GAME, "DGW", a.primary_entity, predicates, joins),
    )


# ---------------------------------------------------------------------------
# Team, club and multi-player templates
# ---------------------------------------------------------------------------

def _plan_team(a: QuestionAnalysis, metric: str, rule: MetricRule) -> QueryPlan | PlanFailure:
    subject = a.team_entities[0] if a.team_entities else "the club"
    preds = _Predicates()

    if rule.distinct_players:
        _apply_filters(preds, a, _match_scope())
        predicates = preds.ordered()
        joins = _joins(predicates, rule)
        lines = [f"MATCH {_pattern(joins, '(p:Player)')}"]
        if predicates:
            lines.append(f"WHERE {_where(predicates)}")
        lines.append("RETURN count(DISTINCT p) AS value, count(md) AS games")
        return QueryPlan(
            template_id=TemplateId.TEAM_STAT,
            result_kind=ResultKind.TEAM_STAT,
            cypher="\n".join(lines),
            predicates=predicates,
            parameters=dict(preds.params),
            joins_required=joins,
            metric=metric,
            description=_describe(TemplateId.TEAM_STAT, metric, subject, predicates, joins),
        )

    if rule.team_expr is None and rule.team_numerator is None:
        return _unsupported(metric, "a whole team")

    _apply_filters(preds, a, _Scope())
    _apply_implicit(preds, rule)
    predicates = preds.ordered()
    joins = frozenset({FX})
    lines = ["MATCH (f:Fixture)"]
    if predicates:
        lines.append(f"WHERE {_where(predicates)}")

    if a.per_season:
        template = TemplateId.TEAM_PER_SEASON
        result_kind = ResultKind.SEASON_BREAKDOWN
        if rule.is_ratio:
            lines.append(f"WITH f.season AS season, sum({rule.team_numerator}) AS numerator, "
                         f"sum({rule.team_denominator}) AS denominator")
            lines.append("RETURN season, numerator, denominator, " + _ratio_return(rule.scale))
        else:
            lines.append(f"RETURN f.season AS season, sum({rule.team_expr}) AS value")
        lines.append("ORDER BY season ASC")
    elif rule.is_ratio:
        template = TemplateId.TEAM_RATIO
        result_kind = ResultKind.TEAM_STAT
        lines.append(f"WITH sum({rule.team_numerator}) AS numerator, "
                     f"sum({rule.team_denominator}) AS denominator, count(f) AS games")
        lines.append("RETURN numerator, denominator, games, " + _ratio_return(rule.scale))
    else:
        template = TemplateId.TEAM_STAT
        result_kind = ResultKind.TEAM_STAT
        lines.append(f"RETURN sum({rule.team_expr}) AS value, count(f) AS games")

    return QueryPlan(
        template_id=template,
        result_kind=result_kind,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=joins,
        metric=metric,
        description=_describe(template, metric, subject, predicates, joins),
    )


def _plan_teammates(a: QuestionAnalysis) -> QueryPlan:
    """Fixtures shared with each teammate, or with one named teammate."""
    pair = len(a.entities) >= 2
    preds = _Predicates()
    preds.eq("p.playerName", "playerName", a.primary_entity)
    if pair:
        preds.eq("q.playerName", "teammateName", a.entities[1])
    _apply_filters(preds, a, _Scope())
    predicates = preds.ordered()
    joins = frozenset({MD, FX})
    lines = [
        f"MATCH {_pattern(joins, '(p:Player)')}-[:HAS_MATCH_DETAILS]->(md2:MatchDetail)<-[:PLAYED_IN]-(q:Player)",
        f"WHERE {_where(predicates)} AND q <> p",
    ]
    params = dict(preds.params)
    if pair:
        template = TemplateId.GAMES_TOGETHER
        lines.append("RETURN count(DISTINCT f) AS value")
    else:
        template = TemplateId.TEAMMATES
        lines.append("RETURN q.playerName AS playerName, count(DISTINCT f) AS value")
        lines.append("ORDER BY value DESC, playerName ASC")
        lines.append("LIMIT $limit")
        params["limit"] = a.limit or settings.DEFAULT_TOP_N
    return QueryPlan(
        template_id=template,
        result_kind=ResultKind.TEAMMATES,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=params,
        joins_required=joins,
        metric="APP",
        description=_describe(template, "APP", " and ".join(a.entities[:2]), predicates, joins),
    )


def _plan_ranking(a: QuestionAnalysis, metric: str, rule: MetricRule) -> QueryPlan | PlanFailure:
    if rule.distinct_players or (rule.expr is None and not rule.is_ratio):
        return _unsupported(metric, "a ranking")
    preds = _Predicates()
    _apply_filters(preds, a, _player_scope(a, rule))
    _apply_implicit(preds, rule)
    direction = "ASC" if a.order == "asc" else "DESC"
    limit = a.limit or settings.DEFAULT_TOP_N

    if not preds.items and rule.player_property and not rule.is_ratio:
        preds.exists(f"p.{rule.player_property}")
        predicates = preds.ordered()
        joins = frozenset()
        lines = ["MATCH (p:Player)", f"WHERE {_where(predicates)}",
                 f"RETURN p.playerName AS playerName, p.{rule.player_property} AS value"]
    else:
        predicates = preds.ordered()
        joins = _joins(predicates, rule)
        lines = [f"MATCH {_pattern(joins, '(p:Player)')}"]
        if predicates:
            lines.append(f"WHERE {_where(predicates)}")
        if rule.is_ratio:
            lines.append(f"WITH p, sum({rule.numerator}) AS numerator, sum({rule.denominator}) AS denominator")
            lines.append("WHERE denominator > 0")
            lines.append("RETURN p.playerName AS playerName, numerator, denominator, "
                         + _ratio_return(rule.scale))
        else:
            lines.append(f"RETURN p.playerName AS playerName, sum({rule.expr}) AS value")
    lines.append(f"ORDER BY value {direction}, playerName ASC")
    lines.append("LIMIT $limit")
    params = dict(preds.params)
    params["limit"] = limit
    subject = a.team_entities[0] if a.team_entities else "all players"
    return QueryPlan(
        template_id=TemplateId.RANKING,
        result_kind=ResultKind.RANKED_LIST,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=params,
        joins_required=joins,
        metric=metric,
        description=_describe(TemplateId.RANKING, metric, subject, predicates, joins),
    )


def _plan_milestone(a: QuestionAnalysis, metric: str, rule: MetricRule) -> QueryPlan | PlanFailure:
    if rule.is_ratio or rule.distinct_players or rule.expr is None:
        return _unsupported(metric, "a milestone")
    preds = _Predicates()
    _apply_filters(preds, a, _player_scope(a, rule))
    _apply_implicit(preds, rule)
    params = dict(preds.params)

    if not preds.items and rule.player_property:
        preds.exists(f"p.{rule.player_property}")
        predicates = preds.ordered()
        joins = frozenset()
        lines = ["MATCH (p:Player)", f"WHERE {_where(predicates)}",
                 f"WITH p.playerName AS playerName, p.{rule.player_property} AS value"]
    else:
        predicates = preds.ordered()
        joins = _joins(predicates, rule)
        lines = [f"MATCH {_pattern(joins, '(p:Player)')}"]
        if predicates:
            lines.append(f"WHERE {_where(predicates)}")
        lines.append(f"WITH p.playerName AS playerName, sum({rule.expr}) AS value")

    if a.milestone:
        lines.append("WITH playerName, value, $milestone AS milestone")
        params["milestone"] = a.milestone
    else:
        lines.append("WITH playerName, value, (toInteger(value / $step) + 1) * $step AS milestone")
        params["step"] = MILESTONE_STEPS.get(metric, 25)
    lines += [
        "WHERE value < milestone",
        "RETURN playerName, value, milestone, milestone - value AS remaining",
        "ORDER BY remaining ASC, value DESC, playerName ASC",
        "LIMIT $limit",
    ]
    params["limit"] = a.limit or settings.DEFAULT_TOP_N
    return QueryPlan(
        template_id=TemplateId.MILESTONE,
        result_kind=ResultKind.MILESTONE,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=params,
        joins_required=joins,
        metric=metric,
        description=_describe(TemplateId.MILESTONE, metric, "all players", predicates, joins),
    )


def fixture_mode(a: QuestionAnalysis) -> str:
    """"biggest_win", "heaviest_defeat" or "recent"."""
    text = a.normalized_question
    if _HEAVIEST_DEFEAT_RE.search(text):
        return "heaviest_defeat"
    if _BIGGEST_WIN_RE.search(text):
        return "biggest_win"
    return "recent"


def _plan_fixtures(a: QuestionAnalysis) -> QueryPlan:
    preds = _Predicates()
    _apply_filters(preds, a, _Scope())
    mode = fixture_mode(a)
    if mode == "heaviest_defeat":
        if "results" not in preds.params:
            preds.member("f.result", "results", ["L"])
        order = "ORDER BY (goalsAgainst - goalsFor) DESC, date DESC"
    elif mode == "biggest_win":
        if "results" not in preds.params:
            preds.member("f.result", "results", ["W"])
        order = "ORDER BY (goalsFor - goalsAgainst) DESC, date DESC"
    else:
        order = "ORDER BY date DESC"
    predicates = preds.ordered()
    lines = ["MATCH (f:Fixture)"]
    if predicates:
        lines.append(f"WHERE {_where(predicates)}")
    lines += [
        "RETURN f.date AS date, f.team AS team, f.opposition AS opposition, "
        "f.homeOrAway AS homeOrAway, f.result AS result, f.goalsScored AS goalsFor, "
        "f.conceded AS goalsAgainst, f.competition AS competition",
        order,
        "LIMIT $limit",
    ]
    params = dict(preds.params)
    params["limit"] = a.limit or settings.DEFAULT_TOP_N
    joins = frozenset({FX})
    subject = a.team_entities[0] if a.team_entities else "the club"
    return QueryPlan(
        template_id=TemplateId.FIXTURE_LIST,
        result_kind=ResultKind.FIXTURE_LIST,
        cypher="\n".join(lines),
        predicates=predicates,
        parameters=params,
        joins_required=joins,
        metric=None,
        description=_describe(TemplateId.FIXTURE_LIST, None, subject, predicates, joins),
    )


def _plan_league_table(a: QuestionAnalysis) -> QueryPlan:
    preds = _Predicates()
    if a.team_entities:
        template = TemplateId.LEAGUE_POSITION
        preds.eq("l.clubTeam", "team", a.team_entities[0])
        preds.eq("l.isClub", "isClub", True, Selectivity.OTHER)
    else:
        template = TemplateId.LEAGUE_WINNER
        preds.eq("l.position", "position", 1, Selectivity.OTHER)
    if a.season:
        preds.eq("l.season", "season", a.season, Selectivity.RANGE)
    predicates = preds.ordered()
    cypher = "\n".join([
        "MATCH (l:LeagueTable)",
        f"WHERE {_where(predicates)}",
        "RETURN l.season AS season, l.division AS division, l.teamName AS teamName, "
        "l.position AS position, l.points AS points, l.clubTeam AS clubTeam, l.isClub AS isClub",
        "ORDER BY season DESC, clubTeam ASC",
    ])
    subject = a.team_entities[0] if a.team_entities else "every division"
    return QueryPlan(
        template_id=template,
        result_kind=ResultKind.LEAGUE_TABLE,
        cypher=cypher,
        predicates=predicates,
        parameters=dict(preds.params),
        joins_required=frozenset(),
        metric=None,
        description=_describe(template, None, subject, predicates, frozenset()),
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_plan(analysis: QuestionAnalysis) -> QueryPlan | PlanFailure:
    qtype = analysis.type

    if qtype is QuestionType.LEAGUE_TABLE:
        return _plan_league_table(analysis)
    if qtype is QuestionType.FIXTURE:
        return _plan_fixtures(analysis)
    if qtype is QuestionType.DOUBLE_GAME:
        if not analysis.entities:
            return _failure("I need to know which player you're asking about.", ErrorKind.ENTITY_NOT_FOUND)
        return _plan_double_game(analysis)
    if qtype is QuestionType.TEAMMATES:
        if not analysis.entities:
            return _failure("I need to know which player you're asking about.", ErrorKind.ENTITY_NOT_FOUND)
        return _plan_teammates(analysis)
    if qtype in (QuestionType.GENERAL, QuestionType.CLARIFICATION_NEEDED):
        return _failure("I'm not sure how to answer that question yet.")

    metric = analysis.primary_metric
    if not metric:
        return _failure(NEED_METRIC_MESSAGE)
    # Embedding callers may name the statistic as a user would ("apps")
    spec = get_metric(metric) or resolve_alias(metric)
    rule = METRIC_RULES.get(spec.key) if spec else None
    if rule is None:
        return _failure(f'I don\'t have a statistic called "{metric}".')
    metric = spec.key

    if qtype is QuestionType.RANKING:
        plan = _plan_ranking(analysis, metric, rule)
    elif qtype is QuestionType.MILESTONE:
        plan = _plan_milestone(analysis, metric, rule)
    elif qtype in (QuestionType.TEAM, QuestionType.CLUB):
        plan = _plan_team(analysis, metric, rule)
    elif not analysis.entities:
        return _failure("I need to know which player you're asking about.", ErrorKind.ENTITY_NOT_FOUND)
    elif qtype is QuestionType.COMPARISON:
        plan = _plan_comparison(analysis, metric, rule)
    elif qtype is QuestionType.STREAK:
        plan = _plan_streak(analysis, metric, rule)
    else:
        plan = _plan_player(analysis, metric, rule)

    if isinstance(plan, QueryPlan):
        logger.debug("Plan %s:\n%s", plan.template_id.value, plan.cypher)
    return plan
