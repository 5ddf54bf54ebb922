from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum, IntEnum
from typing import Any

from errors import ErrorKind


class QuestionType(str, Enum):
    PLAYER = "player"
    TEAM = "team"
    CLUB = "club"
    FIXTURE = "fixture"
    COMPARISON = "comparison"
    TEAMMATES = "teammates"
    STREAK = "streak"
    TEMPORAL = "temporal"
    RANKING = "ranking"
    LEAGUE_TABLE = "league_table"
    DOUBLE_GAME = "double_game"
    MILESTONE = "milestone"
    GENERAL = "general"
    CLARIFICATION_NEEDED = "clarification_needed"


# Question types whose answer is about one named player
PLAYER_SCOPED_TYPES = frozenset({
    QuestionType.PLAYER,
    QuestionType.TEMPORAL,
    QuestionType.STREAK,
    QuestionType.DOUBLE_GAME,
    QuestionType.TEAMMATES,
})


class ResultKind(str, Enum):
    PLAYER_STAT = "player_stat"
    TEAM_STAT = "team_stat"
    RANKED_LIST = "ranked_list"
    SEASON_BREAKDOWN = "season_breakdown"
    LEAGUE_TABLE = "league_table"
    STREAK = "streak"
    COMPARISON = "comparison"
    TEAMMATES = "teammates"
    FIXTURE_LIST = "fixture_list"
    MILESTONE = "milestone"


class VisualizationKind(str, Enum):
    NUMBER_CARD = "number_card"
    TABLE = "table"
    CHART = "chart"


class Relation(str, Enum):
    MATCH_DETAIL = "match_detail"
    FIXTURE = "fixture"


class TemplateId(str, Enum):
    PLAYER_STAT = "player_stat"
    PLAYER_RATIO = "player_ratio"
    PLAYER_PER_SEASON = "player_per_season"
    TEAM_STAT = "team_stat"
    TEAM_RATIO = "team_ratio"
    TEAM_PER_SEASON = "team_per_season"
    RANKING = "ranking"
    COMPARISON = "comparison"
    TEAMMATES = "teammates"
    GAMES_TOGETHER = "games_together"
    STREAK = "streak"
    DOUBLE_GAME = "double_game"
    MILESTONE = "milestone"
    FIXTURE_LIST = "fixture_list"
    LEAGUE_WINNER = "league_winner"
    LEAGUE_POSITION = "league_position"


class PredicateKind(str, Enum):
    EQUALITY = "equality"
    RANGE = "range"
    MEMBERSHIP = "membership"
    EXISTENCE = "existence"


class Selectivity(IntEnum):
    IDENTITY = 0
    RANGE = 1
    MEMBERSHIP = 2
    OTHER = 3


@dataclass(frozen=True)
class TimeRange:
    date_from: str | None = None   # inclusive ISO date
    date_to: str | None = None     # inclusive ISO date

    def describe(self) -> str:
        def _uk(iso: str) -> str:
            y, m, d = iso.split("-")
            return f"{d}/{m}/{y}"

        if self.date_from and self.date_to:
            return f"between {_uk(self.date_from)} and {_uk(self.date_to)}"
        if self.date_from:
            return f"since {_uk(self.date_from)}"
        if self.date_to:
            return f"up to {_uk(self.date_to)}"
        return ""


@dataclass(frozen=True)
class QuestionAnalysis:
    type: QuestionType
    raw_question: str
    normalized_question: str
    entities: tuple[str, ...] = ()
    team_entities: tuple[str, ...] = ()
    opposition_entities: tuple[str, ...] = ()
    metrics: tuple[str, ...] = ()
    time_range: TimeRange | None = None
    season: str | None = None
    locations: tuple[str, ...] = ()
    competitions: tuple[str, ...] = ()
    competition_types: tuple[str, ...] = ()
    results: tuple[str, ...] = ()
    per_season: bool = False
    limit: int | None = None
    order: str = "desc"
    milestone: int | None = None
    name_fragment: str | None = None
    confidence: float = 0.0
    requires_clarification: bool = False
    clarification_message: str | None = None
    candidates: tuple[str, ...] = ()   # names a clarification offers

    @property
    def primary_entity(self) -> str | None:
        return self.entities[0] if self.entities else None

    @property
    def primary_metric(self) -> str | None:
        return self.metrics[0] if self.metrics else None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["type"] = self.type.value
        return d


@dataclass(frozen=True)
class FuzzyMatch:
    name: str
    confidence: float


@dataclass
class EntityResolutionResult:
    exact_match: str | None = None
    fuzzy_matches: list[FuzzyMatch] = field(default_factory=list)
    ambiguous: bool = False

    @property
    def best(self) -> str | None:
        if self.exact_match:
            return self.exact_match
        if self.fuzzy_matches and not self.ambiguous:
            return self.fuzzy_matches[0].name
        return None

    @property
    def candidates(self) -> list[str]:
        return [m.name for m in self.fuzzy_matches]


@dataclass
class HistoryEntry:
    question: str
    entities: tuple[str, ...]
    metrics: tuple[str, ...]
    analysis: QuestionAnalysis
    timestamp: float


@dataclass
class PendingClarification:
    original_question: str
    message: str
    partial_name: str | None
    analysis: QuestionAnalysis
    timestamp: float
    candidates: tuple[str, ...] = ()


@dataclass
class ConversationContext:
    session_id: str
    history: list[HistoryEntry] = field(default_factory=list)   # most recent first
    pending_clarification: PendingClarification | None = None
    updated_at: float = 0.0


@dataclass(frozen=True)
class Predicate:
    kind: PredicateKind
    field: str
    params: tuple[str, ...]
    selectivity: Selectivity
    operators: tuple[str, ...] = ()

    @property
    def relation(self) -> Relation | None:
        if self.field.startswith("f."):
            return Relation.FIXTURE
        if self.field.startswith("md."):
            return Relation.MATCH_DETAIL
        return None

    def to_cypher(self) -> str:
        if self.kind is PredicateKind.EQUALITY:
            return f"{self.field} = ${self.params[0]}"
        if self.kind is PredicateKind.MEMBERSHIP:
            return f"{self.field} IN ${self.params[0]}"
        if self.kind is PredicateKind.RANGE:
            return " AND ".join(
                f"{self.field} {op} ${p}" for op, p in zip(self.operators, self.params)
            )
        if self.kind is PredicateKind.EXISTENCE:
            return f"{self.field} IS NOT NULL"
        raise ValueError(f"Unknown predicate kind: {self.kind}")


@dataclass(frozen=True)
class QueryPlan:
    template_id: TemplateId
    result_kind: ResultKind
    cypher: str
    predicates: tuple[Predicate, ...]
    parameters: dict[str, Any]
    joins_required: frozenset[Relation]
    metric: str | None
    description: str

    def to_dict(self) -> dict:
        return {
            "templateId": self.template_id.value,
            "resultKind": self.result_kind.value,
            "cypher": self.cypher,
            "predicates": [p.to_cypher() for p in self.predicates],
            "parameters": self.parameters,
            "joinsRequired": sorted(r.value for r in self.joins_required),
            "metric": self.metric,
        }


@dataclass(frozen=True)
class PlanFailure:
    kind: ErrorKind
    message: str


@dataclass
class Visualization:
    kind: VisualizationKind
    data: Any
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "data": self.data, "config": self.config}


@dataclass
class ResponseEnvelope:
    answer: str
    answer_value: float | int | str | None = None
    visualization: Visualization | None = None
    sources: list[str] = field(default_factory=list)
    query_plan_description: str | None = None
    suggestions: list[str] = field(default_factory=list)
    error_kind: str | None = None
    debug: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        out = {
            "answer": self.answer,
            "answerValue": self.answer_value,
            "visualization": self.visualization.to_dict() if self.visualization else None,
            "sources": list(self.sources),
            "queryPlanDescription": self.query_plan_description,
            "suggestions": list(self.suggestions),
            "errorKind": self.error_kind,
        }
        if self.debug is not None:
            out["debug"] = self.debug
        return out

