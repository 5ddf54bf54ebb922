"""
Tests for query_planner.py - template choice, join minimization and predicate ordering.
"""

import pytest

import settings
from chat_models import (
    PlanFailure,
    QuestionAnalysis,
    QuestionType,
    Relation,
    ResultKind,
    Selectivity,
    TemplateId,
    TimeRange,
)
from errors import ErrorKind
from query_planner import METRIC_RULES, build_plan, safe_ratio
from metric_registry import METRICS


def _analysis(qtype=QuestionType.PLAYER, entities=("Luke Bangs",), metrics=("G",), **kw):
    return QuestionAnalysis(type=qtype, raw_question="q", normalized_question=kw.pop("text", "q"),
                            entities=entities, metrics=metrics, **kw)


class TestJoinMinimization:
    """Joins come only from filters, the metric and the grouping."""

    def test_unfiltered_goals_read_player_node(self):
        """No filters: no match-detail or fixture join at all."""
        plan = build_plan(_analysis())
        assert plan.template_id is TemplateId.PLAYER_STAT
        assert plan.joins_required == frozenset()
        assert "Fixture" not in plan.cypher
        assert "p.allGoalsScored" in plan.cypher
        assert plan.parameters == {"playerName": "Luke Bangs"}

    def test_team_scoped_goals_skip_fixture(self):
        """Goals for a team use the match record's team, not the fixture."""
        plan = build_plan(_analysis(team_entities=("2nd XI",)))
        assert Relation.FIXTURE not in plan.joins_required
        assert Relation.MATCH_DETAIL in plan.joins_required
        assert "md.team = $team" in plan.cypher

    def test_team_scoped_goals_never_join_fixture(self):
        """Other filters on a team-scoped counter stay on the match record."""
        plan = build_plan(_analysis(team_entities=("2nd XI",), opposition_entities=("Hampton",),
                                    locations=("home",), results=("W",)))
        assert plan.joins_required == frozenset({Relation.MATCH_DETAIL})
        assert "Fixture" not in plan.cypher
        assert "md.opposition = $opposition" in plan.cypher
        assert "md.homeOrAway IN $locations" in plan.cypher
        assert "md.team = $team" in plan.cypher

    def test_team_scoped_per_season_groups_on_match_record(self):
        """Per-season appearances for a team group on the match record's season."""
        plan = build_plan(_analysis(metrics=("APP",), team_entities=("1st XI",), per_season=True))
        assert plan.joins_required == frozenset({Relation.MATCH_DETAIL})
        assert "md.season AS season" in plan.cypher

    def test_opposition_needs_fixture_for_other_counters(self):
        """Counters that are not team-scoped read the opposition off the fixture."""
        plan = build_plan(_analysis(metrics=("A",), opposition_entities=("Hampton",)))
        assert Relation.FIXTURE in plan.joins_required
        assert "f.opposition = $opposition" in plan.cypher

    def test_assists_with_team_join_fixture(self):
        """Counters that are not team-scoped filter the team on the fixture."""
        plan = build_plan(_analysis(metrics=("A",), team_entities=("1st XI",)))
        assert plan.joins_required == frozenset({Relation.MATCH_DETAIL, Relation.FIXTURE})

    def test_fixture_dependent_metric(self):
        """Wins need the fixture result even with no filters."""
        plan = build_plan(_analysis(metrics=("WINS",)))
        assert Relation.FIXTURE in plan.joins_required
        assert "f.result = 'W'" in plan.cypher

    def test_home_metric_adds_implicit_filter(self):
        """Home games carry their own home/away predicate."""
        plan = build_plan(_analysis(metrics=("HOME",)))
        assert plan.parameters["homeOrAway"] == "Home"
        assert "f.homeOrAway = $homeOrAway" in plan.cypher

    def test_plan_is_deterministic(self):
        """The same analysis always gives an equal plan."""
        a = _analysis(team_entities=("2nd XI",), season="2019/20", locations=("home",))
        assert build_plan(a) == build_plan(a)


class TestPredicateOrdering:
    """Predicates come out identity -> range -> membership -> other."""

    def test_order_by_selectivity(self):
        """Identity predicates lead, then the season, then memberships."""
        a = _analysis(season="2019/20", opposition_entities=("Hampton",), locations=("home",),
                      competition_types=("league",))
        plan = build_plan(a)
        fields = [p.field for p in plan.predicates]
        assert fields == ["p.playerName", "f.opposition", "f.season", "f.homeOrAway", "f.compType"]
        sel = [p.selectivity for p in plan.predicates]
        assert sel == sorted(sel)

    def test_date_range_predicate(self):
        """A date range becomes one range predicate with both bounds."""
        a = _analysis(QuestionType.TEMPORAL,
                      time_range=TimeRange("2020-01-01", "2020-12-31"))
        plan = build_plan(a)
        rng = [p for p in plan.predicates if p.selectivity is Selectivity.RANGE][0]
        assert rng.to_cypher() == "f.date >= $dateFrom AND f.date <= $dateTo"
        assert plan.parameters["dateFrom"] == "2020-01-01"


class TestTemplates:
    """Template selection per question type."""

    def test_ratio_metric_two_stage(self):
        """Ratios sum numerator and denominator, then divide with a guard."""
        plan = build_plan(_analysis(metrics=("GperAPP",)))
        assert plan.template_id is TemplateId.PLAYER_RATIO
        assert "AS numerator" in plan.cypher and "AS denominator" in plan.cypher
        assert "CASE WHEN denominator > 0" in plan.cypher

    def test_per_season(self):
        """Per-season questions group by fixture season, ascending."""
        plan = build_plan(_analysis(per_season=True))
        assert plan.template_id is TemplateId.PLAYER_PER_SEASON
        assert plan.result_kind is ResultKind.SEASON_BREAKDOWN
        assert "f.season AS season" in plan.cypher
        assert plan.cypher.endswith("ORDER BY season ASC")

    def test_ranking_defaults(self):
        """Rankings sort descending with the default limit."""
        plan = build_plan(_analysis(QuestionType.RANKING, entities=()))
        assert plan.result_kind is ResultKind.RANKED_LIST
        assert plan.parameters["limit"] == settings.DEFAULT_TOP_N
        assert "ORDER BY value DESC" in plan.cypher
        assert "p.allGoalsScored IS NOT NULL" in plan.cypher

    def test_ranking_ascending_with_limit(self):
        """'fewest' and 'top 5' are honoured."""
        plan = build_plan(_analysis(QuestionType.RANKING, entities=(), order="asc", limit=5))
        assert plan.parameters["limit"] == 5
        assert "ORDER BY value ASC" in plan.cypher

    def test_team_stat(self):
        """Team questions sum over the team's fixtures."""
        plan = build_plan(_analysis(QuestionType.TEAM, entities=(), team_entities=("3rd XI",)))
        assert plan.template_id is TemplateId.TEAM_STAT
        assert plan.cypher.startswith("MATCH (f:Fixture)")
        assert "f.goalsScored" in plan.cypher

    def test_club_players_used(self):
        """'How many players' counts distinct players."""
        plan = build_plan(_analysis(QuestionType.CLUB, entities=(), metrics=("PLAYERS",)))
        assert "count(DISTINCT p)" in plan.cypher

    def test_comparison(self):
        """Comparisons filter on the list of names."""
        plan = build_plan(_analysis(QuestionType.COMPARISON, entities=("Luke Bangs", "Oli Goddard")))
        assert plan.result_kind is ResultKind.COMPARISON
        assert plan.parameters["playerNames"] == ["Luke Bangs", "Oli Goddard"]

    def test_streak(self):
        """Streaks return one row per game in date order."""
        plan = build_plan(_analysis(QuestionType.STREAK))
        assert plan.result_kind is ResultKind.STREAK
        assert "ORDER BY date ASC" in plan.cypher

    def test_double_game(self):
        """Double game weeks group games by ISO week."""
        plan = build_plan(_analysis(QuestionType.DOUBLE_GAME, metrics=("DGW",)))
        assert plan.template_id is TemplateId.DOUBLE_GAME
        assert "d.week" in plan.cypher

    def test_milestone_step(self):
        """Without a number the next multiple of the step is the milestone."""
        plan = build_plan(_analysis(QuestionType.MILESTONE, entities=(), metrics=("APP",)))
        assert plan.parameters["step"] == 50
        plan = build_plan(_analysis(QuestionType.MILESTONE, entities=(), metrics=("APP",), milestone=200))
        assert plan.parameters["milestone"] == 200

    def test_biggest_win(self):
        """Biggest win sorts wins by goal difference."""
        a = _analysis(QuestionType.FIXTURE, entities=(), metrics=(), team_entities=("1st XI",),
                      text="what was the 1st xi's biggest win?")
        plan = build_plan(a)
        assert plan.template_id is TemplateId.FIXTURE_LIST
        assert plan.parameters["results"] == ["W"]
        assert "(goalsFor - goalsAgainst) DESC" in plan.cypher

    def test_league_winner_and_position(self):
        """No team asks for the winner; a team asks for its position."""
        winner = build_plan(_analysis(QuestionType.LEAGUE_TABLE, entities=(), metrics=(), season="2018/19"))
        assert winner.template_id is TemplateId.LEAGUE_WINNER
        assert winner.parameters == {"position": 1, "season": "2018/19"}
        position = build_plan(_analysis(QuestionType.LEAGUE_TABLE, entities=(), metrics=(),
                                        team_entities=("2nd XI",), season="2021/22"))
        assert position.template_id is TemplateId.LEAGUE_POSITION
        assert position.parameters["team"] == "2nd XI"
        assert position.joins_required == frozenset()

    def test_team_mates_share_a_fixture(self):
        """Team-mates are players whose match records hang off the same fixture."""
        plan = build_plan(_analysis(QuestionType.TEAMMATES, metrics=("APP",), team_entities=("2nd XI",)))
        assert plan.template_id is TemplateId.TEAMMATES
        assert plan.result_kind is ResultKind.TEAMMATES
        assert "(f:Fixture)-[:HAS_MATCH_DETAILS]->(md2:MatchDetail)<-[:PLAYED_IN]-(q:Player)" in plan.cypher
        assert "q <> p" in plan.cypher
        assert "count(DISTINCT f) AS value" in plan.cypher
        assert plan.parameters == {"playerName": "Luke Bangs", "team": "2nd XI",
                                   "limit": settings.DEFAULT_TOP_N}

    def test_games_together(self):
        """Two players give one count of shared fixtures."""
        plan = build_plan(_analysis(QuestionType.TEAMMATES, entities=("Luke Bangs", "Oli Goddard"),
                                    metrics=("APP",)))
        assert plan.template_id is TemplateId.GAMES_TOGETHER
        assert plan.parameters == {"playerName": "Luke Bangs", "teammateName": "Oli Goddard"}
        assert "LIMIT" not in plan.cypher
        assert [p.field for p in plan.predicates] == ["p.playerName", "q.playerName"]

    def test_metric_named_by_alias(self):
        """A statistic given as a typed phrase plans under its canonical key."""
        plan = build_plan(_analysis(metrics=("apps",)))
        assert plan.metric == "APP"
        assert plan.template_id is TemplateId.PLAYER_STAT


class TestPlanFailures:
    """Unplannable questions return a PlanFailure instead of raising."""

    def test_missing_metric(self):
        """A player question with no statistic asks for one."""
        result = build_plan(_analysis(metrics=()))
        assert isinstance(result, PlanFailure)
        assert result.kind is ErrorKind.UNSUPPORTED_METRIC
        assert "statistic" in result.message

    def test_unknown_metric(self):
        """An unregistered key is unsupported."""
        result = build_plan(_analysis(metrics=("XYZ",)))
        assert isinstance(result, PlanFailure)
        assert result.kind is ErrorKind.UNSUPPORTED_METRIC

    def test_general_question(self):
        """A general question has nothing to plan."""
        assert isinstance(build_plan(_analysis(QuestionType.GENERAL, entities=(), metrics=())), PlanFailure)

    def test_players_metric_for_one_player(self):
        """'players used' makes no sense for a single player."""
        assert isinstance(build_plan(_analysis(metrics=("PLAYERS",))), PlanFailure)


class TestSafeRatio:
    """Tests for safe_ratio()"""

    def test_zero_denominator(self):
        """Division by zero is exactly 0."""
        assert safe_ratio(5, 0) == 0
        assert safe_ratio(None, None) == 0

    def test_scaled(self):
        """The scale multiplies the ratio."""
        assert safe_ratio(1, 4, 100) == 25.0


class TestRuleTable:
    """The rule table and the registry describe the same metrics."""

    @pytest.mark.parametrize("key", sorted(METRICS))
    def test_every_metric_has_a_rule(self, key):
        """Every registered metric has a planning rule."""
        assert key in METRIC_RULES
