"""
Tests for question_analyzer.py - normalization, filter extraction and intent detection.
"""

from datetime import date

from chat_models import QuestionType
from question_analyzer import (
    extract_metrics,
    extract_season,
    extract_time_range,
    map_team,
    normalize,
    normalize_season,
)


class TestNormalization:
    """Tests for normalize() and the small value mappers."""

    def test_colloquial_verbs_become_scored(self):
        """Slang scoring verbs are rewritten to 'scored'."""
        assert normalize("How many has Luke Bangs  bagged?") == "How many has Luke Bangs scored?"

    def test_curly_apostrophes_unified(self):
        """Typographic apostrophes become plain ones."""
        assert normalize("Luke Bangs’ goals") == "Luke Bangs' goals"

    def test_team_ordinals(self):
        """All the usual ways of naming a team map to the canonical label."""
        assert map_team("2s") == "2nd XI"
        assert map_team("3rd") == "3rd XI"
        assert map_team("second team") == "2nd XI"
        assert map_team("8th XI") == "8th XI"
        assert map_team("Luke") is None

    def test_season_normalization(self):
        """Season strings normalize to YYYY/YY."""
        assert normalize_season("2019-20") == "2019/20"
        assert normalize_season("2019/2020") == "2019/20"
        assert normalize_season("nothing here") is None


class TestTimeFilters:
    """Tests for extract_time_range() and extract_season()"""

    def test_since_year_starts_next_january(self):
        """'since 2020' means from 1 January 2021."""
        tr, _ = extract_time_range("How many goals has Luke Bangs scored since 2020?")
        assert tr.date_from == "2021-01-01"
        assert tr.date_to is None

    def test_between_dates(self):
        """Explicit dates give an inclusive range."""
        tr, _ = extract_time_range("goals between 01/09/2019 and 31/12/2019")
        assert (tr.date_from, tr.date_to) == ("2019-09-01", "2019-12-31")

    def test_before_date(self):
        """'before' ends the day before the point."""
        tr, _ = extract_time_range("goals before 1st January 2020")
        assert tr.date_to == "2019-12-31"
        assert tr.date_from is None

    def test_in_year_is_whole_calendar_year(self):
        """'in 2019' covers the calendar year."""
        tr, _ = extract_time_range("goals in 2019")
        assert (tr.date_from, tr.date_to) == ("2019-01-01", "2019-12-31")

    def test_season_is_not_a_year(self):
        """'in 2019/20' is a season, not a calendar year."""
        tr, _ = extract_time_range("goals in 2019/20")
        assert tr is None
        season, _ = extract_season("goals in 2019/20", date(2024, 10, 1))
        assert season == "2019/20"

    def test_relative_seasons(self):
        """'this season' and 'last season' follow the September season start."""
        today = date(2024, 10, 1)
        assert extract_season("this season", today)[0] == "2024/25"
        assert extract_season("last season", today)[0] == "2023/24"
        assert extract_season("this season", date(2024, 3, 1))[0] == "2023/24"


class TestMetricExtraction:
    """Tests for extract_metrics()"""

    def test_split_penalty_phrase(self):
        """'penalties has X scored' is penalties scored, never goals."""
        assert extract_metrics("How many penalties has Luke Bangs scored?") == ["PSC"]

    def test_penalties_missed(self):
        """The verb after the name picks the penalty metric."""
        assert extract_metrics("How many penalties has Luke Bangs missed?") == ["PM"]

    def test_goals_per_game(self):
        """'goals per game' is a ratio, not goals."""
        assert extract_metrics("How many goals per game does Luke Bangs average?") == ["GperAPP"]

    def test_aliases(self):
        """Pseudonyms resolve to canonical keys."""
        assert extract_metrics("How many apps has Oli Goddard made?") == ["APP"]
        assert extract_metrics("How many bookings has Oli Goddard received?") == ["Y"]
        assert extract_metrics("How many clean sheets has Ben Carter kept?") == ["CLS"]

    def test_no_metric(self):
        """A question without a statistic yields nothing."""
        assert extract_metrics("Tell me about Luke Bangs") == []

    def test_games_won_around_a_name(self):
        """'games ... won' counts wins even with a name in between."""
        assert extract_metrics("How many games has Luke Bangs won?") == ["WINS"]
        assert extract_metrics("How many games did Luke Bangs lose?") == ["LOSSES"]
        assert extract_metrics("How many home games has Luke Bangs won?") == ["HOMEWINS"]

    def test_percentage_of_games_won_around_a_team(self):
        """'percentage of games ... won' is the win percentage, not games played."""
        assert extract_metrics("What percentage of games has the 1st XI won?") == ["GAMES%WON"]
        assert extract_metrics("What percentage of away games has Luke Bangs won?") == ["AWAYGAMES%WON"]

    def test_games_played_is_still_appearances(self):
        """Without a result verb 'games' stays appearances."""
        assert extract_metrics("How many games has Luke Bangs played?") == ["APP"]


class TestAnalyze:
    """Tests for QuestionAnalyzer.analyze()"""

    def test_player_goals(self, analyzer):
        """The canonical single-player question."""
        a = analyzer.analyze("How many goals has Luke Bangs scored?")
        assert a.type is QuestionType.PLAYER
        assert a.entities == ("Luke Bangs",)
        assert a.metrics == ("G",)
        assert a.confidence == 1.0
        assert not a.requires_clarification

    def test_team_is_never_a_player(self, analyzer):
        """'the 2s' is a team filter, not a player name."""
        a = analyzer.analyze("How many goals has Luke Bangs scored for the 2s?")
        assert a.entities == ("Luke Bangs",)
        assert a.team_entities == ("2nd XI",)

    def test_opposition_and_location(self, analyzer):
        """Opposition, season and home filters are all picked up."""
        a = analyzer.analyze("How many goals has Luke Bangs scored against Hampton at home in 2019/20?")
        assert a.entities == ("Luke Bangs",)
        assert a.opposition_entities == ("Hampton",)
        assert a.season == "2019/20"
        assert a.locations == ("home",)

    def test_temporal(self, analyzer):
        """A date range on a player question makes it temporal."""
        a = analyzer.analyze("How many goals has Luke Bangs scored since 2020?")
        assert a.type is QuestionType.TEMPORAL
        assert a.time_range.date_from == "2021-01-01"

    def test_team_question(self, analyzer):
        """A team and a metric with no player is a team question."""
        a = analyzer.analyze("How many goals have the 3rd XI scored?")
        assert a.type is QuestionType.TEAM
        assert a.team_entities == ("3rd XI",)
        assert a.entities == ()

    def test_ranking(self, analyzer):
        """'who has the most' is a ranking."""
        a = analyzer.analyze("Who has scored the most goals?")
        assert a.type is QuestionType.RANKING
        assert a.metrics == ("G",)

    def test_league_table(self, analyzer):
        """'won the league' with a season is a league table question."""
        a = analyzer.analyze("Who won the league in 2018/19?")
        assert a.type is QuestionType.LEAGUE_TABLE
        assert a.season == "2018/19"

    def test_per_season(self, analyzer):
        """'per season' flags a season breakdown."""
        a = analyzer.analyze("How many goals has Luke Bangs scored per season?")
        assert a.per_season is True
        assert a.season is None

    def test_ambiguous_first_name(self, analyzer):
        """A bare first name shared by two players asks which one."""
        a = analyzer.analyze("How many goals has Tom scored?")
        assert a.type is QuestionType.CLARIFICATION_NEEDED
        assert a.requires_clarification
        assert a.name_fragment == "Tom"
        assert "Tom Jones and Tom Smith" in a.clarification_message

    def test_unique_first_name_expands(self, analyzer):
        """A first name with one roster match expands to the full name."""
        a = analyzer.analyze("How many goals has Oli scored?")
        assert a.entities == ("Oli Goddard",)

    def test_blank_question(self, analyzer):
        """Empty input asks for a question instead of failing."""
        a = analyzer.analyze("   ")
        assert a.type is QuestionType.CLARIFICATION_NEEDED
        assert a.clarification_message

    def test_first_person_uses_hint(self, analyzer):
        """'my' stands for the selected player."""
        a = analyzer.analyze("How many goals have I scored?", hint_entity="Luke Bangs")
        assert a.entities[0] == "Luke Bangs"

    def test_first_person_without_hint_asks_who(self, analyzer):
        """'I' with no selected player asks which player, never the club total."""
        a = analyzer.analyze("How many goals have I scored?")
        assert a.type is QuestionType.CLARIFICATION_NEEDED
        assert a.requires_clarification
        assert a.clarification_message == "Which player are you asking about?"
        assert a.metrics == ("G",)

    def test_weekday_is_not_a_name(self, analyzer):
        """Weekday names are not read as players."""
        a = analyzer.analyze("How many goals did Luke Bangs score on Saturday?")
        assert a.type is QuestionType.PLAYER
        assert a.entities == ("Luke Bangs",)

    def test_team_win_percentage(self, analyzer):
        """The team win percentage question plans as a team statistic."""
        a = analyzer.analyze("What percentage of games has the 1st XI won?")
        assert a.type is QuestionType.TEAM
        assert a.team_entities == ("1st XI",)
        assert a.metrics == ("GAMES%WON",)

    def test_most_played_with(self, analyzer):
        """'played with the most' asks for a player's team-mates."""
        a = analyzer.analyze("Who has Luke Bangs played with the most?")
        assert a.type is QuestionType.TEAMMATES
        assert a.entities == ("Luke Bangs",)
        assert a.primary_metric == "APP"

    def test_games_played_with_another_player(self, analyzer):
        """Two names and 'played with' count the games they shared."""
        a = analyzer.analyze("How many games has Luke Bangs played with Oli Goddard?")
        assert a.type is QuestionType.TEAMMATES
        assert a.entities == ("Luke Bangs", "Oli Goddard")

    def test_played_with_a_team_is_not_team_mates(self, analyzer):
        """'played with the 2s' is a team filter."""
        a = analyzer.analyze("How many games has Luke Bangs played with the 2s?")
        assert a.type is QuestionType.PLAYER
        assert a.team_entities == ("2nd XI",)

    def test_team_mates_of_nobody_asks_who(self, analyzer):
        """'Who have I played with the most?' with nobody selected asks which player."""
        a = analyzer.analyze("Who have I played with the most?")
        assert a.type is QuestionType.CLARIFICATION_NEEDED
        assert a.clarification_message == "Which player are you asking about?"
