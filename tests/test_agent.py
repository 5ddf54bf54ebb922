"""
End-to-end tests for agent.Agent with a fake graph executor.
"""

from agent import Agent
from clarification import CONNECTION_APOLOGY, GENERIC_APOLOGY
from conftest import FakeExecutor
from errors import ConnectionUnavailable, ErrorKind, QueryExecutionFailure
from query_planner import NEED_METRIC_MESSAGE
from question_log import get_unanswered


def _player_rows(values):
    """Responder giving each player the value for the first metric property found in the statement."""
    def responder(statement, params):
        for prop, value in values.items():
            if prop in statement:
                return [{"playerName": params.get("playerName"), "value": value}]
        return []
    return responder


class TestAsk:
    """Single-turn questions."""

    def test_player_goals(self, make_agent):
        """The canonical question runs one query and answers in a sentence."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 42}))
        env = agent.ask("How many goals has Luke Bangs scored?")
        assert env.answer == "Luke Bangs has scored 42 goals."
        assert env.answer_value == 42
        assert env.error_kind is None
        assert len(executor.calls) == 1
        assert executor.calls[0][1] == {"playerName": "Luke Bangs"}

    def test_typo_in_name(self, make_agent):
        """A misspelt name is resolved before planning."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 42}))
        env = agent.ask("How many goals has Luke Bangz scored?")
        assert env.answer == "Luke Bangs has scored 42 goals."

    def test_team_filter(self, make_agent):
        """Team filters reach the query parameters."""
        agent, executor = make_agent([{"playerName": "Luke Bangs", "value": 9, "games": 12}])
        env = agent.ask("How many goals has Luke Bangs scored for the 2s?")
        assert env.answer == "Luke Bangs has scored 9 goals for the 2nd XI."
        assert executor.calls[0][1]["team"] == "2nd XI"

    def test_unknown_player(self, make_agent):
        """A name matching nobody is reported without running a query."""
        agent, executor = make_agent()
        env = agent.ask("How many goals has Zebedee Quartermaine scored?")
        assert env.error_kind == ErrorKind.ENTITY_NOT_FOUND.value
        assert env.answer.startswith('I couldn\'t find a player named "Zebedee Quartermaine".')
        assert executor.calls == []

    def test_missing_metric(self, make_agent):
        """A player question with no statistic asks for one."""
        agent, executor = make_agent()
        env = agent.ask("Tell me about Luke Bangs")
        assert env.answer == NEED_METRIC_MESSAGE
        assert env.error_kind == ErrorKind.UNSUPPORTED_METRIC.value
        assert 1 <= len(env.suggestions) <= 3
        assert executor.calls == []

    def test_connection_failure(self, make_agent):
        """An unreachable database gets the connection apology and is logged."""
        agent, _ = make_agent(error=ConnectionUnavailable("down", detail="refused"))
        env = agent.ask("How many goals has Luke Bangs scored?")
        assert env.answer == CONNECTION_APOLOGY
        assert env.error_kind == ErrorKind.CONNECTION_UNAVAILABLE.value
        assert env.debug is None
        assert get_unanswered()[0]["question"] == "How many goals has Luke Bangs scored?"

    def test_query_failure_in_diagnostic_mode(self, make_agent):
        """Diagnostic mode exposes the failure detail and the plan."""
        agent, _ = make_agent(error=QueryExecutionFailure("bad", detail="SyntaxError"), diagnostic=True)
        env = agent.ask("How many goals has Luke Bangs scored?")
        assert env.answer == GENERIC_APOLOGY
        assert env.debug["detail"] == "SyntaxError"
        assert env.debug["plan"]["templateId"] == "player_stat"

    def test_diagnostic_success(self, make_agent):
        """Diagnostic mode attaches the analysis, plan and rows."""
        agent, _ = make_agent(_player_rows({"allGoalsScored": 3}), diagnostic=True)
        env = agent.ask("How many goals has Luke Bangs scored?")
        assert set(env.debug) == {"analysis", "plan", "rows"}
        assert env.debug["rows"] == [{"playerName": "Luke Bangs", "value": 3}]

    def test_roster_outage_during_name_lookup(self, contexts):
        """A database outage while reading the roster still answers with the network apology."""
        executor = FakeExecutor(error=ConnectionUnavailable("down", detail="refused"))
        agent = Agent(executor, contexts=contexts)
        for question in ("How many goals has Luke Bangs scored?", "How many goals has Tom scored?"):
            env = agent.ask(question)
            assert env.answer == CONNECTION_APOLOGY
            assert env.error_kind == ErrorKind.CONNECTION_UNAVAILABLE.value
            assert get_unanswered()[0]["question"] == question
        assert executor.calls

    def test_team_win_percentage(self, make_agent):
        """'percentage of games ... won' asks for wins over games, not appearances."""
        agent, executor = make_agent([{"numerator": 6, "denominator": 10, "games": 10, "value": 0.6}])
        env = agent.ask("What percentage of games has the 1st XI won?")
        statement, params = executor.calls[0]
        assert "f.result = 'W'" in statement
        assert "AS denominator" in statement
        assert params == {"team": "1st XI"}
        assert env.answer_value == 60.0

    def test_first_person_without_player(self, make_agent):
        """'I' with nobody selected asks which player; a name then answers it."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 42}))
        first = agent.ask("How many goals have I scored?", session_id="s1")
        assert first.answer == "Which player are you asking about?"
        assert executor.calls == []
        second = agent.ask("Luke Bangs", session_id="s1")
        assert second.answer == "Luke Bangs has scored 42 goals."

    def test_most_played_with(self, make_agent):
        """Team-mate questions count shared fixtures and name the top team-mate."""
        agent, executor = make_agent([{"playerName": "Oli Goddard", "value": 34}])
        env = agent.ask("Who has Luke Bangs played with the most?")
        assert env.answer == "Luke Bangs has played most often with Oli Goddard: 34 games together."
        statement, params = executor.calls[0]
        assert "q <> p" in statement
        assert params["playerName"] == "Luke Bangs"


class TestConversation:
    """Multi-turn behaviour."""

    def test_ambiguous_first_name_then_surname(self, make_agent):
        """'Tom' asks which Tom; the reply 'Smith' completes the question."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 5}))
        first = agent.ask("How many goals has Tom scored?", session_id="s1")
        assert first.error_kind == ErrorKind.AMBIGUOUS_ENTITY.value
        assert "Tom Jones and Tom Smith" in first.answer
        assert executor.calls == []

        second = agent.ask("Smith", session_id="s1")
        assert second.answer == "Tom Smith has scored 5 goals."
        assert executor.calls[0][1] == {"playerName": "Tom Smith"}

    def test_follow_up_reuses_player(self, make_agent):
        """'What about assists?' is about the player from the previous turn."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 42, "assists": 7}))
        agent.ask("How many goals has Luke Bangs scored?", session_id="s1")
        env = agent.ask("What about assists?", session_id="s1")
        assert env.answer == "Luke Bangs has provided 7 assists."

    def test_sessions_are_isolated(self, make_agent):
        """Another session does not see this session's player."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 42, "assists": 7}))
        agent.ask("How many goals has Luke Bangs scored?", session_id="s1")
        env = agent.ask("What about assists?", session_id="s2")
        assert "Luke Bangs" not in env.answer

    def test_reset_forgets_history(self, make_agent):
        """After a reset a follow-up has nothing to refer back to."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 42, "assists": 7}))
        agent.ask("How many goals has Luke Bangs scored?", session_id="s1")
        agent.reset("s1")
        env = agent.ask("What about assists?", session_id="s1")
        assert "Luke Bangs" not in env.answer
        assert len(executor.calls) == 1

    def test_statistic_reply_does_not_pick_a_player(self, make_agent):
        """A reply that is a statistic is a new question, not one of the offered names."""
        agent, executor = make_agent(_player_rows({"allGoalsScored": 5, "assists": 2}))
        agent.ask("How many goals has Tom scored?", session_id="s1")
        env = agent.ask("assists", session_id="s1")
        assert "Tom" not in env.answer
        assert all(params.get("playerName") not in ("Tom Smith", "Tom Jones")
                   for _, params in executor.calls)

    def test_session_locks_do_not_pile_up(self, make_agent, contexts):
        """One-off sessions leave no lock behind once their turn is over."""
        agent, _ = make_agent()
        for i in range(50):
            agent.ask("How many goals has Zebedee Quartermaine scored?", session_id=f"once-{i}")
            agent.reset(f"once-{i}")
        assert contexts.store._locks == {}
        assert len(contexts.store) == 0
