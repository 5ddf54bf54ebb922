from datetime import date

import pytest

from agent import Agent
from conversation_context import ConversationContextManager, InMemoryContextStore
from entity_resolver import EntityResolver, StaticRosterSource
from query_executor import QueryExecutor
from question_analyzer import QuestionAnalyzer
from question_log import clear_unanswered

PLAYERS = [
    "Luke Bangs",
    "Oli Goddard",
    "Tom Smith",
    "Tom Jones",
    "Kieran Mckenna",
    "Ben Carter",
]
TEAMS = ["1st XI", "2nd XI", "3rd XI", "4th XI"]
OPPOSITIONS = ["Hampton", "Old Wilsonians", "Alleyn Old Boys"]


class FakeExecutor(QueryExecutor):
    """Returns canned rows and remembers every statement it was given.

    ``responder`` is either a list of rows or a callable taking
    (statement, parameters) and returning rows.
    """

    def __init__(self, responder=None, error=None):
        self.responder = responder if responder is not None else []
        self.error = error
        self.calls = []

    def run(self, statement, parameters=None):
        self.calls.append((statement, dict(parameters or {})))
        if self.error is not None:
            raise self.error
        if callable(self.responder):
            return self.responder(statement, parameters or {})
        return list(self.responder)


@pytest.fixture
def roster():
    return StaticRosterSource(players=PLAYERS, teams=TEAMS, oppositions=OPPOSITIONS)


@pytest.fixture
def resolver(roster):
    return EntityResolver(roster)


@pytest.fixture
def analyzer(resolver):
    return QuestionAnalyzer(resolver=resolver, today=lambda: date(2024, 10, 1))


@pytest.fixture
def contexts():
    return ConversationContextManager(InMemoryContextStore(ttl=3600))


@pytest.fixture
def make_agent(resolver, analyzer, contexts):
    def _make(responder=None, error=None, diagnostic=False):
        executor = FakeExecutor(responder, error)
        agent = Agent(executor, contexts=contexts, resolver=resolver,
                      analyzer=analyzer, diagnostic=diagnostic)
        return agent, executor
    return _make


@pytest.fixture(autouse=True)
def _clean_question_log():
    clear_unanswered()
    yield
    clear_unanswered()
