"""Run query plans against the club's Neo4j graph.

The graph is reached over Neo4j's HTTP transactional endpoint
(``POST {NEO4J_URI}/db/{database}/tx/commit``), so the only client library
needed is ``requests``. Every failure surfaces as either
``ConnectionUnavailable`` (the server could not be reached) or
``QueryExecutionFailure`` (the server rejected or failed the statement).
"""
from __future__ import annotations
import json
import logging
from abc import ABC, abstractmethod

import requests

import settings
from chat_models import QueryPlan
from entity_resolver import RosterSource
from errors import ConnectionUnavailable, QueryExecutionFailure
from ttl_cache import TTLCache

logger = logging.getLogger(__name__)


class QueryExecutor(ABC):
    """Anything that can run a Cypher statement and return rows as dicts."""

    @abstractmethod
    def run(self, statement: str, parameters: dict | None = None) -> list[dict]:
        pass

    def execute(self, plan: QueryPlan) -> list[dict]:
        return self.run(plan.cypher, plan.parameters)


def _rows_from_result(result: dict) -> list[dict]:
    columns = result.get("columns", [])
    return [dict(zip(columns, item.get("row", []))) for item in result.get("data", [])]


class Neo4jHttpExecutor(QueryExecutor):
    def __init__(self, uri: str, user: str, password: str,
                 database: str = settings.NEO4J_DATABASE, timeout: float = settings.NEO4J_TIMEOUT):
        self.url = f"{uri.rstrip('/')}/db/{database}/tx/commit"
        self.auth = (user, password)
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "Neo4jHttpExecutor":
        if not settings.NEO4J_USER or not settings.NEO4J_PASSWORD:
            raise RuntimeError("Missing Neo4j credentials. Set NEO4J_USER and NEO4J_PASSWORD.")
        return cls(settings.NEO4J_URI, settings.NEO4J_USER, settings.NEO4J_PASSWORD)

    def run(self, statement: str, parameters: dict | None = None) -> list[dict]:
        payload = {"statements": [{"statement": statement, "parameters": parameters or {}}]}
        try:
            r = requests.post(
                self.url,
                json=payload,
                auth=self.auth,
                headers={"Accept": "application/json;charset=UTF-8"},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ConnectionUnavailable("Graph database unreachable", detail=str(e)) from e

        if r.status_code in (502, 503, 504):
            raise ConnectionUnavailable("Graph database unavailable",
                                        detail=f"HTTP {r.status_code}: {r.text[:300]}")
        if not r.ok:
            raise QueryExecutionFailure("Graph query rejected",
                                        detail=f"HTTP {r.status_code}: {r.text[:300]}")

        try:
            body = r.json()
        except ValueError as e:
            raise QueryExecutionFailure("Graph response was not JSON", detail=r.text[:300]) from e

        errors = body.get("errors") or []
        if errors:
            first = errors[0]
            raise QueryExecutionFailure(
                "Graph query failed",
                detail=f"{first.get('code', 'unknown')}: {first.get('message', '')}",
            )
        results = body.get("results") or []
        return _rows_from_result(results[0]) if results else []


class CachedExecutor(QueryExecutor):
    """Wraps another executor and remembers results for ``ttl`` seconds."""

    def __init__(self, inner: QueryExecutor, ttl: float = settings.QUERY_CACHE_TTL):
        self.inner = inner
        self.cache = TTLCache(ttl=ttl)

    def run(self, statement: str, parameters: dict | None = None) -> list[dict]:
        key = (statement, json.dumps(parameters or {}, sort_keys=True, default=str))
        hit, rows = self.cache.get(key)
        if hit:
            logger.debug("Query cache hit")
            return rows
        rows = self.inner.run(statement, parameters)
        self.cache.set(key, rows)
        return rows


ROSTER_QUERIES = {
    "player": "MATCH (p:Player) WHERE p.playerName IS NOT NULL "
              "RETURN DISTINCT p.playerName AS name ORDER BY name",
    "team": "MATCH (f:Fixture) WHERE f.team IS NOT NULL "
            "RETURN DISTINCT f.team AS name ORDER BY name",
    "opposition": "MATCH (f:Fixture) WHERE f.opposition IS NOT NULL "
                  "RETURN DISTINCT f.opposition AS name ORDER BY name",
}


class GraphRosterSource(RosterSource):
    """Canonical names read from the graph itself."""

    def __init__(self, executor: QueryExecutor):
        self.executor = executor

    def all_canonical_names(self, kind: str) -> list[str]:
        statement = ROSTER_QUERIES.get(kind)
        if statement is None:
            raise ValueError(f"Unknown entity kind: {kind}")
        return [row["name"] for row in self.executor.run(statement) if row.get("name")]
