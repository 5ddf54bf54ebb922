from __future__ import annotations
import os


def _flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


CLUB_NAME = os.getenv("CLUB_NAME", "Dorkinians")

NEO4J_URI = os.getenv("NEO4J_URI", "http://localhost:7474")
NEO4J_DATABASE = os.getenv("NEO4J_DATABASE", "neo4j")
NEO4J_USER = os.getenv("NEO4J_USER")
NEO4J_PASSWORD = os.getenv("NEO4J_PASSWORD")
NEO4J_TIMEOUT = float(os.getenv("NEO4J_TIMEOUT", "30"))

QUERY_CACHE_TTL = float(os.getenv("QUERY_CACHE_TTL", "300"))
ROSTER_CACHE_TTL = float(os.getenv("ROSTER_CACHE_TTL", "300"))

CONTEXT_STORE = os.getenv("CONTEXT_STORE", "memory")
CONTEXT_TTL = float(os.getenv("CONTEXT_TTL", "3600"))
MAX_HISTORY = int(os.getenv("MAX_HISTORY", "3"))

# Tunable matching thresholds
FUZZY_MIN_CONFIDENCE = float(os.getenv("FUZZY_MIN_CONFIDENCE", "0.6"))
FUZZY_DECISIVE_MARGIN = float(os.getenv("FUZZY_DECISIVE_MARGIN", "0.08"))
FUZZY_MAX_SUGGESTIONS = int(os.getenv("FUZZY_MAX_SUGGESTIONS", "3"))
CLARIFICATION_MAX_WORDS = int(os.getenv("CLARIFICATION_MAX_WORDS", "3"))

TABLE_DISPLAY_LIMIT = int(os.getenv("TABLE_DISPLAY_LIMIT", "10"))
DEFAULT_TOP_N = int(os.getenv("DEFAULT_TOP_N", "25"))

DEBUG = _flag("CHATBOT_DEBUG")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SOURCES = ["Club Neo4j Database"]
