from __future__ import annotations
from enum import Enum


class ErrorKind(str, Enum):
    CONNECTION_UNAVAILABLE = "connection_unavailable"
    QUERY_EXECUTION_ERROR = "query_execution_error"
    UNSUPPORTED_METRIC = "unsupported_metric"
    AMBIGUOUS_ENTITY = "ambiguous_entity"
    ENTITY_NOT_FOUND = "entity_not_found"
    NO_DATA_FOR_FILTERS = "no_data_for_filters"


class ChatbotError(Exception):
    """Base class for failures raised inside the question pipeline."""

    kind: ErrorKind = ErrorKind.QUERY_EXECUTION_ERROR

    def __init__(self, message: str = "", detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class AmbiguousEntity(ChatbotError):
    kind = ErrorKind.AMBIGUOUS_ENTITY

    def __init__(self, fragment: str, candidates: list[str]):
        super().__init__(f"Ambiguous name '{fragment}'")
        self.fragment = fragment
        self.candidates = list(candidates)


class EntityNotFound(ChatbotError):
    kind = ErrorKind.ENTITY_NOT_FOUND

    def __init__(self, name: str, entity_type: str = "player", suggestions: list[str] | None = None):
        super().__init__(f"No {entity_type} named '{name}'")
        self.name = name
        self.entity_type = entity_type
        self.suggestions = list(suggestions or [])


class UnsupportedMetric(ChatbotError):
    kind = ErrorKind.UNSUPPORTED_METRIC


class NoDataForFilters(ChatbotError):
    kind = ErrorKind.NO_DATA_FOR_FILTERS


class QueryExecutionFailure(ChatbotError):
    kind = ErrorKind.QUERY_EXECUTION_ERROR


class ConnectionUnavailable(ChatbotError):
    kind = ErrorKind.CONNECTION_UNAVAILABLE


def error_for(kind: ErrorKind, message: str) -> ChatbotError:
    """The pipeline exception for a failure that was reported as a value."""
    for cls in (UnsupportedMetric, NoDataForFilters, QueryExecutionFailure, ConnectionUnavailable):
        if cls.kind is kind:
            return cls(message)
    error = ChatbotError(message)
    error.kind = kind
    return error
