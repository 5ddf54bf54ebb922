from __future__ import annotations
import logging
from dataclasses import replace

import settings
from chat_models import (
    PLAYER_SCOPED_TYPES,
    PlanFailure,
    QueryPlan,
    QuestionAnalysis,
    QuestionType,
    ResponseEnvelope,
)
from clarification import (
    check_results,
    clarification_envelope,
    classify_failure,
    failure_envelope,
)
from conversation_context import ConversationContextManager
from entity_resolver import EntityResolver
from errors import (
    AmbiguousEntity,
    ChatbotError,
    ConnectionUnavailable,
    EntityNotFound,
    ErrorKind,
    QueryExecutionFailure,
)
from query_executor import QueryExecutor, GraphRosterSource
from query_planner import build_plan
from question_analyzer import WHICH_PLAYER_MESSAGE, QuestionAnalyzer
from question_log import log_unanswered
from response_synthesizer import synthesize

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


class Agent:
    """One chatbot shared by every session.

    A turn is: pending-clarification splice -> analyze -> resolve names ->
    merge with the previous turn -> plan -> execute -> synthesize. Turns for
    the same session run one at a time.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        contexts: ConversationContextManager | None = None,
        resolver: EntityResolver | None = None,
        analyzer: QuestionAnalyzer | None = None,
        diagnostic: bool = settings.DEBUG,
    ):
        self.executor = executor
        self.contexts = contexts or ConversationContextManager()
        self.resolver = resolver or EntityResolver(GraphRosterSource(executor))
        self.analyzer = analyzer or QuestionAnalyzer(resolver=self.resolver)
        self.diagnostic = diagnostic

    def ask(self, question: str, session_id: str | None = None,
            user_hint: str | None = None) -> ResponseEnvelope:
        session_id = session_id or DEFAULT_SESSION
        with self.contexts.session(session_id):
            return self._turn(question, session_id, user_hint)

    def reset(self, session_id: str | None = None) -> None:
        self.contexts.reset(session_id or DEFAULT_SESSION)

    # ------------------------------------------------------------------

    def _turn(self, question: str, session_id: str, user_hint: str | None) -> ResponseEnvelope:
        text = question
        try:
            if self.contexts.get_pending_clarification(session_id) is not None:
                combined = self.contexts.combine_with_pending(session_id, question)
                self.contexts.clear_pending_clarification(session_id)
                if combined:
                    text = combined

            # Name checks read the roster through the executor
            analysis = self.analyzer.analyze(text, hint_entity=user_hint)
            if analysis.requires_clarification:
                self.contexts.add_to_history(session_id, text, analysis)
                kind = ErrorKind.AMBIGUOUS_ENTITY if analysis.name_fragment else None
                envelope = clarification_envelope(analysis.clarification_message or WHICH_PLAYER_MESSAGE,
                                                  kind=kind)
                return self._unanswered(text, analysis, envelope)

            try:
                analysis = self._resolve_entities(analysis, user_hint)
            except AmbiguousEntity as e:
                report = classify_failure(analysis, e)
                self.contexts.set_pending_clarification(
                    session_id, text, report.message, analysis,
                    partial_name=e.fragment, candidates=e.candidates)
                envelope = clarification_envelope(report.message, report.suggestions, report.kind)
                return self._unanswered(text, analysis, envelope)
            except EntityNotFound as e:
                return self._unanswered(text, analysis, failure_envelope(classify_failure(analysis, e)))
        except (ConnectionUnavailable, QueryExecutionFailure) as e:
            return self._backend_failure(text, None, e)

        analysis = self.contexts.merge_context(session_id, analysis)

        if analysis.type in PLAYER_SCOPED_TYPES and not analysis.entities:
            self.contexts.set_pending_clarification(session_id, text, WHICH_PLAYER_MESSAGE, analysis)
            return self._unanswered(text, analysis, clarification_envelope(WHICH_PLAYER_MESSAGE))

        plan = build_plan(analysis)
        if isinstance(plan, PlanFailure):
            report = classify_failure(analysis, plan)
            return self._unanswered(text, analysis, failure_envelope(report, self.diagnostic))

        try:
            rows = self.executor.execute(plan)
        except (ConnectionUnavailable, QueryExecutionFailure) as e:
            return self._backend_failure(text, analysis, e, plan)

        problem = check_results(analysis, rows)
        if problem is not None:
            return self._unanswered(text, analysis, failure_envelope(problem))

        envelope = synthesize(rows, analysis, plan)
        self.contexts.add_to_history(session_id, text, analysis)
        if self.diagnostic:
            envelope.debug = {"analysis": analysis.to_dict(), "plan": plan.to_dict(), "rows": rows}
        if envelope.error_kind:
            return self._unanswered(text, analysis, envelope)
        return envelope

    def _backend_failure(self, text: str, analysis: QuestionAnalysis | None, error: ChatbotError,
                         plan: QueryPlan | None = None) -> ResponseEnvelope:
        logger.error("Query failed (%s) for %r: %s", error.kind.value, text, error.detail or error.message)
        envelope = failure_envelope(classify_failure(analysis, error), self.diagnostic)
        if self.diagnostic and plan is not None:
            envelope.debug = {**(envelope.debug or {}), "plan": plan.to_dict()}
        return self._unanswered(text, analysis, envelope)

    def _resolve_entities(self, analysis: QuestionAnalysis, user_hint: str | None) -> QuestionAnalysis:
        """Swap typed names for canonical roster names.

        Raises AmbiguousEntity or EntityNotFound for player names; opposition
        names that match nothing are kept as typed.
        """
        players = []
        for name in analysis.entities:
            if name == user_hint:
                players.append(name)
                continue
            result = self.resolver.resolve(name, "player")
            if result.best:
                players.append(result.best)
            elif result.ambiguous:
                raise AmbiguousEntity(name, result.candidates)
            else:
                raise EntityNotFound(name, "player", self.resolver.suggestions(name, "player"))

        oppositions = []
        for name in analysis.opposition_entities:
            oppositions.append(self.resolver.resolve(name, "opposition").best or name)

        players = list(dict.fromkeys(players))
        changed = tuple(players) != analysis.entities or tuple(oppositions) != analysis.opposition_entities
        if not changed:
            return analysis
        resolved = replace(analysis, entities=tuple(players), opposition_entities=tuple(oppositions))
        # Two typed names that resolve to one player are no longer a comparison
        if resolved.type is QuestionType.COMPARISON and len(players) < 2:
            resolved = replace(resolved, type=QuestionType.PLAYER)
        return resolved

    def _unanswered(self, text: str, analysis: QuestionAnalysis | None,
                    envelope: ResponseEnvelope) -> ResponseEnvelope:
        if analysis is None:
            log_unanswered(text, envelope.answer, envelope.error_kind)
        else:
            log_unanswered(text, envelope.answer, envelope.error_kind,
                           analysis.type.value, analysis.confidence)
        return envelope
