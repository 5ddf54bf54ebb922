from __future__ import annotations
import logging
from functools import lru_cache

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import settings
from agent import Agent
from clarification import GENERIC_APOLOGY
from chat_models import ResponseEnvelope
from conversation_context import ConversationContextManager
from entity_resolver import EntityResolver
from errors import ErrorKind
from query_executor import CachedExecutor, GraphRosterSource, Neo4jHttpExecutor
from question_log import get_unanswered

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"{settings.CLUB_NAME} Stats Chatbot")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_agent() -> Agent:
    """One agent per process; sessions live in its context store."""
    executor = CachedExecutor(Neo4jHttpExecutor.from_env())
    resolver = EntityResolver(GraphRosterSource(executor))
    logger.info("Agent initialised against %s", settings.NEO4J_URI)
    return Agent(executor, contexts=ConversationContextManager(), resolver=resolver)


class AskRequest(BaseModel):
    question: str
    session_id: str | None = None
    user_hint: str | None = None


class ResetRequest(BaseModel):
    session_id: str | None = None


@app.get("/")
def root():
    return {"status": "ok"}


@app.post("/ask")
def ask_agent(q: AskRequest, agent: Agent = Depends(get_agent)):
    try:
        return agent.ask(q.question, session_id=q.session_id, user_hint=q.user_hint).to_dict()
    except Exception:
        logger.exception("Unhandled error answering %r", q.question)
        envelope = ResponseEnvelope(answer=GENERIC_APOLOGY,
                                    error_kind=ErrorKind.QUERY_EXECUTION_ERROR.value)
        return envelope.to_dict()


@app.post("/reset")
def reset_agent(r: ResetRequest, agent: Agent = Depends(get_agent)):
    """
    Reset ONLY this user's conversation state.
    """
    agent.reset(r.session_id)
    return {"status": "reset"}


@app.get("/unanswered")
def unanswered():
    return {"questions": get_unanswered()}
