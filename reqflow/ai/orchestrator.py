"""
Reqflow
AI Orchestrator.

Response-cached dispatcher in front of the provider clients:
    1. Resolve the provider (caller override, else the configured default)
    2. Derive a cache key from operation tag, provider id and canonical inputs
    3. On a typed hit return the cached entity; a mismatched type is
       discarded and treated as a miss
    4. On a miss call the client, persist the entity, then cache it
       with the operation's TTL

Chat is never cached; session chat stores its turns through the
repository instead. Client errors propagate unchanged and nothing is
cached for a failed call. A cache entry is never shared with a caller:
the cache keeps its own copy and every hit returns a fresh one.
"""

import copy
import json
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Callable

from reqflow.ai.cache import TTL_ANALYSE, TTL_DIAGRAM, TTL_DOCUMENT, TTL_QUESTIONS, ResponseCache
from reqflow.ai.entities import (
    DIAGRAM_TYPES,
    STAGES,
    ChatMessage,
    ChatReply,
    ChatSession,
    DevelopmentDocument,
    PUMLDiagram,
    Question,
    RequirementAnalysis,
    new_id,
    utcnow,
)
from reqflow.ai.providers import ProviderClient
from reqflow.core.cancellation import CancellationToken, check
from reqflow.core.exceptions import InvalidInput, NotFound, ProviderUnavailable
from reqflow.core.locks import RWLock
from reqflow.persistence.repository import Repository
from reqflow.puml.pipeline import validate as validate_puml

logger = logging.getLogger(__name__)

# ── Operation tags ───────────────────────────────────────────────────────────

OP_ANALYSE = "analyse"
OP_QUESTIONS = "questions"
OP_DIAGRAM = "diagram"
OP_DOCUMENT = "document"
OP_STAGE_DOCUMENT = "stage_document"

OPERATION_TTLS: dict[str, timedelta] = {
    OP_ANALYSE: TTL_ANALYSE,
    OP_QUESTIONS: TTL_QUESTIONS,
    OP_DIAGRAM: TTL_DIAGRAM,
    OP_DOCUMENT: TTL_DOCUMENT,
    OP_STAGE_DOCUMENT: TTL_DOCUMENT,
}

# Most recent turns replayed as context for a session's next message
CHAT_HISTORY_TURNS = 20


def _is_question_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(q, Question) for q in value)


class AIOrchestrator:
    """
    Provider registry + cached operation wrappers.

    The registry and the cache are shared across request and job threads;
    the registry is guarded by its own readers-writer lock.
    """

    def __init__(self, repository: Repository, *, cache: ResponseCache | None = None,
                 clients: dict[str, ProviderClient] | None = None,
                 default_provider: str | None = None, cache_enabled: bool = True):
        self.repository = repository
        self.cache = cache if cache is not None else ResponseCache()
        self.cache_enabled = cache_enabled
        self._clients: dict[str, ProviderClient] = dict(clients or {})
        self._default = default_provider
        self._registry_lock = RWLock()

    # ── Provider registry ─────────────────────────────────────────────────

    def register(self, client: ProviderClient, *, default: bool = False) -> None:
        with self._registry_lock.write():
            self._clients[client.provider_id()] = client
            if default or self._default is None:
                self._default = client.provider_id()
        logger.info("Registered AI provider %s", client.provider_id())

    def unregister(self, provider_id: str) -> None:
        with self._registry_lock.write():
            self._clients.pop(provider_id, None)

    def providers(self) -> list[str]:
        with self._registry_lock.read():
            return sorted(self._clients)

    def default_provider(self) -> str | None:
        with self._registry_lock.read():
            return self._default

    def set_default(self, provider_id: str) -> None:
        """Switch the default provider; later operations observe the switch."""
        if not provider_id:
            raise InvalidInput("provider id must not be empty")
        with self._registry_lock.write():
            if provider_id not in self._clients:
                raise ProviderUnavailable(provider_id)
            previous, self._default = self._default, provider_id
        logger.info("Default AI provider switched %s → %s", previous, provider_id)

    def client(self, provider_id: str | None = None) -> ProviderClient:
        """Resolve a client: explicit ``provider_id``, else the default."""
        with self._registry_lock.read():
            target = provider_id or self._default
            client = self._clients.get(target) if target else None
        if client is None:
            raise ProviderUnavailable(target or "(no default provider)")
        return client

    # ── Cache administration ──────────────────────────────────────────────

    def cache_stats(self) -> dict:
        stats = self.cache.get_stats()
        stats["enabled"] = self.cache_enabled
        stats["providers"] = self.providers()
        stats["default_provider"] = self.default_provider()
        return stats

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        logger.info("AI response cache cleared (%d entries)", removed)
        return removed

    # ── Cached operations ─────────────────────────────────────────────────

    def analyse_requirement(self, project_id: str, text: str, *, provider: str | None = None,
                            token: CancellationToken | None = None) -> RequirementAnalysis:
        """Structure a free-text requirement for ``project_id``."""
        if not text or not text.strip():
            raise InvalidInput("requirement text must not be empty")
        client = self.client(provider)

        analysis = self._cached(
            OP_ANALYSE, client.provider_id(), [text],
            accepts=lambda v: isinstance(v, RequirementAnalysis),
            produce=lambda: self.repository.create_analysis(
                client.analyse_requirement(text, project_id=project_id, token=token), token=token,
            ),
            token=token,
        )
        if analysis.project_id != project_id:
            analysis = self._reissue(analysis, self.repository.create_analysis, token,
                                     project_id=project_id)
        return analysis

    def generate_questions(self, analysis: RequirementAnalysis, *, provider: str | None = None,
                           token: CancellationToken | None = None) -> list[Question]:
        client = self.client(provider)
        questions = self._cached(
            OP_QUESTIONS, client.provider_id(), [analysis.id],
            accepts=_is_question_list,
            produce=lambda: self.repository.create_questions(
                client.generate_questions(analysis, token=token), token=token,
            ),
            token=token,
        )
        return list(questions)

    def generate_diagram(self, analysis: RequirementAnalysis, diagram_type: str, *,
                         stage: int | None = None, job_id: str | None = None,
                         provider: str | None = None,
                         token: CancellationToken | None = None) -> PUMLDiagram:
        """UML diagram of ``diagram_type``; ``stage`` defaults to 1."""
        if diagram_type not in DIAGRAM_TYPES:
            raise InvalidInput(f"unknown diagram type: {diagram_type}")
        stage = self._stage(stage)
        client = self.client(provider)

        diagram = self._cached(
            OP_DIAGRAM, client.provider_id(), [analysis.id, diagram_type],
            accepts=lambda v: isinstance(v, PUMLDiagram),
            produce=lambda: self.repository.create_diagram(
                client.generate_diagram(analysis, diagram_type, stage=stage, job_id=job_id, token=token),
                token=token,
            ),
            token=token,
        )
        return self._reissue(diagram, self.repository.create_diagram, token,
                             project_id=analysis.project_id, stage=stage, job_id=job_id)

    def generate_document(self, analysis: RequirementAnalysis, *, stage: int | None = None,
                          job_id: str | None = None, provider: str | None = None,
                          token: CancellationToken | None = None) -> DevelopmentDocument:
        """The requirements document for ``analysis``."""
        stage = self._stage(stage)
        client = self.client(provider)

        document = self._cached(
            OP_DOCUMENT, client.provider_id(), [analysis.id],
            accepts=lambda v: isinstance(v, DevelopmentDocument),
            produce=lambda: self.repository.create_document(
                client.generate_document(analysis, stage=stage, job_id=job_id, token=token),
                token=token,
            ),
            token=token,
        )
        return self._reissue(document, self.repository.create_document, token,
                             project_id=analysis.project_id, stage=stage, job_id=job_id)

    def generate_stage_document(self, analysis: RequirementAnalysis, document_type: str, *,
                                stage: int, job_id: str | None = None,
                                provider: str | None = None,
                                token: CancellationToken | None = None) -> DevelopmentDocument:
        """A development document of ``document_type`` for one stage."""
        if not document_type:
            raise InvalidInput("document type must not be empty")
        stage = self._stage(stage)
        client = self.client(provider)

        document = self._cached(
            OP_STAGE_DOCUMENT, client.provider_id(), [analysis.id, document_type],
            accepts=lambda v: isinstance(v, DevelopmentDocument) and v.document_type == document_type,
            produce=lambda: self.repository.create_document(
                client.generate_stage_document(
                    analysis, document_type, stage=stage, job_id=job_id, token=token,
                ),
                token=token,
            ),
            token=token,
        )
        return self._reissue(document, self.repository.create_document, token,
                             project_id=analysis.project_id, stage=stage, job_id=job_id)

    def project_chat(self, project_id: str, message: str, *, context: str | None = None,
                     provider: str | None = None,
                     token: CancellationToken | None = None) -> ChatReply:
        """
        One chat turn about a project. Never cached.

        Without an explicit ``context`` the project's latest analysis is
        used as context, when there is one.
        """
        if not message or not message.strip():
            raise InvalidInput("chat message must not be empty")
        client = self.client(provider)
        if context is None:
            context = self._project_context(project_id, token)
        return client.project_chat(message, context, token=token)

    # ── Chat sessions ─────────────────────────────────────────────────────

    def create_chat_session(self, project_id: str, user_id: str, *, title: str = "",
                            token: CancellationToken | None = None) -> ChatSession:
        if not user_id:
            raise InvalidInput("user id must not be empty")
        now = utcnow()
        return self.repository.create_chat_session(
            ChatSession(id=new_id(), project_id=project_id, user_id=user_id,
                        title=title or "Project chat", created_at=now, updated_at=now),
            token=token,
        )

    def chat_sessions(self, project_id: str, *, user_id: str | None = None,
                      token: CancellationToken | None = None) -> list[ChatSession]:
        return self.repository.list_chat_sessions(project_id, user_id=user_id, token=token)

    def chat_messages(self, session_id: str, *, limit: int | None = None,
                      token: CancellationToken | None = None) -> list[ChatMessage]:
        return self.repository.list_chat_messages(session_id, limit=limit, token=token)

    def close_chat_session(self, session_id: str, *,
                           token: CancellationToken | None = None) -> ChatSession:
        return self.repository.set_chat_session_status(session_id, "closed", token=token)

    def send_chat_message(self, session_id: str, message: str, *, context: str | None = None,
                          provider: str | None = None,
                          token: CancellationToken | None = None) -> ChatMessage:
        """
        One chat turn inside a persisted session.

        Without an explicit ``context`` the project's latest analysis plus
        the session's most recent turns are sent along. The user turn and
        the assistant reply are stored together once the provider has
        answered, so a failed call leaves the session unchanged.

        Returns:
            The stored assistant turn; the structured reply fields are in
            its ``metadata``.
        """
        if not message or not message.strip():
            raise InvalidInput("chat message must not be empty")
        chat = self.repository.get_chat_session(session_id, token=token)
        if not chat.active:
            raise InvalidInput(f"chat session {session_id} is {chat.status}")
        client = self.client(provider)

        if context is None:
            history = self.repository.list_chat_messages(
                session_id, limit=CHAT_HISTORY_TURNS, token=token,
            )
            context = _with_history(self._project_context(chat.project_id, token), history)
        reply = self.project_chat(chat.project_id, message, context=context,
                                  provider=client.provider_id(), token=token)

        metadata = reply.to_dict()
        metadata.pop("message")
        now = utcnow()
        _, answer = self.repository.append_chat_messages(
            session_id,
            [
                ChatMessage(id=new_id(), session_id=session_id, role="user",
                            content=message.strip(), created_at=now),
                ChatMessage(id=new_id(), session_id=session_id, role="assistant",
                            content=reply.message, provider=client.provider_id(),
                            metadata=metadata, created_at=now),
            ],
            token=token,
        )
        logger.info("Chat turn %d stored", answer.seq,
                    extra={"project_id": chat.project_id, "provider": client.provider_id()})
        return answer

    # ── Artifact maintenance ──────────────────────────────────────────────

    def answer_question(self, question_id: str, answer: str, *,
                        token: CancellationToken | None = None) -> Question:
        if not answer or not answer.strip():
            raise InvalidInput("answer must not be empty")
        question = self.repository.get_question(question_id, token=token)
        now = utcnow()
        return self.repository.update_question(
            replace(question, answer=answer.strip(), answer_status="answered",
                    answered_at=now, updated_at=now),
            token=token,
        )

    def skip_question(self, question_id: str, *,
                      token: CancellationToken | None = None) -> Question:
        question = self.repository.get_question(question_id, token=token)
        return self.repository.update_question(
            replace(question, answer="", answer_status="skipped", answered_at=None,
                    updated_at=utcnow()),
            token=token,
        )

    def rescore_analysis(self, analysis_id: str, score: float, *,
                         token: CancellationToken | None = None) -> RequirementAnalysis:
        """The only mutation an analysis accepts after creation."""
        if not 0.0 <= score <= 1.0:
            raise InvalidInput(f"completeness score must be within [0, 1] (got {score})")
        return self.repository.update_analysis_score(analysis_id, score, token=token)

    def update_diagram(self, diagram_id: str, content: str, *, title: str | None = None,
                       description: str | None = None,
                       token: CancellationToken | None = None) -> PUMLDiagram:
        """Replace the UML source, bump the version and re-validate."""
        if not content or not content.strip():
            raise InvalidInput("diagram content must not be empty")
        diagram = self.repository.get_diagram(diagram_id, token=token)
        return self.repository.update_diagram(
            replace(
                diagram,
                content=content,
                title=title or diagram.title,
                description=description if description is not None else diagram.description,
                version=diagram.version + 1,
                validated=validate_puml(content).ok,
                updated_at=utcnow(),
            ),
            token=token,
        )

    def update_document(self, document_id: str, content: str, *, title: str | None = None,
                        token: CancellationToken | None = None) -> DevelopmentDocument:
        if not content or not content.strip():
            raise InvalidInput("document content must not be empty")
        document = self.repository.get_document(document_id, token=token)
        return self.repository.update_document(
            replace(document, content=content, title=title or document.title,
                    version=document.version + 1, updated_at=utcnow()),
            token=token,
        )

    # ── Internal ──────────────────────────────────────────────────────────

    def _cached(self, operation: str, provider_id: str, inputs: list, *,
                accepts: Callable[[object], bool], produce: Callable[[], object],
                token: CancellationToken | None):
        check(token)
        key = self.cache.compute_key(operation, provider_id, *inputs)
        log_extra = {"operation": operation, "provider": provider_id}

        if self.cache_enabled:
            value, hit = self.cache.get(key)
            if hit and accepts(value):
                logger.debug("AI cache hit for %s", operation, extra={**log_extra, "cache_hit": True})
                return copy.deepcopy(value)
            if hit:
                logger.warning("AI cache entry for %s holds %s; discarding",
                               operation, type(value).__name__, extra=log_extra)
                self.cache.delete(key)

        value = produce()
        if self.cache_enabled:
            self.cache.set(key, copy.deepcopy(value), OPERATION_TTLS[operation])
        logger.debug("AI cache miss for %s", operation, extra={**log_extra, "cache_hit": False})
        return value

    @staticmethod
    def _reissue(artifact, persist, token, **context):
        """A copy of a cached artifact carrying the caller's context.

        Returns ``artifact`` itself when the context already matches.
        """
        changes = {k: v for k, v in context.items() if getattr(artifact, k) != v}
        if not changes:
            return artifact
        now = utcnow()
        reissued = replace(artifact, id=new_id(), created_at=now, updated_at=now, **changes)
        return persist(reissued, token=token)

    @staticmethod
    def _stage(stage: int | None) -> int:
        if stage is None:
            return 1
        if stage not in STAGES:
            raise InvalidInput(f"stage must be one of 1, 2, 3 (got {stage!r})")
        return stage

    def _project_context(self, project_id: str, token: CancellationToken | None) -> str:
        try:
            analysis = self.repository.latest_analysis(project_id, token=token)
        except NotFound:
            return ""
        return json.dumps(analysis.content_fields(), ensure_ascii=False)


def _with_history(context: str, history: list[ChatMessage]) -> str:
    if not history:
        return context
    transcript = "Conversation so far:\n" + "\n".join(f"{m.role}: {m.content}" for m in history)
    return f"{context}\n\n{transcript}" if context else transcript
