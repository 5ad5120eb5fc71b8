"""
Reqflow
LLM Provider Clients.

One client per vendor, all sharing the same capability set:
    analyse_requirement, generate_questions, generate_diagram,
    generate_document, generate_stage_document, project_chat

Each operation renders its prompt from the PromptRegistry, performs one
completion call, hands the raw text to the Artifact Parser and returns
the parsed entity. Vendor failures are converted into
ProviderHttpError / ProviderTimeout / ProviderUnavailable at this
boundary; nothing vendor-specific leaks out.

Vendors:
    - OpenAIClient   (openai SDK, chat/completions, bearer auth)
    - GeminiClient   (requests, models/<model>:generateContent?key=...)
    - ClaudeClient   (anthropic SDK, Messages API)
    - LocalStubClient (deterministic JSON, no network; dev/test)
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import anthropic
import openai
import requests

from reqflow.ai import parser
from reqflow.ai.entities import (
    DIAGRAM_TYPES,
    PROVIDER_CLAUDE,
    PROVIDER_GEMINI,
    PROVIDER_LOCAL,
    PROVIDER_OPENAI,
    ChatReply,
    DevelopmentDocument,
    PUMLDiagram,
    Question,
    RequirementAnalysis,
)
from reqflow.ai.prompt_registry import PromptRegistry
from reqflow.core.cancellation import CancellationToken, check
from reqflow.core.exceptions import (
    ArtifactParseError,
    InvalidInput,
    ProviderHttpError,
    ProviderTimeout,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)

# Per-request vendor parameters
TEMPERATURE = 0.3
MAX_TOKENS = 2000
REQUEST_TIMEOUT = 60  # seconds


@dataclass(frozen=True)
class Completion:
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""


# ── Provider Abstract Base ────────────────────────────────────────────────────

class ProviderClient(ABC):
    """Vendor-neutral capability interface.

    Subclasses implement ``complete`` only; prompt rendering, parsing and
    cancellation checks live here.
    """

    provider: str = ""

    def __init__(self, prompts: PromptRegistry | None = None):
        self.prompts = prompts or PromptRegistry()

    def provider_id(self) -> str:
        return self.provider

    @abstractmethod
    def complete(self, messages: list[dict], *, operation: str = "",
                 token: CancellationToken | None = None) -> Completion:
        """
        Send one single-turn completion request.

        Args:
            messages: [{"role": "system"|"user", "content": "..."}]
            operation: Operation tag, for logging.
            token: Cancellation token.

        Returns:
            Completion with the raw model text.
        """
        ...

    # ── Capability set ────────────────────────────────────────────────────

    def analyse_requirement(self, text: str, *, project_id: str,
                            token: CancellationToken | None = None) -> RequirementAnalysis:
        if not text or not text.strip():
            raise InvalidInput("requirement text must not be empty")
        messages = self.prompts.render(
            "requirement_analysis", provider=self.provider, requirement_text=text,
        )
        raw = self._call("analyse", messages, token)
        return parser.parse_analysis(raw, project_id=project_id, requirement_text=text)

    def generate_questions(self, analysis: RequirementAnalysis, *,
                           token: CancellationToken | None = None) -> list[Question]:
        messages = self.prompts.render(
            "questions", provider=self.provider, analysis_json=_analysis_json(analysis),
        )
        raw = self._call("questions", messages, token)
        return parser.parse_questions(raw, project_id=analysis.project_id, analysis_id=analysis.id)

    def generate_diagram(self, analysis: RequirementAnalysis, diagram_type: str, *,
                         stage: int = 1, job_id: str | None = None,
                         token: CancellationToken | None = None) -> PUMLDiagram:
        if diagram_type not in DIAGRAM_TYPES:
            raise InvalidInput(f"unknown diagram type: {diagram_type}")
        messages = self.prompts.render(
            "puml_diagram", provider=self.provider,
            diagram_type=diagram_type, analysis_json=_analysis_json(analysis),
        )
        raw = self._call("diagram", messages, token)
        return parser.parse_diagram(
            raw, project_id=analysis.project_id, diagram_type=diagram_type,
            stage=stage, analysis_id=analysis.id, job_id=job_id,
        )

    def generate_document(self, analysis: RequirementAnalysis, *,
                          stage: int = 1, job_id: str | None = None,
                          token: CancellationToken | None = None) -> DevelopmentDocument:
        messages = self.prompts.render(
            "document", provider=self.provider, analysis_json=_analysis_json(analysis),
        )
        raw = self._call("document", messages, token)
        return parser.parse_document(
            raw, project_id=analysis.project_id, document_type="requirements",
            stage=stage, analysis_id=analysis.id, job_id=job_id,
        )

    def generate_stage_document(self, analysis: RequirementAnalysis, document_type: str, *,
                                stage: int, job_id: str | None = None,
                                token: CancellationToken | None = None) -> DevelopmentDocument:
        if not document_type:
            raise InvalidInput("document type must not be empty")
        messages = self.prompts.render(
            "stage_document", provider=self.provider,
            document_type=document_type, analysis_json=_analysis_json(analysis),
        )
        raw = self._call("stage_document", messages, token)
        return parser.parse_document(
            raw, project_id=analysis.project_id, document_type=document_type,
            stage=stage, analysis_id=analysis.id, job_id=job_id,
        )

    def project_chat(self, message: str, context: str = "", *,
                     token: CancellationToken | None = None) -> ChatReply:
        if not message or not message.strip():
            raise InvalidInput("chat message must not be empty")
        messages = self.prompts.render(
            "project_chat", provider=self.provider, message=message, context=context or "(none)",
        )
        raw = self._call("chat", messages, token)
        return parser.parse_chat(raw)

    # ── Internal ──────────────────────────────────────────────────────────

    def _call(self, operation: str, messages: list[dict],
              token: CancellationToken | None) -> str:
        check(token)
        start = time.monotonic()
        completion = self.complete(messages, operation=operation, token=token)
        duration_ms = (time.monotonic() - start) * 1000
        check(token)
        logger.info(
            "AI call %s/%s ok (%d+%d tokens)",
            self.provider, operation, completion.prompt_tokens, completion.completion_tokens,
            extra={"provider": self.provider, "operation": operation, "duration_ms": duration_ms},
        )
        return completion.content

    def __repr__(self):
        return f"<{type(self).__name__} provider={self.provider}>"


def _analysis_json(analysis: RequirementAnalysis) -> str:
    return json.dumps(analysis.content_fields(), ensure_ascii=False, indent=2)


def _split_system(messages: list[dict]) -> tuple[str, list[dict]]:
    system_parts, chat = [], []
    for m in messages:
        if m["role"] == "system":
            system_parts.append(m["content"])
        else:
            chat.append(m)
    return "\n\n".join(system_parts), chat


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIClient(ProviderClient):
    """OpenAI-family chat/completions provider.

    Any OpenAI-compatible endpoint works through ``base_url``.
    """

    provider = PROVIDER_OPENAI
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    DEFAULT_MODEL = "gpt-4"

    def __init__(self, api_key: str, base_url: str | None = None, model: str | None = None, *,
                 timeout: float = REQUEST_TIMEOUT, client=None, prompts: PromptRegistry | None = None):
        super().__init__(prompts)
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.model = model or self.DEFAULT_MODEL
        self.timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = openai.OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def complete(self, messages, *, operation="", token=None) -> Completion:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=TEMPERATURE,
                max_tokens=MAX_TOKENS,
            )
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(f"openai request timed out after {self.timeout}s") from exc
        except openai.APIStatusError as exc:
            raise ProviderHttpError(exc.status_code, exc.response.text) from exc
        except openai.APIConnectionError as exc:
            raise ProviderUnavailable(self.provider, reason=str(exc)) from exc

        if not response.choices:
            raise ArtifactParseError("openai returned no choices")
        usage = response.usage
        return Completion(
            content=response.choices[0].message.content or "",
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            model=getattr(response, "model", None) or self.model,
        )


# ── Google Gemini Provider ───────────────────────────────────────────────────

class GeminiClient(ProviderClient):
    """
    Google Gemini generateContent provider over plain HTTP.

    Endpoint: POST <base>/models/<model>:generateContent?key=<api_key>
    System and user messages are sent as consecutive parts of one turn.
    """

    provider = PROVIDER_GEMINI
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    DEFAULT_MODEL = "gemini-1.5-flash"

    def __init__(self, api_key: str, base_url: str | None = None, model: str | None = None, *,
                 timeout: float = REQUEST_TIMEOUT, session: requests.Session | None = None,
                 prompts: PromptRegistry | None = None):
        super().__init__(prompts)
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.model = model or self.DEFAULT_MODEL
        self.timeout = timeout
        self._session = session or requests.Session()

    def complete(self, messages, *, operation="", token=None) -> Completion:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        body = {
            "contents": [{"parts": [{"text": m["content"]} for m in messages]}],
            "generationConfig": {
                "temperature": TEMPERATURE,
                "maxOutputTokens": MAX_TOKENS,
            },
        }
        try:
            resp = self._session.post(
                url, params={"key": self.api_key}, json=body, timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderTimeout(f"gemini request timed out after {self.timeout}s") from exc
        except requests.ConnectionError as exc:
            raise ProviderUnavailable(self.provider, reason=str(exc)) from exc

        if not 200 <= resp.status_code < 300:
            raise ProviderHttpError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as exc:
            raise ArtifactParseError("gemini response is not JSON", excerpt=resp.text) from exc

        candidates = data.get("candidates") or []
        if not candidates:
            raise ArtifactParseError("gemini returned no candidates", excerpt=resp.text)
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            raise ArtifactParseError("gemini candidate has no parts", excerpt=resp.text)

        usage = data.get("usageMetadata") or {}
        return Completion(
            content="".join(p.get("text", "") for p in parts),
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
            model=self.model,
        )


# ── Anthropic Provider ────────────────────────────────────────────────────────

class ClaudeClient(ProviderClient):
    """Claude (Anthropic) Messages API provider."""

    provider = PROVIDER_CLAUDE
    DEFAULT_BASE_URL = "https://api.anthropic.com"
    DEFAULT_MODEL = "claude-3-5-haiku-20241022"

    def __init__(self, api_key: str, base_url: str | None = None, model: str | None = None, *,
                 timeout: float = REQUEST_TIMEOUT, client=None, prompts: PromptRegistry | None = None):
        super().__init__(prompts)
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.model = model or self.DEFAULT_MODEL
        self.timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = anthropic.Anthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def complete(self, messages, *, operation="", token=None) -> Completion:
        client = self._get_client()
        system_msg, chat_messages = _split_system(messages)
        params = {
            "model": self.model,
            "messages": chat_messages,
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
        }
        if system_msg:
            params["system"] = system_msg

        try:
            response = client.messages.create(**params)
        except anthropic.APITimeoutError as exc:
            raise ProviderTimeout(f"claude request timed out after {self.timeout}s") from exc
        except anthropic.APIStatusError as exc:
            raise ProviderHttpError(exc.status_code, exc.response.text) from exc
        except anthropic.APIConnectionError as exc:
            raise ProviderUnavailable(self.provider, reason=str(exc)) from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text:
            raise ArtifactParseError("claude returned no text content")
        return Completion(
            content=text,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
            model=self.model,
        )


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubClient(ProviderClient):
    """
    Local stub that returns deterministic responses for dev/testing.
    No API key required.
    """

    provider = PROVIDER_LOCAL

    def __init__(self, prompts: PromptRegistry | None = None, provider: str | None = None):
        super().__init__(prompts)
        if provider:
            self.provider = provider
        self.calls: list[str] = []

    def complete(self, messages, *, operation="", token=None) -> Completion:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break

        self.calls.append(operation)
        content = self._generate_stub_response(operation, user_msg)
        return Completion(
            content=content,
            prompt_tokens=len(user_msg.split()) * 2,  # rough estimate
            completion_tokens=len(content.split()) * 2,
            model="local-stub",
        )

    @staticmethod
    def _generate_stub_response(operation: str, user_msg: str) -> str:
        """Generate an operation-shaped stub response."""
        if operation == "analyse":
            text = user_msg.split("\n", 1)[-1]
            clauses = [c.strip(" .") for c in re.split(r",|\bthen\b|\band\b", text) if c.strip(" .")]
            return json.dumps({
                "core_functions": clauses[:5] or ["capture requirement"],
                "roles": ["user"],
                "business_processes": [
                    {"name": "Main flow", "description": text[:120], "steps": clauses[:5], "actors": ["user"]},
                ],
                "data_entities": [
                    {"name": "User", "description": "Person using the system",
                     "attributes": [{"name": "id", "type": "uuid", "required": True}],
                     "relations": []},
                ],
                "missing_info": ["Non-functional requirements", "Error handling rules"],
                "completion_score": 0.5,
            })

        if operation == "questions":
            return json.dumps({
                "questions": [
                    {"category": "business_rule", "content": "Which validation rules apply to user input?",
                     "options": [], "priority": 2, "target_info": "validation"},
                    {"category": "security_requirement", "content": "How must credentials be stored?",
                     "options": ["hashed", "external IdP"], "priority": 1, "target_info": "credentials"},
                ],
            })

        if operation == "diagram":
            match = re.search(r"Diagram type:\s*(\w+)", user_msg)
            diagram_type = match.group(1) if match else "sequence"
            return json.dumps({
                "title": f"{diagram_type.replace('_', ' ').title()} Diagram",
                "content": "@startuml\nactor User\nUser -> System: request\nSystem --> User: response\n@enduml",
                "description": f"Stub {diagram_type} diagram",
            })

        if operation in ("document", "stage_document"):
            match = re.search(r"Document type:\s*(\w+)", user_msg)
            document_type = match.group(1) if match else "requirements"
            title = document_type.replace("_", " ").title()
            return json.dumps({
                "title": title,
                "content": f"# {title}\n\nGenerated by the local stub provider.",
                "document_type": document_type,
                "version": "1.0",
            })

        if operation == "chat":
            return json.dumps({
                "message": "Noted. The analysis covers the main flow; consider adding error handling rules.",
                "should_update_analysis": False,
                "related_questions": [],
                "suggestions": ["Describe failure scenarios"],
                "analysis_updates": {},
            })

        return json.dumps({"message": "ok"})


# ── Factory ──────────────────────────────────────────────────────────────────

def build_clients(config, prompts: PromptRegistry | None = None) -> dict[str, ProviderClient]:
    """
    Construct every provider that has credentials in ``config``.

    Args:
        config: Flask config (or any mapping with the AI_* keys).
        prompts: Shared prompt registry.

    Returns:
        provider id → client
    """
    prompts = prompts or PromptRegistry(config.get("AI_PROMPTS_DIR") or None)
    clients: dict[str, ProviderClient] = {}

    if config.get("AI_OPENAI_API_KEY"):
        clients[PROVIDER_OPENAI] = OpenAIClient(
            config["AI_OPENAI_API_KEY"],
            base_url=config.get("AI_OPENAI_BASE_URL") or None,
            model=config.get("AI_OPENAI_MODEL") or None,
            prompts=prompts,
        )
    if config.get("AI_GEMINI_API_KEY"):
        clients[PROVIDER_GEMINI] = GeminiClient(
            config["AI_GEMINI_API_KEY"],
            base_url=config.get("AI_GEMINI_BASE_URL") or None,
            model=config.get("AI_GEMINI_MODEL") or None,
            prompts=prompts,
        )
    if config.get("AI_CLAUDE_API_KEY"):
        clients[PROVIDER_CLAUDE] = ClaudeClient(
            config["AI_CLAUDE_API_KEY"],
            base_url=config.get("AI_CLAUDE_BASE_URL") or None,
            model=config.get("AI_CLAUDE_MODEL") or None,
            prompts=prompts,
        )
    if config.get("AI_LOCAL_STUB_ENABLED"):
        clients[PROVIDER_LOCAL] = LocalStubClient(prompts=prompts)

    logger.info("AI providers registered: %s", ", ".join(sorted(clients)) or "(none)")
    return clients
