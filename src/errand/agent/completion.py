"""
Completion client for errand.

This module is the only place that *directly* calls a completion service.  Everything else
(agent loop, functions, store) stays model-agnostic.

Three back-ends are registered out of the box:

1. **OpenRouter** (or any OpenAI-compatible ``/chat/completions`` endpoint) via plain httpx.
2. **OpenAI** via the official SDK.
3. **Anthropic** via the official SDK.

A back-end only moves text.  Turning the reply into a :class:`Decision` and retrying failures are
handled here by :func:`parse_decision` and :class:`RetryPolicy`, independently of the transport.
"""

import json
import logging
import re
import time
from abc import (
    ABC,
    abstractmethod,
)
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Type,
)

import httpx
import pydantic

from errand.config import settings
from errand.core.errors import (
    CompletionError,
    EmptyReplyError,
    ParseError,
    TransportError,
)
from errand.core.schema import Decision

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response"
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

Messages = List[Dict[str, str]]


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------
def extract_json(raw: str | None) -> Dict[str, Any]:
    """
    Pull one JSON object out of a possibly noisy reply.

    Stages, in order: take the interior of the first fenced code block if there is one; cut from
    the first ``{`` to the last ``}`` inclusive; parse strictly.  Each stage raises its own error
    so the retry log says which one failed.

    Raises
    ------
    EmptyReplyError
        If the reply is missing, blank or the ``"No response"`` sentinel.
    ParseError
        If the reply is not text, no object can be located or the located text is not valid
        JSON.
    """
    if raw is not None and not isinstance(raw, str):
        raise ParseError("type", f"reply content is {type(raw).__name__}, not text")
    if raw is None or not raw.strip() or raw.strip().startswith(NO_RESPONSE):
        raise EmptyReplyError("completion service returned no content")

    text = raw
    if "```" in text:
        match = _FENCE_RE.search(text)
        if match:
            text = match.group(1)
        else:
            logger.debug("Unterminated code fence in reply, scanning the whole reply")

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise ParseError("braces", "no JSON object found in reply")

    try:
        value = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ParseError("json", str(exc)) from exc
    if not isinstance(value, dict):
        raise ParseError("json", "reply is not a JSON object")
    return value


def parse_decision(raw: str | None) -> Decision:
    """Extract and validate a :class:`Decision` from a raw reply."""
    payload = extract_json(raw)
    try:
        decision = Decision.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ParseError("schema", str(exc)) from exc
    if decision.answer and decision.function_calls:
        logger.warning("Reply carries both an answer and function calls; running the calls")
    return decision


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff without jitter."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait before *attempt* (0-based); the first attempt never waits."""
        if attempt <= 0:
            return 0.0
        return min(self.base_delay * 2**attempt, self.max_delay)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        """Build the policy from the application settings."""
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_BACKEND_REGISTRY: dict[str, Type["BaseBackend"]] = {}


def register_backend(name: str) -> Callable:
    """Decorator to register a backend class under *name*."""

    def wrapper(cls: Type["BaseBackend"]) -> Type["BaseBackend"]:
        _BACKEND_REGISTRY[name] = cls
        return cls

    return wrapper


def load_backend(name: str | None = None, **kwargs: Any) -> "BaseBackend":
    """
    Factory that returns an instantiated backend.

    Fallback order:
    1. *name* arg
    2. ``settings.COMPLETION_BACKEND``
    """
    target = name or settings.COMPLETION_BACKEND
    cls = _BACKEND_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Completion backend '{target}' is not registered.")
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseBackend(ABC):
    """Sends chat messages to a completion service and returns the reply text."""

    def __init__(
        self,
        model: str | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ):
        self.model = model or settings.COMPLETION_MODEL
        self.temperature = settings.TEMPERATURE if temperature is None else temperature
        self.timeout = timeout or settings.REQUEST_TIMEOUT

    @abstractmethod
    def send(self, messages: Messages) -> str | None:
        """
        Return the reply content, or ``None`` if the service sent none.

        Raises
        ------
        TransportError
            If the service cannot be reached or answers with an error.
        """


# ---------------------------------------------------------------------------
# Concrete backends
# ---------------------------------------------------------------------------
def _content_text(content: Any) -> str | None:
    """Flatten message content; some providers send a list of typed parts instead of a string."""
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            str(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and part.get("type", "text") == "text"
        ]
        return "".join(texts) or None
    logger.warning("Ignoring reply content of type %s", type(content).__name__)
    return None


@register_backend("openrouter")
class OpenRouterBackend(BaseBackend):
    """OpenAI-compatible chat completions over httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key or settings.OPENROUTER_API_KEY
        self.base_url = (base_url or settings.COMPLETION_BASE_URL).rstrip("/")
        self._transport = transport

    def send(self, messages: Messages) -> str | None:
        payload = {"model": self.model, "messages": messages, "temperature": self.temperature}
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(
                    f"{self.base_url}/chat/completions", json=payload, headers=headers
                )
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise TransportError(f"completion request failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"completion service returned a non-JSON body: {exc}") from exc

        logger.debug("Completion response body: %s", body)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        return _content_text(content)


@register_backend("openai")
class OpenAIBackend(BaseBackend):
    """OpenAI SDK backend."""

    def __init__(self, api_key: str | None = None, client: Any = None, **kwargs: Any):
        super().__init__(**kwargs)
        if client is None:
            import openai  # pylint: disable=import-outside-toplevel

            client = openai.OpenAI(
                api_key=api_key or settings.OPENAI_API_KEY, timeout=self.timeout
            )
        self._client = client

    def send(self, messages: Messages) -> str | None:
        import openai  # pylint: disable=import-outside-toplevel

        try:
            resp = self._client.chat.completions.create(
                model=self.model, messages=messages, temperature=self.temperature
            )
        except openai.OpenAIError as exc:
            raise TransportError(f"OpenAI request failed: {exc}") from exc
        if not resp.choices:
            return None
        return _content_text(resp.choices[0].message.content)


@register_backend("anthropic")
class AnthropicBackend(BaseBackend):
    """Anthropic SDK backend; the system message becomes the ``system`` argument."""

    def __init__(self, api_key: str | None = None, client: Any = None, **kwargs: Any):
        super().__init__(**kwargs)
        if client is None:
            import anthropic  # pylint: disable=import-outside-toplevel

            client = anthropic.Anthropic(
                api_key=api_key or settings.ANTHROPIC_API_KEY, timeout=self.timeout
            )
        self._client = client

    def send(self, messages: Messages) -> str | None:
        import anthropic  # pylint: disable=import-outside-toplevel

        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        chat = [m for m in messages if m["role"] != "system"] or [
            {"role": "user", "content": "Respond with the JSON object."}
        ]
        try:
            resp = self._client.messages.create(
                model=self.model,
                max_tokens=4096,
                system=system,
                messages=chat,
                temperature=self.temperature,
            )
        except anthropic.AnthropicError as exc:
            raise TransportError(f"Anthropic request failed: {exc}") from exc
        texts = [block.text for block in resp.content if getattr(block, "type", "") == "text"]
        return "".join(texts) or None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class CompletionClient:
    """Requests a :class:`Decision`, retrying transport, empty and parse failures."""

    def __init__(
        self,
        backend: BaseBackend,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "CompletionClient":
        """Client wired to the configured backend and retry policy."""
        return cls(load_backend(), RetryPolicy.from_settings())

    def complete(self, prompt: str) -> Decision:
        """
        Send *prompt* as the sole instruction context and return the parsed decision.

        Never raises: once every attempt has failed, a terminal decision is returned whose answer
        describes the failure and whose call list is empty.
        """
        messages = [{"role": "system", "content": prompt}]
        last_error: CompletionError | None = None

        for attempt in range(self.policy.max_attempts):
            wait = self.policy.delay(attempt)
            if wait:
                logger.info(
                    "Retrying completion in %.1f seconds (attempt %d/%d)",
                    wait,
                    attempt + 1,
                    self.policy.max_attempts,
                )
                self._sleep(wait)
            try:
                return parse_decision(self.backend.send(messages))
            except CompletionError as exc:
                last_error = exc
                logger.warning(
                    "Completion attempt %d/%d failed (%s): %s",
                    attempt + 1,
                    self.policy.max_attempts,
                    type(exc).__name__,
                    exc,
                )

        logger.error("Completion failed after %d attempts", self.policy.max_attempts)
        return Decision(
            answer=(
                "Error: the completion service did not return a usable reply after "
                f"{self.policy.max_attempts} attempts ({last_error})"
            ),
            function_calls=[],
        )
