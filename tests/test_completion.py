"""Tests for reply extraction, the retry policy and the completion backends."""

import json
from types import SimpleNamespace

import httpx
import pytest

from errand.agent.completion import (
    CompletionClient,
    OpenAIBackend,
    OpenRouterBackend,
    RetryPolicy,
    extract_json,
    load_backend,
    parse_decision,
)
from errand.core.errors import (
    EmptyReplyError,
    ParseError,
    TransportError,
)

VALID = '{"answer": "Done", "reasoning": "", "function_calls": []}'


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------
def test_extract_from_fenced_block_with_preamble() -> None:
    """The fence interior is used and surrounding chatter ignored."""
    raw = 'Sure! Here you go:\n```json\n{"answer": "42", "note": "}"}\n```\nAnything else?'
    assert extract_json(raw) == {"answer": "42", "note": "}"}


def test_extract_from_bare_text() -> None:
    """Without a fence, the first '{' to the last '}' is parsed."""
    raw = 'thinking... {"answer": "", "function_calls": [{"function": "x"}]} trailing'
    assert extract_json(raw)["function_calls"] == [{"function": "x"}]


def test_extract_empty_replies() -> None:
    """Missing, blank and sentinel replies are empty-reply errors."""
    for raw in (None, "", "   ", "No response"):
        try:
            extract_json(raw)
        except EmptyReplyError:
            pass
        else:  # pragma: no cover
            raise AssertionError(f"EmptyReplyError was not raised for {raw!r}")


def test_extract_reports_the_failing_stage() -> None:
    """Each stage has its own parse error."""
    with pytest.raises(ParseError) as no_object:
        extract_json("I cannot help with that.")
    assert no_object.value.stage == "braces"

    with pytest.raises(ParseError) as bad_json:
        extract_json("```json\n{answer: 'single quotes'}\n```")
    assert bad_json.value.stage == "json"


def test_parse_decision_validates_shape() -> None:
    """Call entries use the 'function' key; malformed shapes are schema errors."""
    decision = parse_decision(
        '{"answer": "", "reasoning": "need data", "function_calls": '
        '[{"function": "get_table_rows", "parameters": {"tableName": "todo_list"}}]}'
    )
    assert decision.reasoning == "need data"
    assert decision.function_calls[0].name == "get_table_rows"
    assert not decision.is_final

    with pytest.raises(ParseError) as exc:
        parse_decision('{"function_calls": "get_table_rows"}')
    assert exc.value.stage == "schema"


# ---------------------------------------------------------------------------
# Retry policy and client
# ---------------------------------------------------------------------------
def test_retry_delays_are_capped_exponential() -> None:
    """Delay before attempt k is min(base * 2**k, cap); the first attempt does not wait."""
    policy = RetryPolicy()
    assert [policy.delay(k) for k in range(6)] == [0.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert RetryPolicy(base_delay=0.5, max_delay=3.0).delay(3) == 3.0


def test_client_retries_until_valid(make_client) -> None:
    """Empty and unparsable replies are retried with backoff."""
    client, backend, sleeps = make_client(["No response", "not json at all", VALID])
    decision = client.complete("prompt")
    assert decision.answer == "Done"
    assert len(backend.prompts) == 3
    assert sleeps == [2.0, 4.0]


def test_client_retries_transport_errors(make_client) -> None:
    """Transport failures are retryable too."""
    client, _, sleeps = make_client([TransportError("connection reset"), VALID])
    assert client.complete("prompt").answer == "Done"
    assert sleeps == [2.0]


def test_client_gives_up_with_terminal_decision(make_client) -> None:
    """After the last attempt a diagnostic answer is returned instead of raising."""
    client, backend, sleeps = make_client(["garbage"])
    decision = client.complete("prompt")
    assert decision.is_final
    assert "5 attempts" in decision.answer
    assert len(backend.prompts) == 5
    assert sleeps == [2.0, 4.0, 8.0, 10.0]


def test_prompt_is_sent_as_sole_instruction(make_client) -> None:
    """The whole prompt travels as one system message."""
    client, backend, _ = make_client([VALID])
    client.complete("the full prompt")
    assert backend.prompts == ["the full prompt"]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
def _openrouter(handler) -> OpenRouterBackend:
    return OpenRouterBackend(
        api_key="sk-test",
        base_url="https://llm.example/api/v1/",
        transport=httpx.MockTransport(handler),
        model="test-model",
        temperature=0.2,
        timeout=5.0,
    )


def test_openrouter_request_shape() -> None:
    """The request carries model, messages and temperature; content comes from choices[0]."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": VALID}}]})

    content = _openrouter(handler).send([{"role": "system", "content": "hi"}])
    assert content == VALID
    assert seen["url"] == "https://llm.example/api/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {
        "model": "test-model",
        "messages": [{"role": "system", "content": "hi"}],
        "temperature": 0.2,
    }


def test_openrouter_missing_content_is_empty() -> None:
    """A body without choices[0].message.content reads as no reply."""
    backend = _openrouter(lambda request: httpx.Response(200, json={"error": "rate limited"}))
    assert backend.send([]) is None


def test_openrouter_http_errors_are_transport_errors() -> None:
    """Non-2xx answers raise TransportError."""
    backend = _openrouter(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(TransportError):
        backend.send([])


def test_openrouter_through_client() -> None:
    """A missing content field is retried like any empty reply."""
    replies = iter(
        [
            httpx.Response(200, json={"choices": []}),
            httpx.Response(200, json={"choices": [{"message": {"content": VALID}}]}),
        ]
    )
    sleeps = []
    client = CompletionClient(
        _openrouter(lambda request: next(replies)), RetryPolicy(), sleep=sleeps.append
    )
    assert client.complete("prompt").answer == "Done"
    assert sleeps == [2.0]


def test_openai_backend_reads_first_choice() -> None:
    """The SDK backend returns the first choice's content."""
    captured = {}

    def create(**kwargs):
        captured.update(kwargs)
        message = SimpleNamespace(content=VALID)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    backend = OpenAIBackend(client=fake, model="gpt-test", temperature=0.1, timeout=5.0)
    assert backend.send([{"role": "system", "content": "x"}]) == VALID
    assert captured["model"] == "gpt-test"
    assert captured["temperature"] == 0.1


def test_load_backend_unknown() -> None:
    """Unregistered backend names are rejected."""
    with pytest.raises(ValueError):
        load_backend("carrier-pigeon")


def test_null_fields_read_as_defaults() -> None:
    """Null reasoning, call list and call parameters are treated as absent."""
    final = parse_decision(
        '{"answer": "You have 2 items.", "reasoning": null, "function_calls": null}'
    )
    assert final.answer == "You have 2 items."
    assert final.reasoning == ""
    assert final.is_final

    pending = parse_decision(
        '{"answer": null, "function_calls": [{"function": "list_specializations", '
        '"parameters": null}]}'
    )
    assert pending.function_calls[0].parameters == {}


def test_null_fields_do_not_trigger_retries(make_client) -> None:
    """A final answer with null fields is accepted on the first attempt."""
    reply = '{"answer": "You have 2 items.", "reasoning": null, "function_calls": null}'
    client, backend, sleeps = make_client([reply])
    assert client.complete("prompt").answer == "You have 2 items."
    assert len(backend.prompts) == 1
    assert sleeps == []


def test_non_text_reply_is_retried_not_raised(make_client) -> None:
    """Reply content that is not a string counts as a failed attempt."""
    with pytest.raises(ParseError) as exc:
        extract_json(["not", "a", "string"])
    assert exc.value.stage == "type"

    client, backend, sleeps = make_client([["not", "a", "string"], VALID])
    assert client.complete("prompt").answer == "Done"
    assert len(backend.prompts) == 2
    assert sleeps == [2.0]

    stuck, _, _ = make_client([[{"type": "text"}]], max_attempts=2)
    assert stuck.complete("prompt").answer.startswith("Error:")


def test_openrouter_content_parts_are_joined() -> None:
    """Content sent as a list of typed parts is flattened to text."""
    parts = [{"type": "text", "text": VALID[:10]}, {"type": "text", "text": VALID[10:]}]
    backend = _openrouter(
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": parts}}]})
    )
    assert backend.send([]) == VALID


def test_openrouter_unexpected_content_is_empty() -> None:
    """Content of any other shape reads as no reply."""
    backend = _openrouter(
        lambda request: httpx.Response(200, json={"choices": [{"message": {"content": 42}}]})
    )
    assert backend.send([]) is None
