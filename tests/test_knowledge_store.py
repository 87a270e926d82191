"""Tests for keyword retrieval and merge-or-create synthesis."""

import pytest

from errand.core.errors import ValidationError
from errand.memory.knowledge_store import (
    DEFAULT_CONFIDENCE,
    score_snippet,
    tokenize,
)
from errand.store.query_compiler import run_query


def _snippets(store):
    return run_query({"table": "knowledge_snippets"}, store)


def _log_rows(store):
    return run_query({"table": "interaction_logs"}, store)


def test_tokenize_drops_punctuation_and_short_words() -> None:
    """Punctuation is stripped and words of three letters or fewer are discarded."""
    assert tokenize("Don't forget: milk, eggs & the jam!") == ["dont", "forget", "milk", "eggs"]
    assert tokenize("Go to it") == []


def test_short_word_query_returns_nothing(context) -> None:
    """A query with only short words retrieves an empty list, not an error."""
    context.knowledge.synthesize("go kart", "Likes go karts")
    assert context.knowledge.retrieve("Go to it") == []


def test_default_confidence(context) -> None:
    """Confidence defaults to 0.7 when omitted."""
    created = context.knowledge.synthesize("diet", "Vegetarian")
    assert created["knowledge"]["confidence"] == pytest.approx(DEFAULT_CONFIDENCE)
    assert created["knowledge"]["source"] == "user_interaction"


def test_confidence_is_clamped(context) -> None:
    """Provided confidence is stored clamped to [0, 1]."""
    high = context.knowledge.synthesize("coffee", "Drinks espresso", confidence=1.5)
    low = context.knowledge.synthesize("tea", "Dislikes tea", confidence=-0.2)
    exact = context.knowledge.synthesize("juice", "Orange juice", confidence=0.35)
    assert high["knowledge"]["confidence"] == 1.0
    assert low["knowledge"]["confidence"] == 0.0
    assert exact["knowledge"]["confidence"] == pytest.approx(0.35)


def test_confidence_must_be_numeric(context) -> None:
    """Non-numeric confidence is a validation error."""
    try:
        context.knowledge.synthesize("tea", "Dislikes tea", confidence="very")
    except ValidationError as exc:
        assert "confidence" in str(exc)
    else:  # pragma: no cover
        raise AssertionError("ValidationError was not raised")


def test_synthesis_updates_substring_topic(context, store) -> None:
    """'Apples' updates the existing 'apples and pears' snippet instead of duplicating it."""
    first = context.knowledge.synthesize(
        "apples and pears",
        "Buys both weekly",
        source="shopping",
        confidence=0.9,
        related_entities={"store": "market", "day": "saturday"},
    )
    second = context.knowledge.synthesize(
        "Apples", "Now prefers green apples", related_entities={"day": "sunday", "colour": "green"}
    )

    assert second["message"].startswith("Updated")
    snippets = _snippets(store)
    assert len(snippets) == 1
    snippet = snippets[0]
    assert snippet["id"] == first["knowledge"]["id"]
    assert snippet["topic"] == "apples and pears"
    assert snippet["content"] == "Now prefers green apples"
    assert snippet["confidence"] == pytest.approx(0.7)
    assert snippet["source"] == "shopping"
    assert snippet["related_entities"] == {"store": "market", "day": "sunday", "colour": "green"}
    assert snippet["last_updated"] >= first["knowledge"]["last_updated"]


def test_synthesis_creates_when_no_topic_matches(context, store) -> None:
    """A topic not contained in any existing topic creates a new snippet."""
    context.knowledge.synthesize("apples", "Likes apples")
    result = context.knowledge.synthesize("bananas", "Allergic to bananas")
    assert result["message"].startswith("Created")
    assert sorted(s["topic"] for s in _snippets(store)) == ["apples", "bananas"]


def test_synthesis_requires_topic_and_content(context) -> None:
    """Blank topic or content is rejected."""
    for topic, content in (("", "x"), ("topic", "  ")):
        try:
            context.knowledge.synthesize(topic, content)
        except ValidationError:
            pass
        else:  # pragma: no cover
            raise AssertionError("ValidationError was not raised")


def test_topic_hits_weigh_three_times_content_hits() -> None:
    """Moving a match from content to topic triples its weight."""
    tokens = ["garden"]
    in_topic = score_snippet(tokens, "garden", "nothing here", 1.0)
    in_content = score_snippet(tokens, "misc", "a garden party", 1.0)
    assert in_topic == 3 * in_content
    assert score_snippet(["garden", "party"], "garden", "a garden party", 0.5) == pytest.approx(
        (3 + 2) * 0.5
    )


def test_retrieve_ranks_by_weighted_score(context) -> None:
    """Topic matches outrank content matches; scores are scaled by confidence."""
    context.knowledge.synthesize("misc", "Talks about gardening a lot", confidence=1.0)
    context.knowledge.synthesize("gardening", "Grows tomatoes", confidence=1.0)
    context.knowledge.synthesize("cooking", "Unrelated", confidence=1.0)

    results = context.knowledge.retrieve("Any gardening tips?")
    assert [r["topic"] for r in results] == ["gardening", "misc"]
    assert results[0]["relevance_score"] == pytest.approx(3.0)
    assert results[1]["relevance_score"] == pytest.approx(1.0)
    assert set(results[0]) == {"topic", "content", "relevance_score"}


def test_retrieve_limit(context) -> None:
    """Results are truncated to the limit, and the limit must be positive."""
    for i in range(7):
        context.knowledge.synthesize(f"hobby number{i}", f"hobby details {i}")
    assert len(context.knowledge.retrieve("hobby")) == 5
    assert len(context.knowledge.retrieve("hobby", limit=2)) == 2
    assert len(context.knowledge.retrieve("hobby", limit=500)) == 7
    try:
        context.knowledge.retrieve("hobby", limit=0)
    except ValidationError:
        pass
    else:  # pragma: no cover
        raise AssertionError("ValidationError was not raised")


def test_every_call_is_audited(context, store) -> None:
    """Retrieval and synthesis each append one interaction log row."""
    context.knowledge.synthesize("music", "Plays piano")
    context.knowledge.retrieve("music lessons")
    context.knowledge.retrieve("a b c")

    rows = _log_rows(store)
    assert [row["metadata"]["type"] for row in rows] == ["synthesis", "retrieval", "retrieval"]
    assert rows[0]["query"] == "music"
    assert rows[0]["metadata"]["outcome"] == "created"
    assert rows[1]["metadata"]["results"] == 1


def test_confidence_must_be_finite(context, store) -> None:
    """NaN and infinite confidence are rejected before anything is written."""
    for value in (float("nan"), float("inf"), "NaN"):
        try:
            context.knowledge.synthesize("pets", "Has a cat", confidence=value)
        except ValidationError as exc:
            assert "finite" in str(exc)
        else:  # pragma: no cover
            raise AssertionError(f"ValidationError was not raised for {value!r}")
    assert _snippets(store) == []
