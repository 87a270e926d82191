"""
Keyword-scored knowledge snippets about the end user.

Snippets live in the ``knowledge_snippets`` table and are read and written through the query
compiler.  Every retrieval and synthesis call also appends one row to ``interaction_logs``.
"""

import logging
import math
import re
import uuid
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

from errand.core.errors import ValidationError
from errand.store.query_compiler import run_query
from errand.store.table_store import TableStore

logger = logging.getLogger(__name__)

SNIPPETS_TABLE = "knowledge_snippets"
LOG_TABLE = "interaction_logs"

DEFAULT_SOURCE = "user_interaction"
DEFAULT_CONFIDENCE = 0.7
DEFAULT_LIMIT = 5
MAX_LIMIT = 50
TOPIC_WEIGHT = 3
CONTENT_WEIGHT = 1
MIN_TOKEN_LENGTH = 4

_PUNCT_RE = re.compile(r"[^\w\s]")


def tokenize(query: str) -> List[str]:
    """Strip punctuation, split on whitespace and keep lower-cased tokens longer than 3 chars."""
    cleaned = _PUNCT_RE.sub("", query or "")
    return [tok.lower() for tok in cleaned.split() if len(tok) >= MIN_TOKEN_LENGTH]


def score_snippet(tokens: List[str], topic: str, content: str, confidence: float) -> float:
    """Topic hits weigh three times content hits; the sum is scaled by confidence."""
    topic_l = (topic or "").lower()
    content_l = (content or "").lower()
    topic_hits = sum(1 for tok in tokens if tok in topic_l)
    content_hits = sum(1 for tok in tokens if tok in content_l)
    return (TOPIC_WEIGHT * topic_hits + CONTENT_WEIGHT * content_hits) * confidence


def clamp_confidence(value: Any) -> float:
    """Coerce *value* to a float in [0, 1]."""
    if value is None:
        return DEFAULT_CONFIDENCE
    if isinstance(value, bool):
        raise ValidationError("'confidence' must be a number between 0 and 1")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("'confidence' must be a number between 0 and 1") from exc
    if not math.isfinite(number):
        raise ValidationError("'confidence' must be a finite number between 0 and 1")
    return min(max(number, 0.0), 1.0)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class KnowledgeStore:
    """
    Retrieval and merge-or-create synthesis over ``knowledge_snippets``.
    """

    def __init__(self, store: TableStore, candidate_window: int = 5):
        self._store = store
        self._candidate_window = candidate_window

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def retrieve(self, query: str, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """Return up to *limit* snippets ranked by keyword relevance to *query*."""
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError("'limit' must be a positive integer")
        limit = min(limit, MAX_LIMIT)
        tokens = tokenize(query)
        if not tokens:
            self.log_interaction(query, "No searchable terms", {"type": "retrieval", "results": 0})
            return []

        snippets = run_query({"table": SNIPPETS_TABLE, "action": "select"}, self._store)
        scored = []
        for snippet in snippets:
            score = score_snippet(
                tokens, snippet["topic"], snippet["content"], snippet["confidence"]
            )
            if score > 0:
                scored.append(
                    {
                        "topic": snippet["topic"],
                        "content": snippet["content"],
                        "relevance_score": score,
                    }
                )
        results = sorted(scored, key=lambda item: item["relevance_score"], reverse=True)[:limit]

        logger.info("Knowledge retrieval for %s matched %d snippet(s)", tokens, len(results))
        self.log_interaction(
            query,
            f"Retrieved {len(results)} snippet(s)",
            {"type": "retrieval", "tokens": tokens, "results": len(results)},
        )
        return results

    def synthesize(
        self,
        topic: str,
        content: str,
        source: str | None = None,
        confidence: float | None = None,
        related_entities: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """
        Store what was learned about *topic*.

        The first existing snippet whose topic contains *topic* (case-insensitive) is updated in
        place: content and confidence are replaced, related entities are merged key-wise and the
        timestamp is refreshed.  Without such a snippet a new one is created.
        """
        if not isinstance(topic, str) or not topic.strip():
            raise ValidationError("'topic' is required")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("'content' is required")
        if related_entities is not None and not isinstance(related_entities, Mapping):
            raise ValidationError("'related_entities' must be an object")
        stored_confidence = clamp_confidence(confidence)

        candidates = run_query(
            {
                "table": SNIPPETS_TABLE,
                "action": "search",
                "search_term": topic.strip(),
                "search_columns": ["topic"],
                "pagination": {"limit": self._candidate_window},
            },
            self._store,
        )

        if candidates:
            existing = candidates[0]
            merged = dict(existing.get("related_entities") or {})
            merged.update(related_entities or {})
            changes: Dict[str, Any] = {
                "content": content,
                "confidence": stored_confidence,
                "related_entities": merged,
                "last_updated": _now(),
            }
            if source:
                changes["source"] = source
            rows = run_query(
                {
                    "table": SNIPPETS_TABLE,
                    "action": "update",
                    "data": changes,
                    "filters": [{"column": "id", "operator": "eq", "value": existing["id"]}],
                },
                self._store,
            )
            knowledge = rows[0]
            message = f"Updated existing knowledge about '{knowledge['topic']}'"
            outcome = "updated"
        else:
            rows = run_query(
                {
                    "table": SNIPPETS_TABLE,
                    "action": "insert",
                    "data": {
                        "id": str(uuid.uuid4()),
                        "topic": topic.strip(),
                        "content": content,
                        "source": source or DEFAULT_SOURCE,
                        "confidence": stored_confidence,
                        "related_entities": dict(related_entities or {}),
                        "last_updated": _now(),
                    },
                },
                self._store,
            )
            knowledge = rows[0]
            message = f"Created new knowledge about '{knowledge['topic']}'"
            outcome = "created"

        logger.info("%s (id=%s)", message, knowledge["id"])
        self.log_interaction(
            topic, message, {"type": "synthesis", "outcome": outcome, "id": knowledge["id"]}
        )
        return {"message": message, "knowledge": knowledge}

    def log_interaction(self, query: str, response: str, metadata: Mapping[str, Any]) -> None:
        """Append one row to the interaction audit log."""
        run_query(
            {
                "table": LOG_TABLE,
                "action": "insert",
                "data": {"query": query or "", "response": response, "metadata": dict(metadata)},
            },
            self._store,
        )
