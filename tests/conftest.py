"""Shared fixtures: a fresh SQLite store per test and a scripted completion backend."""

import json
from typing import (
    Any,
    List,
)

import pytest

from errand.agent.completion import (
    BaseBackend,
    CompletionClient,
    RetryPolicy,
)
from errand.memory.knowledge_store import KnowledgeStore
from errand.store.table_store import TableStore
from errand.tools import FunctionContext


class ScriptedBackend(BaseBackend):
    """Replays canned replies in order; the last reply repeats forever."""

    def __init__(self, replies: List[Any]):
        super().__init__(model="test-model", temperature=0.0, timeout=1.0)
        self.replies = list(replies)
        self.prompts: List[str] = []

    def send(self, messages):
        self.prompts.append(messages[0]["content"])
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return json.dumps(reply)
        return reply


def decision(answer: str = "", reasoning: str = "", calls: List[dict] | None = None) -> dict:
    """Build a decision payload in the wire format."""
    return {"answer": answer, "reasoning": reasoning, "function_calls": calls or []}


def call(function: str, **parameters: Any) -> dict:
    """Build one wire-format function call."""
    return {"function": function, "parameters": parameters}


@pytest.fixture
def store(tmp_path) -> TableStore:
    """Fresh table store with the built-in schema."""
    table_store = TableStore(tmp_path / "errand.db")
    table_store.init_schema()
    return table_store


@pytest.fixture
def context(store) -> FunctionContext:
    """Function context over the fresh store."""
    return FunctionContext(store=store, knowledge=KnowledgeStore(store))


@pytest.fixture
def make_client():
    """Factory returning (client, backend, recorded sleeps) for a list of replies."""

    def factory(replies: List[Any], max_attempts: int = 5):
        backend = ScriptedBackend(replies)
        sleeps: List[float] = []
        client = CompletionClient(
            backend, RetryPolicy(max_attempts=max_attempts), sleep=sleeps.append
        )
        return client, backend, sleeps

    return factory
