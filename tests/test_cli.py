"""Tests for the interactive shell helpers."""

from conftest import (
    call,
    decision,
)

from errand.client.cli import ask


def test_ask_prints_answer_and_carries_specialization(context, make_client, capsys) -> None:
    """The answer is printed and a persona switch is handed back for the next request."""
    completion, _, _ = make_client(
        [decision(calls=[call("set_specialization", name="shopping")]), decision(answer="Ready.")]
    )
    specialization = ask("Switch to shopping", context, completion, verbose=True)

    out = capsys.readouterr().out
    assert "Ready." in out
    assert "[function]" in out
    assert specialization is not None
    assert specialization.name == "shopping"
