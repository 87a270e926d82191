"""Interactive shell that runs the agent in-process, one request per line."""

from __future__ import annotations

import logging
from typing import Tuple

from errand.agent.agent_loop import run_agent
from errand.agent.completion import CompletionClient
from errand.agent.function_dispatch import ExecutionMode
from errand.common import (
    AnsiColors,
    colored_print,
    print_transcript,
)
from errand.config import settings
from errand.core.schema import Specialization
from errand.tools import FunctionContext

logger = logging.getLogger(__name__)


def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def ask(
    query: str,
    context: FunctionContext,
    completion: CompletionClient,
    specialization: Specialization | None = None,
    verbose: bool = False,
) -> Specialization | None:
    """Answer one request, print it, and return the specialization to carry forward."""
    result = run_agent(
        query,
        completion=completion,
        context=context,
        specialization=specialization,
        max_iterations=settings.MAX_ITERATIONS,
        mode=ExecutionMode(settings.EXECUTION_MODE),
    )
    if verbose:
        # the first and last entries are the request and the answer
        print_transcript(result.transcript[1:-1])
    colored_print(result.answer, AnsiColors.YELLOW)
    return result.specialization


def run_cli(verbose: bool = False) -> None:
    """Run the interactive shell until 'exit', 'quit', EOF or Ctrl+C."""
    context = FunctionContext.open(settings.DB_PATH)
    completion = CompletionClient.from_settings()
    specialization: Specialization | None = None

    colored_print("errand shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue
        specialization = ask(user_msg, context, completion, specialization, verbose)
