"""Main orchestration loop for errand."""

from __future__ import annotations

import json
import logging
from typing import (
    Optional,
    Tuple,
)

from errand.agent.completion import CompletionClient
from errand.agent.function_dispatch import (
    ExecutionMode,
    dispatch,
)
from errand.agent.prompts import build_prompt
from errand.core.schema import (
    AgentResult,
    AgentState,
    Decision,
    Specialization,
)
from errand.tools import FunctionContext

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 5
BUDGET_EXHAUSTED_ANSWER = (
    "I couldn't complete your request after several attempts. "
    "Please try rephrasing your question."
)
EMPTY_ANSWER = "I don't have an answer to that yet."


def _calls_summary(decision: Decision) -> str:
    calls = [{"function": c.name, "parameters": c.parameters} for c in decision.function_calls]
    return json.dumps(calls, default=str, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Agent Loop
# ---------------------------------------------------------------------------
def step(
    state: AgentState,
    completion: CompletionClient,
    context: FunctionContext,
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
) -> Tuple[AgentState, Optional[str]]:
    """
    Run one round trip: request a decision, then either finish or execute its calls.

    Returns
    -------
    Tuple[AgentState, str | None]
        The next state and, if the round produced one, the final answer.  A persona switch made by
        a dispatched call is only visible in the returned state, so it affects the next prompt and
        never the current one.
    """
    state = state.model_copy(update={"iterations": state.iterations + 1})
    decision = completion.complete(build_prompt(state.transcript, state.specialization))

    if decision.is_final:
        answer = decision.answer or EMPTY_ANSWER
        return state.append("assistant", answer), answer

    logger.info(
        "Decision requests %d call(s): %s",
        len(decision.function_calls),
        [call.name for call in decision.function_calls],
    )
    outcome = dispatch(decision.function_calls, context, mode)
    entry = (
        f"Calling function list: {_calls_summary(decision)}\n"
        f"Reasoning: {decision.reasoning or '(none given)'}\n\n"
        f"{outcome.rendered}"
    )
    state = state.append("function", entry)
    if outcome.specialization is not None:
        logger.info("Active specialization is now '%s'", outcome.specialization.name)
        state = state.model_copy(update={"specialization": outcome.specialization})
    return state, None


def run_agent(
    query: str,
    *,
    completion: CompletionClient,
    context: FunctionContext,
    specialization: Specialization | None = None,
    max_iterations: int = MAX_ITERATIONS,
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
) -> AgentResult:
    """
    Answer *query*, calling functions for at most *max_iterations* round trips.

    When the budget runs out before the completion service settles on an answer, a fixed apology
    is returned instead of an error.
    """
    state = AgentState(specialization=specialization).append("user", query)

    while state.iterations < max_iterations:
        logger.info("--- Iteration %d/%d ---", state.iterations + 1, max_iterations)
        state, answer = step(state, completion, context, mode)
        if answer is not None:
            return AgentResult(
                answer=answer,
                transcript=state.transcript,
                specialization=state.specialization,
                iterations=state.iterations,
            )

    logger.warning("Reached maximum iterations (%d) without a final answer", max_iterations)
    state = state.append("assistant", BUDGET_EXHAUSTED_ANSWER)
    return AgentResult(
        answer=BUDGET_EXHAUSTED_ANSWER,
        transcript=state.transcript,
        specialization=state.specialization,
        iterations=state.iterations,
    )
