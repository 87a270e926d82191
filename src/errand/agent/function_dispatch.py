"""Dispatches function calls registered in ``errand.tools`` and folds errors into results."""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from pydantic.alias_generators import to_snake

from errand.core.errors import ErrandError
from errand.core.schema import (
    FunctionCallRequest,
    FunctionCallResult,
    Specialization,
    SpecializationChange,
)
from errand.store.query_compiler import QueryResult
from errand.tools import (
    FUNCTION_REGISTRY,
    FunctionContext,
    resolve_function,
)

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    """How one batch of calls is run."""

    SEQUENTIAL = "sequential"
    CONCURRENT = "concurrent"

    @classmethod
    def _missing_(cls, value):
        # Settings come from the environment; accept any casing.
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


@dataclass
class DispatchOutcome:
    """Results of one batch, their transcript rendering and any persona switch."""

    results: List[FunctionCallResult]
    rendered: str
    specialization: Optional[Specialization] = None


def _normalize(parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Accept camelCase parameter names from the wire (``tableName`` -> ``table_name``)."""
    return {to_snake(key): value for key, value in parameters.items()}


def _failed(call: FunctionCallRequest, error: str) -> Tuple[FunctionCallResult, None]:
    return (
        FunctionCallResult(name=call.name, parameters=call.parameters, success=False, error=error),
        None,
    )


def execute_call(
    call: FunctionCallRequest, context: FunctionContext
) -> Tuple[FunctionCallResult, Optional[Specialization]]:
    """
    Look up *call* in the registry and invoke it.

    Returns
    -------
    Tuple[FunctionCallResult, Specialization | None]
        The result, which carries any failure as ``success=False``, and the persona to activate
        if the call requested a switch.  Nothing raised by a handler escapes.
    """
    name = resolve_function(call.name)
    if name is None:
        logger.warning("Requested unknown function '%s'", call.name)
        return _failed(call, f"Function {call.name} not found")

    handler = FUNCTION_REGISTRY[name].handler
    try:
        logger.debug("Executing function '%s' with parameters=%s", call.name, call.parameters)
        value = handler(context, **_normalize(call.parameters))
    except ErrandError as exc:
        logger.warning("Function '%s' failed: %s", call.name, exc)
        return _failed(call, str(exc))
    except TypeError as exc:
        # Argument mismatch; give the caller a clean message.
        logger.exception("Argument error while executing function '%s'", call.name)
        return _failed(call, f"Invalid arguments for function '{call.name}': {exc}")
    except Exception as exc:  # noqa: BLE001  pylint: disable=broad-except
        logger.exception("Unhandled error in function '%s'", call.name)
        return _failed(call, f"Function {call.name} raised an error: {exc}")

    if isinstance(value, QueryResult):
        if not value.success:
            return _failed(call, value.error or "Query failed")
        value = value.data

    specialization = None
    if isinstance(value, SpecializationChange):
        specialization = value.specialization
        value = {"active_specialization": specialization.name}

    result = FunctionCallResult(
        name=call.name, parameters=call.parameters, success=True, data=value
    )
    return result, specialization


def _all_read_only(calls: Sequence[FunctionCallRequest]) -> bool:
    for call in calls:
        name = resolve_function(call.name)
        if name is not None and not FUNCTION_REGISTRY[name].is_read_only(call.parameters):
            return False
    return True


def dispatch(
    calls: Sequence[FunctionCallRequest],
    context: FunctionContext,
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
    max_workers: int = 4,
) -> DispatchOutcome:
    """
    Execute *calls* and render the results for the transcript.

    In ``SEQUENTIAL`` mode calls run in the order given, so later calls see the side effects of
    earlier ones.  ``CONCURRENT`` mode runs the batch in a thread pool, but only when every call is
    read-only; otherwise the batch falls back to sequential order.  Results are always returned in
    request order.  When several calls switch persona, the last one wins.
    """
    if mode is ExecutionMode.CONCURRENT and len(calls) > 1 and _all_read_only(calls):
        logger.info("Executing %d read-only function(s) concurrently", len(calls))
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            outcomes = list(pool.map(lambda c: execute_call(c, context), calls))
    else:
        logger.info("Executing %d function(s) sequentially", len(calls))
        outcomes = [execute_call(call, context) for call in calls]

    results = [result for result, _ in outcomes]
    specialization = None
    for _, switched in outcomes:
        if switched is not None:
            specialization = switched
    return DispatchOutcome(results, render_results(results), specialization)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def render_results(results: Sequence[FunctionCallResult]) -> str:
    """Render one deterministic text block per result."""
    blocks = []
    for result in results:
        lines = [
            f"Function: {result.name}({_dumps(result.parameters)})",
            f"Status: {'Success' if result.success else 'Failed'}",
        ]
        if not result.success:
            lines.append(f"Error: {result.error}")
        elif isinstance(result.data, list):
            lines.append(f"Records ({len(result.data)}):")
            if not result.data:
                lines.append("  (none)")
            lines.extend(f"  {i}. {_dumps(record)}" for i, record in enumerate(result.data, 1))
        else:
            lines.append(f"Result: {_dumps(result.data)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
