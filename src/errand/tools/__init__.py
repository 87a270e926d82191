"""
Function registry for errand.

The set of dispatchable functions is closed: :class:`FunctionName` enumerates every name the
completion service may request, and each member is bound to exactly one handler through
:func:`register_function`.  :func:`assert_registry_complete` runs once all handlers are imported,
so a member without a handler fails at import time rather than at dispatch time.
"""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
    TypedDict,
    get_type_hints,
)

from errand.memory.knowledge_store import KnowledgeStore
from errand.store.table_store import TableStore

logger = logging.getLogger(__name__)


class FunctionName(str, Enum):
    """Every function the agent can dispatch."""

    QUERY_DATABASE = "query_database"
    GET_TABLE_ROWS = "get_table_rows"
    RETRIEVE_KNOWLEDGE = "retrieve_knowledge"
    SYNTHESIZE_KNOWLEDGE = "synthesize_knowledge"
    SET_SPECIALIZATION = "set_specialization"
    LIST_SPECIALIZATIONS = "list_specializations"


@dataclass
class FunctionContext:
    """Collaborators handed to every handler."""

    store: TableStore
    knowledge: KnowledgeStore

    @classmethod
    def open(cls, db_path: str) -> "FunctionContext":
        """Open (and if needed create) the table store at *db_path*."""
        store = TableStore(db_path)
        store.init_schema()
        return cls(store=store, knowledge=KnowledgeStore(store))


class ParameterInfo(TypedDict):
    """
    Information about a function parameter.
    """

    type: str
    required: bool


class FunctionSchema(TypedDict):
    """
    Schema for a dispatchable function
    """

    description: str
    parameters: Mapping[str, ParameterInfo]


@dataclass(frozen=True)
class RegisteredFunction:
    """A handler plus what the dispatcher needs to know about it."""

    handler: Callable[..., Any]
    is_read_only: Callable[[Mapping[str, Any]], bool]
    parameters: Mapping[str, ParameterInfo] | None = None


FUNCTION_REGISTRY: Dict[FunctionName, RegisteredFunction] = {}
"""Registry of handlers keyed by function name."""


def register_function(
    name: FunctionName,
    read_only: bool | Callable[[Mapping[str, Any]], bool] = False,
    parameters: Mapping[str, ParameterInfo] | None = None,
) -> Callable:
    """
    Bind a handler to *name*.

    Parameters
    ----------
    name: FunctionName
        The enum member this handler implements.  Each member takes exactly one handler.
    read_only: bool | Callable
        Whether a call can run concurrently with other read-only calls.  A callable receives the
        call parameters and decides per call.
    parameters: Mapping | None
        Explicit parameter documentation for handlers that take ``**kwargs``.

    Raises
    ------
    ValueError
        If a handler is already registered for *name*.
    """
    if name in FUNCTION_REGISTRY:
        raise ValueError(f"Function '{name.value}' is already registered.")
    logger.debug("Registering function '%s'", name.value)
    check = read_only if callable(read_only) else (lambda _params, flag=read_only: flag)

    def wrapper(fn: Callable) -> Callable:
        FUNCTION_REGISTRY[name] = RegisteredFunction(fn, check, parameters)
        return fn

    return wrapper


def resolve_function(name: str) -> FunctionName | None:
    """Map a requested name onto the closed enum, or ``None`` if it is unknown."""
    try:
        return FunctionName(name)
    except ValueError:
        return None


def assert_registry_complete() -> None:
    """Fail loudly if any :class:`FunctionName` member lacks a handler."""
    missing = [member.value for member in FunctionName if member not in FUNCTION_REGISTRY]
    if missing:
        raise RuntimeError(f"No handler registered for: {missing}")


def get_function_schemas() -> Mapping[str, FunctionSchema]:
    """Extract parameter information from registered handlers (the context arg is skipped)."""
    schemas: Dict[str, FunctionSchema] = {}
    for name, entry in FUNCTION_REGISTRY.items():
        if entry.parameters is not None:
            params = dict(entry.parameters)
        else:
            sig = inspect.signature(entry.handler)
            type_hints = get_type_hints(entry.handler)
            params = {}
            for param_name, param in list(sig.parameters.items())[1:]:
                param_type = type_hints.get(param_name, "any")
                param_type_name = getattr(param_type, "__name__", str(param_type))
                params[param_name] = ParameterInfo(
                    type=param_type_name, required=param.default == inspect.Parameter.empty
                )
        schemas[name.value] = {
            "description": inspect.cleandoc(entry.handler.__doc__ or ""),
            "parameters": params,
        }
    return schemas


from errand.tools import functions  # noqa: E402,F401  pylint: disable=wrong-import-position

assert_registry_complete()
