"""Dispatchable functions: store queries, knowledge, and persona switching."""

import logging
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

from errand.core.errors import ValidationError
from errand.core.schema import (
    Specialization,
    SpecializationChange,
)
from errand.store.query_compiler import (
    QueryDescriptor,
    QueryResult,
    compile_and_run,
    is_read_only,
    run_query,
)
from errand.tools import (
    FunctionContext,
    FunctionName,
    ParameterInfo,
    register_function,
)

logger = logging.getLogger(__name__)

_DESCRIPTOR_PARAMETERS: Dict[str, ParameterInfo] = {
    (info.alias or name): ParameterInfo(
        type=getattr(info.annotation, "__name__", str(info.annotation)),
        required=info.is_required(),
    )
    for name, info in QueryDescriptor.model_fields.items()
}


@register_function(
    FunctionName.QUERY_DATABASE, read_only=is_read_only, parameters=_DESCRIPTOR_PARAMETERS
)
def query_database(ctx: FunctionContext, **descriptor: Any) -> QueryResult:
    """
    Run one operation against a table. Parameters form a query descriptor: table, action
    (select, insert, update, delete, upsert, join, search), columns, data, filters
    [{column, operator, value}] with operators eq, neq, gt, lt, gte, lte, like, ilike, in,
    contains, range, order [{column, ascending}], pagination {limit, offset},
    join [{table, on: {local, foreign}, type: inner|left, columns, columnPrefix}],
    searchTerm, searchColumns, options {onConflict, ignoreDuplicates}.
    Tables: todo_list, shopping_list, categories.
    """
    return compile_and_run(descriptor, ctx.store)


@register_function(FunctionName.GET_TABLE_ROWS, read_only=True)
def get_table_rows(ctx: FunctionContext, table_name: str) -> List[Dict[str, Any]]:
    """List the id and description of every row of todo_list or shopping_list."""
    return run_query(
        {"table": table_name, "action": "select", "columns": "id, description"}, ctx.store
    )


@register_function(FunctionName.RETRIEVE_KNOWLEDGE, read_only=True)
def retrieve_knowledge(ctx: FunctionContext, query: str, limit: int = 5) -> List[Dict[str, Any]]:
    """Find stored knowledge about the user by keyword (words longer than three letters)."""
    return ctx.knowledge.retrieve(query, limit=limit)


@register_function(FunctionName.SYNTHESIZE_KNOWLEDGE)
def synthesize_knowledge(
    ctx: FunctionContext,
    topic: str,
    content: str,
    source: str | None = None,
    confidence: float | None = None,
    related_entities: Mapping[str, Any] | None = None,
) -> Dict[str, Any]:
    """
    Remember something about the user. An existing snippet whose topic contains this topic is
    updated, otherwise a new one is created. Confidence is 0..1 and defaults to 0.7.
    """
    return ctx.knowledge.synthesize(
        topic,
        content,
        source=source,
        confidence=confidence,
        related_entities=related_entities,
    )


@register_function(FunctionName.SET_SPECIALIZATION, read_only=True)
def set_specialization(ctx: FunctionContext, name: str) -> SpecializationChange:
    """Switch the assistant persona used from the next step on."""
    rows = run_query(
        {
            "table": "specializations",
            "filters": [{"column": "name", "operator": "eq", "value": name}],
        },
        ctx.store,
    )
    if not rows:
        available = [row["name"] for row in list_specializations(ctx)]
        raise ValidationError(f"Unknown specialization '{name}' (available: {available})")
    logger.info("Switching specialization to '%s'", name)
    return SpecializationChange(specialization=Specialization.model_validate(rows[0]))


@register_function(FunctionName.LIST_SPECIALIZATIONS, read_only=True)
def list_specializations(ctx: FunctionContext) -> List[Dict[str, Any]]:
    """List the personas that can be activated with set_specialization."""
    return run_query(
        {"table": "specializations", "columns": "name", "order": [{"column": "name"}]},
        ctx.store,
    )
