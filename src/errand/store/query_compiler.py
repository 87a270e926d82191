"""
Query compiler for the table store.

A :class:`QueryDescriptor` is the declarative description of one store operation, as produced by
the completion service.  :func:`compile_query` turns it into a single parametrised SQL statement
and :func:`compile_and_run` executes it, folding every failure into a :class:`QueryResult`.

Actions, filter operators and join types are closed enums.  Each enum has a compiler table that is
checked for exhaustiveness when the module is imported, so adding a member without a compiler is
caught immediately instead of falling through to a default branch at runtime.
"""

import json
import logging
import re
from dataclasses import (
    dataclass,
    field,
)
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

import pydantic
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)
from pydantic.alias_generators import to_camel

from errand.core.errors import (
    ErrandError,
    UnsupportedOperationError,
    ValidationError,
)
from errand.store.table_store import TableStore

logger = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
DEFAULT_SEARCH_COLUMNS = ("title", "description", "content")


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------
class QueryAction(str, Enum):
    """Operations a descriptor may request."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"
    JOIN = "join"
    SEARCH = "search"


class FilterOperator(str, Enum):
    """Filter operators; all filters of one descriptor are combined with AND."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    CONTAINS = "contains"
    RANGE = "range"


class JoinType(str, Enum):
    """Supported join kinds."""

    INNER = "inner"
    LEFT = "left"


READ_ONLY_ACTIONS = frozenset({QueryAction.SELECT, QueryAction.JOIN, QueryAction.SEARCH})

E = TypeVar("E", bound=Enum)


def _resolve(enum_cls: Type[E], value: Any, what: str) -> E:
    try:
        return enum_cls(str(value).lower())
    except ValueError as exc:
        supported = ", ".join(member.value for member in enum_cls)  # type: ignore[attr-defined]
        raise UnsupportedOperationError(
            f"Unsupported {what} '{value}' (supported: {supported})"
        ) from exc


# ---------------------------------------------------------------------------
# Descriptor models
# ---------------------------------------------------------------------------
class _WireModel(BaseModel):
    """Accepts both camelCase (wire) and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class FilterClause(_WireModel):
    """``column <operator> value``."""

    column: str
    operator: str
    value: Any = None


class OrderClause(_WireModel):
    """One ORDER BY term."""

    column: str
    ascending: bool = True


class Pagination(_WireModel):
    """LIMIT / OFFSET, applied after ordering."""

    limit: Optional[int] = Field(None, ge=0)
    offset: int = Field(0, ge=0)


class JoinOn(_WireModel):
    """Key pair: ``local`` on the base table, ``foreign`` on the joined table."""

    local: str
    foreign: str


class JoinSpec(_WireModel):
    """One joined table and the columns it contributes."""

    table: str
    on: JoinOn
    type: str = "inner"
    columns: str = "*"
    column_prefix: Optional[str] = None


class UpsertOptions(_WireModel):
    """Conflict resolution for ``upsert``."""

    on_conflict: str = "id"
    ignore_duplicates: bool = False


class QueryDescriptor(_WireModel):
    """Declarative description of one store operation."""

    table: str
    action: str = "select"
    columns: Optional[str] = None
    data: Optional[Any] = None
    filters: List[FilterClause] = Field(default_factory=list)
    order: List[OrderClause] = Field(default_factory=list)
    pagination: Optional[Pagination] = None
    join: Optional[List[JoinSpec]] = None
    search_term: Optional[str] = None
    search_columns: Optional[List[str]] = None
    options: Optional[UpsertOptions] = None


class QueryResult(BaseModel):
    """Outcome of :func:`compile_and_run`."""

    success: bool
    data: Any = None
    error: Optional[str] = None


@dataclass
class CompiledQuery:
    """A single SQL statement plus its bound parameters."""

    sql: str
    params: List[Any] = field(default_factory=list)


def parse_descriptor(raw: Mapping[str, Any] | QueryDescriptor) -> QueryDescriptor:
    """Validate a raw descriptor mapping, translating pydantic errors into ``ValidationError``."""
    if isinstance(raw, QueryDescriptor):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError("Query descriptor must be an object")
    try:
        return QueryDescriptor.model_validate(raw)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid query descriptor: {problems}") from exc


# ---------------------------------------------------------------------------
# Identifier and value helpers
# ---------------------------------------------------------------------------
def _ident(name: str) -> str:
    if not isinstance(name, str) or not _IDENT_RE.fullmatch(name):
        raise ValidationError(f"Invalid identifier '{name}'")
    return f'"{name}"'


def _column_ref(name: str, table: str | None = None) -> str:
    """Quote ``column`` or ``table.column``; bare columns are qualified with *table* if given."""
    name = name.strip() if isinstance(name, str) else name
    if isinstance(name, str) and "." in name:
        owner, column = name.split(".", 1)
        return f"{_ident(owner)}.{_ident(column)}"
    if table:
        return f"{_ident(table)}.{_ident(name)}"
    return _ident(name)


def _projection(columns: str | None, table: str | None = None) -> List[str]:
    if columns is None or columns.strip() in ("", "*"):
        return [f"{_ident(table)}.*" if table else "*"]
    return [_column_ref(col, table) for col in columns.split(",") if col.strip()]


def _bind(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    return value


def _like_to_glob(pattern: str) -> str:
    """Translate a LIKE pattern (``%``/``*`` and ``_``) into a case-sensitive GLOB."""
    out = []
    for ch in pattern:
        if ch in "%*":
            out.append("*")
        elif ch == "_":
            out.append("?")
        elif ch in "[?":
            out.append(f"[{ch}]")
        else:
            out.append(ch)
    return "".join(out)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# Filter compilation
# ---------------------------------------------------------------------------
FilterSql = Tuple[str, List[Any]]


def _require_value(op: str, value: Any) -> Any:
    if value is None:
        raise ValidationError(f"Filter operator '{op}' requires a value")
    return value


def _comparison(symbol: str, op: str) -> Callable[[str, Any], FilterSql]:
    def compile_(col: str, value: Any) -> FilterSql:
        return f"{col} {symbol} ?", [_bind(_require_value(op, value))]

    return compile_


def _eq(col: str, value: Any) -> FilterSql:
    if value is None:
        return f"{col} IS NULL", []
    return f"{col} = ?", [_bind(value)]


def _neq(col: str, value: Any) -> FilterSql:
    if value is None:
        return f"{col} IS NOT NULL", []
    return f"{col} != ?", [_bind(value)]


def _like(col: str, value: Any) -> FilterSql:
    return f"{col} GLOB ?", [_like_to_glob(str(_require_value("like", value)))]


def _ilike(col: str, value: Any) -> FilterSql:
    pattern = str(_require_value("ilike", value)).replace("*", "%")
    return f"lower({col}) LIKE lower(?)", [pattern]


def _in(col: str, value: Any) -> FilterSql:
    if not isinstance(value, (list, tuple)) or not value:
        raise ValidationError("Filter operator 'in' requires a non-empty list")
    placeholders = ", ".join("?" for _ in value)
    return f"{col} IN ({placeholders})", [_bind(v) for v in value]


def _contains(col: str, value: Any) -> FilterSql:
    if isinstance(value, str):
        return f"instr({col}, ?) > 0", [value]
    if isinstance(value, (list, tuple)):
        # every wanted element must be present in the stored JSON array
        sql = (
            "NOT EXISTS (SELECT 1 FROM json_each(?) AS wanted "
            f"WHERE wanted.value NOT IN (SELECT value FROM json_each({col})))"
        )
        return sql, [json.dumps(list(value))]
    raise ValidationError("Filter operator 'contains' requires a string or a list")


def _range(col: str, value: Any) -> FilterSql:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValidationError("Filter operator 'range' requires [low, high]")
    low, high = value
    return f"{col} BETWEEN ? AND ?", [_bind(low), _bind(high)]


_FILTER_COMPILERS: Dict[FilterOperator, Callable[[str, Any], FilterSql]] = {
    FilterOperator.EQ: _eq,
    FilterOperator.NEQ: _neq,
    FilterOperator.GT: _comparison(">", "gt"),
    FilterOperator.LT: _comparison("<", "lt"),
    FilterOperator.GTE: _comparison(">=", "gte"),
    FilterOperator.LTE: _comparison("<=", "lte"),
    FilterOperator.LIKE: _like,
    FilterOperator.ILIKE: _ilike,
    FilterOperator.IN: _in,
    FilterOperator.CONTAINS: _contains,
    FilterOperator.RANGE: _range,
}


def compile_filters(filters: List[FilterClause], table: str | None = None) -> FilterSql:
    """Compile a conjunctive filter list into a WHERE body (empty string if no filters)."""
    clauses: List[str] = []
    params: List[Any] = []
    for clause in filters:
        op = _resolve(FilterOperator, clause.operator, "filter operator")
        sql, values = _FILTER_COMPILERS[op](_column_ref(clause.column, table), clause.value)
        clauses.append(sql)
        params.extend(values)
    return " AND ".join(clauses), params


# ---------------------------------------------------------------------------
# Statement tails shared by the read actions
# ---------------------------------------------------------------------------
def _where(conditions: List[str]) -> str:
    conditions = [c for c in conditions if c]
    if not conditions:
        return ""
    if len(conditions) == 1:
        return f" WHERE {conditions[0]}"
    return " WHERE " + " AND ".join(f"({c})" for c in conditions)


def _order_and_page(desc: QueryDescriptor, qualify: str | None = None) -> FilterSql:
    terms = [
        f"{_column_ref(o.column, qualify)} {'ASC' if o.ascending else 'DESC'}" for o in desc.order
    ]
    # stored order is the final tie-breaker, which keeps ordering stable
    terms.append(f"{_ident(desc.table)}.rowid")
    sql = " ORDER BY " + ", ".join(terms)
    params: List[Any] = []
    page = desc.pagination
    if page is not None and (page.limit is not None or page.offset):
        sql += " LIMIT ? OFFSET ?"
        params.extend([page.limit if page.limit is not None else -1, page.offset])
    return sql, params


def _records(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, Mapping):
        data = [data]
    if not isinstance(data, list) or not data:
        raise ValidationError("'data' must be a record or a non-empty list of records")
    if not all(isinstance(rec, Mapping) and rec for rec in data):
        raise ValidationError("Every record in 'data' must be a non-empty object")
    keys = list(data[0].keys())
    if any(set(rec.keys()) != set(keys) for rec in data):
        raise ValidationError("All records in 'data' must have the same columns")
    return [dict(rec) for rec in data]


# ---------------------------------------------------------------------------
# Action compilers
# ---------------------------------------------------------------------------
def _compile_select(desc: QueryDescriptor) -> CompiledQuery:
    where, params = compile_filters(desc.filters)
    tail, tail_params = _order_and_page(desc)
    sql = f"SELECT {', '.join(_projection(desc.columns))} FROM {_ident(desc.table)}"
    return CompiledQuery(sql + _where([where]) + tail, params + tail_params)


def _insert_sql(desc: QueryDescriptor) -> Tuple[str, List[str], List[Any]]:
    records = _records(desc.data)
    columns = list(records[0].keys())
    row = "(" + ", ".join("?" for _ in columns) + ")"
    params = [_bind(rec[col]) for rec in records for col in columns]
    sql = (
        f"INSERT INTO {_ident(desc.table)} ({', '.join(_ident(c) for c in columns)}) "
        f"VALUES {', '.join(row for _ in records)}"
    )
    return sql, columns, params


def _compile_insert(desc: QueryDescriptor) -> CompiledQuery:
    sql, _, params = _insert_sql(desc)
    return CompiledQuery(sql + " RETURNING *", params)


def _compile_upsert(desc: QueryDescriptor) -> CompiledQuery:
    options = desc.options or UpsertOptions()
    sql, columns, params = _insert_sql(desc)
    conflict = _ident(options.on_conflict)
    updates = [c for c in columns if c != options.on_conflict]
    if options.ignore_duplicates or not updates:
        sql += f" ON CONFLICT ({conflict}) DO NOTHING"
    else:
        assignments = ", ".join(f"{_ident(c)} = excluded.{_ident(c)}" for c in updates)
        sql += f" ON CONFLICT ({conflict}) DO UPDATE SET {assignments}"
    return CompiledQuery(sql + " RETURNING *", params)


def _required_filters(desc: QueryDescriptor, action: str) -> FilterSql:
    if not desc.filters:
        raise ValidationError(f"'{action}' requires at least one filter")
    return compile_filters(desc.filters)


def _compile_update(desc: QueryDescriptor) -> CompiledQuery:
    if not isinstance(desc.data, Mapping) or not desc.data:
        raise ValidationError("'update' requires 'data' with the columns to change")
    where, where_params = _required_filters(desc, "update")
    assignments = ", ".join(f"{_ident(col)} = ?" for col in desc.data)
    params = [_bind(v) for v in desc.data.values()] + where_params
    sql = f"UPDATE {_ident(desc.table)} SET {assignments}{_where([where])} RETURNING *"
    return CompiledQuery(sql, params)


def _compile_delete(desc: QueryDescriptor) -> CompiledQuery:
    where, params = _required_filters(desc, "delete")
    return CompiledQuery(f"DELETE FROM {_ident(desc.table)}{_where([where])} RETURNING *", params)


def _join_columns(spec: JoinSpec) -> List[str]:
    wildcard = spec.columns is None or spec.columns.strip() in ("", "*")
    if wildcard:
        if spec.column_prefix:
            raise UnsupportedOperationError(
                f"Cannot prefix columns of '{spec.table}' with a wildcard projection; "
                "list the columns explicitly"
            )
        return [f"{_ident(spec.table)}.*"]
    out = []
    for col in (c.strip() for c in spec.columns.split(",") if c.strip()):
        ref = _column_ref(col, spec.table)
        if spec.column_prefix:
            ref += f" AS {_ident(spec.column_prefix + col.split('.')[-1])}"
        out.append(ref)
    return out


def _compile_join(desc: QueryDescriptor) -> CompiledQuery:
    if not desc.join:
        raise ValidationError("'join' requires at least one join specification")
    base = desc.table
    projection = _projection(desc.columns, base)
    joins: List[str] = []
    conditions: List[str] = []
    seen = {base}
    for spec in desc.join:
        kind = _resolve(JoinType, spec.type, "join type")
        if spec.table in seen:
            raise ValidationError(f"Table '{spec.table}' appears more than once in the join")
        seen.add(spec.table)
        projection.extend(_join_columns(spec))
        local = _column_ref(spec.on.local, base)
        foreign = _column_ref(spec.on.foreign, spec.table)
        if kind is JoinType.INNER:
            joins.append(f"JOIN {_ident(spec.table)} ON {foreign} = {local}")
        else:
            # Approximates a left join as "match OR local key is null": base rows whose key is
            # set but has no partner are dropped, unlike a relational LEFT JOIN.
            joins.append(f"LEFT JOIN {_ident(spec.table)} ON {foreign} = {local}")
            conditions.append(f"{local} = {foreign} OR {local} IS NULL")
    where, params = compile_filters(desc.filters, base)
    tail, tail_params = _order_and_page(desc, base)
    sql = f"SELECT {', '.join(projection)} FROM {_ident(base)} " + " ".join(joins)
    return CompiledQuery(sql + _where([where, *conditions]) + tail, params + tail_params)


def _compile_search(desc: QueryDescriptor) -> CompiledQuery:
    term = (desc.search_term or "").strip()
    if not term:
        raise ValidationError("'search' requires 'search_term'")
    columns = desc.search_columns or list(DEFAULT_SEARCH_COLUMNS)
    pattern = f"%{_escape_like(term.lower())}%"
    matches = " OR ".join(f"lower({_ident(col)}) LIKE ? ESCAPE '\\'" for col in columns)
    where, params = compile_filters(desc.filters)
    tail, tail_params = _order_and_page(desc)
    sql = f"SELECT {', '.join(_projection(desc.columns))} FROM {_ident(desc.table)}"
    return CompiledQuery(
        sql + _where([matches, where]) + tail, [pattern] * len(columns) + params + tail_params
    )


_ACTION_COMPILERS: Dict[QueryAction, Callable[[QueryDescriptor], CompiledQuery]] = {
    QueryAction.SELECT: _compile_select,
    QueryAction.INSERT: _compile_insert,
    QueryAction.UPDATE: _compile_update,
    QueryAction.DELETE: _compile_delete,
    QueryAction.UPSERT: _compile_upsert,
    QueryAction.JOIN: _compile_join,
    QueryAction.SEARCH: _compile_search,
}


def _ensure_exhaustive(enum_cls: Type[Enum], table: Mapping[Any, Any]) -> None:
    missing = [member.value for member in enum_cls if member not in table]
    if missing:
        raise RuntimeError(f"No compiler for {enum_cls.__name__} members: {missing}")


_ensure_exhaustive(QueryAction, _ACTION_COMPILERS)
_ensure_exhaustive(FilterOperator, _FILTER_COMPILERS)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------
def compile_query(raw: Mapping[str, Any] | QueryDescriptor) -> CompiledQuery:
    """Validate *raw* and compile it into one SQL statement."""
    desc = parse_descriptor(raw)
    _ident(desc.table)
    action = _resolve(QueryAction, desc.action, "action")
    return _ACTION_COMPILERS[action](desc)


def run_query(raw: Mapping[str, Any] | QueryDescriptor, store: TableStore) -> List[Dict[str, Any]]:
    """Compile and execute *raw*; errors propagate to the caller."""
    compiled = compile_query(raw)
    return store.execute(compiled.sql, compiled.params)


def compile_and_run(raw: Mapping[str, Any] | QueryDescriptor, store: TableStore) -> QueryResult:
    """
    Compile and execute a descriptor.

    Returns
    -------
    QueryResult
        ``success=True`` with the rows as ``data``, or ``success=False`` with the error message.
        Query errors are final; nothing here is retried.
    """
    try:
        rows = run_query(raw, store)
    except ErrandError as exc:
        logger.warning("Query failed: %s", exc)
        return QueryResult(success=False, error=str(exc))
    return QueryResult(success=True, data=rows)


def is_read_only(raw: Mapping[str, Any]) -> bool:
    """True if the descriptor's action cannot change the store."""
    try:
        return QueryAction(str(raw.get("action", "select")).lower()) in READ_ONLY_ACTIONS
    except ValueError:
        return False
