"""SOQL query construction for extract and count operations."""

from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from ..models.template import ExtractSpec

# Keeps IN (...) clauses well under the platform's query length limit
MAX_IN_CLAUSE_VALUES = 200


def quote_value(value: Any) -> str:
    """Render a Python value as a SOQL literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def in_clause(field_name: str, values: Iterable[Any]) -> str:
    """Build `field IN ('a', 'b')`."""
    rendered = ", ".join(quote_value(v) for v in values)
    return f"{field_name} IN ({rendered})"


def chunked(values: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [values[i:i + size] for i in range(0, len(values), size)]


@dataclass(frozen=True)
class QuerySpec:
    """A read against one object type."""
    object_type: str
    fields: Tuple[str, ...] = ("Id",)
    conditions: Tuple[str, ...] = ()
    order_by: Optional[str] = None
    limit: Optional[int] = None

    def with_condition(self, condition: str) -> "QuerySpec":
        return replace(self, conditions=self.conditions + (condition,))

    def _where(self) -> str:
        if not self.conditions:
            return ""
        return " WHERE " + " AND ".join(f"({c})" for c in self.conditions)

    def to_soql(self) -> str:
        soql = f"SELECT {', '.join(self.fields)} FROM {self.object_type}{self._where()}"
        if self.order_by:
            soql += f" ORDER BY {self.order_by}"
        if self.limit is not None:
            soql += f" LIMIT {self.limit}"
        return soql

    def to_count_soql(self) -> str:
        return f"SELECT COUNT() FROM {self.object_type}{self._where()}"

    @classmethod
    def from_extract(cls, extract: ExtractSpec) -> "QuerySpec":
        return cls(
            object_type=extract.object_type,
            fields=extract.fields,
            conditions=extract.filters,
            order_by=extract.order_by,
        )


def selection_queries(
    extract: ExtractSpec,
    selection_ids: Optional[Sequence[str]],
) -> List[QuerySpec]:
    """
    Queries covering a step's extract, restricted to a caller selection.

    No selection yields the unrestricted query. An empty selection yields no
    queries at all. Large selections are split into several IN clauses.
    """
    base = QuerySpec.from_extract(extract)
    if selection_ids is None:
        return [base]
    ids = list(dict.fromkeys(selection_ids))
    return [
        base.with_condition(in_clause(extract.selection_field, chunk))
        for chunk in chunked(ids, MAX_IN_CLAUSE_VALUES)
    ]
