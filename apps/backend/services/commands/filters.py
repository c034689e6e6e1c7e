from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from apps.backend.services.commands.actions import Filter, FilterLogic, FilterOperator


def resolve_field(record: Dict[str, Any], path: str) -> Any:
    """Dot-path lookup ("variants.price"). Missing segments resolve to None."""
    value: Any = record
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(op: FilterOperator, left: Any, right: Any) -> bool:
    a = _as_number(left)
    b = _as_number(right)
    if a is None or b is None:
        return False
    if op == FilterOperator.GREATER_THAN:
        return a > b
    if op == FilterOperator.LESS_THAN:
        return a < b
    if op == FilterOperator.GREATER_THAN_OR_EQUAL:
        return a >= b
    return a <= b


def condition_met(record: Dict[str, Any], flt: Filter) -> bool:
    value = resolve_field(record, flt.field)
    op = flt.operator

    if op == FilterOperator.EQUALS:
        return value == flt.value
    if op == FilterOperator.NOT_EQUALS:
        return value != flt.value
    if op in (FilterOperator.CONTAINS, FilterOperator.NOT_CONTAINS):
        haystack = str(value if value is not None else "").lower()
        found = str(flt.value).lower() in haystack
        return found if op == FilterOperator.CONTAINS else not found
    return _compare(op, value, flt.value)


def matches(record: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    """
    Left-to-right fold over the conditions, seeded with True.
    AND -> acc and cond, OR -> acc or cond. There is no grouping:
    [A, B(OR), C(AND)] evaluates as ((True and A) or B) and C.
    """
    result = True
    for flt in filters:
        met = condition_met(record, flt)
        if flt.logic == FilterLogic.OR:
            result = result or met
        else:
            result = result and met
    return result


def apply_filters(records: Iterable[Dict[str, Any]], filters: Optional[Sequence[Filter]]) -> List[Dict[str, Any]]:
    records = list(records)
    if not filters:
        return records
    return [r for r in records if matches(r, filters)]


def partition(
    records: Iterable[Dict[str, Any]], filters: Sequence[Filter]
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    matching: List[Dict[str, Any]] = []
    rest: List[Dict[str, Any]] = []
    for r in records:
        (matching if matches(r, filters) else rest).append(r)
    return matching, rest
