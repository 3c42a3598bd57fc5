from __future__ import annotations
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from sqlalchemy import and_, or_, func

# Global operator registry (extensible)
OPERATOR_REGISTRY: Dict[str, Callable[[Any, Any], Any]] = {
    'eq': lambda col, v: col == v,
    'ne': lambda col, v: col != v,
    'lt': lambda col, v: col < v,
    'lte': lambda col, v: col <= v,
    'gt': lambda col, v: col > v,
    'gte': lambda col, v: col >= v,
    'like': lambda col, v: col.like(v),
    'not_like': lambda col, v: ~col.like(v),
    'ilike': lambda col, v: getattr(col, 'ilike', lambda x: func.lower(col).like(func.lower(x)))(v),
    'not_ilike': lambda col, v: ~getattr(col, 'ilike', lambda x: func.lower(col).like(func.lower(x)))(v),
    'in': lambda col, v: col.in_(v if isinstance(v, (list, tuple, set)) else [v]),
    'not_in': lambda col, v: ~col.in_(v if isinstance(v, (list, tuple, set)) else [v]),
    'between': lambda col, v: col.between(v[0], v[1]),
    'not_between': lambda col, v: ~col.between(v[0], v[1]),
    'contains': lambda col, v: col.contains(v),
    'starts_with': lambda col, v: col.like(f"{v}%"),
    'ends_with': lambda col, v: col.like(f"%{v}"),
}

LOGICAL_KEYS = ('and', 'or')

REVERSE_PREFIX = 'reverse:'
ASC = 'ASC'
DESC = 'DESC'


def register_operator(name: str, fn: Callable[[Any, Any], Any]):  # pragma: no cover - simple
    OPERATOR_REGISTRY[name] = fn


def parse_where(raw: Any) -> Optional[Dict[str, Any]]:
    """Accept a JSON scalar value or a JSON string and return a dict (or None)."""
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode('utf-8')
    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        raw = json.loads(s)
    if not isinstance(raw, dict):
        raise ValueError(f"where must be a JSON object, got {type(raw).__name__}")
    return raw


def substitute_where_vars(where: Any, variables: Optional[Mapping[str, Any]]) -> Any:
    """Resolve deferred filter values in place.

    A value may be a callable taking the bound query variables (evaluated
    now) or a nested dict/list that is walked recursively. Returns the same
    object for convenience.
    """
    vals = dict(variables or {})
    if isinstance(where, dict):
        for k in list(where.keys()):
            v = where[k]
            if callable(v):
                where[k] = v(vals)
            elif isinstance(v, (dict, list)):
                substitute_where_vars(v, vals)
    elif isinstance(where, list):
        for i, v in enumerate(where):
            if callable(v):
                where[i] = v(vals)
            elif isinstance(v, (dict, list)):
                substitute_where_vars(v, vals)
    return where


def parse_order(order: Optional[str]) -> List[Tuple[str, str]]:
    """``"title,reverse:created_at"`` -> ``[('title', 'ASC'), ('created_at', 'DESC')]``."""
    out: List[Tuple[str, str]] = []
    for clause in (order or '').split(','):
        clause = clause.strip()
        if not clause:
            continue
        if clause.startswith(REVERSE_PREFIX):
            out.append((clause[len(REVERSE_PREFIX):], DESC))
        else:
            out.append((clause, ASC))
    return out


def asks_for_deleted(where: Optional[Mapping[str, Any]], deleted_at_field: Optional[str]) -> bool:
    """True when the filter explicitly selects soft-deleted rows (``{deleted_at: {ne: null}}``)."""
    if not where or not deleted_at_field:
        return False
    cond = where.get(deleted_at_field)
    return isinstance(cond, dict) and 'ne' in cond and cond['ne'] is None


def expr_from_where(columns: Any, wdict: Optional[Mapping[str, Any]], coerce: Optional[Callable[[Any, Any], Any]] = None):
    """Build a SQLAlchemy conjunction from ``{col: {op: val}}`` / ``{col: val}`` dicts.

    ``columns`` is a column collection (``Table.c``); ``and``/``or`` keys take
    lists of nested where dicts.
    """
    exprs: List[Any] = []
    for key, cond in (wdict or {}).items():
        if key in LOGICAL_KEYS:
            parts = [expr_from_where(columns, sub, coerce) for sub in (cond or [])]
            parts = [p for p in parts if p is not None]
            if parts:
                exprs.append(and_(*parts) if key == 'and' else or_(*parts))
            continue
        col = columns.get(key)
        if col is None:
            raise ValueError(f"Unknown where column: {key}")
        if not isinstance(cond, dict):
            cond = {'eq': cond}
        for op_name, val in cond.items():
            op_fn = OPERATOR_REGISTRY.get(op_name)
            if not op_fn:
                raise ValueError(f"Unknown where operator: {op_name}")
            if coerce is not None:
                if isinstance(val, (list, tuple)):
                    val = [coerce(col, v) for v in val]
                else:
                    val = coerce(col, val)
            exprs.append(op_fn(col, val))
    if not exprs:
        return None
    return and_(*exprs)
