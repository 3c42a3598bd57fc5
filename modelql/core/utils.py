from __future__ import annotations
import inspect
from dataclasses import is_dataclass, fields as _dc_fields
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

import strawberry
from sqlalchemy.sql.sqltypes import Boolean, Date, DateTime, Float, Integer, Numeric

UNSET = getattr(strawberry, 'UNSET')

# Attribute prefix for association results merged into a record by mutations
PREFETCH_ATTR = '_{}_prefetched'


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def call_hook(fn: Any, *args: Any) -> Any:
    """Invoke a sync or async callable and return its (awaited) result."""
    return await maybe_await(fn(*args))


def input_to_dict(obj: Any) -> Any:
    """Convert a Strawberry input instance (or nested list/dict) to plain Python dicts/lists.

    UNSET (omitted) fields are dropped; explicit ``None`` is kept.
    """
    if obj is None:
        return None
    if isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, (list, tuple)):
        return [input_to_dict(x) for x in obj]
    if isinstance(obj, dict):
        return {k: input_to_dict(v) for k, v in obj.items() if v is not UNSET}
    if is_dataclass(obj) and not isinstance(obj, type):
        out: Dict[str, Any] = {}
        for f in _dc_fields(obj):
            v = getattr(obj, f.name, UNSET)
            if v is UNSET:
                continue
            out[f.name] = input_to_dict(v)
        return out
    return obj


def coerce_where_value(col: Any, val: Any) -> Any:
    """Coerce JSON filter values (strings mostly) to the column's Python type."""
    if isinstance(val, (list, tuple)):
        return [coerce_where_value(col, v) for v in val]
    ctype = getattr(col, 'type', None)
    if ctype is None or val is None:
        return val
    if isinstance(ctype, DateTime) and isinstance(val, str):
        s = val.replace('Z', '+00:00')
        try:
            dv = datetime.fromisoformat(s)
        except ValueError:
            return val
        if not getattr(ctype, 'timezone', False) and dv.tzinfo is not None:
            dv = dv.replace(tzinfo=None)
        return dv
    if isinstance(ctype, Date) and isinstance(val, str):
        try:
            return date.fromisoformat(val)
        except ValueError:
            return val
    if isinstance(ctype, Integer) and isinstance(val, str):
        try:
            return int(val)
        except ValueError:
            return val
    if isinstance(ctype, (Numeric, Float)) and isinstance(val, str):
        try:
            return float(val)
        except ValueError:
            return val
    if isinstance(ctype, Boolean) and isinstance(val, str):
        lv = val.strip().lower()
        if lv in ('true', 't', '1', 'yes', 'y'):
            return True
        if lv in ('false', 'f', '0', 'no', 'n'):
            return False
    return val


def get_path(data: Any, path: Optional[str], default: Any = None) -> Any:
    """Read ``a.b.c`` from nested mappings/objects."""
    if not path:
        return default
    cur = data
    for part in str(path).split('.'):
        if isinstance(cur, Mapping):
            if part not in cur:
                return default
            cur = cur[part]
        elif hasattr(cur, part):
            cur = getattr(cur, part)
        else:
            return default
    return default if cur is None else cur


def get_db_session(info_or_ctx: Any) -> Any | None:
    """Extract an AsyncSession-like object from a Strawberry ``Info`` or a context.

    Tries the keys/attributes ``db_session``, ``db``, ``session``,
    ``async_session`` in that order.
    """
    if info_or_ctx is None:
        return None
    ctx = getattr(info_or_ctx, 'context', info_or_ctx)
    if ctx is None:
        return None
    candidates = ('db_session', 'db', 'session', 'async_session')
    if isinstance(ctx, Mapping):
        for k in candidates:
            v = ctx.get(k)
            if v is not None:
                return v
        return None
    for k in candidates:
        v = getattr(ctx, k, None)
        if v is not None:
            return v
    return None


def attach_prefetched(record: Any, name: str, value: Any, owner: Any = None) -> None:
    """Merge an association result into ``record`` for later field resolution.

    ``owner`` is the request context of the write; records outlive requests in
    session identity maps, so only that request sees the merged value.
    """
    setattr(record, PREFETCH_ATTR.format(name), (owner, value))


def has_prefetched(record: Any, name: str, owner: Any = None) -> bool:
    stored = getattr(record, PREFETCH_ATTR.format(name), None)
    return stored is not None and stored[0] is owner


def get_prefetched(record: Any, name: str) -> Any:
    stored = getattr(record, PREFETCH_ATTR.format(name), None)
    return stored[1] if stored is not None else None


def variable_values(info: Any) -> Dict[str, Any]:
    vals = getattr(info, 'variable_values', None)
    return dict(vals or {})
