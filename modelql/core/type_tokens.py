"""Parsing of primitive type tokens such as ``"[id!]!"`` into type references.

Tokens follow the GraphQL shorthand: an optional surrounding ``[...]`` marks
a list, a trailing ``!`` outside the brackets marks the outer value required
and a trailing ``!`` inside the brackets marks list elements required.
Unknown scalar names never fail; they fall back to ``String``.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import strawberry
from strawberry.scalars import JSON

_logger = logging.getLogger("modelql")

BUILTIN_SCALARS: Dict[str, Any] = {
    'int': int,
    'boolean': bool,
    'float': float,
    'string': str,
    'id': strawberry.ID,
    'json': JSON,
    'date': datetime,
}


@dataclass(frozen=True)
class TypeRef:
    """Semantic reference produced from a token.

    ``base`` is the bare name found in the token. ``resolved`` is the Python
    or Strawberry type it maps to. ``fallback`` is True when the name was not
    a built-in scalar nor a known custom type and was coerced to ``str``.
    """

    base: str
    is_list: bool = False
    is_required: bool = False
    is_element_required: bool = False
    resolved: Any = str
    fallback: bool = False

    def annotation(self, inner: Any = None, *, force_optional: bool = False) -> Any:
        """Build the typing annotation, optionally substituting the base type."""
        t = inner if inner is not None else self.resolved
        if self.is_list:
            elem = t if self.is_element_required else Optional[t]
            t = List[elem]  # type: ignore[valid-type]
        if force_optional or not self.is_required:
            return Optional[t]
        return t


def parse_token(token: str) -> TypeRef:
    """Split a token into its name and list/required modifiers."""
    s = (token or '').strip()
    is_required = False
    is_list = False
    is_element_required = False
    if s.endswith('!'):
        is_required = True
        s = s[:-1].rstrip()
    if s.startswith('[') and s.endswith(']'):
        is_list = True
        s = s[1:-1].strip()
        if s.endswith('!'):
            is_element_required = True
            s = s[:-1].rstrip()
    return TypeRef(base=s, is_list=is_list, is_required=is_required, is_element_required=is_element_required)


def lookup_scalar(name: str, custom_types: Optional[Mapping[str, Any]] = None) -> Any:
    """Return the type for a scalar name or None when it is unknown."""
    builtin = BUILTIN_SCALARS.get((name or '').lower())
    if builtin is not None:
        return builtin
    if custom_types and name in custom_types:
        return custom_types[name]
    return None


def map_field(token: str, custom_types: Optional[Mapping[str, Any]] = None, named_types: Optional[Mapping[str, Any]] = None) -> TypeRef:
    """Map a token to a :class:`TypeRef`.

    Built-in scalars match case-insensitively. Custom scalars come from
    ``custom_types`` and already generated types from ``named_types``; any
    other name becomes ``str``.
    """
    ref = parse_token(token)
    resolved = lookup_scalar(ref.base, custom_types)
    if resolved is None and named_types and ref.base in named_types:
        resolved = named_types[ref.base]
    if resolved is None:
        _logger.debug("modelql: unknown type '%s' in token '%s', using String", ref.base, token)
        return TypeRef(ref.base, ref.is_list, ref.is_required, ref.is_element_required, str, True)
    return TypeRef(ref.base, ref.is_list, ref.is_required, ref.is_element_required, resolved, False)


def annotation_for(token: str, custom_types: Optional[Mapping[str, Any]] = None, named_types: Optional[Mapping[str, Any]] = None) -> Any:
    return map_field(token, custom_types, named_types).annotation()
