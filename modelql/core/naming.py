from __future__ import annotations

import re
from typing import Optional

__all__ = [
    'camel_case',
    'upper_first',
    'lower_first',
    'type_name',
    'accessor_suffix',
    'operation_name',
]

_word_split = re.compile(r'[\s_\-]+')


def upper_first(name: str) -> str:
    if not name:
        return name
    return name[0].upper() + name[1:]


def lower_first(name: str) -> str:
    if not name:
        return name
    return name[0].lower() + name[1:]


def camel_case(name: str) -> str:
    """Convert ``Post Add``/``post_add``/``PostAdd`` into lowerCamelCase ``postAdd``."""
    if not name:
        return name
    parts = [p for p in _word_split.split(str(name)) if p]
    if not parts:
        return ''
    return lower_first(parts[0]) + ''.join(upper_first(p) for p in parts[1:])


def type_name(entity: str, *, is_input: bool = False, is_update: bool = False, is_assoc: bool = False) -> str:
    """Name of a generated entity type.

    Output types use the entity name; inputs append ``Add``/``Edit`` and
    ``Input``, plus ``Connection`` when the input is a through-table payload.
    """
    if not is_input:
        return entity
    return entity + ('Edit' if is_update else 'Add') + 'Input' + ('Connection' if is_assoc else '')


def accessor_suffix(singular: str, plural: str, *, many: bool = False, alias: Optional[str] = None) -> str:
    """Suffix of association accessors (``get<Suffix>``, ``add<Suffix>``...)."""
    if alias:
        return upper_first(alias)
    return upper_first(plural if many else singular)


def operation_name(entity: str, suffix: str, alias: Optional[str] = None) -> str:
    """Root field name, e.g. ``operation_name('Post', 'Get') == 'postGet'``."""
    return camel_case(alias or (entity + suffix))
