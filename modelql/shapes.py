"""Caller-declared composite types that are not backed by a storage entity.

A ``types`` entry of the graph options may be:

- a mapping ``{field: token}``: an object type, or an input type when its
  name ends with ``Input``; tokens may name other shapes or entities;
- a list of strings: an enum whose values are those strings;
- a string: an alias of another (shape, entity or scalar) token.
"""
from __future__ import annotations
import logging
from enum import Enum
from typing import Any, Dict, Mapping

import strawberry

from .config import ModelQLOptions
from .core.type_tokens import lookup_scalar, map_field
from .core.utils import UNSET
from .registry import GeneratedType, TypeRegistry, Variant

_logger = logging.getLogger("modelql")


class ShapeCompiler:
    def __init__(self, registry: TypeRegistry, options: ModelQLOptions):
        self.registry = registry
        self.options = options
        self.aliases: Dict[str, str] = {}

    def register(self, types: Mapping[str, Any]) -> None:
        for name, definition in (types or {}).items():
            if isinstance(definition, str):
                self.aliases[name] = definition
            elif isinstance(definition, (list, tuple)):
                members = {str(v): str(v) for v in definition}
                self.registry.register_enum((name, Variant.ENUM), Enum(name, members))
            elif isinstance(definition, Mapping):
                variant = Variant.SHAPE_INPUT if name.endswith('Input') else Variant.SHAPE
                self.registry.resolve((name, variant), name, self._populator(dict(definition)))
            else:
                raise TypeError(f"Unsupported type declaration for {name}: {definition!r}")

    def named_types(self, *, inputs: bool = False) -> Dict[str, Any]:
        """Registry names plus declared aliases."""
        named = self.registry.named_types(inputs=inputs)
        for alias, target in self.aliases.items():
            resolved = lookup_scalar(target, self.options.custom_types)
            if resolved is None:
                resolved = named.get(target)
            if resolved is None:
                _logger.debug("modelql: alias %s -> %s is unresolved, using String", alias, target)
                resolved = str
            named[alias] = resolved
        return named

    def annotation(self, token: str, *, inputs: bool = False) -> Any:
        """Annotation for a token used by custom shapes and custom root fields."""
        return map_field(token, self.options.custom_types, self.named_types(inputs=inputs)).annotation()

    def _populator(self, definition: Dict[str, str]):
        def populate(gen: GeneratedType) -> None:
            inputs = gen.variant is Variant.SHAPE_INPUT
            named = self.named_types(inputs=inputs)
            for field_name, token in definition.items():
                ref = map_field(token, self.options.custom_types, named)
                if inputs:
                    value = strawberry.field() if ref.is_required else strawberry.field(default=UNSET)
                else:
                    value = strawberry.field(default=None)
                gen.add_field(field_name, ref.annotation(force_optional=not inputs), value)
        return populate
