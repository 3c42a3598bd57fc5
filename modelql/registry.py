"""Build-scoped registry of generated Strawberry types.

Types are created in two phases: a bare runtime class is registered under
its identity first and its annotations/fields are filled in later by a
deferred populate callback. Any lookup made while a type is still being built
returns the same class object, so cyclic entity graphs resolve without
recursion. ``finalize()`` decorates every class once all of them are
populated.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import strawberry

_logger = logging.getLogger("modelql")


class Variant(str, Enum):
    OUTPUT = 'output'
    CREATE = 'create'
    UPDATE = 'update'
    CONNECTION_INPUT = 'connection_input'
    CONNECTION = 'connection'
    EDGE = 'edge'
    ENUM = 'enum'
    SHAPE = 'shape'
    SHAPE_INPUT = 'shape_input'
    PAYLOAD = 'payload'

    @property
    def is_input(self) -> bool:
        return self in (Variant.CREATE, Variant.UPDATE, Variant.CONNECTION_INPUT, Variant.SHAPE_INPUT)


Identity = Tuple[str, Variant]


@dataclass
class GeneratedType:
    """One node of the type graph.

    ``cls`` is the runtime class (decorated by :meth:`TypeRegistry.finalize`).
    ``meta`` carries generator data such as the association behind each input
    field, read later by the mutation executor.
    """

    name: str
    variant: Variant
    cls: Any
    description: Optional[str] = None
    populate: Optional[Callable[['GeneratedType'], None]] = None
    populated: bool = False
    decorated: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    def add_field(self, name: str, annotation: Any, value: Any = None) -> None:
        anns = self.cls.__annotations__
        if value is not None:
            setattr(self.cls, name, value)
        if annotation is not None:
            anns[name] = annotation

    def field_names(self) -> List[str]:
        names = list(self.cls.__annotations__.keys())
        for k, v in self.cls.__dict__.items():
            if k not in names and hasattr(v, 'base_resolver'):
                names.append(k)
        return names


class TypeRegistry:
    """Identity -> GeneratedType map for one schema build."""

    def __init__(self) -> None:
        self._by_identity: Dict[Identity, GeneratedType] = {}
        self._by_name: Dict[str, GeneratedType] = {}
        self._pending: List[GeneratedType] = []

    def __contains__(self, identity: Identity) -> bool:
        return identity in self._by_identity

    def __len__(self) -> int:
        return len(self._by_name)

    def get(self, identity: Identity) -> Optional[GeneratedType]:
        return self._by_identity.get(identity)

    def by_name(self, name: str) -> Optional[GeneratedType]:
        return self._by_name.get(name)

    def all(self, variant: Optional[Variant] = None) -> List[GeneratedType]:
        return [g for g in self._by_name.values() if variant is None or g.variant is variant]

    def resolve(
        self,
        identity: Identity,
        name: str,
        populate: Optional[Callable[[GeneratedType], None]] = None,
        *,
        description: Optional[str] = None,
    ) -> GeneratedType:
        """Return the type for ``identity``, registering a placeholder on first use.

        When another identity already produced a type with the same final
        name, that type is returned and aliased to ``identity``.
        """
        existing = self._by_identity.get(identity)
        if existing is not None:
            return existing
        clash = self._by_name.get(name)
        if clash is not None:
            _logger.debug("modelql: type name %s already generated, reusing it for %s", name, identity)
            self._by_identity[identity] = clash
            return clash
        cls = type(name, (), {'__doc__': description or f'ModelQL runtime type {name}', '__module__': __name__})
        cls.__annotations__ = {}
        gen = GeneratedType(name=name, variant=identity[1], cls=cls, description=description, populate=populate)
        self._by_identity[identity] = gen
        self._by_name[name] = gen
        if populate is not None:
            self._pending.append(gen)
        else:
            gen.populated = True
        _logger.debug("modelql: registered %s type %s", identity[1].value, name)
        return gen

    def register_enum(self, identity: Identity, enum_cls: Any, *, name: Optional[str] = None, description: Optional[str] = None) -> GeneratedType:
        existing = self._by_identity.get(identity)
        if existing is not None:
            return existing
        type_name_ = name or enum_cls.__name__
        clash = self._by_name.get(type_name_)
        if clash is not None:
            self._by_identity[identity] = clash
            return clash
        gen = GeneratedType(name=type_name_, variant=Variant.ENUM, cls=enum_cls, description=description, populated=True)
        self._by_identity[identity] = gen
        self._by_name[type_name_] = gen
        return gen

    def process(self) -> None:
        """Run deferred populate callbacks until no placeholder is left."""
        while self._pending:
            gen = self._pending.pop(0)
            if gen.populated:
                continue
            gen.populated = True
            gen.populate(gen)  # type: ignore[misc]

    def finalize(self) -> Dict[str, Any]:
        """Decorate every runtime class and return name -> Strawberry type."""
        self.process()
        out: Dict[str, Any] = {}
        for name, gen in self._by_name.items():
            if not gen.decorated:
                if gen.variant is Variant.ENUM:
                    if not hasattr(gen.cls, '__strawberry_definition__') and not hasattr(gen.cls, '_enum_definition'):
                        gen.cls = strawberry.enum(gen.cls, name=gen.name, description=gen.description)  # type: ignore
                elif gen.variant.is_input:
                    gen.cls = strawberry.input(gen.cls, name=gen.name, description=gen.description)  # type: ignore
                else:
                    gen.cls = strawberry.type(gen.cls, name=gen.name, description=gen.description)  # type: ignore
                gen.decorated = True
            out[name] = gen.cls
        return out

    def named_types(self, *, inputs: bool = False) -> Dict[str, Any]:
        """Name -> class map used to resolve named type tokens.

        Entity names map to their output type, or to their update input when
        ``inputs`` is set; shape names map to themselves.
        """
        out: Dict[str, Any] = {}
        for (key, variant), gen in self._by_identity.items():
            if variant is Variant.ENUM:
                out[gen.name] = gen.cls
            elif variant is Variant.SHAPE_INPUT and inputs:
                out[key] = gen.cls
            elif variant is Variant.SHAPE and not inputs:
                out[key] = gen.cls
            elif variant is Variant.OUTPUT and not inputs:
                out[key] = gen.cls
            elif variant is Variant.UPDATE and inputs:
                out[key] = gen.cls
        return out
