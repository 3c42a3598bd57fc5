from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import strawberry

from .associations import AssociationFieldBuilder, connection_input_name, synthesize_implicit
from .config import ModelQLOptions
from .core.descriptors import ATTRIBUTE_OPERATIONS, FETCH, EntityDescriptor, FieldDescriptor
from .core.naming import type_name
from .core.type_tokens import map_field
from .core.utils import UNSET
from .registry import GeneratedType, TypeRegistry, Variant
from .resolvers import build_resolver
from .shapes import ShapeCompiler
from .storage.base import StorageAdapter

_logger = logging.getLogger("modelql")

META_FIELD = '_ModelQLMeta'


class EntityTypeGenerator:
    """Turns entity descriptors into output, input and connection types.

    Every public method returns a :class:`GeneratedType` registered in the
    build registry; fields are filled lazily when the registry is processed.
    """

    def __init__(
        self,
        entities: Dict[str, EntityDescriptor],
        registry: TypeRegistry,
        storage: StorageAdapter,
        options: ModelQLOptions,
    ):
        self.entities = synthesize_implicit(entities)
        self.registry = registry
        self.storage = storage
        self.options = options
        self.classifier = options.classifier()
        self.associations = AssociationFieldBuilder(self)
        self.shapes: Optional[ShapeCompiler] = None

    def entity(self, name: str) -> EntityDescriptor:
        return self.entities[name]

    def named_types(self, *, inputs: bool = False) -> Dict[str, Any]:
        if self.shapes is not None:
            return self.shapes.named_types(inputs=inputs)
        return self.registry.named_types(inputs=inputs)

    # ---------- identities ----------
    def output(self, name: str) -> GeneratedType:
        entity = self.entities[name]
        return self.registry.resolve(
            (name, Variant.OUTPUT), type_name(name),
            lambda gen: self._populate_output(entity, gen),
            description=entity.description,
        )

    def create_input(self, name: str) -> GeneratedType:
        entity = self.entities[name]
        return self.registry.resolve(
            (name, Variant.CREATE), type_name(name, is_input=True),
            lambda gen: self._populate_input(entity, gen, Variant.CREATE),
        )

    def update_input(self, name: str) -> GeneratedType:
        entity = self.entities[name]
        return self.registry.resolve(
            (name, Variant.UPDATE), type_name(name, is_input=True, is_update=True),
            lambda gen: self._populate_input(entity, gen, Variant.UPDATE),
        )

    def connection_input(self, through: str) -> GeneratedType:
        entity = self.entities[through]
        return self.registry.resolve(
            (through, Variant.CONNECTION_INPUT), connection_input_name(through),
            lambda gen: self._populate_connection_input(entity, gen),
            description=f"Through payload of {through}",
        )

    def page_info(self) -> GeneratedType:
        return self.registry.resolve(('PageInfo', Variant.PAYLOAD), 'PageInfo', self._populate_page_info)

    def enum(self, enum_cls: Any) -> Any:
        return self.registry.register_enum((enum_cls.__name__, Variant.ENUM), enum_cls).cls

    # ---------- field selection ----------
    def visible_fields(self, entity: EntityDescriptor, operation: str) -> List[FieldDescriptor]:
        """Fields left after the attribute exclude/only options of ``operation``."""
        attrs = entity.options.attributes
        excluded = set(attrs.excluded(operation))
        allowed = attrs.allowed(operation)
        out = []
        for f in entity.fields:
            if f.name in excluded:
                continue
            if allowed is not None and f.name not in allowed and not f.primary_key:
                continue
            out.append(f)
        return out

    def scalar_annotation(self, f: FieldDescriptor, *, optional: bool = True, as_id: bool = False) -> Any:
        ref = map_field(f.type_token, self.options.custom_types, self.named_types())
        inner = ref.resolved
        if f.python_type is not None:
            inner = self.enum(f.python_type)
        if as_id:
            inner = int
        return ref.annotation(inner, force_optional=optional)

    # ---------- populate callbacks ----------
    def _populate_output(self, entity: EntityDescriptor, gen: GeneratedType) -> None:
        for f in self.visible_fields(entity, FETCH):
            value = strawberry.field(description=f.description) if f.description else None
            gen.add_field(f.name, self.scalar_annotation(f), value)
        for assoc in entity.associations:
            if assoc.target not in self.entities:
                _logger.warning("modelql: %s.%s targets unknown entity %s", entity.name, assoc.name, assoc.target)
                continue
            self.associations.output_field(entity, assoc, gen)
        for name, token in (entity.options.attributes.include or {}).items():
            self._virtual_field(entity, gen, name, token)
        self._meta_field(entity, gen)
        _logger.debug("modelql: populated %s with %d fields", gen.name, len(gen.field_names()))

    def _virtual_field(self, entity: EntityDescriptor, gen: GeneratedType, name: str, token: str) -> None:
        annotation = map_field(token, self.options.custom_types, self.named_types()).annotation(force_optional=True)

        async def impl(source: Any, info: Any, args: Dict[str, Any]) -> Any:
            return getattr(source, name, None)

        fn = build_resolver(f"_virtual_{entity.name}_{name}", {}, impl, annotation)
        gen.add_field(name, None, strawberry.field(resolver=fn))

    def _meta_field(self, entity: EntityDescriptor, gen: GeneratedType) -> None:
        async def impl(source: Any, info: Any, args: Dict[str, Any]) -> str:
            return entity.name

        fn = build_resolver(f"_meta_{entity.name}", {}, impl, Optional[str])
        gen.add_field('modelql_meta', None, strawberry.field(resolver=fn, name=META_FIELD, description="Entity name of the record"))

    def required_on_create(self, f: FieldDescriptor, variant: Variant) -> bool:
        """Only the root create input keeps non-null columns required."""
        return variant is Variant.CREATE and not f.autoincrement and not f.nullable and not f.has_default

    def input_annotation(self, entity: EntityDescriptor, f: FieldDescriptor, variant: Variant) -> Any:
        required = self.required_on_create(f, variant)
        if f.references or f.autoincrement:
            return self.scalar_annotation(f, optional=not required, as_id=True)
        return self.scalar_annotation(f, optional=not required)

    def _input_fields(self, entity: EntityDescriptor, operation: str) -> List[FieldDescriptor]:
        out = []
        for f in self.visible_fields(entity, operation):
            if f.timestamp:
                continue
            if entity.paranoid and f.name == entity.deleted_at_field:
                continue
            out.append(f)
        return out

    def _populate_input(self, entity: EntityDescriptor, gen: GeneratedType, variant: Variant) -> None:
        operation = ATTRIBUTE_OPERATIONS[0] if variant is Variant.CREATE else ATTRIBUTE_OPERATIONS[1]
        for f in self._input_fields(entity, operation):
            annotation = self.input_annotation(entity, f, variant)
            if self.required_on_create(f, variant):
                value = strawberry.field(description=f.description)
            else:
                value = strawberry.field(default=UNSET, description=f.description)
            gen.add_field(f.name, annotation, value)
        for assoc in entity.associations:
            if assoc.target in self.entities:
                self.associations.input_field(entity, assoc, gen)
        for name, token in (entity.options.attributes.include or {}).items():
            annotation = map_field(token, self.options.custom_types, self.named_types(inputs=True)).annotation(force_optional=True)
            gen.add_field(name, annotation, strawberry.field(default=UNSET))

    def _populate_connection_input(self, entity: EntityDescriptor, gen: GeneratedType) -> None:
        for f in self._input_fields(entity, ATTRIBUTE_OPERATIONS[0]):
            if f.primary_key and f.autoincrement:
                continue
            gen.add_field(f.name, self.input_annotation(entity, f, Variant.UPDATE), strawberry.field(default=UNSET, description=f.description))
        for assoc in entity.associations:
            if assoc.owns_key and assoc.target in self.entities:
                self.associations.input_field(entity, assoc, gen)

    def _populate_page_info(self, gen: GeneratedType) -> None:
        gen.add_field('has_next_page', bool, strawberry.field(default=False))
        gen.add_field('has_previous_page', bool, strawberry.field(default=False))
        gen.add_field('start_cursor', Optional[str], strawberry.field(default=None))
        gen.add_field('end_cursor', Optional[str], strawberry.field(default=None))

    def build(self, names: Optional[List[str]] = None) -> None:
        """Register the output and input types of ``names`` (default: all)."""
        for name in names or list(self.entities):
            self.output(name)
            self.create_input(name)
            self.update_input(name)
        self.registry.process()
