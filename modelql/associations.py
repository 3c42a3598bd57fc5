"""Association fields: inline to-one objects and paginated to-many connections."""
from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import strawberry

from .core.descriptors import AssociationDescriptor, EntityDescriptor, RelationKind
from .core.naming import camel_case, type_name, upper_first
from .core.filters import asks_for_deleted, parse_order
from .core.utils import UNSET, get_prefetched, has_prefetched
from .errors import StorageError
from .registry import GeneratedType, Variant
from .resolvers import (
    WHERE_ARG,
    build_resolver,
    build_where,
    edge_arguments,
    encode_cursor,
    list_arguments,
    needs_total,
    page_window,
)
from .storage.base import EdgeRecord, FindOptions

if TYPE_CHECKING:  # pragma: no cover
    from .generator import EntityTypeGenerator

_logger = logging.getLogger("modelql")


def synthesize_implicit(entities: Dict[str, EntityDescriptor]) -> Dict[str, EntityDescriptor]:
    """Add owning associations for reference fields nobody declared.

    A field referencing another entity without a matching owning association
    yields a synthetic one named after the target entity. Returns copies; the
    given descriptors are left untouched.
    """
    out: Dict[str, EntityDescriptor] = {}
    for name, entity in entities.items():
        extra: List[AssociationDescriptor] = []
        owned_keys = {a.foreign_key for a in entity.associations if a.owns_key}
        taken = {a.name for a in entity.associations} | {f.name for f in entity.fields}
        for f in entity.fields:
            if not f.references or f.name in owned_keys or f.references not in entities:
                continue
            if f.references in taken:
                continue
            extra.append(AssociationDescriptor(
                name=f.references,
                source=name,
                target=f.references,
                kind=RelationKind.TO_ONE_OWNING,
                foreign_key=f.name,
                synthetic=True,
            ))
            taken.add(f.references)
            _logger.debug("modelql: synthesized %s.%s from reference field %s", name, f.references, f.name)
        out[name] = entity.with_associations(entity.associations + extra) if extra else entity
    return out


class _ConnectionState:
    """Request data kept on a connection instance for its lazy fields."""

    def __init__(self, record: Any, where: Optional[Dict[str, Any]], offset: int, paranoid: bool):
        self.record = record
        self.where = where
        self.offset = offset
        self.paranoid = paranoid


class AssociationFieldBuilder:
    def __init__(self, generator: 'EntityTypeGenerator'):
        self.generator = generator

    @property
    def registry(self):
        return self.generator.registry

    @property
    def storage(self):
        return self.generator.storage

    # ---------- output side ----------
    def output_field(self, entity: EntityDescriptor, assoc: AssociationDescriptor, gen: GeneratedType) -> None:
        target_entity = self.generator.entities[assoc.target]
        target = self.generator.output(assoc.target)
        fn_name = f"_assoc_{entity.name}_{assoc.name}"
        description = f"{assoc.kind.value} association to {assoc.target}"
        if not assoc.is_list:
            fn = build_resolver(fn_name, {'where': WHERE_ARG}, self._to_one_impl(assoc, target_entity), Optional[target.cls])
        else:
            conn = self.connection(entity, assoc)
            args = list_arguments()
            if assoc.is_through:
                args.update(edge_arguments())
            fn = build_resolver(fn_name, args, self._connection_impl(assoc, target_entity, conn), Optional[conn.cls])
        gen.add_field(assoc.name, None, strawberry.field(resolver=fn, description=description))

    def _to_one_impl(self, assoc: AssociationDescriptor, target_entity: EntityDescriptor):
        async def impl(source: Any, info: Any, args: Dict[str, Any]) -> Any:
            if has_prefetched(source, assoc.name, info.context):
                return get_prefetched(source, assoc.name)
            where = build_where(args.get('where'), info)
            options = FindOptions(where=where or None, paranoid=not asks_for_deleted(where, target_entity.deleted_at_field))
            try:
                return await self.storage.get_associated(source, assoc, options, context=info.context, target_entity=target_entity)
            except StorageError as exc:
                raise self.generator.classifier.classify(exc)
        return impl

    def _connection_impl(self, assoc: AssociationDescriptor, target_entity: EntityDescriptor, conn: GeneratedType):
        async def impl(source: Any, info: Any, args: Dict[str, Any]) -> Any:
            if has_prefetched(source, assoc.name, info.context):
                items = get_prefetched(source, assoc.name) or []
                return self.build_connection(conn, assoc, list(items), _ConnectionState(source, None, 0, True))
            ctx = info.context
            where = build_where(args.get('where'), info)
            paranoid = not asks_for_deleted(where, target_entity.deleted_at_field)
            try:
                total = None
                if needs_total(args):
                    total = await self.storage.count_associated(
                        source, assoc, where or None, context=ctx, paranoid=paranoid, target_entity=target_entity,
                    )
                offset, limit = page_window(args, total)
                options = FindOptions(
                    where=where or None,
                    order=parse_order(args.get('order')),
                    limit=limit,
                    offset=offset or None,
                    paranoid=paranoid,
                )
                if assoc.is_through:
                    options.where_edges = build_where(args.get('where_edges'), info) or None
                    options.order_edges = parse_order(args.get('order_edges'))
                items = await self.storage.get_associated(source, assoc, options, context=ctx, target_entity=target_entity)
            except StorageError as exc:
                raise self.generator.classifier.classify(exc)
            return self.build_connection(conn, assoc, list(items or []), _ConnectionState(source, where or None, offset, paranoid))
        return impl

    def build_connection(self, conn: GeneratedType, assoc: AssociationDescriptor, items: List[Any], state: _ConnectionState) -> Any:
        edge_cls = conn.meta['edge'].cls
        edge_fields = conn.meta['edge_fields']
        edges = []
        for i, item in enumerate(items):
            through = None
            if isinstance(item, EdgeRecord):
                node, through = item.node, item.through
            else:
                node = item
            values = {f: getattr(through, f, None) for f in edge_fields} if through is not None else {}
            edges.append(edge_cls(node=node, cursor=encode_cursor(state.offset + i), **values))
        out = conn.cls(edges=edges, total=len(edges))
        out._modelql_state = state
        return out

    def connection(self, entity: EntityDescriptor, assoc: AssociationDescriptor) -> GeneratedType:
        base = f"{entity.name}{upper_first(camel_case(assoc.name))}"
        edge = self.registry.resolve(
            (f"{entity.name}.{assoc.name}", Variant.EDGE), f"{base}Edge",
            lambda g: self._populate_edge(assoc, g),
        )
        conn = self.registry.resolve(
            (f"{entity.name}.{assoc.name}", Variant.CONNECTION), f"{base}Connection",
            lambda g: self._populate_connection(assoc, edge, g),
            description=f"Paginated {assoc.target} records of {entity.name}.{assoc.name}",
        )
        conn.meta['edge'] = edge
        conn.meta.setdefault('edge_fields', self._edge_field_names(assoc))
        return conn

    def _edge_field_names(self, assoc: AssociationDescriptor) -> List[str]:
        if not assoc.is_through:
            return []
        through = self.generator.entities[assoc.through]
        keys = {assoc.foreign_key, assoc.target_key}
        return [
            f.name for f in through.fields
            if f.name not in keys and not f.primary_key and not f.timestamp
        ]

    def _populate_edge(self, assoc: AssociationDescriptor, gen: GeneratedType) -> None:
        target = self.generator.output(assoc.target)
        gen.add_field('node', Optional[target.cls], strawberry.field(default=None))
        gen.add_field('cursor', Optional[str], strawberry.field(default=None))
        if assoc.is_through:
            through = self.generator.entities[assoc.through]
            for name in self._edge_field_names(assoc):
                f = through.field(name)
                gen.add_field(name, self.generator.scalar_annotation(f, optional=True), strawberry.field(default=None, description=f.description))

    def _populate_connection(self, assoc: AssociationDescriptor, edge: GeneratedType, gen: GeneratedType) -> None:
        target_entity = self.generator.entities[assoc.target]
        gen.add_field('edges', List[edge.cls], strawberry.field(default_factory=list))
        gen.add_field('total', int, strawberry.field(default=0, description="Number of returned edges"))

        async def count_impl(source: Any, info: Any, args: Dict[str, Any]) -> int:
            return await self._count(source, assoc, target_entity, info)

        async def page_info_impl(source: Any, info: Any, args: Dict[str, Any]) -> Any:
            state = source._modelql_state
            count = await self._count(source, assoc, target_entity, info)
            edges = source.edges
            return self.generator.page_info().cls(
                has_next_page=state.offset + len(edges) < count,
                has_previous_page=state.offset > 0,
                start_cursor=edges[0].cursor if edges else None,
                end_cursor=edges[-1].cursor if edges else None,
            )

        count_fn = build_resolver(f"_count_{gen.name}", {}, count_impl, int)
        page_fn = build_resolver(f"_page_info_{gen.name}", {}, page_info_impl, self.generator.page_info().cls)
        gen.add_field('count', None, strawberry.field(resolver=count_fn, description="Number of matching rows, ignoring pagination"))
        gen.add_field('page_info', None, strawberry.field(resolver=page_fn))

    async def _count(self, conn: Any, assoc: AssociationDescriptor, target_entity: EntityDescriptor, info: Any) -> int:
        state = conn._modelql_state
        try:
            return await self.storage.count_associated(
                state.record, assoc, state.where, context=info.context, paranoid=state.paranoid, target_entity=target_entity,
            )
        except StorageError as exc:
            raise self.generator.classifier.classify(exc)

    # ---------- input side ----------
    def input_field(self, entity: EntityDescriptor, assoc: AssociationDescriptor, gen: GeneratedType) -> None:
        """Nested write payload field; carries argument metadata, never a resolver."""
        if assoc.is_through:
            payload = self.generator.connection_input(assoc.through)
            annotation = Optional[List[payload.cls]]
        else:
            payload = self.generator.update_input(assoc.target)
            annotation = Optional[List[payload.cls]] if assoc.is_list else Optional[payload.cls]
        gen.add_field(assoc.name, annotation, strawberry.field(default=UNSET, description=f"Nested {assoc.target} payload"))
        arguments = list(list_arguments()) if assoc.is_list else ['where']
        if assoc.is_through:
            arguments += list(edge_arguments())
        gen.meta.setdefault('associations', {})[assoc.name] = {'association': assoc, 'arguments': arguments}


def connection_input_name(through: str) -> str:
    return type_name(through, is_input=True, is_assoc=True)
