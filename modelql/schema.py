from __future__ import annotations
import logging
import warnings
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import strawberry
from strawberry.schema.config import StrawberryConfig
from strawberry.schema.name_converter import NameConverter

from .config import ModelQLOptions
from .core.descriptors import EntityDescriptor, OperationKind
from .core.naming import operation_name, upper_first
from .core.utils import call_hook, input_to_dict
from .generator import EntityTypeGenerator
from .mutations import MutationExecutor
from .pubsub import ChangeBus, MutationKind, SubscriptionResolver, payload_fields
from .registry import GeneratedType, TypeRegistry, Variant
from .resolvers import QueryResolver, WHERE_ARG, build_resolver, build_where, list_arguments, paranoid_argument
from .shapes import ShapeCompiler
from .storage.base import StorageAdapter

_logger = logging.getLogger("modelql")

# GraphOptions.alias keys -> default field suffix
ROOT_SUFFIXES = {
    'fetch': 'Get',
    'count': 'Count',
    'create': 'Add',
    'update': 'Edit',
    'destroy': 'Delete',
    'create_bulk': 'AddBulk',
    'update_bulk': 'EditBulk',
    'subscribe': 'Subs',
}


class _IdentityNameConverter(NameConverter):
    """snake_case names kept as written, leading underscores preserved."""

    def __init__(self) -> None:
        super().__init__(auto_camel_case=False)

    def apply_naming_config(self, name: str) -> str:  # type: ignore[override]
        return name


def default_strawberry_config() -> StrawberryConfig:
    return StrawberryConfig(name_converter=_IdentityNameConverter(), auto_camel_case=False)  # type: ignore[arg-type]


class RootTypeAssembler:
    """Collects Query/Mutation/Subscription fields for every exposed entity."""

    def __init__(
        self,
        generator: EntityTypeGenerator,
        shapes: ShapeCompiler,
        executor: MutationExecutor,
        bus: ChangeBus,
        options: ModelQLOptions,
    ):
        self.generator = generator
        self.shapes = shapes
        self.executor = executor
        self.bus = bus
        self.options = options
        self.query: Dict[str, Any] = {}
        self.mutation: Dict[str, Any] = {}
        self.subscription: Dict[str, Any] = {}

    # ---------- helpers ----------
    def root_name(self, entity: EntityDescriptor, key: str) -> str:
        return operation_name(entity.name, ROOT_SUFFIXES[key], entity.options.alias.get(key))

    def extra_arguments(self) -> Dict[str, Any]:
        out = {}
        for name, token in (self.options.include_arguments or {}).items():
            out[name] = Optional[self.shapes.annotation(token, inputs=True)]
        return out

    def _add(self, bucket: Dict[str, Any], name: str, field: Any) -> None:
        if name in bucket:
            _logger.warning("modelql: root field %s declared twice, keeping the first one", name)
            return
        bucket[name] = field

    # ---------- per entity ----------
    def add_entity(self, entity: EntityDescriptor) -> None:
        output = self.generator.output(entity.name)
        opts = entity.options
        events: Dict[str, MutationKind] = {}
        if 'fetch' not in opts.exclude_queries:
            self._fetch_field(entity, output)
        if 'count' not in opts.exclude_queries:
            self._count_field(entity)
        if 'create' not in opts.exclude_mutations:
            name = self._create_field(entity, output)
            events[name] = MutationKind.CREATED
        if 'update' not in opts.exclude_mutations:
            name = self._update_field(entity, output)
            events[name] = MutationKind.UPDATED
        if 'destroy' not in opts.exclude_mutations:
            name = self._destroy_field(entity)
            events[name] = MutationKind.DELETED
        if opts.bulk_option('create') and 'create_bulk' not in opts.exclude_mutations:
            name = self._bulk_create_field(entity, output)
            events[name] = MutationKind.BULK_CREATED
        if opts.bulk_option('edit') and 'update_bulk' not in opts.exclude_mutations:
            name = self._bulk_update_field(entity, output)
            events[name] = MutationKind.UPDATED
        if 'subscribe' not in opts.exclude_subscriptions and events:
            self._subscription_field(entity, output, events)
        for name, spec in (opts.queries or {}).items():
            self.custom_field(self.query, name, spec, kind='query')
        for name, spec in (opts.mutations or {}).items():
            self.custom_field(self.mutation, name, spec, kind='mutation')
        for name, spec in (opts.subscriptions or {}).items():
            self.custom_field(self.subscription, name, spec, kind='subscription')

    def _pk_argument(self, entity: EntityDescriptor, *, required: bool) -> Dict[str, Any]:
        f = entity.field(entity.primary_key)
        if f is None:
            return {}
        return {f.name: self.generator.scalar_annotation(f, optional=not required)}

    def _fetch_field(self, entity: EntityDescriptor, output: GeneratedType) -> None:
        name = self.root_name(entity, 'fetch')
        resolver = QueryResolver(entity, self.generator.storage, self.options)
        args = self._pk_argument(entity, required=False)
        args.update(list_arguments())
        if entity.paranoid:
            args.update(paranoid_argument())
        args.update(self.extra_arguments())

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            return await resolver.fetch(source, input_to_dict(raw), info)

        fn = build_resolver(f"_root_{name}", args, impl, List[output.cls])
        self._add(self.query, name, strawberry.field(resolver=fn, description=f"Fetch {entity.plural}"))

    def _count_field(self, entity: EntityDescriptor) -> None:
        name = self.root_name(entity, 'count')
        resolver = QueryResolver(entity, self.generator.storage, self.options)
        args: Dict[str, Any] = {'where': WHERE_ARG}
        if entity.paranoid:
            args.update(paranoid_argument())
        args.update(self.extra_arguments())

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> int:
            return await resolver.count(source, input_to_dict(raw), info)

        fn = build_resolver(f"_root_{name}", args, impl, int)
        self._add(self.query, name, strawberry.field(resolver=fn, description=f"Count {entity.plural}"))

    def _write_arguments(self, *, replace: bool = True) -> Dict[str, Any]:
        args: Dict[str, Any] = {}
        if replace:
            args['set'] = Optional[bool]
        args['transaction'] = Optional[bool]
        args.update(self.extra_arguments())
        return args

    def _create_field(self, entity: EntityDescriptor, output: GeneratedType) -> str:
        name = self.root_name(entity, 'create')
        args: Dict[str, Any] = {entity.name: self.generator.update_input(entity.name).cls}
        args.update(self._write_arguments())

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            args = input_to_dict(raw)
            return await self.executor.execute(
                entity.name, OperationKind.CREATE, args.get(entity.name) or {}, None,
                source=source, args=args, info=info, mutation_name=name,
                replace=bool(args.get('set')), use_transaction=bool(args.get('transaction')),
            )

        fn = build_resolver(f"_root_{name}", args, impl, Optional[output.cls])
        self._add(self.mutation, name, strawberry.mutation(resolver=fn, description=f"Create a {entity.singular}"))
        return name

    def _update_field(self, entity: EntityDescriptor, output: GeneratedType) -> str:
        name = self.root_name(entity, 'update')
        args = self._pk_argument(entity, required=True)
        args['where'] = WHERE_ARG
        args[entity.name] = self.generator.update_input(entity.name).cls
        args.update(self._write_arguments())

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            args = input_to_dict(raw)
            return await self.executor.execute(
                entity.name, OperationKind.UPDATE, args.get(entity.name) or {}, self._where(entity, args, info),
                source=source, args=args, info=info, mutation_name=name,
                replace=bool(args.get('set')), use_transaction=bool(args.get('transaction')),
            )

        fn = build_resolver(f"_root_{name}", args, impl, Optional[output.cls])
        self._add(self.mutation, name, strawberry.mutation(resolver=fn, description=f"Update a {entity.singular}"))
        return name

    def _destroy_field(self, entity: EntityDescriptor) -> str:
        name = self.root_name(entity, 'destroy')
        args = self._pk_argument(entity, required=True)
        args['where'] = WHERE_ARG
        args.update(self._write_arguments(replace=False))

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> int:
            args = input_to_dict(raw)
            return await self.executor.execute(
                entity.name, OperationKind.DESTROY, None, self._where(entity, args, info),
                source=source, args=args, info=info, mutation_name=name,
                use_transaction=bool(args.get('transaction')),
            )

        fn = build_resolver(f"_root_{name}", args, impl, int)
        self._add(self.mutation, name, strawberry.mutation(resolver=fn, description=f"Delete {entity.plural}; returns the affected row count"))
        return name

    def _bulk_create_field(self, entity: EntityDescriptor, output: GeneratedType) -> str:
        name = self.root_name(entity, 'create_bulk')
        bulk = entity.options.bulk_option('create')
        args: Dict[str, Any] = {entity.name: List[self.generator.create_input(entity.name).cls]}
        args.update(self._write_arguments(replace=False))

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            args = input_to_dict(raw)
            return await self.executor.execute(
                entity.name, OperationKind.CREATE, args.get(entity.name) or [], None,
                source=source, args=args, info=info, mutation_name=name,
                is_bulk=bulk, use_transaction=bool(args.get('transaction')),
            )

        returns = List[output.cls] if isinstance(bulk, str) else int
        fn = build_resolver(f"_root_{name}", args, impl, returns)
        self._add(self.mutation, name, strawberry.mutation(resolver=fn, description=f"Create many {entity.plural}"))
        return name

    def _bulk_update_field(self, entity: EntityDescriptor, output: GeneratedType) -> str:
        name = self.root_name(entity, 'update_bulk')
        args: Dict[str, Any] = {entity.name: List[self.generator.update_input(entity.name).cls]}
        args.update(self._write_arguments())

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            args = input_to_dict(raw)
            return await self.executor.execute(
                entity.name, OperationKind.UPDATE, args.get(entity.name) or [], None,
                source=source, args=args, info=info, mutation_name=name,
                is_bulk=True, replace=bool(args.get('set')), use_transaction=bool(args.get('transaction')),
            )

        fn = build_resolver(f"_root_{name}", args, impl, List[output.cls])
        self._add(self.mutation, name, strawberry.mutation(resolver=fn, description=f"Update many {entity.plural}"))
        return name

    def _where(self, entity: EntityDescriptor, args: Dict[str, Any], info: Any) -> Dict[str, Any]:
        where = build_where(args.get('where'), info)
        pk = entity.primary_key
        if args.get(pk) is not None:
            where[pk] = args[pk]
        return where

    def subscription_payload(self, entity: EntityDescriptor, output: GeneratedType, name: str) -> GeneratedType:
        def populate(gen: GeneratedType) -> None:
            for field_name, annotation in payload_fields().items():
                gen.add_field(field_name, annotation, strawberry.field(default=None))
            gen.add_field('node', Optional[output.cls], strawberry.field(default=None))
            gen.add_field('nodes', Optional[List[output.cls]], strawberry.field(default=None))

        return self.generator.registry.resolve(
            (entity.name, Variant.PAYLOAD), f"{upper_first(name)}Output", populate,
            description=f"Change event of {entity.name}",
        )

    def _subscription_field(self, entity: EntityDescriptor, output: GeneratedType, events: Dict[str, MutationKind]) -> None:
        name = self.root_name(entity, 'subscribe')
        payload = self.subscription_payload(entity, output, name)
        resolver = SubscriptionResolver(entity, self.bus, self.options, events, payload)
        args: Dict[str, Any] = {'mutation': Optional[List[MutationKind]]}
        args.update(self.extra_arguments())

        def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            return resolver.stream(source, info, dict(raw))

        fn = build_resolver(f"_root_{name}", args, impl, payload.cls, generator=True)
        self._add(self.subscription, name, strawberry.subscription(resolver=fn, description=f"Changes of {entity.plural}"))

    # ---------- custom declared fields ----------
    def custom_field(self, bucket: Dict[str, Any], name: str, spec: Mapping[str, Any], *, kind: str) -> None:
        """Declared root field: ``{input, output, resolver[, subscriber], description}``.

        ``input`` is a token (single ``input`` argument) or a mapping of
        argument name -> token. The resolver receives
        ``(source, args, context, info)``; subscriptions iterate
        ``subscriber(source, args, context, info)`` and pass each item through
        ``resolver(item, args, context, info)`` when one is given.
        """
        declared = spec.get('input')
        if isinstance(declared, str):
            declared = {'input': declared}
        args = {arg: self.shapes.annotation(token, inputs=True) for arg, token in (declared or {}).items()}
        args.update(self.extra_arguments())
        returns = self.shapes.annotation(spec.get('output') or 'string')
        user_resolver: Optional[Callable[..., Any]] = spec.get('resolver')
        description = spec.get('description')
        options = self.options

        if kind == 'subscription':
            subscriber = spec.get('subscriber')
            if subscriber is None:
                raise TypeError(f"Custom subscription {name} needs a 'subscriber'")

            async def stream(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
                args = input_to_dict(raw)
                await call_hook(options.authorizer, source, args, info.context, info)
                async for item in subscriber(source, args, info.context, info):
                    if user_resolver is not None:
                        item = await call_hook(user_resolver, item, args, info.context, info)
                    yield item

            fn = build_resolver(f"_custom_{name}", args, stream, returns, generator=True)
            self._add(bucket, name, strawberry.subscription(resolver=fn, description=description))
            return
        if user_resolver is None:
            raise TypeError(f"Custom {kind} {name} needs a 'resolver'")

        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> Any:
            args = input_to_dict(raw)
            await call_hook(options.authorizer, source, args, info.context, info)
            result = await call_hook(user_resolver, source, args, info.context, info)
            if kind == 'mutation':
                await call_hook(options.logger, result, source, args, info.context, info)
            return result

        fn = build_resolver(f"_custom_{name}", args, impl, returns)
        decorator = strawberry.mutation if kind == 'mutation' else strawberry.field
        self._add(bucket, name, decorator(resolver=fn, description=description))

    def ping_field(self) -> None:
        async def impl(source: Any, info: Any, raw: Dict[str, Any]) -> str:
            return 'pong'

        fn = build_resolver('_root_ping', {}, impl, Optional[str])
        self.query['ping'] = strawberry.field(resolver=fn, name='_ping', description="Liveness probe")

    def root_class(self, name: str, fields: Dict[str, Any]) -> Any:
        if not fields:
            return None
        cls = type(name, (), {'__module__': __name__, '__doc__': f'ModelQL {name} root'})
        cls.__annotations__ = {}
        for field_name, field in fields.items():
            setattr(cls, field_name, field)
        return strawberry.type(cls)


class ModelQL:
    """Schema synthesis entry point.

    Usage:
        modelql = ModelQL.from_models([Author, Post, Comment])
        schema = modelql.build()
        await schema.execute(query, context_value={'db_session': session})

    Descriptors may also be passed directly together with any
    :class:`StorageAdapter`.
    """

    def __init__(
        self,
        entities: Union[Mapping[str, EntityDescriptor], Iterable[EntityDescriptor]],
        storage: StorageAdapter,
        options: Optional[ModelQLOptions] = None,
        *,
        types: Optional[Mapping[str, Any]] = None,
    ):
        if isinstance(entities, Mapping):
            self.entities: Dict[str, EntityDescriptor] = dict(entities)
        else:
            self.entities = {e.name: e for e in entities}
        self.storage = storage
        self.options = options or ModelQLOptions()
        self.types = dict(types or {})
        self.bus: Optional[ChangeBus] = None
        self.registry: Optional[TypeRegistry] = None
        self.executor: Optional[MutationExecutor] = None
        self.generator: Optional[EntityTypeGenerator] = None

    @classmethod
    def from_models(cls, models: Iterable[Any], options: Optional[ModelQLOptions] = None, **kwargs: Any) -> 'ModelQL':
        from .storage.sqla import SQLAlchemyStorage, descriptors_from_models
        models = list(models)
        return cls(descriptors_from_models(models), SQLAlchemyStorage(models), options, **kwargs)

    def build(self) -> strawberry.Schema:
        """Generate every type and root field; returns a fresh Strawberry schema."""
        registry = TypeRegistry()
        bus = ChangeBus()
        generator = EntityTypeGenerator(self.entities, registry, self.storage, self.options)
        shapes = ShapeCompiler(registry, self.options)
        generator.shapes = shapes
        shapes.register(self.types)
        for entity in generator.entities.values():
            shapes.register(entity.options.types)
        exposed = [n for n in generator.entities if n not in set(self.options.exclude)]
        generator.build(exposed)

        executor = MutationExecutor(generator.entities, self.storage, self.options, bus)
        assembler = RootTypeAssembler(generator, shapes, executor, bus, self.options)
        assembler.ping_field()
        for name in exposed:
            assembler.add_entity(generator.entities[name])
        registry.finalize()

        query = assembler.root_class('Query', assembler.query)
        mutation = assembler.root_class('Mutation', assembler.mutation)
        subscription = assembler.root_class('Subscription', assembler.subscription)

        config = self.options.strawberry_config or default_strawberry_config()
        # Types are rebuilt per call; the same names may be seen more than once
        setattr(config, "_unsafe_disable_same_type_validation", True)
        self.bus, self.registry, self.executor, self.generator = bus, registry, executor, generator
        _logger.debug("modelql: built schema with %d generated types for %d entities", len(registry), len(exposed))
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=DeprecationWarning, message=r"LazyType is deprecated.*")
            return strawberry.Schema(query=query, mutation=mutation, subscription=subscription, config=config)


def build_schema(
    entities: Union[Mapping[str, EntityDescriptor], Iterable[EntityDescriptor]],
    storage: StorageAdapter,
    options: Optional[ModelQLOptions] = None,
    **kwargs: Any,
) -> strawberry.Schema:
    return ModelQL(entities, storage, options, **kwargs).build()
