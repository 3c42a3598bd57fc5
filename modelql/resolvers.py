from __future__ import annotations
import base64
import logging
from typing import Annotated, Any, AsyncGenerator, Callable, Dict, List, Mapping, Optional, Tuple, Union, get_args, get_origin

import strawberry
from strawberry.scalars import JSON
from strawberry.types import Info as StrawberryInfo

from .config import ModelQLOptions
from .core.descriptors import FETCH, EntityDescriptor
from .core.filters import asks_for_deleted, parse_order, parse_where, substitute_where_vars
from .core.utils import call_hook, get_path, variable_values
from .errors import StorageError, ValidationError
from .storage.base import FindOptions, StorageAdapter

_logger = logging.getLogger("modelql")

_ARG_DESC_WHERE = "Filter object, e.g. {title: {like: 'A%'}, and: [...]} (JSON value or JSON string)"
_ARG_DESC_ORDER = "Comma separated columns; prefix a column with 'reverse:' for descending order"
_ARG_DESC_WHERE_EDGES = "Filter on columns of the through entity"
_ARG_DESC_ORDER_EDGES = "Order by columns of the through entity"
_ARG_DESC_PARANOID = "Set to false to include soft-deleted rows"

WHERE_ARG = Annotated[Optional[JSON], strawberry.argument(description=_ARG_DESC_WHERE)]
ORDER_ARG = Annotated[Optional[str], strawberry.argument(description=_ARG_DESC_ORDER)]

CURSOR_PREFIX = 'modelql:'


def list_arguments() -> Dict[str, Any]:
    """Filter and pagination arguments shared by root lists and connections."""
    return {
        'where': WHERE_ARG,
        'limit': Optional[int],
        'offset': Optional[int],
        'order': ORDER_ARG,
        'first': Optional[int],
        'after': Optional[str],
        'last': Optional[int],
        'before': Optional[str],
    }


def edge_arguments() -> Dict[str, Any]:
    return {
        'where_edges': Annotated[Optional[JSON], strawberry.argument(description=_ARG_DESC_WHERE_EDGES)],
        'order_edges': Annotated[Optional[str], strawberry.argument(description=_ARG_DESC_ORDER_EDGES)],
    }


def paranoid_argument() -> Dict[str, Any]:
    return {'paranoid': Annotated[Optional[bool], strawberry.argument(description=_ARG_DESC_PARANOID)]}


def _is_required(annotation: Any) -> bool:
    inner = annotation
    if get_origin(inner) is Annotated:
        inner = get_args(inner)[0]
    if get_origin(inner) is Union and type(None) in get_args(inner):
        return False
    return True


def build_resolver(
    fn_name: str,
    arguments: Mapping[str, Any],
    impl: Callable[..., Any],
    returns: Any,
    *,
    generator: bool = False,
) -> Callable[..., Any]:
    """Generate ``async def fn(self, info, <arguments>)`` forwarding to ``impl``.

    ``impl`` receives ``(source, info, args_dict)``. Strawberry reads the
    argument list from the generated signature and annotations. With
    ``generator`` the function is an async generator re-yielding ``impl``.
    """
    required = [a for a, t in arguments.items() if _is_required(t)]
    optional = [a for a in arguments if a not in required]
    params = ', '.join(['self', 'info'] + required + [f"{a}=None" for a in optional])
    collect = ', '.join(f"'{a}': {a}" for a in arguments)
    src = f"async def {fn_name}({params}):\n"
    if generator:
        src += f"    async for _item in _impl(self, info, {{{collect}}}):\n"
        src += "        yield _item\n"
    else:
        src += f"    return await _impl(self, info, {{{collect}}})\n"
    env: Dict[str, Any] = {'_impl': impl}
    exec(src, env)
    fn = env[fn_name]
    fn.__module__ = __name__
    ann: Dict[str, Any] = {'info': StrawberryInfo}
    ann.update(arguments)
    ann['return'] = AsyncGenerator[returns, None] if generator else returns
    fn.__annotations__ = ann
    return fn


def encode_cursor(index: int) -> str:
    return base64.b64encode(f"{CURSOR_PREFIX}{index}".encode()).decode()


def decode_cursor(cursor: str) -> int:
    try:
        raw = base64.b64decode(cursor.encode()).decode()
        if not raw.startswith(CURSOR_PREFIX):
            raise ValueError(cursor)
        return int(raw[len(CURSOR_PREFIX):])
    except ValueError as exc:
        raise ValidationError(f"Invalid cursor: {cursor!r}") from exc


def needs_total(args: Mapping[str, Any]) -> bool:
    return args.get('last') is not None and args.get('before') is None and args.get('limit') is None


def page_window(args: Mapping[str, Any], total: Optional[int] = None) -> Tuple[int, Optional[int]]:
    """Fold limit/offset and first/after/last/before into ``(offset, limit)``."""
    start = args.get('offset') or 0
    limit = args.get('limit')
    end = None if limit is None else start + limit
    if args.get('after') is not None:
        start = max(start, decode_cursor(args['after']) + 1)
    if args.get('before') is not None:
        b = decode_cursor(args['before'])
        end = b if end is None else min(end, b)
    if args.get('first') is not None:
        f = start + max(args['first'], 0)
        end = f if end is None else min(end, f)
    if args.get('last') is not None:
        if end is None:
            end = total
        if end is not None:
            start = max(start, end - max(args['last'], 0))
    if end is None:
        return start, None
    return start, max(end - start, 0)


def resolve_scope(scopes: Any, args: Mapping[str, Any]) -> Optional[Tuple[str, Tuple[Any, ...]]]:
    """``'name'`` or ``(name, argument_path, default)`` -> ``(name, args)``."""
    if not scopes:
        return None
    if isinstance(scopes, str):
        return scopes, ()
    name, *rest = list(scopes)
    if not rest:
        return name, ()
    path = rest[0]
    default = rest[1] if len(rest) > 1 else None
    return name, (get_path(args, path, default),)


def build_where(raw: Any, info: Any) -> Dict[str, Any]:
    try:
        where = parse_where(raw) or {}
    except ValueError as exc:
        raise ValidationError(f"Invalid where: {exc}") from exc
    return substitute_where_vars(where, variable_values(info))


class QueryResolver:
    """Top-level reads of one entity.

    Authorization runs once per root call; association fields resolved under
    the returned records never call the authorizer again.
    """

    def __init__(self, entity: EntityDescriptor, storage: StorageAdapter, options: ModelQLOptions):
        self.entity = entity
        self.storage = storage
        self.options = options
        self.classifier = options.classifier()

    def visible_deleted(self, args: Mapping[str, Any], where: Mapping[str, Any]) -> bool:
        if not self.entity.paranoid:
            return False
        return args.get('paranoid') is False or asks_for_deleted(where, self.entity.deleted_at_field)

    def find_options(self, args: Mapping[str, Any], where: Dict[str, Any], total: Optional[int] = None) -> FindOptions:
        offset, limit = page_window(args, total)
        return FindOptions(
            where=where or None,
            order=parse_order(args.get('order')),
            limit=limit,
            offset=offset or None,
            paranoid=not self.visible_deleted(args, where),
            scope=resolve_scope(self.entity.options.scopes, args),
        )

    async def fetch(self, source: Any, args: Dict[str, Any], info: Any) -> List[Any]:
        ctx = info.context
        await call_hook(self.options.authorizer, source, args, ctx, info)
        hooks = self.entity.options
        if FETCH in hooks.overwrite:
            return await call_hook(hooks.overwrite[FETCH], source, args, ctx, info)
        where = build_where(args.get('where'), info)
        pk = self.entity.primary_key
        if args.get(pk) is not None:
            where[pk] = args[pk]
        if FETCH in hooks.before:
            await call_hook(hooks.before[FETCH], source, args, ctx, info, where)
        try:
            total = None
            if needs_total(args):
                total = await self.storage.count(
                    self.entity,
                    where or None,
                    context=ctx,
                    paranoid=not self.visible_deleted(args, where),
                    scope=resolve_scope(self.entity.options.scopes, args),
                )
            rows = await self.storage.find(self.entity, self.find_options(args, where, total), context=ctx)
        except StorageError as exc:
            raise self.classifier.classify(exc)
        _logger.debug("modelql: %s fetch returned %d rows", self.entity.name, len(rows))
        if FETCH in hooks.extend:
            return await call_hook(hooks.extend[FETCH], rows, source, args, ctx, info)
        return rows

    async def count(self, source: Any, args: Dict[str, Any], info: Any) -> int:
        ctx = info.context
        await call_hook(self.options.authorizer, source, args, ctx, info)
        where = build_where(args.get('where'), info)
        try:
            return await self.storage.count(
                self.entity,
                where or None,
                context=ctx,
                paranoid=not self.visible_deleted(args, where),
                scope=resolve_scope(self.entity.options.scopes, args),
            )
        except StorageError as exc:
            raise self.classifier.classify(exc)
