"""SQLAlchemy (asyncio) implementation of the storage contract.

Records are ORM instances. The ``AsyncSession`` is read from the request
context (``db_session`` key) like every other resolver of the project; use
``expire_on_commit=False`` sessions since writes outside a transaction are
committed immediately.
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, inspect as sa_inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import MANYTOONE, ONETOMANY
from sqlalchemy.sql.sqltypes import JSON, Boolean, Date, DateTime, Enum as SAEnum, Float, Integer, Numeric, String

from ..core.descriptors import (
    TIMESTAMP_FIELDS,
    AssociationDescriptor,
    EntityDescriptor,
    FieldDescriptor,
    GraphOptions,
    RelationKind,
)
from ..core.filters import ASC, expr_from_where
from ..core.utils import coerce_where_value, get_db_session
from ..errors import StorageError, ValidationError
from .base import EdgeRecord, FindOptions, StorageAdapter

_logger = logging.getLogger("modelql")


@contextmanager
def _storage_errors():
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(str(exc)) from exc


def _columns(model_cls: Any) -> Dict[str, Any]:
    """Attribute name -> Column for a mapped class."""
    mapper = sa_inspect(model_cls)
    return {prop.key: prop.columns[0] for prop in mapper.column_attrs}


def _pk_attr(model_cls: Any) -> str:
    mapper = sa_inspect(model_cls)
    return mapper.get_property_by_column(mapper.primary_key[0]).key


def _attr_for_column(model_cls: Any, column: Any) -> str:
    return sa_inspect(model_cls).get_property_by_column(column).key


class SQLAlchemyStorage(StorageAdapter):
    name = 'sqlalchemy'

    def __init__(self, models: Iterable[Any]):
        self.models: Dict[str, Any] = {m.__name__: m for m in models}

    # ---------- helpers ----------
    def model(self, entity: Any) -> Any:
        name = entity if isinstance(entity, str) else entity.name
        try:
            return self.models[name]
        except KeyError:
            raise StorageError(f"No mapped class registered for entity '{name}'") from None

    def _session(self, context: Any):
        session = get_db_session(context)
        if session is None:
            raise StorageError("No db_session in context")
        return session

    def _where_expr(self, model_cls: Any, where: Optional[Dict[str, Any]]):
        try:
            return expr_from_where(_columns(model_cls), where, coerce_where_value)
        except (ValueError, IndexError, TypeError) as exc:
            raise ValidationError(f"Invalid filter for {model_cls.__name__}: {exc}") from exc

    def _order_by(self, model_cls: Any, order: Sequence[Tuple[str, str]]) -> List[Any]:
        cols = _columns(model_cls)
        out = []
        for name, direction in order or []:
            col = cols.get(name)
            if col is None:
                raise ValidationError(f"Unknown order column '{name}' for {model_cls.__name__}")
            out.append(col.asc() if direction == ASC else col.desc())
        return out

    def _filters(self, entity: Optional[EntityDescriptor], model_cls: Any, where: Optional[Dict[str, Any]], *, paranoid: bool = True, scope: Optional[Tuple[str, Tuple[Any, ...]]] = None) -> List[Any]:
        clauses: List[Any] = []
        expr = self._where_expr(model_cls, where)
        if expr is not None:
            clauses.append(expr)
        if paranoid and entity is not None and entity.paranoid and entity.deleted_at_field:
            clauses.append(_columns(model_cls)[entity.deleted_at_field].is_(None))
        if scope is not None:
            scope_name, scope_args = scope
            scopes = getattr(model_cls, '__scopes__', None) or {}
            if scope_name not in scopes:
                raise ValidationError(f"Unknown scope '{scope_name}' for {model_cls.__name__}")
            sval = scopes[scope_name](*scope_args)
            if isinstance(sval, dict):
                sval = self._where_expr(model_cls, sval)
            if sval is not None:
                clauses.append(sval)
        return clauses

    async def _finish(self, session: Any, transaction: Any, *objs: Any) -> None:
        """Flush; outside a transaction also commit, then reload ``objs``."""
        try:
            await session.flush()
            if transaction is None:
                await session.commit()
            for obj in objs:
                await session.refresh(obj)
        except SQLAlchemyError as exc:
            if transaction is None:
                await session.rollback()
            raise StorageError(str(exc)) from exc

    def _values(self, model_cls: Any, values: Dict[str, Any]) -> Dict[str, Any]:
        cols = _columns(model_cls)
        out = {}
        for k, v in (values or {}).items():
            if k in cols:
                out[k] = v
            else:
                _logger.debug("modelql: dropping non-column key '%s' for %s", k, model_cls.__name__)
        return out

    # ---------- entity primitives ----------
    async def find(self, entity, options, *, context, transaction=None):
        session = self._session(context)
        model_cls = self.model(entity)
        stmt = select(model_cls)
        for clause in self._filters(entity, model_cls, options.where, paranoid=options.paranoid, scope=options.scope):
            stmt = stmt.where(clause)
        for ob in self._order_by(model_cls, options.order):
            stmt = stmt.order_by(ob)
        if options.offset:
            stmt = stmt.offset(options.offset)
        if options.limit is not None:
            stmt = stmt.limit(options.limit)
        with _storage_errors():
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def find_one(self, entity, where, *, context, transaction=None):
        if not where:
            return None
        rows = await self.find(entity, FindOptions(where=dict(where), limit=1), context=context, transaction=transaction)
        return rows[0] if rows else None

    async def count(self, entity, where, *, context, paranoid=True, scope=None):
        session = self._session(context)
        model_cls = self.model(entity)
        stmt = select(func.count()).select_from(model_cls)
        for clause in self._filters(entity, model_cls, where, paranoid=paranoid, scope=scope):
            stmt = stmt.where(clause)
        with _storage_errors():
            return int((await session.execute(stmt)).scalar() or 0)

    async def create(self, entity, values, *, context, transaction=None):
        session = self._session(context)
        model_cls = self.model(entity)
        obj = model_cls(**self._values(model_cls, values))
        session.add(obj)
        await self._finish(session, transaction, obj)
        return obj

    async def bulk_create(self, entity, rows, *, context, transaction=None):
        session = self._session(context)
        model_cls = self.model(entity)
        objs = [model_cls(**self._values(model_cls, row)) for row in rows]
        session.add_all(objs)
        await self._finish(session, transaction, *objs)
        return objs

    async def update(self, entity, values, where, *, context, transaction=None):
        session = self._session(context)
        model_cls = self.model(entity)
        targets = await self.find(entity, FindOptions(where=dict(where or {})), context=context, transaction=transaction)
        clean = self._values(model_cls, values)
        for obj in targets:
            for k, v in clean.items():
                setattr(obj, k, v)
        await self._finish(session, transaction, *targets)
        return len(targets)

    async def destroy(self, entity, where, *, context, transaction=None):
        targets = await self.find(entity, FindOptions(where=dict(where or {})), context=context, transaction=transaction)
        for obj in targets:
            await self._remove(entity, self._session(context), obj)
        await self._finish(self._session(context), transaction)
        return len(targets)

    async def destroy_record(self, entity, record, *, context, transaction=None):
        session = self._session(context)
        await self._remove(entity, session, record)
        await self._finish(session, transaction)
        return 1

    async def _remove(self, entity: EntityDescriptor, session: Any, obj: Any) -> None:
        if entity.paranoid and entity.deleted_at_field:
            setattr(obj, entity.deleted_at_field, datetime.now(timezone.utc).replace(tzinfo=None))
        else:
            await session.delete(obj)

    # ---------- associations ----------
    def _assoc_models(self, association: AssociationDescriptor) -> Tuple[Any, Any, Any]:
        source = self.model(association.source)
        target = self.model(association.target)
        through = self.model(association.through) if association.through else None
        return source, target, through

    def _target_key(self, target_cls: Any, target: Any) -> Any:
        if isinstance(target, target_cls):
            return getattr(target, _pk_attr(target_cls))
        return target

    async def _target_record(self, session: Any, target_cls: Any, target: Any) -> Any:
        if isinstance(target, target_cls):
            return target
        with _storage_errors():
            obj = await session.get(target_cls, target)
        if obj is None:
            raise ValidationError(f"{target_cls.__name__} with key {target!r} not found")
        return obj

    def _assoc_stmt(self, record: Any, association: AssociationDescriptor, options: FindOptions, target_entity: Optional[EntityDescriptor], *, counting: bool = False):
        source_cls, target_cls, through_cls = self._assoc_models(association)
        source_pk = getattr(record, _pk_attr(source_cls))
        tcols = _columns(target_cls)
        if association.kind is RelationKind.TO_MANY_THROUGH:
            thcols = _columns(through_cls)
            if counting:
                stmt = select(func.count()).select_from(target_cls)
            else:
                stmt = select(target_cls, through_cls)
            stmt = stmt.join(through_cls, thcols[association.target_key] == tcols[_pk_attr(target_cls)])
            stmt = stmt.where(thcols[association.foreign_key] == source_pk)
            edge_expr = self._where_expr(through_cls, options.where_edges)
            if edge_expr is not None:
                stmt = stmt.where(edge_expr)
        elif association.kind is RelationKind.TO_ONE_OWNING:
            fk_val = getattr(record, association.foreign_key)
            base = select(func.count()).select_from(target_cls) if counting else select(target_cls)
            stmt = base.where(tcols[_pk_attr(target_cls)] == fk_val)
        else:
            base = select(func.count()).select_from(target_cls) if counting else select(target_cls)
            stmt = base.where(tcols[association.foreign_key] == source_pk)
        for clause in self._filters(target_entity, target_cls, options.where, paranoid=options.paranoid, scope=options.scope):
            stmt = stmt.where(clause)
        if not counting:
            for ob in self._order_by(target_cls, options.order):
                stmt = stmt.order_by(ob)
            if through_cls is not None:
                for ob in self._order_by(through_cls, options.order_edges):
                    stmt = stmt.order_by(ob)
            if options.offset:
                stmt = stmt.offset(options.offset)
            if options.limit is not None:
                stmt = stmt.limit(options.limit)
        return stmt

    async def get_associated(self, record, association, options, *, context, transaction=None, target_entity=None):
        session = self._session(context)
        stmt = self._assoc_stmt(record, association, options, target_entity)
        with _storage_errors():
            res = await session.execute(stmt)
            if association.kind is RelationKind.TO_MANY_THROUGH:
                return [EdgeRecord(node=row[0], through=row[1]) for row in res.all()]
            rows = list(res.scalars().all())
        if association.is_list:
            return rows
        return rows[0] if rows else None

    async def count_associated(self, record, association, where, *, context, paranoid=True, target_entity=None):
        session = self._session(context)
        stmt = self._assoc_stmt(record, association, FindOptions(where=where, paranoid=paranoid), target_entity, counting=True)
        with _storage_errors():
            return int((await session.execute(stmt)).scalar() or 0)

    async def add_associated(self, record, association, target, *, through=None, context, transaction=None):
        session = self._session(context)
        source_cls, target_cls, through_cls = self._assoc_models(association)
        source_pk = getattr(record, _pk_attr(source_cls))
        if association.kind is RelationKind.TO_MANY_THROUGH:
            values = self._values(through_cls, dict(through or {}))
            values[association.foreign_key] = source_pk
            values[association.target_key] = self._target_key(target_cls, target)
            row = through_cls(**values)
            session.add(row)
            await self._finish(session, transaction, row)
            return row
        if association.kind is RelationKind.TO_ONE_OWNING:
            setattr(record, association.foreign_key, self._target_key(target_cls, target))
            await self._finish(session, transaction, record)
            return target
        obj = await self._target_record(session, target_cls, target)
        setattr(obj, association.foreign_key, source_pk)
        await self._finish(session, transaction, obj)
        return obj

    async def set_associated(self, record, association, targets, *, context, transaction=None):
        session = self._session(context)
        source_cls, target_cls, through_cls = self._assoc_models(association)
        source_pk = getattr(record, _pk_attr(source_cls))
        if association.kind is RelationKind.TO_ONE_OWNING:
            target = targets[0] if isinstance(targets, (list, tuple)) and targets else targets
            key = self._target_key(target_cls, target) if target not in (None, []) else None
            setattr(record, association.foreign_key, key)
            await self._finish(session, transaction, record)
            return target
        items = list(targets) if isinstance(targets, (list, tuple)) else ([targets] if targets is not None else [])
        if association.kind is RelationKind.TO_MANY_THROUGH:
            thcols = _columns(through_cls)
            with _storage_errors():
                res = await session.execute(select(through_cls).where(thcols[association.foreign_key] == source_pk))
                for row in res.scalars().all():
                    await session.delete(row)
            await self._finish(session, transaction)
            return [await self.add_associated(record, association, t, context=context, transaction=transaction) for t in items]
        keep = {self._target_key(target_cls, t) for t in items}
        current = await self.get_associated(record, association, FindOptions(paranoid=False), context=context, transaction=transaction)
        for obj in (current if isinstance(current, list) else [current] if current is not None else []):
            if getattr(obj, _pk_attr(target_cls)) not in keep:
                setattr(obj, association.foreign_key, None)
        await self._finish(session, transaction)
        return [await self.add_associated(record, association, t, context=context, transaction=transaction) for t in items]

    @asynccontextmanager
    async def transaction(self, context):
        """Run a unit of work on the request session.

        A session that already holds pending changes gets a SAVEPOINT, so the
        caller's own work is neither committed nor rolled back by ours. An
        open transaction with nothing pending (autobegun by an earlier read)
        is closed first and a fresh one is begun.
        """
        session = self._session(context)
        with _storage_errors():
            if session.in_transaction():
                if session.new or session.dirty or session.deleted:
                    async with session.begin_nested():
                        yield session
                    return
                await session.commit()
            async with session.begin():
                yield session


# ---------- introspection ----------

def _token_for(sqltype: Any) -> str:
    if isinstance(sqltype, Boolean):
        return 'boolean'
    if isinstance(sqltype, Integer):
        return 'int'
    if isinstance(sqltype, (Float, Numeric)):
        return 'float'
    if isinstance(sqltype, (DateTime, Date)):
        return 'date'
    if isinstance(sqltype, JSON):
        return 'json'
    if isinstance(sqltype, String):
        return 'string'
    impl = getattr(sqltype, 'impl', None)
    if impl is not None and impl is not sqltype:
        return _token_for(impl if not isinstance(impl, type) else impl())
    return 'string'


def _secondary_columns(rel, source_table, target_table):
    if rel.synchronize_pairs and rel.secondary_synchronize_pairs:
        return rel.synchronize_pairs[0][1], rel.secondary_synchronize_pairs[0][1]
    source_col = target_col = None
    for col in rel.secondary.columns:
        for fk in col.foreign_keys:
            if fk.column.table is source_table and source_col is None:
                source_col = col
            elif fk.column.table is target_table:
                target_col = col
    return source_col, target_col


def descriptors_from_models(models: Iterable[Any]) -> Dict[str, EntityDescriptor]:
    """Build EntityDescriptors from SQLAlchemy mapped classes.

    Per-class knobs:
        ``__graphql__``: GraphOptions mapping (see :class:`GraphOptions`).
        ``__paranoid__``: soft-delete entity; ``__deleted_at__`` names the
            column (default ``deleted_at``).
        ``__scopes__``: scope name -> callable returning a where dict or a
            SQLAlchemy expression.

    Many-to-many relationships need their ``secondary`` table mapped to a
    class of ``models`` (the through entity).
    """
    models = list(models)
    by_table = {m.__table__: m.__name__ for m in models if getattr(m, '__table__', None) is not None}
    out: Dict[str, EntityDescriptor] = {}
    for model_cls in models:
        mapper = sa_inspect(model_cls)
        pk_cols = list(mapper.primary_key)
        fields: List[FieldDescriptor] = []
        for prop in mapper.column_attrs:
            col = prop.columns[0]
            references = None
            for fk in col.foreign_keys:
                references = by_table.get(fk.column.table)
                break
            python_type = None
            if isinstance(col.type, SAEnum) and isinstance(getattr(col.type, 'enum_class', None), type) and issubclass(col.type.enum_class, PyEnum):
                python_type = col.type.enum_class
            fields.append(FieldDescriptor(
                name=prop.key,
                type_token=_token_for(col.type),
                nullable=bool(col.nullable),
                has_default=col.default is not None or col.server_default is not None,
                autoincrement=bool(col.primary_key and len(pk_cols) == 1 and isinstance(col.type, Integer) and col.autoincrement in (True, 'auto')),
                primary_key=bool(col.primary_key),
                references=references,
                timestamp=prop.key in TIMESTAMP_FIELDS,
                python_type=python_type,
                description=getattr(col, 'comment', None),
            ))
        associations: List[AssociationDescriptor] = []
        for rel in mapper.relationships:
            target_cls = rel.mapper.class_
            target = target_cls.__name__
            if rel.secondary is not None:
                through = by_table.get(rel.secondary)
                if through is None:
                    _logger.warning("modelql: skipping %s.%s, secondary table is not a mapped entity", model_cls.__name__, rel.key)
                    continue
                through_cls = next(m for m in models if m.__name__ == through)
                source_col, target_col = _secondary_columns(rel, model_cls.__table__, target_cls.__table__)
                associations.append(AssociationDescriptor(
                    name=rel.key, source=model_cls.__name__, target=target,
                    kind=RelationKind.TO_MANY_THROUGH, through=through,
                    foreign_key=_attr_for_column(through_cls, source_col),
                    target_key=_attr_for_column(through_cls, target_col),
                ))
            elif rel.direction is MANYTOONE:
                fk_col = next(iter(rel.local_columns))
                associations.append(AssociationDescriptor(
                    name=rel.key, source=model_cls.__name__, target=target,
                    kind=RelationKind.TO_ONE_OWNING, foreign_key=_attr_for_column(model_cls, fk_col),
                ))
            elif rel.direction is ONETOMANY:
                fk_col = rel.synchronize_pairs[0][1]
                associations.append(AssociationDescriptor(
                    name=rel.key, source=model_cls.__name__, target=target,
                    kind=RelationKind.TO_MANY if rel.uselist else RelationKind.TO_ONE,
                    foreign_key=_attr_for_column(target_cls, fk_col),
                ))
        options = GraphOptions.from_dict(getattr(model_cls, '__graphql__', None))
        paranoid = bool(options.paranoid if options.paranoid is not None else getattr(model_cls, '__paranoid__', False))
        description = model_cls.__doc__ or getattr(getattr(model_cls, '__table__', None), 'comment', None)
        out[model_cls.__name__] = EntityDescriptor(
            name=model_cls.__name__,
            fields=fields,
            associations=associations,
            options=options,
            paranoid=paranoid,
            deleted_at_field=getattr(model_cls, '__deleted_at__', 'deleted_at') if paranoid else None,
            description=description.strip() if isinstance(description, str) else None,
        )
    return out
