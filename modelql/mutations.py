"""Recursive, association-aware writes.

``MutationExecutor.execute`` is the single entry point used by every
generated mutation field. It authorizes, validates nested payloads, opens a
storage transaction when asked to, writes the entity and its nested
associations in payload order, runs the ``before``/``extend``/``overwrite``
hooks, publishes one :class:`ChangeEvent` and finally calls the logger.
"""
from __future__ import annotations
import logging
import uuid
from collections.abc import Mapping
from contextlib import asynccontextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .config import ModelQLOptions
from .core.descriptors import AssociationDescriptor, EntityDescriptor, OperationKind
from .core.utils import UNSET, attach_prefetched, call_hook
from .errors import StorageError, ValidationError, warn_once
from .pubsub import ChangeBus, ChangeEvent, MutationKind
from .storage.base import EdgeRecord, FindOptions, StorageAdapter

_logger = logging.getLogger("modelql")


class MutationContext(Mapping):
    """Request context seen by hooks during one mutation.

    Reads fall through to the request context (so ``ctx['db_session']``
    keeps working); write-scoped state lives on attributes.
    """

    def __init__(self, request: Any, *, info: Any = None, correlation_id: Optional[str] = None):
        self.request = request
        self.info = info
        self.transaction: Any = None
        self.snapshot: Any = None
        self.previous_values: Optional[Dict[str, Any]] = None
        self.correlation_id = correlation_id

    def _data(self) -> Mapping:
        if isinstance(self.request, Mapping):
            return self.request
        return vars(self.request) if hasattr(self.request, '__dict__') else {}

    def __getitem__(self, key: str) -> Any:
        return self._data()[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data())

    def __len__(self) -> int:
        return len(self._data())

    def __getattr__(self, name: str) -> Any:
        # Only reached for names that are not instance attributes
        request = self.__dict__.get('request')
        if isinstance(request, Mapping):
            if name in request:
                return request[name]
            raise AttributeError(name)
        return getattr(request, name)


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class MutationExecutor:
    def __init__(
        self,
        entities: Dict[str, EntityDescriptor],
        storage: StorageAdapter,
        options: ModelQLOptions,
        bus: ChangeBus,
    ):
        self.entities = entities
        self.storage = storage
        self.options = options
        self.bus = bus
        self.classifier = options.classifier()

    # ---------- public ----------
    async def execute(
        self,
        entity_name: str,
        operation: OperationKind,
        payload: Any,
        where: Optional[Dict[str, Any]],
        *,
        source: Any = None,
        args: Optional[Dict[str, Any]] = None,
        info: Any = None,
        mutation_name: Optional[str] = None,
        is_bulk: Any = False,
        replace: bool = False,
        use_transaction: bool = False,
    ) -> Any:
        entity = self.entities[entity_name]
        args = dict(args or {})
        request = getattr(info, 'context', None)
        await call_hook(self.options.authorizer, source, args, request, info)
        mctx = MutationContext(request, info=info)
        where = dict(where or {})

        if operation is OperationKind.UPSERT and not is_bulk:
            operation, where = self.resolve_upsert(entity, payload or {}, where)
        hook_key = operation.value

        overwrite = entity.options.overwrite.get(hook_key)
        if overwrite is not None:
            result = await call_hook(overwrite, source, args, mctx, info, where)
            await call_hook(self.options.logger, result, source, args, request, info)
            return result

        if is_bulk:
            rows = list(payload or [])
            for row in rows:
                self.validate(entity, row)
        else:
            self.validate(entity, payload or {})

        if not is_bulk and operation in (OperationKind.UPDATE, OperationKind.DESTROY):
            mctx.snapshot = await self._guarded(self.storage.find_one(entity, where, context=mctx))
            mctx.previous_values = self.snapshot_values(entity, mctx.snapshot)

        try:
            async with self._transaction(mctx, use_transaction):
                if is_bulk:
                    result, event = await self._run_bulk(entity, operation, rows, is_bulk, mctx, source, args, info, replace)
                else:
                    result, event = await self._run(entity, operation, payload or {}, where, mctx, source, args, info, replace)
        except StorageError as exc:
            raise self.classifier.classify(exc)

        if event is not None:
            event.name = mutation_name or event.name
            self.bus.publish(event)
        await call_hook(self.options.logger, result, source, args, request, info)
        return result

    def resolve_upsert(self, entity: EntityDescriptor, payload: Dict[str, Any], where: Dict[str, Any]) -> Tuple[OperationKind, Dict[str, Any]]:
        """Update when every primary key is given and non empty, else create."""
        keys = entity.primary_keys
        if keys and all(payload.get(k) not in (None, '', UNSET) for k in keys):
            return OperationKind.UPDATE, {**where, **{k: payload[k] for k in keys}}
        return OperationKind.CREATE, where

    def validate(self, entity: EntityDescriptor, payload: Any, path: str = '') -> None:
        """Reject ambiguous or missing through linkage before anything is written."""
        if not isinstance(payload, Mapping):
            return
        for key, value in payload.items():
            assoc = entity.association(key)
            if assoc is None or value is None:
                continue
            target = self.entities.get(assoc.target)
            where = f"{path}{entity.name}.{key}"
            if assoc.is_through:
                nested_key = self.nested_key(assoc)
                for i, item in enumerate(value if isinstance(value, list) else [value]):
                    item = item or {}
                    has_nested = item.get(nested_key) not in (None, UNSET)
                    has_key = item.get(assoc.target_key) not in (None, UNSET)
                    if has_nested and has_key:
                        raise ValidationError(
                            f"{where}[{i}]: give either {nested_key} or {assoc.target_key}, not both",
                            extensions={'path': f"{where}[{i}]"},
                        )
                    if not has_nested and not has_key:
                        raise ValidationError(
                            f"{where}[{i}]: {nested_key} or {assoc.target_key} is required",
                            extensions={'path': f"{where}[{i}]"},
                        )
                    if has_nested and target is not None:
                        self.validate(target, item[nested_key], f"{where}[{i}].")
            elif target is not None:
                for item in value if isinstance(value, list) else [value]:
                    self.validate(target, item, f"{where}.")

    def nested_key(self, assoc: AssociationDescriptor) -> str:
        """Payload key of the nested target object inside a through payload."""
        through = self.entities.get(assoc.through)
        if through is not None:
            for a in through.associations:
                if a.owns_key and a.foreign_key == assoc.target_key:
                    return a.name
        return assoc.target

    # ---------- internals ----------
    async def _guarded(self, awaitable: Any) -> Any:
        try:
            return await awaitable
        except StorageError as exc:
            raise self.classifier.classify(exc)

    @asynccontextmanager
    async def _transaction(self, mctx: MutationContext, requested: bool):
        if requested and not self.options.transactioned_mutations:
            warn_once('transactions-disabled', "transaction requested but transactioned mutations are disabled; running without one")
            requested = False
        if requested and not self.storage.supports_transactions:
            warn_once(f'transactions-unsupported:{self.storage.name}', f"storage '{self.storage.name}' has no transactions; running without one")
            requested = False
        if not requested:
            yield None
            return
        async with self.storage.transaction(mctx) as tx:
            mctx.transaction = tx
            try:
                yield tx
            finally:
                mctx.transaction = None

    async def _run(self, entity, operation, payload, where, mctx, source, args, info, replace) -> Tuple[Any, Optional[ChangeEvent]]:
        hook_key = operation.value
        before = entity.options.before.get(hook_key)
        if before is not None:
            await call_hook(before, source, args, mctx, info, where)
        snapshot = mctx.snapshot
        if operation is OperationKind.DESTROY:
            count = int(await self.storage.destroy(entity, where, context=mctx, transaction=mctx.transaction) or 0)
            record, result = snapshot, count
        else:
            record = await self.write(entity, operation, payload, where, mctx, replace=replace)
            result = record
        kind = {
            OperationKind.CREATE: MutationKind.CREATED,
            OperationKind.UPDATE: MutationKind.UPDATED,
            OperationKind.DESTROY: MutationKind.DELETED,
        }[operation]
        event = ChangeEvent(
            name=hook_key,
            entity=entity.name,
            mutation=kind,
            node=record,
            previous_values=mctx.previous_values,
            updated_fields=[k for k in payload if entity.field(k) is not None] if operation is OperationKind.UPDATE else [],
        )
        extend = entity.options.extend.get(hook_key)
        if extend is not None:
            # destroy hooks see the deleted record, not the row count
            subject = snapshot if operation is OperationKind.DESTROY else result
            result = await call_hook(extend, subject, source, args, mctx, info, where)
        return result, event

    async def _run_bulk(self, entity, operation, rows, is_bulk, mctx, source, args, info, replace) -> Tuple[Any, Optional[ChangeEvent]]:
        hook_key = operation.value
        before = entity.options.before.get(hook_key)
        if before is not None:
            await call_hook(before, source, args, mctx, info, None)
        if operation is OperationKind.CREATE:
            for row in rows:
                nested = [k for k in row if entity.association(k) is not None]
                if nested:
                    raise ValidationError(f"{entity.name} bulk create does not accept nested associations: {', '.join(nested)}")
            tag = is_bulk if isinstance(is_bulk, str) else None
            if tag and rows:
                correlation = rows[0].get(tag) or str(uuid.uuid4())
                mctx.correlation_id = correlation
                rows = [{**row, tag: correlation} for row in rows]
            created = await self.storage.bulk_create(entity, rows, context=mctx, transaction=mctx.transaction)
            result: Any = created if tag else len(created)
            event = ChangeEvent(name=hook_key, entity=entity.name, mutation=MutationKind.BULK_CREATED, nodes=list(created))
            _logger.debug("modelql: bulk created %d %s rows (tag=%s)", len(created), entity.name, mctx.correlation_id)
        else:
            pk = entity.primary_key
            keys = []
            previous = []
            for row in rows:
                if row.get(pk) in (None, ''):
                    raise ValidationError(f"{entity.name} bulk edit needs '{pk}' in every row")
                where = {pk: row[pk]}
                mctx.snapshot = await self.storage.find_one(entity, where, context=mctx, transaction=mctx.transaction)
                previous.append(self.snapshot_values(entity, mctx.snapshot))
                await self.write(entity, OperationKind.UPDATE, row, where, mctx, replace=replace)
                keys.append(row[pk])
            mctx.snapshot = None
            result = await self.storage.find(entity, FindOptions(where={pk: {'in': keys}}), context=mctx, transaction=mctx.transaction)
            event = ChangeEvent(
                name=hook_key,
                entity=entity.name,
                mutation=MutationKind.UPDATED,
                nodes=list(result),
                previous_values={'rows': previous},
                updated_fields=sorted({k for row in rows for k in row if entity.field(k) is not None and k != pk}),
            )
        extend = entity.options.extend.get(hook_key)
        if extend is not None:
            result = await call_hook(extend, result, source, args, mctx, info, None)
        return result, event

    def snapshot_values(self, entity: EntityDescriptor, record: Any) -> Optional[Dict[str, Any]]:
        if record is None:
            return None
        return {k: _plain(v) for k, v in self.storage.values_of(entity, record).items()}

    async def write(
        self,
        entity: EntityDescriptor,
        operation: OperationKind,
        payload: Dict[str, Any],
        where: Optional[Dict[str, Any]],
        mctx: MutationContext,
        *,
        replace: bool = False,
    ) -> Any:
        """Write ``entity`` and its nested associations; return the merged record.

        Owning (belongs-to) associations are written first so their key can be
        set on the entity; all other associations follow the entity write, in
        payload order.
        """
        values: Dict[str, Any] = {}
        nested: List[Tuple[AssociationDescriptor, Any]] = []
        for key, value in payload.items():
            if value is UNSET:
                continue
            assoc = entity.association(key)
            if assoc is not None:
                nested.append((assoc, value))
            else:
                values[key] = value

        owned: Dict[str, Any] = {}
        for assoc, value in nested:
            if not assoc.owns_key:
                continue
            target = self.entities[assoc.target]
            if value is None:
                values[assoc.foreign_key] = None
                owned[assoc.name] = None
            elif isinstance(value, Mapping):
                child = await self._write_nested(target, operation, dict(value), mctx, f"{entity.name}.{assoc.name}")
                values[assoc.foreign_key] = getattr(child, target.primary_key)
                owned[assoc.name] = child
            else:
                values[assoc.foreign_key] = value

        if operation is OperationKind.CREATE:
            record = await self.storage.create(entity, values, context=mctx, transaction=mctx.transaction)
            _logger.debug("modelql: created %s %s", entity.name, self.storage.key_of(entity, record))
        else:
            if values:
                await self.storage.update(entity, values, where, context=mctx, transaction=mctx.transaction)
            record = await self.storage.find_one(entity, where, context=mctx, transaction=mctx.transaction)
            if record is None:
                return None

        for name, child in owned.items():
            attach_prefetched(record, name, child, mctx.request)
        for assoc, value in nested:
            if assoc.owns_key:
                continue
            result = await self._write_children(entity, record, assoc, value, operation, mctx, replace)
            attach_prefetched(record, assoc.name, result, mctx.request)
        return record

    async def _write_nested(self, target: EntityDescriptor, operation: OperationKind, payload: Dict[str, Any], mctx: MutationContext, path: str = '') -> Any:
        requested = OperationKind.UPSERT if operation is OperationKind.UPDATE else OperationKind.CREATE
        resolved, where = self.resolve_upsert(target, payload, {}) if requested is OperationKind.UPSERT else (OperationKind.CREATE, {})
        before = target.options.before.get(resolved.value)
        if before is not None:
            info = mctx.info
            await call_hook(before, None, payload, mctx, info, where)
        record = await self.write(target, resolved, payload, where, mctx)
        if record is None:
            pk = target.primary_key
            raise ValidationError(f"{target.name} with {pk}={payload.get(pk)!r} not found", extensions={'path': path or target.name})
        return record

    async def _write_children(self, entity, record, assoc, value, operation, mctx, replace) -> Any:
        target = self.entities[assoc.target]
        items = value if isinstance(value, list) else ([] if value is None else [value])
        many = assoc.is_list

        if assoc.is_through:
            if replace:
                await self.storage.set_associated(record, assoc, [], context=mctx, transaction=mctx.transaction)
            nested_key = self.nested_key(assoc)
            edges: List[EdgeRecord] = []
            for i, item in enumerate(items):
                item = dict(item)
                nested_payload = item.pop(nested_key, None)
                key = item.pop(assoc.target_key, None)
                item.pop(assoc.foreign_key, None)
                through_values = {k: v for k, v in item.items() if v is not UNSET}
                if nested_payload is not None:
                    node = await self._write_nested(target, operation, dict(nested_payload), mctx, f"{entity.name}.{assoc.name}[{i}].{nested_key}")
                else:
                    node = await self.storage.find_one(target, {target.primary_key: key}, context=mctx, transaction=mctx.transaction)
                    if node is None:
                        raise ValidationError(
                            f"{target.name} with {target.primary_key}={key!r} not found",
                            extensions={'path': f"{entity.name}.{assoc.name}[{i}]"},
                        )
                link = await self.storage.add_associated(
                    record, assoc, node, through=through_values, context=mctx, transaction=mctx.transaction,
                )
                _logger.debug("modelql: %s on %s", self.storage.accessor_name('add', assoc, target), entity.name)
                edges.append(EdgeRecord(node=node, through=link))
            return edges

        parent_key = getattr(record, entity.primary_key)
        children = []
        for i, item in enumerate(items):
            if isinstance(item, Mapping):
                payload = dict(item)
                payload[assoc.foreign_key] = parent_key
                child = await self._write_nested(target, operation, payload, mctx, f"{entity.name}.{assoc.name}[{i}]" if many else f"{entity.name}.{assoc.name}")
            else:
                child = item
            child = await self.storage.add_associated(record, assoc, child, context=mctx, transaction=mctx.transaction)
            children.append(child)

        if replace and many:
            keep = {getattr(c, target.primary_key) for c in children}
            current = await self.storage.get_associated(
                record, assoc, FindOptions(), context=mctx, transaction=mctx.transaction, target_entity=target,
            )
            for stale in current or []:
                if getattr(stale, target.primary_key) not in keep:
                    await self.storage.destroy_record(target, stale, context=mctx, transaction=mctx.transaction)
                    _logger.debug("modelql: removed stale %s from %s.%s", target.name, entity.name, assoc.name)
        if many:
            return children
        return children[0] if children else None
