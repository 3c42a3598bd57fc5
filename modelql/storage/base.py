from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Dict, List, Optional, Sequence, Tuple

from ..core.descriptors import AssociationDescriptor, EntityDescriptor
from ..core.naming import accessor_suffix


@dataclass
class FindOptions:
    """Read options assembled by the query resolver.

    ``order``/``order_edges`` are ``(column, 'ASC'|'DESC')`` pairs; the
    ``*_edges`` variants address columns of the through entity.
    ``scope`` is ``(scope_name, args_tuple)``.
    """

    where: Optional[Dict[str, Any]] = None
    order: List[Tuple[str, str]] = field(default_factory=list)
    where_edges: Optional[Dict[str, Any]] = None
    order_edges: List[Tuple[str, str]] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    paranoid: bool = True
    scope: Optional[Tuple[str, Tuple[Any, ...]]] = None


@dataclass
class EdgeRecord:
    """A target record reached through a join entity, with the join row."""

    node: Any
    through: Any = None


class StorageAdapter:
    """Contract the core expects from the persistence collaborator.

    Every call receives the request ``context`` (where adapters find their
    connection/session) and an optional ``transaction`` handle obtained from
    :meth:`transaction`. Writes made without a handle are durable on return.
    """

    name = 'base'
    supports_transactions = True

    # ---- entity primitives ----
    async def find(self, entity: EntityDescriptor, options: FindOptions, *, context: Any, transaction: Any = None) -> List[Any]:
        raise NotImplementedError

    async def find_one(self, entity: EntityDescriptor, where: Optional[Dict[str, Any]], *, context: Any, transaction: Any = None) -> Any:
        raise NotImplementedError

    async def count(self, entity: EntityDescriptor, where: Optional[Dict[str, Any]], *, context: Any, paranoid: bool = True, scope: Optional[Tuple[str, Tuple[Any, ...]]] = None) -> int:
        raise NotImplementedError

    async def create(self, entity: EntityDescriptor, values: Dict[str, Any], *, context: Any, transaction: Any = None) -> Any:
        raise NotImplementedError

    async def bulk_create(self, entity: EntityDescriptor, rows: Sequence[Dict[str, Any]], *, context: Any, transaction: Any = None) -> List[Any]:
        raise NotImplementedError

    async def update(self, entity: EntityDescriptor, values: Dict[str, Any], where: Optional[Dict[str, Any]], *, context: Any, transaction: Any = None) -> int:
        raise NotImplementedError

    async def destroy(self, entity: EntityDescriptor, where: Optional[Dict[str, Any]], *, context: Any, transaction: Any = None) -> int:
        raise NotImplementedError

    async def destroy_record(self, entity: EntityDescriptor, record: Any, *, context: Any, transaction: Any = None) -> int:
        raise NotImplementedError

    # ---- association accessors ----
    async def get_associated(self, record: Any, association: AssociationDescriptor, options: FindOptions, *, context: Any, transaction: Any = None, target_entity: Optional[EntityDescriptor] = None) -> Any:
        """Return the related record (to-one) or list (to-many).

        Through associations yield :class:`EdgeRecord` items.
        """
        raise NotImplementedError

    async def count_associated(self, record: Any, association: AssociationDescriptor, where: Optional[Dict[str, Any]], *, context: Any, paranoid: bool = True, target_entity: Optional[EntityDescriptor] = None) -> int:
        """Count rows linked to ``record``; ``paranoid=False`` includes soft-deleted ones."""
        raise NotImplementedError

    async def add_associated(self, record: Any, association: AssociationDescriptor, target: Any, *, through: Optional[Dict[str, Any]] = None, context: Any, transaction: Any = None) -> Any:
        """Link ``target`` (a record or its key) to ``record``.

        Returns the join row for through associations, else the target.
        """
        raise NotImplementedError

    async def set_associated(self, record: Any, association: AssociationDescriptor, targets: Any, *, context: Any, transaction: Any = None) -> Any:
        """Replace the link(s); an empty list unlinks everything."""
        raise NotImplementedError

    def transaction(self, context: Any) -> AsyncContextManager[Any]:
        raise NotImplementedError

    def key_of(self, entity: EntityDescriptor, record: Any) -> Dict[str, Any]:
        """Primary-key values of a record."""
        return {k: getattr(record, k, None) for k in entity.primary_keys}

    def values_of(self, entity: EntityDescriptor, record: Any) -> Dict[str, Any]:
        return {f.name: getattr(record, f.name, None) for f in entity.fields}

    def accessor_name(self, operation: str, association: AssociationDescriptor, target: Optional[EntityDescriptor] = None) -> str:
        """Accessor name of an association operation, e.g. ``getComments``/``addTag``."""
        singular = target.singular if target is not None else association.target
        plural = target.plural if target is not None else f"{association.target}s"
        return operation + accessor_suffix(singular, plural, many=association.is_list, alias=association.alias)
