from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


class RelationKind(str, Enum):
    """Relation shapes understood by the type generator and mutation executor.

    TO_ONE: the target holds the foreign key (one-to-one, "has one").
    TO_ONE_OWNING: the source holds the foreign key ("belongs to").
    TO_MANY: the target holds the foreign key, many rows.
    TO_MANY_THROUGH: many-to-many mediated by a through entity.
    """

    TO_ONE = 'to_one'
    TO_ONE_OWNING = 'to_one_owning'
    TO_MANY = 'to_many'
    TO_MANY_THROUGH = 'to_many_through'


class OperationKind(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DESTROY = 'destroy'
    UPSERT = 'upsert'


# Operation names used as keys of attribute include/exclude/only maps
FETCH = 'fetch'
ATTRIBUTE_OPERATIONS = ('create', 'update', 'fetch')

TIMESTAMP_FIELDS = ('created_at', 'updated_at', 'createdAt', 'updatedAt')


@dataclass
class FieldDescriptor:
    """Normalized description of one storage-backed attribute.

    Attributes:
        name: Attribute name on the entity (also the GraphQL field name).
        type_token: Primitive type token understood by the field mapper
            (``"int"``, ``"[string!]"``, ``"json"``...).
        nullable: Whether storage accepts NULL.
        has_default: Storage provides a default; relaxes required-ness of
            create inputs.
        autoincrement: Identifier generated by storage.
        primary_key: Part of the entity identity.
        references: Name of the entity this field points to, if any.
        timestamp: Maintained by storage; never part of input types.
        python_type: Optional Python type (e.g. an ``Enum`` subclass) that
            overrides the token when generating GraphQL types.
        description: Optional GraphQL description.
    """

    name: str
    type_token: str = 'string'
    nullable: bool = True
    has_default: bool = False
    autoincrement: bool = False
    primary_key: bool = False
    references: Optional[str] = None
    timestamp: bool = False
    python_type: Any = None
    description: Optional[str] = None


@dataclass
class AssociationDescriptor:
    """A declared relation between two entities.

    ``foreign_key`` is the column holding the link: on the source for
    TO_ONE_OWNING, on the target for TO_ONE/TO_MANY, and on the through
    entity (pointing back to the source) for TO_MANY_THROUGH, where
    ``target_key`` names the through column pointing to the target.
    """

    name: str
    source: str
    target: str
    kind: RelationKind
    foreign_key: Optional[str] = None
    through: Optional[str] = None
    target_key: Optional[str] = None
    alias: Optional[str] = None
    synthetic: bool = False

    @property
    def is_list(self) -> bool:
        return self.kind in (RelationKind.TO_MANY, RelationKind.TO_MANY_THROUGH)

    @property
    def is_through(self) -> bool:
        return self.kind is RelationKind.TO_MANY_THROUGH

    @property
    def owns_key(self) -> bool:
        return self.kind is RelationKind.TO_ONE_OWNING


@dataclass
class AttributeOptions:
    exclude: Union[List[str], Dict[str, List[str]]] = field(default_factory=dict)
    only: Union[List[str], Dict[str, Optional[List[str]]], None] = None
    include: Dict[str, str] = field(default_factory=dict)

    def excluded(self, operation: str) -> List[str]:
        if isinstance(self.exclude, (list, tuple)):
            return list(self.exclude)
        return list((self.exclude or {}).get(operation) or [])

    def allowed(self, operation: str) -> Optional[List[str]]:
        if self.only is None:
            return None
        if isinstance(self.only, (list, tuple)):
            return list(self.only)
        val = self.only.get(operation)
        return list(val) if val is not None else None


@dataclass
class GraphOptions:
    """Per-entity knobs controlling generated types, root fields and hooks.

    Hook maps (``before``, ``extend``, ``overwrite``) are keyed by operation
    name: ``fetch``, ``create``, ``update``, ``destroy`` and, for ``extend``,
    ``subscription``. Callables may be sync or async.
    """

    attributes: AttributeOptions = field(default_factory=AttributeOptions)
    scopes: Union[str, Tuple[Any, ...], List[Any], None] = None
    alias: Dict[str, str] = field(default_factory=dict)
    bulk: List[Any] = field(default_factory=list)
    queries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    mutations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    subscriptions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    exclude_queries: List[str] = field(default_factory=list)
    exclude_mutations: List[str] = field(default_factory=list)
    exclude_subscriptions: List[str] = field(default_factory=list)
    before: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    extend: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    overwrite: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    subs_filter: Dict[str, Callable[..., Any]] = field(default_factory=dict)
    types: Dict[str, Any] = field(default_factory=dict)
    name: Dict[str, str] = field(default_factory=dict)
    paranoid: Optional[bool] = None

    @classmethod
    def from_dict(cls, raw: Any) -> 'GraphOptions':
        """Normalize a user-supplied mapping (e.g. ``__graphql__``) into options.

        Unknown keys raise ``TypeError`` so typos surface at build time.
        """
        if isinstance(raw, GraphOptions):
            return raw
        data = dict(raw or {})
        attrs = data.pop('attributes', None)
        if isinstance(attrs, dict):
            attrs = AttributeOptions(
                exclude=attrs.get('exclude') or {},
                only=attrs.get('only'),
                include=dict(attrs.get('include') or {}),
            )
        opts = cls(**data)
        if attrs is not None:
            opts.attributes = attrs
        return opts

    def bulk_option(self, key: str) -> Union[bool, str]:
        """Return True, a tag field name, or False for a bulk operation key."""
        for option in self.bulk or []:
            if isinstance(option, (list, tuple)):
                if option and option[0] == key:
                    return option[1] if len(option) > 1 else True
            elif option == key:
                return True
        return False


@dataclass
class EntityDescriptor:
    """Declarative, storage-backed type: fields + associations + options."""

    name: str
    fields: List[FieldDescriptor] = field(default_factory=list)
    associations: List[AssociationDescriptor] = field(default_factory=list)
    options: GraphOptions = field(default_factory=GraphOptions)
    paranoid: bool = False
    deleted_at_field: Optional[str] = None
    description: Optional[str] = None

    def field(self, name: str) -> Optional[FieldDescriptor]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def association(self, name: str) -> Optional[AssociationDescriptor]:
        for a in self.associations:
            if a.name == name:
                return a
        return None

    @property
    def primary_keys(self) -> List[str]:
        keys = [f.name for f in self.fields if f.primary_key]
        return keys or (['id'] if self.field('id') else [])

    @property
    def primary_key(self) -> str:
        keys = self.primary_keys
        return keys[0] if keys else 'id'

    @property
    def singular(self) -> str:
        return self.options.name.get('singular') or self.name

    @property
    def plural(self) -> str:
        return self.options.name.get('plural') or f"{self.name}s"

    def with_associations(self, associations: List[AssociationDescriptor]) -> 'EntityDescriptor':
        """Copy carrying a different association list; the original stays untouched."""
        return replace(self, associations=list(associations))
