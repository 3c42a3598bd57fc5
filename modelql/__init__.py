"""ModelQL public API and lightweight lazy exports.

Builds a Strawberry GraphQL schema (queries, nested mutations, change
subscriptions) from declarative entity descriptors or SQLAlchemy models.

Exposes:
- ModelQL, build_schema (resolved lazily from .schema)
- ModelQLOptions, GraphOptions, EntityDescriptor, FieldDescriptor,
  AssociationDescriptor, RelationKind
- Errors: ModelQLError, ValidationError, AuthorizationError, StorageError,
  PolicyWarning
- SQLAlchemyStorage, descriptors_from_models (resolved lazily from .storage)
"""
from __future__ import annotations

from .config import ModelQLOptions
from .core.descriptors import (
    AssociationDescriptor,
    EntityDescriptor,
    FieldDescriptor,
    GraphOptions,
    RelationKind,
)
from .errors import AuthorizationError, ModelQLError, PolicyWarning, StorageError, ValidationError


def __getattr__(name: str):  # PEP 562 lazy exports
    import importlib as _importlib
    if name in {'ModelQL', 'build_schema'}:
        return getattr(_importlib.import_module(__name__ + '.schema'), name)
    if name in {'SQLAlchemyStorage', 'descriptors_from_models'}:
        return getattr(_importlib.import_module(__name__ + '.storage.sqla'), name)
    if name in {'MutationKind', 'ChangeEvent', 'ChangeBus'}:
        return getattr(_importlib.import_module(__name__ + '.pubsub'), name)
    raise AttributeError(name)


__all__ = [
    'ModelQL', 'build_schema', 'ModelQLOptions',
    'GraphOptions', 'EntityDescriptor', 'FieldDescriptor', 'AssociationDescriptor', 'RelationKind',
    'ModelQLError', 'ValidationError', 'AuthorizationError', 'StorageError', 'PolicyWarning',
    'SQLAlchemyStorage', 'descriptors_from_models',
    'MutationKind', 'ChangeEvent', 'ChangeBus',
]
