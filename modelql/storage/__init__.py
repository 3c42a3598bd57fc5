from .base import EdgeRecord, FindOptions, StorageAdapter

__all__ = ['EdgeRecord', 'FindOptions', 'StorageAdapter', 'SQLAlchemyStorage', 'descriptors_from_models']


def __getattr__(name: str):  # PEP 562 lazy exports
    if name in {'SQLAlchemyStorage', 'descriptors_from_models'}:
        from . import sqla as _sa
        return getattr(_sa, name)
    raise AttributeError(name)
