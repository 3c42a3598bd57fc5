"""Error taxonomy and error enrichment for ModelQL.

- ``ValidationError``: malformed nested-association payloads; aborts the
  mutation before any write.
- ``AuthorizationError``: raised by authorizer callables; propagated as is.
- ``StorageError``: any failure surfaced by the storage adapter; enriched by
  :class:`ErrorClassifier` and re-raised.
- ``PolicyWarning``: non fatal policy downgrades, emitted once.
"""
from __future__ import annotations
import logging
import warnings
from typing import Any, Dict, Mapping, Optional, Set

_logger = logging.getLogger("modelql")


class ModelQLError(Exception):
    """Base error; ``extensions`` end up in the GraphQL error response."""

    def __init__(self, message: str, *, extensions: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extensions: Dict[str, Any] = dict(extensions or {})


class ValidationError(ModelQLError, ValueError):
    pass


class AuthorizationError(ModelQLError, PermissionError):
    pass


class StorageError(ModelQLError):
    pass


class PolicyWarning(UserWarning):
    pass


_warned: Set[str] = set()


def warn_once(key: str, message: str) -> None:
    """Emit a :class:`PolicyWarning` once per process for ``key``."""
    if key in _warned:
        return
    _warned.add(key)
    _logger.warning("modelql: %s", message)
    warnings.warn(message, PolicyWarning, stacklevel=3)


class ErrorClassifier:
    """Merge extra fields onto errors whose message contains a known substring.

    Mappings are checked in declaration order and the first match wins.

    Example:
        classifier = ErrorClassifier({'ETIMEDOUT': {'status_code': 503}})
        err = classifier.classify(StorageError('connect ETIMEDOUT'))
        assert err.status_code == 503
    """

    def __init__(self, mapping: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self.mapping = dict(mapping or {})

    def classify(self, error: BaseException) -> BaseException:
        message = str(getattr(error, 'message', None) or error)
        for needle, extras in self.mapping.items():
            if needle in message:
                for k, v in dict(extras).items():
                    setattr(error, k, v)
                ext = getattr(error, 'extensions', None)
                if isinstance(ext, dict):
                    ext.update(extras)
                else:
                    try:
                        setattr(error, 'extensions', dict(extras))
                    except AttributeError:
                        pass
                break
        return error
