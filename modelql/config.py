from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import ErrorClassifier


async def _allow(*_args: Any) -> None:
    return None


async def _noop_logger(*_args: Any) -> None:
    return None


def _default_error_handler() -> Dict[str, Dict[str, Any]]:
    return {'ETIMEDOUT': {'status_code': 503}}


@dataclass
class ModelQLOptions:
    """Process-wide settings for one schema build.

    Attributes:
        exclude: Entity names that get no root fields.
        include_arguments: Extra root arguments, name -> type token. Values
            reach hooks/authorizer through ``args``.
        custom_types: Custom scalars for the type token mapper, name -> type.
        transactioned_mutations: Allow the ``transaction`` mutation argument
            to open a storage transaction. When False the request is honored
            without a transaction and a PolicyWarning is emitted once.
        authorizer: ``(source, args, context, info)``; raise to reject.
        logger: ``(result, source, args, context, info)``; runs after a
            successful mutation.
        error_handler: Ordered mapping of error message substring -> extra
            fields merged onto storage errors.
        strawberry_config: Optional ``StrawberryConfig``. Defaults to
            snake_case names with leading underscores preserved.
    """

    exclude: List[str] = field(default_factory=list)
    include_arguments: Dict[str, str] = field(default_factory=dict)
    custom_types: Dict[str, Any] = field(default_factory=dict)
    transactioned_mutations: bool = True
    authorizer: Callable[..., Any] = _allow
    logger: Callable[..., Any] = _noop_logger
    error_handler: Dict[str, Dict[str, Any]] = field(default_factory=_default_error_handler)
    strawberry_config: Optional[Any] = None

    def classifier(self) -> ErrorClassifier:
        return ErrorClassifier(self.error_handler)
