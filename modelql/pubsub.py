"""Change events published by mutations and the subscriptions consuming them."""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Set

import strawberry
from strawberry.scalars import JSON

from .core.utils import call_hook

_logger = logging.getLogger("modelql")


@strawberry.enum(description="Kind of change carried by a subscription event")
class MutationKind(Enum):
    CREATED = 'CREATED'
    BULK_CREATED = 'BULK_CREATED'
    DELETED = 'DELETED'
    UPDATED = 'UPDATED'


@dataclass
class ChangeEvent:
    """One successful top-level mutation.

    ``name`` is the mutation field that produced the event; subscriptions
    filter on it.
    """

    name: str
    entity: str
    mutation: MutationKind
    node: Any = None
    nodes: Optional[List[Any]] = None
    previous_values: Optional[Dict[str, Any]] = None
    updated_fields: List[str] = field(default_factory=list)


class ChangeBus:
    """In-process fan-out of :class:`ChangeEvent` to listening subscriptions.

    Each listener owns an ``asyncio.Queue``; publishing never blocks and
    listeners may come and go at any time.
    """

    def __init__(self) -> None:
        self._listeners: Dict[int, tuple] = {}
        self._next_id = 0

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for names, queue in list(self._listeners.values()):
            if event.name in names:
                queue.put_nowait(event)
                delivered += 1
        _logger.debug("modelql: published %s (%s) to %d listener(s)", event.name, event.mutation.value, delivered)
        return delivered

    async def listen(self, names: Iterable[str]) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._next_id += 1
        token = self._next_id
        self._listeners[token] = (frozenset(names), queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._listeners.pop(token, None)


class SubscriptionResolver:
    """Streams the events of one entity to a subscriber.

    ``events`` maps mutation field names to the kind they publish; a
    subscriber may narrow the kinds with the ``mutation`` argument. The
    entity's ``subs_filter['default']`` predicate and ``extend['subscription']``
    hook run per delivered event.
    """

    def __init__(self, entity: Any, bus: ChangeBus, options: Any, events: Mapping[str, MutationKind], payload_type: Any = None):
        self.entity = entity
        self.bus = bus
        self.options = options
        self.events = dict(events)
        self.payload_type = payload_type

    def event_names(self, kinds: Optional[Iterable[Any]] = None) -> Set[str]:
        wanted = {MutationKind(k) if not isinstance(k, MutationKind) else k for k in kinds} if kinds else None
        return {name for name, kind in self.events.items() if wanted is None or kind in wanted}

    def to_payload(self, event: ChangeEvent) -> Any:
        values = dict(
            mutation=event.mutation,
            node=event.node,
            nodes=event.nodes,
            updated_fields=list(event.updated_fields),
            previous_values=event.previous_values,
        )
        if self.payload_type is None:
            return values
        return self.payload_type.cls(**values)

    async def stream(self, source: Any, info: Any, args: Dict[str, Any]) -> AsyncIterator[Any]:
        ctx = info.context
        await call_hook(self.options.authorizer, source, args, ctx, info)
        names = self.event_names(args.get('mutation'))
        predicate = self.entity.options.subs_filter.get('default')
        extend = self.entity.options.extend.get('subscription')
        async for event in self.bus.listen(names):
            payload = self.to_payload(event)
            if predicate is not None and not await call_hook(predicate, payload, args, ctx, info):
                continue
            if extend is not None:
                payload = await call_hook(extend, payload, None, args, ctx, info, None)
            yield payload


def payload_fields() -> Dict[str, Any]:
    """Scalar fields of a ``{subs}Output`` payload; ``node``/``nodes`` are added per entity."""
    return {
        'mutation': MutationKind,
        'updated_fields': Optional[List[str]],
        'previous_values': Optional[JSON],
    }
