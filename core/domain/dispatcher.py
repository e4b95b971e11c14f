# core/domain/dispatcher.py
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, List, Type, TypeVar

from .events import DomainEvent

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT", bound=DomainEvent)
Handler = Callable[[EventT], None]


class DomainEventDispatcher:
    """
    Simple in-process domain event dispatcher.

    There is no global instance: build one at startup and hand it to the
    services that emit or listen, so tests can use their own.

    Usage:

        dispatcher = DomainEventDispatcher()
        dispatcher.subscribe(WentOnline, handle_went_online)
        dispatcher.emit(WentOnline())
    """

    def __init__(self) -> None:
        # Mapping: { EventClass -> [handler_fn, handler_fn, ...] }
        self._handlers: DefaultDict[Type[DomainEvent], List[Handler]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def subscribe(self, event_type: Type[EventT], handler: Handler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug(
            "Registered domain event handler %s for %s",
            getattr(handler, "__name__", repr(handler)),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: Type[EventT], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_type: Type[DomainEvent]) -> List[Handler]:
        return list(self._handlers.get(event_type, []))

    # ------------------------------------------------------------------
    # Emitting
    # ------------------------------------------------------------------
    def emit(self, event: DomainEvent) -> None:
        """
        Dispatch the given domain event to all registered handlers.

        - Handlers are executed in-process, synchronously.
        - Exceptions in one handler are logged and do not stop other handlers.
        """
        event_type = type(event)
        handlers = self.handlers_for(event_type)

        if not handlers:
            logger.debug("No handlers registered for event %s", event.name)
            return

        logger.debug(
            "Emitting event %s to %d handler(s)",
            event.name,
            len(handlers),
        )

        for handler in handlers:
            try:
                handler(event)  # type: ignore[arg-type]
            except Exception:
                logger.exception(
                    "Error while handling event %s in handler %s",
                    event.name,
                    getattr(handler, "__name__", repr(handler)),
                )
