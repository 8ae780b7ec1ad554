"""
Handler contract and the topic -> handlers registry.

The registry is filled during startup and frozen before traffic starts.
After ``freeze()`` it is read-only, so concurrent lookups need no locking.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Tuple, Union
import structlog

from regflow.models.schemas import Topic

logger = structlog.get_logger()


class Handler(ABC):
    """
    A single capability triggered by events.

    Handlers may hold injected collaborators but never per-event state.
    Exceptions raised from ``handle`` are logged by the dispatcher and dropped.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Name used in logs and stats"""

    @property
    def is_stateful(self) -> bool:
        """Stateful handlers receive one event at a time, in publish order"""
        return False

    @abstractmethod
    async def handle(self, event) -> None:
        """Process one event"""


class HandlerRegistry:
    """Process-wide mapping from topic to its subscribed handlers."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._frozen = False

    @staticmethod
    def _key(topic: Union[Topic, str]) -> str:
        return topic.value if isinstance(topic, Topic) else str(topic)

    def register(self, topic: Union[Topic, str], handler: Handler):
        """
        Subscribe a handler to a topic.

        Raises:
            RuntimeError: If the registry has already been frozen
        """
        if self._frozen:
            raise RuntimeError(f"handler registry is frozen, cannot register {handler.name}")

        key = self._key(topic)
        if any(existing is handler for existing in self._handlers[key]):
            logger.warning("event_handler_already_registered", topic=key, handler=handler.name)
            return

        self._handlers[key].append(handler)
        logger.info(
            "event_handler_subscribed",
            topic=key,
            handler=handler.name,
            stateful=handler.is_stateful,
            total_handlers=len(self._handlers[key]),
        )

    def lookup(self, topic: Union[Topic, str]) -> Tuple[Handler, ...]:
        """Handlers subscribed to ``topic``, empty when there are none"""
        return tuple(self._handlers.get(self._key(topic), ()))

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def topics(self) -> List[str]:
        return [topic for topic, handlers in self._handlers.items() if handlers]

    def handlers(self) -> List[Handler]:
        """Distinct handlers across all topics, in registration order"""
        seen = []
        for handlers in self._handlers.values():
            for handler in handlers:
                if not any(h is handler for h in seen):
                    seen.append(handler)
        return seen


# Default registry populated by register_event_handlers at startup
registry = HandlerRegistry()
