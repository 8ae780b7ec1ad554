"""Event types, metadata resolvers, the handler registry and handlers."""

from regflow.core.events.registry import Handler, HandlerRegistry, registry
from regflow.core.events.handlers import register_event_handlers

__all__ = ['Handler', 'HandlerRegistry', 'registry', 'register_event_handlers']
