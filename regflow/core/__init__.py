"""Core business logic components."""

from regflow.core.errors import (
    RegflowError,
    ValidationError,
    ConflictError,
    NotFoundError,
    DependencyError,
)
from regflow.core.event_bus import Dispatcher, BackgroundTaskPool
from regflow.core.request_store import RequestStore
from regflow.core.request_controller import RequestController

__all__ = [
    'RegflowError',
    'ValidationError',
    'ConflictError',
    'NotFoundError',
    'DependencyError',
    'Dispatcher',
    'BackgroundTaskPool',
    'RequestStore',
    'RequestController',
]
