"""Data models and schemas."""

from regflow.models.database import Base, Database, get_db
from regflow.models.orm import (
    Request,
    User,
    Project,
    Quota,
    Repository,
    Artifact,
    Tag,
)
from regflow.models.schemas import (
    ApprovalStatus,
    Topic,
    STATUS_TRANSITIONS,
    RequestCreate,
    RequestResponse,
    RequestQuery,
    ErrorResponse,
    HealthResponse,
)

__all__ = [
    # Database
    'Base',
    'Database',
    'get_db',
    # ORM Models
    'Request',
    'User',
    'Project',
    'Quota',
    'Repository',
    'Artifact',
    'Tag',
    # Schemas
    'ApprovalStatus',
    'Topic',
    'STATUS_TRANSITIONS',
    'RequestCreate',
    'RequestResponse',
    'RequestQuery',
    'ErrorResponse',
    'HealthResponse',
]
