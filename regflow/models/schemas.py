"""
Pydantic schemas for API requests and responses.
Includes enums for the request state machine and event topics.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from enum import Enum


# ============================================================================
# Enums
# ============================================================================


class ApprovalStatus(int, Enum):
    """Request approval states"""

    NOT_DETERMINED = 0
    APPROVED = 1
    REJECTED = 2


class Topic(str, Enum):
    """Event topics for the dispatcher"""

    PULL_ARTIFACT = "PULL_ARTIFACT"
    PUSH_ARTIFACT = "PUSH_ARTIFACT"
    APPROVE_REQUEST = "APPROVE_REQUEST"
    REJECT_REQUEST = "REJECT_REQUEST"
    HOOK = "HOOK"


# ============================================================================
# State Machine Configuration
# ============================================================================

# Both decisions are terminal
STATUS_TRANSITIONS = {
    ApprovalStatus.NOT_DETERMINED: [ApprovalStatus.APPROVED, ApprovalStatus.REJECTED],
    ApprovalStatus.APPROVED: [],
    ApprovalStatus.REJECTED: [],
}


# ============================================================================
# Request Schemas
# ============================================================================


class RequestCreate(BaseModel):
    """Request to create a new project-creation request"""

    name: str = Field(..., description="Name of the project to create", examples=["library"])
    owner_id: int = Field(..., description="User id of the requester")
    owner_name: Optional[str] = Field(default=None, description="Display name of the requester")


class RequestResponse(BaseModel):
    """Project-creation request representation"""

    request_id: int
    name: str
    owner_id: int
    owner_name: Optional[str] = None
    is_approved: ApprovalStatus
    creation_time: float
    update_time: float


class RequestQuery(BaseModel):
    """Filters, sorting and paging for listing requests"""

    name: Optional[str] = Field(default=None, description="Fuzzy match on request name")
    names: List[str] = Field(default_factory=list, description="Exact names to include")
    owner_id: Optional[int] = None
    owner: Optional[str] = Field(default=None, description="Username of the owner")
    is_approved: Optional[ApprovalStatus] = None
    sort: Optional[str] = Field(default=None, description="Sort key, prefix with '-' for descending")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=0, le=100)


class ErrorItem(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    errors: List[ErrorItem]


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    timestamp: float
    dispatcher: Dict[str, object] = Field(default_factory=dict)
