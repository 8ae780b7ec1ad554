"""
Event payloads delivered through the dispatcher.

Events form a closed union discriminated by ``kind``. They are frozen, so a
handler can never mutate what another handler sees.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from regflow.models.schemas import Topic


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ArtifactRef(_Frozen):
    """Identity of the artifact an artifact event is about"""

    id: int
    repository_id: int
    repository_name: str
    digest: str


class HookTarget(_Frozen):
    """Where a hook payload should be delivered"""

    type: Literal["http", "smtp"] = "http"
    address: str
    auth_header: str = ""
    skip_cert_verify: bool = False


class _ArtifactEvent(_Frozen):
    artifact: ArtifactRef
    tags: Tuple[str, ...] = ()
    operator: str = ""
    occur_at: datetime


class PullArtifactEvent(_ArtifactEvent):
    kind: Literal[Topic.PULL_ARTIFACT] = Topic.PULL_ARTIFACT


class PushArtifactEvent(_ArtifactEvent):
    kind: Literal[Topic.PUSH_ARTIFACT] = Topic.PUSH_ARTIFACT


class _RequestEvent(_Frozen):
    request_id: int
    project: str
    owner_id: int
    operator: str = ""
    occur_at: datetime


class ApproveRequestEvent(_RequestEvent):
    kind: Literal[Topic.APPROVE_REQUEST] = Topic.APPROVE_REQUEST


class RejectRequestEvent(_RequestEvent):
    kind: Literal[Topic.REJECT_REQUEST] = Topic.REJECT_REQUEST


class HookEvent(_Frozen):
    kind: Literal[Topic.HOOK] = Topic.HOOK
    target: HookTarget
    payload: Dict[str, Any] = Field(default_factory=dict)
    occur_at: datetime


Event = Annotated[
    Union[
        PullArtifactEvent,
        PushArtifactEvent,
        ApproveRequestEvent,
        RejectRequestEvent,
        HookEvent,
    ],
    Field(discriminator="kind"),
]

RequestEvent = Union[ApproveRequestEvent, RejectRequestEvent]
ArtifactEvent = Union[PullArtifactEvent, PushArtifactEvent]
