"""
Event metadata resolvers.

A metadata object carries the identifiers known at the call site and turns
them into a concrete event. Resolution stamps ``occur_at`` with the current
time and never performs I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Sequence

from regflow.core.events.types import (
    ApproveRequestEvent,
    ArtifactRef,
    HookEvent,
    HookTarget,
    PullArtifactEvent,
    PushArtifactEvent,
    RejectRequestEvent,
)
from regflow.models.schemas import Topic


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ApproveRequestEventMetadata:
    """Metadata from which the approve request event is resolved"""

    request_id: int
    project: str
    owner_id: int
    operator: str = ""

    topic = Topic.APPROVE_REQUEST

    def resolve(self) -> ApproveRequestEvent:
        return ApproveRequestEvent(
            request_id=self.request_id,
            project=self.project,
            owner_id=self.owner_id,
            operator=self.operator,
            occur_at=_now(),
        )


@dataclass(frozen=True)
class RejectRequestEventMetadata:
    """Metadata from which the reject request event is resolved"""

    request_id: int
    project: str
    owner_id: int
    operator: str = ""

    topic = Topic.REJECT_REQUEST

    def resolve(self) -> RejectRequestEvent:
        return RejectRequestEvent(
            request_id=self.request_id,
            project=self.project,
            owner_id=self.owner_id,
            operator=self.operator,
            occur_at=_now(),
        )


@dataclass(frozen=True)
class PullArtifactEventMetadata:
    artifact: ArtifactRef
    tags: Sequence[str] = ()
    operator: str = ""

    topic = Topic.PULL_ARTIFACT

    def resolve(self) -> PullArtifactEvent:
        return PullArtifactEvent(
            artifact=self.artifact,
            tags=tuple(self.tags),
            operator=self.operator,
            occur_at=_now(),
        )


@dataclass(frozen=True)
class PushArtifactEventMetadata:
    artifact: ArtifactRef
    tags: Sequence[str] = ()
    operator: str = ""

    topic = Topic.PUSH_ARTIFACT

    def resolve(self) -> PushArtifactEvent:
        return PushArtifactEvent(
            artifact=self.artifact,
            tags=tuple(self.tags),
            operator=self.operator,
            occur_at=_now(),
        )


@dataclass(frozen=True)
class HookEventMetadata:
    target: HookTarget
    payload: Dict[str, Any] = field(default_factory=dict)

    topic = Topic.HOOK

    def resolve(self) -> HookEvent:
        return HookEvent(target=self.target, payload=dict(self.payload), occur_at=_now())
