#!/usr/bin/env python3
"""
Test: Event Types and Metadata
Purpose: Verify metadata resolution and the event union

Tests:
- Each metadata resolves to the event of its topic, stamped with the current time
- Events are immutable
- The union parses payloads by their kind
"""

import asyncio
import sys
from datetime import datetime, timezone

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from fixtures import (
    run_tests,
    assert_equal, assert_true, assert_raises
)

from regflow.core.events.metadata import (
    ApproveRequestEventMetadata,
    HookEventMetadata,
    PullArtifactEventMetadata,
    PushArtifactEventMetadata,
    RejectRequestEventMetadata,
)
from regflow.core.events.types import (
    ArtifactRef,
    Event,
    HookEvent,
    HookTarget,
    PullArtifactEvent,
    RejectRequestEvent,
)
from regflow.models.schemas import Topic

ARTIFACT = ArtifactRef(id=1, repository_id=2, repository_name="library/redis", digest="sha256:def")


async def test_request_metadata_resolves():
    """Approve/reject metadata resolve to request events on their topics"""
    before = datetime.now(timezone.utc)
    approve = ApproveRequestEventMetadata(request_id=5, project="library", owner_id=3, operator="admin")
    event = approve.resolve()
    after = datetime.now(timezone.utc)

    assert_equal(approve.topic, Topic.APPROVE_REQUEST)
    assert_equal(event.kind, Topic.APPROVE_REQUEST)
    assert_equal((event.request_id, event.project, event.owner_id, event.operator), (5, "library", 3, "admin"))
    assert_true(before <= event.occur_at <= after)

    reject = RejectRequestEventMetadata(request_id=5, project="library", owner_id=3)
    assert_equal(reject.topic, Topic.REJECT_REQUEST)
    assert_equal(reject.resolve().kind, Topic.REJECT_REQUEST)


async def test_artifact_metadata_resolves():
    """Artifact metadata copies its tags into an immutable tuple"""
    tags = ["latest", "v1"]
    event = PullArtifactEventMetadata(artifact=ARTIFACT, tags=tags, operator="bob").resolve()
    tags.append("v2")

    assert_equal(event.kind, Topic.PULL_ARTIFACT)
    assert_equal(event.tags, ("latest", "v1"))
    assert_equal(event.artifact, ARTIFACT)

    push = PushArtifactEventMetadata(artifact=ARTIFACT)
    assert_equal(push.topic, Topic.PUSH_ARTIFACT)
    assert_equal(push.resolve().tags, ())


async def test_hook_metadata_resolves():
    payload = {"event": "push"}
    metadata = HookEventMetadata(target=HookTarget(address="https://example.com/hook"), payload=payload)
    event = metadata.resolve()

    assert_equal(metadata.topic, Topic.HOOK)
    assert_equal(event.target.type, "http")
    assert_equal(event.payload, payload)


async def test_events_are_frozen():
    """Handlers cannot mutate a shared event"""
    event = RejectRequestEventMetadata(request_id=1, project="library", owner_id=1).resolve()

    def mutate():
        event.project = "other"

    assert_raises(PydanticValidationError, mutate)
    assert_equal(event.project, "library")


async def test_union_parses_by_kind():
    """The event union selects the model from the kind field"""
    adapter = TypeAdapter(Event)
    now = datetime.now(timezone.utc).isoformat()

    pulled = adapter.validate_python({
        "kind": "PULL_ARTIFACT",
        "artifact": ARTIFACT.model_dump(),
        "tags": ["latest"],
        "occur_at": now,
    })
    assert_true(isinstance(pulled, PullArtifactEvent))

    hook = adapter.validate_python({
        "kind": "HOOK",
        "target": {"type": "smtp", "address": "ops@example.com"},
        "payload": {"a": 1},
        "occur_at": now,
    })
    assert_true(isinstance(hook, HookEvent))

    rejected = adapter.validate_python({
        "kind": "REJECT_REQUEST",
        "request_id": 1,
        "project": "library",
        "owner_id": 1,
        "occur_at": now,
    })
    assert_true(isinstance(rejected, RejectRequestEvent))

    assert_raises(PydanticValidationError, adapter.validate_python, {"kind": "UNKNOWN", "occur_at": now})


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all event tests"""
    return await run_tests("Event Type Tests", [
        ("Request metadata resolves", test_request_metadata_resolves),
        ("Artifact metadata resolves", test_artifact_metadata_resolves),
        ("Hook metadata resolves", test_hook_metadata_resolves),
        ("Events are frozen", test_events_are_frozen),
        ("Union parses by kind", test_union_parses_by_kind),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
