#!/usr/bin/env python3
"""
Test: Dispatcher
Purpose: Verify topic routing, background execution and failure isolation

Tests:
- Lookup of an unsubscribed topic is empty and publishing to it is a no-op
- Publish returns before slow handlers finish
- Stateless handlers run concurrently
- Stateful handlers see one event at a time, in publish order
- Handler errors and timeouts are counted, never raised
- The registry is frozen once the dispatcher starts
- Events published after stop are dropped
- Notified artifact pulls reach the pull handler; one failed write never blocks the other
"""

import asyncio
import sys
import time
from datetime import datetime, timezone

from fixtures import (
    run_tests,
    TestContext, RecordingHandler,
    FakeTagLookup, FakeArtifactStore, FakeRepositoryStore,
    assert_equal, assert_true, assert_raises
)

from regflow.core.events.handlers import PullArtifactHandler
from regflow.core.events.metadata import ApproveRequestEventMetadata, PullArtifactEventMetadata
from regflow.core.events.types import ApproveRequestEvent, ArtifactRef
from regflow.models.schemas import Topic


def approve_event(request_id=1, project="library"):
    return ApproveRequestEvent(
        request_id=request_id,
        project=project,
        owner_id=1,
        operator="admin",
        occur_at=datetime.now(timezone.utc),
    )


# ============================================================================
# Test: Routing
# ============================================================================

async def test_lookup_unsubscribed_topic():
    """Unsubscribed topics resolve to an empty tuple"""
    async with TestContext() as ctx:
        assert_equal(ctx.registry.lookup(Topic.HOOK), ())
        assert_equal(ctx.registry.lookup("NO_SUCH_TOPIC"), ())


async def test_publish_without_subscribers():
    """Publishing to a topic nobody listens on does nothing"""
    async with TestContext() as ctx:
        await ctx.start()
        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event())

        stats = ctx.dispatcher.get_stats()
        assert_equal(stats["published"], 0)
        assert_equal(stats["scheduled"], 0)
        assert_equal(stats["pending_tasks"], 0)


async def test_publish_routes_to_topic_handlers():
    """Only handlers of the published topic receive the event"""
    async with TestContext() as ctx:
        approvals = RecordingHandler("approvals")
        rejections = RecordingHandler("rejections")
        ctx.registry.register(Topic.APPROVE_REQUEST, approvals)
        ctx.registry.register(Topic.REJECT_REQUEST, rejections)
        await ctx.start()

        event = approve_event()
        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, event)
        assert_true(await ctx.dispatcher.join(timeout=2.0))

        assert_equal(approvals.events, [event])
        assert_equal(rejections.count(), 0)


async def test_duplicate_registration_ignored():
    """Registering the same handler twice on a topic keeps one subscription"""
    async with TestContext() as ctx:
        handler = RecordingHandler()
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        assert_equal(len(ctx.registry.lookup(Topic.APPROVE_REQUEST)), 1)


# ============================================================================
# Test: Background execution
# ============================================================================

async def test_publish_does_not_wait_for_handlers():
    """A slow handler does not delay the publisher"""
    async with TestContext() as ctx:
        slow = RecordingHandler("slow", delay=0.5)
        ctx.registry.register(Topic.APPROVE_REQUEST, slow)
        await ctx.start()

        started = time.monotonic()
        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event())
        elapsed = time.monotonic() - started

        assert_true(elapsed < 0.1, f"publish took {elapsed:.3f}s")
        assert_equal(slow.count(), 0)

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(slow.count(), 1)


async def test_stateless_handlers_run_concurrently():
    """Stateless handler invocations overlap"""
    async with TestContext() as ctx:
        handler = RecordingHandler("stateless", delay=0.2)
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        await ctx.start()

        started = time.monotonic()
        for i in range(5):
            await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event(request_id=i))
        assert_true(await ctx.dispatcher.join(timeout=2.0))
        elapsed = time.monotonic() - started

        assert_equal(handler.count(), 5)
        assert_true(handler.max_active > 1, "Expected overlapping invocations")
        assert_true(elapsed < 0.9, f"5 x 0.2s handlers took {elapsed:.3f}s")


async def test_stateful_handler_serialized_in_order():
    """A stateful handler sees one event at a time, in publish order"""
    async with TestContext() as ctx:
        handler = RecordingHandler("stateful", stateful=True, delay=0.02)
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        await ctx.start()

        for i in range(10):
            await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event(request_id=i))
        assert_true(await ctx.dispatcher.join(timeout=5.0))

        assert_equal([e.request_id for e in handler.events], list(range(10)))
        assert_equal(handler.max_active, 1)


# ============================================================================
# Test: Failure isolation
# ============================================================================

async def test_failing_handler_is_isolated():
    """One failing handler neither raises nor stops its siblings"""
    async with TestContext() as ctx:
        broken = RecordingHandler("broken", should_fail=True)
        healthy = RecordingHandler("healthy")
        ctx.registry.register(Topic.APPROVE_REQUEST, broken)
        ctx.registry.register(Topic.APPROVE_REQUEST, healthy)
        await ctx.start()

        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event())
        assert_true(await ctx.dispatcher.join(timeout=2.0))

        stats = ctx.dispatcher.get_stats()
        assert_equal(healthy.count(), 1)
        assert_equal(stats["failed"], 1)
        assert_equal(stats["handled"], 1)


async def test_handler_timeout_counted():
    """A handler exceeding its timeout is cancelled and counted"""
    async with TestContext(handler_timeout=0.1) as ctx:
        stuck = RecordingHandler("stuck", delay=2.0)
        ctx.registry.register(Topic.APPROVE_REQUEST, stuck)
        await ctx.start()

        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event())
        assert_true(await ctx.dispatcher.join(timeout=1.0))

        stats = ctx.dispatcher.get_stats()
        assert_equal(stats["timed_out"], 1)
        assert_equal(stuck.count(), 0)


# ============================================================================
# Test: Lifecycle
# ============================================================================

async def test_registry_frozen_after_start():
    """Late registration is rejected"""
    async with TestContext() as ctx:
        await ctx.start()
        assert_true(ctx.registry.frozen)
        assert_raises(RuntimeError, ctx.registry.register, Topic.HOOK, RecordingHandler())


async def test_publish_after_stop_dropped():
    """Events published after shutdown are dropped and counted"""
    async with TestContext() as ctx:
        handler = RecordingHandler()
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        await ctx.start()
        await ctx.dispatcher.stop(timeout=1.0)

        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event())

        assert_equal(handler.count(), 0)
        assert_equal(ctx.dispatcher.get_stats()["dropped"], 1)


async def test_stop_drains_pending_work():
    """Stop waits for scheduled handlers within its timeout"""
    async with TestContext() as ctx:
        handler = RecordingHandler(delay=0.1)
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        await ctx.start()

        await ctx.dispatcher.publish(Topic.APPROVE_REQUEST, approve_event())
        await ctx.dispatcher.stop(timeout=2.0)

        assert_equal(handler.count(), 1)
        assert_equal(ctx.dispatcher.get_stats()["running"], False)


async def test_notify_resolves_metadata():
    """notify resolves metadata into an event on the metadata's topic"""
    async with TestContext() as ctx:
        handler = RecordingHandler()
        ctx.registry.register(Topic.APPROVE_REQUEST, handler)
        await ctx.start()

        await ctx.dispatcher.notify(ApproveRequestEventMetadata(
            request_id=3, project="library", owner_id=1, operator="admin"
        ))
        assert_true(await ctx.dispatcher.join(timeout=2.0))

        assert_equal(handler.count(), 1)
        event = handler.events[0]
        assert_equal(event.kind, Topic.APPROVE_REQUEST)
        assert_equal(event.request_id, 3)
        assert_equal(event.operator, "admin")


# ============================================================================
# Test: Artifact pulls through the dispatcher
# ============================================================================

async def _pull_through_dispatcher(tags, artifacts, repositories):
    """Notify one pull of library/nginx:latest and wait for the handler"""
    async with TestContext() as ctx:
        ctx.registry.register(Topic.PULL_ARTIFACT, PullArtifactHandler(
            tags, artifacts, repositories,
            pull_time_update_disable=False,
            pull_count_update_disable=False,
        ))
        await ctx.start()

        await ctx.dispatcher.notify(PullArtifactEventMetadata(
            artifact=ArtifactRef(id=7, repository_id=42, repository_name="library/nginx", digest="sha256:abc"),
            tags=["latest"],
        ))
        assert_true(await ctx.dispatcher.join(timeout=2.0))
        return ctx.dispatcher.get_stats()


async def test_pull_updates_time_and_count():
    """A notified pull updates the tagged pull time and the repository count"""
    tags = FakeTagLookup({(7, "latest"): 99})
    artifacts = FakeArtifactStore()
    repositories = FakeRepositoryStore()

    stats = await _pull_through_dispatcher(tags, artifacts, repositories)

    assert_equal(tags.calls, [(7, "latest")])
    assert_equal(len(artifacts.calls), 1)
    artifact_id, tag_id, pull_time = artifacts.calls[0]
    assert_equal((artifact_id, tag_id), (7, 99))
    assert_true(pull_time is not None)
    assert_equal(repositories.calls, [42])
    assert_equal(stats["handled"], 1)
    assert_equal(stats["failed"], 0)


async def test_pull_count_survives_pull_time_failure():
    """A failed pull time write still bumps the repository count"""
    artifacts = FakeArtifactStore(should_fail=True)
    repositories = FakeRepositoryStore()

    stats = await _pull_through_dispatcher(FakeTagLookup({(7, "latest"): 99}), artifacts, repositories)

    assert_equal([(a, t) for a, t, _ in artifacts.calls], [(7, 99)])
    assert_equal(repositories.calls, [42])
    assert_equal(stats["handled"], 1)
    assert_equal(stats["failed"], 0)


async def test_pull_time_survives_pull_count_failure():
    """A failed pull count write still records the pull time"""
    artifacts = FakeArtifactStore()
    repositories = FakeRepositoryStore(should_fail=True)

    stats = await _pull_through_dispatcher(FakeTagLookup(should_fail=True), artifacts, repositories)

    assert_equal([(a, t) for a, t, _ in artifacts.calls], [(7, None)])
    assert_equal(repositories.calls, [42])
    assert_equal(stats["handled"], 1)


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all dispatcher tests"""
    return await run_tests("Dispatcher Tests", [
        ("Lookup unsubscribed topic", test_lookup_unsubscribed_topic),
        ("Publish without subscribers", test_publish_without_subscribers),
        ("Publish routes to topic handlers", test_publish_routes_to_topic_handlers),
        ("Duplicate registration ignored", test_duplicate_registration_ignored),
        ("Publish does not wait for handlers", test_publish_does_not_wait_for_handlers),
        ("Stateless handlers run concurrently", test_stateless_handlers_run_concurrently),
        ("Stateful handler serialized in order", test_stateful_handler_serialized_in_order),
        ("Failing handler is isolated", test_failing_handler_is_isolated),
        ("Handler timeout counted", test_handler_timeout_counted),
        ("Registry frozen after start", test_registry_frozen_after_start),
        ("Publish after stop dropped", test_publish_after_stop_dropped),
        ("Stop drains pending work", test_stop_drains_pending_work),
        ("notify resolves metadata", test_notify_resolves_metadata),
        ("Pull updates time and count", test_pull_updates_time_and_count),
        ("Pull count survives pull time failure", test_pull_count_survives_pull_time_failure),
        ("Pull time survives pull count failure", test_pull_time_survives_pull_count_failure),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
