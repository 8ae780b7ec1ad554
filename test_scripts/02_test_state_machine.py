#!/usr/bin/env python3
"""
Test: Request State Machine
Purpose: Verify approve/reject transitions and their guards

Tests:
- NOT_DETERMINED moves to APPROVED or REJECTED
- Both decisions are terminal
- A stale in-memory request cannot win a second decision
- Deleted requests cannot be decided
"""

import asyncio
import sys

from fixtures import (
    run_tests,
    TestContext, FakeProvisioner,
    assert_equal, assert_true, assert_raises_async
)

from regflow.core.errors import ConflictError, NotFoundError
from regflow.core.request_store import RequestStore
from regflow.models.schemas import ApprovalStatus, STATUS_TRANSITIONS


# ============================================================================
# Test: Transition table
# ============================================================================

async def test_transition_table():
    """Only NOT_DETERMINED has outgoing transitions"""
    assert_equal(
        set(STATUS_TRANSITIONS[ApprovalStatus.NOT_DETERMINED]),
        {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED},
    )
    assert_equal(STATUS_TRANSITIONS[ApprovalStatus.APPROVED], [])
    assert_equal(STATUS_TRANSITIONS[ApprovalStatus.REJECTED], [])


# ============================================================================
# Test: Valid transitions
# ============================================================================

async def test_approve_transition():
    """NOT_DETERMINED -> APPROVED"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            controller = ctx.controller(session, quota_per_project_enable=False)
            request_id = await controller.create("library", 1)
            request = await controller.get(request_id)

            decided = await controller.approve(request, "admin")
            assert_equal(decided.is_approved, ApprovalStatus.APPROVED.value)
            assert_true(decided.update_time >= decided.creation_time)


async def test_reject_transition():
    """NOT_DETERMINED -> REJECTED"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            controller = ctx.controller(session)
            request_id = await controller.create("library", 1)
            request = await controller.get(request_id)

            decided = await controller.reject(request, "admin")
            assert_equal(decided.is_approved, ApprovalStatus.REJECTED.value)


# ============================================================================
# Test: Terminal states
# ============================================================================

async def test_approved_is_terminal():
    """An approved request can be neither approved nor rejected again"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            provisioner = FakeProvisioner()
            controller = ctx.controller(session, provisioner=provisioner, quota_per_project_enable=False)
            request_id = await controller.create("library", 1)
            request = await controller.approve(await controller.get(request_id))

            await assert_raises_async(ConflictError, controller.approve(request))
            await assert_raises_async(ConflictError, controller.reject(request))

            stored = await controller.get(request_id)
            assert_equal(stored.is_approved, ApprovalStatus.APPROVED.value)
            assert_equal(len(provisioner.projects), 1, "Second approve must not provision")


async def test_rejected_is_terminal():
    """A rejected request can never be approved"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            provisioner = FakeProvisioner()
            controller = ctx.controller(session, provisioner=provisioner)
            request_id = await controller.create("library", 1)
            request = await controller.reject(await controller.get(request_id))

            await assert_raises_async(ConflictError, controller.approve(request))

            stored = await controller.get(request_id)
            assert_equal(stored.is_approved, ApprovalStatus.REJECTED.value)
            assert_equal(provisioner.projects, [])


# ============================================================================
# Test: Concurrent decisions
# ============================================================================

async def test_stale_request_loses_race():
    """The conditional update rejects a decision based on a stale read"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            request = await store.create("library", 1)
            request_id = request.request_id

        async with ctx.get_session() as first_session, ctx.get_session() as second_session:
            first = ctx.controller(first_session, quota_per_project_enable=False)
            second = ctx.controller(second_session)

            # Both callers observed NOT_DETERMINED
            stale_first = await first.get(request_id)
            stale_second = await second.get(request_id)

            await second.reject(stale_second, "bob")
            await assert_raises_async(ConflictError, first.approve(stale_first, "alice"))

        async with ctx.get_session() as session:
            stored = await RequestStore(session).get(request_id)
            assert_equal(stored.is_approved, ApprovalStatus.REJECTED.value)


async def test_transition_on_deleted_request():
    """A tombstoned request cannot be decided"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            request = await store.create("library", 1)
            await store.delete(request.request_id)

            await assert_raises_async(
                NotFoundError, store.transition(request.request_id, ApprovalStatus.APPROVED)
            )


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all state machine tests"""
    return await run_tests("Request State Machine Tests", [
        ("Transition table", test_transition_table),
        ("Valid: NOT_DETERMINED -> APPROVED", test_approve_transition),
        ("Valid: NOT_DETERMINED -> REJECTED", test_reject_transition),
        ("Invalid: From APPROVED", test_approved_is_terminal),
        ("Invalid: From REJECTED", test_rejected_is_terminal),
        ("Stale request loses race", test_stale_request_loses_race),
        ("Transition on deleted request", test_transition_on_deleted_request),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
