#!/usr/bin/env python3
"""
Test: Approval Flow
Purpose: Verify the approve/reject sequence across provisioning, quota,
status and event publication

Tests:
- Approve provisions the project, creates its quota, persists and publishes
- Quota creation is skipped when per-project quota is disabled
- Provisioning failure leaves the request undecided and publishes nothing
- Quota failure leaves the request undecided with the project in place
- Reject provisions nothing and publishes the reject event
- Published events carry the operator
- Lookup by id or name, with owners
"""

import asyncio
import sys

from fixtures import (
    run_tests,
    TestContext, RecordingHandler,
    FakeProvisioner, FakeQuotaController, FakeUserDirectory, make_user,
    assert_equal, assert_true, assert_false, assert_raises_async
)

from regflow.core.errors import DependencyError, NotFoundError, ValidationError
from regflow.core.request_controller import PROJECT_QUOTA_REFERENCE, RESOURCE_STORAGE
from regflow.models.schemas import ApprovalStatus, Topic


async def _recording_context(ctx):
    approvals = RecordingHandler("approvals")
    rejections = RecordingHandler("rejections")
    ctx.registry.register(Topic.APPROVE_REQUEST, approvals)
    ctx.registry.register(Topic.REJECT_REQUEST, rejections)
    await ctx.start()
    return approvals, rejections


# ============================================================================
# Test: Approve
# ============================================================================

async def test_approve_full_flow():
    """Approve runs provision -> quota -> status -> event"""
    async with TestContext() as ctx:
        approvals, rejections = await _recording_context(ctx)

        async with ctx.get_session() as session:
            provisioner = FakeProvisioner()
            quotas = FakeQuotaController()
            controller = ctx.controller(
                session,
                provisioner=provisioner,
                quotas=quotas,
                quota_per_project_enable=True,
                storage_per_project=1024,
            )
            request_id = await controller.create("library", 1)
            request = await controller.get(request_id)

            decided = await controller.approve(request, "admin")

            assert_equal(decided.is_approved, ApprovalStatus.APPROVED.value)
            assert_equal(provisioner.projects, [{"project_id": 100, "name": "library", "owner_id": 1}])
            assert_equal(quotas.quotas, [{
                "reference": PROJECT_QUOTA_REFERENCE,
                "reference_id": "100",
                "hard": {RESOURCE_STORAGE: 1024},
            }])

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(approvals.count(), 1)
        assert_equal(rejections.count(), 0)

        event = approvals.events[0]
        assert_equal(event.request_id, request_id)
        assert_equal(event.project, "library")
        assert_equal(event.owner_id, 1)
        assert_equal(event.operator, "admin")


async def test_approve_without_quota():
    """No quota is created when per-project quota is disabled"""
    async with TestContext() as ctx:
        approvals, _ = await _recording_context(ctx)

        async with ctx.get_session() as session:
            quotas = FakeQuotaController()
            controller = ctx.controller(session, quotas=quotas, quota_per_project_enable=False)
            request_id = await controller.create("library", 1)

            decided = await controller.approve(await controller.get(request_id), "admin")

            assert_equal(decided.is_approved, ApprovalStatus.APPROVED.value)
            assert_equal(quotas.quotas, [])

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(approvals.count(), 1)


async def test_approve_provisioning_failure():
    """A failed provisioning step leaves the request undecided and silent"""
    async with TestContext() as ctx:
        approvals, _ = await _recording_context(ctx)

        async with ctx.get_session() as session:
            quotas = FakeQuotaController()
            controller = ctx.controller(
                session,
                provisioner=FakeProvisioner(should_fail=True),
                quotas=quotas,
                quota_per_project_enable=True,
            )
            request_id = await controller.create("library", 1)

            await assert_raises_async(
                DependencyError, controller.approve(await controller.get(request_id), "admin")
            )

            stored = await controller.get(request_id)
            assert_equal(stored.is_approved, ApprovalStatus.NOT_DETERMINED.value)
            assert_equal(quotas.quotas, [])

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(approvals.count(), 0)


async def test_approve_quota_failure():
    """A failed quota step keeps the project but leaves the request undecided"""
    async with TestContext() as ctx:
        approvals, _ = await _recording_context(ctx)

        async with ctx.get_session() as session:
            provisioner = FakeProvisioner()
            controller = ctx.controller(
                session,
                provisioner=provisioner,
                quotas=FakeQuotaController(should_fail=True),
                quota_per_project_enable=True,
            )
            request_id = await controller.create("library", 1)

            await assert_raises_async(
                DependencyError, controller.approve(await controller.get(request_id), "admin")
            )

            stored = await controller.get(request_id)
            assert_equal(stored.is_approved, ApprovalStatus.NOT_DETERMINED.value)
            assert_equal(len(provisioner.projects), 1, "Provisioned project is not compensated")

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(approvals.count(), 0)


async def test_approve_succeeds_without_subscribers():
    """Publishing to an empty topic does not affect the decision"""
    async with TestContext() as ctx:
        await ctx.start()

        async with ctx.get_session() as session:
            controller = ctx.controller(session, quota_per_project_enable=False)
            request_id = await controller.create("library", 1)
            decided = await controller.approve(await controller.get(request_id), "admin")
            assert_equal(decided.is_approved, ApprovalStatus.APPROVED.value)


async def test_approve_succeeds_when_dispatcher_stopped():
    """A dropped event does not undo a committed decision"""
    async with TestContext() as ctx:
        approvals, _ = await _recording_context(ctx)
        await ctx.dispatcher.stop(timeout=1.0)

        async with ctx.get_session() as session:
            controller = ctx.controller(session, quota_per_project_enable=False)
            request_id = await controller.create("library", 1)
            decided = await controller.approve(await controller.get(request_id), "admin")

            assert_equal(decided.is_approved, ApprovalStatus.APPROVED.value)
            assert_equal(approvals.count(), 0)


# ============================================================================
# Test: Reject
# ============================================================================

async def test_reject_flow():
    """Reject persists the decision and publishes the reject event"""
    async with TestContext() as ctx:
        approvals, rejections = await _recording_context(ctx)

        async with ctx.get_session() as session:
            provisioner = FakeProvisioner()
            controller = ctx.controller(session, provisioner=provisioner)
            request_id = await controller.create("library", 1)

            decided = await controller.reject(await controller.get(request_id), "root")

            assert_equal(decided.is_approved, ApprovalStatus.REJECTED.value)
            assert_equal(provisioner.projects, [])

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(approvals.count(), 0)
        assert_equal(rejections.count(), 1)
        assert_equal(rejections.events[0].operator, "root")
        assert_equal(rejections.events[0].kind, Topic.REJECT_REQUEST)


# ============================================================================
# Test: Lookup
# ============================================================================

async def test_lookup_by_id_or_name():
    """get accepts an id or a name; exists never raises for missing requests"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            controller = ctx.controller(session)
            request_id = await controller.create("library", 1)

            assert_equal((await controller.get(request_id)).name, "library")
            assert_equal((await controller.get("library")).request_id, request_id)
            assert_true(await controller.exists("library"))
            assert_false(await controller.exists("missing"))
            assert_false(await controller.exists(9999))

            await assert_raises_async(ValidationError, controller.get(True))
            await assert_raises_async(ValidationError, controller.get(1.5))
            await assert_raises_async(ValidationError, controller.get_by_name(""))
            await assert_raises_async(NotFoundError, controller.get_by_name("missing"))


async def test_get_and_list_with_owner():
    """Owner names are filled from the user directory"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            users = FakeUserDirectory([make_user(1, "alice"), make_user(2, "bob")])
            controller = ctx.controller(session, users=users)
            await controller.create("alpha", 1)
            await controller.create("bravo", 2)
            await controller.create("charlie", 3)

            request = await controller.get("alpha", with_owner=True)
            assert_equal(request.owner_name, "alice")

            owners = {r.name: r.owner_name for r in await controller.list(with_owner=True)}
            assert_equal(owners, {"alpha": "alice", "bravo": "bob", "charlie": None})
            assert_equal(await controller.count(), 3)


async def test_delete_via_controller():
    """Deleted requests disappear from lookups"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            controller = ctx.controller(session)
            request_id = await controller.create("library", 1)
            await controller.delete(request_id)

            assert_false(await controller.exists(request_id))
            assert_false(await controller.exists("library"))


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all approval flow tests"""
    return await run_tests("Approval Flow Tests", [
        ("Approve full flow", test_approve_full_flow),
        ("Approve without quota", test_approve_without_quota),
        ("Approve provisioning failure", test_approve_provisioning_failure),
        ("Approve quota failure", test_approve_quota_failure),
        ("Approve without subscribers", test_approve_succeeds_without_subscribers),
        ("Approve with stopped dispatcher", test_approve_succeeds_when_dispatcher_stopped),
        ("Reject flow", test_reject_flow),
        ("Lookup by id or name", test_lookup_by_id_or_name),
        ("Get and list with owner", test_get_and_list_with_owner),
        ("Delete via controller", test_delete_via_controller),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
