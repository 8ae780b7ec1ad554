#!/usr/bin/env python3
"""
Test: Request Store
Purpose: Verify request validation, uniqueness, soft delete and listing

Tests:
- Valid names are accepted, invalid names and owners are rejected
- Duplicate live names conflict
- Delete tombstones the row as name#id and frees the name
- Deleted requests are invisible unless explicitly asked for
- Count/list honor filters, sorting and paging
"""

import asyncio
import sys

from fixtures import (
    run_tests,
    TestContext,
    assert_equal, assert_true, assert_false, assert_in, assert_raises, assert_raises_async
)

from regflow.core.errors import ConflictError, NotFoundError, ValidationError
from regflow.core.request_store import RequestStore, truncate, validate_request
from regflow.models.schemas import ApprovalStatus, RequestQuery


# ============================================================================
# Test: Name validation
# ============================================================================

async def test_valid_names_accepted():
    """Lower case names with inner separators pass validation"""
    for name in ["abc123", "ab.c-d_e", "a", "x" * 255]:
        validate_request(name, 1)


async def test_invalid_names_rejected():
    """Upper case, empty, too long and illegal characters are rejected"""
    for name in ["ABC", "", "x" * 256, "ab/cd", "-abc", "abc.", "a..b"]:
        assert_raises(ValidationError, validate_request, name, 1)


async def test_owner_required():
    """A request must have an owner"""
    assert_raises(ValidationError, validate_request, "abc", 0)
    assert_raises(ValidationError, validate_request, "abc", None)


async def test_truncate():
    """truncate keeps the suffix and the overall limit"""
    assert_equal(truncate("foo", "#7", 255), "foo#7")
    long_name = "a" * 255
    result = truncate(long_name, "#12", 255)
    assert_equal(len(result), 255)
    assert_true(result.endswith("#12"))


# ============================================================================
# Test: Create
# ============================================================================

async def test_create_request():
    """Created requests start NOT_DETERMINED with both timestamps set"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            request = await store.create("library", 1, "alice")

            assert_true(request.request_id > 0)
            assert_equal(request.is_approved, ApprovalStatus.NOT_DETERMINED.value)
            assert_false(request.deleted)
            assert_true(request.creation_time > 0)
            assert_equal(request.creation_time, request.update_time)


async def test_create_invalid_request_persists_nothing():
    """Validation failures never touch the database"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            await assert_raises_async(ValidationError, store.create("Library", 1))
            assert_equal(await store.count(), 0)


async def test_duplicate_name_conflicts():
    """Two live requests cannot share a name"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            await store.create("library", 1)
            await assert_raises_async(ConflictError, store.create("library", 2))

            # The session is still usable after the conflict
            other = await store.create("other", 2)
            assert_true(other.request_id > 0)


# ============================================================================
# Test: Soft delete
# ============================================================================

async def test_delete_tombstones_request():
    """Delete renames the row to name#id and marks it deleted"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            request = await store.create("foo", 1)
            request_id = request.request_id

            await store.delete(request_id)

            await assert_raises_async(NotFoundError, store.get(request_id))
            await assert_raises_async(NotFoundError, store.get_by_name("foo"))

            tombstone = await store.get(request_id, include_deleted=True)
            assert_equal(tombstone.name, f"foo#{request_id}")
            assert_in(f"#{request_id}", tombstone.name)
            assert_true(tombstone.deleted)


async def test_name_reusable_after_delete():
    """A deleted request frees its name"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            first = await store.create("library", 1)
            await store.delete(first.request_id)

            second = await store.create("library", 1)
            assert_true(second.request_id != first.request_id)
            assert_equal((await store.get_by_name("library")).request_id, second.request_id)


async def test_delete_missing_request():
    """Deleting an unknown id is NotFound"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            await assert_raises_async(NotFoundError, store.delete(999))


# ============================================================================
# Test: Count, list, sort, paging
# ============================================================================

async def test_list_filters_sorting_and_paging():
    """Listing excludes tombstones and honors query options"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            for name, owner in [("charlie", 1), ("alpha", 1), ("bravo", 2), ("delta", 2)]:
                await store.create(name, owner)
            deleted = await store.create("echo", 1)
            await store.delete(deleted.request_id)

            assert_equal(await store.count(), 4)
            assert_equal(await store.count(RequestQuery(owner_id=1)), 2)
            assert_equal(await store.count(RequestQuery(name="a")), 4)
            assert_equal(await store.count(RequestQuery(name="lph")), 1)
            assert_equal(await store.count(RequestQuery(names=["alpha", "delta", "echo"])), 2)

            names = [r.name for r in await store.list()]
            assert_equal(names, ["alpha", "bravo", "charlie", "delta"])

            names = [r.name for r in await store.list(RequestQuery(sort="-name"))]
            assert_equal(names, ["delta", "charlie", "bravo", "alpha"])

            page = await store.list(RequestQuery(page=2, page_size=3))
            assert_equal([r.name for r in page], ["delta"])

            await assert_raises_async(ValidationError, store.list(RequestQuery(sort="owner_id")))


async def test_name_filter_matches_wildcards_literally():
    """Underscore and percent in a name filter are plain characters"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            for name in ["a_b", "axb", "ab"]:
                await store.create(name, 1)

            assert_equal([r.name for r in await store.list(RequestQuery(name="a_b"))], ["a_b"])
            assert_equal(await store.count(RequestQuery(name="_")), 1)
            assert_equal(await store.count(RequestQuery(name="%")), 0)
            assert_equal(await store.count(RequestQuery(name="b")), 3)


async def test_list_filters_by_status():
    """is_approved filters on the decision"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            first = await store.create("first", 1)
            await store.create("second", 1)
            await store.transition(first.request_id, ApprovalStatus.APPROVED)

            approved = await store.list(RequestQuery(is_approved=ApprovalStatus.APPROVED))
            assert_equal([r.name for r in approved], ["first"])
            assert_equal(await store.count(RequestQuery(is_approved=ApprovalStatus.NOT_DETERMINED)), 1)


async def test_update_fields():
    """update persists selected attributes and bumps update_time"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            store = RequestStore(session)
            request = await store.create("library", 1)
            before = request.update_time

            request.owner_name = "bob"
            await asyncio.sleep(0.01)
            await store.update(request, "owner_name")

        async with ctx.get_session() as session:
            stored = await RequestStore(session).get(request.request_id)
            assert_equal(stored.owner_name, "bob")
            assert_true(stored.update_time > before)


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all request store tests"""
    return await run_tests("Request Store Tests", [
        ("Valid names accepted", test_valid_names_accepted),
        ("Invalid names rejected", test_invalid_names_rejected),
        ("Owner required", test_owner_required),
        ("truncate helper", test_truncate),
        ("Create request", test_create_request),
        ("Invalid request persists nothing", test_create_invalid_request_persists_nothing),
        ("Duplicate name conflicts", test_duplicate_name_conflicts),
        ("Delete tombstones request", test_delete_tombstones_request),
        ("Name reusable after delete", test_name_reusable_after_delete),
        ("Delete missing request", test_delete_missing_request),
        ("List filters, sorting and paging", test_list_filters_sorting_and_paging),
        ("Name filter matches wildcards literally", test_name_filter_matches_wildcards_literally),
        ("List filters by status", test_list_filters_by_status),
        ("Update fields", test_update_fields),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
