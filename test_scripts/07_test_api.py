#!/usr/bin/env python3
"""
Test: HTTP API
Purpose: Verify the request endpoints end to end against a test database

Tests:
- Create returns 201 with a Location header
- List returns X-Total-Count, a prev/next Link header, and honors filters
- Get/Delete/Approve/Reject address requests by id or by name
- X-Is-Resource-Name forces name interpretation
- Errors use the {"errors": [{"code", "message"}]} body
- Every response carries X-Trace-Id
- The lifespan can run twice in one process
"""

import asyncio
import sys
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from fixtures import (
    run_tests,
    TestContext, RecordingHandler,
    FakeProvisioner, FakeQuotaController, FakeUserDirectory, make_user,
    assert_equal, assert_true, assert_false, assert_in
)

from regflow.api.errors import register_exception_handlers
from regflow.api.middleware import TraceMiddleware
from regflow.api.v1 import router
from regflow.api.v1.routes.requests import parse_request_name_or_id
from regflow.core.events.metadata import PullArtifactEventMetadata
from regflow.core.events.types import ArtifactRef
from regflow.core.startup import lifespan
from regflow.models import get_db
from regflow.models.orm import Artifact, Repository
from regflow.models.schemas import Topic


def build_app(ctx, provisioner=None):
    """App wired to the test context instead of the lifespan"""
    app = FastAPI()
    app.add_middleware(TraceMiddleware)
    register_exception_handlers(app)
    app.include_router(router)

    async def override_get_db():
        async with ctx.db.session() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.db = ctx.db
    app.state.dispatcher = ctx.dispatcher
    app.state.provisioner = provisioner or FakeProvisioner()
    app.state.quotas = FakeQuotaController()
    app.state.users = FakeUserDirectory([make_user(1, "alice")])
    return app


@asynccontextmanager
async def api_client(provisioner=None):
    async with TestContext() as ctx:
        approvals = RecordingHandler("approvals")
        ctx.registry.register(Topic.APPROVE_REQUEST, approvals)
        await ctx.start()

        app = build_app(ctx, provisioner)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://regflow") as client:
            yield client, ctx, approvals


async def _create(client, name, owner_id=1):
    response = await client.post("/api/v2.0/requests", json={"name": name, "owner_id": owner_id})
    assert_equal(response.status_code, 201, response.text)
    return response.json()["request_id"]


# ============================================================================
# Test: Path parsing
# ============================================================================

async def test_parse_request_name_or_id():
    """Numeric segments are ids unless flagged as names"""
    assert_equal(parse_request_name_or_id("12"), 12)
    assert_equal(parse_request_name_or_id("library"), "library")
    assert_equal(parse_request_name_or_id("12", is_resource_name=True), "12")


# ============================================================================
# Test: Endpoints
# ============================================================================

async def test_create_and_get():
    """Create returns a Location that resolves to the request"""
    async with api_client() as (client, _, _):
        response = await client.post("/api/v2.0/requests", json={"name": "library", "owner_id": 1})
        assert_equal(response.status_code, 201)
        request_id = response.json()["request_id"]
        assert_equal(response.headers["Location"], f"/api/v2.0/requests/{request_id}")
        assert_true(response.headers.get("X-Trace-Id"))

        response = await client.get(response.headers["Location"])
        assert_equal(response.status_code, 200)
        body = response.json()
        assert_equal(body["name"], "library")
        assert_equal(body["owner_name"], "alice")
        assert_equal(body["is_approved"], 0)

        response = await client.get("/api/v2.0/requests/library")
        assert_equal(response.json()["request_id"], request_id)


async def test_create_errors():
    """Invalid and duplicate names map to 400 and 409 error bodies"""
    async with api_client() as (client, _, _):
        response = await client.post("/api/v2.0/requests", json={"name": "Bad/Name", "owner_id": 1})
        assert_equal(response.status_code, 400)
        assert_equal(response.json()["errors"][0]["code"], "BAD_REQUEST")

        await _create(client, "library")
        response = await client.post("/api/v2.0/requests", json={"name": "library", "owner_id": 1})
        assert_equal(response.status_code, 409)
        assert_equal(response.json()["errors"][0]["code"], "CONFLICT")

        response = await client.post("/api/v2.0/requests", json={"owner_id": 1})
        assert_equal(response.status_code, 400)


async def test_list_with_total_count():
    """List reports the unpaged total in X-Total-Count and links neighbouring pages"""
    async with api_client() as (client, _, _):
        for name in ["alpha", "bravo", "charlie"]:
            await _create(client, name)

        response = await client.get("/api/v2.0/requests", params={"page": 1, "page_size": 2})
        assert_equal(response.status_code, 200)
        assert_equal(response.headers["X-Total-Count"], "3")
        assert_equal([r["name"] for r in response.json()], ["alpha", "bravo"])
        link = response.headers["Link"]
        assert_in('rel="next"', link)
        assert_in("page=2", link)
        assert_in("page_size=2", link)
        assert_false('rel="prev"' in link)

        response = await client.get("/api/v2.0/requests", params={"page": 2, "page_size": 2, "owner_id": 1})
        assert_equal([r["name"] for r in response.json()], ["charlie"])
        link = response.headers["Link"]
        assert_true(link.startswith("</api/v2.0/requests?"), link)
        assert_in('rel="prev"', link)
        assert_in("page=1", link)
        assert_in("owner_id=1", link)
        assert_false('rel="next"' in link)

        response = await client.get("/api/v2.0/requests", params={"name": "rav"})
        assert_equal(response.headers["X-Total-Count"], "1")
        assert_false("Link" in response.headers)


async def test_head_exists():
    """HEAD reports existence by name"""
    async with api_client() as (client, _, _):
        await _create(client, "library")

        response = await client.head("/api/v2.0/requests", params={"request_name": "library"})
        assert_equal(response.status_code, 200)
        response = await client.head("/api/v2.0/requests", params={"request_name": "missing"})
        assert_equal(response.status_code, 404)


async def test_resource_name_header():
    """A numeric name is reachable only with X-Is-Resource-Name"""
    async with api_client() as (client, _, _):
        await _create(client, "2024")

        response = await client.get("/api/v2.0/requests/2024", headers={"X-Is-Resource-Name": "true"})
        assert_equal(response.status_code, 200)
        assert_equal(response.json()["name"], "2024")

        response = await client.get("/api/v2.0/requests/2024")
        assert_equal(response.status_code, 404)
        assert_equal(response.json()["errors"][0]["code"], "NOT_FOUND")


async def test_approve_and_reject():
    """Approve publishes with the operator header; decided requests conflict"""
    async with api_client() as (client, ctx, approvals):
        request_id = await _create(client, "library")

        response = await client.put(
            f"/api/v2.0/requests/{request_id}/approve", headers={"X-Operator": "root"}
        )
        assert_equal(response.status_code, 200, response.text)
        assert_equal(response.json()["is_approved"], 1)

        assert_true(await ctx.dispatcher.join(timeout=2.0))
        assert_equal(approvals.count(), 1)
        assert_equal(approvals.events[0].operator, "root")

        response = await client.put("/api/v2.0/requests/library/reject")
        assert_equal(response.status_code, 409)
        assert_in("approved", response.json()["errors"][0]["message"])


async def test_approve_dependency_failure():
    """Provisioning failures map to 502 and leave the request pending"""
    async with api_client(provisioner=FakeProvisioner(should_fail=True)) as (client, _, approvals):
        request_id = await _create(client, "library")

        response = await client.put(f"/api/v2.0/requests/{request_id}/approve")
        assert_equal(response.status_code, 502)
        assert_equal(response.json()["errors"][0]["code"], "DEPENDENCY_FAILURE")

        response = await client.get(f"/api/v2.0/requests/{request_id}")
        assert_equal(response.json()["is_approved"], 0)


async def test_delete_request():
    """Delete frees the name"""
    async with api_client() as (client, _, _):
        request_id = await _create(client, "library")

        response = await client.delete(f"/api/v2.0/requests/{request_id}")
        assert_equal(response.status_code, 200)

        response = await client.get(f"/api/v2.0/requests/{request_id}")
        assert_equal(response.status_code, 404)

        await _create(client, "library")


async def test_health_and_metrics():
    async with api_client() as (client, _, _):
        await _create(client, "library")

        response = await client.get("/health")
        assert_equal(response.status_code, 200)
        assert_equal(response.json()["status"], "healthy")

        response = await client.get("/metrics")
        body = response.json()
        assert_equal(body["requests"]["total"], 1)
        assert_equal(body["requests"]["by_status"], {"NOT_DETERMINED": 1})
        assert_in("published", body["dispatcher"])


# ============================================================================
# Test: Lifespan
# ============================================================================

async def test_lifespan_restarts():
    """The app can start twice in one process; each run dispatches pulls"""
    async with TestContext() as ctx:
        async with ctx.db.session() as session:
            session.add(Repository(repository_id=42, name="library/nginx", pull_count=0))
            await session.flush()
            session.add(Artifact(id=7, repository_id=42, repository_name="library/nginx", digest="sha256:abc"))

        app = FastAPI()
        app.state.db = ctx.db
        registries = []

        for _ in range(2):
            async with lifespan(app):
                registries.append(app.state.registry)
                await app.state.dispatcher.notify(PullArtifactEventMetadata(
                    artifact=ArtifactRef(id=7, repository_id=42, repository_name="library/nginx", digest="sha256:abc"),
                ))
                assert_true(await app.state.dispatcher.join(timeout=5.0))
                assert_equal(app.state.dispatcher.get_stats()["handled"], 1)

        assert_true(registries[0] is not registries[1])

        async with ctx.get_session() as session:
            repository = await session.get(Repository, 42)
            assert_equal(repository.pull_count, 2)


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all API tests"""
    return await run_tests("HTTP API Tests", [
        ("Parse request name or id", test_parse_request_name_or_id),
        ("Create and get", test_create_and_get),
        ("Create errors", test_create_errors),
        ("List with total count", test_list_with_total_count),
        ("HEAD exists", test_head_exists),
        ("X-Is-Resource-Name header", test_resource_name_header),
        ("Approve and reject", test_approve_and_reject),
        ("Approve dependency failure", test_approve_dependency_failure),
        ("Delete request", test_delete_request),
        ("Health and metrics", test_health_and_metrics),
        ("Lifespan restarts", test_lifespan_restarts),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
