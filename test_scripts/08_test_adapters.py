#!/usr/bin/env python3
"""
Test: Adapters
Purpose: Verify the SQL collaborators, the job service client and the SMTP sender

Tests:
- Project provisioning and quota creation write their tables; duplicates conflict
- User directory lookups skip deleted users
- Pull time and pull count updates land on artifact, tag and repository rows
- Job submission posts the job body with the secret header
- Job service errors surface as DependencyError
- SMTP sender logs in, sends, and wraps failures
"""

import asyncio
import json
import sys
from datetime import datetime, timezone

import httpx
from sqlalchemy import select

from fixtures import (
    run_tests,
    TestContext,
    assert_equal, assert_true, assert_raises_async
)

from regflow.adapters import (
    JobScanTrigger,
    JobServiceClient,
    SmtpMailSender,
    SqlArtifactStore,
    SqlProjectProvisioner,
    SqlQuotaController,
    SqlRepositoryStore,
    SqlTagLookup,
    SqlUserDirectory,
)
from regflow.adapters import mailer
from regflow.core.errors import ConflictError, DependencyError, NotFoundError
from regflow.core.events.types import ArtifactRef
from regflow.models.orm import Artifact, Project, Quota, Repository, Tag, User


async def _seed_registry(ctx):
    """One user, one repository with an artifact tagged latest"""
    async with ctx.db.session() as session:
        session.add_all([
            User(user_id=1, username="alice", email="alice@example.com"),
            User(user_id=2, username="ghost", email="ghost@example.com", deleted=True),
            Repository(repository_id=42, name="library/nginx", pull_count=0),
        ])
        await session.flush()
        session.add(Artifact(id=7, repository_id=42, repository_name="library/nginx", digest="sha256:abc"))
        await session.flush()
        session.add(Tag(id=99, artifact_id=7, repository_id=42, name="latest"))


# ============================================================================
# Test: SQL collaborators
# ============================================================================

async def test_project_and_quota_creation():
    async with TestContext() as ctx:
        await _seed_registry(ctx)
        provisioner = SqlProjectProvisioner(ctx.db)
        quotas = SqlQuotaController(ctx.db)

        project_id = await provisioner.create_project("library", 1)
        await quotas.create_quota("project", str(project_id), {"storage": -1})

        async with ctx.get_session() as session:
            project = (await session.execute(select(Project).where(Project.project_id == project_id))).scalar_one()
            quota = (await session.execute(select(Quota))).scalar_one()
            assert_equal(project.name, "library")
            assert_equal(quota.reference_id, str(project_id))
            assert_equal(quota.hard_dict, {"storage": -1})

        await assert_raises_async(ConflictError, provisioner.create_project("library", 1))
        await assert_raises_async(ConflictError, quotas.create_quota("project", str(project_id), {}))


async def test_user_directory():
    async with TestContext() as ctx:
        await _seed_registry(ctx)
        users = SqlUserDirectory(ctx.db)

        alice = await users.get_by_id(1)
        assert_equal((alice.username, alice.email), ("alice", "alice@example.com"))
        await assert_raises_async(NotFoundError, users.get_by_id(2))

        found = await users.list_by_ids([1, 2, 3])
        assert_equal([u.user_id for u in found], [1])
        assert_equal(await users.list_by_ids([]), [])


async def test_pull_time_and_count_updates():
    async with TestContext() as ctx:
        await _seed_registry(ctx)
        tags = SqlTagLookup(ctx.db)
        artifacts = SqlArtifactStore(ctx.db)
        repositories = SqlRepositoryStore(ctx.db)

        tag_id = await tags.find_tag_id(7, "latest")
        assert_equal(tag_id, 99)
        assert_equal(await tags.find_tag_id(7, "missing"), None)

        pulled_at = datetime.now(timezone.utc)
        await artifacts.update_pull_time(7, tag_id, pulled_at)
        await repositories.add_pull_count(42)
        await repositories.add_pull_count(42)

        async with ctx.get_session() as session:
            artifact = (await session.execute(select(Artifact).where(Artifact.id == 7))).scalar_one()
            tag = (await session.execute(select(Tag).where(Tag.id == 99))).scalar_one()
            repository = (await session.execute(
                select(Repository).where(Repository.repository_id == 42)
            )).scalar_one()

            assert_equal(artifact.pull_time, pulled_at.timestamp())
            assert_equal(tag.pull_time, pulled_at.timestamp())
            assert_equal(repository.pull_count, 2)

        await assert_raises_async(NotFoundError, artifacts.update_pull_time(1000, None, pulled_at))
        await assert_raises_async(NotFoundError, repositories.add_pull_count(1000))


# ============================================================================
# Test: Job service client
# ============================================================================

async def test_job_submission():
    """Jobs are posted with the secret header and the job id is returned"""
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(202, json={"job": {"id": "abc123"}})

    client = JobServiceClient(
        base_url="http://jobservice:8080/",
        secret="s3cret",
        transport=httpx.MockTransport(handler),
    )
    job_id = await client.submit("WEBHOOK", {"address": "https://example.com"})

    assert_equal(job_id, "abc123")
    request = seen[0]
    assert_equal(str(request.url), "http://jobservice:8080/api/v1/jobs")
    assert_equal(request.headers["Authorization"], "Harbor-Secret s3cret")
    assert_equal(json.loads(request.content), {
        "job": {
            "name": "WEBHOOK",
            "parameters": {"address": "https://example.com"},
            "metadata": {"kind": "Generic"},
        }
    })


async def test_job_submission_rejected():
    """A rejected job surfaces as DependencyError"""
    client = JobServiceClient(
        base_url="http://jobservice:8080",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"})),
    )
    await assert_raises_async(DependencyError, client.submit("WEBHOOK", {}))


async def test_scan_trigger():
    """Auto scan submits an image scan job unless disabled"""
    jobs = []

    def handler(request: httpx.Request):
        jobs.append(json.loads(request.content)["job"])
        return httpx.Response(202, json={"job": {"id": "scan-1"}})

    client = JobServiceClient(base_url="http://jobservice:8080", transport=httpx.MockTransport(handler))
    artifact = ArtifactRef(id=7, repository_id=42, repository_name="library/nginx", digest="sha256:abc")

    await JobScanTrigger(client, enabled=True).auto_scan(artifact, ("latest",))
    await JobScanTrigger(client, enabled=False).auto_scan(artifact, ("latest",))

    assert_equal(len(jobs), 1)
    assert_equal(jobs[0]["name"], "IMAGE_SCAN")
    assert_equal(jobs[0]["parameters"]["tags"], ["latest"])


# ============================================================================
# Test: SMTP sender
# ============================================================================

class FakeSMTP:
    """Stand-in for smtplib.SMTP recording the conversation"""

    instances = []
    fail_on_send = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, username, password):
        self.logged_in = (username, password)

    def sendmail(self, sender, recipients, message):
        if FakeSMTP.fail_on_send:
            raise mailer.smtplib.SMTPException("mailbox unavailable")
        self.sent.append((sender, recipients, message))


async def test_smtp_sender():
    original = mailer.smtplib.SMTP
    mailer.smtplib.SMTP = FakeSMTP
    FakeSMTP.instances = []
    FakeSMTP.fail_on_send = False
    try:
        sender = SmtpMailSender()
        await sender.send(
            "smtp.example.com:587", "", "bot", "pw", 5, False, False,
            "noreply@example.com", ["alice@example.com"], "[HyperRegistry] Approved request", "Hey alice!",
        )

        smtp = FakeSMTP.instances[0]
        assert_equal((smtp.host, smtp.port), ("smtp.example.com", 587))
        assert_equal(smtp.logged_in, ("bot", "pw"))
        from_addr, recipients, message = smtp.sent[0]
        assert_equal(recipients, ["alice@example.com"])
        assert_true("Subject: [HyperRegistry] Approved request" in message)

        FakeSMTP.fail_on_send = True
        await assert_raises_async(
            DependencyError,
            sender.send(
                "smtp.example.com:25", "", "", "", 5, False, False,
                "noreply@example.com", ["alice@example.com"], "subject", "body",
            ),
        )
    finally:
        mailer.smtplib.SMTP = original
        FakeSMTP.fail_on_send = False


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all adapter tests"""
    return await run_tests("Adapter Tests", [
        ("Project and quota creation", test_project_and_quota_creation),
        ("User directory", test_user_directory),
        ("Pull time and count updates", test_pull_time_and_count_updates),
        ("Job submission", test_job_submission),
        ("Job submission rejected", test_job_submission_rejected),
        ("Scan trigger", test_scan_trigger),
        ("SMTP sender", test_smtp_sender),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
