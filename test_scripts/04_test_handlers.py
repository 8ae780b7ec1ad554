#!/usr/bin/env python3
"""
Test: Event Handlers
Purpose: Verify the built-in handlers against fake collaborators

Tests:
- Pull handler updates pull time with the resolved tag and bumps the pull count
- Pull handler writes are independent and individually switchable
- Push handler triggers a scan
- Request mailer renders the fixed subject and body per decision
- Hook forwarder submits a job carrying the serialized payload
- register_event_handlers wires every topic
"""

import asyncio
import json
import sys
from datetime import datetime, timezone

from fixtures import (
    run_tests,
    FakeArtifactStore, FakeJobSubmitter, FakeMailSender, FakeRepositoryStore,
    FakeScanTrigger, FakeTagLookup, FakeUserDirectory, make_user,
    assert_equal, assert_true, assert_in, assert_raises_async
)

from regflow.config.settings import EmailSettings
from regflow.core.events.handlers import (
    APPROVED_SUBJECT,
    REJECTED_SUBJECT,
    HookJobHandler,
    PullArtifactHandler,
    RequestMailHandler,
    ScanTriggerHandler,
    register_event_handlers,
)
from regflow.core.events.registry import HandlerRegistry
from regflow.core.events.metadata import (
    HookEventMetadata,
    PullArtifactEventMetadata,
    PushArtifactEventMetadata,
    RejectRequestEventMetadata,
    ApproveRequestEventMetadata,
)
from regflow.core.events.types import ArtifactRef, HookTarget
from regflow.models.schemas import Topic

ARTIFACT = ArtifactRef(id=7, repository_id=42, repository_name="library/nginx", digest="sha256:abc")


def email_settings():
    return EmailSettings(
        host="smtp.example.com",
        port=25,
        identity="",
        username="",
        password="",
        sender="registry <noreply@example.com>",
        ssl=False,
        insecure=False,
        timeout_seconds=5,
    )


def pull_handler(tags=None, artifacts=None, repositories=None, **kwargs):
    return PullArtifactHandler(
        tags or FakeTagLookup({(7, "latest"): 99}),
        artifacts or FakeArtifactStore(),
        repositories or FakeRepositoryStore(),
        pull_time_update_disable=kwargs.get("pull_time_update_disable", False),
        pull_count_update_disable=kwargs.get("pull_count_update_disable", False),
    )


# ============================================================================
# Test: Pull artifact handler
# ============================================================================

async def test_pull_updates_time_and_count():
    """One pull time update with the resolved tag id and one count increment"""
    tags = FakeTagLookup({(7, "latest"): 99})
    artifacts = FakeArtifactStore()
    repositories = FakeRepositoryStore()
    handler = pull_handler(tags, artifacts, repositories)

    event = PullArtifactEventMetadata(artifact=ARTIFACT, tags=["latest"]).resolve()
    await handler.handle(event)

    assert_equal(tags.calls, [(7, "latest")])
    assert_equal(len(artifacts.calls), 1)
    artifact_id, tag_id, pull_time = artifacts.calls[0]
    assert_equal((artifact_id, tag_id), (7, 99))
    assert_equal(pull_time, event.occur_at)
    assert_equal(repositories.calls, [42])


async def test_pull_without_tags():
    """Pull by digest updates the artifact only"""
    tags = FakeTagLookup()
    artifacts = FakeArtifactStore()
    handler = pull_handler(tags, artifacts)

    await handler.handle(PullArtifactEventMetadata(artifact=ARTIFACT).resolve())

    assert_equal(tags.calls, [])
    assert_equal(artifacts.calls[0][1], None)


async def test_pull_writes_are_independent():
    """A failing pull time update does not prevent the count update, and vice versa"""
    repositories = FakeRepositoryStore()
    handler = pull_handler(artifacts=FakeArtifactStore(should_fail=True), repositories=repositories)
    await handler.handle(PullArtifactEventMetadata(artifact=ARTIFACT, tags=["latest"]).resolve())
    assert_equal(repositories.calls, [42])

    artifacts = FakeArtifactStore()
    handler = pull_handler(artifacts=artifacts, repositories=FakeRepositoryStore(should_fail=True))
    await handler.handle(PullArtifactEventMetadata(artifact=ARTIFACT, tags=["latest"]).resolve())
    assert_equal(len(artifacts.calls), 1)


async def test_pull_tag_lookup_failure_still_updates_artifact():
    """An unresolved tag leaves the tag id empty"""
    artifacts = FakeArtifactStore()
    handler = pull_handler(tags=FakeTagLookup(should_fail=True), artifacts=artifacts)
    await handler.handle(PullArtifactEventMetadata(artifact=ARTIFACT, tags=["latest"]).resolve())

    assert_equal(len(artifacts.calls), 1)
    assert_equal(artifacts.calls[0][1], None)


async def test_pull_updates_can_be_disabled():
    """Each write honors its disable switch"""
    artifacts = FakeArtifactStore()
    repositories = FakeRepositoryStore()
    handler = pull_handler(
        artifacts=artifacts,
        repositories=repositories,
        pull_time_update_disable=True,
        pull_count_update_disable=True,
    )
    await handler.handle(PullArtifactEventMetadata(artifact=ARTIFACT, tags=["latest"]).resolve())

    assert_equal(artifacts.calls, [])
    assert_equal(repositories.calls, [])


# ============================================================================
# Test: Push artifact handler
# ============================================================================

async def test_push_triggers_scan():
    """Pushed artifacts are handed to the scan trigger"""
    scanner = FakeScanTrigger()
    handler = ScanTriggerHandler(scanner)
    await handler.handle(PushArtifactEventMetadata(artifact=ARTIFACT, tags=["v1"]).resolve())

    assert_equal(scanner.calls, [(ARTIFACT, ["v1"])])


# ============================================================================
# Test: Request mailer
# ============================================================================

async def test_mail_on_approve():
    """Approved requests mail the owner with the approval text"""
    sender = FakeMailSender()
    handler = RequestMailHandler(FakeUserDirectory([make_user()]), sender, email_settings)

    await handler.handle(ApproveRequestEventMetadata(
        request_id=1, project="library", owner_id=1, operator="admin"
    ).resolve())

    assert_equal(len(sender.messages), 1)
    message = sender.messages[0]
    assert_equal(message["subject"], APPROVED_SUBJECT)
    assert_equal(message["recipients"], ["alice@example.com"])
    assert_equal(message["address"], "smtp.example.com:25")
    assert_in("Hey alice!", message["body"])
    assert_in("library", message["body"])


async def test_mail_on_reject():
    """Rejected requests mail the owner and name the operator"""
    sender = FakeMailSender()
    handler = RequestMailHandler(FakeUserDirectory([make_user()]), sender, email_settings)

    await handler.handle(RejectRequestEventMetadata(
        request_id=1, project="library", owner_id=1, operator="root"
    ).resolve())

    message = sender.messages[0]
    assert_equal(message["subject"], REJECTED_SUBJECT)
    assert_equal(message["body"], "Sorry alice. Please contact admin root.")


async def test_mail_ignores_other_events():
    """Events other than approve/reject are logged and skipped"""
    sender = FakeMailSender()
    handler = RequestMailHandler(FakeUserDirectory([make_user()]), sender, email_settings)

    await handler.handle(PushArtifactEventMetadata(artifact=ARTIFACT).resolve())
    assert_equal(sender.messages, [])


async def test_mail_skipped_without_address():
    """Owners without an email address get no mail"""
    sender = FakeMailSender()
    users = FakeUserDirectory([make_user(email="")])
    handler = RequestMailHandler(users, sender, email_settings)

    await handler.handle(ApproveRequestEventMetadata(request_id=1, project="library", owner_id=1).resolve())
    assert_equal(sender.messages, [])


async def test_mail_failure_propagates_to_dispatcher():
    """Send failures surface from handle so the dispatcher can record them"""
    handler = RequestMailHandler(
        FakeUserDirectory([make_user()]), FakeMailSender(should_fail=True), email_settings
    )
    await assert_raises_async(
        Exception,
        handler.handle(ApproveRequestEventMetadata(request_id=1, project="library", owner_id=1).resolve()),
    )


# ============================================================================
# Test: Hook forwarder
# ============================================================================

async def test_hook_submits_job():
    """Hook events become jobs carrying the serialized payload"""
    jobs = FakeJobSubmitter()
    handler = HookJobHandler(jobs)
    target = HookTarget(
        type="http",
        address="https://hooks.example.com/registry",
        auth_header="Bearer token",
        skip_cert_verify=True,
    )
    payload = {"type": "PUSH_ARTIFACT", "repository": "library/nginx"}

    await handler.handle(HookEventMetadata(target=target, payload=payload).resolve())

    assert_equal(len(jobs.jobs), 1)
    job = jobs.jobs[0]
    assert_equal(job["name"], "WEBHOOK")
    assert_equal(json.loads(job["parameters"]["payload"]), payload)
    assert_equal(job["parameters"]["address"], "https://hooks.example.com/registry")
    assert_equal(job["parameters"]["auth_header"], "Bearer token")
    assert_true(job["parameters"]["skip_cert_verify"])


async def test_hook_smtp_target():
    """SMTP targets map to the email job"""
    jobs = FakeJobSubmitter()
    target = HookTarget(type="smtp", address="ops@example.com")
    await HookJobHandler(jobs).handle(HookEventMetadata(target=target, payload={"a": 1}).resolve())

    assert_equal(jobs.jobs[0]["name"], "EMAIL")


async def test_hook_rejects_other_events():
    """The hook forwarder only accepts hook events"""
    handler = HookJobHandler(FakeJobSubmitter())
    await assert_raises_async(
        TypeError, handler.handle(PushArtifactEventMetadata(artifact=ARTIFACT).resolve())
    )


# ============================================================================
# Test: Registration
# ============================================================================

async def test_register_event_handlers():
    """Every topic gets its built-in handler; both decisions share the mailer"""
    registry = HandlerRegistry()
    register_event_handlers(
        registry,
        users=FakeUserDirectory(),
        tags=FakeTagLookup(),
        artifacts=FakeArtifactStore(),
        repositories=FakeRepositoryStore(),
        scanner=FakeScanTrigger(),
        mail_sender=FakeMailSender(),
        jobs=FakeJobSubmitter(),
    )

    assert_equal(registry.lookup(Topic.PULL_ARTIFACT)[0].name, "InternalArtifact")
    assert_equal(registry.lookup(Topic.PUSH_ARTIFACT)[0].name, "AutoScan")
    assert_equal(registry.lookup(Topic.HOOK)[0].name, "HookForwarder")
    assert_true(registry.lookup(Topic.APPROVE_REQUEST)[0] is registry.lookup(Topic.REJECT_REQUEST)[0])
    assert_equal(len(registry.handlers()), 4)


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all handler tests"""
    return await run_tests("Event Handler Tests", [
        ("Pull updates time and count", test_pull_updates_time_and_count),
        ("Pull without tags", test_pull_without_tags),
        ("Pull writes are independent", test_pull_writes_are_independent),
        ("Pull tag lookup failure", test_pull_tag_lookup_failure_still_updates_artifact),
        ("Pull updates can be disabled", test_pull_updates_can_be_disabled),
        ("Push triggers scan", test_push_triggers_scan),
        ("Mail on approve", test_mail_on_approve),
        ("Mail on reject", test_mail_on_reject),
        ("Mail ignores other events", test_mail_ignores_other_events),
        ("Mail skipped without address", test_mail_skipped_without_address),
        ("Mail failure propagates", test_mail_failure_propagates_to_dispatcher),
        ("Hook submits job", test_hook_submits_job),
        ("Hook SMTP target", test_hook_smtp_target),
        ("Hook rejects other events", test_hook_rejects_other_events),
        ("Register event handlers", test_register_event_handlers),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
