"""Event handlers for artifact and request events."""

import asyncio
import json
from typing import Callable
import structlog

from regflow.config.settings import settings, EmailSettings
from regflow.core.collaborators import (
    ArtifactStore,
    JobSubmitter,
    MailSender,
    RepositoryStore,
    ScanTrigger,
    TagLookup,
    UserDirectory,
)
from regflow.core.events.registry import Handler, HandlerRegistry
from regflow.core.events.types import PullArtifactEvent
from regflow.models.schemas import Topic

logger = structlog.get_logger()

APPROVED_SUBJECT = "[HyperRegistry] Approved request"
APPROVED_BODY = "Hey {username}! The project named {project} has been created by request."
REJECTED_SUBJECT = "[HyperRegistry] Rejected request"
REJECTED_BODY = "Sorry {username}. Please contact admin {operator}."

HOOK_JOB_NAMES = {
    "http": "WEBHOOK",
    "smtp": "EMAIL",
}


class PullArtifactHandler(Handler):
    """
    Updates the pull time and the repository pull count for a pulled artifact.

    The two writes are independent: a stale counter is acceptable, so each
    failure is logged and the other write still happens.
    """

    def __init__(
        self,
        tags: TagLookup,
        artifacts: ArtifactStore,
        repositories: RepositoryStore,
        pull_time_update_disable: bool = None,
        pull_count_update_disable: bool = None,
    ):
        self.tags = tags
        self.artifacts = artifacts
        self.repositories = repositories
        self.pull_time_update_disable = (
            settings.pull_time_update_disable if pull_time_update_disable is None else pull_time_update_disable
        )
        self.pull_count_update_disable = (
            settings.pull_count_update_disable if pull_count_update_disable is None else pull_count_update_disable
        )

    @property
    def name(self) -> str:
        return "InternalArtifact"

    async def handle(self, event) -> None:
        if event.kind != Topic.PULL_ARTIFACT:
            logger.error("unexpected_event_kind", handler=self.name, kind=event.kind)
            return

        updates = []
        if not self.pull_time_update_disable:
            updates.append(self._update_pull_time(event))
        if not self.pull_count_update_disable:
            updates.append(self._add_pull_count(event))
        await asyncio.gather(*updates)

    async def _update_pull_time(self, event: PullArtifactEvent):
        artifact = event.artifact
        tag_id = None
        if event.tags:
            try:
                tag_id = await self.tags.find_tag_id(artifact.id, event.tags[0])
            except Exception as e:
                logger.info(
                    "pull_time_tag_lookup_failed",
                    artifact_id=artifact.id,
                    tag=event.tags[0],
                    error=str(e),
                )

        try:
            await self.artifacts.update_pull_time(artifact.id, tag_id, event.occur_at)
        except Exception as e:
            logger.warning(
                "pull_time_update_failed",
                artifact_id=artifact.id,
                tag_id=tag_id,
                error=str(e),
            )

    async def _add_pull_count(self, event: PullArtifactEvent):
        try:
            await self.repositories.add_pull_count(event.artifact.repository_id)
        except Exception as e:
            logger.warning(
                "pull_count_update_failed",
                repository_id=event.artifact.repository_id,
                error=str(e),
            )


class ScanTriggerHandler(Handler):
    """Asks the scan policy to scan newly pushed artifacts."""

    def __init__(self, scanner: ScanTrigger):
        self.scanner = scanner

    @property
    def name(self) -> str:
        return "AutoScan"

    async def handle(self, event) -> None:
        if event.kind != Topic.PUSH_ARTIFACT:
            logger.error("unexpected_event_kind", handler=self.name, kind=event.kind)
            return

        await self.scanner.auto_scan(event.artifact, event.tags)
        logger.info(
            "auto_scan_triggered",
            repository=event.artifact.repository_name,
            digest=event.artifact.digest,
            tags=list(event.tags),
        )


class RequestMailHandler(Handler):
    """Emails the request owner when their request is approved or rejected."""

    def __init__(
        self,
        users: UserDirectory,
        sender: MailSender,
        email_settings: Callable[[], EmailSettings] = None,
    ):
        self.users = users
        self.sender = sender
        self.email_settings = email_settings or settings.email

    @property
    def name(self) -> str:
        return "RequestMail"

    async def handle(self, event) -> None:
        if event.kind == Topic.APPROVE_REQUEST:
            subject, template = APPROVED_SUBJECT, APPROVED_BODY
        elif event.kind == Topic.REJECT_REQUEST:
            subject, template = REJECTED_SUBJECT, REJECTED_BODY
        else:
            logger.error("undefined_event_type", handler=self.name, kind=str(event.kind))
            return

        meta = self.email_settings()
        owner = await self.users.get_by_id(event.owner_id)
        if not owner.email:
            logger.warning("request_owner_has_no_email", owner_id=event.owner_id, project=event.project)
            return

        logger.info(
            "sending_request_mail",
            host=meta.address,
            identity=meta.identity,
            user=meta.username,
            ssl=meta.ssl,
            insecure=meta.insecure,
            sender=meta.sender,
            to=owner.email,
            kind=event.kind.value,
        )

        body = template.format(username=owner.username, project=event.project, operator=event.operator)
        await self.sender.send(
            meta.address,
            meta.identity,
            meta.username,
            meta.password,
            meta.timeout_seconds,
            meta.ssl,
            meta.insecure,
            meta.sender,
            [owner.email],
            subject,
            body,
        )


class HookJobHandler(Handler):
    """
    Forwards hook events to the durable job service.

    From here on delivery is the job service's responsibility.
    """

    def __init__(self, jobs: JobSubmitter):
        self.jobs = jobs

    @property
    def name(self) -> str:
        return "HookForwarder"

    async def handle(self, event) -> None:
        if event.kind != Topic.HOOK:
            raise TypeError(f"{self.name} cannot handle {event.kind} events")

        try:
            payload = json.dumps(event.payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"marshal from payload {event.payload!r} failed: {e}")

        parameters = {
            "payload": payload,
            "address": event.target.address,
            # Sent as a header by the job when delivering the payload
            "auth_header": event.target.auth_header,
            "skip_cert_verify": event.target.skip_cert_verify,
        }
        job_id = await self.jobs.submit(HOOK_JOB_NAMES[event.target.type], parameters)
        logger.info(
            "hook_job_submitted",
            job_id=job_id,
            target_type=event.target.type,
            address=event.target.address,
        )


def register_event_handlers(
    registry: HandlerRegistry,
    users: UserDirectory,
    tags: TagLookup,
    artifacts: ArtifactStore,
    repositories: RepositoryStore,
    scanner: ScanTrigger,
    mail_sender: MailSender,
    jobs: JobSubmitter,
):
    """
    Register the built-in handlers. Must run before the dispatcher starts.
    """
    mailer = RequestMailHandler(users, mail_sender)

    registry.register(Topic.PULL_ARTIFACT, PullArtifactHandler(tags, artifacts, repositories))
    registry.register(Topic.PUSH_ARTIFACT, ScanTriggerHandler(scanner))
    registry.register(Topic.APPROVE_REQUEST, mailer)
    registry.register(Topic.REJECT_REQUEST, mailer)
    registry.register(Topic.HOOK, HookJobHandler(jobs))
