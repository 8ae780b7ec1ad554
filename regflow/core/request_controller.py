"""
Request controller for the project-creation approval workflow.
Owns create/get/list/delete and the approve/reject transitions.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from typing import List, Union
import structlog

from regflow.core.collaborators import ProjectProvisioner, QuotaController, UserDirectory
from regflow.core.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from regflow.core.events.metadata import ApproveRequestEventMetadata, RejectRequestEventMetadata
from regflow.core.request_store import RequestStore
from regflow.models.orm import Request
from regflow.models.schemas import ApprovalStatus, RequestQuery, STATUS_TRANSITIONS
from regflow.config.settings import settings

logger = structlog.get_logger()

PROJECT_QUOTA_REFERENCE = "project"
RESOURCE_STORAGE = "storage"


class RequestController:
    """
    Manages the lifecycle of project-creation requests.

    Approve runs as a forward-only sequence across independent subsystems:
    provision project -> create quota -> persist status -> publish event.
    There is no shared transaction and no compensation. If quota creation
    or the status write fails, the provisioned project stays in place and
    the request stays NOT_DETERMINED.
    """

    def __init__(
        self,
        db: AsyncSession,
        event_bus=None,
        provisioner: ProjectProvisioner = None,
        quotas: QuotaController = None,
        users: UserDirectory = None,
        quota_per_project_enable: bool = None,
        storage_per_project: int = None,
    ):
        self.store = RequestStore(db)
        self.event_bus = event_bus
        self.provisioner = provisioner
        self.quotas = quotas
        self.users = users
        self.quota_per_project_enable = (
            settings.quota_per_project_enable if quota_per_project_enable is None else quota_per_project_enable
        )
        self.storage_per_project = (
            settings.storage_per_project if storage_per_project is None else storage_per_project
        )

    async def create(self, name: str, owner_id: int, owner_name: str = None) -> int:
        """Create a request and return its id"""
        request = await self.store.create(name, owner_id, owner_name)
        return request.request_id

    async def count(self, query: RequestQuery = None) -> int:
        return await self.store.count(query)

    async def delete(self, request_id: int):
        await self.store.delete(request_id)

    async def exists(self, request_id_or_name: Union[int, str]) -> bool:
        try:
            await self._lookup(request_id_or_name)
            return True
        except NotFoundError:
            return False

    async def get(self, request_id_or_name: Union[int, str], with_owner: bool = False) -> Request:
        request = await self._lookup(request_id_or_name)
        if with_owner:
            await self._load_owners([request])
        return request

    async def get_by_name(self, name: str, with_owner: bool = False) -> Request:
        if not name:
            raise ValidationError("request name required")
        return await self.get(name, with_owner=with_owner)

    async def list(self, query: RequestQuery = None, with_owner: bool = False) -> List[Request]:
        requests = await self.store.list(query)
        if requests and with_owner:
            await self._load_owners(requests)
        return requests

    async def approve(self, request: Request, operator: str = "") -> Request:
        """
        Approve a pending request.

        Raises:
            ConflictError: If the request was already decided
            DependencyError: If provisioning, quota creation or the status write fails
        """
        self._check_pending(request, ApprovalStatus.APPROVED)

        try:
            project_id = await self.provisioner.create_project(request.name, request.owner_id)
        except Exception as e:
            logger.error(
                "request_provisioning_failed",
                request_id=request.request_id,
                name=request.name,
                error=str(e),
            )
            raise DependencyError(f"failed to create project {request.name}: {e}", cause=e)

        logger.info(
            "request_project_provisioned",
            request_id=request.request_id,
            project_id=project_id,
            name=request.name,
        )

        if self.quota_per_project_enable:
            hard_limits = {RESOURCE_STORAGE: self.storage_per_project}
            try:
                await self.quotas.create_quota(PROJECT_QUOTA_REFERENCE, str(project_id), hard_limits)
            except Exception as e:
                logger.error(
                    "request_quota_creation_failed",
                    request_id=request.request_id,
                    orphaned_project_id=project_id,
                    error=str(e),
                )
                raise DependencyError(f"failed to create quota for project: {e}", cause=e)

        decided = await self._persist(request, ApprovalStatus.APPROVED)

        await self._publish(ApproveRequestEventMetadata(
            request_id=decided.request_id,
            project=decided.name,
            owner_id=decided.owner_id,
            operator=operator,
        ))
        return decided

    async def reject(self, request: Request, operator: str = "") -> Request:
        """
        Reject a pending request. Nothing is provisioned.

        Raises:
            ConflictError: If the request was already decided
        """
        self._check_pending(request, ApprovalStatus.REJECTED)

        decided = await self._persist(request, ApprovalStatus.REJECTED)

        await self._publish(RejectRequestEventMetadata(
            request_id=decided.request_id,
            project=decided.name,
            owner_id=decided.owner_id,
            operator=operator,
        ))
        return decided

    def _check_pending(self, request: Request, new_status: ApprovalStatus):
        current = ApprovalStatus(request.is_approved)
        if new_status not in STATUS_TRANSITIONS[current]:
            logger.warning(
                "request_decision_rejected",
                request_id=request.request_id,
                current_status=current.name,
                attempted_status=new_status.name,
            )
            raise ConflictError(f"request {request.request_id} is already {current.name.lower()}")

    async def _persist(self, request: Request, new_status: ApprovalStatus) -> Request:
        try:
            decided = await self.store.transition(request.request_id, new_status)
        except SQLAlchemyError as e:
            logger.error("request_status_write_failed", request_id=request.request_id, error=str(e))
            raise DependencyError(f"failed to update request {request.request_id}: {e}", cause=e)

        logger.info(
            "request_decided",
            request_id=decided.request_id,
            name=decided.name,
            status=new_status.name,
        )
        return decided

    async def _publish(self, metadata):
        if not self.event_bus:
            return
        try:
            await self.event_bus.notify(metadata)
        except Exception as e:
            # The decision is already committed
            logger.error("request_event_publish_failed", topic=metadata.topic.value, error=str(e))

    async def _lookup(self, request_id_or_name: Union[int, str]) -> Request:
        if isinstance(request_id_or_name, bool):
            raise ValidationError(f"invalid parameter: {request_id_or_name}, should be ID(int) or name(str)")
        if isinstance(request_id_or_name, int):
            return await self.store.get(request_id_or_name)
        if isinstance(request_id_or_name, str):
            return await self.store.get_by_name(request_id_or_name)
        raise ValidationError(f"invalid parameter: {request_id_or_name}, should be ID(int) or name(str)")

    async def _load_owners(self, requests: List[Request]):
        if not self.users:
            return

        owners = await self.users.list_by_ids(sorted({r.owner_id for r in requests}))
        by_id = {owner.user_id: owner for owner in owners}
        for request in requests:
            owner = by_id.get(request.owner_id)
            if owner is None:
                logger.warning(
                    "request_owner_not_found",
                    request_id=request.request_id,
                    name=request.name,
                    owner_id=request.owner_id,
                )
                continue
            request.owner_name = owner.username
