"""
SQL-backed registry collaborators.

Each adapter opens its own session, so its writes commit independently of
the caller's request session.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence
import json
import structlog

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from regflow.core.collaborators import (
    ArtifactStore,
    ProjectProvisioner,
    QuotaController,
    RepositoryStore,
    TagLookup,
    UserDirectory,
    UserInfo,
)
from regflow.core.errors import ConflictError, NotFoundError
from regflow.models.database import Database
from regflow.models.orm import Artifact, Project, Quota, Repository, Tag, User

logger = structlog.get_logger()


class SqlProjectProvisioner(ProjectProvisioner):
    def __init__(self, db: Database):
        self.db = db

    async def create_project(self, name: str, owner_id: int) -> int:
        try:
            async with self.db.session() as session:
                project = Project(name=name, owner_id=owner_id)
                session.add(project)
                await session.flush()
                project_id = project.project_id
        except IntegrityError:
            raise ConflictError(f"The project named {name} already exists")

        logger.info("project_created", project_id=project_id, name=name, owner_id=owner_id)
        return project_id


class SqlQuotaController(QuotaController):
    def __init__(self, db: Database):
        self.db = db

    async def create_quota(self, reference: str, reference_id: str, hard_limits: Dict[str, int]) -> int:
        try:
            async with self.db.session() as session:
                quota = Quota(reference=reference, reference_id=reference_id, hard=json.dumps(hard_limits))
                session.add(quota)
                await session.flush()
                quota_id = quota.id
        except IntegrityError:
            raise ConflictError(f"quota for {reference} {reference_id} already exists")

        logger.info("quota_created", quota_id=quota_id, reference=reference, reference_id=reference_id, hard=hard_limits)
        return quota_id


class SqlUserDirectory(UserDirectory):
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _info(user: User) -> UserInfo:
        return UserInfo(user_id=user.user_id, username=user.username, email=user.email)

    async def get_by_id(self, user_id: int) -> UserInfo:
        async with self.db.session() as session:
            result = await session.execute(
                select(User).where(User.user_id == user_id, User.deleted.is_(False))
            )
            user = result.scalar_one_or_none()
        if not user:
            raise NotFoundError(f"user {user_id} not found")
        return self._info(user)

    async def list_by_ids(self, user_ids: Sequence[int]) -> List[UserInfo]:
        if not user_ids:
            return []
        async with self.db.session() as session:
            result = await session.execute(
                select(User).where(User.user_id.in_(list(user_ids)), User.deleted.is_(False))
            )
            return [self._info(user) for user in result.scalars().all()]


class SqlTagLookup(TagLookup):
    def __init__(self, db: Database):
        self.db = db

    async def find_tag_id(self, artifact_id: int, name: str) -> Optional[int]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Tag.id).where(Tag.artifact_id == artifact_id, Tag.name == name).limit(1)
            )
            return result.scalar_one_or_none()


class SqlArtifactStore(ArtifactStore):
    def __init__(self, db: Database):
        self.db = db

    async def update_pull_time(self, artifact_id: int, tag_id: Optional[int], pull_time: datetime):
        timestamp = pull_time.timestamp()
        async with self.db.session() as session:
            result = await session.execute(
                update(Artifact).where(Artifact.id == artifact_id).values(pull_time=timestamp)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"artifact {artifact_id} not found")
            if tag_id:
                await session.execute(
                    update(Tag).where(Tag.id == tag_id, Tag.artifact_id == artifact_id).values(pull_time=timestamp)
                )


class SqlRepositoryStore(RepositoryStore):
    def __init__(self, db: Database):
        self.db = db

    async def add_pull_count(self, repository_id: int):
        async with self.db.session() as session:
            result = await session.execute(
                update(Repository)
                .where(Repository.repository_id == repository_id)
                .values(
                    pull_count=Repository.pull_count + 1,
                    update_time=datetime.now().timestamp(),
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"repository {repository_id} not found")
