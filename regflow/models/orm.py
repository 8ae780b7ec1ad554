"""
Database models using SQLAlchemy 2.0 async style.
"""

from sqlalchemy import Column, String, Integer, Float, Boolean, Text, ForeignKey, Index, UniqueConstraint
from datetime import datetime
import json

from regflow.models.database import Base


def _now() -> float:
    return datetime.now().timestamp()


class Request(Base):
    """
    Pending project-creation request.

    Deleted rows are tombstones: the name is rewritten to ``name#id`` so the
    original name can be requested again.
    """

    __tablename__ = "request"

    request_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False, unique=True)
    owner_name = Column(String(255), nullable=True)
    is_approved = Column(Integer, nullable=False, default=0)  # ApprovalStatus value
    creation_time = Column(Float, nullable=False, default=_now)
    update_time = Column(Float, nullable=False, default=_now)
    deleted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_request_owner", "owner_id"),
        Index("idx_request_deleted_creation", "deleted", "creation_time"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "request_id": self.request_id,
            "owner_id": self.owner_id,
            "name": self.name,
            "owner_name": self.owner_name,
            "is_approved": self.is_approved,
            "creation_time": self.creation_time,
            "update_time": self.update_time,
            "deleted": self.deleted,
        }


# ============================================================================
# Registry tables backing the SQL collaborators
# ============================================================================


class User(Base):
    __tablename__ = "harbor_user"

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    realname = Column(String(255), nullable=True)
    deleted = Column(Boolean, nullable=False, default=False)


class Project(Base):
    __tablename__ = "project"

    project_id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("harbor_user.user_id"), nullable=False)
    name = Column(String(255), nullable=False, unique=True)
    creation_time = Column(Float, nullable=False, default=_now)
    update_time = Column(Float, nullable=False, default=_now)
    deleted = Column(Boolean, nullable=False, default=False)


class Quota(Base):
    __tablename__ = "quota"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(255), nullable=False)
    reference_id = Column(String(255), nullable=False)
    hard = Column(Text, nullable=False)  # JSON resource list
    creation_time = Column(Float, nullable=False, default=_now)
    update_time = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("reference", "reference_id", name="unique_quota"),
    )

    @property
    def hard_dict(self):
        return json.loads(self.hard) if isinstance(self.hard, str) else self.hard


class Repository(Base):
    __tablename__ = "repository"

    repository_id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    project_id = Column(Integer, ForeignKey("project.project_id"), nullable=True)
    pull_count = Column(Integer, nullable=False, default=0)
    update_time = Column(Float, nullable=False, default=_now)


class Artifact(Base):
    __tablename__ = "artifact"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(Integer, ForeignKey("repository.repository_id"), nullable=False)
    repository_name = Column(String(255), nullable=False)
    digest = Column(String(255), nullable=False)
    pull_time = Column(Float, nullable=True)
    push_time = Column(Float, nullable=False, default=_now)


class Tag(Base):
    __tablename__ = "tag"

    id = Column(Integer, primary_key=True, autoincrement=True)
    artifact_id = Column(Integer, ForeignKey("artifact.id"), nullable=False)
    repository_id = Column(Integer, ForeignKey("repository.repository_id"), nullable=False)
    name = Column(String(255), nullable=False)
    pull_time = Column(Float, nullable=True)
    push_time = Column(Float, nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("repository_id", "name", name="unique_tag"),
        Index("idx_tag_artifact_name", "artifact_id", "name"),
    )
