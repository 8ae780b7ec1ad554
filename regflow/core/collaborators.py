"""
Contracts for the subsystems the controller and handlers call into.

Concrete implementations live in ``regflow.adapters``; tests substitute
in-memory fakes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

from regflow.core.events.types import ArtifactRef


class UserInfo(BaseModel):
    user_id: int
    username: str
    email: Optional[str] = None


class ProjectProvisioner(ABC):
    @abstractmethod
    async def create_project(self, name: str, owner_id: int) -> int:
        """Create the project and return its id"""


class QuotaController(ABC):
    @abstractmethod
    async def create_quota(self, reference: str, reference_id: str, hard_limits: Dict[str, int]) -> int:
        """Create a quota record with hard limits and return its id"""


class UserDirectory(ABC):
    @abstractmethod
    async def get_by_id(self, user_id: int) -> UserInfo:
        """Raises NotFoundError for unknown ids"""

    @abstractmethod
    async def list_by_ids(self, user_ids: Sequence[int]) -> List[UserInfo]:
        """Known users among ``user_ids``; unknown ids are skipped"""


class TagLookup(ABC):
    @abstractmethod
    async def find_tag_id(self, artifact_id: int, name: str) -> Optional[int]:
        """Id of the tag named ``name`` attached to the artifact, if any"""


class ArtifactStore(ABC):
    @abstractmethod
    async def update_pull_time(self, artifact_id: int, tag_id: Optional[int], pull_time: datetime):
        """Record the last pull time on the artifact and, when given, the tag"""


class RepositoryStore(ABC):
    @abstractmethod
    async def add_pull_count(self, repository_id: int):
        """Increment the pull counter of the repository"""


class ScanTrigger(ABC):
    @abstractmethod
    async def auto_scan(self, artifact: ArtifactRef, tags: Sequence[str]):
        """Evaluate the auto-scan policy for a pushed artifact"""


class MailSender(ABC):
    @abstractmethod
    async def send(
        self,
        address: str,
        identity: str,
        username: str,
        password: str,
        timeout: int,
        use_ssl: bool,
        insecure: bool,
        sender: str,
        recipients: Sequence[str],
        subject: str,
        body: str,
    ):
        """Submit one message to the SMTP server at ``address`` (host:port)"""


class JobSubmitter(ABC):
    @abstractmethod
    async def submit(self, name: str, parameters: Dict[str, Any], kind: str = "Generic") -> str:
        """Hand a job to the durable job service and return its id"""
