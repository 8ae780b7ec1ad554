"""
Job service integration.
Submits jobs to the durable job service with circuit breaker protection.
"""

from typing import Any, Dict, Sequence

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from pybreaker import CircuitBreaker, CircuitBreakerError
import structlog

from regflow.config.settings import settings
from regflow.core.collaborators import JobSubmitter, ScanTrigger
from regflow.core.errors import DependencyError
from regflow.core.events.types import ArtifactRef

logger = structlog.get_logger()

# Circuit breaker for the job service to stop hammering it while it is down
jobservice_breaker = CircuitBreaker(
    fail_max=settings.circuit_breaker_fail_max,
    reset_timeout=settings.circuit_breaker_timeout_duration,
    name="jobservice_api"
)

JOB_KIND_GENERIC = "Generic"
IMAGE_SCAN_JOB = "IMAGE_SCAN"


class JobServiceClient(JobSubmitter):
    """
    HTTP client for the job service ``/api/v1/jobs`` endpoint.

    Submissions are retried on transport errors; once accepted the job
    service owns delivery.
    """

    def __init__(self, base_url: str = None, secret: str = None, timeout: float = None, transport=None):
        self.base_url = (base_url or settings.job_service_url).rstrip("/")
        self.secret = secret if secret is not None else settings.job_service_secret
        self.timeout = timeout or settings.job_service_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Harbor-Secret {self.secret}"
        return headers

    async def submit(self, name: str, parameters: Dict[str, Any], kind: str = JOB_KIND_GENERIC) -> str:
        """
        Submit a job.

        Returns:
            The job id assigned by the job service

        Raises:
            DependencyError: If the job service rejects the job, keeps failing,
                or the circuit breaker is open
        """
        try:
            return await self._post_job(name, parameters, kind)
        except CircuitBreakerError:
            logger.error(
                "jobservice_circuit_breaker_open",
                job_name=name,
                message="Circuit breaker is open - too many job service failures"
            )
            raise DependencyError(f"job service unavailable, job {name} not submitted")
        except httpx.HTTPError as e:
            logger.error("job_submission_failed", job_name=name, error=str(e))
            raise DependencyError(f"failed to submit job {name}: {e}", cause=e)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TransportError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _post_job(self, name: str, parameters: Dict[str, Any], kind: str) -> str:
        job = {
            "job": {
                "name": name,
                "parameters": parameters,
                "metadata": {"kind": kind},
            }
        }

        with jobservice_breaker.calling():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/api/v1/jobs", headers=self._headers(), json=job)
                response.raise_for_status()
                data = response.json()

        job_id = data.get("job", {}).get("id") or data.get("id", "")
        logger.info("job_submitted", job_name=name, kind=kind, job_id=job_id)
        return job_id


class JobScanTrigger(ScanTrigger):
    """Submits an image scan job for pushed artifacts when auto scan is on"""

    def __init__(self, jobs: JobSubmitter, enabled: bool = None):
        self.jobs = jobs
        self.enabled = settings.auto_scan_enabled if enabled is None else enabled

    async def auto_scan(self, artifact: ArtifactRef, tags: Sequence[str]):
        if not self.enabled:
            logger.debug("auto_scan_disabled", repository=artifact.repository_name, digest=artifact.digest)
            return

        await self.jobs.submit(
            IMAGE_SCAN_JOB,
            {
                "artifact_id": artifact.id,
                "repository": artifact.repository_name,
                "digest": artifact.digest,
                "tags": list(tags),
            },
        )
