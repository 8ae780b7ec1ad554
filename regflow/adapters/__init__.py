"""Concrete collaborators backed by the database, the job service and SMTP."""

from regflow.adapters.registry import (
    SqlProjectProvisioner,
    SqlQuotaController,
    SqlUserDirectory,
    SqlTagLookup,
    SqlArtifactStore,
    SqlRepositoryStore,
)
from regflow.adapters.jobservice import JobServiceClient, JobScanTrigger
from regflow.adapters.mailer import SmtpMailSender

__all__ = [
    'SqlProjectProvisioner',
    'SqlQuotaController',
    'SqlUserDirectory',
    'SqlTagLookup',
    'SqlArtifactStore',
    'SqlRepositoryStore',
    'JobServiceClient',
    'JobScanTrigger',
    'SmtpMailSender',
]
