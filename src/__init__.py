"""
Azure App Service Deployment Orchestrator.
"""

from clients import ArmRestClient
from config import DeployConfig
from descriptors import Descriptor, load, load_descriptor
from health import HealthVerifier
from log_utils import setup_logging
from models import (
    HealthCheckOutcome,
    ImageArtifact,
    ProvisionResult,
    ReleaseTarget,
    ResourceSpec,
)
from pipeline import DeploymentPipeline
from provisioner import Provisioner
from publisher import ImagePublisher
from release import ReleaseController
from report import DeploymentReport

__all__ = [
    "ArmRestClient",
    "DeployConfig",
    "Descriptor",
    "load",
    "load_descriptor",
    "HealthVerifier",
    "setup_logging",
    "HealthCheckOutcome",
    "ImageArtifact",
    "ProvisionResult",
    "ReleaseTarget",
    "ResourceSpec",
    "DeploymentPipeline",
    "Provisioner",
    "ImagePublisher",
    "ReleaseController",
    "DeploymentReport",
]
