"""
Exception types for the deployment orchestrator.

Stage failures are raised as one of the DeploymentError subclasses below;
control-plane HTTP failures surface as ApiError and are wrapped by the stage
that hit them.
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for orchestration failures."""

    stage = "deploy"
    exit_code = 1


class ConfigError(DeploymentError):
    """Missing or invalid declarative input. Nothing has been executed."""

    stage = "config"
    exit_code = 1


class ProvisionError(DeploymentError):
    """A single resource could not be ensured."""

    stage = "provision"
    exit_code = 2

    def __init__(self, resource: str, message: str):
        self.resource = resource
        self.message = message
        super().__init__(f"{resource}: {message}")


class AuthError(DeploymentError):
    """Provider or registry authentication failed."""

    stage = "auth"
    exit_code = 3


class BuildError(DeploymentError):
    """An image could not be built or pushed."""

    stage = "build"
    exit_code = 3

    def __init__(self, image: str, message: str):
        self.image = image
        self.message = message
        super().__init__(f"{image}: {message}")


class ReleaseError(DeploymentError):
    """The service could not be pointed at the new image."""

    stage = "release"
    exit_code = 4

    def __init__(self, service: str, message: str):
        self.service = service
        self.message = message
        super().__init__(f"{service}: {message}")


class HealthTimeout(DeploymentError):
    """The release is live but health verification never passed."""

    stage = "health"
    exit_code = 5

    def __init__(self, url: str, attempts: int, cancelled: bool = False):
        self.url = url
        self.attempts = attempts
        self.cancelled = cancelled
        reason = "cancelled" if cancelled else "no healthy response"
        super().__init__(
            f"Deployed but unverified: {url} ({reason} after {attempts} attempt(s))"
        )


class ApiError(RuntimeError):
    """Control-plane request failed. Message is the provider's text, verbatim."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
