"""
Data models for the deployment orchestrator.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

MASK = "******"


class ResourceKind(str, Enum):
    """Kinds of infrastructure the provisioner knows how to ensure."""

    RESOURCE_GROUP = "resource-group"
    CONTAINER_REGISTRY = "container-registry"
    MANAGED_DATABASE = "managed-database"
    MANAGED_CACHE = "managed-cache"
    COMPUTE_PLAN = "compute-plan"
    WEB_SERVICE = "web-service"


class ImageRole(str, Enum):
    """Container image roles built for a release."""

    APPLICATION = "application"
    EDGE_PROXY = "edge-proxy"


class HealthState(str, Enum):
    """States of the health verification state machine."""

    WAITING = "waiting"
    PROBING = "probing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    CANCELLED = "cancelled"


class Secret:
    """A sensitive string. Renders masked; call reveal() to get the value."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"Secret('{MASK}')"

    def __str__(self) -> str:
        return MASK

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Secret) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)


SettingValue = Union[str, Secret]


@dataclass(frozen=True)
class ResourceSpec:
    """Declarative description of one piece of infrastructure."""

    kind: ResourceKind
    name: str
    region: str
    resource_group: str  # scope; equals name for a resource group
    params: Mapping[str, Any] = field(default_factory=dict, hash=False)
    depends_on: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        """Unique key within a descriptor: <kind>/<name>."""
        return f"{self.kind.value}/{self.name}"

    def param(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)


@dataclass
class ProvisionResult:
    """Outcome of ensuring one ResourceSpec exists."""

    spec: ResourceSpec
    already_existed: bool = False
    endpoint: Optional[str] = None  # only populated on success
    error: Optional[str] = None
    resource_id: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ImageRecipe:
    """How to build the image for one role."""

    role: ImageRole
    repository: str
    dockerfile: str
    target: Optional[str] = None  # multi-stage build target


DEFAULT_RECIPES: Dict[ImageRole, ImageRecipe] = {
    ImageRole.APPLICATION: ImageRecipe(
        role=ImageRole.APPLICATION,
        repository="laravel-docker-app",
        dockerfile="docker/app/Dockerfile",
        target="production",
    ),
    ImageRole.EDGE_PROXY: ImageRecipe(
        role=ImageRole.EDGE_PROXY,
        repository="laravel-docker-app-nginx",
        dockerfile="docker/nginx/Dockerfile",
    ),
}


@dataclass(frozen=True)
class ImageArtifact:
    """A built and pushed container image."""

    role: ImageRole
    registry_ref: str  # <loginServer>/<repository>:<tag>
    tag: str
    extra_tags: Tuple[str, ...] = ()
    digest: Optional[str] = None

    @property
    def release_ref(self) -> str:
        """Reference a service should run: the unique build tag when one was pushed."""
        if not self.extra_tags:
            return self.registry_ref
        repository = self.registry_ref.rsplit(":", 1)[0]
        return f"{repository}:{self.extra_tags[0]}"


@dataclass(frozen=True)
class RegistryRef:
    """Where images are pushed, plus the credentials to push them."""

    login_server: str
    username: str
    password: Secret

    @property
    def url(self) -> str:
        return f"https://{self.login_server}"


@dataclass
class ReleaseTarget:
    """A deployed web service and the configuration it should run with."""

    service_name: str
    resource_group: str
    current_image_ref: Optional[str] = None
    environment_variables: Dict[str, SettingValue] = field(default_factory=dict)
    host_name: Optional[str] = None

    def plain_settings(self) -> Dict[str, str]:
        """Settings with secrets revealed, for sending to the provider only."""
        return {
            k: v.reveal() if isinstance(v, Secret) else v
            for k, v in self.environment_variables.items()
        }

    def redacted_settings(self) -> Dict[str, str]:
        """Settings safe for logs and reports."""
        return {
            k: MASK if isinstance(v, Secret) else v
            for k, v in self.environment_variables.items()
        }

    def with_image(self, image_ref: str) -> "ReleaseTarget":
        return replace(
            self,
            current_image_ref=image_ref,
            environment_variables=dict(self.environment_variables),
        )


@dataclass(frozen=True)
class HealthCheckOutcome:
    """Result of one health probe."""

    attempt: int
    success: bool
    latency: Optional[float] = None  # seconds
    http_status: Optional[int] = None
    error: Optional[str] = None
