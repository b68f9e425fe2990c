"""
Image builder/publisher.

Builds the application and edge-proxy images with the local Docker engine
and pushes them to the container registry under a rolling tag plus a unique
build tag.
"""

import datetime
import logging
import threading
from typing import Dict, Iterable, List, Optional

import docker
from docker import errors as docker_errors

from errors import AuthError, BuildError
from models import DEFAULT_RECIPES, ImageArtifact, ImageRecipe, ImageRole, RegistryRef

logger = logging.getLogger(__name__)

DEFAULT_TAG = "latest"


def default_build_id() -> str:
    """Unique tag for this build, e.g. build-20260118-140502."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.strftime("build-%Y%m%d-%H%M%S")


class ImagePublisher:
    """Builds and pushes one image per role."""

    def __init__(
        self,
        context: str = ".",
        recipes: Optional[Dict[ImageRole, ImageRecipe]] = None,
        cleanup: bool = False,
        client=None,
    ):
        """
        Args:
            context: Build context directory
            recipes: Build recipe per role
            cleanup: Remove local images after a successful push
            client: Docker client; created from the environment when omitted
        """
        self.context = context
        self.recipes = dict(recipes or DEFAULT_RECIPES)
        self.cleanup = cleanup
        self._client = client
        self._logged_in = set()
        self._lock = threading.Lock()

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker_errors.DockerException as e:
                raise BuildError("docker", f"Docker is not available: {e}") from e
        return self._client

    def check_daemon(self) -> None:
        """
        Raises:
            BuildError: If the Docker daemon is not reachable
        """
        try:
            self.client.ping()
        except docker_errors.DockerException as e:
            raise BuildError("docker", f"Docker daemon is not running: {e}") from e

    def login(self, registry: RegistryRef) -> None:
        """
        Log in to the registry once per publisher.

        Raises:
            AuthError: If the registry rejects the credentials
        """
        with self._lock:
            if registry.login_server in self._logged_in:
                return
            logger.info(f"Logging in to container registry {registry.login_server}...")
            try:
                self.client.login(
                    username=registry.username,
                    password=registry.password.reveal(),
                    registry=registry.login_server,
                    reauth=True,
                )
            except docker_errors.APIError as e:
                raise AuthError(
                    f"Login to registry {registry.login_server} failed: {e.explanation or e}"
                ) from e
            self._logged_in.add(registry.login_server)
            logger.info(f"Logged in to {registry.login_server}")

    def build_and_push(
        self,
        role: ImageRole,
        registry: RegistryRef,
        tag: str = DEFAULT_TAG,
        extra_tags: Iterable[str] = (),
        context: Optional[str] = None,
    ) -> ImageArtifact:
        """
        Build the image for `role` and push it.

        Registry login is checked before the build starts. Pushes are not
        retried.

        Args:
            role: Which recipe to build
            registry: Target registry and credentials
            tag: Primary tag (defaults to "latest")
            extra_tags: Additional tags pushed alongside, e.g. a build ID
            context: Build context; defaults to the publisher's

        Returns:
            ImageArtifact referencing the primary tag

        Raises:
            AuthError: If registry login fails
            BuildError: If the build or any push fails
        """
        recipe = self.recipes[role]
        tag = tag or DEFAULT_TAG
        extra = [t for t in extra_tags if t and t != tag]
        repository = f"{registry.login_server}/{recipe.repository}"
        ref = f"{repository}:{tag}"

        self.login(registry)

        target_info = f", target {recipe.target}" if recipe.target else ""
        logger.info(f"Building {role.value} image {ref} ({recipe.dockerfile}{target_info})")
        try:
            image, _ = self.client.images.build(
                path=context or self.context,
                dockerfile=recipe.dockerfile,
                target=recipe.target,
                tag=ref,
                rm=True,
            )
        except docker_errors.BuildError as e:
            raise BuildError(ref, e.msg) from e
        except docker_errors.APIError as e:
            raise BuildError(ref, str(e.explanation or e)) from e

        for extra_tag in extra:
            try:
                image.tag(repository, tag=extra_tag)
            except docker_errors.APIError as e:
                raise BuildError(
                    f"{repository}:{extra_tag}", f"tag failed: {e.explanation or e}"
                ) from e

        digest = None
        for push_tag in [tag, *extra]:
            digest = self._push(repository, push_tag, registry) or digest

        if self.cleanup:
            self._remove_local([f"{repository}:{t}" for t in [tag, *extra]])

        logger.info(f"✓ Published {ref}")
        return ImageArtifact(
            role=role,
            registry_ref=ref,
            tag=tag,
            extra_tags=tuple(extra),
            digest=digest,
        )

    def _push(self, repository: str, tag: str, registry: RegistryRef) -> Optional[str]:
        ref = f"{repository}:{tag}"
        logger.info(f"Pushing {ref}...")
        digest = None
        try:
            stream = self.client.images.push(
                repository,
                tag=tag,
                stream=True,
                decode=True,
                auth_config={
                    "username": registry.username,
                    "password": registry.password.reveal(),
                },
            )
            for line in stream:
                if "error" in line:
                    detail = line.get("errorDetail") or {}
                    raise BuildError(ref, detail.get("message") or line["error"])
                aux = line.get("aux") or {}
                if aux.get("Digest"):
                    digest = aux["Digest"]
        except docker_errors.APIError as e:
            raise BuildError(ref, f"push failed: {e.explanation or e}") from e
        return digest

    def _remove_local(self, refs: List[str]) -> None:
        for ref in refs:
            try:
                self.client.images.remove(image=ref)
                logger.info(f"Removed local image {ref}")
            except docker_errors.ImageNotFound:
                pass
            except docker_errors.APIError as e:
                logger.warning(f"Could not remove local image {ref}: {e}")
