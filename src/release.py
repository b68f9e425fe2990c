"""
Release controller: points the web service at a new image and restarts it.

Database migrations are not run here; the application runs them on startup.
"""

import logging
from typing import Dict, List, Optional, Tuple

from errors import ApiError, ReleaseError
from models import (
    ImageArtifact,
    ProvisionResult,
    RegistryRef,
    ReleaseTarget,
    ResourceKind,
    ResourceSpec,
    Secret,
    SettingValue,
)
from provisioner import DEFAULT_DATABASE_NAME, KIND_TYPES, Provisioner

logger = logging.getLogger(__name__)

SITE_TYPE, SITE_API_VERSION = KIND_TYPES[ResourceKind.WEB_SERVICE]

MYSQL_PORT = "3306"
REDIS_TLS_PORT = "6380"


def _by_kind(results: List[ProvisionResult]) -> Dict[ResourceKind, ProvisionResult]:
    found: Dict[ResourceKind, ProvisionResult] = {}
    for result in results:
        found.setdefault(result.spec.kind, result)
    return found


class ReleaseController:
    """Applies an ImageArtifact to a ReleaseTarget."""

    def __init__(self, provisioner: Provisioner):
        self.provisioner = provisioner
        self.api = provisioner.api

    def _site_id(self, target: ReleaseTarget) -> str:
        return self.api.resource_id(target.resource_group, SITE_TYPE, target.service_name)

    def prepare_target(
        self,
        service: ResourceSpec,
        results: List[ProvisionResult],
        environment: str = "production",
        registry: Optional[RegistryRef] = None,
    ) -> ReleaseTarget:
        """
        Build the ReleaseTarget for `service`, wiring connection settings
        from the provisioned database, cache and registry.

        Args:
            service: The web-service spec
            results: ProvisionResults of the same run (or discovery)
            environment: production or staging
            registry: Registry the service pulls from

        Returns:
            ReleaseTarget with its environment populated
        """
        kinds = _by_kind([r for r in results if r.ok])
        web = kinds.get(ResourceKind.WEB_SERVICE)
        host = web.endpoint if web and web.endpoint else f"{service.name}.azurewebsites.net"

        settings: Dict[str, SettingValue] = {
            "APP_ENV": environment,
            "APP_DEBUG": "false",
            "APP_URL": f"https://{host}",
            "WEBSITES_ENABLE_APP_SERVICE_STORAGE": "false",
        }

        db = kinds.get(ResourceKind.MANAGED_DATABASE)
        if db is not None:
            settings.update(
                {
                    "DB_CONNECTION": "mysql",
                    "DB_HOST": db.endpoint,
                    "DB_PORT": MYSQL_PORT,
                    "DB_DATABASE": db.spec.param("database", DEFAULT_DATABASE_NAME),
                    "DB_USERNAME": db.spec.param("admin_user"),
                }
            )
            password = db.spec.param("admin_password")
            if isinstance(password, Secret):
                settings["DB_PASSWORD"] = password

        cache = kinds.get(ResourceKind.MANAGED_CACHE)
        if cache is not None:
            try:
                key = self.provisioner.cache_key(cache.spec)
            except ApiError as e:
                raise ReleaseError(
                    service.name, f"cannot read cache key for {cache.spec.name}: {e}"
                ) from e
            settings.update(
                {
                    "REDIS_HOST": cache.endpoint,
                    "REDIS_PORT": REDIS_TLS_PORT,
                    "REDIS_PASSWORD": key,
                    "CACHE_DRIVER": "redis",
                    "SESSION_DRIVER": "redis",
                    "QUEUE_CONNECTION": "redis",
                }
            )

        if registry is not None:
            settings.update(
                {
                    "DOCKER_REGISTRY_SERVER_URL": registry.url,
                    "DOCKER_REGISTRY_SERVER_USERNAME": registry.username,
                    "DOCKER_REGISTRY_SERVER_PASSWORD": registry.password,
                }
            )

        return ReleaseTarget(
            service_name=service.name,
            resource_group=service.resource_group,
            environment_variables=settings,
            host_name=host,
        )

    def _current(self, site_id: str, service: str) -> Tuple[Optional[str], Dict[str, str]]:
        web = self.api.get_resource(f"{site_id}/config/web", SITE_API_VERSION)
        if web is None:
            raise ReleaseError(service, "web service does not exist")
        linux_fx = (web.get("properties") or {}).get("linuxFxVersion")
        listed = self.api.post_action(site_id, "config/appsettings/list", SITE_API_VERSION)
        return linux_fx, dict(listed.get("properties") or {})

    def release(
        self,
        target: ReleaseTarget,
        artifact: ImageArtifact,
        force_restart: bool = False,
    ) -> ReleaseTarget:
        """
        Point the service at `artifact` (its build tag, when it has one) and restart it.

        Calling this again with the image already active (and unchanged
        settings) does nothing and succeeds. If any step fails, settings and
        image are put back before ReleaseError is raised.

        Args:
            target: Service to update
            artifact: Image to run
            force_restart: Restart even when nothing changed, e.g. after a
                mutable tag was re-pushed

        Returns:
            The updated ReleaseTarget

        Raises:
            ReleaseError: If the service could not be updated
        """
        service = target.service_name
        site_id = self._site_id(target)
        # Pinned to the build tag so a re-pushed mutable tag still changes the image
        ref = artifact.release_ref
        desired_fx = f"DOCKER|{ref}"

        try:
            current_fx, current_settings = self._current(site_id, service)
        except ApiError as e:
            raise ReleaseError(service, str(e)) from e

        desired_settings = {**current_settings, **target.plain_settings()}
        image_changed = current_fx != desired_fx
        changed_keys = sorted(
            k for k, v in desired_settings.items() if current_settings.get(k) != v
        )

        if not image_changed and not changed_keys and not force_restart:
            logger.info(f"[=] {service} already runs {ref}; nothing to do")
            return target.with_image(ref)

        logger.info(f"Releasing {ref} to {service}...")
        applied: List[str] = []
        try:
            if changed_keys:
                logger.info(f"  Updating app settings: {', '.join(changed_keys)}")
                self.api.put_resource(
                    f"{site_id}/config/appsettings",
                    SITE_API_VERSION,
                    {"properties": desired_settings},
                )
                applied.append("settings")

            if image_changed:
                logger.info(f"  Container image: {current_fx} -> {desired_fx}")
                self.api.patch_resource(
                    f"{site_id}/config/web",
                    SITE_API_VERSION,
                    {"properties": {"linuxFxVersion": desired_fx}},
                )
                applied.append("image")

            logger.info(f"  Restarting {service}...")
            self.api.post_action(site_id, "restart", SITE_API_VERSION)
        except ApiError as e:
            logger.error(f"Release FAILED for {service}: {e}")
            self._restore(site_id, service, applied, current_fx, current_settings)
            raise ReleaseError(service, str(e)) from e

        logger.info(f"✓ {service} now runs {ref}")
        return target.with_image(ref)

    def _restore(
        self,
        site_id: str,
        service: str,
        applied: List[str],
        previous_fx: Optional[str],
        previous_settings: Dict[str, str],
    ) -> None:
        if not applied:
            return
        logger.warning(f"Restoring previous configuration of {service} ({', '.join(applied)})")
        try:
            if "image" in applied:
                self.api.patch_resource(
                    f"{site_id}/config/web",
                    SITE_API_VERSION,
                    {"properties": {"linuxFxVersion": previous_fx}},
                )
            if "settings" in applied:
                self.api.put_resource(
                    f"{site_id}/config/appsettings",
                    SITE_API_VERSION,
                    {"properties": previous_settings},
                )
        except ApiError as e:
            logger.error(
                f"Could not restore {service}; check its container and app settings manually: {e}"
            )
