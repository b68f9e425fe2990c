"""
Provisioner: converges Azure resources to a set of ResourceSpecs.

Each spec is looked up first. Existing resources are reported, never
modified; missing ones are created with the declared parameters. Failures
are recorded on the ProvisionResult so unrelated resources keep going.
"""

import logging
import time
from functools import partial
from typing import Any, Dict, List, Optional

from clients import ArmRestClient
from errors import ApiError, AuthError, ProvisionError
from models import ProvisionResult, RegistryRef, ResourceKind, ResourceSpec, Secret
from workflow import TaskGraph, TaskOutcome

logger = logging.getLogger(__name__)

RESOURCE_GROUP_API_VERSION = "2021-04-01"

# kind -> (ARM resource type, api-version)
KIND_TYPES = {
    ResourceKind.CONTAINER_REGISTRY: ("Microsoft.ContainerRegistry/registries", "2023-07-01"),
    ResourceKind.MANAGED_DATABASE: ("Microsoft.DBforMySQL/flexibleServers", "2023-06-30"),
    ResourceKind.MANAGED_CACHE: ("Microsoft.Cache/redis", "2023-08-01"),
    ResourceKind.COMPUTE_PLAN: ("Microsoft.Web/serverfarms", "2022-09-01"),
    ResourceKind.WEB_SERVICE: ("Microsoft.Web/sites", "2022-09-01"),
}

FIREWALL_RULE_NAME = "AllowAllAzureIps"
DEFAULT_DATABASE_NAME = "laravel"
INITIAL_SITE_IMAGE = "nginx:latest"


class Provisioner:
    """Ensures declared resources exist."""

    def __init__(self, api: ArmRestClient, max_parallel: int = 4):
        """
        Initialize the provisioner.

        Args:
            api: ARM client bound to the target subscription
            max_parallel: Maximum independent resources provisioned at once
        """
        self.api = api
        self.max_parallel = max_parallel

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def resource_id(self, spec: ResourceSpec) -> str:
        if spec.kind == ResourceKind.RESOURCE_GROUP:
            return self.api.resource_id(spec.name)
        provider_type, _ = KIND_TYPES[spec.kind]
        return self.api.resource_id(spec.resource_group, provider_type, spec.name)

    @staticmethod
    def api_version(spec: ResourceSpec) -> str:
        if spec.kind == ResourceKind.RESOURCE_GROUP:
            return RESOURCE_GROUP_API_VERSION
        return KIND_TYPES[spec.kind][1]

    # ------------------------------------------------------------------
    # ensure
    # ------------------------------------------------------------------

    def ensure(self, spec: ResourceSpec) -> ProvisionResult:
        """
        Make sure one resource exists.

        Args:
            spec: Resource to ensure

        Returns:
            ProvisionResult; `error` is set instead of raising on provider errors

        Raises:
            AuthError: If the control plane rejects our credentials
        """
        start = time.time()
        rid = self.resource_id(spec)
        version = self.api_version(spec)

        try:
            existing = self.api.get_resource(rid, version)
            if existing is not None:
                self._ensure_prerequisites(spec, rid)
                endpoint = self._endpoint(spec, existing, rid)
                logger.info(f"[=] {spec.key} already exists ({endpoint})")
                return ProvisionResult(
                    spec=spec,
                    already_existed=True,
                    endpoint=endpoint,
                    resource_id=rid,
                    duration_seconds=time.time() - start,
                )

            logger.info(f"[+] Creating {spec.key} in {spec.region}...")
            created = self.api.put_resource(rid, version, self._create_body(spec))
            self._ensure_prerequisites(spec, rid)

            endpoint = self._endpoint(spec, created, None)
            if endpoint is None:
                endpoint = self._endpoint(
                    spec, self.api.get_resource(rid, version) or {}, rid
                )
            duration = time.time() - start
            logger.info(f"✓ Created {spec.key} in {duration:.1f}s ({endpoint})")
            return ProvisionResult(
                spec=spec,
                already_existed=False,
                endpoint=endpoint,
                resource_id=rid,
                duration_seconds=duration,
            )

        except (ApiError, ProvisionError) as e:
            message = e.message if isinstance(e, ProvisionError) else str(e)
            logger.error(f"Provisioning FAILED for {spec.key}: {message}")
            return ProvisionResult(
                spec=spec,
                error=message,
                resource_id=rid,
                duration_seconds=time.time() - start,
            )

    def discover(self, spec: ResourceSpec) -> ProvisionResult:
        """
        Look up one resource without creating anything.

        Used by commands that work against infrastructure provisioned
        earlier. A missing resource is reported as an error.
        """
        rid = self.resource_id(spec)
        try:
            existing = self.api.get_resource(rid, self.api_version(spec))
        except ApiError as e:
            return ProvisionResult(spec=spec, error=str(e), resource_id=rid)
        if existing is None:
            return ProvisionResult(
                spec=spec,
                error=f"{spec.key} does not exist; run provision first",
                resource_id=rid,
            )
        return ProvisionResult(
            spec=spec,
            already_existed=True,
            endpoint=self._endpoint(spec, existing, rid),
            resource_id=rid,
        )

    def _create_body(self, spec: ResourceSpec) -> Dict[str, Any]:
        body: Dict[str, Any] = {"location": spec.region}
        if spec.param("tags"):
            body["tags"] = dict(spec.param("tags"))

        if spec.kind == ResourceKind.RESOURCE_GROUP:
            return body

        if spec.kind == ResourceKind.CONTAINER_REGISTRY:
            body["sku"] = {"name": spec.param("sku", "Basic")}
            body["properties"] = {"adminUserEnabled": True}
            return body

        if spec.kind == ResourceKind.MANAGED_DATABASE:
            password = spec.param("admin_password")
            if not isinstance(password, Secret):
                raise ProvisionError(
                    spec.key,
                    f"admin password not available; set {spec.param('admin_password_env')}",
                )
            body["sku"] = {
                "name": spec.param("sku", "Standard_B1ms"),
                "tier": spec.param("tier", "Burstable"),
            }
            body["properties"] = {
                "administratorLogin": spec.param("admin_user"),
                "administratorLoginPassword": password.reveal(),
                "version": str(spec.param("version", "8.0.21")),
                "storage": {"storageSizeGB": int(spec.param("storage_gb", 20))},
            }
            return body

        if spec.kind == ResourceKind.MANAGED_CACHE:
            body["properties"] = {
                "sku": {
                    "name": spec.param("sku", "Basic"),
                    "family": spec.param("family", "C"),
                    "capacity": int(spec.param("capacity", 0)),
                },
                "enableNonSslPort": False,
                "minimumTlsVersion": "1.2",
            }
            return body

        if spec.kind == ResourceKind.COMPUTE_PLAN:
            body["kind"] = "linux"
            body["sku"] = {"name": spec.param("sku", "P1V3")}
            body["properties"] = {"reserved": True}
            return body

        if spec.kind == ResourceKind.WEB_SERVICE:
            plan_type, _ = KIND_TYPES[ResourceKind.COMPUTE_PLAN]
            body["kind"] = "app,linux,container"
            body["properties"] = {
                "serverFarmId": self.api.resource_id(
                    spec.resource_group, plan_type, spec.param("plan")
                ),
                "httpsOnly": True,
                "siteConfig": {
                    "linuxFxVersion": f"DOCKER|{spec.param('image', INITIAL_SITE_IMAGE)}",
                    "appSettings": [
                        {"name": "WEBSITES_ENABLE_APP_SERVICE_STORAGE", "value": "false"}
                    ],
                },
            }
            return body

        raise ProvisionError(spec.key, f"unsupported kind {spec.kind.value}")

    @staticmethod
    def _endpoint(spec: ResourceSpec, body: Dict, fallback: Optional[str]) -> Optional[str]:
        props = body.get("properties") or {}
        if spec.kind == ResourceKind.CONTAINER_REGISTRY:
            value = props.get("loginServer")
        elif spec.kind == ResourceKind.MANAGED_DATABASE:
            value = props.get("fullyQualifiedDomainName")
        elif spec.kind == ResourceKind.MANAGED_CACHE:
            value = props.get("hostName")
        elif spec.kind == ResourceKind.WEB_SERVICE:
            value = props.get("defaultHostName")
        else:
            value = body.get("id")
        return value or fallback

    def _ensure_prerequisites(self, spec: ResourceSpec, rid: str) -> None:
        """Sub-resources the application needs before it can use the resource."""
        if spec.kind != ResourceKind.MANAGED_DATABASE:
            return

        version = self.api_version(spec)
        database = spec.param("database", DEFAULT_DATABASE_NAME)
        self._ensure_child(
            spec,
            f"{rid}/databases/{database}",
            version,
            {"properties": {"charset": "utf8mb4", "collation": "utf8mb4_unicode_ci"}},
            f"database '{database}'",
        )
        self._ensure_child(
            spec,
            f"{rid}/firewallRules/{FIREWALL_RULE_NAME}",
            version,
            {"properties": {"startIpAddress": "0.0.0.0", "endIpAddress": "0.0.0.0"}},
            f"firewall rule {FIREWALL_RULE_NAME}",
        )

    def _ensure_child(
        self, spec: ResourceSpec, child_id: str, version: str, body: Dict, label: str
    ) -> None:
        if self.api.get_resource(child_id, version) is not None:
            logger.debug(f"  {spec.key}: {label} already present")
            return
        try:
            self.api.put_resource(child_id, version, body)
            logger.info(f"  {spec.key}: created {label}")
        except ApiError as e:
            if e.status_code == 409:
                logger.info(f"  {spec.key}: {label} already exists")
                return
            raise ProvisionError(spec.key, f"{label}: {e}") from e

    # ------------------------------------------------------------------
    # provision (graph)
    # ------------------------------------------------------------------

    def add_tasks(self, graph: TaskGraph, specs: List[ResourceSpec], report=None) -> None:
        """Add one ensure task per spec, wired by declared dependencies."""
        keys = {spec.key for spec in specs}
        for spec in specs:
            graph.add(
                spec.key,
                partial(self._ensure_and_record, spec, report),
                depends_on=[dep for dep in spec.depends_on if dep in keys],
            )

    def _ensure_and_record(self, spec: ResourceSpec, report) -> ProvisionResult:
        result = self.ensure(spec)
        if report is not None:
            report.record_provision(result)
        return result

    def collect(
        self,
        specs: List[ResourceSpec],
        outcomes: Dict[str, TaskOutcome],
        report=None,
    ) -> List[ProvisionResult]:
        """
        Turn task outcomes into one ProvisionResult per spec.

        Raises:
            AuthError: If any task hit an authentication failure
        """
        results: List[ProvisionResult] = []
        for spec in specs:
            outcome = outcomes[spec.key]
            if isinstance(outcome.value, ProvisionResult):
                results.append(outcome.value)
                continue
            if isinstance(outcome.error, AuthError):
                raise outcome.error
            result = ProvisionResult(spec=spec, error=str(outcome.error))
            if report is not None:
                report.record_provision(result)
            results.append(result)
        return results

    def provision(
        self, specs: List[ResourceSpec], report=None, cancel=None
    ) -> List[ProvisionResult]:
        """
        Ensure every spec, in dependency order, independent ones in parallel.

        Args:
            specs: Resources to ensure
            report: Optional DeploymentReport to record results into
            cancel: Optional threading.Event; once set no new resources start

        Returns:
            One ProvisionResult per spec, in the order given
        """
        logger.info(f"Provisioning {len(specs)} resource(s) (max parallel {self.max_parallel})")
        graph = TaskGraph()
        self.add_tasks(graph, specs, report)
        outcomes = graph.run(
            max_parallel=self.max_parallel,
            failed=lambda result: not result.ok,
            cancel=cancel,
        )
        return self.collect(specs, outcomes, report)

    # ------------------------------------------------------------------
    # Connection details for provisioned resources
    # ------------------------------------------------------------------

    def registry_ref(self, spec: ResourceSpec, login_server: Optional[str] = None) -> RegistryRef:
        """
        Login server and admin credentials of a container registry.

        Raises:
            AuthError: If the credentials cannot be read
        """
        rid = self.resource_id(spec)
        version = self.api_version(spec)
        try:
            if not login_server:
                body = self.api.get_resource(rid, version)
                if body is None:
                    raise AuthError(f"Container registry {spec.name} does not exist")
                login_server = body.get("properties", {}).get("loginServer")
            creds = self.api.post_action(rid, "listCredentials", version)
        except ApiError as e:
            raise AuthError(f"Cannot read credentials for registry {spec.name}: {e}") from e

        passwords = creds.get("passwords") or []
        if not creds.get("username") or not passwords:
            raise AuthError(
                f"Registry {spec.name} returned no admin credentials (is the admin user enabled?)"
            )
        return RegistryRef(
            login_server=login_server or f"{spec.name}.azurecr.io",
            username=creds["username"],
            password=Secret(passwords[0]["value"]),
        )

    def cache_key(self, spec: ResourceSpec) -> Secret:
        """Primary access key of a managed cache."""
        keys = self.api.post_action(
            self.resource_id(spec), "listKeys", self.api_version(spec)
        )
        return Secret(keys.get("primaryKey", ""))
