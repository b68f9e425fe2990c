"""
In-memory stand-in for ArmRestClient used by provisioning and release tests.
"""

import copy
from typing import Dict, List, Optional, Tuple

from errors import ApiError

# ARM type -> (endpoint property, host suffix)
ENDPOINTS = {
    "Microsoft.ContainerRegistry/registries": ("loginServer", "azurecr.io"),
    "Microsoft.DBforMySQL/flexibleServers": (
        "fullyQualifiedDomainName",
        "mysql.database.azure.com",
    ),
    "Microsoft.Cache/redis": ("hostName", "redis.cache.windows.net"),
    "Microsoft.Web/sites": ("defaultHostName", "azurewebsites.net"),
}

REGISTRY_PASSWORD = "acr-admin-password"
CACHE_KEY = "redis-primary-key"


class FakeArm:
    """Records every call and keeps resources in a dict keyed by ID."""

    def __init__(self, subscription_id: str = "sub-123"):
        self.subscription_id = subscription_id
        self.resources: Dict[str, Dict] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], ApiError] = {}

    # helpers for tests

    def fail(self, verb: str, resource_id: str, message: str, status_code: int = 400):
        """Make the next `verb` on `resource_id` raise ApiError."""
        self.failures[(verb, resource_id)] = ApiError(message, status_code)

    @property
    def mutations(self) -> List[Tuple[str, str]]:
        return [
            c
            for c in self.calls
            if c[0] in ("PUT", "PATCH") or (c[0] == "POST" and c[1].endswith("/restart"))
        ]

    def _check(self, verb: str, resource_id: str) -> None:
        self.calls.append((verb, resource_id))
        error = self.failures.pop((verb, resource_id), None)
        if error is not None:
            raise error

    # ArmRestClient surface

    def resource_id(self, resource_group, provider_type=None, name=None, *children):
        rid = f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
        if provider_type:
            rid += f"/providers/{provider_type}/{name}"
        for child in children:
            rid += f"/{child}"
        return rid

    def check_access(self) -> None:
        self.calls.append(("GET", f"/subscriptions/{self.subscription_id}"))

    def get_resource(self, resource_id: str, api_version: str) -> Optional[Dict]:
        self._check("GET", resource_id)
        found = self.resources.get(resource_id)
        return copy.deepcopy(found) if found is not None else None

    def put_resource(self, resource_id: str, api_version: str, body: Dict) -> Dict:
        self._check("PUT", resource_id)
        stored = copy.deepcopy(body)
        stored["id"] = resource_id
        props = stored.setdefault("properties", {})
        for arm_type, (prop, suffix) in ENDPOINTS.items():
            marker = f"/providers/{arm_type}/"
            if marker not in resource_id:
                continue
            name = resource_id.split(marker, 1)[1]
            if "/" not in name:
                props[prop] = f"{name}.{suffix}"
                if arm_type == "Microsoft.Web/sites":
                    self._seed_site(resource_id, props)
        self.resources[resource_id] = stored
        return copy.deepcopy(stored)

    def _seed_site(self, site_id: str, props: Dict) -> None:
        site_config = props.get("siteConfig") or {}
        self.resources[f"{site_id}/config/web"] = {
            "properties": {"linuxFxVersion": site_config.get("linuxFxVersion")}
        }
        self.resources[f"{site_id}/config/appsettings"] = {
            "properties": {
                s["name"]: s["value"] for s in site_config.get("appSettings", [])
            }
        }

    def patch_resource(self, resource_id: str, api_version: str, body: Dict) -> Dict:
        self._check("PATCH", resource_id)
        stored = self.resources.setdefault(resource_id, {"properties": {}})
        stored.setdefault("properties", {}).update(copy.deepcopy(body.get("properties", {})))
        return copy.deepcopy(stored)

    def post_action(
        self, resource_id: str, action: str, api_version: str, body: Optional[Dict] = None
    ) -> Dict:
        self._check("POST", f"{resource_id}/{action}")
        name = resource_id.rsplit("/", 1)[1]
        if action == "listCredentials":
            return {
                "username": name,
                "passwords": [{"name": "password", "value": REGISTRY_PASSWORD}],
            }
        if action == "listKeys":
            return {"primaryKey": CACHE_KEY, "secondaryKey": "unused"}
        if action == "config/appsettings/list":
            settings = self.resources.get(f"{resource_id}/config/appsettings") or {}
            return copy.deepcopy(settings) or {"properties": {}}
        return {}

    # inspection

    def site_image(self, site_id: str) -> Optional[str]:
        return self.resources[f"{site_id}/config/web"]["properties"].get("linuxFxVersion")

    def site_settings(self, site_id: str) -> Dict[str, str]:
        return dict(self.resources[f"{site_id}/config/appsettings"]["properties"])
