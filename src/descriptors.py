"""
Resource descriptor store.

Turns a YAML descriptor (or an already-parsed mapping) into an ordered list
of immutable ResourceSpec values. Validation happens here so that nothing
downstream runs against a half-valid description.
"""

import logging
import os
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Union

import yaml

from config import (
    DEFAULT_CACHE,
    DEFAULT_DATABASE,
    DEFAULT_LOCATION,
    DEFAULT_PLAN,
    DEFAULT_REGISTRY,
    DEFAULT_RESOURCE_GROUP,
    DEFAULT_WEBAPP,
)
from errors import ConfigError
from models import (
    DEFAULT_RECIPES,
    ImageRecipe,
    ImageRole,
    ResourceKind,
    ResourceSpec,
    Secret,
)

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD_ENV = "DB_ADMIN_PASSWORD"
MIN_PASSWORD_LENGTH = 8

# Keys that describe the resource entry itself rather than kind-specific parameters
_RESERVED_KEYS = {"kind", "name", "region", "resource_group", "depends_on"}

NAME_RULES: Dict[ResourceKind, "re.Pattern[str]"] = {
    ResourceKind.RESOURCE_GROUP: re.compile(r"^[-\w.()]{0,89}[-\w()]$"),
    ResourceKind.CONTAINER_REGISTRY: re.compile(r"^[a-z0-9]{1,50}$"),
    ResourceKind.MANAGED_DATABASE: re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$"),
    ResourceKind.MANAGED_CACHE: re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$"),
    ResourceKind.COMPUTE_PLAN: re.compile(r"^[A-Za-z0-9-]{1,60}$"),
    ResourceKind.WEB_SERVICE: re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,58}[A-Za-z0-9]$"),
}

NAME_HINTS: Dict[ResourceKind, str] = {
    ResourceKind.RESOURCE_GROUP: "1-90 letters, digits, '-', '_', '.', '(', ')'; may not end with '.'",
    ResourceKind.CONTAINER_REGISTRY: "up to 50 lowercase letters and digits",
    ResourceKind.MANAGED_DATABASE: "3-63 lowercase letters, digits and hyphens; no leading/trailing hyphen",
    ResourceKind.MANAGED_CACHE: "1-63 letters, digits and single hyphens; no leading/trailing hyphen",
    ResourceKind.COMPUTE_PLAN: "1-60 letters, digits and hyphens",
    ResourceKind.WEB_SERVICE: "2-60 letters, digits and hyphens; no leading/trailing hyphen",
}


@dataclass
class Descriptor:
    """Everything a run needs to know about the target infrastructure."""

    location: str
    specs: List[ResourceSpec]
    subscription_id: Optional[str] = None
    recipes: Dict[ImageRole, ImageRecipe] = field(
        default_factory=lambda: dict(DEFAULT_RECIPES)
    )

    def find(self, kind: ResourceKind) -> Optional[ResourceSpec]:
        """First spec of the given kind, if any."""
        for spec in self.specs:
            if spec.kind == kind:
                return spec
        return None

    def require(self, kind: ResourceKind) -> ResourceSpec:
        spec = self.find(kind)
        if spec is None:
            raise ConfigError(f"Descriptor declares no {kind.value} resource")
        return spec

    def by_key(self) -> Dict[str, ResourceSpec]:
        return {spec.key: spec for spec in self.specs}


def validate_name(kind: ResourceKind, name: str) -> None:
    """
    Check a resource name against the provider's naming rules.

    Raises:
        ConfigError: If the name is not acceptable for the kind
    """
    if not NAME_RULES[kind].match(name) or (
        kind == ResourceKind.MANAGED_CACHE and "--" in name
    ):
        raise ConfigError(
            f"Invalid {kind.value} name '{name}': {NAME_HINTS[kind]}"
        )


def _parse_kind(raw: Any, index: int) -> ResourceKind:
    try:
        return ResourceKind(raw)
    except ValueError:
        allowed = ", ".join(k.value for k in ResourceKind)
        raise ConfigError(
            f"resources[{index}]: unknown kind '{raw}' (expected one of: {allowed})"
        ) from None


def _resolve_password(params: Dict[str, Any], name: str, require_secrets: bool) -> None:
    if "admin_password" in params:
        raise ConfigError(
            f"managed-database '{name}': do not put admin_password in the descriptor; "
            "set admin_password_env to the name of an environment variable instead"
        )
    env_name = params.setdefault("admin_password_env", DEFAULT_PASSWORD_ENV)
    value = os.environ.get(env_name)
    if value is None:
        if require_secrets:
            raise ConfigError(
                f"managed-database '{name}': environment variable {env_name} is not set"
            )
        return
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ConfigError(
            f"managed-database '{name}': password in {env_name} must be at least "
            f"{MIN_PASSWORD_LENGTH} characters long"
        )
    params["admin_password"] = Secret(value)


def _check_acyclic(specs: List[ResourceSpec]) -> None:
    indegree = {spec.key: len(spec.depends_on) for spec in specs}
    dependents: Dict[str, Set[str]] = defaultdict(set)
    for spec in specs:
        for dep in spec.depends_on:
            dependents[dep].add(spec.key)

    ready = [key for key, value in indegree.items() if value == 0]
    seen = 0
    while ready:
        key = ready.pop()
        seen += 1
        for child in dependents[key]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if seen != len(specs):
        stuck = sorted(key for key, value in indegree.items() if value > 0)
        raise ConfigError(f"Dependency cycle between: {', '.join(stuck)}")


def _read_source(source: Union[str, Path, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source

    path = Path(source)
    if not path.is_file():
        raise ConfigError(f"Descriptor file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Descriptor {path} is not valid YAML: {e}") from e
    if not isinstance(data, Mapping):
        raise ConfigError(f"Descriptor {path} must parse to a mapping")
    return data


def _parse_recipes(raw: Any) -> Dict[ImageRole, ImageRecipe]:
    recipes = dict(DEFAULT_RECIPES)
    if raw is None:
        return recipes
    if not isinstance(raw, Mapping):
        raise ConfigError("'images' must be a mapping of role to recipe")
    for role_name, entry in raw.items():
        try:
            role = ImageRole(role_name)
        except ValueError:
            raise ConfigError(f"images: unknown role '{role_name}'") from None
        if not isinstance(entry, Mapping):
            raise ConfigError(f"images.{role_name} must be a mapping")
        base = recipes[role]
        recipes[role] = ImageRecipe(
            role=role,
            repository=str(entry.get("repository", base.repository)),
            dockerfile=str(entry.get("dockerfile", base.dockerfile)),
            target=entry.get("target", base.target),
        )
    return recipes


def load_descriptor(
    source: Union[str, Path, Mapping[str, Any]], require_secrets: bool = True
) -> Descriptor:
    """
    Load and validate a descriptor.

    Args:
        source: Path to a YAML/JSON file, or an already-parsed mapping
        require_secrets: Fail when a referenced secret is not set. Commands
            that never create or wire the database pass False.

    Returns:
        Descriptor with specs in declaration order

    Raises:
        ConfigError: On missing fields, bad names, duplicates, unknown or
            cyclic dependencies, or missing secrets
    """
    data = _read_source(source)

    location = data.get("location")
    entries = data.get("resources")
    if not entries or not isinstance(entries, list):
        raise ConfigError("Descriptor must declare a non-empty 'resources' list")

    group_names = [
        e.get("name") for e in entries
        if isinstance(e, Mapping) and e.get("kind") == ResourceKind.RESOURCE_GROUP.value
    ]
    default_group = data.get("resource_group") or (
        group_names[0] if len(group_names) == 1 else None
    )

    parsed = []
    seen: Set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"resources[{index}] must be a mapping")
        if "kind" not in entry:
            raise ConfigError(f"resources[{index}]: missing required field 'kind'")
        kind = _parse_kind(entry["kind"], index)

        name = entry.get("name")
        if not name or not isinstance(name, str):
            raise ConfigError(f"resources[{index}] ({kind.value}): missing required field 'name'")
        validate_name(kind, name)

        region = entry.get("region") or location
        if not region:
            raise ConfigError(
                f"{kind.value} '{name}': missing 'region' and no top-level 'location'"
            )

        if kind == ResourceKind.RESOURCE_GROUP:
            group = name
        else:
            group = entry.get("resource_group") or default_group
            if not group:
                raise ConfigError(
                    f"{kind.value} '{name}': missing 'resource_group' and the descriptor "
                    "does not declare exactly one resource group"
                )

        key = f"{kind.value}/{name}"
        if key in seen:
            raise ConfigError(f"Duplicate {kind.value} name '{name}'")
        seen.add(key)

        params = {k: v for k, v in entry.items() if k not in _RESERVED_KEYS}
        if kind == ResourceKind.MANAGED_DATABASE:
            params.setdefault("admin_user", "laraveladmin")
            _resolve_password(params, name, require_secrets)

        depends_on = entry.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        parsed.append((kind, name, region, group, params, list(depends_on)))

    keys_by_name: Dict[str, List[str]] = defaultdict(list)
    for kind, name, *_ in parsed:
        keys_by_name[name].append(f"{kind.value}/{name}")

    plans = [name for kind, name, *_ in parsed if kind == ResourceKind.COMPUTE_PLAN]

    def resolve(ref: str, owner: str) -> str:
        if ref in seen:
            return ref
        matches = keys_by_name.get(ref, [])
        if len(matches) == 1:
            return matches[0]
        if not matches:
            raise ConfigError(f"{owner}: unknown dependency '{ref}'")
        raise ConfigError(
            f"{owner}: dependency '{ref}' is ambiguous; use one of {', '.join(matches)}"
        )

    specs: List[ResourceSpec] = []
    for kind, name, region, group, params, explicit in parsed:
        owner = f"{kind.value}/{name}"
        deps: List[str] = []

        group_key = f"{ResourceKind.RESOURCE_GROUP.value}/{group}"
        if kind != ResourceKind.RESOURCE_GROUP and group_key in seen:
            deps.append(group_key)

        if kind == ResourceKind.WEB_SERVICE:
            plan = params.get("plan") or (plans[0] if len(plans) == 1 else None)
            if not plan:
                raise ConfigError(f"{owner}: missing required field 'plan'")
            params["plan"] = plan
            plan_key = f"{ResourceKind.COMPUTE_PLAN.value}/{plan}"
            if plan_key in seen:
                deps.append(plan_key)

        for ref in explicit:
            dep = resolve(str(ref), owner)
            if dep == owner:
                raise ConfigError(f"{owner}: cannot depend on itself")
            if dep not in deps:
                deps.append(dep)

        specs.append(
            ResourceSpec(
                kind=kind,
                name=name,
                region=region,
                resource_group=group,
                params=params,
                depends_on=tuple(deps),
            )
        )

    _check_acyclic(specs)

    return Descriptor(
        location=location or specs[0].region,
        specs=specs,
        subscription_id=data.get("subscription_id"),
        recipes=_parse_recipes(data.get("images")),
    )


def load(
    source: Union[str, Path, Mapping[str, Any]], require_secrets: bool = True
) -> List[ResourceSpec]:
    """Load a descriptor and return its ResourceSpecs in declaration order."""
    return load_descriptor(source, require_secrets=require_secrets).specs


def default_descriptor(
    resource_group: str = DEFAULT_RESOURCE_GROUP,
    location: str = DEFAULT_LOCATION,
    registry: str = DEFAULT_REGISTRY,
    webapp: str = DEFAULT_WEBAPP,
    database: str = DEFAULT_DATABASE,
    cache: str = DEFAULT_CACHE,
    plan: str = DEFAULT_PLAN,
    require_secrets: bool = True,
) -> Descriptor:
    """The standard Laravel stack: group, registry, MySQL, Redis, plan, web app."""
    data = {
        "location": location,
        "resource_group": resource_group,
        "resources": [
            {"kind": ResourceKind.RESOURCE_GROUP.value, "name": resource_group},
            {"kind": ResourceKind.CONTAINER_REGISTRY.value, "name": registry},
            {"kind": ResourceKind.MANAGED_DATABASE.value, "name": database},
            {"kind": ResourceKind.MANAGED_CACHE.value, "name": cache},
            {"kind": ResourceKind.COMPUTE_PLAN.value, "name": plan},
            {"kind": ResourceKind.WEB_SERVICE.value, "name": webapp, "plan": plan},
        ],
    }
    return load_descriptor(data, require_secrets=require_secrets)
