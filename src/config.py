"""
Configuration management for the Azure deployment orchestrator.
"""

import os
from dataclasses import dataclass
from typing import Optional

SUBSCRIPTION_ENV = "AZURE_SUBSCRIPTION_ID"

DEFAULT_RESOURCE_GROUP = "laravel-docker-rg"
DEFAULT_LOCATION = "eastus"
DEFAULT_REGISTRY = "laraveldockeracr"
DEFAULT_WEBAPP = "laravel-docker-webapp"
DEFAULT_DATABASE = "laravel-mysql"
DEFAULT_CACHE = "laravel-redis"
DEFAULT_PLAN = "laravel-asp"

ENVIRONMENTS = ("production", "staging")


@dataclass
class DeployConfig:
    """Configuration for one orchestrator invocation."""

    command: str = "deploy"
    descriptor: Optional[str] = None
    subscription_id: Optional[str] = None
    resource_group: str = DEFAULT_RESOURCE_GROUP
    location: str = DEFAULT_LOCATION
    registry: str = DEFAULT_REGISTRY
    webapp: str = DEFAULT_WEBAPP
    tag: str = "latest"
    build_id: Optional[str] = None
    environment: str = "production"
    context: str = "."
    max_parallel: int = 4
    poll_interval: int = 10
    timeout: int = 1800
    workflow_timeout: Optional[float] = None
    health_url: Optional[str] = None
    health_attempts: int = 5
    health_interval: float = 30.0
    health_initial_delay: float = 30.0
    health_backoff: float = 1.0
    check_api_status: bool = False
    force_restart: bool = False
    cleanup: bool = False
    report_dir: str = "."
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "DeployConfig":
        """
        Create configuration from command-line arguments.

        Sub-commands only define the options they use, so anything missing
        from the namespace keeps its default.

        Args:
            args: Parsed argparse arguments

        Returns:
            DeployConfig instance
        """
        defaults = cls()

        def opt(name: str):
            value = getattr(args, name, None)
            return getattr(defaults, name) if value is None else value

        subscription = getattr(args, "subscription", None) or os.environ.get(
            SUBSCRIPTION_ENV
        )

        return cls(
            command=opt("command"),
            descriptor=getattr(args, "descriptor", None),
            subscription_id=subscription or None,
            resource_group=opt("resource_group"),
            location=opt("location"),
            registry=opt("registry"),
            webapp=opt("webapp"),
            tag=opt("tag"),
            build_id=getattr(args, "build_id", None),
            environment=opt("environment"),
            context=opt("context"),
            max_parallel=opt("max_parallel"),
            poll_interval=opt("poll_interval"),
            timeout=opt("timeout"),
            workflow_timeout=getattr(args, "workflow_timeout", None),
            health_url=getattr(args, "url", None),
            health_attempts=opt("health_attempts"),
            health_interval=opt("health_interval"),
            health_initial_delay=opt("health_initial_delay"),
            health_backoff=opt("health_backoff"),
            check_api_status=bool(getattr(args, "check_api_status", False)),
            force_restart=bool(getattr(args, "force_restart", False)),
            cleanup=bool(getattr(args, "cleanup", False)),
            report_dir=opt("report_dir"),
            verbose=bool(getattr(args, "verbose", False)),
        )
