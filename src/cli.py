"""Console entry point for the Azure deployment orchestrator CLI."""

from __future__ import annotations

import argparse
import logging
from typing import List

from clients import default_subscription_id
from config import ENVIRONMENTS, DeployConfig
from descriptors import Descriptor, default_descriptor, load_descriptor
from errors import DeploymentError
from log_utils import setup_logging
from pipeline import DeploymentPipeline

logger = logging.getLogger(__name__)

COMMANDS = ("provision", "build-push", "release", "verify", "deploy")

# Commands that need the database admin password
SECRET_COMMANDS = {"provision", "release", "deploy"}


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)

    target = common.add_argument_group("target")
    target.add_argument(
        "--descriptor",
        metavar="PATH",
        help=(
            "YAML resource descriptor. Without it the standard stack is used: "
            "resource group, registry, MySQL, Redis, plan and web app."
        ),
    )
    target.add_argument(
        "--subscription",
        metavar="SUBSCRIPTION_ID",
        help="Azure subscription (default: $AZURE_SUBSCRIPTION_ID, then the az CLI default)",
    )
    target.add_argument("-g", "--resource-group", help="Resource group name")
    target.add_argument("--location", help="Azure region (e.g. eastus)")
    target.add_argument("-r", "--registry", help="Container registry name")
    target.add_argument("-w", "--webapp", help="Web app name")
    target.add_argument(
        "--tag", help="Image tag to push and release (default: latest)"
    )

    output = common.add_argument_group("logging and output")
    output.add_argument(
        "--report-dir",
        metavar="DIR",
        help="Directory for the JSON deployment report (default: current directory)",
    )
    output.add_argument(
        "--verbose", action="store_true", help="Enable verbose (DEBUG) logging"
    )
    return common


def _add_provision_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("provisioning")
    group.add_argument(
        "--max-parallel",
        type=_positive_int,
        metavar="N",
        help="Maximum resources provisioned at once (default: 4)",
    )
    group.add_argument(
        "--poll-interval",
        type=_positive_int,
        metavar="SECONDS",
        help="Time between long-running operation checks (default: 10)",
    )
    group.add_argument(
        "--timeout",
        type=_positive_int,
        metavar="SECONDS",
        help="Maximum wait for one resource operation (default: 1800)",
    )


def _add_build_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("images")
    group.add_argument(
        "--context", metavar="DIR", help="Docker build context (default: .)"
    )
    group.add_argument(
        "--build-id",
        metavar="TAG",
        help="Unique tag pushed alongside --tag (default: build-<UTC timestamp>)",
    )
    group.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove local images after a successful push",
    )


def _add_release_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("release")
    group.add_argument(
        "--environment",
        choices=ENVIRONMENTS,
        help="APP_ENV of the web app (default: production)",
    )
    group.add_argument(
        "--force-restart",
        action="store_true",
        help="Restart even if image and settings are unchanged (e.g. re-pushed latest)",
    )


def _add_health_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("health check")
    group.add_argument(
        "--url", help="Health endpoint (default: https://<web app host>/health)"
    )
    group.add_argument(
        "--health-attempts",
        type=_positive_int,
        metavar="N",
        help="Maximum probes (default: 5)",
    )
    group.add_argument(
        "--health-interval",
        type=float,
        metavar="SECONDS",
        help="Time between probes (default: 30)",
    )
    group.add_argument(
        "--health-initial-delay",
        type=float,
        metavar="SECONDS",
        help="Wait before the first probe (default: 30 for deploy, 0 for verify)",
    )
    group.add_argument(
        "--health-backoff",
        type=float,
        metavar="FACTOR",
        help="Multiply the interval by FACTOR after each failure, capped at 300s (default: 1)",
    )
    group.add_argument(
        "--check-api-status",
        action="store_true",
        help="Also require /api/status to report active",
    )
    group.add_argument(
        "--workflow-timeout",
        type=float,
        metavar="SECONDS",
        help="Cancel the run (including pending health probes) after this long",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="azure-deploy",
        description=(
            "Provision Azure infrastructure, build and push container images, "
            "release them to App Service and verify the result."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Create any missing infrastructure\n"
            "  azure-deploy provision -g laravel-docker-rg --location eastus\n\n"
            "  # Build and push both images with a release tag\n"
            "  azure-deploy build-push -r laraveldockeracr --tag v1.4.0\n\n"
            "  # Everything, in order\n"
            "  azure-deploy deploy --descriptor deploy.yaml --tag v1.4.0\n\n"
            "Exit codes: 0 success, 1 configuration, 2 provisioning, "
            "3 build/auth, 4 release, 5 health check"
        ),
    )
    common = _common_parser()
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    provision = sub.add_parser(
        "provision", parents=[common], help="Ensure every declared resource exists"
    )
    _add_provision_options(provision)

    build_push = sub.add_parser(
        "build-push", parents=[common], help="Build and push the application and proxy images"
    )
    _add_build_options(build_push)

    release = sub.add_parser(
        "release", parents=[common], help="Point the web app at an already pushed image"
    )
    _add_release_options(release)

    verify = sub.add_parser(
        "verify", parents=[common], help="Probe the web app's health endpoint"
    )
    _add_health_options(verify)
    verify.set_defaults(health_initial_delay=0.0)

    deploy = sub.add_parser(
        "deploy", parents=[common], help="provision, build-push, release and verify"
    )
    _add_provision_options(deploy)
    _add_build_options(deploy)
    _add_release_options(deploy)
    _add_health_options(deploy)

    return parser


def load_target(config: DeployConfig) -> Descriptor:
    """
    Descriptor for this run: the YAML file if given, else the standard stack
    named by the command-line options.

    Raises:
        ConfigError: If the descriptor is invalid
    """
    require_secrets = config.command in SECRET_COMMANDS
    if config.descriptor:
        return load_descriptor(config.descriptor, require_secrets=require_secrets)
    return default_descriptor(
        resource_group=config.resource_group,
        location=config.location,
        registry=config.registry,
        webapp=config.webapp,
        require_secrets=require_secrets,
    )


def resolve_subscription(config: DeployConfig, descriptor: Descriptor) -> str:
    """--subscription / $AZURE_SUBSCRIPTION_ID, then the descriptor, then az CLI."""
    return (
        config.subscription_id
        or descriptor.subscription_id
        or default_subscription_id()
    )


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    setup_logging(verbose=args.verbose, log_file="azure-deploy.log")

    config = DeployConfig.from_args(args)

    try:
        descriptor = load_target(config)
        config.subscription_id = resolve_subscription(config, descriptor)
        pipeline = DeploymentPipeline(config, descriptor)
    except DeploymentError as e:
        logger.error(f"{e.stage} error: {e}")
        return e.exit_code

    return pipeline.run()
