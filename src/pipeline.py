"""
Deployment pipeline: provision -> build and push -> release -> verify.

Provisioning and the image builds share one task graph, so the builds start
as soon as the registry exists and run alongside the remaining resources.
Release waits for both; verification runs last and is the only stage a
workflow timeout interrupts.
"""

import logging
import threading
from functools import partial
from typing import Dict, List, Optional

from clients import ArmRestClient
from config import DeployConfig
from descriptors import Descriptor
from errors import (
    ApiError,
    AuthError,
    BuildError,
    ConfigError,
    DeploymentError,
    HealthTimeout,
    ProvisionError,
    ReleaseError,
)
from health import HEALTH_PATH, HealthVerifier, api_status_url
from models import (
    HealthCheckOutcome,
    HealthState,
    ImageArtifact,
    ImageRole,
    ProvisionResult,
    RegistryRef,
    ReleaseTarget,
    ResourceKind,
)
from provisioner import Provisioner
from publisher import ImagePublisher, default_build_id
from release import ReleaseController
from report import DeploymentReport
from workflow import Cancelled, DependencyFailed, TaskGraph

logger = logging.getLogger(__name__)


def _build_task(role: ImageRole) -> str:
    return f"build/{role.value}"


class DeploymentPipeline:
    """One orchestrator run against one descriptor."""

    def __init__(
        self,
        config: DeployConfig,
        descriptor: Descriptor,
        api: Optional[ArmRestClient] = None,
        publisher: Optional[ImagePublisher] = None,
        health_session=None,
    ):
        """
        Args:
            config: Run configuration
            descriptor: Target infrastructure
            api: ARM client; built from the config when omitted
            publisher: Image publisher; built from the config when omitted
            health_session: requests session for health probes
        """
        self.config = config
        self.descriptor = descriptor
        self.api = api or ArmRestClient(
            config.subscription_id,
            poll_interval=config.poll_interval,
            operation_timeout=config.timeout,
        )
        self.provisioner = Provisioner(self.api, max_parallel=config.max_parallel)
        self.publisher = publisher or ImagePublisher(
            context=config.context,
            recipes=descriptor.recipes,
            cleanup=config.cleanup,
        )
        self.releaser = ReleaseController(self.provisioner)
        self.health_session = health_session
        self.build_id = config.build_id or default_build_id()

        self.cancel = threading.Event()
        self.report = DeploymentReport(config.command, roles=tuple(descriptor.recipes))

        self.results: List[ProvisionResult] = []
        self.artifacts: Dict[ImageRole, ImageArtifact] = {}
        self.target: Optional[ReleaseTarget] = None
        self._registry: Optional[RegistryRef] = None
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_access(self) -> None:
        try:
            self.api.check_access()
        except ApiError as e:
            raise AuthError(str(e)) from e

    def _result_for(self, kind: ResourceKind) -> Optional[ProvisionResult]:
        for result in self.results:
            if result.spec.kind == kind:
                return result
        return None

    def _discover(self) -> List[ProvisionResult]:
        """Look up every declared resource without creating anything."""
        if not self.results:
            self.results = [self.provisioner.discover(spec) for spec in self.descriptor.specs]
        return self.results

    def registry_ref(self) -> RegistryRef:
        """Registry login server and credentials, fetched once per run."""
        with self._registry_lock:
            if self._registry is None:
                spec = self.descriptor.require(ResourceKind.CONTAINER_REGISTRY)
                result = self._result_for(ResourceKind.CONTAINER_REGISTRY)
                login_server = result.endpoint if result is not None and result.ok else None
                self._registry = self.provisioner.registry_ref(spec, login_server)
            return self._registry

    def _build(self, role: ImageRole) -> ImageArtifact:
        artifact = self.publisher.build_and_push(
            role,
            self.registry_ref(),
            tag=self.config.tag,
            extra_tags=[self.build_id],
        )
        self.artifacts[role] = artifact
        self.report.record_artifact(artifact)
        return artifact

    def _raise_build_failure(self, role: ImageRole, error: BaseException) -> None:
        if isinstance(error, DeploymentError):
            raise error
        repository = self.descriptor.recipes[role].repository
        if isinstance(error, Cancelled):
            raise BuildError(repository, "not started: workflow timed out")
        raise BuildError(repository, str(error)) from error

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def provision(self) -> List[ProvisionResult]:
        """Ensure every declared resource. Failures are recorded, not raised."""
        self._check_access()
        self.results = self.provisioner.provision(
            self.descriptor.specs, report=self.report, cancel=self.cancel
        )
        return self.results

    def build_and_push(self) -> Dict[ImageRole, ImageArtifact]:
        """Build and push one image per role, concurrently."""
        self.publisher.check_daemon()
        self._check_access()
        self.registry_ref()

        graph = TaskGraph()
        for role in self.descriptor.recipes:
            graph.add(_build_task(role), partial(self._build, role))
        outcomes = graph.run(max_parallel=len(graph), cancel=self.cancel)

        for role in self.descriptor.recipes:
            outcome = outcomes[_build_task(role)]
            if not outcome.ok:
                self._raise_build_failure(role, outcome.error)
        return dict(self.artifacts)

    def _application_artifact(self) -> ImageArtifact:
        artifact = self.artifacts.get(ImageRole.APPLICATION)
        if artifact is not None:
            return artifact
        # Release of an image pushed by an earlier build-push
        registry = self.registry_ref()
        recipe = self.descriptor.recipes[ImageRole.APPLICATION]
        return ImageArtifact(
            role=ImageRole.APPLICATION,
            registry_ref=f"{registry.login_server}/{recipe.repository}:{self.config.tag}",
            tag=self.config.tag,
        )

    def release(self) -> ReleaseTarget:
        """Point the web service at the application image and restart it."""
        service = self.descriptor.require(ResourceKind.WEB_SERVICE)
        results = self.results or self._discover()
        web = self._result_for(ResourceKind.WEB_SERVICE)
        if web is None or not web.ok:
            raise ReleaseError(service.name, web.error if web else "not provisioned")

        artifact = self._application_artifact()
        target = self.releaser.prepare_target(
            service, results, self.config.environment, self.registry_ref()
        )
        self.target = self.releaser.release(
            target, artifact, force_restart=self.config.force_restart
        )
        self.report.record_release(self.target)
        return self.target

    def _health_url(self) -> str:
        if self.config.health_url:
            return self.config.health_url
        host = self.target.host_name if self.target is not None else None
        if not host:
            service = self.descriptor.require(ResourceKind.WEB_SERVICE)
            self._discover()
            web = self._result_for(ResourceKind.WEB_SERVICE)
            if web is None or not web.ok:
                raise ConfigError(
                    f"Cannot determine the URL of {service.name}; pass --url"
                )
            host = web.endpoint
        return f"https://{host}{HEALTH_PATH}"

    def verify(self) -> List[HealthCheckOutcome]:
        """
        Probe the service until healthy.

        Raises:
            HealthTimeout: If attempts ran out or the run was cancelled
        """
        url = self._health_url()
        verifier = HealthVerifier(session=self.health_session, cancel=self.cancel)
        logger.info(f"Verifying {url} (max {self.config.health_attempts} attempts)")
        outcomes = verifier.verify(
            url,
            max_attempts=self.config.health_attempts,
            interval=self.config.health_interval,
            initial_delay=self.config.health_initial_delay,
            backoff=self.config.health_backoff,
        )

        api_status = None
        if verifier.state == HealthState.HEALTHY and self.config.check_api_status:
            api_status = verifier.check_api_status(url)
        self.report.record_health(url, outcomes, verifier.state, api_status)

        if verifier.state != HealthState.HEALTHY:
            raise HealthTimeout(
                url, len(outcomes), cancelled=verifier.state == HealthState.CANCELLED
            )
        if api_status is not None and not api_status.success:
            raise HealthTimeout(api_status_url(url), 1)
        return outcomes

    def deploy(self) -> DeploymentReport:
        """All four stages. Builds run inside the provisioning graph."""
        registry = self.descriptor.require(ResourceKind.CONTAINER_REGISTRY)
        service = self.descriptor.require(ResourceKind.WEB_SERVICE)
        self.publisher.check_daemon()
        self._check_access()

        specs = self.descriptor.specs
        graph = TaskGraph()
        self.provisioner.add_tasks(graph, specs, self.report)
        for role in self.descriptor.recipes:
            graph.add(_build_task(role), partial(self._build, role), depends_on=[registry.key])

        outcomes = graph.run(
            max_parallel=self.config.max_parallel + len(self.descriptor.recipes),
            failed=lambda value: isinstance(value, ProvisionResult) and not value.ok,
            cancel=self.cancel,
        )
        self.results = self.provisioner.collect(specs, outcomes, self.report)

        for role in self.descriptor.recipes:
            outcome = outcomes[_build_task(role)]
            if outcome.ok:
                continue
            if isinstance(outcome.error, DependencyFailed):
                failed = self._result_for(ResourceKind.CONTAINER_REGISTRY)
                raise ProvisionError(registry.key, failed.error if failed else "failed")
            self._raise_build_failure(role, outcome.error)

        web = self._result_for(ResourceKind.WEB_SERVICE)
        if web is None or not web.ok:
            raise ProvisionError(service.key, web.error if web else "not provisioned")

        self.release()
        self.verify()
        return self.report

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def _on_timeout(self) -> None:
        logger.warning(
            f"Workflow timeout of {self.config.workflow_timeout:.0f}s reached; cancelling"
        )
        self.cancel.set()

    def run(self) -> int:
        """
        Run the configured command, print and export the report.

        Returns:
            Process exit code
        """
        stages = {
            "provision": self.provision,
            "build-push": self.build_and_push,
            "release": self.release,
            "verify": self.verify,
            "deploy": self.deploy,
        }
        if self.config.command not in stages:
            raise ConfigError(f"Unknown command {self.config.command}")

        timer = None
        if self.config.workflow_timeout:
            timer = threading.Timer(self.config.workflow_timeout, self._on_timeout)
            timer.daemon = True
            timer.start()

        logger.info("=" * 70)
        logger.info(f"AZURE DEPLOY: {self.config.command}")
        logger.info("=" * 70)
        logger.info(f"Subscription:    {self.api.subscription_id}")
        logger.info(f"Location:        {self.descriptor.location}")
        logger.info(f"Resources:       {len(self.descriptor.specs)}")
        logger.info(f"Image tag:       {self.config.tag} (build {self.build_id})")
        logger.info("=" * 70)

        try:
            stages[self.config.command]()
        except DeploymentError as e:
            logger.error(f"{e.stage} stage failed: {e}")
            self.report.record_failure(e)
        finally:
            if timer is not None:
                timer.cancel()
            self.report.finish()

        self.report.print_report()
        try:
            self.report.export_json(self.config.report_dir)
        except OSError as e:
            logger.error(f"Could not write JSON report to {self.config.report_dir}: {e}")
        return self.report.exit_code()
