"""
Deployment report: aggregates what each stage of a run produced.

Stages run on different threads; each writes only its own section, under a
lock.
"""

import json
import logging
import os
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

from errors import DeploymentError, HealthTimeout
from models import (
    HealthCheckOutcome,
    HealthState,
    ImageArtifact,
    ImageRole,
    ProvisionResult,
    ReleaseTarget,
)

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
PARTIALLY_SUCCEEDED = "partially-succeeded"
FAILED = "failed"

# command -> stages it runs
COMMAND_STAGES = {
    "provision": ("provision",),
    "build-push": ("build",),
    "release": ("release",),
    "verify": ("health",),
    "deploy": ("provision", "build", "release", "health"),
}


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {mins}m {secs:.0f}s"


def _truncate(text: Optional[str], limit: int) -> str:
    if not text:
        return "Unknown"
    return text[:limit] + "..." if len(text) > limit else text


class DeploymentReport:
    """Outcome of one orchestrator run."""

    def __init__(self, command: str = "deploy", roles=tuple(ImageRole)):
        if command not in COMMAND_STAGES:
            raise ValueError(f"Unknown command {command}")
        self.command = command
        self.stages = COMMAND_STAGES[command]
        self.roles = tuple(roles)
        self.start_time = time.time()
        self.end_time: Optional[float] = None

        self._lock = threading.Lock()
        self.provisioning: Dict[str, ProvisionResult] = {}
        self.artifacts: Dict[ImageRole, ImageArtifact] = {}
        self.release: Optional[ReleaseTarget] = None
        self.health_url: Optional[str] = None
        self.health_outcomes: List[HealthCheckOutcome] = []
        self.health_state: Optional[HealthState] = None
        self.api_status: Optional[HealthCheckOutcome] = None
        self.failure: Optional[DeploymentError] = None

    # ------------------------------------------------------------------
    # Recording (one section per stage)
    # ------------------------------------------------------------------

    def record_provision(self, result: ProvisionResult) -> None:
        with self._lock:
            self.provisioning[result.spec.key] = result

    def record_artifact(self, artifact: ImageArtifact) -> None:
        with self._lock:
            self.artifacts[artifact.role] = artifact

    def record_release(self, target: ReleaseTarget) -> None:
        with self._lock:
            self.release = target

    def record_health(
        self,
        url: str,
        outcomes: List[HealthCheckOutcome],
        state: HealthState,
        api_status: Optional[HealthCheckOutcome] = None,
    ) -> None:
        with self._lock:
            self.health_url = url
            self.health_outcomes = list(outcomes)
            self.health_state = state
            self.api_status = api_status

    def record_failure(self, error: DeploymentError) -> None:
        """Keep the first stage failure; later ones are consequences of it."""
        with self._lock:
            if self.failure is None:
                self.failure = error

    def finish(self) -> None:
        self.end_time = time.time()

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @property
    def provisioning_errors(self) -> List[ProvisionResult]:
        return [r for r in self.provisioning.values() if not r.ok]

    def _stage_done(self, stage: str) -> bool:
        if stage == "build":
            return all(role in self.artifacts for role in self.roles)
        if stage == "release":
            return self.release is not None
        if stage == "health":
            api_ok = self.api_status is None or self.api_status.success
            return self.health_state == HealthState.HEALTHY and api_ok
        return True

    @property
    def status(self) -> str:
        """
        succeeded: every stage of the command completed, no provisioning errors.
        partially-succeeded: provisioning had errors, yet release and health passed.
        failed: anything else.
        """
        if self.failure is not None:
            return FAILED
        later = [s for s in self.stages if s != "provision"]
        if not all(self._stage_done(s) for s in later):
            return FAILED
        if self.provisioning_errors:
            return PARTIALLY_SUCCEEDED if later else FAILED
        return SUCCEEDED

    @property
    def failed_stage(self) -> Optional[str]:
        if self.failure is not None:
            return self.failure.stage
        if self.provisioning_errors:
            return "provision"
        return None

    def exit_code(self) -> int:
        """0 on full success, otherwise the code of the failing stage."""
        if self.failure is not None:
            return self.failure.exit_code
        if self.status == SUCCEEDED:
            return 0
        if self.provisioning_errors:
            return 2
        return 1

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict:
        """Report as plain data. Sensitive settings are masked."""
        end = self.end_time or time.time()
        release = None
        if self.release is not None:
            release = {
                "service": self.release.service_name,
                "resource_group": self.release.resource_group,
                "image": self.release.current_image_ref,
                "host_name": self.release.host_name,
                "settings": self.release.redacted_settings(),
            }
        return {
            "command": self.command,
            "status": self.status,
            "failed_stage": self.failed_stage,
            "error": str(self.failure) if self.failure is not None else None,
            "start_time": datetime.fromtimestamp(self.start_time).isoformat(),
            "end_time": datetime.fromtimestamp(end).isoformat(),
            "total_duration_seconds": end - self.start_time,
            "provisioning": [
                {
                    "resource": r.spec.key,
                    "already_existed": r.already_existed,
                    "endpoint": r.endpoint,
                    "error": r.error,
                    "duration_seconds": r.duration_seconds,
                }
                for r in self.provisioning.values()
            ],
            "artifacts": [
                {
                    "role": a.role.value,
                    "image": a.registry_ref,
                    "tags": [a.tag, *a.extra_tags],
                    "digest": a.digest,
                }
                for a in self.artifacts.values()
            ],
            "release": release,
            "health": {
                "url": self.health_url,
                "state": self.health_state.value if self.health_state else None,
                "outcomes": [
                    {
                        "attempt": o.attempt,
                        "success": o.success,
                        "latency": o.latency,
                        "http_status": o.http_status,
                        "error": o.error,
                    }
                    for o in self.health_outcomes
                ],
                "api_status_ok": (
                    self.api_status.success if self.api_status is not None else None
                ),
            },
        }

    def export_json(self, report_dir: str = ".") -> str:
        """Write the report to deploy-report-<timestamp>.json and return its path."""
        os.makedirs(report_dir, exist_ok=True)
        filename = os.path.join(
            report_dir,
            f"deploy-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json",
        )
        with open(filename, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
        return filename

    def print_report(self) -> None:
        """Log the timing and status report."""
        end = self.end_time or time.time()

        logger.info("")
        logger.info("=" * 70)
        logger.info(f"DEPLOYMENT REPORT ({self.command})")
        logger.info("=" * 70)

        logger.info("")
        logger.info("TIMING SUMMARY")
        logger.info("-" * 40)
        logger.info(
            f"Start time:      {datetime.fromtimestamp(self.start_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(
            f"End time:        {datetime.fromtimestamp(end).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(f"Total duration:  {format_duration(end - self.start_time)}")

        if self.provisioning:
            logger.info("")
            logger.info("PROVISIONING")
            logger.info("-" * 40)
            logger.info(f"{'Resource':<40} {'Result':<10} {'Duration':<10} {'Endpoint / Error'}")
            logger.info("-" * 70)
            for r in self.provisioning.values():
                if not r.ok:
                    outcome, detail = "FAILED", _truncate(r.error, 60)
                elif r.already_existed:
                    outcome, detail = "existing", r.endpoint or ""
                else:
                    outcome, detail = "created", r.endpoint or ""
                duration = format_duration(r.duration_seconds) if r.duration_seconds else "N/A"
                logger.info(f"{r.spec.key:<40} {outcome:<10} {duration:<10} {detail}")

        if self.artifacts:
            logger.info("")
            logger.info("IMAGES")
            logger.info("-" * 40)
            for a in self.artifacts.values():
                logger.info(f"  {a.role.value:<12} {a.registry_ref}")
                for extra in a.extra_tags:
                    logger.info(f"  {'':<12} also tagged {extra}")

        if self.release is not None:
            logger.info("")
            logger.info("RELEASE")
            logger.info("-" * 40)
            logger.info(f"Service:         {self.release.service_name}")
            logger.info(f"Image:           {self.release.current_image_ref}")
            logger.info(f"App settings:    {len(self.release.environment_variables)}")

        if self.health_state is not None:
            logger.info("")
            logger.info("HEALTH CHECK")
            logger.info("-" * 40)
            logger.info(f"URL:             {self.health_url}")
            logger.info(f"State:           {self.health_state.value}")
            for o in self.health_outcomes:
                mark = "✓" if o.success else "✗"
                latency = f"{o.latency:.2f}s" if o.latency is not None else "N/A"
                logger.info(f"  {mark} attempt {o.attempt:<3} {latency:<8} {o.error or o.http_status}")
            if self.api_status is not None:
                mark = "✓" if self.api_status.success else "✗"
                logger.info(f"  {mark} /api/status {self.api_status.error or 'active'}")

        logger.info("")
        logger.info(f"STATUS: {self.status.upper()}")
        if self.failure is not None:
            logger.info(f"Failed stage:    {self.failure.stage}")
            logger.info(f"Error:           {self.failure}")

        self._print_next_steps()
        logger.info("")
        logger.info("=" * 70)

    def _print_next_steps(self) -> None:
        steps: List[str] = []
        release = self.release
        if isinstance(self.failure, HealthTimeout) and release is not None:
            steps.append("The new image is live but was never verified healthy.")
            steps.append(
                f"Check the container logs: az webapp log tail "
                f"--resource-group {release.resource_group} --name {release.service_name}"
            )
        elif self.status == PARTIALLY_SUCCEEDED:
            steps.append("Re-run provision to retry the resources that failed.")
        elif self.status == SUCCEEDED and release is not None and release.host_name:
            steps.append(f"Application URL: https://{release.host_name}")
            steps.append(f"Health check:    https://{release.host_name}/health")
        if not steps:
            return
        logger.info("")
        logger.info("NEXT STEPS")
        logger.info("-" * 40)
        for step in steps:
            logger.info(f"  {step}")
