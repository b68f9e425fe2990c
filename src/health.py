"""
Post-release health verification.

A bounded state machine: WAITING (initial delay) -> PROBING -> HEALTHY, or
back to PROBING while attempts remain, or UNHEALTHY once they are exhausted.
Every wait goes through a threading.Event so a workflow timeout can cut it
short; the run then ends CANCELLED.
"""

import logging
import threading
import time
from typing import List, Optional
from urllib.parse import urljoin

import requests

from models import HealthCheckOutcome, HealthState

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
API_STATUS_PATH = "/api/status"
MAX_INTERVAL = 300.0


def api_status_url(url: str) -> str:
    """The /api/status URL on the same host as `url`."""
    return urljoin(url, API_STATUS_PATH)


class HealthVerifier:
    """Probes an application health endpoint until it answers or attempts run out."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        probe_timeout: float = 10.0,
        cancel: Optional[threading.Event] = None,
    ):
        """
        Args:
            session: HTTP session used for probes
            probe_timeout: Per-request timeout in seconds
            cancel: Event that aborts any pending wait when set
        """
        self.session = session or requests.Session()
        self.probe_timeout = probe_timeout
        self.cancel = cancel or threading.Event()
        self.state = HealthState.WAITING

    def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`. Returns True if cancelled."""
        return self.cancel.wait(max(0.0, seconds))

    def probe(
        self, url: str, attempt: int = 1, expected_status: Optional[str] = "ok"
    ) -> HealthCheckOutcome:
        """
        Issue one GET and judge the response.

        Network errors, non-2xx responses and an unexpected JSON `status`
        all count as failure.
        """
        start = time.monotonic()
        try:
            resp = self.session.get(url, timeout=self.probe_timeout)
        except requests.RequestException as e:
            return HealthCheckOutcome(
                attempt=attempt,
                success=False,
                latency=time.monotonic() - start,
                error=str(e),
            )
        latency = time.monotonic() - start

        if not 200 <= resp.status_code < 300:
            return HealthCheckOutcome(
                attempt=attempt,
                success=False,
                latency=latency,
                http_status=resp.status_code,
                error=f"HTTP {resp.status_code}",
            )

        if expected_status is not None:
            try:
                body = resp.json()
            except ValueError:
                body = None
            status = body.get("status") if isinstance(body, dict) else None
            if status != expected_status:
                return HealthCheckOutcome(
                    attempt=attempt,
                    success=False,
                    latency=latency,
                    http_status=resp.status_code,
                    error=f"status {status!r}, expected {expected_status!r}",
                )

        return HealthCheckOutcome(
            attempt=attempt,
            success=True,
            latency=latency,
            http_status=resp.status_code,
        )

    def verify(
        self,
        url: str,
        max_attempts: int = 5,
        interval: float = 30.0,
        initial_delay: float = 0.0,
        backoff: float = 1.0,
        expected_status: Optional[str] = "ok",
    ) -> List[HealthCheckOutcome]:
        """
        Probe `url` until it is healthy, stopping at the first success.

        Args:
            url: Health endpoint
            max_attempts: Upper bound on probes
            interval: Seconds between probes
            initial_delay: Seconds to wait before the first probe
            backoff: Multiplier applied to the interval after each failure;
                1.0 keeps it fixed. Capped at 300 seconds.
            expected_status: Required JSON `status`, or None to accept any 2xx

        Returns:
            Every probe outcome, in order. `state` holds the terminal state.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        outcomes: List[HealthCheckOutcome] = []
        self.state = HealthState.WAITING

        if initial_delay > 0:
            logger.info(f"Waiting {initial_delay:.0f}s for the service to start...")
            if self._wait(initial_delay):
                self.state = HealthState.CANCELLED
                logger.warning("Health verification cancelled before the first probe")
                return outcomes

        delay = interval
        for attempt in range(1, max_attempts + 1):
            if self.cancel.is_set():
                self.state = HealthState.CANCELLED
                break

            self.state = HealthState.PROBING
            outcome = self.probe(url, attempt, expected_status)
            outcomes.append(outcome)

            if outcome.success:
                self.state = HealthState.HEALTHY
                logger.info(
                    f"✓ Health check passed on attempt {attempt}/{max_attempts} "
                    f"({outcome.latency:.2f}s)"
                )
                return outcomes

            logger.warning(
                f"Health check attempt {attempt}/{max_attempts} failed: {outcome.error}"
            )
            if attempt == max_attempts:
                self.state = HealthState.UNHEALTHY
                break

            logger.info(f"  Retrying in {delay:.0f}s...")
            if self._wait(delay):
                self.state = HealthState.CANCELLED
                break
            # Backoff growth stops at MAX_INTERVAL; a longer fixed interval is kept
            if backoff > 1:
                delay = min(delay * backoff, max(interval, MAX_INTERVAL))

        if self.state == HealthState.CANCELLED:
            logger.warning(f"Health verification of {url} cancelled after {len(outcomes)} attempt(s)")
        else:
            logger.error(f"{url} did not become healthy after {len(outcomes)} attempt(s)")
        return outcomes

    def check_api_status(self, base_url: str) -> HealthCheckOutcome:
        """One probe of /api/status, which must report status "active"."""
        url = api_status_url(base_url)
        outcome = self.probe(url, 1, expected_status="active")
        if outcome.success:
            logger.info(f"✓ {url} reports active")
        else:
            logger.warning(f"{url} check failed: {outcome.error}")
        return outcome
