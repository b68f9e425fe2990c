"""
REST client for the Azure Resource Manager control plane.

Requests go through google-auth's AuthorizedSession; the bearer token comes
from the ambient Azure CLI session (`az login`).
"""

import datetime
import json
import logging
import shutil
import subprocess
import time
from typing import Dict, List, Optional

import requests
from google.auth import credentials as ga_credentials
from google.auth import exceptions as ga_exceptions
from google.auth.transport.requests import AuthorizedSession

from errors import ApiError, AuthError

logger = logging.getLogger(__name__)

ARM_BASE = "https://management.azure.com"
ARM_RESOURCE = "https://management.azure.com/"
SUBSCRIPTION_API_VERSION = "2020-01-01"

# Used when the CLI does not report an expiry
DEFAULT_TOKEN_LIFETIME = datetime.timedelta(minutes=5)


def _run_az(args: List[str], az_path: Optional[str] = None) -> str:
    """
    Run an Azure CLI command and return its stdout.

    Raises:
        google.auth.exceptions.RefreshError: If the CLI is missing or fails
    """
    binary = az_path or shutil.which("az")
    if not binary:
        raise ga_exceptions.RefreshError(
            "Azure CLI is not installed. Install it and run `az login`."
        )
    try:
        proc = subprocess.run(
            [binary, *args],
            capture_output=True,
            text=True,
            timeout=60,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ga_exceptions.RefreshError(f"Azure CLI invocation failed: {e}") from e
    if proc.returncode != 0:
        stderr = proc.stderr.strip() or f"exit code {proc.returncode}"
        raise ga_exceptions.RefreshError(f"Azure CLI error: {stderr}")
    return proc.stdout


class AzureCliCredentials(ga_credentials.Credentials):
    """google-auth credentials backed by `az account get-access-token`."""

    def __init__(self, resource: str = ARM_RESOURCE, az_path: Optional[str] = None):
        super().__init__()
        self.resource = resource
        self.az_path = az_path

    def refresh(self, request) -> None:
        out = _run_az(
            ["account", "get-access-token", "--resource", self.resource, "--output", "json"],
            self.az_path,
        )
        try:
            data = json.loads(out)
            self.token = data["accessToken"]
        except (ValueError, KeyError) as e:
            raise ga_exceptions.RefreshError(
                f"Unexpected output from az account get-access-token: {e}"
            ) from e

        # google-auth compares expiry against naive UTC
        expires_on = data.get("expires_on")
        if expires_on:
            self.expiry = datetime.datetime.fromtimestamp(
                int(expires_on), tz=datetime.timezone.utc
            ).replace(tzinfo=None)
        else:
            self.expiry = (
                datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
                + DEFAULT_TOKEN_LIFETIME
            )
        logger.debug(f"Obtained ARM access token (expires {self.expiry} UTC)")


def default_subscription_id(az_path: Optional[str] = None) -> str:
    """
    Return the subscription selected in the Azure CLI session.

    Raises:
        AuthError: If the CLI is missing or not logged in
    """
    try:
        out = _run_az(["account", "show", "--query", "id", "--output", "tsv"], az_path)
    except ga_exceptions.RefreshError as e:
        raise AuthError(f"Not logged in to Azure CLI (run `az login`): {e}") from e
    subscription = out.strip()
    if not subscription:
        raise AuthError("Azure CLI returned no active subscription")
    return subscription


class ArmRestClient:
    """REST client for Azure Resource Manager."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
    TERMINAL_OPERATION_STATES = {"succeeded", "failed", "canceled", "cancelled"}

    def __init__(
        self,
        subscription_id: str,
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 5.0,
        poll_interval: int = 10,
        operation_timeout: int = 1800,
        credentials: Optional[ga_credentials.Credentials] = None,
    ):
        """
        Initialize the ARM REST client.

        Args:
            subscription_id: Azure subscription ID
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
            poll_interval: Interval between long-running operation polls
            operation_timeout: Maximum wait for a long-running operation
            credentials: Token source; defaults to the Azure CLI session
        """
        self.subscription_id = subscription_id
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.poll_interval = poll_interval
        self.operation_timeout = operation_timeout

        self.session = AuthorizedSession(credentials or AzureCliCredentials())

    def _url(self, path: str) -> str:
        """Construct full API URL from a resource path or absolute URL."""
        if path.startswith("https://"):
            return path
        return f"{ARM_BASE}/{path.lstrip('/')}"

    def resource_id(
        self,
        resource_group: str,
        provider_type: Optional[str] = None,
        name: Optional[str] = None,
        *children: str,
    ) -> str:
        """
        Build an ARM resource ID.

        Examples:
            resource_id("rg") -> /subscriptions/<sub>/resourceGroups/rg
            resource_id("rg", "Microsoft.Web/sites", "app", "config", "web")
        """
        rid = f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
        if provider_type:
            rid += f"/providers/{provider_type}/{name}"
        for child in children:
            rid += f"/{child}"
        return rid

    def _request_with_retry(self, method: str, url: str, **kwargs) -> dict:
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Args:
            method: HTTP method
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            Dictionary with 'response' and 'status_code' keys

        Raises:
            AuthError: If a token cannot be obtained
            ApiError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except ga_exceptions.RefreshError as e:
                raise AuthError(f"Azure authentication failed: {e}") from e
            except requests.exceptions.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                delay = self._calculate_delay(attempt, resp)
                error_info = self._error_text(resp)
                logger.warning(
                    f"Retryable error {resp.status_code} ({error_info}), attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {error_info}"
                time.sleep(delay)
                continue

            return {"response": resp, "status_code": resp.status_code}

        raise ApiError(f"Max retries exceeded. Last error: {last_error}")

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 180.0)

    @staticmethod
    def _error_text(resp) -> str:
        """Extract the provider's error message, falling back to the raw body."""
        try:
            error = resp.json().get("error") or {}
        except ValueError:
            error = {}
        if isinstance(error, dict) and error.get("message"):
            code = error.get("code")
            return f"{code}: {error['message']}" if code else error["message"]
        return (resp.text or "")[:500]

    def _json(self, resp) -> dict:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    def check_access(self) -> None:
        """
        Verify the session can read the subscription.

        Raises:
            AuthError: If the token is rejected or cannot be obtained
        """
        url = self._url(f"/subscriptions/{self.subscription_id}")
        result = self._request_with_retry(
            "GET", url, params={"api-version": SUBSCRIPTION_API_VERSION}
        )
        resp = result["response"]
        if resp.status_code in (401, 403, 404):
            raise AuthError(
                f"Cannot access subscription {self.subscription_id} "
                f"({resp.status_code}): {self._error_text(resp)}"
            )
        if resp.status_code != 200:
            raise ApiError(
                f"Subscription check failed ({resp.status_code}): {self._error_text(resp)}",
                resp.status_code,
            )

    def get_resource(self, resource_id: str, api_version: str) -> Optional[Dict]:
        """
        Get a resource.

        Args:
            resource_id: ARM resource ID
            api_version: Resource provider API version

        Returns:
            Resource body, or None if the resource does not exist

        Raises:
            ApiError: If API call fails
        """
        result = self._request_with_retry(
            "GET", self._url(resource_id), params={"api-version": api_version}
        )
        resp = result["response"]
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ApiError(
                f"Get {resource_id} failed ({resp.status_code}): {self._error_text(resp)}",
                resp.status_code,
            )
        return self._json(resp)

    def put_resource(self, resource_id: str, api_version: str, body: Dict) -> Dict:
        """
        Create or replace a resource and wait for provisioning to finish.

        Returns:
            Final resource body

        Raises:
            ApiError: If the request or the long-running operation fails
        """
        return self._write("PUT", resource_id, api_version, body)

    def patch_resource(self, resource_id: str, api_version: str, body: Dict) -> Dict:
        """Update part of a resource and wait for it to settle."""
        return self._write("PATCH", resource_id, api_version, body)

    def _write(self, method: str, resource_id: str, api_version: str, body: Dict) -> Dict:
        result = self._request_with_retry(
            method,
            self._url(resource_id),
            params={"api-version": api_version},
            json=body,
        )
        resp = result["response"]
        if resp.status_code not in (200, 201, 202):
            raise ApiError(
                f"{method} {resource_id} failed ({resp.status_code}): {self._error_text(resp)}",
                resp.status_code,
            )
        if self._is_async(resp):
            self.wait_for_operation(resp, resource_id)
            final = self.get_resource(resource_id, api_version)
            return final or {}
        return self._json(resp)

    def post_action(
        self,
        resource_id: str,
        action: str,
        api_version: str,
        body: Optional[Dict] = None,
    ) -> Dict:
        """
        Invoke a resource action such as `restart` or `listKeys`.

        Returns:
            Response body (empty for actions without one)

        Raises:
            ApiError: If API call fails
        """
        url = self._url(f"{resource_id}/{action}")
        kwargs = {"params": {"api-version": api_version}}
        if body is not None:
            kwargs["json"] = body
        result = self._request_with_retry("POST", url, **kwargs)
        resp = result["response"]
        if resp.status_code not in (200, 202, 204):
            raise ApiError(
                f"{action} on {resource_id} failed ({resp.status_code}): {self._error_text(resp)}",
                resp.status_code,
            )
        if resp.status_code == 202 and self._is_async(resp):
            self.wait_for_operation(resp, f"{resource_id}/{action}")
        return self._json(resp)

    @staticmethod
    def _is_async(resp) -> bool:
        return resp.status_code in (201, 202) and (
            "Azure-AsyncOperation" in resp.headers or "Location" in resp.headers
        )

    def wait_for_operation(self, resp, description: str) -> None:
        """
        Poll a long-running operation until it finishes.

        Follows the Azure-AsyncOperation header when present, otherwise the
        Location header.

        Raises:
            ApiError: If the operation fails, is cancelled, or times out
        """
        async_url = resp.headers.get("Azure-AsyncOperation")
        location_url = resp.headers.get("Location")
        start_time = time.time()

        while True:
            if time.time() - start_time > self.operation_timeout:
                raise ApiError(
                    f"Timeout waiting for {description} after {self.operation_timeout}s"
                )
            time.sleep(self.poll_interval)

            if async_url:
                result = self._request_with_retry("GET", self._url(async_url))
                op_resp = result["response"]
                if op_resp.status_code != 200:
                    raise ApiError(
                        f"Polling {description} failed ({op_resp.status_code}): {self._error_text(op_resp)}",
                        op_resp.status_code,
                    )
                op = self._json(op_resp)
                status = str(op.get("status", "")).lower()
                logger.debug(f"  {description}: status={status or 'unknown'}")
                if status not in self.TERMINAL_OPERATION_STATES:
                    continue
                if status == "succeeded":
                    return
                error = op.get("error") or {}
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ApiError(f"{description} {status}: {message or op}")

            result = self._request_with_retry("GET", self._url(location_url))
            op_resp = result["response"]
            if op_resp.status_code == 202:
                continue
            if op_resp.status_code in (200, 201, 204):
                return
            raise ApiError(
                f"{description} failed ({op_resp.status_code}): {self._error_text(op_resp)}",
                op_resp.status_code,
            )
