"""
Unit tests for ArmRestClient and the Azure CLI credentials.
"""

import json
import unittest
from unittest.mock import MagicMock, patch

import requests
from google.auth import exceptions as ga_exceptions

from clients import ArmRestClient, AzureCliCredentials, default_subscription_id
from errors import ApiError, AuthError

RID = "/subscriptions/sub-123/resourceGroups/rg1/providers/Microsoft.Cache/redis/cache1"


def _response(status_code=200, body=None, headers=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.content = json.dumps(body).encode() if body is not None else b""
    resp.text = text or (json.dumps(body) if body is not None else "")
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


class TestArmRestClient(unittest.TestCase):
    """Test ArmRestClient REST API interactions."""

    def setUp(self):
        """Set up test fixtures."""
        with patch("clients.AuthorizedSession"):
            self.client = ArmRestClient(
                subscription_id="sub-123", credentials=MagicMock(), poll_interval=0
            )
        self.session = MagicMock()
        self.client.session = self.session
        sleep = patch("clients.time.sleep")
        self.sleep = sleep.start()
        self.addCleanup(sleep.stop)

    def test_client_initialization(self):
        """Test client is properly initialised."""
        self.assertEqual(self.client.subscription_id, "sub-123")
        self.assertEqual(self.client.timeout_s, 60)
        self.assertEqual(self.client.max_retries, 5)
        self.assertEqual(self.client.base_delay, 5.0)

    def test_resource_id(self):
        """Test ARM resource ID construction."""
        self.assertEqual(
            self.client.resource_id("rg1"), "/subscriptions/sub-123/resourceGroups/rg1"
        )
        self.assertEqual(
            self.client.resource_id("rg1", "Microsoft.Web/sites", "app", "config", "web"),
            "/subscriptions/sub-123/resourceGroups/rg1/providers/Microsoft.Web/sites/app/config/web",
        )

    def test_url_construction(self):
        """Test API URL construction."""
        self.assertEqual(self.client._url(RID), f"https://management.azure.com{RID}")
        self.assertEqual(
            self.client._url("https://management.azure.com/op/1"),
            "https://management.azure.com/op/1",
        )

    def test_get_resource_found(self):
        """Test getting an existing resource."""
        self.session.request.return_value = _response(200, {"name": "cache1"})

        body = self.client.get_resource(RID, "2023-08-01")

        self.assertEqual(body["name"], "cache1")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", f"https://management.azure.com{RID}"))
        self.assertEqual(kwargs["params"], {"api-version": "2023-08-01"})
        self.assertEqual(kwargs["timeout"], 60)

    def test_get_resource_missing(self):
        """Test a 404 means the resource does not exist."""
        self.session.request.return_value = _response(404, {"error": {"code": "ResourceNotFound"}})
        self.assertIsNone(self.client.get_resource(RID, "2023-08-01"))

    def test_get_resource_error_text_verbatim(self):
        """Test provider error messages are kept verbatim."""
        self.session.request.return_value = _response(
            400, {"error": {"code": "InvalidApiVersion", "message": "The api-version is invalid."}}
        )

        with self.assertRaises(ApiError) as ctx:
            self.client.get_resource(RID, "1999-01-01")

        self.assertIn("InvalidApiVersion: The api-version is invalid.", str(ctx.exception))
        self.assertEqual(ctx.exception.status_code, 400)

    def test_retry_on_throttling(self):
        """Test 429 responses are retried, honouring Retry-After."""
        self.session.request.side_effect = [
            _response(429, {}, headers={"Retry-After": "7"}),
            _response(200, {"name": "cache1"}),
        ]

        body = self.client.get_resource(RID, "2023-08-01")

        self.assertEqual(body["name"], "cache1")
        self.sleep.assert_called_once_with(7.0)

    def test_retry_on_connection_error(self):
        """Test network errors are retried."""
        self.session.request.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            _response(200, {"name": "cache1"}),
        ]
        self.assertEqual(self.client.get_resource(RID, "2023-08-01")["name"], "cache1")

    def test_max_retries_exceeded(self):
        """Test persistent server errors eventually raise."""
        self.client.max_retries = 2
        self.session.request.return_value = _response(503, {})

        with self.assertRaises(ApiError):
            self.client.get_resource(RID, "2023-08-01")

        self.assertEqual(self.session.request.call_count, 3)

    def test_token_failure_is_auth_error(self):
        """Test credential refresh failures surface as AuthError."""
        self.session.request.side_effect = ga_exceptions.RefreshError("az login required")
        with self.assertRaises(AuthError):
            self.client.get_resource(RID, "2023-08-01")

    def test_calculate_delay_capped(self):
        """Test the backoff delay never exceeds 180 seconds."""
        self.assertLessEqual(self.client._calculate_delay(10), 180.0)
        self.assertGreater(self.client._calculate_delay(0), 0)

    def test_put_resource_sync(self):
        """Test a synchronous create returns the body."""
        self.session.request.return_value = _response(200, {"id": RID})

        body = self.client.put_resource(RID, "2023-08-01", {"location": "eastus"})

        self.assertEqual(body["id"], RID)
        self.assertEqual(self.session.request.call_args.kwargs["json"], {"location": "eastus"})

    def test_put_resource_waits_for_async_operation(self):
        """Test long-running creates are polled to completion."""
        op_url = "https://management.azure.com/operations/op1"
        self.session.request.side_effect = [
            _response(201, {"id": RID}, headers={"Azure-AsyncOperation": op_url}),
            _response(200, {"status": "InProgress"}),
            _response(200, {"status": "Succeeded"}),
            _response(200, {"id": RID, "properties": {"hostName": "cache1.redis.cache.windows.net"}}),
        ]

        body = self.client.put_resource(RID, "2023-08-01", {"location": "eastus"})

        self.assertEqual(body["properties"]["hostName"], "cache1.redis.cache.windows.net")
        self.assertEqual(self.session.request.call_count, 4)

    def test_async_operation_failure(self):
        """Test a failed long-running operation raises with the provider message."""
        op_url = "https://management.azure.com/operations/op1"
        self.session.request.side_effect = [
            _response(201, {}, headers={"Azure-AsyncOperation": op_url}),
            _response(200, {"status": "Failed", "error": {"message": "SKU not available"}}),
        ]

        with self.assertRaises(ApiError) as ctx:
            self.client.put_resource(RID, "2023-08-01", {})

        self.assertIn("SKU not available", str(ctx.exception))

    def test_location_polling(self):
        """Test operations without Azure-AsyncOperation follow Location."""
        self.session.request.side_effect = [
            _response(202, None, headers={"Location": "https://management.azure.com/loc/1"}),
            _response(202, None),
            _response(204, None),
        ]

        self.client.post_action(RID, "restart", "2022-09-01")

        self.assertEqual(self.session.request.call_count, 3)

    def test_put_resource_rejected(self):
        """Test a rejected write raises ApiError with the status code."""
        self.session.request.return_value = _response(
            409, {"error": {"code": "Conflict", "message": "Name already in use"}}
        )
        with self.assertRaises(ApiError) as ctx:
            self.client.put_resource(RID, "2023-08-01", {})
        self.assertEqual(ctx.exception.status_code, 409)

    def test_post_action(self):
        """Test resource actions return their body."""
        self.session.request.return_value = _response(200, {"primaryKey": "k"})

        body = self.client.post_action(RID, "listKeys", "2023-08-01")

        self.assertEqual(body, {"primaryKey": "k"})
        self.assertEqual(
            self.session.request.call_args.args,
            ("POST", f"https://management.azure.com{RID}/listKeys"),
        )

    def test_check_access_denied(self):
        """Test a rejected subscription read is an AuthError."""
        self.session.request.return_value = _response(
            403, {"error": {"code": "AuthorizationFailed", "message": "no access"}}
        )
        with self.assertRaises(AuthError) as ctx:
            self.client.check_access()
        self.assertIn("sub-123", str(ctx.exception))


class TestAzureCliCredentials(unittest.TestCase):
    """Test the az CLI token source."""

    @patch("clients.subprocess.run")
    @patch("clients.shutil.which", return_value="/usr/bin/az")
    def test_refresh(self, mock_which, mock_run):
        """Test a token and expiry are read from the CLI."""
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout=json.dumps({"accessToken": "tok", "expires_on": 1893456000}),
            stderr="",
        )
        creds = AzureCliCredentials()

        creds.refresh(None)

        self.assertEqual(creds.token, "tok")
        self.assertEqual(creds.expiry.year, 2030)
        self.assertIsNone(creds.expiry.tzinfo)
        command = mock_run.call_args.args[0]
        self.assertEqual(command[:3], ["/usr/bin/az", "account", "get-access-token"])

    @patch("clients.shutil.which", return_value=None)
    def test_cli_missing(self, mock_which):
        """Test a missing CLI raises RefreshError."""
        with self.assertRaises(ga_exceptions.RefreshError):
            AzureCliCredentials().refresh(None)

    @patch("clients.subprocess.run")
    @patch("clients.shutil.which", return_value="/usr/bin/az")
    def test_cli_error(self, mock_which, mock_run):
        """Test a failing CLI raises RefreshError with its stderr."""
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="Please run 'az login'")
        with self.assertRaises(ga_exceptions.RefreshError) as ctx:
            AzureCliCredentials().refresh(None)
        self.assertIn("az login", str(ctx.exception))

    @patch("clients.subprocess.run")
    @patch("clients.shutil.which", return_value="/usr/bin/az")
    def test_default_subscription(self, mock_which, mock_run):
        """Test the CLI's active subscription is used."""
        mock_run.return_value = MagicMock(returncode=0, stdout="sub-999\n", stderr="")
        self.assertEqual(default_subscription_id(), "sub-999")

    @patch("clients.shutil.which", return_value=None)
    def test_default_subscription_not_logged_in(self, mock_which):
        """Test a missing CLI session is an AuthError."""
        with self.assertRaises(AuthError):
            default_subscription_id()


if __name__ == "__main__":
    unittest.main()
