import asyncio
import json
import time
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, call, patch

import aiohttp

from konflux_compliance.exceptions import (
    GitHubAPIError,
    GitHubRateLimitError,
    GitHubRateLimitExhaustedError,
    GitHubServerError,
)
from konflux_compliance.github_client import AsyncGitHubAPI, RateLimitStatus, raw_file_url

API = "https://api.github.com"


def rate_limit_body(remaining, limit=5000, used=None, reset=None):
    used = limit - remaining if used is None else used
    reset = int(time.time()) + 1800 if reset is None else reset
    return json.dumps({"rate": {"limit": limit, "remaining": remaining, "used": used, "reset": reset}})


class TestRateLimitStatus(TestCase):
    def test_from_response(self):
        status = RateLimitStatus.from_response(json.loads(rate_limit_body(1000, reset=4000)))
        self.assertEqual(status.usage_percent, 80)
        self.assertEqual(status.minutes_until_reset(now=1000), 50)

    def test_missing_field(self):
        with self.assertRaises(ValueError):
            RateLimitStatus.from_response({"rate": {"limit": 5000, "remaining": None}})


class TestAsyncGitHubAPI(IsolatedAsyncioTestCase):
    def new_client(self, authorization="Bearer ghp_test"):
        auth = MagicMock(authorization=authorization)
        client = AsyncGitHubAPI(auth=auth, retry_delay=0)
        client._request = AsyncMock()
        return client

    async def test_api_call(self):
        client = self.new_client()
        client._request.return_value = (200, '{"check_runs": []}')
        self.assertEqual(await client.api_call("/repos/stolostron/console"), {"check_runs": []})
        client._request.assert_awaited_once_with(f"{API}/repos/stolostron/console", params=None)

    async def test_server_error_is_retried(self):
        client = self.new_client()
        client._request.side_effect = [(502, "Bad Gateway"), (200, "{}")]
        self.assertEqual(await client.api_call("/repos/stolostron/console"), {})
        self.assertEqual(client._request.await_count, 2)

    async def test_server_error_gives_up(self):
        client = self.new_client()
        client._request.return_value = (503, "Service Unavailable")
        with self.assertRaises(GitHubServerError):
            await client.api_call("/repos/stolostron/console")
        self.assertEqual(client._request.await_count, 3)

    @patch("asyncio.sleep", new_callable=AsyncMock)
    async def test_backoff_doubles(self, _):
        auth = MagicMock(authorization="Bearer ghp_test")
        client = AsyncGitHubAPI(auth=auth)
        client._request = AsyncMock(return_value=(503, "Service Unavailable"))
        with self.assertLogs("konflux_compliance.github_client", level="WARNING") as logs:
            with self.assertRaises(GitHubServerError):
                await client.api_call("/repos/stolostron/console")
        retries = [line for line in logs.output if "Retrying in" in line]
        self.assertEqual(len(retries), 2)
        self.assertIn("Retrying in 2s (attempt 1/3)", retries[0])
        self.assertIn("Retrying in 4s (attempt 2/3)", retries[1])
        self.assertEqual(client._request.await_count, 3)

    async def test_connection_error_is_retried(self):
        client = self.new_client()
        client._request.side_effect = [aiohttp.ServerDisconnectedError(), (200, "{}")]
        self.assertEqual(await client.api_call("/repos/stolostron/console"), {})
        self.assertEqual(client._request.await_count, 2)

    async def test_timeout_gives_up(self):
        client = self.new_client()
        client._request.side_effect = asyncio.TimeoutError()
        with self.assertRaises(asyncio.TimeoutError):
            await client.api_call("/repos/stolostron/console")
        self.assertEqual(client._request.await_count, 3)

    async def test_client_error_is_not_retried(self):
        client = self.new_client()
        client._request.return_value = (404, '{"message": "Not Found"}')
        with self.assertRaises(GitHubAPIError) as ctx:
            await client.api_call("/repos/stolostron/console")
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(client._request.await_count, 1)

    async def test_rate_limit_is_retried(self):
        client = self.new_client()
        limited = (403, '{"message": "API rate limit exceeded for user"}')
        client._request.side_effect = [limited, (200, rate_limit_body(100)), (200, "[]")]
        self.assertEqual(await client.api_call("/repos/stolostron/console"), [])
        self.assertEqual(client._request.await_args_list[1], call(f"{API}/rate_limit"))

    async def test_rate_limit_exhausted(self):
        client = self.new_client()
        client._request.side_effect = [
            (429, '{"message": "API rate limit exceeded"}'),
            (200, rate_limit_body(3)),
        ]
        with self.assertRaises(GitHubRateLimitExhaustedError):
            await client.api_call("/repos/stolostron/console")
        self.assertEqual(client._request.await_count, 2)

    async def test_rate_limit_without_authorization(self):
        client = self.new_client(authorization=None)
        client._request.return_value = (403, '{"message": "API rate limit exceeded"}')
        with self.assertRaises(GitHubRateLimitError):
            await client.api_call("/repos/stolostron/console")
        self.assertEqual(client._request.await_count, 3)

    async def test_forbidden_without_rate_limit(self):
        client = self.new_client()
        client._request.return_value = (403, '{"message": "Resource not accessible by integration"}')
        with self.assertRaises(GitHubAPIError) as ctx:
            await client.api_call("/repos/stolostron/console")
        self.assertNotIsInstance(ctx.exception, GitHubRateLimitError)
        self.assertEqual(client._request.await_count, 1)

    async def test_get_rate_limit(self):
        client = self.new_client()
        client._request.return_value = (200, rate_limit_body(4000, reset=123))
        status = await client.get_rate_limit()
        self.assertEqual((status.limit, status.remaining, status.used, status.reset), (5000, 4000, 1000, 123))

    async def test_path_exists(self):
        client = self.new_client()
        client._request.return_value = (200, "[]")
        self.assertTrue(await client.path_exists("stolostron", "console", "vendor"))
        client._request.return_value = (404, '{"message": "Not Found"}')
        self.assertFalse(await client.path_exists("stolostron", "console", "vendor"))

    async def test_fetch_check_runs_from_konflux_suite(self):
        client = self.new_client()
        suites = {"check_suites": [{"id": 1, "app": {"name": "Other"}}, {"id": 7, "app": {"name": "Red Hat Konflux"}}]}
        client._request.side_effect = [(200, json.dumps(suites)), (200, '{"check_runs": [{"name": "x"}]}')]
        runs = await client.fetch_check_runs("stolostron", "console", "main")
        self.assertEqual(runs, [{"name": "x"}])
        self.assertEqual(
            client._request.await_args_list[1],
            call(f"{API}/repos/stolostron/console/check-suites/7/check-runs", params={"per_page": 100}),
        )

    async def test_fetch_check_runs_fallback(self):
        client = self.new_client()
        client._request.side_effect = [(200, '{"check_suites": []}'), (200, '{"check_runs": []}')]
        self.assertEqual(await client.fetch_check_runs("stolostron", "console", "main"), [])
        self.assertEqual(
            client._request.await_args_list[1],
            call(f"{API}/repos/stolostron/console/commits/main/check-runs", params={"per_page": 100}),
        )

    def test_raw_file_url(self):
        self.assertEqual(
            raw_file_url("stolostron", "console", "main", ".tekton/console-push.yaml"),
            "https://raw.githubusercontent.com/stolostron/console/refs/heads/main/.tekton/console-push.yaml",
        )
