import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from aiohttp import ClientTimeout
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from konflux_compliance import constants, logutil
from konflux_compliance.exceptions import (
    GitHubAPIError,
    GitHubRateLimitError,
    GitHubRateLimitExhaustedError,
    GitHubServerError,
)
from konflux_compliance.github_auth import GitHubAuth

_LOGGER = logutil.get_logger(__name__)

_RATE_LIMIT_MESSAGE = re.compile(r"rate limit", re.IGNORECASE)

# Errors api_call retries with backoff
_RETRYABLE_ERRORS = (GitHubRateLimitError, GitHubServerError, aiohttp.ClientError, asyncio.TimeoutError)


@dataclass
class RateLimitStatus:
    """Core API quota as reported by GET /rate_limit."""

    limit: int
    remaining: int
    used: int
    reset: int

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "RateLimitStatus":
        """Parse the `rate` object of a /rate_limit response.

        :raises ValueError: if a field is missing or null
        """
        rate = (data or {}).get("rate") or {}
        values = {}
        for field in ("limit", "remaining", "used", "reset"):
            value = rate.get(field)
            if value is None:
                raise ValueError(f"rate limit response has no '{field}'")
            values[field] = int(value)
        return cls(**values)

    @property
    def usage_percent(self) -> int:
        if not self.limit:
            return 0
        return self.used * 100 // self.limit

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset)

    def minutes_until_reset(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return int((self.reset - int(now)) / 60)

    def format_reset_at(self) -> str:
        return self.reset_at.strftime("%Y-%m-%d %H:%M:%S")


class AsyncGitHubAPI:
    """A thin GitHub REST client with the retry policy the compliance scan needs.

    Rate limit (403/429 mentioning the rate limit) and server (5xx) errors are
    retried with exponential backoff. When the quota is nearly used up the call
    fails right away, since retrying can't succeed before the reset.
    """

    def __init__(
        self,
        auth: Optional[GitHubAuth] = None,
        api_url: str = constants.GITHUB_API_URL,
        max_retries: int = constants.GITHUB_MAX_RETRIES,
        retry_delay: float = constants.GITHUB_RETRY_DELAY,
    ):
        self.auth = auth
        self.api_url = api_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._timeout = ClientTimeout(total=60)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    @property
    def authorization(self) -> Optional[str]:
        return self.auth.authorization if self.auth else None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": constants.GITHUB_API_VERSION,
        }
        if self.authorization:
            headers["Authorization"] = self.authorization
        return headers

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.api_url}/{path_or_url.lstrip('/')}"

    async def _request(self, url: str, params: Optional[Dict] = None, authorized: bool = True) -> Tuple[int, str]:
        headers = self._headers() if authorized else {}
        async with self._get_session().get(url, headers=headers, params=params) as resp:
            return resp.status, await resp.text()

    async def api_call(self, path_or_url: str, params: Optional[Dict] = None) -> Any:
        """GET a GitHub API resource and return the decoded JSON body.

        :raises GitHubRateLimitExhaustedError: the quota is (nearly) used up
        :raises GitHubRateLimitError: still rate limited after max_retries attempts
        :raises GitHubServerError: still failing with 5xx after max_retries attempts
        :raises GitHubAPIError: any other unsuccessful status
        :raises aiohttp.ClientError, asyncio.TimeoutError: the connection still fails after max_retries attempts
        """
        url = self._url(path_or_url)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_delay),
            retry=(retry_if_exception_type(_RETRYABLE_ERRORS)
                   & retry_if_not_exception_type(GitHubRateLimitExhaustedError)),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._api_call_once(url, params)
        except GitHubRateLimitExhaustedError:
            raise
        except GitHubRateLimitError:
            _LOGGER.error("Rate limit exceeded after %s retries", self.max_retries)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _LOGGER.error("Request to %s failed after %s attempts: %r", url, self.max_retries, e)
            raise
        return result

    def _log_retry(self, retry_state: RetryCallState):
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        _LOGGER.warning(
            "Retrying in %ss (attempt %s/%s)...", int(delay), retry_state.attempt_number, self.max_retries,
        )

    async def _api_call_once(self, url: str, params: Optional[Dict]) -> Any:
        status, text = await self._request(url, params=params)
        _LOGGER.debug("API call to %s returned HTTP %s", url, status)

        if status in (403, 429) and _RATE_LIMIT_MESSAGE.search(text):
            _LOGGER.warning("GitHub API rate limit hit\n   Request URL: %s\n   HTTP Code: %s", url, status)
            await self._report_rate_limit(url, status)
            raise GitHubRateLimitError(f"GitHub API rate limit hit for {url}", status=status, url=url)
        if 500 <= status < 600:
            _LOGGER.warning("GitHub API server error (%s) for %s", status, url)
            raise GitHubServerError(f"GitHub API server error ({status}) for {url}", status=status, url=url)
        if not 200 <= status < 300:
            raise GitHubAPIError(f"GitHub API request to {url} failed with HTTP {status}", status=status, url=url)
        return json.loads(text) if text else None

    async def _report_rate_limit(self, url: str, status: int):
        """Log the rate limit details and fail fast when (almost) nothing is left."""
        if not self.authorization:
            _LOGGER.warning("No GitHub authorization token configured. Cannot fetch detailed rate limit information")
            return
        try:
            rl_status, rl_text = await self._request(self._url("/rate_limit"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _LOGGER.warning("Failed to fetch rate limit information from GitHub API: %s", e)
            return
        try:
            if rl_status != 200:
                raise ValueError(f"HTTP {rl_status}")
            rate_limit = RateLimitStatus.from_response(json.loads(rl_text))
        except ValueError:
            raw = "\n".join(rl_text.splitlines()[:20])
            _LOGGER.warning("Failed to parse rate limit details. Raw response from GitHub API:\n%s", raw)
            return

        _LOGGER.warning(
            "GitHub API Rate Limit Details:\n"
            "      Limit:     %s requests/hour\n"
            "      Used:      %s (%s%%)\n"
            "      Remaining: %s\n"
            "      Resets in: %s minutes (at %s)",
            rate_limit.limit, rate_limit.used, rate_limit.usage_percent, rate_limit.remaining,
            rate_limit.minutes_until_reset(), rate_limit.format_reset_at(),
        )
        if rate_limit.remaining < constants.RATE_LIMIT_EXHAUSTED_THRESHOLD:
            _LOGGER.error(
                "Rate limit exhausted (only %s requests remaining). Retrying won't help; "
                "please run again after %s",
                rate_limit.remaining, rate_limit.format_reset_at(),
            )
            raise GitHubRateLimitExhaustedError(
                f"GitHub API rate limit exhausted until {rate_limit.format_reset_at()}",
                status=status, url=url, reset_at=rate_limit.reset_at,
            )

    async def get_rate_limit(self) -> RateLimitStatus:
        status, text = await self._request(self._url("/rate_limit"))
        if status != 200:
            raise GitHubAPIError(f"Failed to fetch rate limit (HTTP {status})", status=status, url="/rate_limit")
        return RateLimitStatus.from_response(json.loads(text))

    async def path_exists(self, org: str, repo: str, path: str) -> bool:
        """Return True if `path` exists on the default branch of org/repo."""
        try:
            await self.api_call(f"/repos/{org}/{repo}/contents/{path}")
        except GitHubAPIError as e:
            if e.status == 404:
                return False
            raise
        return True

    async def fetch_check_runs(self, org: str, repo: str, branch: str) -> List[Dict]:
        """Fetch every check run reported for the head commit of a branch.

        The Konflux check suite is used when there is one since it holds all
        Konflux runs of the commit; otherwise the commit's check runs are used.
        """
        params = {"per_page": 100}
        suites = await self.api_call(f"/repos/{org}/{repo}/commits/{branch}/check-suites", params=params) or {}
        suite_id = next(
            (suite["id"] for suite in suites.get("check_suites", [])
             if (suite.get("app") or {}).get("name") == constants.KONFLUX_GITHUB_APP_NAME),
            None,
        )
        if suite_id is not None:
            runs = await self.api_call(f"/repos/{org}/{repo}/check-suites/{suite_id}/check-runs", params=params)
            _LOGGER.debug("Fetched check runs via suite ID: %s", suite_id)
        else:
            runs = await self.api_call(f"/repos/{org}/{repo}/commits/{branch}/check-runs", params=params)
            _LOGGER.debug("Fetched check runs via commit (fallback)")
        return (runs or {}).get("check_runs", [])

    async def fetch_raw(self, url: str) -> Tuple[int, str]:
        """GET a raw file, e.g. from raw.githubusercontent.com. No retries."""
        return await self._request(url, authorized=False)


def raw_file_url(org: str, repo: str, branch: str, path: str) -> str:
    return f"{constants.GITHUB_RAW_URL}/{org}/{repo}/refs/heads/{branch}/{path}"


def log_rate_limit_summary(rate_limit: RateLimitStatus, logger: logging.Logger = _LOGGER):
    """Log the quota before a scan, warning when it is running low."""
    logger.info(
        "GitHub API Rate Limit Status:\n"
        "  Limit:     %s requests/hour\n"
        "  Used:      %s\n"
        "  Remaining: %s\n"
        "  Resets in: %s minutes (at %s)",
        rate_limit.limit, rate_limit.used, rate_limit.remaining,
        rate_limit.minutes_until_reset(), rate_limit.format_reset_at(),
    )
    if rate_limit.remaining < constants.RATE_LIMIT_LOW_THRESHOLD:
        logger.warning("Less than %s GitHub API requests remaining!", constants.RATE_LIMIT_LOW_THRESHOLD)
    elif rate_limit.usage_percent > constants.RATE_LIMIT_HIGH_USAGE_PERCENT:
        logger.warning("Over %s%% of the GitHub API quota used (%s%%)",
                       constants.RATE_LIMIT_HIGH_USAGE_PERCENT, rate_limit.usage_percent)
    else:
        logger.info("Sufficient GitHub API quota available (%s%% used)", rate_limit.usage_percent)
