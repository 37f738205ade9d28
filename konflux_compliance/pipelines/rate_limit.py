import os
import time
from typing import List, Optional

import aiohttp
import click

from konflux_compliance import constants
from konflux_compliance.cli import cli, click_coroutine, pass_runtime
from konflux_compliance.exceptions import GitHubAPIError
from konflux_compliance.github_auth import GitHubAuth
from konflux_compliance.github_client import AsyncGitHubAPI, RateLimitStatus
from konflux_compliance.runtime import Runtime

BAR_LENGTH = 50
RULE = "━" * 44


def usage_bar(usage_percent: int, length: int = BAR_LENGTH) -> str:
    used = min(max(usage_percent, 0), 100) * length // 100
    return "█" * used + "░" * (length - used)


def assess(rate_limit: RateLimitStatus, minutes_until_reset: int) -> List[str]:
    remaining = rate_limit.remaining
    if remaining < constants.RATE_LIMIT_CRITICAL_THRESHOLD:
        return [
            f"  CRITICAL: Less than {constants.RATE_LIMIT_CRITICAL_THRESHOLD} requests remaining!",
            f"     → Wait {minutes_until_reset} minutes before running compliance scan",
        ]
    if remaining < constants.RATE_LIMIT_LOW_THRESHOLD:
        return [
            f"  WARNING: Less than {constants.RATE_LIMIT_LOW_THRESHOLD} requests remaining",
            "     → Consider waiting for rate limit reset",
        ]
    if rate_limit.usage_percent > constants.RATE_LIMIT_HIGH_USAGE_PERCENT:
        return [
            f"  CAUTION: Over {constants.RATE_LIMIT_HIGH_USAGE_PERCENT}% quota used",
            f"     → {remaining} requests remaining should be sufficient for 1-2 scans",
        ]
    estimated_scans = remaining // constants.API_CALLS_PER_SCAN
    return [
        "  HEALTHY: Sufficient quota available",
        f"     → Can run approximately {estimated_scans} compliance scans "
        f"(assuming {constants.API_CALLS_PER_SCAN} API calls each)",
    ]


def render_report(rate_limit: RateLimitStatus, now: Optional[float] = None) -> List[str]:
    now = time.time() if now is None else now
    minutes = rate_limit.minutes_until_reset(now)
    lines = [
        RULE,
        "GitHub API Rate Limit Status",
        RULE,
        "",
        f"  Limit:     {rate_limit.limit} requests/hour",
        f"  Used:      {rate_limit.used}",
        f"  Remaining: {rate_limit.remaining}",
        "",
        f"  Resets in: {minutes} minutes",
        f"  Reset at:  {rate_limit.reset_at.astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')}",
        "",
        f"  Usage: [{usage_bar(rate_limit.usage_percent)}] {rate_limit.usage_percent}%",
        "",
    ]
    lines.extend(assess(rate_limit, minutes))
    lines.extend(["", RULE])
    return lines


class CheckRateLimitPipeline:
    def __init__(self, runtime: Runtime):
        self.runtime = runtime
        self.logger = runtime.logger

    async def _resolve_authorization(self, auth: GitHubAuth) -> Optional[str]:
        # an explicit token file wins over the environment here
        auth_file = auth.find_authorization_file()
        if auth_file:
            token = auth_file.read_text().strip()
            auth.authorization = f"Bearer {token}"
            return auth.authorization
        if os.environ.get("GITHUB_TOKEN"):
            auth.authorization = f"Bearer {os.environ['GITHUB_TOKEN']}"
            return auth.authorization
        return await auth.get_authorization()

    async def run(self) -> RateLimitStatus:
        github_config = self.runtime.section("github")
        auth = GitHubAuth(
            api_url=github_config.get("api_url", constants.GITHUB_API_URL),
            search_dirs=[self.runtime.data_dir, self.runtime.working_dir],
        )
        if not await self._resolve_authorization(auth):
            raise click.ClickException(
                f"No GitHub token found. Please set GITHUB_TOKEN or create {constants.AUTHORIZATION_FILE}"
            )
        async with AsyncGitHubAPI(auth=auth, api_url=auth.api_url) as github:
            try:
                return await github.get_rate_limit()
            except (GitHubAPIError, aiohttp.ClientError, ValueError) as e:
                raise click.ClickException(f"Failed to fetch rate limit: {e}")


@cli.command("check-rate-limit")
@pass_runtime
@click_coroutine
async def check_rate_limit(runtime: Runtime):
    """Show how much of the GitHub API quota is left."""
    click.echo("Checking GitHub API rate limit...")
    click.echo("")
    rate_limit = await CheckRateLimitPipeline(runtime).run()
    for line in render_report(rate_limit):
        click.echo(line)
