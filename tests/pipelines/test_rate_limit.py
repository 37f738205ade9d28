import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

import click

from konflux_compliance.github_client import RateLimitStatus
from konflux_compliance.pipelines.rate_limit import CheckRateLimitPipeline, assess, render_report, usage_bar


class TestReport(TestCase):
    def test_usage_bar(self):
        self.assertEqual(usage_bar(0), "░" * 50)
        self.assertEqual(usage_bar(50), "█" * 25 + "░" * 25)
        self.assertEqual(usage_bar(100), "█" * 50)

    def test_assess(self):
        self.assertIn("CRITICAL", assess(RateLimitStatus(5000, 99, 4901, 0), 12)[0])
        self.assertIn("Wait 12 minutes", assess(RateLimitStatus(5000, 99, 4901, 0), 12)[1])
        self.assertIn("WARNING", assess(RateLimitStatus(5000, 499, 4501, 0), 12)[0])
        self.assertIn("CAUTION", assess(RateLimitStatus(5000, 900, 4100, 0), 12)[0])
        healthy = assess(RateLimitStatus(5000, 4500, 500, 0), 12)
        self.assertIn("HEALTHY", healthy[0])
        self.assertIn("approximately 30 compliance scans", healthy[1])

    def test_render_report(self):
        lines = render_report(RateLimitStatus(5000, 4000, 1000, 1000 + 1800), now=1000)
        self.assertIn("  Limit:     5000 requests/hour", lines)
        self.assertIn("  Resets in: 30 minutes", lines)
        self.assertIn(f"  Usage: [{'█' * 10}{'░' * 40}] 20%", lines)


class TestCheckRateLimitPipeline(IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        working_dir = Path(self.tmpdir.name)
        self.runtime = MagicMock()
        self.runtime.working_dir = working_dir
        self.runtime.data_dir = working_dir / "data"
        self.runtime.data_dir.mkdir()
        self.runtime.section.return_value = {}

    def tearDown(self):
        self.tmpdir.cleanup()

    @patch("konflux_compliance.pipelines.rate_limit.AsyncGitHubAPI")
    @patch.dict("os.environ", {"GITHUB_TOKEN": "ghp_env"}, clear=True)
    async def test_data_dir_token_wins(self, github_api):
        (self.runtime.data_dir / "authorization.txt").write_text("ghp_file\n")
        github = github_api.return_value
        github.__aenter__ = AsyncMock(return_value=github)
        github.__aexit__ = AsyncMock(return_value=None)
        github.get_rate_limit = AsyncMock(return_value=RateLimitStatus(5000, 4000, 1000, 0))

        status = await CheckRateLimitPipeline(self.runtime).run()

        self.assertEqual(status.remaining, 4000)
        auth = github_api.call_args.kwargs["auth"]
        self.assertEqual(auth.authorization, "Bearer ghp_file")

    @patch.dict("os.environ", {}, clear=True)
    async def test_no_token(self):
        with self.assertRaises(click.ClickException):
            await CheckRateLimitPipeline(self.runtime).run()
