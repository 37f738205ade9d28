import logging
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock, MagicMock, patch

import click

from konflux_compliance.compliance import ComplianceReport
from konflux_compliance.exceptions import KonfluxError
from konflux_compliance.pipelines.run import ScheduledRunPipeline, env_flag, log_to_file, missing_env_vars

ENV = {
    "KONFLUX_API_ENDPOINT": "https://api.konflux.example.com:6443",
    "KONFLUX_API_TOKEN": "sa-token",
    "GITHUB_TOKEN": "ghp_test",
    "JIRA_API_TOKEN": "jira-token",
    "JIRA_USER": "scanner@example.com",
    "APPLICATION_NAME": "acm-215",
}


class TestEnvironment(TestCase):
    def test_missing_env_vars(self):
        self.assertEqual(missing_env_vars(ENV), [])
        self.assertEqual(missing_env_vars({"APPLICATION_NAME": "acm-215"}),
                         ["KONFLUX_API_ENDPOINT", "KONFLUX_API_TOKEN", "GITHUB_TOKEN", "JIRA_API_TOKEN", "JIRA_USER"])

    def test_github_app_replaces_token(self):
        environ = dict(ENV, GH_APP_ID="1", GH_APP_INSTALLATION_ID="2", GH_APP_PRIVATE_KEY="key")
        del environ["GITHUB_TOKEN"]
        self.assertEqual(missing_env_vars(environ), [])

    def test_env_flag(self):
        self.assertTrue(env_flag("SKIP_DUPLICATES", True, {}))
        self.assertFalse(env_flag("SKIP_DUPLICATES", True, {"SKIP_DUPLICATES": "false"}))
        self.assertFalse(env_flag("RETRIGGER_FAILED", False, {}))
        self.assertTrue(env_flag("RETRIGGER_FAILED", False, {"RETRIGGER_FAILED": "TRUE"}))

    def test_log_to_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "logs" / "scan.log"
            logger = logging.getLogger("konflux_compliance.tests")
            logger.setLevel(logging.INFO)
            with log_to_file(path):
                logger.info("inside")
            logger.info("outside")
            content = path.read_text()
            self.assertIn("inside", content)
            self.assertNotIn("outside", content)


class TestScheduledRunPipeline(IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        working_dir = Path(self.tmpdir.name)
        self.runtime = MagicMock()
        self.runtime.working_dir = working_dir
        self.runtime.data_dir = working_dir / "data"
        self.runtime.logs_dir = working_dir / "logs"

        self.konflux = MagicMock()
        self.konflux.verify_namespace = AsyncMock()
        self.runtime.new_konflux_client.return_value = self.konflux

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_validate_env(self):
        pipeline = ScheduledRunPipeline(self.runtime, environ={"APPLICATION_NAME": "acm-215"})
        with self.assertRaises(click.ClickException) as ctx:
            pipeline.validate_env()
        self.assertIn("  - KONFLUX_API_TOKEN", ctx.exception.message)

    async def test_namespace_warning_is_not_fatal(self):
        self.konflux.verify_namespace.side_effect = KonfluxError("Namespace crt-redhat-acm-tenant is not accessible")
        konflux = await ScheduledRunPipeline(self.runtime, environ=ENV).setup_konflux()
        self.assertIs(konflux, self.konflux)
        self.runtime.logger.warning.assert_called_once()

    async def test_connection_failure_is_fatal(self):
        self.konflux.verify_connection.side_effect = RuntimeError("Unauthorized")
        with self.assertRaises(click.ClickException):
            await ScheduledRunPipeline(self.runtime, environ=ENV).setup_konflux()

    @patch("konflux_compliance.pipelines.run.CreateJiraIssuesPipeline")
    @patch("konflux_compliance.pipelines.run.ComplianceScanPipeline")
    async def test_run(self, scan_pipeline, jira_pipeline):
        environ = dict(ENV, RETRIGGER_FAILED="true", SQUAD_FILTER="console", JIRA_LABELS="a, b", AUTO_CLOSE="false")
        pipeline = ScheduledRunPipeline(self.runtime, environ=environ)

        async def fake_scan():
            ComplianceReport(pipeline.csv_path).start()
            return pipeline.csv_path

        scan_pipeline.return_value.run = AsyncMock(side_effect=fake_scan)
        jira_pipeline.return_value.run = AsyncMock(return_value=[])

        files = await pipeline.run()

        scan_kwargs = scan_pipeline.call_args.kwargs
        self.assertEqual(scan_kwargs["application"], "acm-215")
        self.assertTrue(scan_kwargs["retrigger"])
        self.assertEqual(scan_kwargs["squad"], "console")
        self.assertIs(scan_kwargs["konflux"], self.konflux)
        self.runtime.new_konflux_client.assert_called_once_with()
        self.konflux.verify_connection.assert_called_once_with()

        jira_kwargs = jira_pipeline.call_args.kwargs
        self.assertEqual(jira_kwargs["csv_path"], self.runtime.data_dir / "acm-215-compliance.csv")
        self.assertEqual(jira_kwargs["labels"], ["a", "b"])
        self.assertTrue(jira_kwargs["skip_duplicates"])
        self.assertFalse(jira_kwargs["auto_close"])
        self.assertEqual(jira_kwargs["output_json"], self.runtime.logs_dir / "acm-215-jira-issues.json")

        self.assertTrue(files["Scan Log"].is_file())
        self.assertTrue(files["JIRA Log"].is_file())

    @patch("konflux_compliance.pipelines.run.ComplianceScanPipeline")
    async def test_run_without_csv(self, scan_pipeline):
        scan_pipeline.return_value.run = AsyncMock()
        with self.assertRaisesRegex(click.ClickException, "not generated"):
            await ScheduledRunPipeline(self.runtime, environ=ENV).run()
