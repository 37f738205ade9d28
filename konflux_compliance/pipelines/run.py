import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import click

from konflux_compliance import constants, exectools
from konflux_compliance.cli import cli, click_coroutine, pass_runtime
from konflux_compliance.compliance import read_compliance_csv
from konflux_compliance.exceptions import (
    GitHubRateLimitExhaustedError,
    InvalidSquadError,
    KonfluxError,
)
from konflux_compliance.github_auth import GitHubAppCredentials
from konflux_compliance.konflux import KonfluxClient
from konflux_compliance.pipelines.compliance_scan import ComplianceScanPipeline
from konflux_compliance.pipelines.jira_issues import CreateJiraIssuesPipeline
from konflux_compliance.runtime import Runtime

REQUIRED_ENV_VARS = {
    "KONFLUX_API_ENDPOINT": "Konflux cluster API server URL (e.g., https://api.konflux.example.com:6443)",
    "KONFLUX_API_TOKEN": "ServiceAccount token for accessing Konflux cluster",
    "GITHUB_TOKEN": "GitHub Personal Access Token, or GH_APP_ID, GH_APP_INSTALLATION_ID and GH_APP_PRIVATE_KEY",
    "JIRA_API_TOKEN": "JIRA Personal Access Token",
    "JIRA_USER": "JIRA username/email",
    "APPLICATION_NAME": "Konflux application name (e.g., acm-215, mce-29)",
}


def missing_env_vars(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    environ = os.environ if environ is None else environ
    missing = []
    for name in REQUIRED_ENV_VARS:
        if name == "GITHUB_TOKEN" and GitHubAppCredentials.from_env(environ):
            continue
        if not environ.get(name):
            missing.append(name)
    return missing


def env_flag(name: str, default: bool, environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(name, "true" if default else "false").lower() == "true"


@contextmanager
def log_to_file(path: Path):
    """Copy the konflux_compliance log records to a file for the duration of a step."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="w")
    handler.setFormatter(logging.Formatter('%(asctime)s %(name)s:%(levelname)s %(message)s'))
    logger = logging.getLogger("konflux_compliance")
    logger.addHandler(handler)
    try:
        yield path
    finally:
        logger.removeHandler(handler)
        handler.close()


class ScheduledRunPipeline:
    """Scan an application and file JIRA issues for it, configured from the environment."""

    def __init__(self, runtime: Runtime, environ: Optional[Mapping[str, str]] = None):
        self.runtime = runtime
        self.environ = os.environ if environ is None else environ
        self.logger = runtime.logger
        self.application = self.environ.get("APPLICATION_NAME", "")

    @property
    def csv_path(self) -> Path:
        return self.runtime.data_dir / f"{self.application}-compliance.csv"

    def output_files(self) -> Dict[str, Path]:
        logs_dir = self.runtime.logs_dir
        return {
            "CSV": self.csv_path,
            "Scan Log": logs_dir / f"{self.application}-compliance-scan.log",
            "JIRA Log": logs_dir / f"{self.application}-jira-creation.log",
            "JSON": logs_dir / f"{self.application}-jira-issues.json",
        }

    def validate_env(self):
        missing = missing_env_vars(self.environ)
        if missing:
            lines = ["Missing required environment variables:"]
            lines += [f"  - {name}" for name in missing]
            lines += ["", "Required environment variables:"]
            lines += [f"  {name:<20} - {description}" for name, description in REQUIRED_ENV_VARS.items()]
            raise click.ClickException("\n".join(lines))
        self.logger.info("All required environment variables are set")

    async def setup_konflux(self) -> KonfluxClient:
        self.logger.info("Testing connection to Konflux cluster %s", self.environ.get("KONFLUX_API_ENDPOINT"))
        konflux = self.runtime.new_konflux_client()
        try:
            await exectools.to_thread(konflux.verify_connection)
        except Exception as e:
            raise click.ClickException(f"Failed to connect to Konflux cluster: {e}")
        try:
            await konflux.verify_namespace()
        except KonfluxError as e:
            self.logger.warning("%s. The scanner may have insufficient permissions; continuing anyway", e)
        return konflux

    async def run_compliance_scan(self, konflux: KonfluxClient) -> int:
        retrigger = env_flag("RETRIGGER_FAILED", False, self.environ)
        squad = self.environ.get("SQUAD_FILTER") or None
        self.logger.info("Step 1: Running compliance scan of %s (retrigger failed components: %s)",
                         self.application, "yes" if retrigger else "no")
        if squad:
            self.logger.info("Filtering by squad: %s", squad)

        pipeline = ComplianceScanPipeline(
            self.runtime,
            application=self.application,
            retrigger=retrigger,
            squad=squad,
            konflux=konflux,
        )
        with log_to_file(self.output_files()["Scan Log"]):
            await pipeline.run()

        if not self.csv_path.is_file():
            raise click.ClickException(f"Compliance CSV file not generated: {self.csv_path}")
        total = len(read_compliance_csv(self.csv_path))
        self.logger.info("Compliance scan completed. CSV file: %s, total components scanned: %s",
                         self.csv_path, total)
        return total

    async def create_jira_issues(self):
        self.logger.info("Step 2: Creating/updating JIRA issues")
        files = self.output_files()
        labels = self.environ.get("JIRA_LABELS", "")
        pipeline = CreateJiraIssuesPipeline(
            self.runtime,
            csv_path=self.csv_path,
            application=self.application,
            priority=self.environ.get("JIRA_PRIORITY") or None,
            labels=[label.strip() for label in labels.split(",") if label.strip()],
            skip_duplicates=env_flag("SKIP_DUPLICATES", True, self.environ),
            auto_close=env_flag("AUTO_CLOSE", True, self.environ),
            output_json=files["JSON"],
        )
        with log_to_file(files["JIRA Log"]):
            await pipeline.run()
        self.logger.info("JIRA issue creation/update completed")

    async def run(self) -> Dict[str, Path]:
        self.logger.info(
            "Configuration: application=%s, JIRA project=%s, JIRA server=%s, skip duplicates=%s, "
            "auto-close=%s, retrigger failed=%s, squad filter=%s",
            self.application,
            self.environ.get("JIRA_PROJECT", constants.JIRA_PROJECT),
            self.environ.get("JIRA_SERVER", constants.JIRA_SERVER_URL),
            env_flag("SKIP_DUPLICATES", True, self.environ),
            env_flag("AUTO_CLOSE", True, self.environ),
            env_flag("RETRIGGER_FAILED", False, self.environ),
            self.environ.get("SQUAD_FILTER") or "none",
        )
        self.validate_env()
        konflux = await self.setup_konflux()
        try:
            await self.run_compliance_scan(konflux)
        except (InvalidSquadError, GitHubRateLimitExhaustedError, FileNotFoundError) as e:
            raise click.ClickException(str(e))
        await self.create_jira_issues()
        return self.output_files()


@cli.command("run")
@pass_runtime
@click_coroutine
async def run(runtime: Runtime):
    """Scan APPLICATION_NAME and file JIRA issues, configured through environment variables."""
    if runtime.logger.getEffectiveLevel() > logging.INFO:
        runtime.logger.setLevel(logging.INFO)
    started = datetime.now(timezone.utc)
    click.echo(f"Konflux Compliance Scanner - starting at {started:%Y-%m-%d %H:%M:%S} UTC")
    files = await ScheduledRunPipeline(runtime).run()
    click.echo(f"Compliance scan completed successfully at {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC")
    click.echo("Output files:")
    for label, path in files.items():
        click.echo(f"  - {label}: {path}")
