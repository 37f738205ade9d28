import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp
import click
import yaml
from kubernetes.client.exceptions import ApiException

from konflux_compliance import compliance, constants, exectools, images, logutil
from konflux_compliance.cli import cli, click_coroutine, pass_runtime
from konflux_compliance.compliance import ComplianceRecord, ComplianceReport
from konflux_compliance.exceptions import (
    GitHubAPIError,
    GitHubRateLimitExhaustedError,
    InvalidSquadError,
    KonfluxError,
)
from konflux_compliance.github_client import AsyncGitHubAPI, log_rate_limit_summary, raw_file_url
from konflux_compliance.konflux import KonfluxClient
from konflux_compliance.runtime import Runtime
from konflux_compliance.squads import SquadConfig, filter_components


def compliance_csv_path(output_dir: Path, application: str) -> Path:
    return output_dir / f"{application}-compliance.csv"


class ComplianceScanPipeline:
    """Check every Konflux component of an application and write the results to a CSV report."""

    def __init__(
        self,
        runtime: Runtime,
        application: str,
        component: Optional[str] = None,
        retrigger: bool = False,
        squad: Optional[str] = None,
        squad_config: Optional[Path] = None,
        output_dir: Optional[Path] = None,
        component_delay: Optional[float] = None,
        namespace: Optional[str] = None,
        konflux: Optional[KonfluxClient] = None,
    ):
        self.runtime = runtime
        self.application = application
        self.component = component
        self.retrigger = retrigger
        self.squad = squad
        self.squad_config = squad_config or Path(
            runtime.section("squads").get("config", runtime.working_dir / constants.DEFAULT_SQUAD_CONFIG))
        self.output_dir = output_dir or runtime.data_dir
        if component_delay is None:
            component_delay = runtime.section("github").get("component_delay", constants.COMPONENT_DELAY)
        self.component_delay = component_delay
        self.namespace = namespace
        self.konflux = konflux
        self.logger = runtime.logger

        self.csv_path = compliance_csv_path(self.output_dir, application)
        self.scanned: List[str] = []
        self.failing: List[str] = []
        self.skipped: List[str] = []

    async def run(self) -> Path:
        squad_components = None
        if self.squad and not self.component:
            squad_components = SquadConfig.load(self.squad_config).get_squad_components(self.squad)

        konflux = self.konflux or await self.connect_konflux()

        auth = self.runtime.new_github_auth()
        async with self.runtime.new_github_client(auth) as github:
            if await auth.get_authorization():
                self.logger.info("Authorization found. Applying to GitHub API requests")
                await self._log_rate_limit(github)

            report = ComplianceReport(self.csv_path)
            report.start()
            scan_time = compliance.scan_timestamp()

            components = await self._resolve_components(konflux, squad_components)
            total = len(components)
            for index, name in enumerate(components, start=1):
                self.logger.info("Processing component %s/%s: %s", index, total, name)
                if index > 1 and self.component_delay:
                    self.logger.debug("Waiting %ss before processing next component...", self.component_delay)
                    await asyncio.sleep(self.component_delay)
                if not await auth.refresh_if_needed():
                    self.logger.warning("Continuing with the current GitHub token")

                record = await self.scan_component(konflux, github, name, scan_time)
                if record is None:
                    self.skipped.append(name)
                    continue
                report.append(record)
                self.scanned.append(name)
                if record.needs_retrigger:
                    self.failing.append(name)
                    if self.retrigger:
                        await self._retrigger(konflux, name)

        self.logger.info(
            "Compliance scan completed: %s components scanned, %s failing, %s skipped. Results in %s",
            len(self.scanned), len(self.failing), len(self.skipped), self.csv_path,
        )
        if self.failing:
            self.logger.info("Failing components: %s", ", ".join(self.failing))
        return self.csv_path

    async def connect_konflux(self) -> KonfluxClient:
        """Build a Konflux client and make sure the tenant namespace is readable."""
        konflux = self.runtime.new_konflux_client(self.namespace)
        await exectools.to_thread(konflux.verify_connection)
        await konflux.verify_namespace()
        return konflux

    async def _log_rate_limit(self, github: AsyncGitHubAPI):
        try:
            rate_limit = await github.get_rate_limit()
        except (GitHubAPIError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.warning("Could not fetch GitHub API rate limit status: %s", e)
            return
        log_rate_limit_summary(rate_limit, self.logger)

    async def _resolve_components(self, konflux: KonfluxClient, squad_components: Optional[List[str]]) -> List[str]:
        if self.component:
            return [self.component]
        components = await konflux.list_components(self.application)
        if squad_components is not None:
            self.logger.info("Filtering by squad: %s", self.squad)
            components = filter_components(components, squad_components)
        if not components:
            self.logger.warning("No components found for application %s", self.application)
        return components

    async def scan_component(
        self, konflux: KonfluxClient, github: AsyncGitHubAPI, name: str, scan_time: str,
    ) -> Optional[ComplianceRecord]:
        logger = logutil.component_logger(self.logger, name)
        component = await konflux.get_component(name)
        promoted_time, promoted_status = await images.check_promoted(component)

        try:
            org, repo = component.org, component.repo
        except ValueError as e:
            logger.error("Skipping component: %s", e)
            return None
        branch = component.revision
        logger.info("--- %s/%s : %s ---", org, repo, branch)

        push = await self._fetch_definition(github, org, repo, branch, f".tekton/{name}-push.yaml", logger)
        pull = await self._fetch_definition(github, org, repo, branch, f".tekton/{name}-pull-request.yaml", logger)

        bundle = compliance.is_bundle_operator(name)
        if bundle:
            logger.info("Bundle operator: hermetic builds and multiarch support are not applicable")
            hermetic = compliance.NOT_APPLICABLE
        else:
            has_vendor = False
            if compliance.needs_vendor_directory(push, pull):
                has_vendor = await self._has_vendor_directory(github, org, repo, logger)
            hermetic = compliance.check_hermetic_builds(push, pull, has_vendor)
        logger.info("%s hermetic builds: %s", repo, hermetic)

        check_runs = await self._fetch_check_runs(github, org, repo, branch, logger)
        ec_status, ec_url = compliance.check_enterprise_contract(check_runs, name)
        logger.info("%s enterprise contract: %s", repo, ec_status)
        push_status, push_url = compliance.check_component_on_push(check_runs, name)
        logger.info("%s on-push: %s", repo, push_status)
        ec_status = compliance.resolve_ec_status(ec_status, push_status)

        multiarch = compliance.NOT_APPLICABLE if bundle else compliance.check_multiarch_support(push)
        logger.info("%s multiarch: %s", repo, multiarch)

        return ComplianceRecord(
            component=name,
            scan_time=scan_time,
            promoted_time=promoted_time,
            promoted_status=promoted_status,
            hermetic_builds=hermetic,
            enterprise_contract=ec_status,
            multiarch_support=multiarch,
            push_status=push_status,
            push_pipelinerun_url=push_url,
            ec_pipelinerun_url=ec_url,
        )

    async def _fetch_definition(
        self, github: AsyncGitHubAPI, org: str, repo: str, branch: str, path: str, logger,
    ) -> Optional[Dict]:
        url = raw_file_url(org, repo, branch, path)
        logger.debug("Fetching %s", url)
        try:
            status, text = await github.fetch_raw(url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to fetch %s: %s", url, e)
            return None
        if status == 404:
            logger.debug("404 error fetching %s", url)
            return None
        if status != 200:
            logger.warning("Unexpected HTTP %s fetching %s", status, url)
            return None
        try:
            definition = yaml.safe_load(text)
        except yaml.YAMLError as e:
            logger.warning("Failed to parse %s: %s", url, e)
            return None
        return definition if isinstance(definition, dict) else None

    async def _has_vendor_directory(self, github: AsyncGitHubAPI, org: str, repo: str, logger) -> bool:
        try:
            return await github.path_exists(org, repo, "vendor")
        except GitHubRateLimitExhaustedError:
            raise
        except (GitHubAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to look up the vendor directory of %s/%s: %s", org, repo, e)
            return False

    async def _fetch_check_runs(self, github: AsyncGitHubAPI, org: str, repo: str, branch: str, logger) -> List[Dict]:
        try:
            return await github.fetch_check_runs(org, repo, branch)
        except GitHubRateLimitExhaustedError:
            raise
        except (GitHubAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to fetch check runs of %s/%s@%s: %s", org, repo, branch, e)
            return []

    async def _retrigger(self, konflux: KonfluxClient, name: str):
        self.logger.info("Retriggering component: %s", name)
        try:
            await konflux.request_rebuild(name)
        except ApiException as e:
            self.logger.error("Failed to trigger rebuild for %s: %s", name, e)
            return
        self.logger.info("Successfully triggered rebuild for %s", name)


@cli.command("scan")
@click.argument("application")
@click.option("--component", metavar="NAME",
              help="Scan only this component")
@click.option("--retrigger", is_flag=True,
              help="Request a new build of every component with a failing check")
@click.option("--squad", metavar="KEY",
              help="Only scan components owned by this squad")
@click.option("--squad-config", metavar="PATH", type=click.Path(dir_okay=False, path_type=Path),
              help=f"Squad configuration file ('{constants.DEFAULT_SQUAD_CONFIG}' in the working directory by default)")
@click.option("--output-dir", metavar="DIR", type=click.Path(file_okay=False, path_type=Path),
              help="Directory to write <application>-compliance.csv to (<working dir>/data by default)")
@click.option("--component-delay", type=float, default=None,
              help=f"Seconds to wait between components (default: {constants.COMPONENT_DELAY})")
@click.option("--namespace", metavar="NAMESPACE",
              help=f"Konflux tenant namespace (default: {constants.KONFLUX_NAMESPACE})")
@pass_runtime
@click_coroutine
async def scan(runtime: Runtime, application: str, component: Optional[str], retrigger: bool, squad: Optional[str],
               squad_config: Optional[Path], output_dir: Optional[Path], component_delay: Optional[float],
               namespace: Optional[str]):
    """Scan the Konflux components of APPLICATION for compliance."""
    pipeline = ComplianceScanPipeline(
        runtime,
        application=application,
        component=component,
        retrigger=retrigger,
        squad=squad,
        squad_config=squad_config,
        output_dir=output_dir,
        component_delay=component_delay,
        namespace=namespace,
    )
    try:
        csv_path = await pipeline.run()
    except (InvalidSquadError, KonfluxError, GitHubRateLimitExhaustedError, FileNotFoundError) as e:
        raise click.ClickException(str(e))
    click.echo(f"Compliance results written to {csv_path}")
