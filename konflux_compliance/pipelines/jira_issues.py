import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import click
import requests
from jira.exceptions import JIRAError

from konflux_compliance import constants
from konflux_compliance.cli import cli, click_coroutine, pass_runtime
from konflux_compliance.compliance import CSV_HEADER, ComplianceRecord, read_compliance_csv
from konflux_compliance.jira import JIRAClient
from konflux_compliance.runtime import Runtime

CSV_SUFFIX = "-compliance.csv"

ACTION_CREATED = "created"
ACTION_DUPLICATE = "duplicate"
ACTION_CLOSED = "closed"
ACTION_COMPLIANT = "compliant"
ACTION_SKIPPED = "skipped"


def application_from_csv(csv_path: Path) -> Optional[str]:
    if csv_path.name.endswith(CSV_SUFFIX) and len(csv_path.name) > len(CSV_SUFFIX):
        return csv_path.name[: -len(CSV_SUFFIX)]
    return None


def issue_summary(application: str, component: str) -> str:
    return f"[{application}] Konflux compliance failure: {component}"


def results_table(record: ComplianceRecord) -> str:
    values = record.as_dict()
    lines = ["||Check||Result||"]
    for column in CSV_HEADER[2:8]:
        lines.append(f"|{column}|{values[column] or 'N/A'}|")
    lines.append("")
    lines.append(f"Push PipelineRun: {record.push_pipelinerun_url or 'N/A'}")
    lines.append(f"EC PipelineRun: {record.ec_pipelinerun_url or 'N/A'}")
    return "\n".join(lines)


def issue_description(application: str, record: ComplianceRecord) -> str:
    failures = ", ".join(f"{column}: {value}" for column, value in record.failures().items())
    return (
        f"The Konflux compliance scan of application *{application}* found failing checks "
        f"for component *{record.component}*.\n\n"
        f"Scan time: {record.scan_time}\n"
        f"Failing checks: {failures}\n\n"
        f"{results_table(record)}"
    )


class CreateJiraIssuesPipeline:
    """File JIRA issues for the failing components of a compliance report."""

    def __init__(
        self,
        runtime: Runtime,
        csv_path: Path,
        application: str,
        project: Optional[str] = None,
        issue_type: Optional[str] = None,
        priority: Optional[str] = None,
        labels: Sequence[str] = (),
        skip_duplicates: bool = False,
        auto_close: bool = False,
        output_json: Optional[Path] = None,
    ):
        self.runtime = runtime
        self.csv_path = csv_path
        self.application = application
        jira_config = runtime.section("jira")
        self.project = project or os.environ.get("JIRA_PROJECT") or jira_config.get("project", constants.JIRA_PROJECT)
        self.issue_type = issue_type or jira_config.get("issue_type", constants.JIRA_ISSUE_TYPE)
        self.close_transition = jira_config.get("close_transition", constants.JIRA_CLOSE_TRANSITION)
        self.priority = priority
        self.skip_duplicates = skip_duplicates
        self.auto_close = auto_close
        self.output_json = output_json
        self.logger = runtime.logger

        self.search_labels = [constants.JIRA_COMPLIANCE_LABEL, f"konflux-{application}"]
        self.labels = self.search_labels + [label for label in labels if label and label not in self.search_labels]

    async def run(self) -> List[Dict]:
        records = read_compliance_csv(self.csv_path)
        self.logger.info("Read %s components from %s", len(records), self.csv_path)
        jira = self.connect_jira()

        results = []
        for record in records:
            try:
                result = self.process_record(jira, record)
            except JIRAError as e:
                self.logger.error("JIRA request for %s failed: %s", record.component, e.text or e)
                result = self._result(record, ACTION_SKIPPED)
            except ValueError as e:
                self.logger.error("Failed to update JIRA for %s: %s", record.component, e)
                result = self._result(record, ACTION_SKIPPED)
            results.append(result)

        counts: Dict[str, int] = {}
        for result in results:
            counts[result["action"]] = counts.get(result["action"], 0) + 1
        self.logger.info("JIRA issue summary: %s", ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "none")

        if self.output_json:
            self.output_json.parent.mkdir(parents=True, exist_ok=True)
            with self.output_json.open("w") as f:
                json.dump(results, f, indent=2)
            self.logger.info("Wrote JIRA results to %s", self.output_json)
        return results

    def connect_jira(self) -> JIRAClient:
        try:
            return self.runtime.new_jira_client()
        except JIRAError as e:
            raise click.ClickException(f"Failed to connect to JIRA (HTTP {e.status_code}): {e.text or e}")
        except (requests.RequestException, ValueError) as e:
            raise click.ClickException(f"Failed to connect to JIRA: {e}")

    def _result(self, record: ComplianceRecord, action: str, issue: Optional[str] = None,
                url: Optional[str] = None) -> Dict:
        return {
            "component": record.component,
            "action": action,
            "issue": issue,
            "url": url,
            "failures": [f"{column}: {value}" for column, value in record.failures().items()],
        }

    def _find_open_issues(self, jira: JIRAClient, component: str):
        summary = issue_summary(self.application, component)
        return jira.find_open_issues(self.project, self.search_labels, summary=summary)

    def process_record(self, jira: JIRAClient, record: ComplianceRecord) -> Dict:
        if record.failures():
            return self._report_failure(jira, record)
        return self._report_compliant(jira, record)

    def _report_failure(self, jira: JIRAClient, record: ComplianceRecord) -> Dict:
        if self.skip_duplicates:
            existing = self._find_open_issues(jira, record.component)
            if existing:
                issue = existing[0]
                self.logger.info("Open issue %s already tracks %s; adding the latest results",
                                 issue.key, record.component)
                jira.add_comment(issue, f"Compliance scan at {record.scan_time} still fails.\n\n"
                                        f"{results_table(record)}")
                return self._result(record, ACTION_DUPLICATE, issue.key, jira.issue_url(issue))

        issue = jira.create_issue(
            project=self.project,
            issue_type=self.issue_type,
            summary=issue_summary(self.application, record.component),
            description=issue_description(self.application, record),
            labels=self.labels,
            priority=self.priority,
        )
        if issue is None:
            return self._result(record, ACTION_CREATED)
        return self._result(record, ACTION_CREATED, issue.key, jira.issue_url(issue))

    def _report_compliant(self, jira: JIRAClient, record: ComplianceRecord) -> Dict:
        if not self.auto_close:
            return self._result(record, ACTION_COMPLIANT)
        existing = self._find_open_issues(jira, record.component)
        if not existing:
            return self._result(record, ACTION_COMPLIANT)
        for issue in existing:
            self.logger.info("Closing %s: %s is compliant", issue.key, record.component)
            jira.add_comment(issue, f"Compliance scan at {record.scan_time} passed all checks. Closing.")
            jira.close_task(issue, self.close_transition)
        keys = ",".join(issue.key for issue in existing)
        return self._result(record, ACTION_CLOSED, keys, jira.issue_url(existing[0]))


@cli.command("create-jira-issues")
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--application", metavar="NAME",
              help="Konflux application (derived from <application>-compliance.csv by default)")
@click.option("--project", metavar="KEY",
              help=f"JIRA project (JIRA_PROJECT or '{constants.JIRA_PROJECT}' by default)")
@click.option("--issue-type", metavar="TYPE",
              help=f"JIRA issue type ('{constants.JIRA_ISSUE_TYPE}' by default)")
@click.option("--priority", metavar="PRIORITY",
              help="Priority of created issues")
@click.option("--labels", metavar="LABELS", default="",
              help="Comma separated list of additional labels")
@click.option("--skip-duplicates", is_flag=True,
              help="Comment on an open issue of the same component instead of creating a new one")
@click.option("--auto-close", is_flag=True,
              help="Close open issues of components that are compliant again")
@click.option("--output-json", metavar="PATH", type=click.Path(dir_okay=False, path_type=Path),
              help="Write the outcome for every component to this JSON file")
@pass_runtime
@click_coroutine
async def create_jira_issues(runtime: Runtime, csv_file: Path, application: Optional[str], project: Optional[str],
                             issue_type: Optional[str], priority: Optional[str], labels: str, skip_duplicates: bool,
                             auto_close: bool, output_json: Optional[Path]):
    """File JIRA issues for the failing components in CSV_FILE."""
    application = application or application_from_csv(csv_file)
    if not application:
        raise click.BadParameter(
            f"Can't derive the application from {csv_file.name}; use --application", param_hint="--application")
    pipeline = CreateJiraIssuesPipeline(
        runtime,
        csv_path=csv_file,
        application=application,
        project=project,
        issue_type=issue_type,
        priority=priority,
        labels=[label.strip() for label in labels.split(",") if label.strip()],
        skip_duplicates=skip_duplicates,
        auto_close=auto_close,
        output_json=output_json,
    )
    try:
        await pipeline.run()
    except ValueError as e:
        raise click.ClickException(str(e))
