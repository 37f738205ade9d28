import logging
from typing import Dict, Iterable, List, Optional, Tuple

from jira import JIRA, Issue

from konflux_compliance import constants

_LOGGER = logging.getLogger(__name__)


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class JIRAClient:
    """A small wrapper of the jira library with the few operations the compliance tooling needs."""

    def __init__(self, client: JIRA, dry_run: bool = False):
        self._client = client
        self.dry_run = dry_run

    @classmethod
    def from_url(
        cls,
        server_url: str,
        token_auth: Optional[str] = None,
        basic_auth: Optional[Tuple[str, str]] = None,
        dry_run: bool = False,
    ) -> "JIRAClient":
        if basic_auth:
            client = JIRA(server_url, basic_auth=basic_auth)
        else:
            client = JIRA(server_url, token_auth=token_auth)
        return cls(client, dry_run=dry_run)

    def search_issues(self, jql: str) -> List[Issue]:
        """Return every issue matching `jql`, fetching all result pages."""
        _LOGGER.debug("Searching JIRA: %s", jql)
        return list(self._client.search_issues(jql, maxResults=False))

    def find_open_issues(self, project: str, labels: Iterable[str], summary: Optional[str] = None) -> List[Issue]:
        """Find unresolved issues of a project carrying all of the given labels.

        With `summary`, only issues whose summary is exactly that text are returned.
        JQL `~` is a fuzzy text match, so the phrase query narrows the search and
        the exact comparison happens here.
        """
        clauses = [f"project = {_quote(project)}"]
        clauses += [f"labels = {_quote(label)}" for label in labels]
        if summary:
            clauses.append(f"summary ~ {_quote(_quote(summary))}")
        clauses.append("statusCategory != Done")
        issues = self.search_issues(" AND ".join(clauses) + " ORDER BY created DESC")
        if summary:
            issues = [issue for issue in issues if issue.fields.summary == summary]
        return issues

    def create_issue(
        self,
        project: str,
        issue_type: str,
        summary: str,
        description: str,
        labels: Iterable[str] = (),
        priority: Optional[str] = None,
    ) -> Optional[Issue]:
        fields: Dict = {
            "project": {"key": project},
            "issuetype": {"name": issue_type},
            "summary": summary,
            "description": description,
            "labels": list(labels),
        }
        if priority:
            fields["priority"] = {"name": priority}
        if self.dry_run:
            _LOGGER.warning("[DRY RUN] Would have created %s issue in %s: %s", issue_type, project, summary)
            return None
        issue = self._client.create_issue(fields=fields)
        _LOGGER.info("Created %s: %s", issue.key, summary)
        return issue

    def add_comment(self, issue: Issue, body: str):
        if self.dry_run:
            _LOGGER.warning("[DRY RUN] Would have added a comment to %s", issue.key)
            return
        self._client.add_comment(issue, body)

    def close_task(self, issue: Issue, transition: str = constants.JIRA_CLOSE_TRANSITION):
        if self.dry_run:
            _LOGGER.warning("[DRY RUN] Would have transitioned %s to %s", issue.key, transition)
            return
        transitions = self._client.transitions(issue)
        transition_id = next((t["id"] for t in transitions if t["name"].lower() == transition.lower()), None)
        if transition_id is None:
            available = ", ".join(t["name"] for t in transitions)
            raise ValueError(f"Issue {issue.key} can't be transitioned to '{transition}'. Available: {available}")
        self._client.transition_issue(issue, transition_id)
        _LOGGER.info("Transitioned %s to %s", issue.key, transition)

    def issue_url(self, issue: Issue) -> str:
        return issue.permalink()
