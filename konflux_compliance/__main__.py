from typing import Optional, Sequence

from konflux_compliance.cli import cli
from konflux_compliance.pipelines import (
    compliance_scan,
    github_iat,
    jira_issues,
    rate_limit,
    run,
)


def main(args: Optional[Sequence[str]] = None):
    # pylint: disable=no-value-for-parameter
    cli(args)


if __name__ == "__main__":
    main()
