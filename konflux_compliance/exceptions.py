from typing import Optional


class ComplianceError(Exception):
    """Base class of errors raised by konflux-compliance."""


class GitHubAPIError(ComplianceError):
    """A GitHub API request returned an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class GitHubServerError(GitHubAPIError):
    """GitHub answered with a 5xx status. Retryable."""


class GitHubRateLimitError(GitHubAPIError):
    """GitHub rejected the request because of the API rate limit. Retryable."""


class GitHubRateLimitExhaustedError(GitHubRateLimitError):
    """Almost no requests remain until the rate limit resets; retrying won't help."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None, reset_at=None):
        super().__init__(message, status=status, url=url)
        self.reset_at = reset_at


class GitHubAuthError(ComplianceError):
    """GitHub App credentials are invalid or the token exchange failed."""


class InvalidSquadError(ComplianceError):
    """The requested squad is not defined in the squad configuration."""


class KonfluxError(ComplianceError):
    """The Konflux cluster can't be reached or a resource is malformed."""
