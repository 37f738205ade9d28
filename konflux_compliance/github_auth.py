"""
GitHub authentication for konflux-compliance.

Credentials are resolved in this order:
    1. GitHub App (GH_APP_ID, GH_APP_INSTALLATION_ID, GH_APP_PRIVATE_KEY are set).
       A JWT signed with the App's private key is exchanged for an
       Installation Access Token (IAT), which is cached for its lifetime.
    2. GITHUB_TOKEN environment variable.
    3. authorization.txt file (legacy), looked up in the configured directories.

The GH_APP_* prefix is used instead of GITHUB_* because GitHub Actions
reserves the GITHUB_* namespace for its own secrets.
"""

import base64
import json
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

import aiohttp
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from konflux_compliance import constants, logutil
from konflux_compliance.exceptions import GitHubAuthError

_LOGGER = logutil.get_logger(__name__)

AUTH_METHOD_APP = "github-app"
AUTH_METHOD_TOKEN = "github-token"
AUTH_METHOD_FILE = "authorization-file"

_PEM_PATTERN = re.compile(r"^-----BEGIN.*PRIVATE KEY-----")


@dataclass
class GitHubAppCredentials:
    app_id: str
    installation_id: str
    private_key: str

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Optional["GitHubAppCredentials"]:
        """Return credentials if all three GH_APP_* variables are set, None otherwise."""
        environ = os.environ if environ is None else environ
        app_id = environ.get("GH_APP_ID")
        installation_id = environ.get("GH_APP_INSTALLATION_ID")
        private_key = environ.get("GH_APP_PRIVATE_KEY")
        if not (app_id and installation_id and private_key):
            return None
        return cls(app_id=app_id, installation_id=installation_id, private_key=private_key)


def missing_app_env_vars(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    environ = os.environ if environ is None else environ
    return [name for name in ("GH_APP_ID", "GH_APP_INSTALLATION_ID", "GH_APP_PRIVATE_KEY") if not environ.get(name)]


def validate_private_key(private_key: str):
    if not _PEM_PATTERN.match(private_key):
        raise GitHubAuthError("GH_APP_PRIVATE_KEY does not appear to be a valid PEM key")


def _b64url(data: bytes) -> str:
    # JWT segments use base64url without padding
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _json_segment(obj: dict) -> str:
    return _b64url(json.dumps(obj, separators=(",", ":")).encode())


def generate_jwt(app_id: str, private_key: str, now: Optional[int] = None) -> str:
    """Generate an RS256 JWT for a GitHub App.

    :param app_id: GitHub App ID, used as the issuer
    :param private_key: PEM encoded RSA private key of the App
    :param now: Current unix time; defaults to time.time()
    :return: The encoded JWT, valid for about 9 minutes
    """
    validate_private_key(private_key)
    if now is None:
        now = int(time.time())
    header = {"alg": "RS256", "typ": "JWT"}
    payload = {
        "iat": now - constants.GITHUB_APP_JWT_BACKDATE,
        "exp": now + constants.GITHUB_APP_JWT_LIFETIME,
        "iss": str(app_id),
    }
    unsigned_token = f"{_json_segment(header)}.{_json_segment(payload)}"

    try:
        key = serialization.load_pem_private_key(private_key.encode(), password=None)
    except (ValueError, TypeError) as e:
        raise GitHubAuthError(f"Failed to load GitHub App private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise GitHubAuthError("GitHub App private key must be an RSA key")

    signature = key.sign(unsigned_token.encode(), padding.PKCS1v15(), hashes.SHA256())
    return f"{unsigned_token}.{_b64url(signature)}"


async def get_installation_access_token(
    jwt: str, installation_id: str, api_url: str = constants.GITHUB_API_URL,
) -> str:
    """Exchange a GitHub App JWT for an Installation Access Token.

    :raises GitHubAuthError: if GitHub doesn't answer with 201 or the response carries no token
    """
    url = f"{api_url}/app/installations/{installation_id}/access_tokens"
    headers = {
        "Authorization": f"Bearer {jwt}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": constants.GITHUB_API_VERSION,
    }
    async with aiohttp.ClientSession() as session:
        async with session.post(url, headers=headers) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
            if response.status != 201:
                message = body.get("message", "Unknown error") if isinstance(body, dict) else "Unknown error"
                raise GitHubAuthError(f"Failed to get IAT (HTTP {response.status}): {message}")

    token = body.get("token") if isinstance(body, dict) else None
    if not token:
        raise GitHubAuthError("Failed to parse IAT from response")
    return token


async def create_installation_access_token(
    credentials: GitHubAppCredentials, api_url: str = constants.GITHUB_API_URL,
) -> str:
    jwt = generate_jwt(credentials.app_id, credentials.private_key)
    return await get_installation_access_token(jwt, credentials.installation_id, api_url=api_url)


class GitHubAuth:
    """Resolves and caches the Authorization header used for GitHub API requests."""

    def __init__(
        self,
        api_url: str = constants.GITHUB_API_URL,
        search_dirs: Optional[Sequence[Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.api_url = api_url
        self.search_dirs = list(search_dirs) if search_dirs else [Path.cwd()]
        self._environ = os.environ if environ is None else environ
        self._iat_token: Optional[str] = None
        self._iat_expiry = 0.0
        self.method: Optional[str] = None
        self.authorization: Optional[str] = None

    @property
    def app_credentials(self) -> Optional[GitHubAppCredentials]:
        return GitHubAppCredentials.from_env(self._environ)

    def find_authorization_file(self) -> Optional[Path]:
        for directory in self.search_dirs:
            candidate = Path(directory) / constants.AUTHORIZATION_FILE
            if candidate.is_file():
                return candidate
        return None

    async def get_app_token(self) -> str:
        """Return the cached IAT, minting a new one if it expires within the refresh margin."""
        now = time.time()
        if self._iat_token and self._iat_expiry > now + constants.GITHUB_APP_IAT_REFRESH_MARGIN:
            return self._iat_token
        credentials = self.app_credentials
        if not credentials:
            raise GitHubAuthError("GitHub App credentials are not configured")
        _LOGGER.info("Generating new GitHub App IAT...")
        token = await create_installation_access_token(credentials, api_url=self.api_url)
        self._iat_token = token
        self._iat_expiry = now + constants.GITHUB_APP_IAT_LIFETIME
        return token

    async def get_authorization(self) -> Optional[str]:
        """Resolve the Authorization header value.

        :return: "Bearer <token>", or None if no authentication is configured
        """
        credentials = self.app_credentials
        if credentials:
            _LOGGER.info("Attempting GitHub App authentication (App ID: %s)", credentials.app_id)
            try:
                token = await self.get_app_token()
                return self._use(AUTH_METHOD_APP, token)
            except (GitHubAuthError, aiohttp.ClientError) as e:
                _LOGGER.warning("GitHub App auth failed (%s), trying fallback methods...", e)

        github_token = self._environ.get("GITHUB_TOKEN")
        if github_token:
            _LOGGER.info("Using GITHUB_TOKEN environment variable")
            return self._use(AUTH_METHOD_TOKEN, github_token)

        auth_file = self.find_authorization_file()
        if auth_file:
            _LOGGER.info("Using authorization file: %s", auth_file)
            return self._use(AUTH_METHOD_FILE, auth_file.read_text().strip())

        _LOGGER.warning("No GitHub authentication configured")
        self.method = None
        self.authorization = None
        return None

    def _use(self, method: str, token: str) -> str:
        self.method = method
        self.authorization = f"Bearer {token}"
        return self.authorization

    async def refresh_if_needed(self) -> bool:
        """Refresh the GitHub App token if it is about to expire.

        :return: False if a refresh was needed but failed
        """
        if self.method != AUTH_METHOD_APP:
            return True
        if self._iat_expiry > time.time() + constants.GITHUB_APP_IAT_REFRESH_MARGIN:
            return True
        _LOGGER.info("Refreshing GitHub App token...")
        try:
            token = await self.get_app_token()
        except (GitHubAuthError, aiohttp.ClientError) as e:
            _LOGGER.warning("Failed to refresh GitHub App token: %s", e)
            return False
        self._use(AUTH_METHOD_APP, token)
        return True

    def status_lines(self) -> List[str]:
        lines = [
            "GitHub Authentication Status:",
            f"  Method: {self.method or 'none'}",
        ]
        credentials = self.app_credentials
        if credentials:
            lines.append(f"  GitHub App ID: {credentials.app_id}")
            lines.append(f"  Installation ID: {credentials.installation_id}")
            lines.append(f"  Private Key: [{len(credentials.private_key)} bytes]")
            if self._iat_token:
                remaining = int((self._iat_expiry - time.time()) // 60)
                lines.append(f"  IAT Token: [cached, expires in ~{remaining}m]")
        github_token = self._environ.get("GITHUB_TOKEN")
        if github_token:
            lines.append(f"  GITHUB_TOKEN: [{len(github_token)} chars]")
        auth_file = self.find_authorization_file()
        if auth_file:
            lines.append(f"  {constants.AUTHORIZATION_FILE}: found in {auth_file.parent}")
        return lines
