import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import tomli

from konflux_compliance import constants
from konflux_compliance.github_auth import GitHubAuth
from konflux_compliance.github_client import AsyncGitHubAPI
from konflux_compliance.jira import JIRAClient
from konflux_compliance.konflux import KonfluxClient


class Runtime:
    def __init__(self, config: Dict[str, Any], working_dir: Path, dry_run: bool):
        self.config = config
        self.working_dir = working_dir
        self.dry_run = dry_run
        self.logger = self.init_logger()

        # checks working_dir
        if not self.working_dir.is_dir():
            raise IOError(f"Working directory {self.working_dir.absolute()} doesn't exist.")

    @staticmethod
    def init_logger():
        root = logging.getLogger()
        if root.handlers:
            root.removeHandler(root.handlers[0])
        logger = logging.getLogger('konflux_compliance')
        if not logger.handlers:
            formatter = logging.Formatter('%(asctime)s %(name)s:%(levelname)s %(message)s')
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        return logger

    @classmethod
    def from_config_file(cls, config_filename: Path, working_dir: Path, dry_run: bool):
        config_dict = {}
        if config_filename.is_file():
            with open(config_filename, "rb") as config_file:
                config_dict = tomli.load(config_file)
        return Runtime(config=config_dict, working_dir=working_dir, dry_run=dry_run)

    @property
    def data_dir(self) -> Path:
        return self.working_dir / "data"

    @property
    def logs_dir(self) -> Path:
        return self.working_dir / "logs"

    def section(self, name: str) -> Dict[str, Any]:
        return self.config.get(name, {})

    def new_github_auth(self) -> GitHubAuth:
        github = self.section("github")
        return GitHubAuth(
            api_url=github.get("api_url", constants.GITHUB_API_URL),
            search_dirs=[Path.cwd(), self.working_dir, self.data_dir],
        )

    def new_github_client(self, auth: Optional[GitHubAuth] = None) -> AsyncGitHubAPI:
        github = self.section("github")
        return AsyncGitHubAPI(
            auth=auth or self.new_github_auth(),
            api_url=github.get("api_url", constants.GITHUB_API_URL),
            max_retries=github.get("max_retries", constants.GITHUB_MAX_RETRIES),
            retry_delay=github.get("retry_delay", constants.GITHUB_RETRY_DELAY),
        )

    def new_konflux_client(self, namespace: Optional[str] = None) -> KonfluxClient:
        konflux = self.section("konflux")
        namespace = namespace or konflux.get("namespace", constants.KONFLUX_NAMESPACE)
        endpoint = os.environ.get("KONFLUX_API_ENDPOINT")
        token = os.environ.get("KONFLUX_API_TOKEN")
        if endpoint and token:
            return KonfluxClient.from_token(
                endpoint=endpoint, token=token, default_namespace=namespace, dry_run=self.dry_run,
            )
        return KonfluxClient.from_kubeconfig(
            default_namespace=namespace,
            config_file=konflux.get("kubeconfig"),
            context=konflux.get("context"),
            dry_run=self.dry_run,
        )

    def new_jira_client(self) -> JIRAClient:
        jira = self.section("jira")
        server = os.environ.get("JIRA_SERVER") or jira.get("url", constants.JIRA_SERVER_URL)
        token = os.environ.get("JIRA_API_TOKEN")
        if not token:
            raise ValueError("JIRA_API_TOKEN environment variable is not set")
        auth_type = os.environ.get("JIRA_AUTH_TYPE", "bearer").lower()
        if auth_type == "basic":
            user = os.environ.get("JIRA_USER")
            if not user:
                raise ValueError("JIRA_USER environment variable is required for basic authentication")
            return JIRAClient.from_url(server, basic_auth=(user, token), dry_run=self.dry_run)
        return JIRAClient.from_url(server, token_auth=token, dry_run=self.dry_run)
