import aiohttp
import click

from konflux_compliance import constants
from konflux_compliance.cli import cli, click_coroutine, pass_runtime
from konflux_compliance.exceptions import GitHubAuthError
from konflux_compliance.github_auth import (
    GitHubAppCredentials,
    create_installation_access_token,
    missing_app_env_vars,
    validate_private_key,
)
from konflux_compliance.runtime import Runtime


@cli.command("github-app-iat")
@pass_runtime
@click_coroutine
async def github_app_iat(runtime: Runtime):
    """Print a GitHub App Installation Access Token.

    Reads GH_APP_ID, GH_APP_INSTALLATION_ID and GH_APP_PRIVATE_KEY from the
    environment. Only the token is written to stdout so the output can be
    captured directly, e.g. GITHUB_TOKEN=$(konflux-compliance github-app-iat).
    """
    missing = missing_app_env_vars()
    if missing:
        raise click.ClickException(f"Missing required environment variables: {', '.join(missing)}")
    credentials = GitHubAppCredentials.from_env()
    api_url = runtime.section("github").get("api_url", constants.GITHUB_API_URL)
    try:
        validate_private_key(credentials.private_key)
        token = await create_installation_access_token(credentials, api_url=api_url)
    except (GitHubAuthError, aiohttp.ClientError) as e:
        raise click.ClickException(str(e))
    click.echo(token)


@cli.command("github-auth-status")
@pass_runtime
@click_coroutine
async def github_auth_status(runtime: Runtime):
    """Show which GitHub authentication method would be used."""
    auth = runtime.new_github_auth()
    await auth.get_authorization()
    for line in auth.status_lines():
        click.echo(line)
