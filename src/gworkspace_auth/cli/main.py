"""Command-line interface for gworkspace-auth."""

import asyncio
import logging
import sys
from pathlib import Path

import click

from gworkspace_auth.__version__ import __version__
from gworkspace_auth.config import EnvironmentConfig, load_environment_config


def _token_storage(env: EnvironmentConfig):
    from gworkspace_auth.auth import TokenStorage

    return TokenStorage(token_path=Path(env.token_path).expanduser() if env.token_path else None)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Google Workspace authentication - set up and inspect credentials.

    Supports two modes:
    - OAuth2 (user consent, tokens kept in the OS keyring)
    - Service account (JSON key file)
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.option("--client-id", envvar="GOOGLE_OAUTH_CLIENT_ID", help="Google OAuth client ID")
@click.option(
    "--client-secret", envvar="GOOGLE_OAUTH_CLIENT_SECRET", help="Google OAuth client secret"
)
def setup(client_id: str | None, client_secret: str | None) -> None:
    """Set up Google Workspace OAuth2 authentication.

    This will:
    1. Open browser for OAuth2 consent flow
    2. Store tokens in the OS keyring (or an encrypted file)
    3. Confirm the stored tokens are usable

    Requires:
    - GOOGLE_OAUTH_CLIENT_ID environment variable or --client-id option
    - GOOGLE_OAUTH_CLIENT_SECRET environment variable or --client-secret option
    """
    from gworkspace_auth.auth import OAuth2AuthProvider, TokenStatus
    from gworkspace_auth.auth.factory import oauth2_config_from_environment
    from gworkspace_auth.errors import GoogleWorkspaceError

    if not client_id or not client_secret:
        click.echo("❌ Error: OAuth client credentials required")
        click.echo("")
        click.echo("Set environment variables:")
        click.echo("  export GOOGLE_OAUTH_CLIENT_ID='your-client-id'")
        click.echo("  export GOOGLE_OAUTH_CLIENT_SECRET='your-client-secret'")
        click.echo("")
        click.echo("Or pass as options:")
        click.echo("  gworkspace-auth setup --client-id=... --client-secret=...")
        sys.exit(1)

    env = load_environment_config()
    env = env.model_copy(
        update={"oauth_client_id": client_id, "oauth_client_secret": client_secret}
    )
    storage = _token_storage(env)

    reauthenticate = False
    if storage.get_status() == TokenStatus.VALID:
        click.echo("✓ Already authenticated!")
        click.echo("")
        if not click.confirm("Re-authenticate?"):
            return
        reauthenticate = True

    try:
        provider = OAuth2AuthProvider(oauth2_config_from_environment(env), storage, environment=env)
    except GoogleWorkspaceError as e:
        click.echo(f"❌ Invalid OAuth configuration: {e.message}")
        sys.exit(1)

    async def run() -> None:
        if reauthenticate:
            await provider.logout()
        result = await provider.get_auth_client()
        result.unwrap()

    click.echo("Starting OAuth authentication flow...")
    click.echo("Browser will open for Google consent...")
    click.echo("")

    try:
        asyncio.run(run())
    except GoogleWorkspaceError as e:
        click.echo(f"❌ Authentication failed: {e.message}")
        sys.exit(1)

    click.echo("✓ Authentication successful!")
    click.echo("")
    click.echo("Run 'gworkspace-auth status' to verify setup.")


@main.command()
def status() -> None:
    """Show the configured authentication mode and its state."""
    from gworkspace_auth.auth import OAuth2AuthProvider, TokenStatus, create_auth_provider
    from gworkspace_auth.errors import GoogleWorkspaceError

    env = load_environment_config()
    try:
        provider = create_auth_provider(env)
    except GoogleWorkspaceError as e:
        click.echo(f"❌ {e.message}")
        sys.exit(1)

    click.echo(f"Auth type: {provider.auth_type}")

    if isinstance(provider, OAuth2AuthProvider):
        token_status = provider.token_storage.get_status()
        if token_status == TokenStatus.CORRUPTED:
            click.echo("❌ Token cache corrupted. Run 'gworkspace-auth setup' to re-authenticate.")
            sys.exit(1)
        if token_status == TokenStatus.MISSING:
            click.echo("❌ Not authenticated. Run 'gworkspace-auth setup' first.")
            sys.exit(1)

    async def describe():
        init_result = await provider.initialize()
        if init_result.is_err():
            return init_result
        return await provider.get_auth_info()

    result = asyncio.run(describe())
    if result.is_err():
        click.echo(f"❌ {result.error.message}")
        sys.exit(1)

    info = result.value
    click.echo(f"Authenticated: {'yes' if info.is_authenticated else 'no'}")
    click.echo(f"Credentials: {info.key_file}")
    click.echo("Scopes:")
    for scope in info.scopes:
        click.echo(f"  - {scope}")
    if info.token_info and info.token_info.expires_at:
        click.echo(f"Token expires: {info.token_info.expires_at.isoformat()}")

    if not info.is_authenticated:
        sys.exit(1)


@main.command()
def logout() -> None:
    """Remove stored OAuth2 tokens."""
    storage = _token_storage(load_environment_config())
    if not storage.has_tokens():
        click.echo("No stored tokens.")
        return
    storage.delete_tokens()
    click.echo("✓ Stored tokens removed.")
