"""Doctor command for environment diagnostics."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from adapters.http_client import build_async_client
from core.config import AppSettings, get_user_env_file, write_user_env_vars
from core.domain.models import UserContext
from core.services.server_selector import ServerSelector

app = typer.Typer(no_args_is_help=True, help="Environment diagnostics and configuration checks.")

_console = Console()


async def _check_http(settings: AppSettings, url: str) -> tuple[bool, str]:
    try:
        async with build_async_client(settings) as client:
            response = await client.get(url)
        return True, f"HTTP {response.status_code}"
    except Exception as exc:
        return False, str(exc)


async def _check_servers(settings: AppSettings, urls: list[str]) -> list[tuple[str, bool, str]]:
    results = await asyncio.gather(*(_check_http(settings, url) for url in urls))
    return [(url, ok, detail) for url, (ok, detail) in zip(urls, results)]


@app.command()
def run(
    skip_network: bool = typer.Option(False, "--skip-network", help="Only check configuration."),
) -> None:
    """Run baseline diagnostics and show recommended fixes."""

    settings = AppSettings()
    user = UserContext(
        user_id=settings.user_id,
        username=settings.username,
        role=settings.role,
        is_local_client=settings.local_client,
    )

    table = Table(title="genrelay Doctor")
    table.add_column("Check", style="bright_green", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    # Config
    if settings.personal_token:
        table.add_row("Personal token", "OK", "Saved token found (used as local cache)")
    elif settings.profile_store_url:
        table.add_row("Personal token", "OPTIONAL", "Will be fetched from the profile store")
    else:
        table.add_row("Personal token", "MISSING", "Run `genrelay set-token` or configure the profile store")

    if settings.profile_store_url and settings.profile_store_api_key:
        table.add_row("Profile store", "OK", settings.profile_store_url)
    else:
        table.add_row("Profile store", "OPTIONAL", "Not set -> no shared CAPTCHA key, no admission gate")

    table.add_row("Role", "OK", f"{settings.role} (premium server: {'yes' if settings.role in settings.elevated_roles else 'no'})")
    table.add_row("Local proxy", "OK", settings.local_proxy_url)

    pool = ServerSelector(settings=settings).allowed_pool(user)
    table.add_row("Server pool", "OK" if pool else "FAIL", f"{len(pool)} allowed server(s)")

    # Connectivity (best-effort)
    if not skip_network:
        remote = [server.url for server in pool if not server.is_local]
        for url, ok, detail in asyncio.run(_check_servers(settings, remote)):
            table.add_row(url, "OK" if ok else "FAIL", detail)

    _console.print(table)
    _console.print(f"\n[dim]User config file:[/dim] {get_user_env_file()}")


@app.command()
def setup() -> None:
    """Interactive setup (stores config in the user config .env).

    Designed for non-Python users: no manual .env editing.
    """

    current = AppSettings()

    store_url = typer.prompt(
        "Profile store URL (empty to skip)",
        default=current.profile_store_url or "",
        show_default=True,
    ).strip()
    store_key = ""
    if store_url:
        store_key = typer.prompt("Profile store API key", hide_input=True, confirmation_prompt=False).strip()

    user_id = typer.prompt("User id", default=current.user_id, show_default=True).strip()
    username = typer.prompt("Username", default=current.username, show_default=True).strip()
    role = typer.prompt("Role", default=current.role, show_default=True).strip().lower()

    if not user_id:
        raise typer.BadParameter("user id is required")

    values = {
        "GENRELAY_USER_ID": user_id,
        "GENRELAY_USERNAME": username,
        "GENRELAY_ROLE": role,
    }
    if store_url:
        values["GENRELAY_PROFILE_STORE_URL"] = store_url
        values["GENRELAY_PROFILE_STORE_API_KEY"] = store_key

    env_path = write_user_env_vars(values)

    _console.print(f"[green]Saved config to:[/green] {env_path}")
