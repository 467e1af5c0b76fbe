"""CLI entry-point (Typer + Rich).

Commands:
- `video`: text/image → video, N units in parallel, optional wait.
- `compose`: image composition from one or more input images.
- `status`: poll operations saved by `video --save`.
- `servers`: list the servers this user may be routed to.
- `set-token`: store the personal token (user .env + profile store).
- `doctor`: diagnostics and interactive setup.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from adapters.profile_store import ProfileStoreError
from cli import doctor
from cli.ui_components import build_batch_table, build_servers_table, build_status_table, print_banner
from cli.wiring import open_orchestrator
from core.config import AppSettings, write_user_env_vars
from core.domain.errors import OrchestratorError
from core.domain.models import (
    BatchUnit,
    GenerationKind,
    ImageAsset,
    OperationHandle,
    StatusSnapshot,
    UnitState,
)
from core.services.batch_runner import BatchHooks, BatchTemplate
from core.services.poller import poll_until_terminal

app = typer.Typer(no_args_is_help=True, help="Proxied generation request orchestrator.")
app.add_typer(doctor.app, name="doctor")

console = Console()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx loguea cada request en INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_settings() -> AppSettings:
    settings = AppSettings()
    configure_logging(settings.log_level)
    return settings


def _read_asset(path: Path, caption: str) -> ImageAsset:
    if not path.is_file():
        raise typer.BadParameter(f"image not found: {path}")
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return ImageAsset(base64=encoded, mime_type=mime_type, caption=caption)


def _batch_hooks(progress: Progress, task_id: int) -> BatchHooks:
    def on_progress(completed: int, total: int) -> None:
        progress.update(task_id, completed=completed, total=total)

    def on_status(index: int, message: str) -> None:
        progress.console.print(f"[dim]slot {index + 1}:[/dim] {message}")

    def on_done(unit: BatchUnit) -> None:
        if unit.state is UnitState.FAILED and unit.error:
            progress.console.print(f"[red]slot {unit.index + 1} failed:[/red] {unit.error.message}")

    return BatchHooks(progress=on_progress, unit_done=on_done, status=on_status)


async def _wait_all(orch, units: list[BatchUnit], user) -> None:
    settings = orch.settings

    async def _wait(unit: BatchUnit) -> None:
        snapshot = await poll_until_terminal(
            orch.poller,
            unit.artifact,
            user,
            interval_seconds=settings.poll_interval_seconds,
            timeout_seconds=settings.poll_timeout_seconds,
        )
        console.print(f"[cyan]slot {unit.index + 1}[/cyan]")
        console.print(build_status_table(snapshot))

    pending = [unit for unit in units if isinstance(unit.artifact, OperationHandle)]
    results = await asyncio.gather(*(_wait(unit) for unit in pending), return_exceptions=True)
    for unit, result in zip(pending, results):
        if isinstance(result, OrchestratorError):
            console.print(f"[red]slot {unit.index + 1} status check failed:[/red] {result.message}")
        elif isinstance(result, BaseException):
            raise result


def _run_batch(
    settings: AppSettings,
    n: int,
    template: BatchTemplate,
    *,
    wait: bool = False,
) -> list[BatchUnit]:
    async def _go() -> list[BatchUnit]:
        async with open_orchestrator(settings) as orch:
            user = orch.user_from_settings()
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("{task.completed}/{task.total}"),
                console=console,
            ) as progress:
                task_id = progress.add_task(template.kind.value, total=n)
                units = await orch.batch.run_batch(n, template, user, _batch_hooks(progress, task_id))
            if wait:
                await _wait_all(orch, units, user)
            return units

    try:
        return asyncio.run(_go())
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except OrchestratorError as exc:
        console.print(f"[red]{exc.user_message}[/red]")
        raise typer.Exit(code=1) from exc


def _save_handles(path: Path, units: list[BatchUnit]) -> None:
    handles = [
        unit.artifact.model_dump(mode="json")
        for unit in units
        if unit.state is UnitState.SUCCEEDED and isinstance(unit.artifact, OperationHandle)
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(handles, ensure_ascii=False, indent=2), encoding="utf-8")
    console.print(f"[green]Saved {len(handles)} operation handle(s) to:[/green] {path}")


def _load_handles(path: Path) -> list[OperationHandle]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise typer.BadParameter(f"cannot read handles file {path}: {exc}") from exc
    if isinstance(raw, dict):
        raw = [raw]
    return [OperationHandle.model_validate(item) for item in raw]


@app.command()
def video(
    prompt: str = typer.Argument(..., help="Text prompt for the video."),
    image: Optional[Path] = typer.Option(None, "--image", "-i", help="Start frame (image → video)."),
    count: int = typer.Option(1, "--count", "-n", min=1, max=8, help="Number of videos to generate in parallel."),
    aspect: str = typer.Option("landscape", "--aspect", help="landscape | portrait"),
    token: Optional[str] = typer.Option(None, "--token", help="Personal token (overrides cache/profile store)."),
    server: Optional[str] = typer.Option(None, "--server", help="Pin every unit to this server URL."),
    seed: Optional[int] = typer.Option(None, "--seed", help="Fixed seed (random per unit when omitted)."),
    save: Path = typer.Option(Path("operations.json"), "--save", help="Where to store operation handles."),
    wait: bool = typer.Option(False, "--wait", help="Poll until every operation is finished."),
    no_banner: bool = typer.Option(False, "--no-banner", help="Hide banner."),
) -> None:
    """Generate N videos concurrently and save their operation handles."""

    settings = _load_settings()
    if not no_banner:
        print_banner(console)

    template = BatchTemplate(
        kind=GenerationKind.IMAGE_TO_VIDEO if image else GenerationKind.TEXT_TO_VIDEO,
        prompt=prompt,
        aspect_ratio=aspect,
        assets=[_read_asset(image, "subject")] if image else [],
        seed=seed,
        explicit_token=token,
        pin=server,
    )

    units = _run_batch(settings, count, template, wait=wait)

    console.print(build_batch_table(units))
    _save_handles(save, units)
    if not any(unit.state is UnitState.SUCCEEDED for unit in units):
        raise typer.Exit(code=1)


@app.command()
def compose(
    instruction: str = typer.Argument(..., help="What to do with the input images."),
    images: list[Path] = typer.Option(..., "--image", "-i", help="Input image (repeatable)."),
    count: int = typer.Option(1, "--count", "-n", min=1, max=8, help="Number of images to generate in parallel."),
    aspect: str = typer.Option("1:1", "--aspect", help="1:1 | 16:9 | 9:16 | 4:3 | 3:4"),
    token: Optional[str] = typer.Option(None, "--token", help="Personal token (overrides cache/profile store)."),
    server: Optional[str] = typer.Option(None, "--server", help="Pin every unit to this server URL."),
    output_dir: Path = typer.Option(Path("outputs"), "--output-dir", "-o", help="Where to write the images."),
    no_banner: bool = typer.Option(False, "--no-banner", help="Hide banner."),
) -> None:
    """Compose N images from the same inputs (inputs are uploaded once)."""

    settings = _load_settings()
    if not no_banner:
        print_banner(console)

    template = BatchTemplate(
        kind=GenerationKind.IMAGE_COMPOSE,
        prompt=instruction,
        aspect_ratio=aspect,
        assets=[
            _read_asset(path, "subject" if idx == 0 else "scene") for idx, path in enumerate(images)
        ],
        explicit_token=token,
        pin=server,
    )

    units = _run_batch(settings, count, template)

    console.print(build_batch_table(units))

    output_dir.mkdir(parents=True, exist_ok=True)
    for unit in units:
        if unit.state is UnitState.SUCCEEDED and isinstance(unit.artifact, str):
            out = output_dir / f"compose_{unit.index + 1}.png"
            out.write_bytes(base64.b64decode(unit.artifact))
            console.print(f"[green]Saved:[/green] {out}")
    if not any(unit.state is UnitState.SUCCEEDED for unit in units):
        raise typer.Exit(code=1)


@app.command()
def status(
    handles_file: Path = typer.Argument(Path("operations.json"), help="File written by `video --save`."),
    wait: bool = typer.Option(False, "--wait", help="Keep polling until finished."),
    as_json: bool = typer.Option(False, "--json", help="Print raw status payloads."),
) -> None:
    """Check operations on the server (and with the token) that created them."""

    settings = _load_settings()
    handles = _load_handles(handles_file)
    if not handles:
        console.print("[yellow]No operation handles found.[/yellow]")
        raise typer.Exit(code=1)

    async def _run() -> list[StatusSnapshot]:
        async with open_orchestrator(settings) as orch:
            user = orch.user_from_settings()
            if wait:
                return list(
                    await asyncio.gather(
                        *(
                            poll_until_terminal(
                                orch.poller,
                                handle,
                                user,
                                interval_seconds=settings.poll_interval_seconds,
                                timeout_seconds=settings.poll_timeout_seconds,
                            )
                            for handle in handles
                        )
                    )
                )
            return list(await asyncio.gather(*(orch.poller.poll(handle, user) for handle in handles)))

    try:
        snapshots = asyncio.run(_run())
    except OrchestratorError as exc:
        console.print(f"[red]{exc.user_message}[/red] [dim]{exc.message}[/dim]")
        raise typer.Exit(code=1) from exc

    for handle, snapshot in zip(handles, snapshots):
        if as_json:
            console.print_json(json.dumps(snapshot.raw, ensure_ascii=False))
            continue
        console.print(f"[dim]{handle.affinity.server.url} ({handle.model_key or 'unknown model'})[/dim]")
        console.print(build_status_table(snapshot))


@app.command()
def servers() -> None:
    """List the servers the configured user may be routed to."""

    settings = _load_settings()

    async def _run():
        async with open_orchestrator(settings) as orch:
            return orch.selector.allowed_pool(orch.user_from_settings())

    console.print(build_servers_table(asyncio.run(_run())))


@app.command(name="set-token")
def set_token(
    token: str = typer.Option(..., prompt=True, hide_input=True, help="Personal token."),
) -> None:
    """Store the personal token locally and, if configured, in the profile store."""

    settings = _load_settings()
    token = token.strip()
    if not token:
        raise typer.BadParameter("token must not be empty")

    async def _run() -> str:
        async with open_orchestrator(settings) as orch:
            credential = await orch.credentials.remember(orch.user_from_settings(), token)
            return credential.fingerprint

    try:
        fingerprint = asyncio.run(_run())
    except ProfileStoreError as exc:
        console.print(f"[yellow]Profile store update failed, saving locally only:[/yellow] {exc}")
        fingerprint = f"...{token[-6:]}"
    env_path = write_user_env_vars({"GENRELAY_PERSONAL_TOKEN": token})
    console.print(f"[green]Token {fingerprint} saved to:[/green] {env_path}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
