"""Componentes de UI para CLI (Rich).

Separa tablas/paneles de la lógica de comandos para reutilizarlos.
"""

from __future__ import annotations

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from core.domain.models import BatchUnit, OperationHandle, ServerEndpoint, StatusSnapshot, UnitState


def print_banner(console: Console) -> None:
    """Imprime el banner de bienvenida (desactivable en modo JSON)."""

    title = Text("genrelay", style="bold cyan")
    subtitle = Text("Proxied generation • Batches • Status polling", style="dim")
    body = Align.center(Text.assemble(title, "\n", subtitle), vertical="middle")
    console.print(Panel(body, border_style="cyan", padding=(1, 4)))


def _unit_artifact(unit: BatchUnit) -> str:
    if isinstance(unit.artifact, OperationHandle):
        return f"{len(unit.artifact.operations)} operation(s)"
    if isinstance(unit.artifact, str):
        return f"image ({len(unit.artifact)} b64 chars)"
    return ""


def build_batch_table(units: list[BatchUnit]) -> Table:
    """Una fila por slot del lote, en orden de índice."""

    table = Table(title="Batch Results")
    table.add_column("Slot", style="cyan", no_wrap=True)
    table.add_column("State", style="white")
    table.add_column("Server", style="magenta")
    table.add_column("Token", style="white")
    table.add_column("Result", style="green")
    table.add_column("Error", style="red")
    for unit in units:
        ok = unit.state is UnitState.SUCCEEDED
        table.add_row(
            str(unit.index + 1),
            "[green]succeeded[/green]" if ok else f"[red]{unit.state.value}[/red]",
            unit.affinity.server.url if unit.affinity else "-",
            unit.affinity.credential.origin.value if unit.affinity else "-",
            _unit_artifact(unit),
            unit.error.user_message if unit.error else "",
        )
    return table


def build_status_table(snapshot: StatusSnapshot) -> Table:
    table = Table(title=f"Operations ({snapshot.state.value})")
    table.add_column("#", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Status", style="magenta")
    table.add_column("Error", style="red")
    for idx, op in enumerate(snapshot.operations, start=1):
        name = op.get("name") or (op.get("operation") or {}).get("name") or ""
        error = op.get("error")
        message = error.get("message", "") if isinstance(error, dict) else str(error or "")
        table.add_row(str(idx), str(name), str(op.get("status") or ""), message)
    return table


def build_servers_table(servers: list[ServerEndpoint]) -> Table:
    table = Table(title="Generation Servers")
    table.add_column("#", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("URL", style="magenta")
    number = 0
    for server in servers:
        if server.is_local:
            name = "Localhost Server"
        else:
            number += 1
            name = f"Server {number}"
        table.add_row("*" if server.is_local else str(number), name, server.url)
    return table
