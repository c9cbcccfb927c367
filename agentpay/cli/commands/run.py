"""agentpay run: Execute a workflow locally, fully in-memory."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

_STATUS_COLOR = {
    "COMPLETED": "green",
    "SUCCESS": "green",
    "FAILED": "red",
    "FAILURE": "red",
    "TIMEOUT": "red",
    "CANCELLED": "yellow",
    "SKIPPED": "dim",
}


def parse_vars(pairs: list[str]) -> dict:
    """``["amount=42", "who=ann"]`` → ``{"amount": 42, "who": "ann"}``.

    Values are read as YAML scalars, so numbers and booleans keep their type.
    """
    variables = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--var")
        variables[key.strip()] = yaml.safe_load(value) if value else ""
    return variables


def _build_orchestrator(agent):
    from agentpay.core.mandates import MandateChain
    from agentpay.core.orchestrator import AgentOrchestrator
    from agentpay.db.memory import InMemoryAgentRepository
    from agentpay.events.bus import EventBus
    from agentpay.events.logging import AuditLogSubscriber
    from agentpay.tools.builtin import register_builtin_tools
    from agentpay.tools.registry import ToolRegistry

    bus = EventBus()
    AuditLogSubscriber().attach(bus)
    return AgentOrchestrator(
        agent_repository=InMemoryAgentRepository([agent]),
        tool_registry=register_builtin_tools(ToolRegistry()),
        mandate_chain=MandateChain(event_sink=bus),
        event_sink=bus,
    ), bus


def _print_result(result) -> None:
    color = _STATUS_COLOR.get(result.status.value, "white")
    summary = (
        f"[bold]Execution:[/bold] [dim]{result.execution_id}[/dim]\n"
        f"[bold]Agent:[/bold] {result.agent_id}\n"
        f"[bold]Status:[/bold] [{color}]{result.status.value}[/{color}]  "
        f"[dim]{result.metrics.total} step(s), {result.metrics.success} ok, "
        f"{result.metrics.failed} failed, {result.metrics.skipped} skipped, "
        f"{result.duration_ms:.0f}ms[/dim]"
    )
    if result.error:
        summary += f"\n[bold]Error:[/bold] [red]{result.error}[/red]"
    console.print(Panel(summary, title="[bold blue]Execution Summary[/bold blue]", border_style=color))

    table = Table(box=box.SIMPLE, header_style="bold dim")
    table.add_column("#", justify="right", style="dim", width=4)
    table.add_column("Step", style="cyan")
    table.add_column("Status", width=9)
    table.add_column("Tries", justify="right", width=5)
    table.add_column("ms", justify="right", width=8)
    table.add_column("Output / error")

    for i, step in enumerate(result.steps, 1):
        step_color = _STATUS_COLOR.get(step.status.value, "white")
        detail = step.error if step.error else repr(step.output)
        table.add_row(
            str(i), step.step_id, f"[{step_color}]{step.status.value}[/{step_color}]",
            str(step.attempts), f"{step.duration_ms:.0f}", f"[dim]{detail[:80]}[/dim]",
        )
    console.print(table)

    for failure in result.rollback_failures:
        console.print(f"  [red]rollback:[/red] {failure}")


async def _execute(path: Path, variables: dict, tenant: Optional[str]):
    from agentpay.workflows.loader import load_agent

    agent = load_agent(path)
    orchestrator, bus = _build_orchestrator(agent)
    context = {"tenant_id": tenant} if tenant else None
    try:
        return await orchestrator.execute(agent.id, context=context, variables=variables)
    finally:
        await bus.drain()


def run_graph(
    path: Path = typer.Argument(..., help="Graph or agent file (YAML or JSON)"),
    var: list[str] = typer.Option([], "--var", help="Variable as KEY=VALUE; repeatable"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant id for the run"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw ExecutionResult as JSON"),
):
    """Run a workflow with the built-in tools and an in-memory repository.

    Gated steps create a PENDING approval mandate and fail; nothing is
    approved automatically.  Exits 1 unless the run COMPLETED.

    Example:
        agentpay run payment_flow.yaml --var amount=250 --var currency=EUR
    """
    variables = parse_vars(var)
    try:
        result = asyncio.run(_execute(path, variables, tenant))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(1)
    except Exception as exc:
        console.print(f"\n[red]Error:[/red] {exc}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(result.model_dump_json())
    else:
        _print_result(result)
    if result.status.value != "COMPLETED":
        raise typer.Exit(1)
