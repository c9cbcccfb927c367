"""agentpay validate: Structural checks on a workflow graph file."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

console = Console()


def validate_graph(
    path: Path = typer.Argument(..., help="Graph or agent file (YAML or JSON)"),
):
    """Validate a workflow graph and print its errors and warnings.

    Tool types are checked against the built-in tools.  Exits 1 when the
    graph has errors.

    Example:
        agentpay validate payment_flow.yaml
    """
    from agentpay.tools.builtin import register_builtin_tools
    from agentpay.tools.registry import ToolRegistry
    from agentpay.workflows.loader import load_graph
    from agentpay.workflows.validator import WorkflowValidator

    try:
        graph = load_graph(path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)

    result = WorkflowValidator().validate(graph, registry=register_builtin_tools(ToolRegistry()))

    for error in result.errors:
        console.print(f"  [red]✗[/red] {error}")
    for warning in result.warnings:
        console.print(f"  [yellow]⚠[/yellow] {warning}")

    if not result.valid:
        console.print(
            f"\n[bold red]INVALID[/bold red]  {graph.agent_id}: "
            f"{len(result.errors)} error(s), {len(result.warnings)} warning(s)"
        )
        raise typer.Exit(1)
    console.print(
        f"[bold green]VALID[/bold green]  {graph.agent_id}: "
        f"{len(graph.steps)} step(s), {len(result.warnings)} warning(s)"
    )
