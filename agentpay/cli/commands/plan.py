"""agentpay plan: Show the order steps are visited in."""

from pathlib import Path

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()


def plan_graph(
    path: Path = typer.Argument(..., help="Graph or agent file (YAML or JSON)"),
):
    """Print the breadth-first plan from the trigger.

    Every edge kind is followed, so the plan lists each step that any run
    could reach.  Unreachable steps are left out.

    Example:
        agentpay plan payment_flow.yaml
    """
    from agentpay.exceptions import WorkflowValidationError
    from agentpay.workflows.dag import plan_order
    from agentpay.workflows.loader import load_graph

    try:
        order = plan_order(load_graph(path))
    except (OSError, ValueError, yaml.YAMLError, WorkflowValidationError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)

    table = Table(box=box.ROUNDED, header_style="bold dim", title=f"[bold]{len(order)} Planned Steps[/bold]")
    table.add_column("#", justify="right", style="dim", width=4)
    table.add_column("Step", style="cyan")
    table.add_column("Type", width=10)
    table.add_column("Tool")
    table.add_column("On error", style="dim", width=10)

    for i, step in enumerate(order, 1):
        name = step.id if step.enabled else f"[strike]{step.id}[/strike]"
        table.add_row(
            str(i), name, step.type.value, step.tool_type,
            step.error_handling.strategy.value,
        )
    console.print(table)
