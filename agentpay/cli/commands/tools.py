"""agentpay tools: List the built-in tools."""

from rich import box
from rich.console import Console
from rich.table import Table

console = Console()


def tools_list():
    """List every built-in tool with its parameters.

    Example:
        agentpay tools
    """
    from agentpay.tools.builtin import register_builtin_tools
    from agentpay.tools.registry import ToolRegistry

    tool_defs = register_builtin_tools(ToolRegistry()).list_tools()

    table = Table(
        box=box.ROUNDED,
        header_style="bold dim",
        title=f"[bold]{len(tool_defs)} Built-in Tools[/bold]",
    )
    table.add_column("Name", style="cyan", width=16)
    table.add_column("Category", width=14)
    table.add_column("Description", width=40)
    table.add_column("Parameters", style="dim")
    table.add_column("Approval?", width=10)

    for definition in sorted(tool_defs, key=lambda t: t.name):
        params = ", ".join(
            f"{p.name}{'*' if p.required else ''}:{p.type.value}" for p in definition.parameters
        )
        table.add_row(
            definition.name,
            definition.category.value,
            f"[dim]{definition.description}[/dim]",
            params or "-",
            "[yellow]yes[/yellow]" if definition.requires_approval else "[dim]no[/dim]",
        )

    console.print()
    console.print(table)
    console.print("[dim]* = required[/dim]")
