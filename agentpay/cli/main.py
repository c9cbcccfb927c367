"""AgentPay CLI: Typer application."""

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from agentpay.config import AgentPayConfig
from agentpay.version import __version__

app = typer.Typer(
    name="agentpay",
    help="AgentPay: mandate-gated workflow execution for autonomous agents.",
    no_args_is_help=True,
    invoke_without_command=True,
)
console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", is_eager=True, help="Show version"),
    log_level: str = typer.Option(None, "--log-level", help="Override AGENTPAY_LOG_LEVEL"),
):
    """AgentPay CLI."""
    if version:
        console.print(f"AgentPay v{__version__}")
        raise typer.Exit()
    _configure_logging(log_level or AgentPayConfig().log_level)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# ── Graph commands ─────────────────────────────────────────────────────────────
from agentpay.cli.commands import validate, plan, run  # noqa: E402

app.command(name="validate", help="Check a workflow graph file for structural errors")(validate.validate_graph)
app.command(name="plan", help="Show the breadth-first step order from the trigger")(plan.plan_graph)
app.command(name="run", help="Run a workflow locally with the built-in tools")(run.run_graph)

# ── Mandates and tools ─────────────────────────────────────────────────────────
from agentpay.cli.commands import verify, tools  # noqa: E402

app.command(name="verify", help="Recompute a mandate's hash and check its signatures")(verify.verify_mandate)
app.command(name="tools", help="List the built-in tools")(tools.tools_list)


if __name__ == "__main__":
    app()
