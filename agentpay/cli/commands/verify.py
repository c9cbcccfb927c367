"""agentpay verify: Check a mandate document for tampering.

Recomputes the content hash from the mandate's own fields and, with
``--signatures``, verifies every attached signature against it.
"""

from pathlib import Path

import typer
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()


def verify_mandate(
    path: Path = typer.Argument(..., help="Mandate JSON or YAML file"),
    signatures: bool = typer.Option(False, "--signatures", "-s", help="Also verify signatures"),
):
    """Verify a mandate's hash and, optionally, its signatures.

    Exits 1 if the hash does not match or any checked signature is bad.

    Example:
        agentpay verify MND_20260101_PAYMENT_AB12CD.json --signatures
    """
    from agentpay.core.mandates import compute_mandate_hash
    from agentpay.core.signing import MandateVerifier
    from agentpay.workflows.loader import load_mandate

    try:
        mandate = load_mandate(path)
        expected = compute_mandate_hash(mandate, mandate.cryptography.hash_algorithm)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)

    ok = mandate.cryptography.hash == expected
    table = Table(box=box.ROUNDED, header_style="bold dim", title=f"[bold]{mandate.mandate_id}[/bold]")
    table.add_column("Check", style="cyan")
    table.add_column("Result", width=8)
    table.add_column("Details", style="dim")
    table.add_row(
        f"hash ({mandate.cryptography.hash_algorithm})",
        "[green]ok[/green]" if ok else "[red]FAIL[/red]",
        expected[:24] + "…" if ok else f"stored {mandate.cryptography.hash[:16]}… ≠ {expected[:16]}…",
    )

    if signatures:
        if not mandate.cryptography.signatures:
            ok = False
            table.add_row("signatures", "[red]FAIL[/red]", "no signatures attached")
        verifier = MandateVerifier()
        for sig in mandate.cryptography.signatures:
            valid = verifier.verify(mandate, sig)
            ok = ok and valid
            table.add_row(
                f"signature {sig.key_id}",
                "[green]ok[/green]" if valid else "[red]FAIL[/red]",
                sig.algorithm.value,
            )

    console.print(table)
    console.print(
        f"[bold]Status:[/bold] {mandate.status.value}  "
        f"[bold]Chain:[/bold] [dim]{mandate.chain.chain_id} #{mandate.chain.sequence_number}[/dim]"
    )
    if not ok:
        console.print("[bold red]✗ Mandate failed verification[/bold red]")
        raise typer.Exit(1)
    console.print("[bold green]✓ Mandate verified[/bold green]")
