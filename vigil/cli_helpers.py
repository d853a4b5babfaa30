"""
Vigil CLI Helpers

Shared formatting utilities for consistent CLI output across all commands.
"""

from typing import List, Tuple

from rich.console import Console
from rich.table import Table

from vigil.schemas import Action, Decision

# Single shared Console instance for the entire CLI
console = Console()

ACTION_STYLES = {
    Action.ALLOW: "green",
    Action.HINT_ONLY: "cyan",
    Action.QUICK_CONFIRM: "yellow",
    Action.EXPLAIN_AND_CONFIRM: "red",
    Action.BLOCK: "red bold",
}


def print_success(message: str) -> None:
    """Print a success message with green checkmark."""
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message with yellow triangle."""
    console.print(f"[yellow]⚠[/yellow]  {message}")


def print_error(message: str, fix_hint: str = "") -> None:
    """Print an error message with red X and optional fix hint."""
    console.print(f"[red]✗[/red] {message}")
    if fix_hint:
        console.print(f"  [white]Hint: {fix_hint}[/white]")


def format_action(action: Action) -> str:
    style = ACTION_STYLES.get(action, "white")
    return f"[{style}]{action.value}[/{style}]"


def format_score(score: int) -> str:
    color = "green" if score <= 3 else ("yellow" if score <= 7 else "red")
    return f"[{color}]{score}/10[/{color}]"


def format_command_example(command: str, description: str) -> str:
    return f"  {command:<40s} {description}"


def build_examples_epilog(examples: List[Tuple[str, str]]) -> str:
    """
    Build a formatted epilog string with command examples.

    Args:
        examples: List of (command, description) tuples.

    Returns:
        Multi-line string suitable for Click's epilog parameter.
    """
    lines = ["\nExamples:"]
    for cmd, desc in examples:
        lines.append(format_command_example(cmd, desc))
    return "\n".join(lines) + "\n"


def print_decision(decision: Decision, verbose: bool = False) -> None:
    """Print a Decision: verdict line, reasons, then alternatives."""
    console.print(
        f"  {format_action(decision.action)}  risk {format_score(decision.risk_score)}"
        f"  [white]({decision.mode.value} mode)[/white]"
    )
    if decision.reasons:
        console.print()
        for reason in decision.reasons:
            console.print(f"    - {reason}")
    if decision.alternatives:
        console.print()
        console.print("  [bold]Safer alternatives[/bold]")
        for alt in decision.alternatives:
            console.print(f"    {alt.description}: [cyan]{alt.replacement_operation.raw_text}[/cyan]")
    if verbose:
        console.print()
        console.print(f"  [dim]rules: {', '.join(decision.matched_rule_ids) or '-'}[/dim]")
        console.print(f"  [dim]sequences: {', '.join(decision.matched_sequence_ids) or '-'}[/dim]")
        console.print(f"  [dim]pattern: {decision.pattern_key}[/dim]")


def key_value_table(title: str, rows: List[Tuple[str, str]]) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in rows:
        table.add_row(key, value)
    return table
