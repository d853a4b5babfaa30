#!/usr/bin/env python3
"""
Vigil CLI - command-risk advice from the shell.

Usage:
    vigil evaluate rm -rf build/
    vigil evaluate --kind file_read --path ~/.ssh/id_rsa
    vigil evaluate --stdin < operation.json
    vigil outcome --approved git push --force
    vigil authorize rm -rf build/
    vigil restore CHECKPOINT_ID
    vigil mode show|flow|paranoid|adaptive
    vigil trust show|reset
    vigil rules list
    vigil sequences list
    vigil audit show|verify
    vigil checkpoints list|purge
"""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.table import Table

from vigil import __version__
from vigil.cli_helpers import (
    build_examples_epilog,
    console,
    format_action,
    key_value_table,
    print_decision,
    print_error,
    print_success,
    print_warning,
)
from vigil.errors import (
    CheckpointError,
    ConfigError,
    InvalidOperation,
    ModeTransitionError,
    PersistentStoreUnavailable,
)
from vigil.schemas import Action, ModeName, ModeState, Operation, OperationKind

# Exit code of `evaluate` / `authorize` when the host must not run the operation
EXIT_BLOCKED = 2

# Let "rm -rf /" reach the WORDS argument instead of being parsed as options
OPERATION_CONTEXT = {"ignore_unknown_options": True, "allow_interspersed_args": False}


class CliState:
    """Options from the top-level group; builds the engine on first use."""

    def __init__(
        self,
        state_path: Optional[str],
        config_path: Optional[str],
        rules_path: Optional[str],
        sequences_path: Optional[str],
        identity: str,
    ):
        self.state_path = state_path
        self.config_path = config_path
        self.rules_path = rules_path
        self.sequences_path = sequences_path
        self.identity = identity
        self._engine = None

    def engine(self):
        if self._engine is None:
            from vigil.config.loader import load_bundle
            from vigil.engine import AdvisoryEngine
            from vigil.store import SQLiteStore

            try:
                bundle = load_bundle(
                    config_path=Path(self.config_path) if self.config_path else None,
                    rules_path=Path(self.rules_path) if self.rules_path else None,
                    sequences_path=Path(self.sequences_path) if self.sequences_path else None,
                    project_dir=Path.cwd(),
                )
            except ConfigError as e:
                print_error(str(e), "Fix the file or run with the bundled defaults")
                sys.exit(1)
            try:
                store = SQLiteStore(Path(self.state_path) if self.state_path else None)
            except PersistentStoreUnavailable as e:
                print_error(f"Cannot open state database: {e}", "Pass --state with a writable path")
                sys.exit(1)
            self._engine = AdvisoryEngine(bundle=bundle, store=store)
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            self._engine.close()
            self._engine = None


pass_state = click.make_pass_decorator(CliState)


# ============================================================
# OPERATION INPUT
# ============================================================

def operation_options(func):
    """Shared options that describe the operation under evaluation."""
    func = click.argument("words", nargs=-1, type=click.UNPROCESSED)(func)
    func = click.option("--stdin", "from_stdin", is_flag=True,
                        help="Read the operation (or an agent tool call) as JSON from stdin")(func)
    func = click.option("--tool", "tool_name", default=None, help="Tool name (tool_call operations)")(func)
    func = click.option("--path", "target_path", default=None, help="Target path (file operations)")(func)
    func = click.option("--kind", "-k", type=click.Choice([k.value for k in OperationKind if k != OperationKind.UNKNOWN]),
                        default=OperationKind.SHELL.value, show_default=True,
                        help="Operation kind")(func)
    return func


def build_operation(
    words: Tuple[str, ...],
    kind: str,
    target_path: Optional[str],
    tool_name: Optional[str],
    from_stdin: bool,
) -> Operation:
    """Turn CLI input into an Operation.

    With --stdin the JSON may be an operation ({"kind": ..., "raw_text": ...})
    or an agent tool call ({"tool_name": ..., "tool_input": {...}}).
    """
    if from_stdin:
        try:
            data = json.loads(sys.stdin.read())
        except json.JSONDecodeError as e:
            raise InvalidOperation(f"stdin is not valid JSON: {e}") from e
        if isinstance(data, dict) and "tool_input" in data:
            return Operation.from_tool_call(data.get("tool_name") or "", data["tool_input"])
        return Operation.from_dict(data)

    op_kind = OperationKind(kind)
    raw_text = " ".join(words)
    if op_kind in (OperationKind.FILE_READ, OperationKind.FILE_WRITE) and target_path is None and words:
        target_path = words[0]
    if not raw_text:
        raw_text = target_path or tool_name or ""
    return Operation(kind=op_kind, raw_text=raw_text, target_path=target_path, tool_name=tool_name)


def _operation_or_exit(*args) -> Operation:
    try:
        return build_operation(*args)
    except InvalidOperation as e:
        print_error(f"Invalid operation: {e}")
        sys.exit(1)


# ============================================================
# MAIN GROUP
# ============================================================

@click.group()
@click.version_option(version=__version__, prog_name="vigil")
@click.option("--state", "state_path", envvar="VIGIL_STATE", type=click.Path(dir_okay=False),
              default=None, help="State database (default: ~/.vigil/state.db)")
@click.option("--config", "config_path", envvar="VIGIL_CONFIG", type=click.Path(dir_okay=False),
              default=None, help="User config file (default: ~/.vigil/config.yaml)")
@click.option("--rules", "rules_path", type=click.Path(exists=True, dir_okay=False),
              default=None, help="Risk rule table to use instead of the default")
@click.option("--sequences", "sequences_path", type=click.Path(exists=True, dir_okay=False),
              default=None, help="Sequence table to use instead of the default")
@click.option("--identity", "-i", envvar="VIGIL_IDENTITY", default="default", show_default=True,
              help="Identity whose trust and mode apply")
@click.option("--debug", is_flag=True, help="Log diagnostics to stderr")
@click.pass_context
def main(ctx, state_path, config_path, rules_path, sequences_path, identity, debug):
    """Vigil - adaptive command-risk advice for AI agents."""
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    state = CliState(state_path, config_path, rules_path, sequences_path, identity)
    ctx.obj = state
    ctx.call_on_close(state.close)


@main.command(
    context_settings=OPERATION_CONTEXT,
    epilog=build_examples_epilog([
        ("vigil evaluate rm -rf build/", "Score a shell command"),
        ("vigil evaluate -k file_read ~/.ssh/id_rsa", "Score a file read"),
        ("vigil evaluate --json git push --force", "Machine-readable decision"),
        ("vigil evaluate --stdin < call.json", "Score an agent tool call"),
    ])
)
@operation_options
@click.option("--json", "json_out", is_flag=True, help="Print the decision as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Show matched rules and pattern key")
@pass_state
def evaluate(state: CliState, words, kind, target_path, tool_name, from_stdin, json_out, verbose):
    """Score an operation and print what the host should do.

    Exits 2 when the decision is block.
    """
    operation = _operation_or_exit(words, kind, target_path, tool_name, from_stdin)
    engine = state.engine()
    try:
        decision = engine.evaluate(operation, state.identity)
    except InvalidOperation as e:
        print_error(f"Invalid operation: {e}")
        sys.exit(1)

    if json_out:
        console.print_json(decision.to_json())
    else:
        console.print(f"[bold]{operation.kind.value}[/bold]: {operation.raw_text}")
        print_decision(decision, verbose=verbose)

    if decision.action == Action.BLOCK:
        sys.exit(EXIT_BLOCKED)


@main.command(context_settings=OPERATION_CONTEXT)
@operation_options
@click.option("--approved/--declined", default=True, show_default=True,
              help="Whether the operation was approved and executed")
@click.option("--mistake", is_flag=True, help="The operation turned out to be a mistake")
@pass_state
def outcome(state: CliState, words, kind, target_path, tool_name, from_stdin, approved, mistake):
    """Report what happened to an operation (feeds the trust ledger)."""
    operation = _operation_or_exit(words, kind, target_path, tool_name, from_stdin)
    info = state.engine().report_outcome(state.identity, operation, approved, was_mistake=mistake)

    if mistake:
        print_warning(f"Mistake recorded for [bold]{info.pattern_key}[/bold]; "
                      "risk is raised for the cool-down period")
    elif info.auto_trusted:
        print_success(f"[bold]{info.pattern_key}[/bold] is auto-trusted "
                      f"({info.approval_count} approvals)")
    else:
        console.print(f"  {info.pattern_key}: {info.approval_count} approval(s)")


@main.command(context_settings=OPERATION_CONTEXT)
@operation_options
@click.option("--json", "json_out", is_flag=True, help="Print decision and clearance as JSON")
@pass_state
def authorize(state: CliState, words, kind, target_path, tool_name, from_stdin, json_out):
    """Evaluate an operation and checkpoint it before it runs.

    Exits 2 when the operation may not proceed.
    """
    operation = _operation_or_exit(words, kind, target_path, tool_name, from_stdin)
    engine = state.engine()
    decision = engine.evaluate(operation, state.identity)
    clearance = engine.authorize(state.identity, operation, decision)

    if json_out:
        console.print_json(json.dumps({
            "decision": decision.to_dict(),
            "clearance": clearance.to_dict(),
        }))
    else:
        print_decision(decision)
        console.print()
        if clearance.checkpoint:
            cp = clearance.checkpoint
            print_success(f"Checkpoint [bold]{cp.id}[/bold] ({cp.strategy}) "
                          f"valid until {cp.expires_at.isoformat(timespec='seconds')}")
            console.print(f"  [dim]Undo with: vigil restore {cp.id}[/dim]")
        elif clearance.proceed:
            print_success("Clear to proceed")
        else:
            print_error("Do not proceed")
        for note in clearance.notes:
            console.print(f"    - {note}")

    if not clearance.proceed:
        sys.exit(EXIT_BLOCKED)


@main.command()
@click.argument("checkpoint_id")
@pass_state
def restore(state: CliState, checkpoint_id: str):
    """Undo an operation from its recovery checkpoint."""
    try:
        checkpoint = state.engine().restore(checkpoint_id)
    except CheckpointError as e:
        print_error(str(e), "List live checkpoints with: vigil checkpoints list")
        sys.exit(1)
    print_success(f"Restored checkpoint {checkpoint.id} ({checkpoint.strategy}) "
                  f"for: {checkpoint.operation.raw_text}")


# ============================================================
# MODE COMMANDS
# ============================================================

def _print_mode(mode_state: ModeState) -> None:
    rows = [("Mode", f"[cyan]{mode_state.mode.value}[/cyan]"),
            ("Since", mode_state.started_at.isoformat(timespec="seconds"))]
    if mode_state.expires_at:
        rows.append(("Expires", mode_state.expires_at.isoformat(timespec="seconds")))
    if mode_state.mode == ModeName.LEARNING:
        rows.append(("Days observed", str(mode_state.days_observed)))
    console.print(key_value_table("Operating mode", rows))


@main.group()
def mode():
    """Show or change the operating mode."""
    pass


@mode.command("show")
@pass_state
def mode_show(state: CliState):
    """Show the current mode."""
    _print_mode(state.engine().mode(state.identity))


@mode.command("flow")
@click.option("--minutes", "-m", type=click.IntRange(min=1), default=None,
              help="Flow duration (default from config)")
@pass_state
def mode_flow(state: CliState, minutes: Optional[int]):
    """Enter (or extend) flow mode: fewer interruptions for a while."""
    try:
        mode_state = state.engine().enter_flow(state.identity, minutes)
    except ModeTransitionError as e:
        print_error(str(e), "Flow can only be entered from adaptive mode")
        sys.exit(1)
    print_success(f"Flow mode until {mode_state.expires_at.isoformat(timespec='seconds')}")


@mode.command("paranoid")
@pass_state
def mode_paranoid(state: CliState):
    """Enter paranoid mode: confirm more, block earlier."""
    try:
        state.engine().enter_paranoid(state.identity)
    except ModeTransitionError as e:
        print_error(str(e), "Paranoid can only be entered from adaptive mode")
        sys.exit(1)
    print_success("Paranoid mode on")


@mode.command("adaptive")
@pass_state
def mode_adaptive(state: CliState):
    """Leave flow or paranoid mode."""
    engine = state.engine()
    current = engine.mode(state.identity).mode
    try:
        if current == ModeName.FLOW:
            engine.exit_flow(state.identity)
        elif current == ModeName.PARANOID:
            engine.exit_paranoid(state.identity)
        elif current == ModeName.LEARNING:
            raise ModeTransitionError("learning mode ends on its own after the learning period")
    except ModeTransitionError as e:
        print_error(str(e))
        sys.exit(1)
    print_success("Adaptive mode")


# ============================================================
# TRUST COMMANDS
# ============================================================

@main.group()
def trust():
    """Inspect or reset learned trust."""
    pass


@trust.command("show")
@pass_state
def trust_show(state: CliState):
    """Show approved patterns and recent mistakes."""
    engine = state.engine()
    ledger = engine.trust(state.identity)
    threshold = engine.config.trust.auto_trust_threshold

    if not ledger.trusted_patterns:
        console.print("[white]No approved patterns.[/white]")
    else:
        table = Table(title=f"Trusted patterns ({state.identity})")
        table.add_column("Pattern", style="bold")
        table.add_column("Approvals", justify="right")
        table.add_column("Auto-trusted")
        table.add_column("Last approved")
        for key, record in sorted(ledger.trusted_patterns.items()):
            table.add_row(
                key,
                str(record.approval_count),
                "[green]yes[/green]" if record.approval_count >= threshold else "no",
                record.last_approved_at.isoformat(timespec="seconds") if record.last_approved_at else "-",
            )
        console.print(table)

    if ledger.mistake_log:
        console.print()
        console.print("[bold]Mistakes[/bold]")
        for entry in ledger.mistake_log[-10:]:
            console.print(f"  {entry.timestamp.isoformat(timespec='seconds')}  {entry.pattern_key}")


@trust.command("reset")
@click.confirmation_option(prompt="Clear all trusted patterns for this identity?")
@pass_state
def trust_reset(state: CliState):
    """Forget every approved pattern (mistakes are kept)."""
    state.engine().reset_trust(state.identity)
    print_success(f"Trust reset for {state.identity}")


# ============================================================
# RULE TABLES
# ============================================================

@main.group()
def rules():
    """Inspect the risk rule table."""
    pass


@rules.command("list")
@pass_state
def rules_list(state: CliState):
    """List risk rules in evaluation order."""
    table = Table(title="Risk rules (first match sets the base)")
    table.add_column("#", justify="right")
    table.add_column("ID", style="bold")
    table.add_column("Base", justify="right")
    table.add_column("Kinds")
    table.add_column("Description")
    for index, rule in enumerate(state.engine().bundle.rules.rules, 1):
        table.add_row(
            str(index), rule.id, str(rule.base_risk),
            ", ".join(k.value for k in rule.kinds) or "any",
            rule.description,
        )
    console.print(table)


@main.group()
def sequences():
    """Inspect the dangerous-sequence table."""
    pass


@sequences.command("list")
@pass_state
def sequences_list(state: CliState):
    """List dangerous operation sequences."""
    table = Table(title="Dangerous sequences")
    table.add_column("ID", style="bold")
    table.add_column("Risk", justify="right")
    table.add_column("Steps")
    for seq in state.engine().bundle.sequences.sequences:
        table.add_row(seq.id, f"+{seq.risk}", " -> ".join(step.label for step in seq.steps))
    console.print(table)


# ============================================================
# AUDIT COMMANDS
# ============================================================

@main.group()
def audit():
    """Inspect the hash-chained audit trail."""
    pass


@audit.command("show")
@click.option("--limit", "-n", default=20, show_default=True, help="Number of events to show")
@click.option("--json", "json_out", is_flag=True, help="Print events as JSON")
@pass_state
def audit_show(state: CliState, limit: int, json_out: bool):
    """Show the most recent audit events of an identity."""
    audit_log = state.engine().audit_log
    events = audit_log.events(state.identity, limit=limit) if audit_log else []

    if json_out:
        console.print_json(json.dumps(events))
        return
    if not events:
        console.print("[white]No audit events recorded.[/white]")
        return

    table = Table(title=f"Audit trail ({state.identity})")
    table.add_column("#", justify="right")
    table.add_column("Time")
    table.add_column("Event", style="bold")
    table.add_column("Action")
    table.add_column("Score", justify="right")
    table.add_column("Command / reason")
    for event in events:
        action = event.get("action")
        table.add_row(
            str(event.get("seq")),
            event.get("timestamp", "")[:19],
            event.get("event_type", ""),
            format_action(Action(action)) if action else "",
            str(event["risk_score"]) if event.get("risk_score") is not None else "",
            (event.get("command") or event.get("reason") or "")[:60],
        )
    console.print(table)


@audit.command("verify")
@pass_state
def audit_verify(state: CliState):
    """Verify the audit hash chain of every identity."""
    audit_log = state.engine().audit_log
    identities = audit_log.identities() if audit_log else []
    if not identities:
        console.print("[white]No audit events recorded.[/white]")
        return

    broken = False
    for identity in identities:
        result = audit_log.verify_chain(identity)
        if result["valid"]:
            print_success(f"{identity}: {result['verified']}/{result['total']} entries verified")
        else:
            broken = True
            print_error(f"{identity}: chain broken at entry {result['broken_at']} "
                        f"({len(result['errors'])} bad link(s))")
    if broken:
        sys.exit(1)


# ============================================================
# CHECKPOINT COMMANDS
# ============================================================

@main.group()
def checkpoints():
    """Manage recovery checkpoints."""
    pass


@checkpoints.command("list")
@click.option("--all", "all_identities", is_flag=True, help="Include every identity")
@pass_state
def checkpoints_list(state: CliState, all_identities: bool):
    """List live (unexpired) checkpoints."""
    live = state.engine().checkpoints(None if all_identities else state.identity)
    if not live:
        console.print("[white]No live checkpoints.[/white]")
        return
    table = Table(title="Recovery checkpoints")
    table.add_column("ID", style="bold")
    table.add_column("Strategy")
    table.add_column("Expires")
    table.add_column("Operation")
    for cp in live:
        table.add_row(cp.id, cp.strategy, cp.expires_at.isoformat(timespec="seconds"),
                      cp.operation.raw_text[:60])
    console.print(table)


@checkpoints.command("purge")
@pass_state
def checkpoints_purge(state: CliState):
    """Delete expired checkpoints and their backups."""
    removed = state.engine().purge_expired()
    print_success(f"Purged {removed} expired checkpoint(s)")


if __name__ == "__main__":
    main()
