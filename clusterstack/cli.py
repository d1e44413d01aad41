"""
clusterstack CLI entry point.
"""
import json
import sys
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from clusterstack import __version__
from clusterstack.config import load_config
from clusterstack.engine.diff import plan as plan_operations
from clusterstack.engine.diff import refresh
from clusterstack.engine.outputs import export_outputs
from clusterstack.engine.realize import RealizationEngine, RealizationReport
from clusterstack.errors import (
    ClusterStackError,
    CycleDetectedError,
    DuplicateIdError,
    InvalidConfigError,
    ProvisioningCallError,
)
from clusterstack.graph.resolver import resolve_order
from clusterstack.models.realized import Operation, OperationType, RealizedResource, ResourceStatus
from clusterstack.models.resource import ResourceGraph
from clusterstack.providers.memory import InMemoryProvider
from clusterstack.reporters import json_reporter, markdown
from clusterstack.state import DEFAULT_STATE_FILE, StateStore
from clusterstack.topology import build_topology

console = Console(stderr=True)

DEFAULT_ACCOUNT_FILE = ".clusterstack_account.json"

_BANNER = r"""
       _           _                _             _
   ___| |_   _ ___| |_ ___ _ __ ___| |_ __ _  ___| | __
  / __| | | | / __| __/ _ \ '__/ __| __/ _` |/ __| |/ /
 | (__| | |_| \__ \ ||  __/ |  \__ \ || (_| | (__|   <
  \___|_|\__,_|___/\__\___|_|  |___/\__\__,_|\___|_|\_\
"""

_OP_COLORS = {
    "Create": "green",
    "Update": "yellow",
    "Replace": "bold red",
    "NoOp": "dim",
    "Delete": "red",
}

_STATUS_COLORS = {
    "Created": "green",
    "Pending": "dim",
    "Failed": "bold red",
    "RolledBack": "yellow",
    "RollbackFailed": "red",
    "Deleted": "dim",
}

_BUILD_ERRORS = (DuplicateIdError, InvalidConfigError, CycleDetectedError)


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]{_BANNER}[/bold cyan]")
    c.print(f"  [dim]v{__version__}[/dim]\n")


def _build(config_path: Optional[str]) -> Tuple[ResourceGraph, List]:
    """Load configuration and build the graph; fail before any provider call."""
    try:
        graph = build_topology(load_config(config_path))
        order = list(resolve_order(graph))
    except _BUILD_ERRORS as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(2)
    return graph, order


def _print_operations(operations: List[Operation]) -> None:
    tbl = Table(title="Plan", show_header=True, header_style="bold")
    tbl.add_column("Resource", width=34)
    tbl.add_column("Operation", width=10)
    tbl.add_column("Changed")
    for op in operations:
        color = _OP_COLORS.get(op.op.value, "")
        tbl.add_row(op.node_id, f"[{color}]{op.op.value}[/{color}]", ", ".join(op.changed))
    Console(stderr=True).print(tbl)


def _print_statuses(statuses: Dict[str, ResourceStatus]) -> None:
    tbl = Table(title="Resources", show_header=True, header_style="bold")
    tbl.add_column("Resource", width=34)
    tbl.add_column("Status")
    for node_id, status in statuses.items():
        color = _STATUS_COLORS.get(status.value, "")
        tbl.add_row(node_id, f"[{color}]{status.value}[/{color}]" if color else status.value)
    Console(stderr=True).print(tbl)


def _print_outputs(outputs: Dict[str, str]) -> None:
    tbl = Table(title="Outputs", show_header=True, header_style="bold")
    tbl.add_column("Name")
    tbl.add_column("Value")
    for name, value in outputs.items():
        tbl.add_row(name, value)
    Console(stderr=True).print(tbl)


def _print_failure(report: RealizationReport) -> None:
    if report.failed_node is None:
        console.print(f"[yellow]Realization stopped:[/yellow] {report.cause}")
    else:
        console.print(f"[red]Realization failed at[/red] [bold]{report.failed_node}[/bold]: {report.cause}")
    _print_statuses(report.statuses)
    if report.fully_rolled_back:
        console.print("[yellow]Every resource created during this run was rolled back.[/yellow]")
    else:
        console.print("[red]Manual cleanup required for:[/red] " + ", ".join(report.needs_manual_cleanup))


def _open_state(state_path: str) -> StateStore:
    try:
        return StateStore(state_path)
    except _BUILD_ERRORS as exc:
        console.print(f"[red]State error:[/red] {exc}")
        sys.exit(2)


def _write(content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        console.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


_config_option = click.option(
    "--config", "-c", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file overriding the topology defaults.",
)
_state_option = click.option(
    "--state", "state_path",
    type=click.Path(dir_okay=False),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="Last-known state file.",
)
_account_option = click.option(
    "--account", "account_path",
    type=click.Path(dir_okay=False),
    default=DEFAULT_ACCOUNT_FILE,
    show_default=True,
    help="Simulated provider account file.",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """clusterstack: declare and provision the pgAdmin cluster topology."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@_config_option
def graph(config_path: Optional[str]) -> None:
    """Print the realization order of the topology."""
    stack, order = _build(config_path)
    tbl = Table(title=f"{stack.name}: realization order", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Resource", width=34)
    tbl.add_column("Kind", width=16)
    tbl.add_column("Depends on")
    for i, node in enumerate(order, 1):
        tbl.add_row(str(i), node.node_id, node.kind.value, ", ".join(node.depends_on))
    Console().print(tbl)


@cli.command()
@_config_option
@_state_option
@_account_option
@click.option("--refresh/--no-refresh", "do_refresh", default=True, show_default=True,
              help="Check recorded resources still exist before planning.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the plan as JSON.")
def plan(config_path: Optional[str], state_path: str, account_path: str, do_refresh: bool, as_json: bool) -> None:
    """Show what `up` would change."""
    stack, _ = _build(config_path)
    store = _open_state(state_path)
    last_known = store.resources()
    if do_refresh:
        last_known = _refresh(last_known, account_path)
    operations = plan_operations(stack, last_known)
    if as_json:
        click.echo(json.dumps([op.to_dict() for op in operations], indent=2))
    else:
        _print_operations(operations)


def _refresh(last_known: Dict[str, RealizedResource], account_path: str) -> Dict[str, RealizedResource]:
    provider = InMemoryProvider.load(account_path)
    return refresh(last_known, provider, console=console)


@cli.command()
@_config_option
@_state_option
@_account_option
@click.option("--workers", type=click.IntRange(1, 32), default=1, show_default=True,
              help="Realize independent resources concurrently.")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None,
              help="Per-call timeout in seconds.")
@click.option("--fail-at", type=click.IntRange(min=1), default=None,
              help="Make the Nth provisioning call fail (simulated provider).")
@click.option("--fail-kind", multiple=True,
              help="Make every create of this resource kind fail (simulated provider).")
@click.option("--format", "output_format",
              type=click.Choice(["markdown", "json"], case_sensitive=False),
              default=None, help="Also render a run report in this format.")
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the report to this file (default: stdout).")
@click.option("--ascii", is_flag=True, default=False, help="Use ASCII-only status indicators.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
def up(
    config_path: Optional[str],
    state_path: str,
    account_path: str,
    workers: int,
    timeout: Optional[float],
    fail_at: Optional[int],
    fail_kind: Tuple[str, ...],
    output_format: Optional[str],
    output: Optional[str],
    ascii: bool,
    no_color: bool,
) -> None:
    """Plan and realize the topology, rolling back on failure."""
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    stack, order = _build(config_path)

    store = _open_state(state_path)
    provider = InMemoryProvider.load(account_path, fail_at=fail_at, fail_kinds=fail_kind)
    prior = refresh(store.resources(), provider, console=stderr)
    operations = plan_operations(stack, prior)
    _print_operations(operations)

    if all(op.op == OperationType.NOOP for op in operations):
        stderr.print("[green]Nothing to do.[/green]")
        sys.exit(0)

    engine = RealizationEngine(provider, timeout=timeout, max_workers=workers, console=stderr)
    store.start_deployment(stack.name)
    outputs: Dict[str, str] = {}
    failed = False
    try:
        with stderr.status(f"[bold]Realizing {len(order)} resources…"):
            realized = engine.realize(order, operations, prior)
        outputs = export_outputs(realized, stack.bindings())
        store.record(realized, outputs)
    except ProvisioningCallError as exc:
        failed = True
        _print_failure(exc.report)
        store.mark_failed(str(exc), engine.survivors(prior))
        realized = engine.realized
    except ClusterStackError as exc:
        failed = True
        stderr.print(f"[red]Error:[/red] {exc}")
        store.mark_failed(str(exc))
        realized = engine.realized
    finally:
        provider.save(account_path)

    if outputs:
        _print_outputs(outputs)

    if output_format:
        fmt = output_format.lower()
        if fmt == "json":
            content = json_reporter.build_report(stack, realized, outputs, engine.report, operations)
        else:
            content = markdown.build_report(stack, realized, outputs, engine.report, operations, ascii_mode=ascii)
        _write(content, output)

    sys.exit(1 if failed else 0)


@cli.command()
@_config_option
@_state_option
@_account_option
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
def destroy(config_path: Optional[str], state_path: str, account_path: str, yes: bool) -> None:
    """Delete every recorded resource, dependents first."""
    _, order = _build(config_path)
    store = _open_state(state_path)
    recorded = store.resources()
    if not recorded:
        console.print("[dim]No recorded resources.[/dim]")
        sys.exit(0)
    if not yes:
        click.confirm(f"Delete {len(recorded)} resource(s)?", abort=True)

    provider = InMemoryProvider.load(account_path)
    engine = RealizationEngine(provider, console=console)
    report = engine.destroy(order, recorded)
    provider.save(account_path)
    _print_statuses(report.statuses)

    if report.rollback_failed:
        remaining = {node_id: recorded[node_id] for node_id in report.rollback_failed}
        store.mark_failed("destroy incomplete", remaining)
        console.print("[red]Manual cleanup required for:[/red] " + ", ".join(report.rollback_failed))
        sys.exit(1)
    store.clear()
    sys.exit(0)


@cli.command()
@_state_option
@click.option("--json", "as_json", is_flag=True, default=False, help="Print outputs as JSON.")
def outputs(state_path: str, as_json: bool) -> None:
    """Print the exported outputs of the last successful run."""
    values = _open_state(state_path).outputs()
    if not values:
        console.print("[yellow]No outputs recorded; run `clusterstack up` first.[/yellow]")
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(values, indent=2))
    else:
        for name, value in values.items():
            click.echo(f"{name}\t{value}")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
