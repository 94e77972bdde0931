"""Typer CLI entrypoint for so-relay."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Event
from typing import Iterable, List, Optional, Sequence

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, QueryKind, RelayConfig, WatchedAccount
from .engine import (
    AccountDirectory,
    Delivery,
    FanoutHub,
    NotificationStore,
    PollWorkerPool,
    StackExchangeClient,
)
from .engine.dedup import Notification
from .infra import SQLiteManager
from .logging_conf import available_account_logs, configure_logging, tail_log
from .orchestrator import CycleReport, PollScheduler
from .scheduler import APSchedulerAdapter, AccountState

app = typer.Typer(
    help="so-relay: Stack Overflow notification relay",
    no_args_is_help=True,
    rich_markup_mode=None,
)
account_app = typer.Typer(
    name="account",
    help="Watched account commands",
    no_args_is_help=True,
    rich_markup_mode=None,
)
log_app = typer.Typer(
    name="log",
    help="Log inspection commands",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    config: RelayConfig
    storage: SQLiteManager
    accounts: AccountDirectory
    hub: FanoutHub
    relay: PollScheduler


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    config = repository.load_relay_config()
    storage = SQLiteManager()
    db_path = repository.database_path()

    accounts = AccountDirectory(storage, db_path)
    store = NotificationStore(storage, db_path)
    source = StackExchangeClient(
        config.stack_exchange,
        default_retry_after=config.backoff_cap_ms / 1000.0,
    )
    hub = FanoutHub(queue_depth=config.queue_depth)
    relay = PollScheduler(
        config=config,
        accounts=accounts,
        source=source,
        store=store,
        hub=hub,
        pool=PollWorkerPool(config.worker_count),
        scheduler=APSchedulerAdapter(),
    )
    return AppState(
        repository=repository,
        config=config,
        storage=storage,
        accounts=accounts,
        hub=hub,
        relay=relay,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _render_reports_table(reports: Sequence[CycleReport]) -> Table:
    table = Table(title=f"Poll cycle · {len(reports)} account(s)", box=box.SIMPLE_HEAD)
    table.add_column("Account", style="cyan", no_wrap=True)
    table.add_column("Outcome", style="magenta")
    table.add_column("Fetched", justify="right")
    table.add_column("New", style="green", justify="right")
    table.add_column("Seen", style="dim", justify="right")
    table.add_column("Retry in", style="yellow", justify="right")
    for report in reports:
        table.add_row(
            str(report.account_id),
            report.outcome,
            str(report.fetched),
            str(report.created),
            str(report.duplicates),
            f"{report.retry_in:.1f}s" if report.retry_in is not None else "-",
        )
    return table


def _render_accounts_table(accounts: Sequence[WatchedAccount]) -> Table:
    table = Table(title=f"Watched accounts · {len(accounts)}", box=box.SIMPLE_HEAD)
    table.add_column("Account", style="cyan", no_wrap=True)
    table.add_column("Feed", style="magenta")
    table.add_column("Token", style="dim")
    for account in accounts:
        token = account.query.access_token
        masked = f"{token[:4]}…" if len(token) > 4 else "****"
        table.add_row(str(account.account_id), account.query.kind.value, masked)
    return table


def _render_states_table(states: Iterable[AccountState]) -> Table:
    table = Table(title="Schedule state", box=box.SIMPLE_HEAD)
    table.add_column("Account", style="cyan", no_wrap=True)
    table.add_column("Phase", style="magenta")
    table.add_column("Source failures", justify="right")
    table.add_column("Store escalations", justify="right")
    for state in states:
        table.add_row(
            str(state.account_id),
            state.phase.value,
            str(state.failures),
            str(state.escalations),
        )
    return table


def _render_history_table(account_id: int, rows: Sequence[Notification]) -> Table:
    table = Table(title=f"{account_id} · latest {len(rows)} notification(s)", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Created", style="green")
    table.add_column("Text", overflow="fold")
    for row in rows:
        table.add_row(str(row.id), row.created_at, row.text)
    return table


def _print_delivery(delivery: Delivery) -> None:
    notification = delivery.notification
    if delivery.resync_required:
        console.print(
            f"[{notification.account_id}] missed deliveries, re-read `so-relay history`",
            style="yellow",
        )
    console.print(f"[{notification.account_id}] #{notification.id} {notification.text}")


app.add_typer(account_app, name="account", help="List or register watched accounts")
app.add_typer(log_app, name="log", help="Inspect log files")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging")
) -> None:
    ctx.obj = build_state(verbose)


@app.command("run", help="Poll every watched account on the configured cadence until interrupted.")
def run(
    ctx: typer.Context,
    watch: Optional[List[int]] = typer.Option(
        None, "--watch", help="Print live notifications for this account id (repeatable)."
    ),
) -> None:
    state = _get_state(ctx)
    for account_id in watch or []:
        state.hub.subscribe(account_id, sink=_print_delivery)
    state.relay.start()
    state.relay.tick()
    console.print(
        f"Relay running every {state.config.cadence_seconds:g}s with "
        f"{state.config.worker_count} worker(s). Ctrl-C to stop.",
        style="green",
    )
    stop = Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        console.print("Shutting down…", style="dim")
    finally:
        drained = state.relay.shutdown()
        state.storage.close_all()
    if not drained:
        console.print("Some poll cycles did not finish before the shutdown timeout.", style="yellow")


@app.command("poll", help="Run one poll cycle for every due account and report the results.")
def poll(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    try:
        reports = state.relay.run_once(timeout=state.config.shutdown_timeout_seconds)
    finally:
        state.relay.shutdown(timeout=0)
    if not reports:
        console.print("No watched accounts were due.", style="dim")
        return
    console.print(_render_reports_table(reports))
    if any(report.outcome == "store_escalated" for report in reports):
        raise typer.Exit(code=1)


@app.command(
    "health",
    help=(
        "Run one real poll cycle for every due account (stores new notifications and "
        "uses API quota), then exit 1 when the relay is unhealthy."
    ),
)
def health(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    try:
        state.relay.run_once(timeout=state.config.shutdown_timeout_seconds)
    finally:
        state.relay.shutdown(timeout=0)
    states = state.relay.registry.snapshot()
    if states:
        console.print(_render_states_table(states))
    if not state.relay.healthy():
        console.print("unhealthy: the store keeps failing for every account", style="red")
        raise typer.Exit(code=1)
    console.print("healthy", style="green")


@app.command("history", help="Show stored notifications for an account.")
def history(
    ctx: typer.Context,
    account_id: int = typer.Argument(..., help="Stack Overflow account id."),
    limit: int = typer.Option(20, "--limit", help="Number of rows to show."),
    after: Optional[int] = typer.Option(None, "--after", help="Only rows with an id above this one."),
) -> None:
    state = _get_state(ctx)
    rows = state.relay.view_history(account_id, limit=limit, after_id=after)
    if not rows:
        console.print("No notifications stored.", style="dim")
        return
    console.print(_render_history_table(account_id, rows))


@account_app.command("list", help="List watched accounts and any rows that were rejected.")
def account_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    listing = state.accounts.scan()
    if not listing.accounts and not listing.rejected:
        console.print("No watched accounts; add one with `so-relay account add`.", style="yellow")
        raise typer.Exit(code=0)
    if listing.accounts:
        console.print(_render_accounts_table(listing.accounts))
    for account_id, reason in listing.rejected:
        console.print(f"skipped {account_id}: {reason}", style="red")


@account_app.command("add", help="Register an account locally (normally done by the OAuth flow).")
def account_add(
    ctx: typer.Context,
    account_id: int = typer.Argument(..., help="Stack Overflow account id."),
    token: str = typer.Option(..., "--token", help="OAuth access token with read_inbox scope."),
    kind: QueryKind = typer.Option(QueryKind.NOTIFICATIONS, "--kind", help="Feed to watch."),
) -> None:
    state = _get_state(ctx)
    try:
        account = state.accounts.register(account_id, token, kind)
    except ValueError as exc:
        console.print(f"Invalid registration: {exc}", style="red")
        raise typer.Exit(code=1)
    console.print(
        f"Account {account.account_id} now watches {account.query.kind.value}.", style="green"
    )


@log_app.command("list", help="List per-account log files.")
def log_list() -> None:
    logs = list(available_account_logs())
    if not logs:
        console.print("No account logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("show", help="Show the tail of the relay log or of one account's log.")
def log_show(
    ctx: typer.Context,
    account_id: Optional[int] = typer.Option(None, "--account", help="Account id (default: relay log)."),
    tail: int = typer.Option(100, "--tail", help="Number of lines."),
) -> None:
    state = _get_state(ctx)
    logs_dir = state.repository.locator.logs_dir
    if account_id is not None:
        path = logs_dir / "accounts" / f"{account_id}.log"
    else:
        path = logs_dir / "relay.log"
    lines = tail_log(path, tail)
    if not lines:
        console.print("Log is empty.", style="dim")
        return
    console.print(f"{path.name} · last {len(lines)} line(s)", style="cyan")
    console.print("".join(lines))


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
