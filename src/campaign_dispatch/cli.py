# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for campaign-dispatch.

Operates directly on the configured database, without going through the
HTTP API. ``run-due-jobs`` is meant to be called by cron or any other
external scheduler.

Usage:
    campaign-dispatch run-due-jobs --max-jobs 5 --budget-ms 55000
    campaign-dispatch enqueue <org_id> <campaign_id>
    campaign-dispatch retry <org_id> <campaign_id>
    campaign-dispatch cancel <org_id> <campaign_id>
    campaign-dispatch stats <campaign_id>
    campaign-dispatch domains <org_id>
    campaign-dispatch suppress <org_id> user@example.com --reason manual
    campaign-dispatch unsuppress <org_id> user@example.com
    campaign-dispatch suppressions <org_id>
    campaign-dispatch serve --port 8000

Example:
    $ CDS_DB_PATH=/data/dispatch.db campaign-dispatch run-due-jobs --json
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from .config_loader import DispatchConfig, load_config
from .core import CampaignDispatcher
from .errors import DispatchError
from .logger import configure_logging
from .models import SuppressionReason

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def _fmt_ts(value: int | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(int(value), timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _with_dispatcher(
    config: DispatchConfig, action: Callable[[CampaignDispatcher], Awaitable[T]]
) -> T:
    """Open the database, run ``action`` and close everything again.

    A :class:`DispatchError` is reported on stderr and exits with status 1.
    """

    async def _run() -> T:
        dispatcher = CampaignDispatcher(config)
        await dispatcher.init()
        try:
            return await action(dispatcher)
        finally:
            await dispatcher.close()

    try:
        return run_async(_run())
    except DispatchError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option(
    "--config", "-c", "config_path", default=None,
    help="INI configuration file (default: $CDS_CONFIG or config.ini).",
)
@click.option("--db", "db_path", default=None, help="Database path or DSN, overrides configuration.")
@click.version_option(package_name="campaign-dispatch")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None) -> None:
    """Campaign delivery queue: send, retry and inspect email campaigns."""
    config = load_config(config_path)
    if db_path:
        config.db_path = db_path
    configure_logging(config.log_level)
    ctx.obj = config


@main.command("run-due-jobs")
@click.option("--max-jobs", type=int, default=None, help="Jobs to claim (default from configuration).")
@click.option("--budget-ms", type=int, default=None, help="Wall-clock budget in milliseconds.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def run_due_jobs(config: DispatchConfig, max_jobs: int | None, budget_ms: int | None, as_json: bool) -> None:
    """Process due campaign jobs within one time budget."""
    summary = _with_dispatcher(config, lambda d: d.run_due_jobs(max_jobs, budget_ms))
    if as_json:
        print_json(summary.as_dict())
        return
    print_success(
        f"{summary.processed} job(s): {summary.completed} completed, {summary.partial} partial, "
        f"{summary.sent}/{summary.attempted} sent"
    )
    if summary.errors:
        print_error(f"{summary.errors} job(s) hit unexpected errors; see logs")


@main.command("enqueue")
@click.argument("org_id")
@click.argument("campaign_id")
@click.option("--run-at", type=int, default=None, help="Epoch seconds of the earliest send.")
@click.pass_obj
def enqueue(config: DispatchConfig, org_id: str, campaign_id: str, run_at: int | None) -> None:
    """Snapshot a campaign's recipients and queue it for sending."""
    job = _with_dispatcher(config, lambda d: d.enqueue_campaign(org_id, campaign_id, run_at))
    print_success(f"Campaign {campaign_id} queued as job {job['id']} (run at {_fmt_ts(job['run_at'])})")


@main.command("retry")
@click.argument("org_id")
@click.argument("campaign_id")
@click.pass_obj
def retry(config: DispatchConfig, org_id: str, campaign_id: str) -> None:
    """Send again to recipients that failed permanently."""
    result = _with_dispatcher(config, lambda d: d.retry_failed(org_id, campaign_id))
    if not result["reset"]:
        console.print("[yellow]No failed recipients to retry[/yellow]")
        return
    print_success(f"{result['reset']} recipient(s) requeued on job {result['job_id']}")


@main.command("pause")
@click.argument("org_id")
@click.argument("campaign_id")
@click.pass_obj
def pause(config: DispatchConfig, org_id: str, campaign_id: str) -> None:
    """Pause a scheduled or sending campaign."""
    _with_dispatcher(config, lambda d: d.pause_campaign(org_id, campaign_id))
    print_success(f"Campaign {campaign_id} paused")


@main.command("resume")
@click.argument("org_id")
@click.argument("campaign_id")
@click.pass_obj
def resume(config: DispatchConfig, org_id: str, campaign_id: str) -> None:
    """Resume a paused campaign."""
    _with_dispatcher(config, lambda d: d.resume_campaign(org_id, campaign_id))
    print_success(f"Campaign {campaign_id} resumed")


@main.command("cancel")
@click.argument("org_id")
@click.argument("campaign_id")
@click.pass_obj
def cancel(config: DispatchConfig, org_id: str, campaign_id: str) -> None:
    """Cancel a campaign; a running job stops at its next batch."""
    result = _with_dispatcher(config, lambda d: d.cancel_campaign(org_id, campaign_id))
    print_success(f"Campaign {campaign_id} cancelled ({result['jobs_cancelled']} queued job(s))")


@main.command("stats")
@click.argument("campaign_id")
@click.option("--org", "org_id", default=None, help="Restrict to this tenant.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def stats(config: DispatchConfig, campaign_id: str, org_id: str | None, as_json: bool) -> None:
    """Show delivery counts for one campaign."""
    data = _with_dispatcher(config, lambda d: d.aggregates.campaign_stats(campaign_id, org_id))
    if as_json:
        print_json(data)
        return

    table = Table(title=f"Campaign {campaign_id} ({data['status']})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in (
        "total", "sent", "pending", "failed", "bounced", "invalid_mx", "awaiting_retry",
        "unique_opens", "unique_clicks",
    ):
        table.add_row(key, str(data[key]))
    for key in ("delivery_rate", "bounce_rate", "open_rate", "click_rate"):
        table.add_row(key.replace("_", " "), f"{data[key]:.1%}")
    table.add_row("next retry", _fmt_ts(data["next_retry_at"]))
    for category, count in data["failure_categories"].items():
        table.add_row(f"failed: {category}", str(count))
    console.print(table)


@main.command("domains")
@click.argument("org_id")
@click.option("--min-recipients", type=int, default=3, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def domains(config: DispatchConfig, org_id: str, min_recipients: int, as_json: bool) -> None:
    """Show per-domain deliverability for a tenant."""
    rows = _with_dispatcher(config, lambda d: d.aggregates.domain_health(org_id, min_recipients))
    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print("[yellow]No domains with enough recipients[/yellow]")
        return

    table = Table(title=f"Domain health (org: {org_id})")
    table.add_column("Domain", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Bounced", justify="right")
    table.add_column("No MX", justify="right")
    table.add_column("Bounce rate", justify="right")
    for row in rows:
        rate = row["bounce_rate"]
        style = "red" if rate >= 0.05 else "green"
        table.add_row(
            row["domain"],
            str(row["total"]),
            str(row["sent"]),
            str(row["failed"]),
            str(row["bounced"]),
            str(row["invalid_mx"]),
            f"[{style}]{rate:.1%}[/{style}]",
        )
    console.print(table)


@main.command("suppress")
@click.argument("org_id")
@click.argument("email")
@click.option(
    "--reason",
    type=click.Choice([r.value for r in SuppressionReason]),
    default=SuppressionReason.MANUAL.value,
    show_default=True,
)
@click.pass_obj
def suppress(config: DispatchConfig, org_id: str, email: str, reason: str) -> None:
    """Add an address to a tenant's suppression ledger."""
    added = _with_dispatcher(config, lambda d: d.ledger.suppress(org_id, email, reason))
    if added:
        print_success(f"{email} suppressed ({reason})")
    else:
        console.print(f"[yellow]{email} was already suppressed[/yellow]")


@main.command("unsuppress")
@click.argument("org_id")
@click.argument("email")
@click.pass_obj
def unsuppress(config: DispatchConfig, org_id: str, email: str) -> None:
    """Remove an address from a tenant's suppression ledger."""
    removed = _with_dispatcher(config, lambda d: d.ledger.remove(org_id, email))
    if not removed:
        print_error(f"{email} is not suppressed")
        sys.exit(1)
    print_success(f"{email} removed from suppressions")


@main.command("suppressions")
@click.argument("org_id")
@click.option("--reason", type=click.Choice([r.value for r in SuppressionReason]), default=None)
@click.option("--limit", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def suppressions(
    config: DispatchConfig, org_id: str, reason: str | None, limit: int | None, as_json: bool
) -> None:
    """List a tenant's suppressed addresses."""
    entries = _with_dispatcher(config, lambda d: d.ledger.list_entries(org_id, reason, limit))
    if as_json:
        print_json(entries)
        return
    if not entries:
        console.print("[yellow]No suppressed addresses[/yellow]")
        return

    table = Table(title=f"Suppressions (org: {org_id})")
    table.add_column("Email", style="cyan")
    table.add_column("Reason")
    table.add_column("Campaign")
    table.add_column("Since")
    for entry in entries:
        table.add_row(
            entry["email"],
            entry["reason"],
            entry.get("source_campaign_id") or "-",
            _fmt_ts(entry.get("created_at")),
        )
    console.print(table)


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from configuration).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from configuration).")
@click.pass_obj
def serve(config: DispatchConfig, host: str | None, port: int | None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .server import build_app

    uvicorn.run(
        build_app(config),
        host=host or config.host,
        port=port or config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
