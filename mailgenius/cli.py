"""Command-line interface for the MailGenius send queue.

The commands operate on the database directly, without going through the
HTTP API, so they work while the server is down.

Usage:
    mailgenius serve --port 8000
    mailgenius campaigns add spring-sale --workspace acme --subject "Hi {{name}}" --html body.html --from news@acme.io
    mailgenius campaigns send spring-sale
    mailgenius leads add lead-1 --workspace acme --email ada@example.com --name Ada
    mailgenius jobs list --status failed
    mailgenius jobs retry <job-id>
    mailgenius progress show <job-id>
    mailgenius retry-sweep
    mailgenius rate-limit reset acme
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .service import MailGeniusService

console = Console()
err_console = Console(stderr=True)


def get_service(db_path: Optional[str]) -> MailGeniusService:
    """Build a service bound to ``db_path`` without starting its workers."""
    settings = load_settings()
    overrides: Dict[str, Any] = {"test_mode": True}
    if db_path:
        overrides["db_path"] = db_path
    return MailGeniusService.from_settings(settings, **overrides)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def execute(ctx: click.Context, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Run one service command; exit with status 1 when it is rejected."""
    service = get_service(ctx.obj.get("db_path"))

    async def _run():
        await service.init()
        try:
            return await service.handle_command(cmd, payload or {})
        finally:
            close = getattr(service.sender, "close", None)
            if close is not None:
                await close()

    result = run_async(_run())
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    return result


def _fmt_ts(value: Any) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(float(value), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.version_option(package_name="mailgenius")
@click.option("--db", "db_path", envvar="MG_DB_PATH", default=None, help="SQLite database path.")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str]) -> None:
    """MailGenius campaign send queue."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: 0.0.0.0).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: 8000).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API together with the worker pool."""
    from .server import configure_logging, serve as run_server

    settings = load_settings()
    if ctx.obj.get("db_path"):
        settings["db_path"] = ctx.obj["db_path"]
    if host:
        settings["http_host"] = host
    if port:
        settings["http_port"] = port
    configure_logging(str(settings.get("log_level") or "INFO"))
    console.print("\n[bold cyan]Starting MailGenius[/bold cyan]")
    console.print(f"  DB:      {settings['db_path']}")
    console.print(f"  Listen:  {settings['http_host']}:{settings['http_port']}")
    console.print()
    run_server(settings)


# ============================================================================
# Campaigns
# ============================================================================

@main.group("campaigns")
def campaigns() -> None:
    """Manage campaigns."""


@campaigns.command("add")
@click.argument("campaign_id")
@click.option("--workspace", "-w", "workspace_id", required=True, help="Workspace owning the campaign.")
@click.option("--subject", "-s", required=True, help="Subject template.")
@click.option("--html", "html_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="File with the HTML body template.")
@click.option("--text", "text_path", type=click.Path(exists=True, dir_okay=False), help="File with the text body.")
@click.option("--from", "from_email", required=True, help="Sender address.")
@click.option("--reply-to", help="Reply-To address.")
@click.option("--name", "-n", help="Human-readable campaign name.")
@click.option("--segment", help="Segment conditions as JSON.")
@click.option("--scheduled-at", type=float, help="Unix timestamp for a scheduled send.")
@click.pass_context
def campaigns_add(
    ctx: click.Context,
    campaign_id: str,
    workspace_id: str,
    subject: str,
    html_path: str,
    text_path: Optional[str],
    from_email: str,
    reply_to: Optional[str],
    name: Optional[str],
    segment: Optional[str],
    scheduled_at: Optional[float],
) -> None:
    """Create or replace a campaign."""
    payload: Dict[str, Any] = {
        "id": campaign_id,
        "workspace_id": workspace_id,
        "name": name,
        "subject": subject,
        "html_content": Path(html_path).read_text(),
        "text_content": Path(text_path).read_text() if text_path else None,
        "from_email": from_email,
        "reply_to": reply_to,
        "scheduled_at": scheduled_at,
    }
    if segment:
        try:
            payload["segment"] = json.loads(segment)
        except json.JSONDecodeError as exc:
            print_error(f"Invalid segment JSON: {exc}")
            sys.exit(1)
    result = execute(ctx, "addCampaign", payload)
    print_success(f"Campaign '{campaign_id}' saved ({result['campaign']['status']}).")


@campaigns.command("list")
@click.option("--workspace", "-w", "workspace_id", help="Only campaigns of this workspace.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def campaigns_list(ctx: click.Context, workspace_id: Optional[str], as_json: bool) -> None:
    """List campaigns."""
    items = execute(ctx, "listCampaigns", {"workspace_id": workspace_id})["campaigns"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No campaigns found.[/dim]")
        return
    table = Table(title="Campaigns")
    table.add_column("ID", style="cyan")
    table.add_column("Workspace")
    table.add_column("Status")
    table.add_column("Recipients", justify="right")
    table.add_column("Job")
    for c in items:
        table.add_row(c["id"], c["workspace_id"], c["status"], str(c.get("total_recipients") or 0), c.get("job_id") or "-")
    console.print(table)


@campaigns.command("send")
@click.argument("campaign_id")
@click.option("--batch-size", type=int, help="Recipients per batch.")
@click.option("--priority", type=int, help="Job priority (higher is sooner).")
@click.option("--max-retries", type=int, help="Retries per failed recipient.")
@click.pass_context
def campaigns_send(
    ctx: click.Context,
    campaign_id: str,
    batch_size: Optional[int],
    priority: Optional[int],
    max_retries: Optional[int],
) -> None:
    """Queue a campaign for sending."""
    payload = {"campaign_id": campaign_id, "batch_size": batch_size, "priority": priority, "max_retries": max_retries}
    result = execute(ctx, "sendCampaign", {k: v for k, v in payload.items() if v is not None})
    print_success(f"Campaign '{campaign_id}' queued as job {result['job_id']} ({result['total_recipients']} recipients).")


# ============================================================================
# Leads
# ============================================================================

@main.group("leads")
def leads() -> None:
    """Manage leads."""


@leads.command("add")
@click.argument("lead_id")
@click.option("--workspace", "-w", "workspace_id", required=True, help="Workspace owning the lead.")
@click.option("--email", "-e", required=True, help="Lead email address.")
@click.option("--name", "-n", help="Lead name.")
@click.option("--company", help="Company.")
@click.option("--position", help="Job position.")
@click.option("--phone", help="Phone number.")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable).")
@click.option("--field", "fields", multiple=True, help="Custom field as key=value (repeatable).")
@click.option("--inactive", is_flag=True, help="Create the lead as inactive.")
@click.pass_context
def leads_add(
    ctx: click.Context,
    lead_id: str,
    workspace_id: str,
    email: str,
    name: Optional[str],
    company: Optional[str],
    position: Optional[str],
    phone: Optional[str],
    tags: tuple,
    fields: tuple,
    inactive: bool,
) -> None:
    """Create or replace a lead."""
    custom_fields: Dict[str, str] = {}
    for item in fields:
        if "=" not in item:
            print_error(f"Invalid custom field '{item}', expected key=value")
            sys.exit(1)
        key, value = item.split("=", 1)
        custom_fields[key.strip()] = value
    execute(
        ctx,
        "addLead",
        {
            "id": lead_id,
            "workspace_id": workspace_id,
            "email": email,
            "name": name,
            "company": company,
            "position": position,
            "phone": phone,
            "status": "inactive" if inactive else "active",
            "tags": list(tags),
            "custom_fields": custom_fields,
        },
    )
    print_success(f"Lead '{lead_id}' saved.")


@leads.command("list")
@click.option("--workspace", "-w", "workspace_id", required=True, help="Workspace to list.")
@click.option("--all", "include_all", is_flag=True, help="Include inactive leads.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def leads_list(ctx: click.Context, workspace_id: str, include_all: bool, as_json: bool) -> None:
    """List the leads of a workspace."""
    items = execute(ctx, "listLeads", {"workspace_id": workspace_id, "status": None if include_all else "active"})["leads"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No leads found.[/dim]")
        return
    table = Table(title=f"Leads of {workspace_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Tags")
    for lead in items:
        table.add_row(
            lead["id"], lead["email"], lead.get("name") or "-", lead["status"], ", ".join(lead.get("tags") or []) or "-"
        )
    console.print(table)


# ============================================================================
# Jobs
# ============================================================================

@main.group("jobs")
def jobs() -> None:
    """Inspect and operate send jobs."""


@jobs.command("list")
@click.option("--workspace", "-w", "workspace_id", help="Only jobs of this workspace.")
@click.option("--status", "-s", "job_status", help="Only jobs in this status.")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs_list(ctx: click.Context, workspace_id: Optional[str], job_status: Optional[str], limit: int, as_json: bool) -> None:
    """List jobs, most recent first."""
    items = execute(ctx, "listJobs", {"workspace_id": workspace_id, "status": job_status, "limit": limit})["jobs"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No jobs found.[/dim]")
        return
    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Workspace")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Created")
    for job in items:
        table.add_row(
            job["id"],
            job["workspace_id"],
            job["status"],
            str(job["priority"]),
            str(job["processed_count"]),
            str(job["failed_count"]),
            str(job["total_recipients"]),
            _fmt_ts(job.get("created_at")),
        )
    console.print(table)


@jobs.command("show")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs_show(ctx: click.Context, job_id: str, as_json: bool) -> None:
    """Show a job with its batches."""
    result = execute(ctx, "getJob", {"id": job_id})
    if as_json:
        print_json({k: result[k] for k in ("job", "batches", "progress")})
        return
    job = result["job"]
    console.print(f"\n[bold cyan]Job: {job_id}[/bold cyan]\n")
    console.print(f"  Workspace:  {job['workspace_id']}")
    console.print(f"  Campaign:   {job.get('campaign_id') or '-'}")
    console.print(f"  Status:     {job['status']}")
    console.print(f"  Sent:       {job['processed_count']}/{job['total_recipients']}")
    console.print(f"  Failed:     {job['failed_count']}")
    console.print(f"  Retries:    {job['retry_count']}")
    console.print(f"  Error:      {job.get('error_message') or '-'}")
    table = Table(title="Batches")
    table.add_column("#", justify="right")
    table.add_column("Range")
    table.add_column("Status")
    table.add_column("Valid", justify="right")
    table.add_column("Invalid", justify="right")
    for batch in result["batches"]:
        table.add_row(
            str(batch["batch_index"]),
            f"[{batch['start_record']}, {batch['end_record']})",
            batch["status"],
            str(batch["valid_count"]),
            str(batch["invalid_count"]),
        )
    console.print(table)


@jobs.command("cancel")
@click.argument("job_id")
@click.pass_context
def jobs_cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a job at its next batch boundary."""
    execute(ctx, "cancelJob", {"id": job_id})
    print_success(f"Job {job_id} cancelled.")


@jobs.command("retry")
@click.argument("job_id")
@click.pass_context
def jobs_retry(ctx: click.Context, job_id: str) -> None:
    """Queue the failed recipients of a failed job as a new job."""
    result = execute(ctx, "retryJob", {"id": job_id})
    print_success(f"Job {job_id} retried as {result['job_id']}.")


# ============================================================================
# Progress, maintenance, rate limits, workers
# ============================================================================

@main.group("progress")
def progress() -> None:
    """Inspect progress records."""


@progress.command("show")
@click.argument("progress_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def progress_show(ctx: click.Context, progress_id: str, as_json: bool) -> None:
    """Show one progress record."""
    record = execute(ctx, "getProgress", {"id": progress_id})["progress"]
    if as_json:
        print_json(record)
        return
    console.print(f"\n[bold cyan]Progress: {progress_id}[/bold cyan]\n")
    console.print(f"  Type:       {record['type']}")
    console.print(f"  Status:     {record['status']}")
    console.print(f"  Progress:   {record['progress']}%")
    console.print(f"  Processed:  {record['processed_items']}")
    console.print(f"  Failed:     {record['failed_items']}")
    console.print(f"  Total:      {record['total_items']}")
    console.print(f"  Message:    {record.get('message') or '-'}")
    console.print()


@main.command("retry-sweep")
@click.pass_context
def retry_sweep(ctx: click.Context) -> None:
    """Execute the retry entries that are due."""
    result = execute(ctx, "retrySweep")
    print_success(
        f"Processed {result['processed']} retries: {result['succeeded']} succeeded, "
        f"{result['rescheduled']} rescheduled, {result['exhausted']} exhausted, {result['deferred']} deferred."
    )


@main.command("cleanup")
@click.option("--days", type=int, help="Retention in days for finished jobs and retries.")
@click.pass_context
def cleanup(ctx: click.Context, days: Optional[int]) -> None:
    """Apply retention and expire progress records and rate-limit windows."""
    removed = execute(ctx, "clean", {"days": days} if days is not None else {})["removed"]
    print_success(", ".join(f"{key}: {value}" for key, value in removed.items()))


@main.group("rate-limit")
def rate_limit() -> None:
    """Inspect and reset rate-limit windows."""


@rate_limit.command("status")
@click.argument("identifier")
@click.option("--resource", "-r", help="Resource key (default: email-sending).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def rate_limit_status(ctx: click.Context, identifier: str, resource: Optional[str], as_json: bool) -> None:
    """Show the current window for an identifier."""
    result = execute(ctx, "rateLimitStatus", {"identifier": identifier, "resource": resource})
    result.pop("ok", None)
    if as_json:
        print_json(result)
        return
    console.print(f"\n[bold]{identifier}[/bold] on '{result['resource']}'")
    console.print(f"  Used:       {result['count']}/{result['limit']}")
    console.print(f"  Remaining:  {result['remaining']}")
    console.print(f"  Resets at:  {_fmt_ts(result.get('reset_time'))}")
    console.print()


@rate_limit.command("reset")
@click.argument("identifier")
@click.option("--resource", "-r", help="Resource key (default: email-sending).")
@click.pass_context
def rate_limit_reset(ctx: click.Context, identifier: str, resource: Optional[str]) -> None:
    """Clear a rate-limit window early."""
    result = execute(ctx, "resetRateLimit", {"identifier": identifier, "resource": resource})
    if result["reset"]:
        print_success(f"Rate limit for '{identifier}' reset.")
    else:
        console.print(f"[dim]No active window for '{identifier}'.[/dim]")


@main.group("workers")
def workers() -> None:
    """Inspect the worker registry."""


@workers.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def workers_list(ctx: click.Context, as_json: bool) -> None:
    """List registered workers."""
    items = execute(ctx, "listWorkers")["workers"]
    if as_json:
        print_json(items)
        return
    if not items:
        console.print("[dim]No workers registered.[/dim]")
        return
    table = Table(title="Workers")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Job")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Heartbeat")
    for w in items:
        table.add_row(
            w["id"],
            w["status"],
            w.get("current_job_id") or "-",
            str(w["emails_sent"]),
            str(w["emails_failed"]),
            _fmt_ts(w.get("last_heartbeat")),
        )
    console.print(table)


@workers.command("health")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def workers_health(ctx: click.Context, as_json: bool) -> None:
    """Show worker health and active alerts."""
    result = execute(ctx, "workerHealth")
    if as_json:
        print_json(result)
        return
    table = Table(title="Worker health")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Healthy")
    table.add_column("Failure streak", justify="right")
    table.add_column("Heartbeat")
    for w in result["workers"]:
        table.add_row(
            w["id"],
            w["status"],
            "[green]yes[/green]" if w["healthy"] else "[red]no[/red]",
            str(w["consecutive_failures"]),
            _fmt_ts(w.get("last_heartbeat")),
        )
    console.print(table)
    if not result["alerts"]:
        print_success("No alerts.")
    for alert in result["alerts"]:
        color = "red" if alert["severity"] == "high" else "yellow"
        console.print(f"[{color}]{alert['severity']}[/{color}] {alert['type']}: {alert['message']}")


if __name__ == "__main__":
    main()
