"""Rich Formatting Utilities for CLI Output"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _rate_limit_label(rate_limit: dict[str, Any]) -> str:
    parts = []
    if rate_limit.get("max_concurrent_global"):
        parts.append(f"global {rate_limit['max_concurrent_global']}")
    if rate_limit.get("max_concurrent_per_owner"):
        parts.append(f"owner {rate_limit['max_concurrent_per_owner']}")
    return ", ".join(parts) or "-"


def create_job_types_table(job_types: list[dict[str, Any]]) -> Table:
    """Create a formatted table for registered job types"""
    table = Table(title="Job Types", box=box.ROUNDED)

    table.add_column("Type", justify="left", style="cyan", no_wrap=True)
    table.add_column("Queue", justify="left", style="magenta")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Retries", justify="right")
    table.add_column("Timeout", justify="right")
    table.add_column("Rate Limit", justify="left", style="green")
    table.add_column("Severity", justify="center")

    for definition in job_types:
        table.add_row(
            definition.get("type", ""),
            definition.get("queue") or "shared",
            definition.get("default_priority", ""),
            str(definition.get("max_retries", "")),
            f"{definition.get('timeout', 0):g}s",
            _rate_limit_label(definition.get("rate_limit", {})),
            definition.get("severity", ""),
        )

    return table


def create_queue_depth_table(queue_depths: dict[str, int]) -> Table:
    """Create formatted table for queue depths"""
    table = Table(title="Queues", box=box.ROUNDED)

    table.add_column("Queue", justify="left", style="cyan")
    table.add_column("Depth", justify="right", style="yellow")

    for queue, depth in sorted(queue_depths.items()):
        table.add_row(queue, str(depth))

    return table


def create_outcomes_table(outcomes: dict[str, dict[str, int]]) -> Table:
    """Create formatted table for per-type outcome counts"""
    table = Table(title="Outcomes", box=box.ROUNDED)

    columns = ["success", "failure", "retried", "dead_lettered", "rate_limited"]
    table.add_column("Type", justify="left", style="cyan")
    for column in columns:
        table.add_column(column.replace("_", " ").title(), justify="right")

    for job_type, counts in sorted(outcomes.items()):
        table.add_row(job_type, *(str(counts.get(c, 0)) for c in columns))

    return table


def create_dead_letters_table(records: list[dict[str, Any]]) -> Table:
    """Create formatted table for dead letters"""
    table = Table(title="Dead Letters", box=box.ROUNDED)

    table.add_column("Job ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Kind", justify="center", style="yellow")
    table.add_column("Retries", justify="right")
    table.add_column("Severity", justify="center")
    table.add_column("Failed At", justify="left")
    table.add_column("Error", justify="left", style="red")

    for record in records:
        error = record.get("final_error", "")
        table.add_row(
            str(record.get("job_id", ""))[:8],  # Short ID
            record.get("job_type", ""),
            record.get("error_kind", ""),
            f"{record.get('retry_count', 0)}/{record.get('max_retries', 0)}",
            record.get("severity", ""),
            record.get("failed_at", ""),
            error[:60] + "..." if len(error) > 60 else error,
        )

    return table


def display_dead_letter(record: dict[str, Any]):
    """Display one dead-letter record in full"""
    owner = record.get("owner_tenant_id") or "-"
    if record.get("owner_user_id"):
        owner = f"{owner}/{record['owner_user_id']}"

    console.print(
        Panel(
            f"• Job ID: [cyan]{record.get('job_id')}[/cyan]\n"
            f"• Type: [magenta]{record.get('job_type')}[/magenta]\n"
            f"• Priority: {record.get('priority')}\n"
            f"• Severity: [yellow]{record.get('severity')}[/yellow]\n"
            f"• Error kind: {record.get('error_kind')}\n"
            f"• Retries: {record.get('retry_count')}/{record.get('max_retries')}\n"
            f"• Owner: {owner}\n"
            f"• Origin queue: {record.get('origin_queue') or '-'}\n"
            f"• Created: {record.get('created_at')}\n"
            f"• Failed: {record.get('failed_at')}",
            title="Dead Letter",
            border_style="red",
        )
    )
    console.print(Panel(record.get("final_error", ""), title="Final Error", border_style="red"))
    console.print(
        Panel(json.dumps(record.get("payload", {}), indent=2), title="Payload")
    )
