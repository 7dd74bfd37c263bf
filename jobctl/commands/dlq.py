"""Dead-letter Commands - Inspect terminally failed jobs"""

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobCoreClient, JobCoreError
from ..utils.formatting import (
    create_dead_letters_table,
    display_dead_letter,
    print_error,
    print_info,
)

console = Console()
app = typer.Typer(name="dlq", help="Dead-letter inspection commands")


@app.command("list")
def list_dead_letters(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-l", help="Number of records to show"),
):
    """📋 List the most recent dead-lettered jobs"""
    try:
        with JobCoreClient(ctx.obj.get("api_url")) as client:
            print_info(f"Fetching dead letters (limit: {limit})")
            data = client.list_dead_letters(limit=limit)

            records = data.get("dead_letters", [])
            total = data.get("total", len(records))

            if not records:
                console.print(
                    Panel(
                        "📭 [green]No dead letters![/green]",
                        title="Empty Results",
                        border_style="green",
                    )
                )
                return

            console.print(create_dead_letters_table(records))
            console.print(
                f"\n📊 Showing [cyan]{len(records)}[/cyan] of [yellow]{total}[/yellow] dead letters"
            )

    except JobCoreError as e:
        print_error(f"Failed to list dead letters: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_dead_letter(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job ID to show"),
):
    """🔍 Show the full dead-letter record of a job"""
    try:
        with JobCoreClient(ctx.obj.get("api_url")) as client:
            record = client.get_dead_letter(job_id)
            display_dead_letter(record)

    except JobCoreError as e:
        print_error(f"Failed to get dead letter: {e}")
        raise typer.Exit(1) from None
