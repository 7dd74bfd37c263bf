"""jobctl - Main Entry Point"""

import asyncio
import json
import signal

import typer
from rich.console import Console
from rich.panel import Panel

from jobcore.config.logging import setup_logging
from jobcore.config.settings import Settings, get_settings
from jobcore.v1.jobs.runtime import build_runtime

from .client.endpoints import JobCoreClient, JobCoreError, resolve_api_url
from .commands import dlq
from .utils.formatting import (
    create_job_types_table,
    create_outcomes_table,
    create_queue_depth_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()

# Create main Typer app
app = typer.Typer(
    name="jobctl",
    help="⚙️  jobctl - Job processing core operator CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(dlq.app, name="dlq")


@app.command()
def status(ctx: typer.Context):
    """📊 Check API, broker and worker status"""
    base_url = resolve_api_url(ctx.obj.get("api_url"))
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobCoreClient(base_url) as client:
            health = client.health_check()

            worker = health.get("worker") or {}
            broker = health.get("broker") or {}
            console.print(Panel(
                f"🚀 [green]Connected Successfully![/green]\n\n"
                f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
                f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
                f"• Broker: {'[green]up[/green]' if broker.get('connected') else '[red]down[/red]'}\n"
                f"• Workers running: {worker.get('running', False)}\n"
                f"• In flight: {worker.get('in_flight', 0)}\n"
                f"• API URL: [blue]{base_url}[/blue]",
                title="System Status",
                border_style="green" if health.get("ok") else "yellow",
            ))

    except JobCoreError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the jobcore API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"You can point jobctl elsewhere with:\n"
            f"[cyan]jobctl --api-url <url> status[/cyan]",
            title="Connection Error",
            border_style="red",
        ))
        raise typer.Exit(1) from None


@app.command()
def types(ctx: typer.Context):
    """📚 List registered job types"""
    try:
        with JobCoreClient(ctx.obj.get("api_url")) as client:
            data = client.job_types()
            console.print(create_job_types_table(data.get("job_types", [])))
            handlers = data.get("handlers", [])
            console.print(
                f"\n🔧 Handlers registered: [cyan]{', '.join(handlers) or 'none'}[/cyan]"
            )
    except JobCoreError as e:
        print_error(f"Failed to list job types: {e}")
        raise typer.Exit(1) from None


@app.command()
def submit(
    ctx: typer.Context,
    job_type: str = typer.Argument(..., help="Job type to submit"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON object payload"),
    priority: str | None = typer.Option(
        None, "--priority", help="high, normal or low (defaults to the type's priority)"
    ),
    tenant: str | None = typer.Option(None, "--tenant", "-t", help="Owner tenant ID"),
    user: str | None = typer.Option(None, "--user", "-u", help="Owner user ID"),
    correlation_id: str | None = typer.Option(
        None, "--correlation-id", help="Tracing identifier"
    ),
):
    """📤 Submit a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(payload_data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    if priority and priority not in ("high", "normal", "low"):
        print_error("Priority must be one of: high, normal, low")
        raise typer.Exit(1)

    if user and not tenant:
        print_error("--user requires --tenant")
        raise typer.Exit(1)

    try:
        with JobCoreClient(ctx.obj.get("api_url")) as client:
            result = client.submit_job(
                job_type,
                payload_data,
                priority=priority,
                tenant_id=tenant,
                user_id=user,
                correlation_id=correlation_id,
            )
            print_success(f"Job submitted: {result.get('job_id')}")
            console.print(
                f"• Priority: [yellow]{result.get('priority')}[/yellow]\n"
                f"• Queue: [cyan]{result.get('queue')}[/cyan]"
            )
    except JobCoreError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None


@app.command()
def stats(ctx: typer.Context):
    """📈 Show queue depths, outcomes and threshold breaches"""
    try:
        with JobCoreClient(ctx.obj.get("api_url")) as client:
            snapshot = client.stats()
    except JobCoreError as e:
        print_error(f"Failed to get stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_queue_depth_table(snapshot.get("queue_depths", {})))
    outcomes = snapshot.get("outcomes", {})
    if outcomes:
        console.print(create_outcomes_table(outcomes))
    else:
        print_info("No outcomes recorded yet")

    console.print(
        f"\n• In flight: [cyan]{snapshot.get('in_flight', 0)}[/cyan]"
        f"\n• Dead letters: [red]{snapshot.get('dead_letter_total', 0)}[/red]"
    )
    for breach in snapshot.get("breaches", []):
        print_warning(
            f"{breach['metric']} for {breach['subject']}: "
            f"{breach['value']} > {breach['threshold']}"
        )


async def _run_worker(settings: Settings) -> None:
    runtime = build_runtime(settings)
    await runtime.prepare()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await runtime.pool.serve(stop)
    finally:
        await runtime.close()


@app.command()
def worker(
    workers: int | None = typer.Option(
        None, "--workers", "-w", min=1, help="Worker units (overrides WORKER_COUNT)"
    ),
    prefetch: int | None = typer.Option(
        None, "--prefetch", min=1, help="Prefetch per unit (overrides PREFETCH_COUNT)"
    ),
):
    """🛠️  Run the worker pool and dead-letter handler until interrupted"""
    overrides = {}
    if workers is not None:
        overrides["worker_count"] = workers
    if prefetch is not None:
        overrides["prefetch_count"] = prefetch
    settings = get_settings().model_copy(update=overrides)

    setup_logging()
    print_info(
        f"Starting {settings.worker_count} worker unit(s), "
        f"prefetch {settings.prefetch_count}, broker {settings.broker_backend.value}"
    )
    asyncio.run(_run_worker(settings))
    print_success("Worker pool stopped")


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(f"jobctl v{__version__}")


@app.callback()
def main(
    ctx: typer.Context,
    api_url: str | None = typer.Option(
        None, "--api-url", envvar="JOBCORE_API_URL", help="jobcore API base URL"
    ),
):
    """
    ⚙️  jobctl - operate the asynchronous job processing core

    Submit jobs, inspect queues and dead letters, and run worker processes.
    """
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url


if __name__ == "__main__":
    app()
