"""
CLI interface for Clinical AI Guard.

Operator access to the shared governance store: limits, cache invalidation
and the monitoring dashboard.
"""

import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from clinical_ai_guard.config.loader import ConfigSource, GovernanceConfig, load_governance_config
from clinical_ai_guard.core.admission import AdmissionController, limits_summary
from clinical_ai_guard.core.cache import ResponseCache
from clinical_ai_guard.core.monitor import Monitor
from clinical_ai_guard.demo.seed_demo_data import seed_demo_metrics
from clinical_ai_guard.storage.db import DEFAULT_DB_PATH
from clinical_ai_guard.storage.redis_store import RedisStore
from clinical_ai_guard.storage.sqlite_store import SqliteStore, initialize_schema
from clinical_ai_guard.storage.store import KeyValueStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

HEALTH_COLORS = {
    "healthy": "green",
    "degraded": "yellow",
    "unhealthy": "red",
    "critical": "bold red",
}


class _Settings:
    def __init__(self, db_path: str, redis_url: Optional[str], config_path: Optional[str]):
        self.db_path = db_path
        self.redis_url = redis_url
        self.config_path = config_path

    def store(self) -> KeyValueStore:
        if self.redis_url:
            return RedisStore.from_url(self.redis_url)
        return SqliteStore(self.db_path)

    def config_source(self) -> ConfigSource:
        if self.config_path:
            return ConfigSource(load_governance_config(self.config_path))
        return ConfigSource()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite store path"),
    redis_url: Optional[str] = typer.Option(None, "--redis-url", help="Use a Redis store instead of SQLite"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Governance YAML config"),
):
    """Clinical AI Guard CLI."""
    ctx.obj = _Settings(db, redis_url, config)
    if ctx.invoked_subcommand is None:
        console.print("Clinical AI Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the SQLite governance store."""
    try:
        initialize_schema(ctx.obj.db_path)
        console.print(f"[green]✓[/] Store initialized at {ctx.obj.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing store:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show the store backend and current health score."""
    try:
        store = ctx.obj.store()
        monitor = Monitor(store, ctx.obj.config_source())
        health = monitor.get_health_score()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    color = HEALTH_COLORS[health["status"]]
    console.print(f"[green]✓[/] Clinical AI Guard store: {type(store).__name__}")
    console.print(f"Health: [{color}]{health['status']}[/] ({health['score']}/100)")
    for issue in health["issues"]:
        console.print(f"  [yellow]![/] {issue}")
    sys.exit(EXIT_CODE_PASS)


@app.command("check-config")
def check_config(path: str = typer.Argument(..., help="Governance YAML file")):
    """Validate a governance config file and show its limits."""
    try:
        config = load_governance_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_config(config)
    console.print("\n[green]✓[/] Configuration is valid")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def remaining(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task identifier"),
    user_id: str = typer.Argument(..., help="User id"),
    role: str = typer.Option("default", "--role", "-r", help="User role"),
):
    """Show remaining admission capacity for a user and task."""
    try:
        admission = AdmissionController(ctx.obj.store(), ctx.obj.config_source())
        usage = admission.get_remaining(task, user_id, role)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Admission: {task} / user {user_id} ({role})")
    table.add_column("Tier")
    table.add_column("Limit", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Resets (UTC)")
    for name, limit, used, left in limits_summary(usage):
        style = "red" if left == 0 else None
        table.add_row(name, str(limit), str(used), str(left), usage[name].reset_at.strftime("%Y-%m-%d %H:%M"), style=style)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def dashboard(
    ctx: typer.Context,
    period: str = typer.Option("hour", "--period", "-p", help="minute, hour or day"),
    alerts: int = typer.Option(10, "--alerts", "-a", help="Number of recent alerts to show"),
):
    """Show request metrics, latency and recent alerts."""
    try:
        monitor = Monitor(ctx.obj.store(), ctx.obj.config_source())
        metrics = monitor.get_metrics(period)
        recent = monitor.get_recent_alerts(alerts)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_metrics(metrics)
    _display_alerts(recent)
    sys.exit(EXIT_CODE_PASS)


@app.command("invalidate-patient")
def invalidate_patient(ctx: typer.Context, patient_id: str = typer.Argument(..., help="Patient id")):
    """Invalidate cached responses for a patient."""
    try:
        store = ctx.obj.store()
        count = ResponseCache(store, ctx.obj.config_source()).invalidate_patient(patient_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _print_invalidation(store, count, f"patient {patient_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command("invalidate-task")
def invalidate_task(ctx: typer.Context, task: str = typer.Argument(..., help="Task identifier")):
    """Invalidate cached responses for a task."""
    try:
        store = ctx.obj.store()
        count = ResponseCache(store, ctx.obj.config_source()).invalidate_task(task)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _print_invalidation(store, count, f"task {task}")
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-cache")
def clear_cache(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Drop every cached AI response."""
    if not yes and not typer.confirm("Clear all cached AI responses?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_FAIL)

    try:
        ResponseCache(ctx.obj.store(), ctx.obj.config_source()).clear_all()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] AI response cache cleared")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def purge(ctx: typer.Context):
    """Delete expired counters, cache entries and alerts from the store."""
    try:
        removed = ctx.obj.store().purge_expired()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Removed {removed} expired entries")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def demo(
    ctx: typer.Context,
    requests: int = typer.Option(50, "--requests", "-n", help="Number of synthetic requests"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Seed for reproducible traffic"),
):
    """Record synthetic traffic so the dashboard has data."""
    try:
        summary = seed_demo_metrics(ctx.obj.store(), ctx.obj.config_source(), requests=requests, seed=seed)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Demo traffic recorded: {summary['requests']} requests, "
        f"{summary['failures']} failures, {summary['cached']} cache hits, "
        f"{summary['overridden']} overridden"
    )
    sys.exit(EXIT_CODE_PASS)


def _print_invalidation(store: KeyValueStore, count: int, subject: str) -> None:
    if store.supports_patterns:
        console.print(f"[green]✓[/] Deleted {count} cached responses for {subject}")
    else:
        console.print(f"[green]✓[/] Invalidation scheduled for {subject} (version bumped)")


def _display_config(config: GovernanceConfig) -> None:
    admission = config.admission
    console.print(f"\n[bold]Global limit:[/bold] {admission.global_limit} requests/minute")

    table = Table(title="Task limits (per user, per minute)")
    table.add_column("Task")
    table.add_column("Limit", justify="right")
    table.add_column("Cache TTL", justify="right")
    for task, limit in sorted(admission.task_limits.items()):
        ttl = "never" if task in config.cache.non_cacheable_tasks else f"{config.cache.ttl_for(task)}s"
        table.add_row(task, str(limit), ttl)
    console.print(table)

    table = Table(title="Daily quotas")
    table.add_column("Role")
    table.add_column("Quota", justify="right")
    for role, quota in sorted(admission.role_quotas.items()):
        table.add_row(role, str(quota))
    console.print(table)


def _display_metrics(metrics: dict) -> None:
    requests = metrics["requests"]
    health = metrics["health"]
    color = HEALTH_COLORS[health["status"]]

    console.print(f"\n[bold]AI Requests[/bold] ({metrics['period']} {metrics['key']} UTC)")
    console.print("-" * 40)
    console.print(f"Total: {requests['total']}  Success: {requests['success']}  "
                  f"Failure: {requests['failure']}  Cached: {requests['cached']}")
    console.print(f"Error rate: {requests['error_rate']:.2%}  "
                  f"Validation overrides: {metrics['validation']['failure_rate']:.2%}")
    console.print(f"Health: [{color}]{health['status']}[/] ({health['score']}/100)")

    if not metrics["by_task"]:
        console.print("\n[dim]No requests recorded in this period.[/]")
        return

    table = Table(title="By task")
    table.add_column("Task")
    table.add_column("Requests", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("p90 ms", justify="right")
    for task, counts in sorted(metrics["by_task"].items()):
        latency = metrics["latency"].get(task, {})
        table.add_row(
            task,
            str(counts["requests"]),
            f"{counts['error_rate']:.1%}",
            str(latency.get("avg", "-")),
            str(latency.get("p90", "-")),
        )
    console.print(table)


def _display_alerts(alerts: list) -> None:
    if not alerts:
        console.print("\n[dim]No recent alerts.[/]")
        return

    table = Table(title="Recent alerts")
    table.add_column("Time (UTC)")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Context")
    for alert in alerts:
        style = "red" if alert["severity"] == "critical" else "yellow"
        context = ", ".join(f"{k}={v}" for k, v in alert["context"].items())
        table.add_row(alert["timestamp"], alert["severity"], alert["type"], context, style=style)
    console.print(table)


if __name__ == "__main__":
    app()
