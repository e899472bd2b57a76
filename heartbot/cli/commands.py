"""heartbot CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from heartbot import __version__

app = typer.Typer(
    name="heartbot",
    help="heartbot - proactive notification heartbeat engine",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"heartbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """heartbot - proactive notification heartbeat engine."""


def _config():
    from heartbot.core.config.loader import ConfigError, load_config

    try:
        return load_config()
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(code=1)


def _store():
    from heartbot.memory.store import HeartbeatStore

    config = _config()
    return config, HeartbeatStore(config.database.path)


def _run_action(body: dict) -> dict:
    """Build the full service graph, run one action, wait for spawned agent runs."""
    from heartbot.api.app import build_services

    config = _config()

    async def _go() -> dict:
        services = build_services(config)
        try:
            return await services["engine"].dispatch(body)
        finally:
            await services["worker"].shutdown()

    return asyncio.run(_go())


def _print_result(result: dict) -> None:
    if not result.get("success"):
        console.print(f"[red]Error:[/red] {result.get('error') or result.get('message')}")
        raise typer.Exit(code=1)


def _parse_when(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid datetime:[/red] {value} (use ISO-8601, e.g. 2026-01-31T09:00+02:00)")
        raise typer.Exit(code=1)


# ════════════════════════════════════════════════════════════
# run — start API server (ticker runs inside)
# ════════════════════════════════════════════════════════════


@app.command()
def run(
    port: int = typer.Option(8000, "--port", "-p", help="Port number"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host address"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
) -> None:
    """Start the API server (uvicorn) with the periodic heartbeat."""
    import uvicorn

    console.print(f"[green]Starting heartbot API on {host}:{port}[/green]")
    uvicorn.run("heartbot.api.app:app", host=host, port=port, reload=reload)


# ════════════════════════════════════════════════════════════
# actions — one-shot heartbeat actions
# ════════════════════════════════════════════════════════════


@app.command()
def tick() -> None:
    """Run a single heartbeat tick now."""
    result = _run_action({"action": "tick"})
    _print_result(result)

    counts = result["tick_results"]
    table = Table(title="Tick results")
    table.add_column("Stage", style="cyan")
    table.add_column("Count", style="green")
    for key in (
        "scheduled_jobs", "processed_jobs", "failed_jobs", "reminders_sent",
        "nudges_sent", "agents_invoked", "queue_processed",
    ):
        table.add_row(key, str(counts[key]))
    console.print(table)
    for err in counts["errors"]:
        console.print(f"[red]stage error:[/red] {err}")


@app.command()
def schedule(
    user_id: str = typer.Argument(help="User ID"),
    job_type: str = typer.Argument(help="Job type (morning_briefing, task_reminder, ...)"),
    content: str | None = typer.Option(None, "--content", "-c", help="Message text for ad-hoc jobs"),
    at: str | None = typer.Option(None, "--at", help="ISO-8601 time (default: now)"),
    priority: str | None = typer.Option(None, "--priority", help="low / normal / high"),
) -> None:
    """Queue a one-off heartbeat job."""
    payload: dict = {}
    if content:
        payload["content"] = content
    if priority:
        payload["priority"] = priority
    when = _parse_when(at)
    body = {"action": "schedule_job", "user_id": user_id, "job_type": job_type, "payload": payload}
    if when:
        body["scheduled_for"] = when.isoformat()

    result = _run_action(body)
    _print_result(result)
    console.print(f"[green]Job scheduled:[/green] #{result['job_id']}")


@app.command()
def briefing(
    user_id: str = typer.Argument(help="User ID"),
    deliver: bool = typer.Option(False, "--deliver", help="Also send it to the user"),
) -> None:
    """Generate (and optionally deliver) a morning briefing."""
    result = _run_action({"action": "generate_briefing", "user_id": user_id, "deliver": deliver})
    _print_result(result)
    console.print(result["briefing"])
    if deliver:
        state = "[green]delivered[/green]" if result["delivered"] else "[red]not delivered[/red]"
        console.print(f"\n{state}")


@app.command()
def reminders() -> None:
    """Run the reminder engine once."""
    result = _run_action({"action": "check_reminders"})
    _print_result(result)
    console.print(f"[green]Reminder messages sent:[/green] {result['reminders_sent']}")


@app.command("test-briefing")
def test_briefing(
    phone_number: str = typer.Argument(help="Phone number of the user"),
) -> None:
    """Force-send a morning briefing to the user with this phone number."""
    result = _run_action({"action": "test_briefing", "phone_number": phone_number})
    _print_result(result)
    console.print(f"[green]{result['message']}[/green] → {result['user_id']}")
    console.print(result["briefing_preview"])


# ════════════════════════════════════════════════════════════
# status — config + DB info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and database status."""
    config, db = _store()

    with db._get_conn() as conn:
        user_count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        pending_jobs = conn.execute(
            "SELECT COUNT(*) FROM heartbeat_jobs WHERE status = 'pending'"
        ).fetchone()[0]
        queued = conn.execute(
            "SELECT COUNT(*) FROM outbound_queue WHERE status = 'pending'"
        ).fetchone()[0]

    table = Table(title="heartbot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("DB Path", config.database.path)
    table.add_row("Heartbeat", f"{'on' if config.heartbeat.enabled else 'off'}, every {config.heartbeat.interval_minutes}m")
    table.add_row("Default channel", config.channels.default)
    table.add_row("Users", str(user_count))
    table.add_row("Pending jobs", str(pending_jobs))
    table.add_row("Queued messages", str(queued))

    console.print(table)


# ════════════════════════════════════════════════════════════
# user — user management (sub-command group)
# ════════════════════════════════════════════════════════════

user_app = typer.Typer(help="Manage users")
app.add_typer(user_app, name="user")


@user_app.command("add")
def user_add(
    username: str = typer.Argument(help="User ID (e.g. 'ali')"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    phone: str | None = typer.Option(None, "--phone", help="Phone number"),
    group: str | None = typer.Option(None, "--group", "-g", help="Group shared with a partner"),
    telegram: str | None = typer.Option(None, "--telegram", "-t", help="Telegram chat id"),
) -> None:
    """Add a new user, optionally linking a Telegram chat."""
    from heartbot.core.channels.base import normalize_phone

    _, db = _store()

    if db.user_exists(username):
        console.print(f"[yellow]User already exists:[/yellow] {username}")
        return

    db.get_or_create_user(
        username,
        name=name or None,
        phone_number=normalize_phone(phone) if phone else None,
        group_id=group,
    )
    console.print(f"[green]User created:[/green] {username}")

    if telegram:
        db.link_channel(username, "telegram", telegram)
        console.print(f"  [dim]Linked telegram:{telegram}[/dim]")


@user_app.command("list")
def user_list() -> None:
    """List all users and their linked channels."""
    _, db = _store()

    users = db.list_users()
    if not users:
        console.print("[dim]No users found.[/dim]")
        return

    table = Table(title="Users")
    table.add_column("User ID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Phone", style="white")
    table.add_column("Group", style="magenta")
    table.add_column("Channels", style="yellow")
    table.add_column("Created", style="dim")

    for u in users:
        channels_str = ", ".join(
            f"{c['channel']}:{c['channel_user_id']}" for c in u["channels"]
        ) or "-"
        table.add_row(
            u["user_id"], u["name"] or "-", u["phone_number"] or "-",
            u["group_id"] or "-", channels_str, u["created_at"],
        )

    console.print(table)


@user_app.command("link")
def user_link(
    username: str = typer.Argument(help="User ID"),
    channel: str = typer.Argument(help="Channel name (telegram, log)"),
    channel_user_id: str = typer.Argument(help="User's ID on that channel"),
) -> None:
    """Link a channel identity to a user."""
    _, db = _store()

    if not db.user_exists(username):
        console.print(f"[red]User not found:[/red] {username}")
        raise typer.Exit(code=1)

    db.link_channel(username, channel, channel_user_id)
    console.print(f"[green]Linked[/green] {channel}:{channel_user_id} [green]to[/green] {username}")


# ════════════════════════════════════════════════════════════
# prefs — proactive preferences
# ════════════════════════════════════════════════════════════

prefs_app = typer.Typer(help="Manage proactive preferences")
app.add_typer(prefs_app, name="prefs")


@prefs_app.command("show")
def prefs_show(username: str = typer.Argument(help="User ID")) -> None:
    """Show a user's preferences (defaults if none stored)."""
    _, db = _store()
    pref = db.get_preference(username)
    stored = pref is not None
    if pref is None:
        from heartbot.core.heartbeat.types import Preference

        pref = Preference(user_id=username)

    table = Table(title=f"Preferences: {username}{'' if stored else ' (defaults)'}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in pref.model_dump().items():
        if key != "user_id":
            table.add_row(key, str(value))
    console.print(table)


@prefs_app.command("set")
def prefs_set(
    username: str = typer.Argument(help="User ID"),
    assignments: list[str] = typer.Argument(help="field=value pairs, e.g. timezone=Europe/Istanbul"),
) -> None:
    """Update preference fields."""
    from pydantic import ValidationError

    _, db = _store()
    fields: dict[str, str | None] = {}
    for item in assignments:
        key, sep, value = item.partition("=")
        if not sep:
            console.print(f"[red]Expected field=value, got:[/red] {item}")
            raise typer.Exit(code=1)
        fields[key.strip()] = None if value.strip().lower() in ("", "none", "null") else value.strip()

    try:
        pref = db.upsert_preference(username, **fields)
    except (ValueError, ValidationError) as e:
        console.print(f"[red]Invalid preferences:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(f"[green]Preferences updated for {username}:[/green] {', '.join(fields)}")
    console.print(f"[dim]{json.dumps(pref.model_dump(), ensure_ascii=False)}[/dim]")


# ════════════════════════════════════════════════════════════
# task — tasks carrying due dates and reminders
# ════════════════════════════════════════════════════════════

task_app = typer.Typer(help="Manage tasks")
app.add_typer(task_app, name="task")


@task_app.command("add")
def task_add(
    username: str = typer.Argument(help="Author user ID"),
    summary: str = typer.Argument(help="Task text"),
    due: str | None = typer.Option(None, "--due", help="Due date (ISO-8601)"),
    remind: str | None = typer.Option(None, "--remind", help="Reminder time (ISO-8601)"),
    priority: str = typer.Option("medium", "--priority", help="low / medium / high"),
    category: str | None = typer.Option(None, "--category"),
    repeat: str = typer.Option("none", "--repeat", help="none / daily / weekly / monthly / yearly"),
    every: int = typer.Option(1, "--every", help="Recurrence interval"),
) -> None:
    """Add a task."""
    from heartbot.core.heartbeat.types import RecurrenceFrequency

    try:
        frequency = RecurrenceFrequency(repeat)
    except ValueError:
        console.print(f"[red]Unknown recurrence:[/red] {repeat}")
        raise typer.Exit(code=1)

    _, db = _store()
    user = db.get_user(username)
    task = db.add_task(
        username,
        summary,
        due_date=_parse_when(due),
        reminder_time=_parse_when(remind),
        priority=priority,
        category=category,
        recurrence_frequency=frequency.value,
        recurrence_interval=every,
        group_id=user["group_id"] if user else None,
    )
    console.print(f"[green]Task added:[/green] #{task.id} {task.summary}")


@task_app.command("list")
def task_list(
    username: str = typer.Argument(help="User ID"),
    all_tasks: bool = typer.Option(False, "--all", "-a", help="Include completed tasks"),
) -> None:
    """List tasks visible to a user."""
    _, db = _store()
    tasks = db.list_tasks(username, include_completed=all_tasks)
    if not tasks:
        console.print("[dim]No tasks found.[/dim]")
        return

    table = Table(title=f"Tasks: {username}")
    table.add_column("ID", style="cyan")
    table.add_column("Summary", style="white")
    table.add_column("Due", style="yellow")
    table.add_column("Reminder", style="magenta")
    table.add_column("Markers", style="dim")
    table.add_column("Done", style="green")
    for t in tasks:
        table.add_row(
            str(t.id), t.summary, t.due_date or "-", t.reminder_time or "-",
            ", ".join(t.auto_reminders_sent) or "-", "✓" if t.completed else "",
        )
    console.print(table)


@task_app.command("done")
def task_done(task_id: int = typer.Argument(help="Task ID")) -> None:
    """Mark a task completed."""
    _, db = _store()
    if db.complete_task(task_id):
        console.print(f"[green]Completed task[/green] #{task_id}")
    else:
        console.print(f"[red]Task not found or already completed:[/red] #{task_id}")
        raise typer.Exit(code=1)


# ════════════════════════════════════════════════════════════
# jobs — heartbeat job history
# ════════════════════════════════════════════════════════════

jobs_app = typer.Typer(help="Inspect heartbeat jobs")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    user_id: str | None = typer.Option(None, "--user", "-u", help="Filter by user"),
    limit: int = typer.Option(20, "--limit", "-n"),
) -> None:
    """List recent heartbeat jobs."""
    _, db = _store()
    jobs = db.list_jobs(user_id, limit=limit)
    if not jobs:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Heartbeat jobs")
    table.add_column("ID", style="cyan")
    table.add_column("User", style="blue")
    table.add_column("Type", style="yellow")
    table.add_column("Scheduled", style="white")
    table.add_column("Status", style="green")
    table.add_column("Error", style="red")
    for j in jobs:
        table.add_row(
            str(j.id), j.user_id, j.job_type.value, j.scheduled_for,
            j.status.value, j.error or "",
        )
    console.print(table)


# ════════════════════════════════════════════════════════════
# agent — background agent catalog and activations
# ════════════════════════════════════════════════════════════

agent_app = typer.Typer(help="Manage background agents")
app.add_typer(agent_app, name="agent")


@agent_app.command("list")
def agent_list() -> None:
    """List the agent catalog."""
    from heartbot.core.background.handlers import seed_default_agents

    _, db = _store()
    seed_default_agents(db)

    table = Table(title="Background agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Schedule", style="yellow")
    table.add_column("Requires", style="magenta")
    table.add_column("Active", style="green")
    for a in db.list_agents():
        table.add_row(
            a["agent_id"], a["schedule"] or "-", a["requires_connection"] or "-",
            str(bool(a["is_active"])),
        )
    console.print(table)


@agent_app.command("enable")
def agent_enable(
    username: str = typer.Argument(help="User ID"),
    agent_id: str = typer.Argument(help="Agent ID"),
    disable: bool = typer.Option(False, "--disable", help="Disable instead"),
) -> None:
    """Enable (or disable) a background agent for a user."""
    from heartbot.core.background.handlers import seed_default_agents

    _, db = _store()
    seed_default_agents(db)
    if db.get_agent(agent_id) is None:
        console.print(f"[red]Unknown agent:[/red] {agent_id}")
        raise typer.Exit(code=1)
    db.set_agent_activation(username, agent_id, enabled=not disable)
    state = "disabled" if disable else "enabled"
    console.print(f"[green]{agent_id} {state} for {username}[/green]")


@agent_app.command("connect")
def agent_connect(
    username: str = typer.Argument(help="User ID"),
    provider: str = typer.Argument(help="Integration name (oura, gmail, ...)"),
    disconnect: bool = typer.Option(False, "--disconnect", help="Mark as disconnected"),
) -> None:
    """Record an external integration connection for a user."""
    _, db = _store()
    db.set_connection(username, provider, is_active=not disconnect)
    console.print(f"[green]{provider} {'disconnected' if disconnect else 'connected'} for {username}[/green]")
