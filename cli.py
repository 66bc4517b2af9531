# cli.py
import functools
import sys
import time

import click

from config import RUNTIME_KEYS, Settings, setup_logging
from errors import QueueError
from notifier import StatusNotifier
from service import JobService
from storage import Storage
from worker import Runner


def _open_service(settings):
    storage = Storage(settings.db_path)
    settings = settings.with_runtime_overrides(storage)
    return JobService(storage, settings)


def handle_errors(fn):
    """Print queue errors instead of a traceback and exit non-zero."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except QueueError as e:
            click.echo(f"❌ {e}", err=True)
            sys.exit(1)
    return wrapper


@click.group()
@click.option("--db", "db_path", default=None, help="Job database path (overrides BUILDQ_DB_PATH)")
@click.pass_context
def cli(ctx, db_path):
    """buildq - queue and run build recipes one at a time"""
    settings = Settings()
    if db_path:
        settings = settings.model_copy(update={"db_path": db_path})
    setup_logging(settings.log_level)
    ctx.obj = settings


# ---------------- Submit ----------------
@cli.command()
@click.argument("name")
@click.argument("command")
@click.option("--output", default=None, help="Artifact path (relative to the output root) expected on success")
@click.pass_obj
@handle_errors
def submit(settings, name, command, output):
    """Add a new job to the queue"""
    job = _open_service(settings).submit(name, command, output)
    click.echo(f"✅ Job {job.id} submitted ({job.command}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--page", default=1, type=int, help="Page number, starting at 1")
@click.pass_obj
@handle_errors
def list_jobs(settings, page):
    """List jobs, most recent first"""
    jobs, pages = _open_service(settings).list(page)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        output = job.output or "-"
        click.echo(f"{job.id} | {job.status.emoji} {job.status.value} | {job.name} | {job.command} | output={output} | created={job.created_at:%Y-%m-%d %H:%M:%S}")
    click.echo(f"-- page {page}/{pages}")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
@handle_errors
def show(settings, job_id):
    """Show details of a single job"""
    service = _open_service(settings)
    job = service.get(job_id)
    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Name: {job.name}")
    click.echo(f"  Command: {job.command}")
    click.echo(f"  Output: {job.output or '-'}")
    click.echo(f"  Status: {job.status.emoji} {job.status.value}")
    click.echo(f"  Created: {job.created_at.isoformat()}")
    click.echo(f"  Updated: {job.updated_at.isoformat()}")
    log_path = job.log_path(service.settings.log_root)
    click.echo(f"  Log: {log_path if log_path.is_file() else '-'}")


# ---------------- Status ----------------
@cli.command()
@click.pass_obj
@handle_errors
def status(settings):
    """Show summary of job states"""
    counts = _open_service(settings).db.count_by_status()
    if not counts:
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state, count in counts.items():
        click.echo(f"  {state.emoji} {state.value}: {count}")


# ---------------- Cancel / Reset ----------------
@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
@handle_errors
def cancel(settings, job_id):
    """Remove a job from the queue"""
    if _open_service(settings).cancel(job_id):
        click.echo(f"🗑 Job {job_id} cancelled.")
    else:
        click.echo(f"Job {job_id} not found.")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
@handle_errors
def reset(settings, job_id):
    """Retry a failed job created today"""
    job = _open_service(settings).reset(job_id)
    click.echo(f"♻️ Job {job.id} moved back to pending.")


@cli.command()
@click.pass_obj
@handle_errors
def recipes(settings):
    """List recipes the command runner can execute"""
    for recipe in _open_service(settings).available_recipes():
        click.echo(recipe)


# ---------------- Rescue ----------------
@cli.command()
@click.pass_obj
@handle_errors
def rescue(settings):
    """Fail jobs left Running by a runner that is gone"""
    storage = Storage(settings.db_path)
    count = Runner(storage, StatusNotifier(), settings).recover_interrupted()
    if count:
        click.echo(f"🔧 Marked {count} interrupted job(s) as failed.")
    else:
        click.echo("No interrupted jobs found.")


# ---------------- Worker ----------------
@cli.command()
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.option("--rescan-interval", default=None, type=float, help="Re-query the store at least this often (seconds) (uses config if set, default 30)")
@click.pass_obj
@handle_errors
def worker(settings, poll_interval, rescan_interval):
    """Run the job runner in the foreground with graceful shutdown"""
    storage = Storage(settings.db_path)
    settings = settings.with_runtime_overrides(storage)
    updates = {}
    if poll_interval is not None:
        updates["poll_interval"] = poll_interval
    if rescan_interval is not None:
        updates["rescan_interval"] = rescan_interval
    elif settings.rescan_interval is None:
        # Other processes write to the store without being able to wake us
        updates["rescan_interval"] = 30.0
    settings = settings.model_copy(update=updates)

    runner = Runner(storage, StatusNotifier(), settings)
    runner.start()
    click.echo(f"🚀 Runner started (poll={settings.poll_interval}s, rescan={settings.rescan_interval}s)")
    click.echo("Press Ctrl+C to stop the runner gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping runner ...")
        runner.stop()
        click.echo("✅ Runner stopped cleanly.")


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Bind port")
@click.pass_obj
def serve(settings, host, port):
    """Serve the HTTP API, status stream and dashboard (runner included)"""
    from dashboard import run_server

    updates = {k: v for k, v in (("host", host), ("port", port)) if v is not None}
    run_server(settings.model_copy(update=updates))


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime overrides stored in the job database"""
    pass


@config.command("set")
@click.argument("key", type=click.Choice(RUNTIME_KEYS))
@click.argument("value")
@click.pass_obj
@handle_errors
def config_set(settings, key, value):
    """Set a config key to a value"""
    Storage(settings.db_path).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_obj
@handle_errors
def config_get(settings, key):
    """Get a config key"""
    value = Storage(settings.db_path).get_config(key)
    if value is None:
        click.echo(f"{key}={getattr(settings, key, None)} (default)")
    else:
        click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
@handle_errors
def config_list(settings):
    """List all config keys"""
    rows = Storage(settings.db_path).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
