# cli.py
import logging.config
import re
import sqlite3
import threading

import click

from models import COMPLETE, DEFAULT_CPU, DEFAULT_MEMORY, STATUSES, new_job
from runtime import DockerRuntime, RuntimeUnavailableError
from scheduler import Scheduler
from storage import DEFAULT_DB_PATH, Storage
from worker import Worker

_SIZE_UNITS = {None: 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def setup_logging(verbose=False):
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {
            "level": "DEBUG" if verbose else "INFO",
            "handlers": ["console"],
        },
    })


def parse_memory(value):
    """Whole bytes, optionally suffixed b, k/kb, m/mb or g/gb (binary units)."""
    match = re.fullmatch(r"(\d+)\s*(?:([kmg])b?|b)?", str(value).strip().lower())
    if not match:
        raise ValueError(
            f"invalid memory size: {value} (use a whole number with an optional k/m/g suffix, e.g. 1536m)"
        )
    return int(match.group(1)) * _SIZE_UNITS[match.group(2)]


def _config_int(db, key, default):
    raw = db.get_config(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise click.ClickException(f"config '{key}' must be an integer, got '{raw}'")


def _storage(ctx):
    try:
        return Storage(ctx.obj["db_path"])
    except sqlite3.Error as e:
        raise click.ClickException(f"cannot open database {ctx.obj['db_path']}: {e}")


def _scheduler(db, with_runtime=True):
    runtime = None
    if with_runtime:
        try:
            runtime = DockerRuntime(timeout=_config_int(db, "docker_timeout", 60))
        except RuntimeUnavailableError as e:
            raise click.ClickException(str(e))
    return Scheduler(db, runtime, default_timeout=_config_int(db, "job_timeout_seconds", None))


def _report(job):
    icon = "✅" if job.status == COMPLETE else "❌"
    click.echo(f"{icon} Job {job.id} {job.status}")
    if job.error:
        click.echo(f"  Error: {job.error}")
    if job.log:
        click.echo("  Log:")
        click.echo(job.log.rstrip("\n"))


@click.group()
@click.option("--db", "db_path", default=DEFAULT_DB_PATH, envvar="MINI_HPC_DB",
              show_default=True, help="SQLite database file")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    """mini-hpc - run containerized jobs from a local queue"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# ---------------- Add ----------------
@cli.command()
@click.argument("image")
@click.argument("command")
@click.option("--name", default=None, help="Human-readable job name")
@click.option("--cpu", default=None, type=int, help="Whole CPU cores (uses config default_cpu if set)")
@click.option("--memory", default=None, help="Memory limit: whole bytes or k/m/g units, e.g. 512m, 1536m, 2g (uses config default_memory if set)")
@click.option("--timeout-seconds", default=None, type=int, help="Deadline for the whole run")
@click.pass_context
def add(ctx, image, command, name, cpu, memory, timeout_seconds):
    """Queue IMAGE to run COMMAND"""
    db = _storage(ctx)

    if cpu is None:
        cpu = _config_int(db, "default_cpu", DEFAULT_CPU)
    try:
        memory = parse_memory(memory) if memory is not None else _config_int(db, "default_memory", DEFAULT_MEMORY)
        job = new_job(image, command, name=name, cpu=cpu, memory=memory, timeout_seconds=timeout_seconds)
    except ValueError as e:
        raise click.BadParameter(str(e))

    scheduler = _scheduler(db, with_runtime=False)
    if scheduler.add_job(job):
        click.echo(f"✅ Job added: {job.id}")
    else:
        click.echo(f"⚠️ Job {job.id} could not be saved and will be lost on exit.")


# ---------------- List pending ----------------
@cli.command(name="list")
@click.pass_context
def list_pending(ctx):
    """List pending jobs in run order"""
    scheduler = _scheduler(_storage(ctx), with_runtime=False)
    jobs = scheduler.list_pending()
    if not jobs:
        click.echo("No jobs in the queue.")
        return
    for i, job in enumerate(jobs, start=1):
        click.echo(f"[{i}] {job.id} | {job.name} | image={job.image} | command={job.command} | status={job.status}")


# ---------------- All jobs ----------------
@cli.command()
@click.option("--status", default=None, type=click.Choice(STATUSES), help="Filter by status")
@click.pass_context
def jobs(ctx, status):
    """List every stored job"""
    rows = _storage(ctx).list_jobs(status=status)
    if not rows:
        click.echo("No jobs found.")
        return
    for job in rows:
        exit_code = job.exit_code if job.exit_code is not None else "-"
        click.echo(f"{job.id} | {job.name} | image={job.image} | status={job.status} | exit_code={exit_code}")


# ---------------- Run ----------------
@cli.command()
@click.argument("job_id", required=False)
@click.option("--all", "run_all", is_flag=True, help="Keep running until the queue is empty")
@click.pass_context
def run(ctx, job_id, run_all):
    """Run JOB_ID, or the next job in the queue"""
    if job_id and run_all:
        raise click.UsageError("JOB_ID and --all are mutually exclusive")

    scheduler = _scheduler(_storage(ctx))

    if job_id:
        job = scheduler.run_by_id(job_id)
        if job is None:
            click.echo(f"Job {job_id} is not in the queue.")
            return
        _report(job)
        return

    ran = 0
    while True:
        job = scheduler.run_next()
        if job is None:
            break
        _report(job)
        ran += 1
        if not run_all:
            break
    if ran == 0:
        click.echo("No jobs to run.")


# ---------------- Worker ----------------
@cli.command()
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval in seconds (uses config if set)")
@click.option("--max-jobs", default=None, type=int, help="Exit after this many jobs")
@click.pass_context
def worker(ctx, poll_interval, max_jobs):
    """Keep running queued jobs until Ctrl+C"""
    db = _storage(ctx)
    if poll_interval is None:
        poll_interval = float(db.get_config("poll_interval", default="1.0"))

    stop_event = threading.Event()
    w = Worker(_scheduler(db), poll_interval=poll_interval, stop_event=stop_event)
    t = threading.Thread(target=w.run, kwargs={"max_jobs": max_jobs}, name="mini-hpc-worker", daemon=True)
    click.echo(f"🚀 Worker started (poll={poll_interval}s). Press Ctrl+C to stop.")
    t.start()

    try:
        while t.is_alive():
            t.join(timeout=0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping after the current job ...")
        stop_event.set()
        t.join()
    click.echo(f"✅ Worker stopped, {w.processed} job(s) processed.")


# ---------------- Show ----------------
@cli.command()
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id):
    """Show details of a single job"""
    job = _storage(ctx).get_job(job_id)
    if job is None:
        click.echo(f"❌ Job {job_id} not found.")
        return

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Name: {job.name}")
    click.echo(f"  Image: {job.image}")
    click.echo(f"  Command: {job.command}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  CPU: {job.cpu}  Memory: {job.memory}")
    click.echo(f"  Timeout: {job.timeout_seconds or '-'}")
    click.echo(f"  Created: {job.created_at or '-'}")
    click.echo(f"  Started: {job.started_at or '-'}")
    click.echo(f"  Finished: {job.finished_at or '-'}")
    click.echo(f"  Exit code: {job.exit_code if job.exit_code is not None else '-'}")
    click.echo(f"  Error: {job.error or '-'}")
    click.echo("  Log:")
    click.echo(job.log or "(no output)")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job statuses"""
    counts = _storage(ctx).count_by_status()
    if not counts:
        click.echo("No jobs in the system yet.")
        return
    click.echo("📊 Job Status Summary:")
    for state in STATUSES:
        if state in counts:
            click.echo(f"  {state}: {counts[state]}")


# ---------------- Rescue ----------------
@cli.command()
@click.option("--reason", default="interrupted", help="Error recorded on rescued jobs")
@click.pass_context
def rescue(ctx, reason):
    """Mark jobs stuck in 'running' as failed (no worker may be active)"""
    scheduler = _scheduler(_storage(ctx), with_runtime=False)
    count = scheduler.reconcile_interrupted(reason=reason)
    if not count:
        click.echo("No interrupted jobs found.")
        return
    click.echo(f"🔧 Marked {count} interrupted job(s) as failed.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Defaults for new jobs and the runtime"""
    pass

@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    _storage(ctx).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")

@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    value = _storage(ctx).get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")

@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = _storage(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
