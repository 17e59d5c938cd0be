# Overview: Flask CLI commands for running the Monobank janitor jobs.

# backend/reconciler/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "reconciler:create_app".
# - Use: python -m flask <group> <command> [options]
#
# Janitor:
# - python -m flask janitor run job1 [--limit 25] [--dry-run]
#   Poll the provider for stale creating/active attempts and apply the result.
# - python -m flask janitor run job2
#   Cancel orders whose attempt never obtained an invoice; release inventory.
# - python -m flask janitor run job3
#   Replay stored webhook events (MONO_WEBHOOK_MODE=store only).
# - python -m flask janitor run job4
#   Report the needs_review backlog (read-only).
# - python -m flask janitor run job5
#   Finish inventory releases left behind by a failed or interrupted restock.
# - python -m flask janitor run-all [--limit 25] [--dry-run]
#   Run job1..job5 in order; jobs that cannot run here are reported as skipped.

import json
import uuid

import click
from flask.cli import with_appcontext

from .config import reconciler_settings
from .services.janitor_service import JOBS, JanitorJob3ModeError, JobRunArgs, run_janitor
from .services.provider import ProviderUnavailableError


def _job_args(limit, dry_run) -> JobRunArgs:
    if limit is None:
        limit = reconciler_settings().batch_limit
    return JobRunArgs(
        limit=max(1, min(100, int(limit))),
        dry_run=dry_run,
        run_id=str(uuid.uuid4()),
        request_id=f"cli:{uuid.uuid4().hex[:12]}",
    )


@click.group('janitor')
def janitor_group():
    """Monobank janitor jobs."""


@janitor_group.command('run')
@click.argument('job', type=click.Choice(sorted(JOBS)))
@click.option('--limit', type=int, default=None, help='Batch size (defaults to MONO_JANITOR_BATCH_LIMIT).')
@click.option('--dry-run', is_flag=True, default=False, help='Count candidates without claiming anything.')
@with_appcontext
def run_job_cli(job, limit, dry_run):
    """Run one janitor job and print its JSON result."""
    args = _job_args(limit, dry_run)
    try:
        result = run_janitor(job, args)
    except (JanitorJob3ModeError, ProviderUnavailableError) as exc:
        raise click.ClickException(f"{exc.code}: {exc}")

    click.echo(json.dumps({"job": job, "run_id": args.run_id, **result.to_dict()}, sort_keys=True))


@janitor_group.command('run-all')
@click.option('--limit', type=int, default=None)
@click.option('--dry-run', is_flag=True, default=False)
@with_appcontext
def run_all_cli(limit, dry_run):
    """Run every janitor job once."""
    output = {}
    for job in sorted(JOBS):
        args = _job_args(limit, dry_run)
        try:
            output[job] = run_janitor(job, args).to_dict()
        except (JanitorJob3ModeError, ProviderUnavailableError) as exc:
            output[job] = {"skipped": exc.code}

    click.echo(json.dumps(output, sort_keys=True))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(janitor_group)
