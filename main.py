import json
import logging
import sys

import click
from dotenv import load_dotenv

load_dotenv()

from credit_pipeline.exceptions import ForbiddenKeyError, ReportNotFoundError  # noqa: E402
from credit_pipeline.pipeline_db import PipelineDB  # noqa: E402
from credit_pipeline.queue_handler import JobQueueHandler  # noqa: E402
from credit_pipeline.report_service import ReportService  # noqa: E402
from credit_pipeline.settings import settings  # noqa: E402
from credit_pipeline.worker import CreditWorker  # noqa: E402


def _configure_logging(level=None):
    logging.basicConfig(
        level=level or getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli():
    """Credit report analysis pipeline command line interface."""
    pass


@cli.command()
@click.option('--reset', is_flag=True, help='Drop pipeline tables before recreating them')
def migrate(reset):
    """Create (or recreate) the pipeline tables."""
    _configure_logging()
    PipelineDB().migrate(reset=reset)
    click.echo(f"Migration completed (reset={reset})")


@cli.command()
def worker():
    """Start the worker that claims and processes queued jobs."""
    _configure_logging()

    missing = settings.missing_required()
    if missing:
        click.echo(f"Worker misconfigured, missing: {', '.join(missing)}", err=True)
        sys.exit(1)

    click.echo("Starting credit report worker...")
    click.echo(f"Poll interval: {settings.worker_poll_interval_s}s")
    click.echo(f"Stale job threshold: {settings.job_stale_after_s}s (sweep every {settings.watchdog_interval_s}s)")

    try:
        worker_instance = CreditWorker()
        worker_instance.start()
    except KeyboardInterrupt:
        click.echo("Worker stopped by user")
    except Exception as e:
        click.echo(f"Worker failed: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--stale-after', type=click.IntRange(min=1), default=None, help='Staleness threshold in seconds')
def sweep_stale(stale_after):
    """Fail jobs that have not been updated within the staleness threshold."""
    _configure_logging()
    swept = JobQueueHandler().sweep_stale_jobs(stale_after)
    click.echo(f"Timed out {swept} stale job(s)")


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--filename', required=True, help='Original file name')
@click.option('--content-type', default='application/pdf', help='MIME type of the upload')
def presign_upload(user_id, filename, content_type):
    """Mint a signed upload URL for a new report file."""
    _echo_json(ReportService().presign_upload(user_id, filename, content_type))


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--file-key', required=True, help='Blob key to download')
def presign_download(user_id, file_key):
    """Mint a signed download URL for a report or letter."""
    try:
        _echo_json(ReportService().presign_download(user_id, file_key))
    except ForbiddenKeyError:
        click.echo("Forbidden: key is outside this user's namespace", err=True)
        sys.exit(1)


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--file-key', required=True, help='Blob key of the uploaded file')
@click.option('--filename', required=True, help='Original file name')
def create_report(user_id, file_key, filename):
    """Register an uploaded report and queue it for analysis."""
    _configure_logging()
    report, job = ReportService().create_report(user_id, file_key, filename)
    _echo_json({"report": report.to_dict(), "job": job.to_status_dict()})


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--job-id', required=True, help='Job identifier')
def job_status(user_id, job_id):
    """Show a job's status and progress."""
    status = ReportService().get_job_status(job_id, user_id)
    if status is None:
        click.echo("Job not found", err=True)
        sys.exit(1)
    _echo_json(status)


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--report-id', required=True, help='Report identifier')
def result(user_id, report_id):
    """Show the analysis result for a report."""
    data = ReportService().get_result(report_id, user_id)
    if data is None:
        click.echo("No result for this report", err=True)
        sys.exit(1)
    _echo_json(data)


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--report-id', required=True, help='Report identifier')
def letters(user_id, report_id):
    """List the dispute letters generated for a report."""
    _echo_json(ReportService().list_letters(report_id, user_id))


@cli.command()
@click.option('--user-id', required=True, help='Owning user identifier')
@click.option('--report-id', required=True, help='Report identifier')
def retry(user_id, report_id):
    """Clear a report's jobs, result and letters and queue a fresh job."""
    _configure_logging()
    try:
        job = ReportService().retry_report(report_id, user_id)
    except ReportNotFoundError:
        click.echo("Report not found", err=True)
        sys.exit(1)
    _echo_json(job.to_status_dict())


@cli.command()
@click.option('--format', type=click.Choice(['json', 'text']), default='text', help='Output format')
def health_check(format):
    """Perform health check and exit with appropriate status code."""
    # Configure logging to ERROR only for health checks
    _configure_logging(logging.ERROR)

    try:
        worker_instance = CreditWorker()
        health_status = worker_instance.check_health()
        overall_healthy = bool(health_status.get("healthy", False))

        if format == 'json':
            _echo_json(health_status)
        else:
            click.echo("Credit Report Worker Health Check")
            click.echo("=" * 40)

            click.echo(f"Overall Status: {'✓ HEALTHY' if overall_healthy else '✗ UNHEALTHY'}")

            for check_name, check_data in health_status.get("checks", {}).items():
                status = "✓" if check_data.get("healthy", False) else "✗"
                error = check_data.get("error", "")
                click.echo(f"{check_name.upper()}: {status} {error}")

        sys.exit(0 if overall_healthy else 1)

    except Exception as e:
        if format == 'json':
            _echo_json({"healthy": False, "error": str(e)})
        else:
            click.echo(f"Health check failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    cli()
