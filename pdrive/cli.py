"""
pdrive command line.

    pdrive upload FILE [--resume ID] [--concurrency N] [--key KEY]
    pdrive sessions [--prune-days N]
    pdrive abort ID
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from pdrive.config import Config, load_config
from pdrive.exceptions import ConfigError, PDriveError
from pdrive.models import EventType, ProgressEvent, SessionState, UploadOutcome
from pdrive.progress import QueueingReporter
from pdrive.session import UploadSessionManager
from pdrive.store import SessionStore
from pdrive.transport import TransportClient

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 3
EXIT_CONFIG = 4

OUTCOME_RETENTION_DAYS = 30

EXIT_CODES = {
    SessionState.COMPLETED: EXIT_OK,
    SessionState.FAILED: EXIT_FAILED,
    SessionState.ABORTED: EXIT_ABORTED,
}


def format_size(size_bytes: float) -> str:
    """Format byte size to human readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


class ProgressBarRenderer:
    """Draws a click progress bar from upload events. Runs behind a QueueingReporter."""

    def __init__(self) -> None:
        self._bar = None
        self._shown = 0

    def on_event(self, event: ProgressEvent) -> None:
        payload = event.payload
        if self._bar is None and "total_bytes" in payload:
            self._bar = click.progressbar(
                length=payload["total_bytes"],
                label=f"Uploading {payload.get('total_parts', 1)} part(s)",
                file=sys.stderr,
            )
            self._bar.__enter__()
            self._shown = 0

        if self._bar is None:
            return
        if event.type == EventType.PART_COMPLETED:
            uploaded = payload.get("bytes_uploaded", self._shown)
            if uploaded > self._shown:
                self._bar.update(uploaded - self._shown)
                self._shown = uploaded
        elif event.type in (
            EventType.UPLOAD_COMPLETED,
            EventType.UPLOAD_FAILED,
            EventType.UPLOAD_ABORTED,
        ):
            self._bar.__exit__(None, None, None)
            self._bar = None


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load(ctx: click.Context) -> Config:
    try:
        config = load_config(ctx.obj.get("config_file"))
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        ctx.exit(EXIT_CONFIG)
    return config


def _build_manager(
    config: Config,
    concurrency: Optional[int] = None,
    reporter=None,
) -> Tuple[UploadSessionManager, TransportClient]:
    transport = TransportClient(
        config.endpoint,
        config.token,
        timeout=config.timeout,
        retry=config.retry_policy(),
    )
    store = SessionStore(config.session_store_dir())
    manager = UploadSessionManager(
        transport,
        store,
        settings=config.to_settings(concurrency),
        reporter=reporter,
    )
    return manager, transport


def _report(config: Config, outcome: UploadOutcome, file_path: Optional[Path] = None) -> int:
    if outcome.state == SessionState.COMPLETED:
        descriptor = outcome.descriptor
        if descriptor is not None:
            click.echo(f"{config.endpoint}/{config.bucket}/{descriptor.key}")
            click.echo(f"  Size: {format_size(descriptor.size)}", err=True)
        if outcome.digest:
            click.echo(f"  SHA-256: {outcome.digest}", err=True)
    elif outcome.state == SessionState.ABORTED:
        click.echo(f"Upload aborted (session {outcome.session_id})", err=True)
    else:
        click.echo(
            f"Upload failed ({outcome.error_kind}): {outcome.error_message}",
            err=True,
        )
        click.echo(f"  Session: {outcome.session_id}", err=True)
        if outcome.resumable:
            target = file_path or "FILE"
            click.echo(f"  Resume with: pdrive upload {target} --resume {outcome.session_id}", err=True)
            click.echo(f"  Or clean up with: pdrive abort {outcome.session_id}", err=True)
    return EXIT_CODES[outcome.state]


@click.group()
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: platform config directory).",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity.")
@click.version_option(package_name="pdrive")
@click.pass_context
def main(ctx: click.Context, config_file: Optional[Path], verbose: int) -> None:
    """Upload files to an S3-compatible bucket."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--resume", "resume_id", default=None, help="Resume a previous session.")
@click.option(
    "--concurrency",
    type=click.IntRange(1, 64),
    default=None,
    help="Parts uploaded in parallel.",
)
@click.option("--key", "object_key", default=None, help="Object key (default: file name).")
@click.option("--quiet", "-q", is_flag=True, default=False, help="No progress bar.")
@click.pass_context
def upload(
    ctx: click.Context,
    file: Path,
    resume_id: Optional[str],
    concurrency: Optional[int],
    object_key: Optional[str],
    quiet: bool,
) -> None:
    """Upload FILE, or resume an interrupted upload of it."""
    config = _load(ctx)
    reporter = None if quiet else QueueingReporter(ProgressBarRenderer())
    manager, transport = _build_manager(config, concurrency, reporter)

    def _on_interrupt(signum, frame):
        click.echo("\nCancelling, waiting for in-flight parts...", err=True)
        manager.cancel()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        if resume_id:
            outcome = manager.resume_upload(resume_id, file)
        else:
            outcome = manager.start_upload(file, config.target(object_key or file.name))
    except PDriveError as e:
        click.echo(f"Error ({e.kind}): {e}", err=True)
        ctx.exit(EXIT_FAILED)
    finally:
        signal.signal(signal.SIGINT, previous)
        if reporter is not None:
            reporter.close()
        transport.close()

    ctx.exit(_report(config, outcome, file))


@main.command()
@click.option(
    "--prune-days",
    type=click.IntRange(0),
    default=OUTCOME_RETENTION_DAYS,
    show_default=True,
    help="Forget finished uploads older than this many days.",
)
@click.pass_context
def sessions(ctx: click.Context, prune_days: int) -> None:
    """List interrupted uploads that can be resumed."""
    config = _load(ctx)
    manager, transport = _build_manager(config)
    try:
        pruned = manager.prune_outcomes(prune_days * 86400)
        found = manager.list_sessions()
    finally:
        transport.close()

    if pruned:
        click.echo(f"Forgot {pruned} finished upload(s).", err=True)

    if not found:
        click.echo("No resumable sessions.")
        return
    for session in found:
        click.echo(
            f"{session.session_id}  {session.state.value:<11}  "
            f"{len(session.completed_parts)}/{session.plan.part_count} parts  "
            f"{format_size(session.file_size):>10}  {session.file_path}"
        )
        if session.last_error:
            click.echo(f"    last error: {session.last_error}")


@main.command()
@click.argument("session_id")
@click.pass_context
def abort(ctx: click.Context, session_id: str) -> None:
    """Abort SESSION_ID and discard its uploaded parts."""
    config = _load(ctx)
    manager, transport = _build_manager(config)
    try:
        outcome = manager.abort_session(session_id)
    except PDriveError as e:
        click.echo(f"Error ({e.kind}): {e}", err=True)
        ctx.exit(EXIT_FAILED)
    finally:
        transport.close()

    if outcome.state == SessionState.ABORTED:
        click.echo(f"Aborted session {outcome.session_id}")
        return
    ctx.exit(_report(config, outcome))


if __name__ == "__main__":
    main()
