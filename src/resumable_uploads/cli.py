"""
Resumable Uploads CLI

Implements 4 CLI verbs on top of the Operations facade:
- upload: Upload a file, resuming persisted progress for a reused session id
- status: Show persisted resume state for a session
- abort: Release a persisted session's server-side transaction
- plan: Show the chunk plan for a file (no network access)
"""
from __future__ import annotations

import logging
from typing import Optional

import typer

from .cli_context import CLIContext
from .operations import OpsConfig, plan_file, run_and_exit
from .operations.printers import (
    print_abort_summary, print_plan, print_status, print_upload_summary, upload_progress
)
from .settings import MIB
from .sources import FileSource

app = typer.Typer(name="resumable-uploads", help="Resumable chunked uploads to S3-style and blob storage")


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def upload(
    path: str = typer.Argument(..., help="File to upload"),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Session id; reuse it to resume an interrupted upload"),
    key: Optional[str] = typer.Option(None, "--key", help="Object key (default: random UUID plus the file extension)"),
    ci: bool = typer.Option(False, "--ci", help="CI mode (suppress progress)"),
) -> None:
    """Upload a file to the configured bucket or container."""

    def _upload() -> None:
        context = CLIContext.from_env()
        ops = context.operations(OpsConfig(ci=ci))

        source = FileSource(path)
        with upload_progress(source.size, source.name, ci_mode=ops.cfg.ci) as on_progress:
            final_session_id, result = ops.upload(path, session_id=session_id, key=key, on_progress=on_progress)

        print_upload_summary(final_session_id, result)

    run_and_exit(_upload)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session id to inspect"),
) -> None:
    """Show persisted resume state for a session."""

    def _status() -> None:
        context = CLIContext.from_env()
        ops = context.operations(OpsConfig())
        record_id, state = ops.status(session_id)
        print_status(record_id, state)

    run_and_exit(_status)


@app.command()
def abort(
    session_id: str = typer.Argument(..., help="Session id to abort"),
) -> None:
    """Abort a persisted session and clear its state."""

    def _abort() -> None:
        context = CLIContext.from_env()
        ops = context.operations(OpsConfig())
        found = ops.abort(session_id)
        print_abort_summary(session_id, found)

    run_and_exit(_abort)


@app.command()
def plan(
    path: str = typer.Argument(..., help="File to plan"),
    chunk_size: int = typer.Option(5 * MIB, "--chunk-size", help="Bytes per chunk"),
    min_size: int = typer.Option(5 * MIB, "--min-size", help="Files below this size are sent whole"),
) -> None:
    """Show the chunk plan for a file."""

    def _plan() -> None:
        result = plan_file(path, chunk_size=chunk_size, min_file_size_for_chunking=min_size)
        print_plan(path, result)

    run_and_exit(_plan)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
