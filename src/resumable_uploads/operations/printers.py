"""
Human-readable output formatting.

Centralizes all CLI output formatting so CLI commands stay thin.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn
from rich.table import Table

from ..errors import UploadError
from ..models import ChunkPlan, FinalizeResult, PersistedState, ProgressEvent
from ..transport import ProgressCallback

_console = Console()
_err_console = Console(stderr=True)


def print_plan(path: str, plan: ChunkPlan) -> None:
    """
    Print the chunk plan for a file.

    Args:
        path: File that was planned
        plan: Computed plan
    """
    mode = f"{len(plan)} chunks of {_format_bytes(plan.chunk_size)}" if plan.chunked else "whole file (single request)"
    _console.print(f"[bold]File:[/] {path}")
    _console.print(f"[bold]Size:[/] {_format_bytes(plan.file_size)}")
    _console.print(f"[bold]Mode:[/] {mode}")

    if plan.chunked:
        table = Table(title="Chunks")
        table.add_column("Part", style="cyan", justify="right")
        table.add_column("Range", style="yellow")
        table.add_column("Size", justify="right")
        for descriptor in plan:
            table.add_row(
                str(descriptor.part_number),
                f"{descriptor.start}-{descriptor.end - 1}",
                _format_bytes(descriptor.size),
            )
        _console.print(table)


def print_upload_summary(session_id: str, result: FinalizeResult) -> None:
    """Print the outcome of a completed upload."""
    _console.print(f"[green]Uploaded[/] {result.bucket}/{result.key}")
    _console.print(f"[bold]Session:[/] {session_id}")
    _console.print(f"[bold]Parts:[/] {result.parts}")
    if result.etag:
        _console.print(f"[bold]ETag:[/] [dim]{result.etag}[/]")


def print_status(record_id: str, state: Optional[PersistedState]) -> None:
    """
    Print persisted resume state.

    Args:
        record_id: Persistence record that was looked up
        state: Persisted state, or None if nothing is stored
    """
    if state is None:
        _console.print(f"[dim]No persisted state for {record_id}[/]")
        return

    _console.print(f"[bold]Session:[/] {state.session_id}")
    _console.print(f"[bold]Record:[/] {record_id}")
    _console.print(f"[bold]Size:[/] {_format_bytes(state.file_size)} (chunks of {_format_bytes(state.chunk_size)})")
    _console.print(f"[bold]Key:[/] {state.object_key or '-'}")
    _console.print(f"[bold]Remote handle:[/] {state.remote_handle or '-'}")

    receipts = state.sorted_receipts()
    if receipts:
        table = Table(title="Acknowledged chunks")
        table.add_column("Index", style="cyan", justify="right")
        table.add_column("Token", style="yellow")
        for receipt in receipts:
            table.add_row(str(receipt.index), receipt.token)
        _console.print(table)
    else:
        _console.print("[dim]No acknowledged chunks[/]")


def print_abort_summary(session_id: str, found: bool) -> None:
    if found:
        _console.print(f"Aborted {session_id} and cleared its persisted state")
    else:
        _console.print(f"[dim]No persisted state for {session_id}; nothing to abort[/]")


def print_error(exc: BaseException) -> None:
    """Print a failure with the structured context upload errors carry."""
    _err_console.print(f"[red]Error:[/] {exc}")
    if isinstance(exc, UploadError):
        details = []
        if exc.session_id:
            details.append(f"session={exc.session_id}")
        if exc.chunk_index is not None:
            details.append(f"chunk={exc.chunk_index}")
        if exc.status_code is not None:
            details.append(f"status={exc.status_code}")
        if exc.code:
            details.append(f"code={exc.code}")
        if details:
            _err_console.print(f"[dim]{' '.join(details)}[/]")


@contextmanager
def upload_progress(total: int, description: str, ci_mode: bool = False) -> Iterator[Optional[ProgressCallback]]:
    """
    Progress bar fed by transport progress events.

    Yields a callback for the transport, or None in CI mode.
    """
    if ci_mode:
        yield None
        return

    loaded_by_chunk = {}
    columns = (
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
    )
    with Progress(*columns, console=_console, transient=True) as progress:
        task_id = progress.add_task(description, total=total)

        def on_progress(event: ProgressEvent) -> None:
            loaded_by_chunk[event.chunk_index] = event.loaded
            progress.update(task_id, completed=min(sum(loaded_by_chunk.values()), total))

        yield on_progress


def _format_bytes(size_bytes: int) -> str:
    """
    Format byte count as human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 MB", "42 KB")
    """
    if size_bytes == 0:
        return "0 B"
    elif size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
