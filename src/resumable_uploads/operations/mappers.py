"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import typer
from typing import Callable, TypeVar

T = TypeVar('T')

# Exit code mapping, keyed by exception class name
EXIT_CODES = {
    "ValueError": 2,
    "ValidationError": 2,
    "FileNotFoundError": 2,
    "UploadError": 3,
    "TransportError": 3,
    "BackendRejection": 4,
    "AuthorizationError": 5,
    "ProtocolMismatchError": 6,
    "KeyResolutionError": 7,
    "FinalizeError": 8,
    "UploadCanceled": 130,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns:
    - 0: Success
    - 2: Invalid configuration or arguments (ValueError, ValidationError, FileNotFoundError)
    - 3: Network failure (TransportError) or unknown error
    - 4: Storage service rejected the upload (BackendRejection)
    - 5: Signing server failed or refused (AuthorizationError)
    - 6: Storage service addressed the wrong bucket/key (ProtocolMismatchError)
    - 7: No object key could be resolved (KeyResolutionError)
    - 8: Finalize precondition violated (FinalizeError)
    - 130: Upload canceled (UploadCanceled)

    Args:
        exc: Exception to map

    Returns:
        Exit code (3 as fallback for unknown exceptions)
    """
    return EXIT_CODES.get(type(exc).__name__, 3)


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. This centralizes error handling so
    CLI commands don't need individual try/except blocks.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except Exception as e:
        from .printers import print_error
        print_error(e)
        raise typer.Exit(code=exit_code_for(e)) from e
