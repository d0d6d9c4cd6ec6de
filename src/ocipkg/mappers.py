"""
Error mapping for the CLI.

Maps exceptions to exit codes so every Typer command handles errors the
same way.
"""
from __future__ import annotations

from typing import Callable, TypeVar

import typer

T = TypeVar('T')

EXIT_CODES = {
    "NotFound": 1,
    "InvalidName": 2,
    "ValueError": 2,
    "NetworkError": 3,
    "AlreadyExists": 4,
    "IoError": 5,
    "DigestMismatch": 6,
    "AuthFailure": 7,
    "ProtocolError": 8,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to exit code.

    - 0: Success
    - 1: Image or blob not found (NotFound)
    - 2: Malformed input (InvalidName, ValueError)
    - 3: Network error or unknown error
    - 4: Output already exists (AlreadyExists)
    - 5: Filesystem failure (IoError)
    - 6: Content failed verification (DigestMismatch)
    - 7: Registry rejected credentials (AuthFailure)
    - 8: Unexpected registry response or malformed archive (ProtocolError)
    """
    return EXIT_CODES.get(type(exc).__name__, 3)


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Runs ``func``; any exception is reported on stderr and turned into a
    ``typer.Exit`` with the mapped exit code.
    """
    try:
        return func()
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=exit_code_for(e)) from e
