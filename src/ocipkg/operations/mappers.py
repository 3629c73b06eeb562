"""
Exit codes for ocipkg commands.

Every Typer command runs through run_and_exit, which turns OciError
subclasses (and the few builtin errors commands can raise) into exit codes.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

import typer

T = TypeVar('T')

logger = logging.getLogger(__name__)

# Exit codes by exception class name; subclasses inherit their base's code
EXIT_CODES = {
    "NotFound": 1,
    "FileNotFoundError": 1,
    "FormatError": 2,
    "ValueError": 2,
    "RegistryError": 3,
    "AuthorizationDenied": 4,
    "DigestMismatch": 5,
    "UploadOffsetMismatch": 5,
    "UnsupportedManifestType": 5,
    "CodecError": 5,
    "StoreError": 6,
}

DEFAULT_EXIT_CODE = 3


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns:
    - 1: Not found (NotFound, missing input file)
    - 2: Validation error (FormatError and subclasses, ValueError)
    - 3: Network/registry error (RegistryError) or unknown error
    - 4: Authorization denied
    - 5: Integrity error (digest or offset mismatch, unsupported manifest, codec)
    - 6: Local store error

    The first class in the exception's MRO with a mapping wins, so
    `InvalidDigest` maps like `FormatError`.
    """
    for cls in type(exc).__mro__:
        code = EXIT_CODES.get(cls.__name__)
        if code is not None:
            return code
    return DEFAULT_EXIT_CODE


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Run a command body, printing failures to stderr and exiting with their code.

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except (typer.Exit, typer.Abort):
        raise
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=exit_code_for(e)) from e
