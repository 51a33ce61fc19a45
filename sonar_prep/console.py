"""Console helpers for sonar_prep."""

from __future__ import annotations

import sys

_LOG_SILENCED = False
_LOG_VERBOSE = False


def configure_console(*, quiet: bool = False, verbose: bool = False) -> None:
    global _LOG_SILENCED, _LOG_VERBOSE
    if quiet:
        _LOG_SILENCED = True
    if verbose:
        _LOG_VERBOSE = True


def reset_console() -> None:
    global _LOG_SILENCED, _LOG_VERBOSE
    _LOG_SILENCED = False
    _LOG_VERBOSE = False


def log(message: str) -> None:
    if _LOG_SILENCED:
        return
    print(f"[sonar_prep] {message}", file=sys.stdout)


def log_debug(message: str) -> None:
    if not _LOG_VERBOSE:
        return
    log(f"DEBUG: {message}")


def log_warning(message: str) -> None:
    print(f"[sonar_prep] WARNING: {message}", file=sys.stderr)


def log_error(message: str) -> None:
    print(f"[sonar_prep] {message}", file=sys.stderr)
