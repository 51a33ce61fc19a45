"""Version helpers for sonar_prep."""

from __future__ import annotations

from functools import lru_cache
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as metadata_version

from .constants import PACKAGE_NAME


@lru_cache()
def cli_version() -> str:
    try:
        from . import __version__
    except ImportError:
        __version__ = ""

    if isinstance(__version__, str) and __version__.strip():
        return __version__

    try:
        return metadata_version(PACKAGE_NAME)
    except PackageNotFoundError:
        return "0.0.0"


USER_AGENT = f"ScannerMSBuild/{cli_version()} ({PACKAGE_NAME})"
