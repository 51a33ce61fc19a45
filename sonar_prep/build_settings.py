"""Build environment directories used by the begin step."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .console import log_debug
from .constants import ANALYSIS_CONFIG_FILE_NAME, ANALYSIS_DIR_NAME, BUILD_DIR_ENV_VAR
from .errors import CLIError


@dataclass(frozen=True)
class BuildSettings:
    analysis_base_dir: Path
    sources_dir: Path

    @property
    def sonar_config_dir(self) -> Path:
        return self.analysis_base_dir / "conf"

    @property
    def sonar_output_dir(self) -> Path:
        return self.analysis_base_dir / "out"

    @property
    def sonar_bin_dir(self) -> Path:
        return self.analysis_base_dir / "bin"

    @property
    def analysis_config_file_path(self) -> Path:
        return self.sonar_config_dir / ANALYSIS_CONFIG_FILE_NAME

    @classmethod
    def from_environment(
        cls, cwd: Path, environ: Optional[Mapping[str, str]] = None
    ) -> "BuildSettings":
        env = os.environ if environ is None else environ
        explicit = (env.get(BUILD_DIR_ENV_VAR) or "").strip()
        base = Path(explicit).expanduser() if explicit else cwd / ANALYSIS_DIR_NAME
        return cls(analysis_base_dir=base.resolve(), sources_dir=cwd.resolve())

    def ensure_empty_directories(self) -> None:
        log_debug("Creating the analysis directories")
        for directory in (self.sonar_config_dir, self.sonar_output_dir):
            try:
                if directory.exists():
                    shutil.rmtree(directory)
                directory.mkdir(parents=True)
            except OSError as exc:
                raise CLIError(
                    f"Failed to create an empty directory '{directory}': {exc}"
                ) from exc
