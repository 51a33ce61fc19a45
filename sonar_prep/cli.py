#!/usr/bin/env python3
"""sonar_prep CLI entry point."""

from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional, Sequence

import click
import typer

from .analysis_config import load_analysis_config
from .analyzer_settings import ProjectInputs, resolve_project_analyzer_settings
from .build_settings import BuildSettings
from .config import effective_config, load_config, resolve_config_path, write_default_config
from .console import configure_console, log, log_error
from .constants import (
    EXIT_CODE_FAILURE,
    EXIT_CODE_INTERRUPT,
    EXIT_CODE_USAGE,
    PACKAGE_NAME,
    PROP_VERBOSE,
    SUPPORTED_LANGUAGES,
)
from .context import AppContext
from .errors import CLIError
from .preprocessor import PreProcessor
from .settings import build_settings
from .utils import redact
from .version import cli_version

app = typer.Typer(help="Prepare a .NET build for SonarQube / SonarCloud analysis")
config_app = typer.Typer(help="Inspect and create the sonar_prep config file")
app.add_typer(config_app, name="config")


def handle_begin(args: SimpleNamespace) -> int:
    configure_console(quiet=args.quiet, verbose=args.verbose)
    config_path = resolve_config_path()
    config = load_config(config_path)
    cwd = Path(args.cwd) if getattr(args, "cwd", None) else Path.cwd()

    properties = list(args.properties)
    if args.verbose and not any(
        f"{PROP_VERBOSE}=" in entry for entry in properties
    ):
        properties.append(f"{PROP_VERBOSE}=true")
    settings = build_settings(
        project_key=args.key,
        project_name=args.name,
        project_version=args.version,
        organization=args.organization,
        property_args=properties,
        settings_file=args.settings,
        cwd=cwd,
        config=config,
    )
    context = AppContext(
        config=config,
        config_path=config_path,
        cwd=cwd,
        parallel=max(1, config.parallel or 1),
    )
    processor = PreProcessor(context)
    if not processor.execute(settings, BuildSettings.from_environment(cwd)):
        log_error("Pre-processing failed. Exit code: 1")
        return EXIT_CODE_FAILURE
    log("Pre-processing succeeded.")
    return 0


def handle_analyzer_settings(args: SimpleNamespace) -> int:
    configure_console(verbose=args.verbose)
    if args.language not in SUPPORTED_LANGUAGES:
        supported = ", ".join(SUPPORTED_LANGUAGES)
        raise CLIError(f"unsupported language '{args.language}' (expected one of: {supported})")
    config_file = args.analysis_config
    if config_file is None:
        config_file = BuildSettings.from_environment(Path.cwd()).analysis_config_file_path
    config = load_analysis_config(config_file)
    project = ProjectInputs(
        project_dir=Path(args.project_dir),
        project_config_dir=Path(args.project_config_dir),
        original_ruleset_path=args.ruleset,
        original_analyzers=list(args.analyzers),
        original_additional_files=list(args.additional_files),
        is_test_project=args.test_project,
    )
    outputs = resolve_project_analyzer_settings(config, args.language, project)
    typer.echo(f"ruleset = {outputs.ruleset_path or ''}")
    for path in outputs.analyzer_paths:
        typer.echo(f"analyzer = {path}")
    for path in outputs.additional_file_paths:
        typer.echo(f"additional_file = {path}")
    return 0


def handle_config_path(_: SimpleNamespace) -> int:
    typer.echo(str(resolve_config_path()))
    return 0


def handle_config_show(_: SimpleNamespace) -> int:
    config_path = resolve_config_path()
    values, sources = effective_config(load_config(config_path))
    typer.echo(f"# config file: {config_path}{'' if config_path.exists() else ' (missing)'}")
    for key, value in values.items():
        shown = "" if value is None else value
        typer.echo(f"{key} = {shown}  ({sources.get(key, 'default')})")
    return 0


def handle_config_init(args: SimpleNamespace) -> int:
    path = write_default_config(resolve_config_path(), force=args.force)
    log(f"wrote config template to {path}")
    return 0


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"{PACKAGE_NAME} {cli_version()}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def cli_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="show the sonar_prep version and exit",
    ),
) -> None:
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=EXIT_CODE_USAGE)


@app.command()
def begin(
    key: Optional[str] = typer.Option(None, "--key", "-k", help="project key (required)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="project name"),
    version: Optional[str] = typer.Option(None, "--version", "-v", help="project version"),
    organization: Optional[str] = typer.Option(
        None, "--organization", "-o", help="SonarCloud organization"
    ),
    properties: List[str] = typer.Option(
        [],
        "-d",
        help="analysis property as key=value (repeat for multiple properties)",
    ),
    settings: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="path to a SonarQube.Analysis.xml settings file",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="enable debug logging"),
    quiet: bool = typer.Option(False, "--quiet", help="suppress informational output"),
) -> None:
    args = SimpleNamespace(
        key=key,
        name=name,
        version=version,
        organization=organization,
        properties=properties,
        settings=settings,
        verbose=verbose,
        quiet=quiet,
    )
    try:
        rc = handle_begin(args)
    except CLIError as exc:
        log_error(f"error: {redact(str(exc))}")
        raise typer.Exit(code=EXIT_CODE_FAILURE) from exc
    raise typer.Exit(code=rc)


@app.command("analyzer-settings")
def analyzer_settings(
    language: str = typer.Option(..., "--language", "-l", help="project language (cs or vbnet)"),
    project_dir: Path = typer.Option(..., "--project-dir", help="directory of the project file"),
    project_config_dir: Path = typer.Option(
        ..., "--config-dir", help="per-project output directory for the merged ruleset"
    ),
    ruleset: Optional[str] = typer.Option(
        None, "--ruleset", help="the project's own CodeAnalysisRuleSet"
    ),
    analyzers: List[str] = typer.Option(
        [], "--analyzer", help="analyzer assembly already referenced by the project"
    ),
    additional_files: List[str] = typer.Option(
        [], "--additional-file", help="additional file already referenced by the project"
    ),
    test_project: bool = typer.Option(
        False, "--test-project", help="the project is a test project"
    ),
    analysis_config: Optional[Path] = typer.Option(
        None,
        "--analysis-config",
        help="path to SonarQubeAnalysisConfig.xml (defaults to the one under .sonarqube/conf)",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="enable debug logging"),
) -> None:
    args = SimpleNamespace(
        language=language,
        project_dir=project_dir,
        project_config_dir=project_config_dir,
        ruleset=ruleset,
        analyzers=analyzers,
        additional_files=additional_files,
        test_project=test_project,
        analysis_config=analysis_config,
        verbose=verbose,
    )
    try:
        rc = handle_analyzer_settings(args)
    except CLIError as exc:
        log_error(f"error: {redact(str(exc))}")
        raise typer.Exit(code=EXIT_CODE_FAILURE) from exc
    raise typer.Exit(code=rc)


@config_app.command("path")
def config_path() -> None:
    rc = handle_config_path(SimpleNamespace())
    raise typer.Exit(code=rc)


@config_app.command("show")
def config_show() -> None:
    try:
        rc = handle_config_show(SimpleNamespace())
    except CLIError as exc:
        log_error(f"error: {redact(str(exc))}")
        raise typer.Exit(code=EXIT_CODE_USAGE) from exc
    raise typer.Exit(code=rc)


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="overwrite an existing config file"),
) -> None:
    args = SimpleNamespace(force=force)
    try:
        rc = handle_config_init(args)
    except CLIError as exc:
        log_error(f"error: {redact(str(exc))}")
        raise typer.Exit(code=EXIT_CODE_USAGE) from exc
    raise typer.Exit(code=rc)


def main(argv: Optional[Sequence[str]] = None) -> int:
    command = typer.main.get_command(app)
    try:
        rc = command.main(
            args=list(argv) if argv is not None else None,
            prog_name="sonar-prep",
            standalone_mode=False,
        )
    except SystemExit as exc:
        return int(exc.code or 0)
    except (KeyboardInterrupt, typer.Abort):
        log_error("interrupted")
        return EXIT_CODE_INTERRUPT
    except click.ClickException as exc:
        exc.show()
        return EXIT_CODE_USAGE
    return rc if isinstance(rc, int) else 0


if __name__ == "__main__":
    sys.exit(main())
