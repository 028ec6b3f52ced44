"""Thin CLI wrapper for kernel_orchestrator.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import os
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from kernel_orchestrator import __version__
from kernel_orchestrator.buildconfig import (
    BuildConfig,
    assemble_environment,
    derive_child_config,
    load_build_config,
)
from kernel_orchestrator.buildconfig.schema import render_value
from kernel_orchestrator.config import Settings, get_settings, print_settings_json
from kernel_orchestrator.errors import ConsistencyError, OrchestratorError

app = typer.Typer(
    name="kbuild",
    help="Kernel build orchestrator - configure, build and distribute kernels",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kernel-orchestrator version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Kernel build orchestrator - configure, build and distribute kernels."""


def setup_logging(settings: Settings) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def report_error(e: OrchestratorError) -> None:
    err_console.print(f"[red]Error ({e.code}):[/red] ", end="")
    err_console.print(e.message, markup=False, highlight=False)
    if isinstance(e, ConsistencyError) and e.remediation:
        err_console.print(f"[yellow]{e.remediation}[/yellow]", markup=True)


def caller_environment(
    config_path: str | None,
    fragments: list[str] | None,
    assignments: list[str] | None,
) -> dict[str, str]:
    """Process environment plus command-line overrides.

    Raises:
        typer.BadParameter: If a --set value is not KEY=VALUE.
    """
    env = dict(os.environ)
    if config_path:
        env["BUILD_CONFIG"] = config_path
    if fragments:
        existing = env.get("BUILD_CONFIG_FRAGMENTS", "").split()
        env["BUILD_CONFIG_FRAGMENTS"] = " ".join([*existing, *fragments])
    for assignment in assignments or []:
        key, sep, value = assignment.partition("=")
        if not sep or not key:
            raise typer.BadParameter(
                f"Expected KEY=VALUE, got {assignment!r}", param_hint="--set"
            )
        env[key] = value
    return env


def load_config(
    settings: Settings,
    config_path: str | None,
    fragments: list[str] | None,
    assignments: list[str] | None,
) -> BuildConfig:
    env = caller_environment(config_path, fragments, assignments)
    raw = assemble_environment(env, settings.root_dir, strict_keys=settings.strict_keys)
    return load_build_config(raw)


ConfigOption = Annotated[
    str | None,
    typer.Option("--config", "-c", help="Base build config (overrides BUILD_CONFIG)"),
]
FragmentOption = Annotated[
    list[str] | None,
    typer.Option("--fragment", "-f", help="Build config fragment (can be repeated)"),
]
SetOption = Annotated[
    list[str] | None,
    typer.Option("--set", "-s", help="Override an option as KEY=VALUE (can be repeated)"),
]


@app.command(
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def build(
    make_args: Annotated[
        list[str] | None,
        typer.Argument(help="Extra arguments passed to every make invocation"),
    ] = None,
    config_path: ConfigOption = None,
    fragments: FragmentOption = None,
    assignments: SetOption = None,
) -> None:
    """Run the kernel build pipeline.

    Exits 0 on success or when the build ends early (matching kernel version,
    tags mode); otherwise with the exit code of the failing step.
    """
    from kernel_orchestrator.pipeline.service import run_pipeline

    settings = get_settings()
    setup_logging(settings)
    try:
        build_config = load_config(settings, config_path, fragments, assignments)
        result = run_pipeline(build_config, settings, make_args or [])
    except OrchestratorError as e:
        report_error(e)
        raise typer.Exit(code=e.exit_code) from None
    except OSError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from None

    if result.best_effort_failures:
        err_console.print(
            f"[yellow]Failed best-effort stages: "
            f"{', '.join(result.best_effort_failures)}[/yellow]"
        )
    if result.exit_code:
        raise typer.Exit(code=result.exit_code)


@app.command()
def config(
    config_path: ConfigOption = None,
    fragments: FragmentOption = None,
    assignments: SetOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the effective build configuration."""
    settings = get_settings()
    try:
        build_config = load_config(settings, config_path, fragments, assignments)
    except OrchestratorError as e:
        report_error(e)
        raise typer.Exit(code=e.exit_code) from None

    if json_output:
        output = {
            "settings": json.loads(print_settings_json(settings)),
            "build_config": build_config.model_dump(mode="json", by_alias=True),
        }
        typer.echo(json.dumps(output, indent=2, sort_keys=True))
        return

    console.print("[bold]Orchestrator settings:[/bold]")
    console.print(f"  Root directory:  {settings.root_dir}")
    console.print(f"  Log level:       {settings.log_level}")
    console.print(f"  Jobs:            {settings.jobs}")
    console.print(f"  Strict keys:     {settings.strict_keys}")
    console.print()
    console.print("[bold]Build configuration:[/bold]")
    for name in BuildConfig.option_names():
        value = render_value(getattr(build_config, name.lower()))
        if value:
            console.print(f"  {name}={value}", markup=False, highlight=False)
    console.print()
    console.print(f"  Mixed build:     {build_config.mixed_build_mode.value}")
    console.print(f"  Symbol list:     {build_config.symbol_list_mode.value}")


@app.command("child-env")
def child_env(
    config_path: ConfigOption = None,
    fragments: FragmentOption = None,
    assignments: SetOption = None,
) -> None:
    """Print the environment a mixed-build child would receive."""
    settings = get_settings()
    try:
        build_config = load_config(settings, config_path, fragments, assignments)
    except OrchestratorError as e:
        report_error(e)
        raise typer.Exit(code=e.exit_code) from None
    typer.echo(derive_child_config(build_config).render().decode("utf-8"), nl=False)


symbols_app = typer.Typer(help="Work with KMI symbol lists")
app.add_typer(symbols_app, name="symbols")


@symbols_app.command("merge")
def symbols_merge(
    lists: Annotated[
        list[Path],
        typer.Argument(help="Symbol list files to merge"),
    ],
    out_dir: Annotated[
        Path,
        typer.Option("--out-dir", "-o", help="Directory for abi_symbollist and its report"),
    ] = Path("."),
) -> None:
    """Merge symbol lists into a normalized abi_symbollist."""
    from kernel_orchestrator.symbols import merge_symbol_lists
    from kernel_orchestrator.symbols.lists import flatten_symbol_list
    from kernel_orchestrator.symbols.processor import (
        RAW_LIST_NAME,
        REPORT_NAME,
        SYMBOL_LIST_NAME,
    )

    try:
        merged = merge_symbol_lists(lists, base_dir=Path.cwd())
    except FileNotFoundError as e:
        err_console.print(f"[red]Symbol list not found: {e}[/red]")
        raise typer.Exit(code=1) from None

    out_dir.mkdir(parents=True, exist_ok=True)
    normalized = merged.normalized()
    (out_dir / SYMBOL_LIST_NAME).write_text(normalized, encoding="utf-8")
    (out_dir / REPORT_NAME).write_text(merged.report(), encoding="utf-8")
    raw = flatten_symbol_list(normalized)
    (out_dir / RAW_LIST_NAME).write_text("".join(f"{s}\n" for s in raw), encoding="utf-8")
    console.print(f"[green]Merged {len(merged)} symbols into {out_dir / SYMBOL_LIST_NAME}[/green]")


@symbols_app.command("compare")
def symbols_compare(
    symvers: Annotated[Path, typer.Argument(help="Module.symvers of the build")],
    raw_list: Annotated[Path, typer.Argument(help="Raw symbol list (one name per line)")],
    objects: Annotated[
        list[str] | None,
        typer.Option("--object", help="Object whose exports are compared (can be repeated)"),
    ] = None,
) -> None:
    """Compare exported symbols with a raw symbol list."""
    from kernel_orchestrator.symbols.symvers import compare_to_symbol_list, exported_symbols

    for path in (symvers, raw_list):
        if not path.is_file():
            err_console.print(f"[red]File not found: {path}[/red]")
            raise typer.Exit(code=1)

    expected = raw_list.read_text(encoding="utf-8").split()
    actual = exported_symbols(symvers, objects or ["vmlinux"])
    try:
        compare_to_symbol_list(expected, actual)
    except OrchestratorError as e:
        report_error(e)
        raise typer.Exit(code=e.exit_code) from None
    console.print(f"[green]Symbol list matches {len(actual)} exported symbols[/green]")


if __name__ == "__main__":
    app()
