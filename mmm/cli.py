from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from . import add as add_module
from . import scan as scan_module
from .config import DEFAULT_CONFIG_FILENAME, load_settings
from .disambiguation import RichPrompter
from .errors import AbortedError, ConfigInvalidError, ConfigNotFoundError, MmmError
from .identify import IdentifyResult
from .logs import setup_logging
from .models import parse_platform
from .services import Services, build_services

app = typer.Typer(help="Minecraft mod manager (mmm)")

_rich_console = Console()


def _fail(message: str, code: int = 1) -> None:
    typer.secho(message, err=True, fg="red")
    raise typer.Exit(code=code)


def _aborted() -> None:
    typer.secho("Aborted.", fg="yellow")
    raise typer.Exit(code=0)


def _is_interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def _get_services(ctx: typer.Context) -> Services:
    if ctx.obj is None:
        ctx.obj = {}
    services = ctx.obj.get("services")
    if services is None:
        settings = load_settings(Path.cwd())
        services = build_services(ctx.obj["config_path"], settings)
        ctx.obj["services"] = services
    return services


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILENAME), "--config", "-c", help="Path to the mod list config file"
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Never prompt; fail instead"),
    debug: bool = typer.Option(False, "--debug", "-D", help="Verbose diagnostic logging"),
):
    ctx.obj = ctx.obj or {}
    ctx.obj.setdefault("config_path", config.expanduser().resolve())
    ctx.obj["quiet"] = quiet
    ctx.obj.setdefault("interactive", _is_interactive())
    setup_logging(debug=debug, quiet=quiet)


@app.command("add")
def add_command(
    ctx: typer.Context,
    platform: str = typer.Argument(..., help="curseforge or modrinth"),
    project_id: str = typer.Argument(..., help="Project id or slug on that platform"),
    version: str = typer.Option(None, "--version", help="Exact version number or file name to install"),
    allow_version_fallback: bool = typer.Option(
        False, "--allow-version-fallback", help="Try older patch releases of the game version when nothing matches"
    ),
):
    """Resolve a mod, download it and record it in the config and lock files."""
    services = _get_services(ctx)
    quiet = ctx.obj["quiet"]
    request = add_module.AddRequest(
        platform=platform,
        project_id=project_id,
        version=version,
        allow_version_fallback=allow_version_fallback,
        quiet=quiet,
        interactive=not quiet and ctx.obj["interactive"],
    )
    prompter = ctx.obj.get("prompter") or RichPrompter(_rich_console)

    try:
        result = add_module.run_add(services, request, prompter)
    except AbortedError:
        _aborted()
    except KeyboardInterrupt:
        services.cancel.set()
        _aborted()
    except (ConfigNotFoundError, ConfigInvalidError) as exc:
        _fail(str(exc), code=2)
    except MmmError as exc:
        _fail(str(exc))

    if result.already_present:
        typer.secho(f"{result.name} ({result.project_id}) is already managed on {result.platform}.", fg="cyan")
        return
    typer.secho(f"Added {result.name} ({result.project_id}) from {result.platform}", fg="green")


def _print_identified(result: IdentifyResult) -> None:
    if result.matches:
        table = Table(title="Recognized mods", box=box.SIMPLE_HEAVY)
        table.add_column("File")
        table.add_column("Platform", style="magenta")
        table.add_column("Project", style="cyan")
        table.add_column("Name")
        for match in result.matches:
            table.add_row(match.file_name, match.platform.value, match.project_id, match.name)
        _rich_console.print(table)

    if result.unknown:
        table = Table(title="Not found on any platform", box=box.MINIMAL)
        table.add_column("File")
        for candidate in result.unknown:
            table.add_row(candidate.file_name)
        _rich_console.print(table)

    if result.unsure:
        table = Table(title="Could not be checked", box=box.MINIMAL)
        table.add_column("File")
        table.add_column("Reason", style="yellow")
        for entry in result.unsure:
            table.add_row(entry.path.name, entry.error)
        _rich_console.print(table)


def _confirm_persist(result: IdentifyResult) -> bool:
    return typer.confirm(f"Add {len(result.matches)} recognized mod(s) to the config?", default=False)


@app.command("scan")
def scan_command(
    ctx: typer.Context,
    prefer: str = typer.Option("modrinth", "--prefer", "-p", help="Platform to check first"),
    add: bool = typer.Option(False, "--add", "-a", help="Record every recognized mod without asking"),
):
    """Identify unmanaged files in the mods folder by hash."""
    preferred = parse_platform(prefer)
    if preferred is None:
        _fail(f"Unknown platform '{prefer}'. Use one of: curseforge, modrinth.")

    services = _get_services(ctx)
    quiet = ctx.obj["quiet"]
    request = scan_module.ScanRequest(
        prefer=preferred,
        add=add,
        quiet=quiet,
        interactive=not quiet and ctx.obj["interactive"],
    )
    confirm = ctx.obj.get("confirm") or _confirm_persist
    shown = []

    def confirm_with_summary(result: IdentifyResult) -> bool:
        _print_identified(result)
        shown.append(True)
        return confirm(result)

    try:
        report = scan_module.run_scan(services, request, confirm_with_summary)
    except AbortedError:
        _aborted()
    except KeyboardInterrupt:
        services.cancel.set()
        _aborted()
    except (ConfigNotFoundError, ConfigInvalidError) as exc:
        _fail(str(exc), code=2)
    except MmmError as exc:
        _fail(str(exc))

    if report.all_managed:
        typer.secho("Every mod in the mods folder is already managed.", fg="green")
        return

    if not shown and not quiet:
        _print_identified(report.result)

    for match, reason in report.failures:
        typer.secho(f"Could not record {match.file_name}: {reason}", err=True, fg="yellow")

    if report.blocked_by_unsure:
        typer.secho(
            f"Nothing was recorded: {len(report.result.unsure)} file(s) could not be checked. Re-run the scan to retry.",
            fg="yellow",
        )
    elif report.persisted:
        recorded = len(report.result.matches) - len(report.failures)
        typer.secho(f"Recorded {recorded} mod(s) in the config and lock files.", fg="green")
    elif report.result.matches and not quiet:
        typer.secho("Nothing was recorded. Run again with --add to record recognized mods.", fg="cyan")
