"""Command-line interface for the activity engine."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer

from .config import CollectorSettings
from .paths import get_backup_dir, get_db_path, get_log_path

app = typer.Typer(help="Local-first application focus tracker.")
categories_app = typer.Typer(help="Manage categories and app assignments.")
app.add_typer(categories_app, name="categories")

DbOption = typer.Option(
    None,
    "--db",
    path_type=Path,
    help="Location of the activity SQLite database.",
)


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
def collect(
    db_path: Optional[Path] = DbOption,
    sample_seconds: float = typer.Option(
        1.0,
        "--interval",
        min=0.2,
        help="Sampling interval in seconds.",
    ),
    dwell_samples: int = typer.Option(
        2,
        "--dwell",
        min=1,
        help="Samples a new app must persist before the session switches.",
    ),
    min_session_ms: int = typer.Option(
        500,
        "--min-session-ms",
        min=0,
        help="Sessions shorter than this are discarded.",
    ),
    idle_minutes: float = typer.Option(
        5.0,
        "--idle-threshold",
        min=0.5,
        help="Minutes of inactivity before the open session is closed.",
    ),
) -> None:
    """Run the background collector until interrupted."""
    from .collector import ActivityCollector

    _attach_file_log()
    settings = CollectorSettings.from_intervals(
        sample_seconds=sample_seconds,
        idle_minutes=idle_minutes,
        dwell_samples=dwell_samples,
        min_session_ms=min_session_ms,
    )
    collector = ActivityCollector(db_path=db_path or get_db_path(), settings=settings)
    collector.run_forever()


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    timeline: bool = typer.Option(False, "--timeline", help="Also print the timeline rail."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Print the category breakdown for a specific day."""
    from .reporting import SummaryPrinter

    target = _parse_date(date)
    SummaryPrinter(_service(db_path)).print_daily_summary(target, show_timeline=timeline)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    db_path: Optional[Path] = DbOption,
    sample_seconds: float = typer.Option(
        1.0,
        "--interval",
        min=0.2,
        help="Sampling interval in seconds.",
    ),
    idle_minutes: float = typer.Option(
        5.0,
        "--idle-threshold",
        min=0.5,
        help="Minutes of inactivity before the open session is closed.",
    ),
    collect: bool = typer.Option(
        True,
        "--collect/--no-collect",
        help="Run the collector in the background while serving.",
    ),
    open_docs: bool = typer.Option(
        False,
        "--open-docs/--no-open-docs",
        help="Open the interactive API docs in a browser.",
    ),
) -> None:
    """Serve the engine API over local HTTP."""
    from .server_runner import run_server

    settings = CollectorSettings.from_intervals(
        sample_seconds=sample_seconds,
        idle_minutes=idle_minutes,
    )
    run_server(
        host=host,
        port=port,
        db_path=db_path or get_db_path(),
        settings=settings,
        collect=collect,
        open_docs=open_docs,
    )


@categories_app.command("list")
def list_categories(db_path: Optional[Path] = DbOption) -> None:
    """Show every category with the detected apps resolving to it."""
    response = _check(_service(db_path).get_app_categories())
    for category_id, entry in response["data"]["categories"].items():
        marker = " (custom)" if entry.get("isCustom") else ""
        typer.echo(f"{category_id}{marker} {entry['color']}  {entry['description']}")
        for app_key in entry["apps"]:
            typer.echo(f"    {app_key}")


@categories_app.command("create")
def create_category(
    name: str = typer.Argument(..., help="Display name; the id is derived from it."),
    color: str = typer.Option(..., "--color", help="Hex color such as #A554E8."),
    description: str = typer.Option("", "--description", help="Short description."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Create a custom category."""
    response = _check(_service(db_path).create_custom_category(name, description, color))
    typer.echo(f"Created category {response['id']}")


@categories_app.command("update")
def update_category(
    category_id: str = typer.Argument(...),
    color: str = typer.Option(..., "--color", help="Hex color such as #A554E8."),
    description: str = typer.Option("", "--description", help="Short description."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Change the description and color of a custom category."""
    _check(_service(db_path).update_custom_category(category_id, None, description, color))
    typer.echo(f"Updated category {category_id}")


@categories_app.command("delete")
def delete_category(
    category_id: str = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Delete a custom category; its apps fall back to miscellaneous."""
    _check(_service(db_path).delete_custom_category(category_id))
    typer.echo(f"Deleted category {category_id}")


@categories_app.command("add-member")
def add_member(
    category_id: str = typer.Argument(...),
    app_key: str = typer.Argument(..., help="Application name, e.g. chrome.exe."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Make an application a member of a custom category."""
    _check(_service(db_path).add_app_to_custom_category(category_id, app_key))
    typer.echo(f"Added {app_key} to {category_id}")


@categories_app.command("assign")
def assign_app(
    app_key: str = typer.Argument(..., help="Application name, e.g. chrome.exe."),
    category_id: str = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Override the category of one application."""
    _check(_service(db_path).assign_app_to_category(app_key, category_id))
    typer.echo(f"Assigned {app_key} to {category_id}")


@categories_app.command("unassign")
def unassign_app(
    app_key: str = typer.Argument(...),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Remove the override for one application."""
    response = _check(_service(db_path).remove_app_category_assignment(app_key))
    typer.echo("Override removed." if response["removed"] else "No override was set.")


@categories_app.command("reset")
def reset_categories(
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt."),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Remove every custom category and override."""
    if not yes:
        typer.confirm("Delete all custom categories and overrides?", abort=True)
    _check(_service(db_path).reset_categories())
    typer.echo("Category settings reset.")


@app.command("export-settings")
def export_settings(
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", path_type=Path, help="Destination JSON file."
    ),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Write custom categories and overrides to a JSON file."""
    response = _check(_service(db_path).export_category_settings())
    destination = output or (
        get_backup_dir() / f"category-settings.{datetime.now():%Y%m%d-%H%M%S}.json"
    )
    destination.write_text(response["data"], encoding="utf-8")
    typer.echo(f"Exported settings to {destination}")


@app.command("import-settings")
def import_settings(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, path_type=Path),
    db_path: Optional[Path] = DbOption,
) -> None:
    """Replace custom categories and overrides with the contents of a JSON file."""
    _check(_service(db_path).import_category_settings(source.read_text(encoding="utf-8")))
    typer.echo(f"Imported settings from {source}")


def _service(db_path: Optional[Path]):
    from .service import TrackerService

    return TrackerService(db_path or get_db_path())


def _check(response: dict[str, Any]) -> dict[str, Any]:
    if not response.get("success"):
        typer.secho(f"Error: {response.get('error')}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return response


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now()
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise typer.BadParameter("Expected YYYY-MM-DD", param_hint="--date") from exc


def _attach_file_log() -> None:
    handler = logging.FileHandler(get_log_path(), encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.getLogger().addHandler(handler)
