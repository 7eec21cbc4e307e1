"""
CLI for gum.

Lists projects and frecent directories from the local index, migrates the
legacy JSON cache into the store, and runs integrity checks.
"""

import functools
import json
import logging
import os
import signal
import sys
import threading
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from gum import frecency
from gum.cache import DIRS_KEY, DatabaseCache, FileCache
from gum.config import GumConfig
from gum.database import Database
from gum.discovery import discover_project_dirs, discover_projects
from gum.errors import EXIT_FAILURE, EXIT_STORAGE, ConfigError, GumError
from gum.models import Project, utc_now


console = Console()
logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ROOTS = ("~/projects", "~/src", "~/code", "~/work", "~/repos", "~/git")


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_config() -> GumConfig:
    """Load configuration from environment, exiting with code 2 if unusable."""
    try:
        config = GumConfig.from_env()
        config.ensure_writable()
        return config
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        console.print("\nSet GUM_CACHE_DIR (or XDG_CACHE_HOME) to a writable directory.")
        sys.exit(e.exit_code)


def open_db(config: GumConfig) -> Database:
    return Database.from_config(config)


def exits_on_error(func):
    """Print GumError and exit with its code instead of a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except GumError as e:
            logger.debug("Command failed", exc_info=True)
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(e.exit_code)

    return wrapper


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose: bool):
    """gum - fast project and directory index for your shell."""
    setup_logging(verbose)


# ---------------------------------------------------------------------------
# projects
# ---------------------------------------------------------------------------


def refresh_projects(db: Database, roots: tuple = ()) -> list[Project]:
    """Rescan project roots and replace the stored projects.

    Roots come from ``--root``, then the stored project dirs, then the
    default candidates under the home directory.
    """
    cache = DatabaseCache(db)
    if roots:
        dirs = discover_project_dirs(roots)
        cache.set_project_dirs(dirs)
    else:
        dirs = cache.get_project_dirs() or db.list_project_dirs()
        if not dirs:
            dirs = discover_project_dirs(DEFAULT_PROJECT_ROOTS)
            cache.set_project_dirs(dirs)

    projects = discover_projects(d.path for d in dirs)
    cache.set_projects(projects)
    linked = db.link_projects_to_github()
    logger.debug("Refreshed %d projects from %d roots (%d linked)", len(projects), len(dirs), linked)
    return projects


def _print_projects(projects: list[Project], fmt: str):
    if fmt == "json":
        click.echo(json.dumps([p.model_dump(mode="json", exclude={"id"}) for p in projects], indent=2))
        return

    if fmt == "table":
        table = Table(title="Projects", show_header=True)
        table.add_column("Name", style="cyan")
        table.add_column("Path", style="magenta")
        table.add_column("Remote / Branch", style="green")
        table.add_column("Updated", style="dim")
        for p in projects:
            updated = p.updated_at.strftime("%Y-%m-%d") if p.updated_at else "?"
            table.add_row(p.name, p.path, p.remote_url or p.branch or "", updated)
        console.print(table)
        return

    for p in projects:
        click.echo(f"{p.path}\t{p.remote_url or p.branch or ''}")


@main.command()
@click.option("--format", "-f", "fmt", type=click.Choice(["lines", "json", "table"]), default="lines",
              help="Output format")
@click.option("--refresh", "-r", is_flag=True, help="Rescan project roots instead of using the cache")
@click.option("--search", "-s", help="Free-text search over name and path")
@click.option("--similar", help="Projects whose name resembles the last component of this path")
@click.option("--limit", "-n", type=int, help="Maximum results")
@click.option("--root", "roots", multiple=True, type=click.Path(), help="Project root to scan (repeatable)")
@exits_on_error
def projects(fmt: str, refresh: bool, search: Optional[str], similar: Optional[str],
             limit: Optional[int], roots: tuple):
    """List git projects, most recently updated first."""
    config = get_config()
    db = open_db(config)
    try:
        cache = DatabaseCache(db)
        if refresh or roots or cache.get_projects() is None:
            refresh_projects(db, roots)

        if search:
            results = db.search_projects(search, limit=limit)
        elif similar:
            results = db.similar_projects(similar, limit=limit or 10)
        else:
            results = db.list_projects(limit=limit)
    finally:
        db.close()

    if not results and fmt == "table":
        console.print("[yellow]No projects found[/yellow]")
        return
    _print_projects(results, fmt)


# ---------------------------------------------------------------------------
# dirs
# ---------------------------------------------------------------------------


@main.group(invoke_without_command=True)
@click.option("--limit", "-n", type=int, default=50, help="Maximum results")
@click.option("--format", "-f", "fmt", type=click.Choice(["lines", "json", "table"]), default="lines",
              help="Output format")
@click.pass_context
@exits_on_error
def dirs(ctx: click.Context, limit: int, fmt: str):
    """List frequently used directories in frecency order."""
    if ctx.invoked_subcommand is not None:
        return

    config = get_config()
    db = open_db(config)
    try:
        cache = DatabaseCache(db)
        now = utc_now()
        usages = cache.get_dirs(limit=limit, now=now)
        if usages is None:
            usages = db.list_frequent_dirs(limit, now)
            cache.touch(DIRS_KEY, now)
    finally:
        db.close()

    if fmt == "json":
        click.echo(json.dumps([
            {
                "path": u.path,
                "frequency": u.frequency,
                "last_seen": u.last_seen.isoformat(),
                "score": round(frecency.frecency_score(u.frequency, u.last_seen, now), 4),
            }
            for u in usages
        ], indent=2))
    elif fmt == "table":
        table = Table(title="Frecent Directories", show_header=True)
        table.add_column("Path", style="cyan")
        table.add_column("Visits", justify="right")
        table.add_column("Last Seen", style="dim")
        table.add_column("Score", justify="right", style="green")
        for u in usages:
            table.add_row(
                u.path,
                str(u.frequency),
                frecency.format_age(now - u.last_seen),
                f"{frecency.frecency_score(u.frequency, u.last_seen, now):.3f}",
            )
        console.print(table)
    else:
        for u in usages:
            click.echo(u.path)


@dirs.command(name="visit")
@click.argument("path", type=click.Path())
@exits_on_error
def dirs_visit(path: str):
    """Record a visit to PATH (call from a shell cd hook)."""
    config = get_config()
    db = open_db(config)
    try:
        db.record_dir_visit(os.path.abspath(os.path.expanduser(path)))
    finally:
        db.close()


# ---------------------------------------------------------------------------
# migrate
# ---------------------------------------------------------------------------


@main.group()
def migrate():
    """Move the legacy JSON cache into the database, or back."""
    pass


@migrate.command(name="run")
@exits_on_error
def migrate_run():
    """Import legacy cache files into the database."""
    from gum.errors import Cancelled
    from gum.migration import Migrator

    config = get_config()
    db = open_db(config)
    migrator = Migrator.from_config(config, db)

    cancel = threading.Event()
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Migrating legacy cache...", total=None)
            try:
                result = migrator.migrate(cancel)
            except Cancelled as e:
                progress.remove_task(task)
                done = ", ".join(e.result.migrated_files) if e.result else ""
                console.print(f"[yellow]Cancelled.[/yellow] Completed files kept: {done or 'none'}")
                console.print("[dim]Run 'gum migrate run' again to finish.[/dim]")
                sys.exit(e.exit_code)
            progress.remove_task(task)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
        db.close()

    if result.already_migrated:
        console.print("[yellow]Already migrated[/yellow] - nothing to do")
        return

    table = Table(title="Migration", show_header=True)
    table.add_column("Table", style="cyan")
    table.add_column("Records", justify="right")
    for table_name, count in result.counts.items():
        table.add_row(table_name, str(count))
    console.print(table)

    for filename, skipped in result.skipped_items.items():
        console.print(f"[yellow]Skipped {skipped} malformed item(s) in {filename}[/yellow]")
    if result.linked_projects:
        console.print(f"[dim]Linked {result.linked_projects} project(s) to GitHub repos[/dim]")

    if result.failed_files:
        for filename, reason in result.failed_files.items():
            console.print(f"[red]FAILED[/red] {filename}: {reason}")
        sys.exit(EXIT_FAILURE)

    console.print(f"[green][OK][/green] Migrated {result.total_records} records")


@migrate.command(name="rollback")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@exits_on_error
def migrate_rollback(yes: bool):
    """Restore legacy cache files and clear the migrated tables."""
    from gum.migration import Migrator

    config = get_config()
    db = open_db(config)
    try:
        migrator = Migrator.from_config(config, db)
        if not yes:
            if not click.confirm("Restore legacy cache files and clear migrated tables?"):
                console.print("Cancelled")
                return
        result = migrator.rollback()
    finally:
        db.close()

    for filename in result.restored_files:
        console.print(f"[green][OK][/green] Restored {filename}")
    for table_name, count in result.cleared.items():
        console.print(f"[dim]Cleared {count} row(s) from {table_name}[/dim]")
    console.print("[bold]Rollback complete.[/bold]")


@migrate.command(name="status")
@exits_on_error
def migrate_status():
    """Show where the migration stands."""
    from gum.migration import Migrator

    config = get_config()
    db = open_db(config)
    try:
        status = Migrator.from_config(config, db).status()
        stats = db.stats()
    finally:
        db.close()

    state_color = "green" if status.is_migrated else "yellow"
    lines = [
        f"State: [{state_color}]{status.state}[/{state_color}]",
        f"Migrated at: {status.migrated_at or '-'}",
        f"Pending legacy files: {', '.join(status.pending_files) or 'none'}",
        f"Backups: {', '.join(status.backups) or 'none'}",
    ]
    lines.extend(f"{table}: {count}" for table, count in stats.items())
    console.print(Panel("\n".join(lines), title="Migration Status"))


@migrate.command(name="verify")
@exits_on_error
def migrate_verify():
    """Compare backed-up legacy records with database rows."""
    from gum.migration import Migrator

    config = get_config()
    db = open_db(config)
    try:
        report = Migrator.from_config(config, db).verify()
    finally:
        db.close()

    if not report.entries:
        console.print("[yellow]Nothing to verify - no migrated files recorded[/yellow]")
        return

    table = Table(title="Migration Verification", show_header=True)
    table.add_column("File", style="cyan")
    table.add_column("Table", style="magenta")
    table.add_column("Expected", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Result")
    for entry in report.entries:
        verdict = "[green]OK[/green]" if entry.ok else f"[red]FAIL[/red] {entry.error or ''}"
        table.add_row(entry.file, entry.table, str(entry.expected), str(entry.actual), verdict)
    console.print(table)

    if not report.passed:
        sys.exit(EXIT_FAILURE)


@migrate.command(name="backup")
@click.argument("path", type=click.Path())
@exits_on_error
def migrate_backup(path: str):
    """Write a copy of the database to PATH."""
    config = get_config()
    db = open_db(config)
    try:
        target = db.backup_to(path)
    finally:
        db.close()
    console.print(f"[green][OK][/green] Database backed up to {target}")


@migrate.command(name="restore")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@exits_on_error
def migrate_restore(path: str, yes: bool):
    """Replace the database contents with the backup at PATH."""
    config = get_config()
    if not yes:
        if not click.confirm(f"Replace {config.db_path} with {path}?"):
            console.print("Cancelled")
            return
    db = open_db(config)
    try:
        db.restore_from(path)
    finally:
        db.close()
    console.print(f"[green][OK][/green] Database restored from {path}")


# ---------------------------------------------------------------------------
# integrity
# ---------------------------------------------------------------------------


@main.command()
@exits_on_error
def integrity():
    """Run read-only integrity checks on the database."""
    from gum.integrity import IntegrityChecker

    config = get_config()
    report = IntegrityChecker(config.db_path).run()

    table = Table(title="Integrity", show_header=True)
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Details")
    for check in report.checks:
        verdict = "[green]PASS[/green]" if check.passed else "[red]FAIL[/red]"
        table.add_row(check.name, verdict, check.details)
    console.print(table)

    for check in report.checks:
        for finding in check.findings:
            console.print(f"  [red]-[/red] {check.name}: {finding}")

    if report.counts:
        console.print(Panel(
            "\n".join(f"{name}: {count}" for name, count in report.counts.items()),
            title="Counts",
        ))

    if report.structural_failure:
        sys.exit(EXIT_STORAGE)
    if not report.passed:
        sys.exit(EXIT_FAILURE)


# ---------------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------------


@main.group()
def cache():
    """Inspect, clear or refresh cached data."""
    pass


@cache.command(name="show")
@exits_on_error
def cache_show():
    """Show legacy cache files and database freshness markers."""
    config = get_config()
    file_cache = FileCache(config.cache_dir)

    keys = file_cache.keys()
    if keys:
        table = Table(title=f"Legacy Cache ({config.cache_dir})", show_header=True)
        table.add_column("Key", style="cyan")
        table.add_column("Items", justify="right")
        table.add_column("TTL (s)", justify="right")
        table.add_column("State")
        for key in keys:
            info = file_cache.info(key)
            if info is None:
                continue
            if not info["valid"]:
                table.add_row(key, "-", "-", f"[red]malformed[/red] {info['error']}")
                continue
            state = "[yellow]expired[/yellow]" if info["expired"] else "[green]fresh[/green]"
            items = "-" if info["items"] is None else str(info["items"])
            table.add_row(key, items, f"{info['ttl']:g}", state)
        console.print(table)
    else:
        console.print("[dim]No legacy cache files[/dim]")

    db = open_db(config)
    try:
        stats = DatabaseCache(db).cache_stats()
    finally:
        db.close()

    table = Table(title="Database Cache", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Last Updated", style="dim")
    table.add_column("TTL (s)", justify="right")
    table.add_column("State")
    for key, info in stats["cache_info"].items():
        state = "[green]fresh[/green]" if info["is_valid"] else "[yellow]stale[/yellow]"
        table.add_row(key, info["last_updated"].strftime("%Y-%m-%d %H:%M:%S"), str(info["ttl_seconds"]), state)
    console.print(table)

    console.print(Panel(
        "\n".join(f"{name}: {value}" for name, value in stats.items() if name != "cache_info"),
        title="Store",
    ))


@cache.command(name="clear")
@click.argument("key", required=False)
@exits_on_error
def cache_clear(key: Optional[str]):
    """Clear one cache KEY, or everything when no key is given."""
    config = get_config()
    file_cache = FileCache(config.cache_dir)
    db = open_db(config)
    try:
        if key:
            file_cache.clear(key)
            DatabaseCache(db).invalidate(key)
            console.print(f"[green][OK][/green] Cleared {key}")
        else:
            removed = file_cache.clear_all()
            markers = DatabaseCache(db).invalidate()
            console.print(f"[green][OK][/green] Cleared {removed} cache file(s) and {markers} freshness marker(s)")
    finally:
        db.close()


@cache.command(name="refresh")
@click.option("--root", "roots", multiple=True, type=click.Path(), help="Project root to scan (repeatable)")
@exits_on_error
def cache_refresh(roots: tuple):
    """Rescan projects and reset freshness markers."""
    config = get_config()
    db = open_db(config)
    try:
        DatabaseCache(db).invalidate()
        found = refresh_projects(db, roots)
    finally:
        db.close()
    console.print(f"[green][OK][/green] Refreshed {len(found)} project(s)")


# ---------------------------------------------------------------------------
# frecency-demo
# ---------------------------------------------------------------------------


@main.command(name="frecency-demo")
def frecency_demo():
    """Show how frecency scores decay with age."""
    table = Table(title="Frecency: frequency x 1/(1 + age in days)", show_header=True)
    table.add_column("Scenario", style="cyan")
    table.add_column("Age", style="dim")
    table.add_column("Visits", justify="right")
    table.add_column("Score", justify="right", style="green")
    for label, age, frequency, score in frecency.demo_rows():
        table.add_row(label, age, str(frequency), f"{score:.3f}")
    console.print(table)


if __name__ == "__main__":
    main()
