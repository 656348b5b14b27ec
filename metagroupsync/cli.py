"""Command-line interface for metagroupsync.

This module provides a Typer-based CLI for administering group links and
running the reconciliation.

Commands:
- init: Create the database
- sync: Run a reconciliation (exit code 0 ok, 1 error, 2 disabled)
- links: List links
- create: Create a link
- delete: Delete a link and unwind its enrolments
- chain: Show the source chain of a link
- recalculate: Recompute root and source courses
- cleanup-groups: Delete empty groups no link targets
- status: Show database statistics and configuration
- metrics: Print Prometheus metrics

Example:
    $ metagroupsync create 20 10 5 --target-group 50
    $ metagroupsync sync --course 20
    $ metagroupsync links --target 20
    $ metagroupsync cleanup-groups --dry-run
"""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from metagroupsync.config import settings
from metagroupsync.database import DatabaseManager
from metagroupsync.engine import STATUS_DISABLED, STATUS_OK
from metagroupsync.links import LinkError
from metagroupsync.logging import setup_logging as configure_logger
from metagroupsync.metrics import generate_metrics_output
from metagroupsync.models import CREATE_GROUP, LinkOptions, LinkStatus, SyncMode
from metagroupsync.service import SyncService
from metagroupsync.telemetry import shutdown_telemetry

# Initialize CLI app
app     = typer.Typer(
    name="metagroupsync",
    help="Group-scoped enrolment link administration and reconciliation",
    add_completion=False,
)
console = Console()

DatabaseOption = typer.Option(
    None,
    "--database",
    "-d",
    help="SQLite database path (defaults to the configured database)",
)
VerboseOption = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Enable verbose logging",
)


# =============================================================================
# Helper Functions
# =============================================================================


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, set DEBUG level; otherwise the configured level
    """
    configure_logger(
        level="DEBUG" if verbose else settings.log_level,
        json_logs=settings.log_json,
        colorize=not settings.log_json,
    )


def open_service(database: Optional[Path]) -> SyncService:
    """Build and initialize a service over the given database."""
    db = DatabaseManager(database) if database else None
    service = SyncService(db=db)
    service.initialize()
    return service


def warn_if_destructive() -> None:
    if settings.lost_link_action_is_destructive:
        console.print(
            "⚠️  [bold yellow]Lost links are configured to unenrol their users; "
            "their course data will be deleted.[/bold yellow]"
        )


# =============================================================================
# CLI Commands
# =============================================================================


@app.command()
def init(
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Initialize the database.

    Examples:
        $ metagroupsync init
        $ metagroupsync init --database /tmp/sync.db
    """
    setup_logging(verbose)

    console.print("🏗️  [bold cyan]metagroupsync Initialization[/bold cyan]\n")

    try:
        db = DatabaseManager(database) if database else DatabaseManager()
        db.initialize()
        console.print(f"✅ Database ready at [yellow]{db.database_path}[/yellow]")
        db.close()

        console.print("\n📋 Configuration:")
        console.print(f"  • Enabled methods: {', '.join(settings.enabled_methods)}")
        console.print(f"  • Unenrol action: {settings.unenrol_action.value}")
        console.print(f"  • Lost link action: {settings.lost_link_action.value}")
        warn_if_destructive()

    except Exception as e:
        console.print(f"\n❌ [bold red]Initialization failed: {e}[/bold red]")
        raise typer.Exit(code=1)


@app.command()
def sync(
    course: Optional[int] = typer.Option(
        None,
        "--course",
        "-c",
        help="Only reconcile links into this target course",
    ),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Reconcile links with their sources.

    The exit code is the run status: 0 success, 1 failure, 2 disabled.

    Examples:
        # Every course
        $ metagroupsync sync

        # One target course, with progress bars
        $ metagroupsync sync --course 20 -v
    """
    setup_logging(verbose)

    console.print("🚀 [bold cyan]metagroupsync Reconciliation[/bold cyan]\n")
    warn_if_destructive()

    try:
        service = open_service(database)
    except Exception as e:
        console.print(f"\n❌ [bold red]Sync failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    try:
        status = service.run_reconciliation(course_id=course, verbose=verbose)
    finally:
        service.close()

    if status == STATUS_OK:
        console.print("\n✅ [bold green]Reconciliation complete[/bold green]")
        return
    if status == STATUS_DISABLED:
        console.print("\n⏹️  [bold yellow]Synchronisation is disabled[/bold yellow]")
    else:
        console.print("\n❌ [bold red]Reconciliation failed[/bold red]")
    raise typer.Exit(code=status)


@app.command("links")
def list_links(
    target: Optional[int] = typer.Option(None, "--target", "-t", help="Target course id"),
    source: Optional[int] = typer.Option(None, "--source", "-s", help="Source course id"),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """List links.

    Examples:
        $ metagroupsync links --target 20
    """
    setup_logging(verbose)

    try:
        service = open_service(database)
        try:
            links     = service.list_links(target_course_id=target, source_course_id=source)
            summaries = [service.links.summarize(link) for link in links]
        finally:
            service.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Listing failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    if not summaries:
        console.print("No links found")
        return

    table = Table(title="Links")
    table.add_column("Id", justify="right", style="cyan")
    table.add_column("Target", style="green")
    table.add_column("Source", style="yellow")
    table.add_column("Root", style="yellow")
    table.add_column("Status")
    table.add_column("Mode")
    table.add_column("Members", justify="right")
    table.add_column("Synced")

    for summary in summaries:
        table.add_row(
            str(summary["id"]),
            summary["target"],
            summary["source"],
            summary["root"] or "-",
            summary["status"],
            summary["sync_mode"],
            f"{summary['members']:,}",
            summary["last_synced"],
        )
    console.print(table)


@app.command()
def create(
    target_course: int = typer.Argument(..., help="Target course id"),
    source_course: int = typer.Argument(..., help="Source course id"),
    source_group: int = typer.Argument(..., help="Source group id"),
    target_group: int = typer.Option(
        CREATE_GROUP,
        "--target-group",
        "-g",
        help="Existing target group id (default: create a group named after the source)",
    ),
    group_name: Optional[str] = typer.Option(
        None,
        "--group-name",
        help="Name for a created target group",
    ),
    disabled: bool = typer.Option(False, "--disabled", help="Create the link disabled"),
    snapshot: bool = typer.Option(
        False,
        "--snapshot",
        help="Freeze the link after its first successful synchronisation",
    ),
    no_sync: bool = typer.Option(
        False,
        "--no-sync",
        help="Do not synchronise right away; the next run enables the link",
    ),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Create a link from a source course group into a target course.

    Examples:
        $ metagroupsync create 20 10 5
        $ metagroupsync create 20 10 5 --target-group 50 --snapshot
    """
    setup_logging(verbose)

    options = LinkOptions(
        target_group_name=group_name,
        status=LinkStatus.DISABLED if disabled else LinkStatus.ENABLED,
        sync_mode=SyncMode.SNAPSHOT if snapshot else SyncMode.MIRROR,
        sync_on_create=False if no_sync else None,
    )

    try:
        service = open_service(database)
        try:
            link = service.create_link(
                target_course, source_course, source_group, target_group, options
            )
        finally:
            service.close()
    except LinkError as e:
        console.print(f"\n❌ [bold red]Invalid link: {e}[/bold red]")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"\n❌ [bold red]Create failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(
        f"✅ [bold green]Link {link.id} created[/bold green]: "
        f"{source_course}/{source_group} → {target_course}/{link.target_group_id} "
        f"({link.status.value})"
    )


@app.command()
def delete(
    link_id: int = typer.Argument(..., help="Link id"),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Delete a link, unenrolling its users and revoking its roles.

    Examples:
        $ metagroupsync delete 3
    """
    setup_logging(verbose)

    try:
        service = open_service(database)
        try:
            deleted = service.delete_link(link_id)
        finally:
            service.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Delete failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    if not deleted:
        console.print(f"⚠️  Link {link_id} does not exist")
        raise typer.Exit(code=1)
    console.print(f"🗑️  [bold green]Link {link_id} deleted[/bold green]")


@app.command()
def chain(
    link_id: int = typer.Argument(..., help="Link id"),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show every path from a link's source back to its root sources.

    Examples:
        $ metagroupsync chain 3
    """
    setup_logging(verbose)

    try:
        service = open_service(database)
        try:
            paths = service.describe_chain(link_id)
        finally:
            service.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Chain lookup failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    for number, path in enumerate(paths, start=1):
        steps = [
            f"{step.course_name} ({step.group_name or 'all groups'})" for step in path
        ]
        console.print(f"[cyan]{number}.[/cyan] " + " ← ".join(steps))


@app.command()
def recalculate(
    link_id: Optional[int] = typer.Option(None, "--link", "-l", help="Only this link"),
    course: Optional[int] = typer.Option(None, "--course", "-c", help="Only links into this course"),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Recompute root sources and source courses.

    Examples:
        $ metagroupsync recalculate
        $ metagroupsync recalculate --link 3
    """
    setup_logging(verbose)

    try:
        service = open_service(database)
        try:
            updated = service.recalculate_source_courses(link_id=link_id, course_id=course)
        finally:
            service.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Recalculation failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"✅ [bold green]Recalculated {updated} link(s)[/bold green]")


@app.command("cleanup-groups")
def cleanup_groups(
    courses: Optional[list[int]] = typer.Option(
        None,
        "--course",
        "-c",
        help="Course to clean (repeatable; default: every course with links)",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be deleted"),
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Delete empty groups that no link targets.

    Examples:
        $ metagroupsync cleanup-groups --dry-run
        $ metagroupsync cleanup-groups --course 20 --course 30
    """
    setup_logging(verbose)

    try:
        service = open_service(database)
        try:
            result = service.cleanup_orphaned_groups(courses or None, dry_run=dry_run)
        finally:
            service.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Cleanup failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    table = Table(title="Would delete" if dry_run else "Deleted groups")
    table.add_column("Group", justify="right", style="cyan")
    table.add_column("Course", justify="right")
    table.add_column("Name", style="yellow")
    for group in result["deleted"]:
        table.add_row(str(group["group_id"]), str(group["course_id"]), group["name"])
    console.print(table)

    for skipped in result["skipped"]:
        console.print(f"⏭️  Group {skipped['group_id']} kept: {skipped['reason']}")
    console.print(f"\n✅ [bold green]{result['total_deleted']} group(s)[/bold green]")


@app.command()
def status(
    database: Optional[Path] = DatabaseOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show database statistics and configuration.

    Examples:
        $ metagroupsync status
    """
    setup_logging(verbose)

    console.print("📊 [bold cyan]metagroupsync Status[/bold cyan]\n")

    try:
        service = open_service(database)
        try:
            stats = service.get_statistics()
        finally:
            service.close()
    except Exception as e:
        console.print(f"\n❌ [bold red]Status failed: {e}[/bold red]")
        raise typer.Exit(code=1)

    config_table = Table(title="Configuration", show_header=False)
    config_table.add_column("Key", style="cyan")
    config_table.add_column("Value", style="yellow")

    config_table.add_row("Database Path", str(database or settings.database_path))
    config_table.add_row("Sync Enabled", str(settings.sync_enabled))
    config_table.add_row("Enabled Methods", ", ".join(settings.enabled_methods))
    config_table.add_row("Unenrol Action", settings.unenrol_action.value)
    config_table.add_row("Lost Link Action", settings.lost_link_action.value)
    config_table.add_row("Sync All Members", str(settings.sync_all))

    console.print(config_table)
    console.print()

    stats_table = Table(title="Database Statistics")
    stats_table.add_column("Entity", style="cyan")
    stats_table.add_column("Count", justify="right", style="green")
    for label, count in stats.items():
        stats_table.add_row(label.replace("_", " ").capitalize(), f"{count:,}")

    console.print(stats_table)
    warn_if_destructive()


@app.command()
def metrics() -> None:
    """Print the metrics of this process in Prometheus text format."""
    typer.echo(generate_metrics_output().decode("utf-8"))


def main() -> None:
    try:
        app()
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    main()
