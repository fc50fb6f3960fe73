"""CLI module for schema diff, migration, and data sync between profiles.

Usage:
    db-sync profiles
    db-sync diff --from prod --to staging
    db-sync diff --from prod --to staging --sql
    db-sync migrate --from prod --to staging --dry-run
    db-sync migrate --from prod --to staging --confirm --description "add email"
    db-sync counts --from prod --to staging
    db-sync sync --from prod --to staging --table users --keys id --confirm
    db-sync sync --from prod --to staging --all --delete-extra --confirm
    db-sync dump-restore --from prod --to local --include-schema --confirm
    db-sync status --group main

Commands:
    profiles      - List available profiles
    diff          - Compare schemas of two profiles
    migrate       - Apply the schema migration from one profile to another
    counts        - Show per-table row differences
    sync          - Sync rows of one table (or all tables) between profiles
    dump-restore  - Copy whole tables in dependency order
    status        - Show schema/data status of every target in a group
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from db_sync.config.loader import load_db_config
from db_sync.config.models import DatabaseConfig
from db_sync.data.models import ConflictStrategy, SyncAllOptions, SyncPlan, SyncResult
from db_sync.errors import SyncEngineError
from db_sync.factory import ProfileNotFoundError, open_connection
from db_sync.schema.introspector import SchemaIntrospector
from db_sync.service import DatabaseGroup, SyncService

console = Console()


# ============================================================================
# Helpers
# ============================================================================


def _load_config() -> DatabaseConfig | None:
    try:
        return load_db_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return None


@asynccontextmanager
async def _open_pair(config: DatabaseConfig, source_name: str, target_name: str):
    """Open source and target connections, closing both on exit."""
    source = await open_connection(source_name, config)
    try:
        target = await open_connection(target_name, config)
        try:
            yield source, target
        finally:
            await target.client.close()
    finally:
        await source.client.close()


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def _service(config: DatabaseConfig) -> SyncService:
    return SyncService(SchemaIntrospector(), settings=config.sync)


def _print_sync_results(results: list[SyncResult]) -> None:
    table = Table(title="Sync Results", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column("Inserted", justify="right", style="green")
    table.add_column("Updated", justify="right", style="yellow")
    table.add_column("Deleted", justify="right", style="red")
    table.add_column("Skipped", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Status")

    styles = {"success": "green", "partial": "yellow", "failed": "red", "skipped": "dim"}
    for result in results:
        style = styles.get(result.status, "")
        table.add_row(
            result.table,
            str(result.inserted),
            str(result.updated),
            str(result.deleted),
            str(len(result.skipped)),
            str(len(result.errors)),
            f"[{style}]{result.status}[/{style}]",
        )
    console.print(table)

    for result in results:
        if result.error:
            console.print(f"[red]{result.table}: {result.error}[/red]")


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_diff(args: argparse.Namespace) -> int:
    """Async implementation for diff command.

    Returns:
        0 when schemas match, 2 when they differ, 1 on error.
    """
    config = _load_config()
    if config is None:
        return 1
    service = _service(config)

    async with _open_pair(config, args.source, args.target) as (source, target):
        if args.sql:
            script = await service.generate_migration_sql(source, target, args.schema, args.target_schema)
            for statement in script.statements:
                console.print(f"{statement};", highlight=False)
            return 0 if script.is_empty else 2

        diff = await service.compare_schemas(source, target, args.schema, args.target_schema)

    if diff.is_empty:
        console.print("[bold green]v[/bold green] Schemas match")
        return 0

    table = Table(title="Schema Differences", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column("Change")
    table.add_column("Object")
    table.add_column("Details")
    for item in diff.items:
        details = ", ".join(item.changes) if item.changes else ""
        if item.note:
            details = f"[yellow]{item.note}[/yellow]"
        table.add_row(item.table, item.kind.value, item.name or "", details)
    console.print(table)
    console.print(f"\n{diff.summary.total} difference(s)")
    return 2


async def _async_migrate(args: argparse.Namespace) -> int:
    """Async implementation for migrate command."""
    config = _load_config()
    if config is None:
        return 1
    service = _service(config)

    async with _open_pair(config, args.source, args.target) as (source, target):
        script = await service.generate_migration_sql(source, target, args.schema, args.target_schema)
        if script.is_empty:
            console.print("[bold green]v[/bold green] Nothing to migrate")
            return 0

        console.print(f"[bold]{len(script.statements)} statement(s):[/bold]")
        for statement in script.statements:
            console.print(f"  {statement};", highlight=False)

        if args.dry_run or not args.confirm:
            console.print()
            if args.dry_run:
                console.print("[bold yellow]DRY RUN[/bold yellow] - No changes made.")
            else:
                console.print("[dim]To apply, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]")
            return 0

        entry = await service.apply_migration(
            source,
            target,
            args.schema,
            args.target_schema,
            description=args.description,
            dry_run=False,
            confirm=True,
        )

    if entry.success:
        console.print(f"\n[bold green]v[/bold green] Applied {entry.statements_applied} statement(s)")
        return 0
    console.print(f"\n[bold red]x[/bold red] {entry.error}")
    console.print(f"[dim]{entry.statements_applied} statement(s) applied before the failure[/dim]")
    return 1


async def _async_counts(args: argparse.Namespace) -> int:
    """Async implementation for counts command."""
    config = _load_config()
    if config is None:
        return 1
    service = _service(config)

    async with _open_pair(config, args.source, args.target) as (source, target):
        counts = await service.table_row_counts(
            source, target, args.schema, args.target_schema, tables=_split(args.tables)
        )

    table = Table(title="Data Comparison", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column(f"{args.source} (source)", justify="right")
    table.add_column(f"{args.target} (target)", justify="right")
    table.add_column("Missing", justify="right", style="green")
    table.add_column("Extra", justify="right", style="red")
    table.add_column("Different", justify="right", style="yellow")

    for row in counts:
        if row.error:
            table.add_row(row.table, "", "", "", "", f"[red]{row.error}[/red]")
            continue
        marker = "" if row.exact else " ~"
        table.add_row(
            row.table,
            str(row.source_count),
            str(row.target_count),
            f"{row.missing_in_target}{marker}",
            f"{row.missing_in_source}{marker}",
            str(row.different) if row.exact else "?",
        )
    console.print(table)
    if any(not row.exact for row in counts):
        console.print("[dim]~ = approximate (no primary key, count delta only)[/dim]")
    return 0 if all(row.in_sync for row in counts) else 2


async def _async_sync(args: argparse.Namespace) -> int:
    """Async implementation for sync command."""
    config = _load_config()
    if config is None:
        return 1
    if not args.confirm:
        console.print("[dim]To actually sync, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]")
        console.print("[dim]Run[/dim] [cyan]db-sync counts[/cyan] [dim]to preview differences.[/dim]")
        return 0

    settings = config.sync
    strategy = ConflictStrategy(args.strategy) if args.strategy else settings.conflict_strategy
    batch_size = args.batch_size or settings.batch_size
    service = _service(config)

    async with _open_pair(config, args.source, args.target) as (source, target):
        if args.all:
            options = SyncAllOptions(
                insert_missing=not args.no_insert,
                update_different=not args.no_update,
                delete_extra=args.delete_extra,
                conflict_strategy=strategy,
                timestamp_column=args.timestamp_column,
                batch_size=batch_size,
                tables=_split(args.tables),
                worker_limit=settings.worker_limit,
            )
            group = DatabaseGroup(id="cli", name="cli", source=source)
            results = await service.sync_all_tables(group, target, args.schema, options)
        else:
            keys = _split(args.keys)
            if not args.table or not keys:
                console.print("[red]Error: --table and --keys are required unless --all is given[/red]")
                return 1
            plan = SyncPlan(
                table=args.table,
                source_schema=source.resolve_schema(args.schema),
                target_schema=target.resolve_schema(args.target_schema or args.schema),
                primary_keys=keys,
                insert_missing=not args.no_insert,
                update_different=not args.no_update,
                delete_extra=args.delete_extra,
                conflict_strategy=strategy,
                timestamp_column=args.timestamp_column,
                batch_size=batch_size,
            )
            results = [await service.sync_table(source, target, plan)]

    _print_sync_results(results)
    return 0 if all(r.status == "success" for r in results) else 1


async def _async_dump_restore(args: argparse.Namespace) -> int:
    """Async implementation for dump-restore command."""
    config = _load_config()
    if config is None:
        return 1
    if not args.confirm:
        console.print("[dim]To copy data, add[/dim] [cyan]--confirm[/cyan] [dim]flag.[/dim]")
        return 0
    service = _service(config)

    async with _open_pair(config, args.source, args.target) as (source, target):
        result = await service.dump_restore(
            source,
            target,
            args.schema,
            args.target_schema,
            tables=_split(args.tables),
            truncate_target=False if args.no_truncate else None,
            include_schema=args.include_schema,
        )

    table = Table(title="Dump/Restore", show_header=True, header_style="bold")
    table.add_column("Table", style="dim")
    table.add_column("Copied", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Status")
    for copy in result.table_results:
        table.add_row(copy.table, str(copy.rows_copied), str(copy.rows_failed), copy.status)
    console.print(table)

    for error in result.errors:
        console.print(f"[red]{error}[/red]")

    if result.success:
        console.print(f"\n[bold green]v[/bold green] Copied {result.rows_copied} row(s)")
        return 0
    console.print(f"\n[bold red]x[/bold red] Dump/restore {result.status}")
    return 1


async def _async_status(args: argparse.Namespace) -> int:
    """Async implementation for status command."""
    config = _load_config()
    if config is None:
        return 1
    if args.group not in config.groups:
        available = ", ".join(config.groups) or "(none)"
        console.print(f"[red]Error: Group '{args.group}' not found. Available: {available}[/red]")
        return 1
    group_config = config.groups[args.group]
    service = _service(config)

    table = Table(title=f"Group {group_config.name or args.group}", show_header=True, header_style="bold")
    table.add_column("Target")
    table.add_column("Schema")
    table.add_column("Data")
    table.add_column("Errors", style="red")

    source = await open_connection(group_config.source, config)
    try:
        group = DatabaseGroup(
            id=args.group,
            name=group_config.name or args.group,
            source=source,
            sync_schema=group_config.sync_schema,
            sync_data=group_config.sync_data,
            target_schema=group_config.target_schema,
        )
        for target_name in group_config.targets:
            target = await open_connection(target_name, config)
            try:
                status = await service.check_group_status(group, target)
            finally:
                await target.client.close()
            table.add_row(target_name, status.schema_status, status.data_status, "; ".join(status.errors))
    finally:
        await source.client.close()

    console.print(table)
    return 0


# ============================================================================
# Command wrappers
# ============================================================================


def _run(coro) -> int:
    try:
        return asyncio.run(coro)
    except ProfileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    except SyncEngineError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Reads only local TOML config -- no database calls.
    """
    config = _load_config()
    if config is None:
        return 1

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("Profile")
    table.add_column("Dialect")
    table.add_column("Schema")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        table.add_row(
            f"[bold cyan]{name}[/bold cyan]",
            profile.dialect.value,
            profile.default_schema or "",
            profile.description or "",
        )

    console.print(table)

    if config.groups:
        console.print()
        groups = Table(title="Groups", show_header=True, header_style="bold")
        groups.add_column("Group")
        groups.add_column("Source")
        groups.add_column("Targets")
        for group_id, group in config.groups.items():
            groups.add_row(group_id, group.source, ", ".join(group.targets))
        console.print(groups)

    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    """Compare schemas of two profiles."""
    return _run(_async_diff(args))


def cmd_migrate(args: argparse.Namespace) -> int:
    """Apply the schema migration from one profile to another."""
    return _run(_async_migrate(args))


def cmd_counts(args: argparse.Namespace) -> int:
    """Show per-table row differences."""
    return _run(_async_counts(args))


def cmd_sync(args: argparse.Namespace) -> int:
    """Sync rows between profiles."""
    return _run(_async_sync(args))


def cmd_dump_restore(args: argparse.Namespace) -> int:
    """Copy whole tables between profiles."""
    return _run(_async_dump_restore(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show group target status."""
    return _run(_async_status(args))


# ============================================================================
# Main entry point
# ============================================================================


def _add_pair_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--from", "-f", dest="source", required=True, help="Source profile")
    parser.add_argument("--to", "-t", dest="target", required=True, help="Target profile")
    parser.add_argument("--schema", default=None, help="Source schema (default: profile default)")
    parser.add_argument(
        "--target-schema",
        default=None,
        help="Target schema (default: --schema or the profile default)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-sync",
        description="Schema diff and data synchronization between databases",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # profiles command
    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    # diff command
    p_diff = subparsers.add_parser("diff", help="Compare schemas of two profiles")
    _add_pair_arguments(p_diff)
    p_diff.add_argument("--sql", action="store_true", help="Print migration SQL instead of a table")
    p_diff.set_defaults(func=cmd_diff)

    # migrate command
    p_migrate = subparsers.add_parser("migrate", help="Apply schema migration to the target")
    _add_pair_arguments(p_migrate)
    p_migrate.add_argument("--dry-run", action="store_true", help="Show statements without executing")
    p_migrate.add_argument("--confirm", action="store_true", help="Actually apply the migration")
    p_migrate.add_argument("--description", default=None, help="Description for the history record")
    p_migrate.set_defaults(func=cmd_migrate)

    # counts command
    p_counts = subparsers.add_parser("counts", help="Show per-table row differences")
    _add_pair_arguments(p_counts)
    p_counts.add_argument("--tables", default=None, help="Comma-separated tables (default: all)")
    p_counts.set_defaults(func=cmd_counts)

    # sync command
    p_sync = subparsers.add_parser("sync", help="Sync rows from source to target")
    _add_pair_arguments(p_sync)
    p_sync.add_argument("--table", default=None, help="Table to sync")
    p_sync.add_argument("--keys", default=None, help="Comma-separated primary-key columns")
    p_sync.add_argument("--all", action="store_true", help="Sync every table in dependency order")
    p_sync.add_argument("--tables", default=None, help="With --all: comma-separated subset")
    p_sync.add_argument(
        "--strategy",
        choices=[s.value for s in ConflictStrategy],
        default=None,
        help="Conflict strategy for differing rows",
    )
    p_sync.add_argument("--timestamp-column", default=None, help="Column compared by newest_wins")
    p_sync.add_argument("--delete-extra", action="store_true", help="Delete target rows missing in source")
    p_sync.add_argument("--no-insert", action="store_true", help="Do not insert missing rows")
    p_sync.add_argument("--no-update", action="store_true", help="Do not update differing rows")
    p_sync.add_argument("--batch-size", type=int, default=None, help="Rows per batch")
    p_sync.add_argument("--confirm", action="store_true", help="Actually perform the sync")
    p_sync.set_defaults(func=cmd_sync)

    # dump-restore command
    p_dump = subparsers.add_parser("dump-restore", help="Copy whole tables in dependency order")
    _add_pair_arguments(p_dump)
    p_dump.add_argument("--tables", default=None, help="Comma-separated tables (default: all)")
    p_dump.add_argument("--no-truncate", action="store_true", help="Keep existing target rows")
    p_dump.add_argument("--include-schema", action="store_true", help="Create missing tables first")
    p_dump.add_argument("--confirm", action="store_true", help="Actually copy data")
    p_dump.set_defaults(func=cmd_dump_restore)

    # status command
    p_status = subparsers.add_parser("status", help="Show status of every target in a group")
    p_status.add_argument("--group", "-g", required=True, help="Group id from db.toml")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors or differences).
    """
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
