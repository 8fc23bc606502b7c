"""modsync CLI — run the authority, edit the staged state and sync installations."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from modsync import __version__
from modsync.config import Settings, load_settings
from modsync.errors import ModSyncError
from modsync.observability import configure_logging

console = Console()


def _authority(settings: Settings):
    from modsync.authority import Authority

    return Authority(settings)


@click.group()
@click.version_option(version=__version__)
@click.option("--root", default=None, help="Installation root (default: $MODSYNC_ROOT or .)")
@click.option("--data-dir", default=None, help="Data directory (default: <root>/ModSyncData)")
@click.pass_context
def main(ctx: click.Context, root: str | None, data_dir: str | None):
    """modsync — distribute file bundles and keep installations in sync.

    The authority keeps a Live and a Staged desired state. Edit Staged with
    'add', 'remove' and 'exclude', review with 'diff', then 'apply'.
    """
    overrides = {}
    if root:
        overrides["root"] = root
    if data_dir:
        overrides["data_dir"] = data_dir
    settings = load_settings(overrides)
    configure_logging(settings)
    ctx.obj = settings


# ── Authority ────────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=6969, type=int, help="Bind port")
@click.pass_obj
def serve(settings: Settings, host: str, port: int):
    """Run the authority HTTP service."""
    import uvicorn

    from web.backend.app.main import create_app

    authority = _authority(settings)
    report = authority.startup()
    for name in report.repaired:
        console.print(f"[yellow]Restored protected bundle:[/] {name}")
    if report.absorbed is not None:
        console.print(
            f"[green]Absorbed deferred apply:[/] {len(report.absorbed.installed)} installed, "
            f"{len(report.absorbed.removed)} removed"
        )
    console.print(f"\n[bold blue]modsync[/] — serving {settings.root_path} on {host}:{port}\n")
    try:
        uvicorn.run(create_app(authority), host=host, port=port, log_config=None)
    finally:
        authority.close()


@main.command()
@click.pass_obj
def status(settings: Settings):
    """Show the Live bundles and whether staged changes are pending."""
    authority = _authority(settings)
    live = authority.store.live

    table = Table(title=f"Live bundles ({len(live.bundles)})")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="dim")
    table.add_column("Required", justify="center")
    table.add_column("Protected", justify="center")
    table.add_column("Last updated")
    for bundle in live.bundles:
        table.add_row(
            bundle.name,
            bundle.url,
            "yes" if bundle.required else "no",
            "yes" if bundle.protected else "",
            bundle.last_updated or "-",
        )
    console.print(table)

    pending = authority.store.pending
    if authority.store.has_pending_changes():
        console.print("[yellow]Staged changes are pending. Run 'modsync diff'.[/]")
    if pending.pending_deletions or pending.deferred_installs:
        console.print(
            f"[yellow]Waiting for restart:[/] {len(pending.deferred_installs)} deferred installs, "
            f"{len(pending.pending_deletions)} queued deletions"
        )


@main.command()
@click.pass_obj
def diff(settings: Settings):
    """Show what 'apply' would change."""
    store = _authority(settings).store
    changes = store.diff()
    if not store.has_pending_changes():
        console.print("[green]No pending changes.[/]")
        return

    table = Table(title=f"Pending changes ({changes.total_changes})")
    table.add_column("Change", style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="dim")
    for label, style, bundles in (
        ("install", "green", changes.to_install),
        ("update", "yellow", changes.to_update),
        ("remove", "red", changes.to_remove),
    ):
        for bundle in bundles:
            table.add_row(f"[{style}]{label}[/]", bundle.name, bundle.url)
    console.print(table)
    if not changes.has_changes:
        console.print("[yellow]Only exclusion settings changed.[/]")


@main.command()
@click.pass_obj
def apply(settings: Settings):
    """Apply the staged state to the installation."""
    result = _authority(settings).apply()
    for name in result.installed:
        console.print(f"  [green]v[/] installed {name}")
    for name in result.queued_for_install:
        console.print(f"  [yellow]![/] {name} is locked; install deferred until restart")
    for name in result.queued_for_removal:
        console.print(f"  [yellow]![/] {name} queued for removal")
    for error in result.errors:
        console.print(f"  [red]x[/] {error}")
    if result.requires_restart:
        console.print(f"\n[yellow]Restart the authority to finish.[/] Script: {result.script_path}")
    if not result.success:
        sys.exit(1)


# ── Staged edits ─────────────────────────────────────────────────────


@main.command()
@click.argument("url")
@click.pass_obj
def stage(settings: Settings, url: str):
    """Download URL into the staging cache and suggest install mappings."""
    try:
        info = _authority(settings).stage(url)
    except ModSyncError as e:
        console.print(f"[red]Staging failed:[/] {e}")
        sys.exit(1)
    console.print(f"[green]Staged:[/] {info.extracted_path}")
    for mapping in info.suggested_install_paths:
        console.print(f"  --map {mapping.source}:{mapping.target}")
    for name in info.files:
        console.print(f"  [dim]top-level file:[/] {name}")


@main.command()
@click.argument("name")
@click.argument("url")
@click.option("--map", "mappings", multiple=True, help="SOURCE:TARGET install mapping")
@click.option("--ignore", multiple=True, help="Archive path never copied")
@click.option("--optional", is_flag=True, help="Clients may skip this bundle")
@click.pass_obj
def add(settings: Settings, name: str, url: str, mappings: tuple[str, ...], ignore: tuple[str, ...], optional: bool):
    """Add or replace bundle NAME at URL in the staged state."""
    from modsync.state.models import BundleEntry, CopyRuleState, FileCopyRule, InstallPath

    install_paths = []
    for mapping in mappings:
        source, sep, target = mapping.partition(":")
        if not sep or not target:
            raise click.BadParameter(f"expected SOURCE:TARGET, got '{mapping}'", param_hint="--map")
        install_paths.append(InstallPath(source=source, target=target))

    entry = BundleEntry(
        name=name,
        url=url,
        optional=optional,
        install_paths=install_paths,
        file_rules=[FileCopyRule(path=p, state=CopyRuleState.IGNORE) for p in ignore],
    )
    try:
        _authority(settings).store.upsert_bundle(entry)
    except ModSyncError as e:
        console.print(f"[red]Cannot add {name}:[/] {e}")
        sys.exit(1)
    console.print(f"[green]Staged[/] {name}")


@main.command()
@click.argument("url")
@click.pass_obj
def remove(settings: Settings, url: str):
    """Remove the bundle with URL from the staged state."""
    try:
        entry = _authority(settings).store.remove_bundle(url)
    except ModSyncError as e:
        console.print(f"[red]Cannot remove:[/] {e}")
        sys.exit(1)
    console.print(f"[green]Removed[/] {entry.name} [dim](uninstalled on next apply)[/]")


@main.command()
@click.argument("patterns", nargs=-1)
@click.option("--defaults/--no-defaults", default=None, help="Include the built-in exclusions")
@click.option("--append", is_flag=True, help="Add to the existing patterns instead of replacing them")
@click.pass_obj
def exclude(settings: Settings, patterns: tuple[str, ...], defaults: bool | None, append: bool):
    """Set the sync exclusion PATTERNS of the staged state."""
    store = _authority(settings).store
    new_patterns = list(store.staged.sync_exclusions) + list(patterns) if append else list(patterns)
    store.set_exclusions(new_patterns, defaults)
    console.print(f"[green]{len(store.staged.sync_exclusions)} exclusion pattern(s) staged[/]")


# ── Manifest and remote sync ─────────────────────────────────────────


@main.command()
@click.option("--output", "-o", default=None, help="Write the manifest to this file")
@click.pass_obj
def manifest(settings: Settings, output: str | None):
    """Generate the file manifest of the Live state."""
    result = _authority(settings).manifest()
    payload = json.dumps(result.to_dict(), indent=2)
    if output:
        Path(output).write_text(payload + "\n", encoding="utf-8")
        console.print(f"[green]Manifest with {len(result.files)} files written to:[/] {output}")
    else:
        click.echo(payload)


def _sync_client(config_path: str):
    from modsync.client.sync_client import ClientSettings, SyncClient

    return SyncClient(ClientSettings.from_yaml(config_path))


def _print_report(report) -> None:
    if not report.has_drift:
        console.print(f"[green]{report.summary()}[/]")
        return
    table = Table(title=report.summary())
    table.add_column("Action", style="bold")
    table.add_column("Path", style="cyan")
    table.add_column("Owner")
    table.add_column("Required", justify="center")
    for issue in report.issues:
        table.add_row(
            issue.action.value, issue.relative_path, issue.owner_name, "yes" if issue.required else "no"
        )
    console.print(table)


@main.command()
@click.option("--config", "config_path", default="modsync-client.yml", help="Client config YAML")
def check(config_path: str):
    """Compare this installation against the authority's manifest."""
    client = _sync_client(config_path)
    try:
        report = client.check()
    except ModSyncError as e:
        console.print(f"[red]Check failed:[/] {e}")
        sys.exit(1)
    finally:
        client.close()
    _print_report(report)
    if report.blocking_issues:
        sys.exit(2)


@main.command()
@click.option("--config", "config_path", default="modsync-client.yml", help="Client config YAML")
@click.option("--yes", "-y", is_flag=True, help="Delete extra files without asking")
def sync(config_path: str, yes: bool):
    """Download missing or changed files from the authority."""
    client = _sync_client(config_path)
    try:
        report = client.check()
        _print_report(report)
        delete_extra = False
        if report.extra:
            delete_extra = yes or click.confirm(
                f"Delete {len(report.extra)} file(s) not in the manifest?", default=False
            )
        result = client.repair(report, delete_extra=delete_extra)
    except ModSyncError as e:
        console.print(f"[red]Sync failed:[/] {e}")
        sys.exit(1)
    finally:
        client.close()

    console.print(
        f"[green]{len(result.downloaded)} downloaded[/], {len(result.deleted)} deleted"
    )
    for error in result.errors:
        console.print(f"  [red]x[/] {error}")
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
