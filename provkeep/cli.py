"""
Command Line Interface entry point using Typer.
"""
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import typer
from rich.panel import Panel

from .audit import read_audit_log
from .codec import write_json
from .config import FILE_MODE, StoreConfig
from .doctor import run_diagnostics
from .errors import ProvKeepError
from .models import ProviderRecord, VerifyResult
from .snapshot import SORT_KEYS, SnapshotManager
from .store import ProviderStore
from .ui import (
    STATUS_STYLES,
    confirm,
    console,
    render_error,
    render_progress,
    render_status,
    render_success_summary,
    render_table,
    render_warning,
)
from .utils import human_size, mask_key

__version__ = "1.0.0"

app = typer.Typer(
    help=(
        "[bold cyan]PROVKEEP[/] [dim]v1.0[/]\n\n"
        "Local store for AI provider profiles: encrypted API keys, a default pointer,\n"
        "and verified snapshots you can roll back to."
    ),
    no_args_is_help=True,
    rich_markup_mode="rich",
)
provider_app = typer.Typer(help="Manage provider profiles.", no_args_is_help=True)
backup_app = typer.Typer(help="Create, verify and restore snapshots.", no_args_is_help=True)
app.add_typer(provider_app, name="provider")
app.add_typer(backup_app, name="backup")


@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", help="Store directory (default: $PROVKEEP_HOME)"),
):
    overrides = {"root": root.expanduser()} if root else {}
    with _handled():
        ctx.obj = StoreConfig.from_env(**overrides)

@contextmanager
def _handled() -> Generator[None, None, None]:
    """Turn store errors into an error panel and exit code 1."""
    try:
        yield
    except ProvKeepError as e:
        render_error(str(e))
        raise typer.Exit(1)

def _store(ctx: typer.Context) -> ProviderStore:
    return ProviderStore(ctx.obj)

def _manager(ctx: typer.Context) -> SnapshotManager:
    return SnapshotManager(ctx.obj)

def _record_rows(record: ProviderRecord, reveal: bool = False):
    return [
        ["Alias", record.alias],
        ["Base URL", record.base_url],
        ["API Key", record.api_key if reveal else mask_key(record.api_key)],
        ["Timeout", f"{record.timeout} ms" if record.timeout else "-"],
        ["Description", record.description or "-"],
        ["Enabled", "yes" if record.enabled else "no"],
        ["Created", record.created.strftime("%Y-%m-%d %H:%M:%S") if record.created else "-"],
        ["Last Used", record.last_used.strftime("%Y-%m-%d %H:%M:%S") if record.last_used else "-"],
    ]

def _show_warnings(store: ProviderStore) -> None:
    for warning in store.last_warnings:
        render_warning(warning)


# -- provider ---------------------------------------------------------------

@provider_app.command(name="add")
def provider_add(
    ctx: typer.Context,
    alias: str = typer.Argument(..., help="Short name for the provider"),
    base_url: str = typer.Option(..., "--url", "-u", prompt="Base URL"),
    api_key: str = typer.Option(..., "--key", "-k", prompt="API key", hide_input=True),
    timeout: Optional[int] = typer.Option(None, "--timeout", "-t", help="Request timeout in ms"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    use: bool = typer.Option(False, "--use", help="Make it the default provider"),
):
    """Add a provider profile."""
    store = _store(ctx)
    fields = {"alias": alias, "baseURL": base_url, "apiKey": api_key}
    if timeout is not None:
        fields["timeout"] = timeout
    if description is not None:
        fields["description"] = description
    with _handled():
        record = store.add(fields)
        _show_warnings(store)
        if use:
            store.set_default(alias)
    render_status("success", f"Provider '{record.alias}' added.")

@provider_app.command(name="list")
def provider_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output in JSON format."),
):
    """List provider profiles."""
    store = _store(ctx)
    with _handled():
        records = store.list()
        default = store.get_default()

    if json_output:
        console.print_json(json.dumps(store.export(redact=True)))
        return
    for skipped in store.last_skipped:
        render_warning(f"Skipped unreadable record {skipped.path}: {skipped.reason}")
    if not records:
        render_status("info", "No providers configured.")
        return

    rows = []
    for r in records:
        marker = "[bold green]*[/]" if r.alias == default else ""
        state = "[green]enabled[/]" if r.enabled else "[dim]disabled[/]"
        rows.append([f"{marker}{r.alias}", r.base_url, mask_key(r.api_key), state, r.description or ""])
    render_table("Providers", ["Alias", "Base URL", "API Key", "State", "Description"], rows)

@provider_app.command(name="show")
def provider_show(
    ctx: typer.Context,
    alias: str = typer.Argument(...),
    reveal: bool = typer.Option(False, "--reveal", help="Print the API key in full"),
):
    """Show one provider profile."""
    with _handled():
        record = _store(ctx).get(alias)
    render_table(f"Provider {alias}", ["Field", "Value"], _record_rows(record, reveal))

@provider_app.command(name="edit")
def provider_edit(
    ctx: typer.Context,
    alias: str = typer.Argument(...),
    base_url: Optional[str] = typer.Option(None, "--url", "-u"),
    api_key: Optional[str] = typer.Option(None, "--key", "-k"),
    timeout: Optional[int] = typer.Option(None, "--timeout", "-t"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
):
    """Change fields of an existing provider."""
    patch = {}
    if base_url is not None:
        patch["baseURL"] = base_url
    if api_key is not None:
        patch["apiKey"] = api_key
    if timeout is not None:
        patch["timeout"] = timeout
    if description is not None:
        patch["description"] = description
    if not patch:
        render_status("info", "Nothing to change.")
        return

    store = _store(ctx)
    with _handled():
        store.update(alias, patch)
    _show_warnings(store)
    render_status("success", f"Provider '{alias}' updated ({', '.join(sorted(patch))}).")

@provider_app.command(name="remove")
def provider_remove(
    ctx: typer.Context,
    alias: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a provider profile."""
    if not yes and not confirm(f"Remove provider '{alias}'?"):
        raise typer.Exit(0)
    with _handled():
        _store(ctx).remove(alias)
    render_status("delete", f"Provider '{alias}' removed.")

@provider_app.command(name="use")
def provider_use(ctx: typer.Context, alias: str = typer.Argument(...)):
    """Make a provider the default."""
    with _handled():
        _store(ctx).set_default(alias)
    render_status("success", f"Default provider is now '{alias}'.")

@provider_app.command(name="current")
def provider_current(ctx: typer.Context):
    """Show the default provider."""
    with _handled():
        default = _store(ctx).get_default()
    if default is None:
        render_status("info", "No default provider set.")
    else:
        render_status("provider", default, style="bold cyan")

@provider_app.command(name="enable")
def provider_enable(ctx: typer.Context, alias: str = typer.Argument(...)):
    with _handled():
        _store(ctx).set_enabled(alias, True)
    render_status("success", f"Provider '{alias}' enabled.")

@provider_app.command(name="disable")
def provider_disable(ctx: typer.Context, alias: str = typer.Argument(...)):
    with _handled():
        _store(ctx).set_enabled(alias, False)
    render_status("success", f"Provider '{alias}' disabled.")

@provider_app.command(name="export")
def provider_export(
    ctx: typer.Context,
    output: Path = typer.Argument(..., help="File to write"),
    include_secrets: bool = typer.Option(False, "--include-secrets", help="Write API keys in plain text"),
):
    """Export providers to a JSON file."""
    if include_secrets:
        render_warning("The export file will contain API keys in plain text.")
    with _handled():
        payload = _store(ctx).export(redact=not include_secrets)
        # Owner-only from creation.
        write_json(output, payload, FILE_MODE)
    render_status("success", f"Exported {payload['count']} provider(s) to {output}")

@provider_app.command(name="import")
def provider_import(
    ctx: typer.Context,
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Export file to read"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace providers that already exist"),
):
    """Import providers from a JSON export."""
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        render_error(f"Cannot read {source}: {e}")
        raise typer.Exit(1)

    with _handled():
        if overwrite:
            snapshot = _manager(ctx).create(f"Before importing {source.name}", kind="auto")
            render_status("snapshot", f"Safety snapshot {snapshot.timestamp} taken.")
        report = _store(ctx).import_records(payload, overwrite=overwrite)
    rows = []
    for r in report.results:
        rows.append([r.alias or "?", "[green]imported[/]" if r.success else "[red]failed[/]", r.error or ""])
    render_table("Import", ["Alias", "Result", "Error"], rows)
    if report.failed:
        raise typer.Exit(1)


# -- backup -----------------------------------------------------------------

@backup_app.command(name="create")
def backup_create(
    ctx: typer.Context,
    description: str = typer.Option("Manual backup", "--description", "-d"),
    compress: bool = typer.Option(False, "--compress", "-c", help="Store as .tar.gz"),
    no_clean: bool = typer.Option(False, "--no-clean", help="Skip retention cleanup"),
):
    """Snapshot the store and settings directory."""
    with _handled(), render_progress("Creating snapshot..."):
        snapshot = _manager(ctx).create(description, auto_clean=not no_clean, compress=compress)
    render_success_summary("Snapshot created", {
        "ID": snapshot.timestamp,
        "Items": len(snapshot.manifest),
        "Size": human_size(snapshot.total_size),
        "Compressed": "yes" if compress else "no",
    })

@backup_app.command(name="list")
def backup_list(
    ctx: typer.Context,
    sort_by: str = typer.Option("created", "--sort", help=f"One of: {', '.join(SORT_KEYS)}"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n"),
):
    """List snapshots from the history index."""
    with _handled():
        statuses = _manager(ctx).list(sort_by=sort_by, limit=limit)
    if not statuses:
        render_status("info", "No snapshots found.")
        return

    rows = []
    for status in statuses:
        s = status.snapshot
        state = "[yellow]compressed[/]" if status.compressed else "[green]ok[/]" if status.exists else "[red]missing[/]"
        rows.append([s.timestamp, s.kind, s.description, human_size(s.total_size), state])
    render_table("Snapshots", ["ID", "Kind", "Description", "Size", "State"], rows)

def _render_verify(result: VerifyResult) -> None:
    if result.valid:
        render_status("verify", f"{result.snapshot_id}: {result.file_count} item(s), {human_size(result.total_size)} intact", style="green")
        return
    render_status("error", f"{result.snapshot_id}: {len(result.issues)} issue(s)", style="red")
    for issue in result.issues:
        console.print(f"    [red]-[/] {issue.message}")

@backup_app.command(name="verify")
def backup_verify(
    ctx: typer.Context,
    snapshot_id: Optional[str] = typer.Argument(None, help="Snapshot to check (default: all)"),
):
    """Check snapshot copies against their recorded sizes and checksums."""
    with _handled(), render_progress("Verifying..."):
        outcome = _manager(ctx).verify(snapshot_id)

    if isinstance(outcome, VerifyResult):
        _render_verify(outcome)
        invalid = 0 if outcome.valid else 1
    else:
        for result in outcome.results:
            _render_verify(result)
        render_success_summary("Verification", {
            "Verified": outcome.verified, "Valid": outcome.valid, "Invalid": outcome.invalid,
        })
        invalid = outcome.invalid
    if invalid:
        raise typer.Exit(1)

@backup_app.command(name="restore")
def backup_restore(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(...),
    no_verify: bool = typer.Option(False, "--no-verify", help="Restore without checking the copy first"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Roll the store back to a snapshot. A safety snapshot is taken first."""
    if not yes and not confirm(f"Overwrite the current store with snapshot {snapshot_id}?"):
        raise typer.Exit(0)
    with _handled(), render_progress(f"Restoring {snapshot_id}..."):
        result = _manager(ctx).restore(snapshot_id, verify=not no_verify)
    render_success_summary("Restored", {
        "Snapshot": result.snapshot_id,
        "Safety snapshot": result.safety_snapshot_id,
        "Items": len(result.restored),
    })

@backup_app.command(name="clean")
def backup_clean(
    ctx: typer.Context,
    keep: Optional[int] = typer.Option(None, "--keep", help="Snapshots to keep"),
    days: Optional[int] = typer.Option(None, "--days", help="Maximum age in days"),
):
    """Apply the retention policy."""
    with _handled():
        report = _manager(ctx).clean_old(keep_count=keep, keep_days=days)
    for failure in report.failures:
        render_warning(f"Could not remove {failure.snapshot_id}: {failure.error}")
    render_success_summary("Cleanup", {
        "Removed": report.cleaned,
        "Kept": report.kept,
        "Space freed": human_size(report.space_freed),
    })

@backup_app.command(name="compress")
def backup_compress(ctx: typer.Context, snapshot_id: str = typer.Argument(...)):
    with _handled():
        archive = _manager(ctx).compress(snapshot_id)
    render_status("compress", f"Compressed to {archive.name} ({human_size(archive.stat().st_size)})")

@backup_app.command(name="decompress")
def backup_decompress(ctx: typer.Context, snapshot_id: str = typer.Argument(...)):
    with _handled():
        directory = _manager(ctx).decompress(snapshot_id)
    render_status("compress", f"Unpacked to {directory}")

@backup_app.command(name="delete")
def backup_delete(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete one snapshot."""
    if not yes and not confirm(f"Delete snapshot {snapshot_id}?"):
        raise typer.Exit(0)
    with _handled():
        freed = _manager(ctx).delete(snapshot_id)
    render_status("delete", f"Snapshot {snapshot_id} deleted ({human_size(freed)} freed).")

@backup_app.command(name="export")
def backup_export(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(...),
    dest: Path = typer.Option(Path("."), "--dest", help="Directory for the archive"),
):
    """Write a portable .tar.gz of a snapshot."""
    with _handled():
        out_path = _manager(ctx).export(snapshot_id, dest)
    render_status("success", f"Exported to {out_path}")


# -- misc -------------------------------------------------------------------

@app.command(name="doctor")
def run_doctor(ctx: typer.Context):
    """Run the store diagnostic suite."""
    with _handled(), render_progress("Running diagnostic checks..."):
        results = run_diagnostics(ctx.obj)
    rows = [[STATUS_STYLES[r.status], r.name, r.detail] for r in results]
    render_table("Doctor Diagnostics", ["Status", "Check", "Details"], rows)
    if any(r.status == "fail" for r in results):
        raise typer.Exit(1)

@app.command(name="audit")
def show_audit(
    ctx: typer.Context,
    last_n: int = typer.Option(50, "--last", "-n", help="Number of recent events to show"),
    warnings_only: bool = typer.Option(False, "--warnings", help="Only warning events"),
):
    """Show recent audit events."""
    events = read_audit_log(ctx.obj, last_n, level="warning" if warnings_only else None)
    if not events:
        render_status("info", "No audit events found.")
        return
    rows = []
    for e in events:
        details = json.dumps(e.get("details", {}))
        if len(details) > 60:
            details = details[:57] + "..."
        rows.append([e.get("timestamp", "")[:19], e.get("level", ""), e.get("event", ""), details])
    render_table("Audit Log", ["Timestamp", "Level", "Event", "Details"], rows)

@app.command(name="version")
def version_cmd():
    """Display version information."""
    console.print(Panel(f"[bold cyan]PROVKEEP[/] v{__version__}", border_style="cyan", expand=False))


if __name__ == "__main__":
    app()
