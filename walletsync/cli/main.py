from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from walletsync.core.config import DEFAULT_CONFIG_PATH, load_config
from walletsync.core.logging_setup import setup_logging
from walletsync.core.settings import AuthMode
from walletsync.core.timeutil import ms_to_iso
from walletsync.errors import SyncError
from walletsync.sync.service import RESOLUTION_CHOICES, BackupSyncService, build_service
from walletsync.sync.state import DetachedVault

app = typer.Typer(add_completion=False)
console = Console()

CREDENTIAL_FIELDS = {
    AuthMode.TOKEN: "auth_token",
    AuthMode.CAPABILITY: "ucan_token",
    AuthMode.BASIC: "basic_auth",
}


def _build_service(path: Path | None = None) -> BackupSyncService:
    cfg = load_config(path or DEFAULT_CONFIG_PATH)
    setup_logging(cfg.logging, console=False)
    service = build_service(cfg, DetachedVault())
    service.init()
    return service


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


@app.command("config-show")
def config_show(path: Path | None = typer.Option(None, "--path", help="Config file; defaults to $WALLETSYNC_CONFIG.")):
    """Show config.yaml and the persisted sync settings (secrets masked)."""
    cfg = load_config(path or DEFAULT_CONFIG_PATH)
    service = _build_service(path)
    try:
        _print_json({"config": cfg.model_dump(), "sync_settings": service.get_settings()})
    finally:
        service.close()


@app.command("config-set-endpoint")
def config_set_endpoint(endpoint: str = typer.Option(..., "--endpoint", help="WebDAV base URL")):
    """Set the WebDAV endpoint used for remote backups."""
    service = _build_service()
    try:
        settings = service.update_settings(endpoint=endpoint)
    finally:
        service.close()
    print(f"OK: endpoint={settings['endpoint']}")


@app.command("config-set-auth")
def config_set_auth(
    mode: AuthMode = typer.Option(..., "--mode", help="token | ucan | basic"),
    credential: str = typer.Option("", "--credential", help="Token, capability token or basic credentials."),
    resource: str | None = typer.Option(None, "--resource", help="Capability resource, e.g. app:yeying-wallet"),
):
    """Set the auth mode and its credential."""
    fields: dict[str, object] = {"auth_mode": mode}
    if credential:
        fields[CREDENTIAL_FIELDS[mode]] = credential
    if resource is not None:
        fields["ucan_resource"] = resource

    service = _build_service()
    try:
        settings = service.update_settings(**fields)
    except SyncError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)
    finally:
        service.close()
    _print_json(
        {
            "ok": True,
            "auth_mode": settings["auth_mode"],
            "credential_set": bool(settings.get(f"{CREDENTIAL_FIELDS[mode]}_set")),
            "ucan_resource": settings["ucan_resource"],
        }
    )


@app.command()
def status():
    """Show sync status summary."""
    service = _build_service()
    try:
        info = service.status()
    finally:
        service.close()

    table = Table(title="walletsync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("enabled", "yes" if info["enabled"] else "no")
    table.add_row("endpoint", info["endpoint"] or "(unset)")
    table.add_row("auth_mode", info["auth_mode"])
    table.add_row("credentials", "set" if info["has_auth"] else "missing")
    table.add_row("dirty", "yes" if info["dirty"] else "no")
    table.add_row("pending_delete", "yes" if info["pending_delete"] else "no")
    table.add_row("pending_conflicts", str(info["pending_conflicts"]))
    table.add_row("last_pull_at", info["last_pull_at_iso"] or "-")
    table.add_row("last_push_at", info["last_push_at_iso"] or "-")
    console.print(table)


@app.command()
def logs(
    level: str | None = typer.Option(None, "--level", help="info | warn | error"),
    action: str | None = typer.Option(None, "--action", help="Filter by action, e.g. push-error."),
    limit: int = typer.Option(50, "--limit", min=1),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
):
    """Show the sync activity log, newest first."""
    service = _build_service()
    try:
        items = service.activity.entries(level=level, action=action, limit=limit)
    finally:
        service.close()

    if json_output:
        _print_json([item.to_store() for item in items])
        return

    table = Table(title=f"sync activity ({len(items)})")
    table.add_column("Time")
    table.add_column("Level")
    table.add_column("Action")
    table.add_column("Message")
    for item in items:
        style = {"error": "red", "warn": "yellow"}.get(item.level, "")
        table.add_row(ms_to_iso(item.time) or "-", item.level, item.action, item.message, style=style)
    console.print(table)


@app.command("logs-clear")
def logs_clear():
    """Delete all sync activity entries."""
    service = _build_service()
    try:
        service.clear_activity_logs()
    finally:
        service.close()
    print("OK: activity log cleared")


@app.command()
def conflicts():
    """List merge conflicts waiting for a decision."""
    service = _build_service()
    try:
        items = service.conflicts.list()
    finally:
        service.close()

    if not items:
        print("no pending conflicts")
        return
    table = Table(title=f"pending conflicts ({len(items)})")
    table.add_column("Id")
    table.add_column("Local")
    table.add_column("Remote")
    table.add_column("Timestamp")
    for item in items:
        table.add_row(item.id, item.local_name, item.remote_name, ms_to_iso(item.timestamp) or "-")
    console.print(table)


@app.command()
def resolve(
    conflict_id: str = typer.Argument(..., help="Conflict id as listed by `conflicts`."),
    choice: str = typer.Option(..., "--keep", help="local | remote"),
):
    """Resolve one conflict by keeping the local or the remote value."""
    if choice not in RESOLUTION_CHOICES:
        console.print(f"[red]invalid choice: {choice}[/red]")
        raise typer.Exit(2)
    service = _build_service()
    try:
        service.resolve_conflict(conflict_id, choice)
    except SyncError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)
    finally:
        service.close()
    print(f"OK: {conflict_id} resolved with {choice} value")


@app.command()
def disable():
    """Disable sync; the remote backup is removed on the next wallet unlock."""
    service = _build_service()
    try:
        service.disable_sync()
    except SyncError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)
    finally:
        service.close()
    print("OK: sync disabled")


@app.command()
def enable():
    """Re-enable sync."""
    service = _build_service()
    try:
        service.enable_sync()
    finally:
        service.close()
    print("OK: sync enabled")


@app.command()
def serve():
    """Run the HTTP console."""
    from walletsync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
