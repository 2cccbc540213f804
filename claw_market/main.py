"""Command-line entry point for Claw Market."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from claw_market.catalog import search_catalog
from claw_market.config import Config, load_document, resolve_config_path, set_config, write_document
from claw_market.exceptions import ClawMarketError
from claw_market.logging import configure_logging, log
from claw_market.models import Catalog, CatalogSearchResult
from claw_market.service import MarketplaceService, ServiceResult

cli = typer.Typer(help="Claw Market - install extensions and skills from a marketplace catalog")
console = Console()

_state: dict[str, Any] = {"config_path": None}


def _config_path() -> Path:
    return resolve_config_path(_state["config_path"])


def _load_config() -> Config:
    try:
        cfg = Config.load(_config_path())
    except ClawMarketError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e
    set_config(cfg)
    configure_logging(cfg)
    return cfg


def _service() -> MarketplaceService:
    return MarketplaceService(_load_config())


def _fetch_catalog(service: MarketplaceService) -> Catalog:
    try:
        return asyncio.run(service.load_marketplace_catalog())
    except ClawMarketError as e:
        log.error("Failed to load catalog", error=str(e))
        console.print(f"[red]Failed to load catalog:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e


def _print_catalog(result: CatalogSearchResult | Catalog, extensions: bool = True, skills: bool = True) -> None:
    if extensions:
        table = Table(title=f"Extensions ({len(result.extensions)})", show_header=True, header_style="bold cyan")
        table.add_column("ID")
        table.add_column("Kind")
        table.add_column("Version")
        table.add_column("Description", overflow="fold")
        for entry in result.extensions:
            table.add_row(entry.id, entry.kind.value, entry.version, entry.description)
        console.print(table)
    if skills:
        table = Table(title=f"Skills ({len(result.skills)})", show_header=True, header_style="bold cyan")
        table.add_column("Name")
        table.add_column("Version")
        table.add_column("Description", overflow="fold")
        for entry in result.skills:
            table.add_row(entry.name, entry.version, entry.description)
        console.print(table)


def _load_doc() -> dict[str, Any]:
    try:
        return load_document(_config_path())
    except ClawMarketError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1) from e


def _finish(result: ServiceResult) -> None:
    """Persist a changed document and exit non-zero on failure."""
    if result.changed and result.config is not None:
        path = write_document(result.config, _config_path())
        log.info("Configuration updated", path=str(path))
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")
    if not result.ok:
        console.print(f"[red]Error:[/red] {escape(result.error)}")
        raise typer.Exit(1)


@cli.callback()
def _main_options(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    _state["config_path"] = config or None


@cli.command("list")
def list_catalog(
    as_json: bool = typer.Option(False, "--json", help="Print the raw catalog as JSON"),
    extensions_only: bool = typer.Option(False, "--extensions-only", help="Only list extensions"),
    skills_only: bool = typer.Option(False, "--skills-only", help="Only list skills"),
) -> None:
    """List everything available in the marketplace catalog."""
    catalog = _fetch_catalog(_service())
    if as_json:
        print(json.dumps(catalog.model_dump(mode="json", by_alias=True), indent=2))
        return
    _print_catalog(catalog, extensions=not skills_only, skills=not extensions_only)


@cli.command()
def search(query: str = typer.Argument(..., help="Text to match against ids, names, descriptions and tags")) -> None:
    """Search the marketplace catalog."""
    result = search_catalog(_fetch_catalog(_service()), query)
    if not result.extensions and not result.skills:
        console.print(f'No results for "{query}".')
        return
    _print_catalog(result, extensions=bool(result.extensions), skills=bool(result.skills))


@cli.command()
def install(
    unit_id: str = typer.Argument(..., metavar="ID", help="Extension id, package spec or skill name"),
    unit_type: str = typer.Option("", "--type", help="Prefer 'extension' or 'skill' when both match"),
    pin: bool = typer.Option(False, "--pin", help="Record the exact resolved package version"),
) -> None:
    """Install an extension or skill from the catalog."""
    service = _service()
    result = asyncio.run(service.install_from_catalog(_load_doc(), unit_id, unit_type or None, pin=pin))
    _finish(result)
    payload = result.payload
    console.print(f"[green]Installed[/green] {payload.get('type')} {payload.get('id')} {payload.get('version') or ''}".rstrip())
    if payload.get("restartRequired"):
        console.print("Restart the host application to load the new extension.")


@cli.command()
def uninstall(
    unit_id: str = typer.Argument(..., metavar="ID", help="Installed extension id or skill name"),
    unit_type: str = typer.Option(..., "--type", help="'extension' or 'skill'"),
) -> None:
    """Remove an installed extension or skill."""
    service = _service()
    result = asyncio.run(service.uninstall(_load_doc(), unit_id, unit_type))
    _finish(result)
    console.print(f"[green]Removed[/green] {unit_type} {unit_id}")


@cli.command()
def installed() -> None:
    """Show installed extensions and skills."""
    service = _service()
    listing = service.list_installed(_load_doc())

    table = Table(title="Installed", show_header=True, header_style="bold cyan")
    table.add_column("Type")
    table.add_column("ID")
    table.add_column("Version")
    table.add_column("Source")
    table.add_column("Enabled", justify="center")
    table.add_column("Installed at")
    for item in listing["extensions"]:
        table.add_row(
            "extension",
            item["id"],
            item["version"] or "",
            item["source"],
            "yes" if item["enabled"] else "no",
            item["installedAt"] or "",
        )
    for item in listing["skills"]:
        table.add_row("skill", item["name"], item["version"] or "", item["source"], "", item["installedAt"] or "")
    console.print(table)


@cli.command()
def sync(dry_run: bool = typer.Option(False, "--dry-run", help="Report updates without installing")) -> None:
    """Update marketplace installs to the catalog's current versions."""
    service = _service()
    result = asyncio.run(service.sync(_load_doc(), dry_run=dry_run))

    outcomes = result.payload.get("results", [])
    if outcomes:
        table = Table(title="Sync" + (" (dry run)" if dry_run else ""), show_header=True, header_style="bold cyan")
        table.add_column("Type")
        table.add_column("ID")
        table.add_column("Status")
        table.add_column("Version")
        table.add_column("Message", overflow="fold")
        for item in outcomes:
            if item.get("from_version") or item.get("to_version"):
                version = f"{item.get('from_version') or '?'} -> {item.get('to_version') or '?'}"
            else:
                version = item.get("version", "")
            table.add_row(item["type"], item["id"], item["status"], version, item.get("message", ""))
        console.print(table)
    else:
        console.print("Nothing to sync.")
    _finish(result)


@cli.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind address (default from config)"),
    port: int = typer.Option(0, "--port", help="Port (default from config)"),
) -> None:
    """Run the HTTP gateway."""
    from claw_market.web_server import run_web_server

    cfg = _load_config()
    try:
        run_web_server(cfg, _config_path(), host or None, port or None)
    except KeyboardInterrupt:
        console.print("\nGateway stopped.")


@cli.command()
def version() -> None:
    """Show version information."""
    from claw_market import __version__

    print(f"Claw Market v{__version__}")


def main() -> None:
    try:
        cli()
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
