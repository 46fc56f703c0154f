#!/usr/bin/env python3
"""
Main CLI entry point using Typer.
"""

import sys
from typing import List, Optional

import typer

from ontap_nvme.cli import common
from ontap_nvme.cli.commands import image, snapshot

app = typer.Typer(
    name="ontap-nvme",
    help="ONTAP NVMe/TCP storage control tool",
    add_completion=False,
)


@app.callback()
def configure(
    config_file: Optional[List[str]] = typer.Option(
        None, "--config-file", help=f"Configuration file (default: {common.DEFAULT_CONFIG_FILE})"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """ONTAP NVMe/TCP storage control tool."""
    if config_file:
        common.state["config_files"] = list(config_file)
    common.state["debug"] = debug


# Disk commands
app.command("alloc")(image.alloc)
app.command("free")(image.free)
app.command("resize")(image.resize)
app.command("path")(image.path)
app.command("list")(image.list_images)
app.command("status")(image.status)
app.command("clone")(image.clone)

app.add_typer(snapshot.app, name="snapshot", help="Snapshot management commands")


def main() -> int:
    """Main entry point."""
    try:
        app()
        return 0
    except KeyboardInterrupt:
        typer.echo("\nOperation cancelled by user", err=True)
        return 130
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
