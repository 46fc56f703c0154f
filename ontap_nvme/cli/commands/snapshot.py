"""
Snapshot management commands.
"""

import time

import typer

from ontap_nvme.cli.common import get_driver

app = typer.Typer(help="Snapshot management commands")


@app.command()
def create(
    volname: str = typer.Argument(..., help="Disk name"),
    snap: str = typer.Argument(..., help="Snapshot name"),
):
    """
    Create a snapshot.

    Uses the VM's consistency group when it has one, the disk's volume
    otherwise.
    """
    try:
        layer = get_driver().volume_snapshot(volname, snap)
        typer.echo(f"Snapshot {snap} created on {layer}")
    except Exception as e:
        typer.echo(f"Error creating snapshot: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def rollback(
    volname: str = typer.Argument(..., help="Disk name"),
    snap: str = typer.Argument(..., help="Snapshot name"),
):
    """
    Roll back to a snapshot.
    """
    try:
        layer = get_driver().volume_snapshot_rollback(volname, snap)
        typer.echo(f"Rolled back {volname} to {layer} snapshot {snap}")
    except Exception as e:
        typer.echo(f"Error rolling back snapshot: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def delete(
    volname: str = typer.Argument(..., help="Disk name"),
    snap: str = typer.Argument(..., help="Snapshot name"),
):
    """
    Delete a snapshot.
    """
    try:
        layer = get_driver().volume_snapshot_delete(volname, snap)
        if layer is None:
            typer.echo(f"Snapshot {snap} not found")
            return
        typer.echo(f"Snapshot {snap} deleted from {layer}")
    except Exception as e:
        typer.echo(f"Error deleting snapshot: {e}", err=True)
        raise typer.Exit(1)


@app.command("list")
def list_snapshots(
    volname: str = typer.Argument(..., help="Disk name"),
):
    """
    List snapshots of a disk.
    """
    try:
        snapshots = get_driver().volume_snapshot_info(volname)
        if not snapshots:
            typer.echo("No snapshots found")
            return
        for label, record in sorted(snapshots.items(), key=lambda item: item[1].timestamp):
            created = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.timestamp))
            typer.echo(f"{label} layer={record.layer} created={created}")
    except Exception as e:
        typer.echo(f"Error listing snapshots: {e}", err=True)
        raise typer.Exit(1)
