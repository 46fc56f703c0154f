"""
Disk image commands.
"""

from typing import Optional

import typer

from ontap_nvme.cli.common import get_driver

GIB_IN_KIB = 1024 * 1024
GIB = 1024 ** 3


def alloc(
    owner: int = typer.Argument(..., help="VM id owning the disk"),
    size: int = typer.Option(..., "--size", help="Size in GiB"),
    name: Optional[str] = typer.Option(None, "--name", help="Disk name (default: next free index)"),
):
    """
    Allocate a new disk.

    Creates a volume and namespace, maps it to the subsystem and adds the
    volume to the VM's consistency group.
    """
    try:
        typer.echo(f"Allocating disk for VM {owner} ({size} GiB)")
        volname = get_driver().alloc_image(owner, "raw", name, size * GIB_IN_KIB)
        typer.echo(f"Disk {volname} allocated successfully")
    except Exception as e:
        typer.echo(f"Error allocating disk: {e}", err=True)
        raise typer.Exit(1)


def free(
    volname: str = typer.Argument(..., help="Disk name, e.g. vm-100-disk-0"),
):
    """
    Free a disk.

    Unmaps and deletes the namespace, deletes the volume and removes the
    consistency group once it is empty.
    """
    try:
        typer.echo(f"Freeing disk: {volname}")
        get_driver().free_image(volname)
        typer.echo(f"Disk {volname} freed successfully")
    except Exception as e:
        typer.echo(f"Error freeing disk: {e}", err=True)
        raise typer.Exit(1)


def resize(
    volname: str = typer.Argument(..., help="Disk name"),
    new_size: int = typer.Option(..., "--new-size", help="New size in GiB"),
):
    """
    Resize a disk.
    """
    try:
        typer.echo(f"Resizing disk: {volname}")
        get_driver().volume_resize(volname, new_size * GIB)
        typer.echo(f"Disk {volname} resized to {new_size} GiB")
    except Exception as e:
        typer.echo(f"Error resizing disk: {e}", err=True)
        raise typer.Exit(1)


def path(
    volname: str = typer.Argument(..., help="Disk name"),
):
    """
    Print the local block device of a disk.
    """
    try:
        typer.echo(get_driver().path(volname))
    except Exception as e:
        typer.echo(f"Error resolving path: {e}", err=True)
        raise typer.Exit(1)


def list_images(
    owner: Optional[int] = typer.Option(None, "--owner", help="Filter by VM id"),
):
    """
    List disks.
    """
    try:
        images = get_driver().list_images(owner_id=owner)
        if not images:
            typer.echo("No disks found")
            return
        for image in images:
            typer.echo(f"{image.name} vm={image.owner_id} size={image.size} used={image.used} format={image.format}")
    except Exception as e:
        typer.echo(f"Error listing disks: {e}", err=True)
        raise typer.Exit(1)


def status():
    """
    Show aggregate capacity.
    """
    try:
        total, avail, used, active = get_driver().status()
        typer.echo(f"total={total} free={avail} used={used} active={int(active)}")
    except Exception as e:
        typer.echo(f"Error getting status: {e}", err=True)
        raise typer.Exit(1)


def clone(
    volname: str = typer.Argument(..., help="Source disk name"),
    owner: int = typer.Option(..., "--owner", help="VM id receiving the copy"),
):
    """
    Full-copy a disk to a new disk of another VM.
    """
    try:
        typer.echo(f"Cloning {volname} to VM {owner}")
        new_volname = get_driver().clone_image(volname, owner)
        typer.echo(f"Disk {new_volname} created successfully")
    except Exception as e:
        typer.echo(f"Error cloning disk: {e}", err=True)
        raise typer.Exit(1)
