"""Diagnostic CLI for fleeting-proxmox."""

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fleeting_proxmox import __version__
from fleeting_proxmox.core.config import Settings
from fleeting_proxmox.core.exceptions import FleetingProxmoxError
from fleeting_proxmox.group import InstanceGroup
from fleeting_proxmox.utils.logging import setup_logging

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    default="settings.yaml",
    help="Path to instance group settings",
)
@click.pass_context
def cli(ctx: click.Context, config: str) -> None:
    """Check Proxmox credentials and resolve pool VMs."""
    try:
        settings = Settings.from_file(config)
    except FleetingProxmoxError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(
        level=settings.logging.level,
        format=settings.logging.format,
        output=settings.logging.output,
    )
    ctx.obj = InstanceGroup(settings)


@cli.command()
@click.pass_obj
def check(group: InstanceGroup) -> None:
    """Authenticate and list the pool's members."""
    console.print("[bold magenta]Proxmox Check[/bold magenta]\n")
    console.print(f"URL: {group.settings.url}")
    console.print(f"Pool: {group.settings.pool}\n")

    try:
        group.init()
        pool = group.get_proxmox_pool()
    except FleetingProxmoxError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise SystemExit(1) from e
    finally:
        group.shutdown()

    mode = "API token" if group.proxmox.uses_api_token else "session ticket"
    console.print(f"[green]✓ Authenticated with {mode}[/green]")

    table = Table(title=f"Pool {pool.poolid} ({len(pool.members)} members)")
    table.add_column("Type", style="magenta")
    table.add_column("VMID", style="cyan")
    table.add_column("Node", style="blue")
    table.add_column("Name")

    for member in pool.members:
        table.add_row(
            member.type,
            str(member.vmid) if member.vmid is not None else "-",
            member.node or "-",
            member.name or "-",
        )

    console.print(table)


@cli.command()
@click.argument("vmid", type=click.IntRange(min=0))
@click.option("--node", default=None, help="Node hosting the VM, skips the pool lookup")
@click.pass_obj
def resolve(group: InstanceGroup, vmid: int, node: str | None) -> None:
    """Resolve VMID to the node currently hosting it."""
    try:
        group.init()
        if node:
            vm = group.get_proxmox_vm_on_node(vmid, node)
        else:
            vm = group.get_proxmox_vm(vmid)
    except FleetingProxmoxError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise SystemExit(1) from e
    finally:
        group.shutdown()

    console.print(
        f"[green]✓ vm={vm.vmid}[/green] node={vm.node} "
        f"name={vm.name or '-'} status={vm.status or '-'}"
    )


if __name__ == "__main__":
    cli()
