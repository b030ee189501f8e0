"""Command-line interface for vmplane.

Usage:
    vmplane detect                          # Is QEMU usable here?
    vmplane host                            # Host CPUs, memory, accelerator
    vmplane create -n dev -m 2048 -c 2 -d 20
    vmplane list
    vmplane show VM_ID
    vmplane update VM_ID --memory 4096
    vmplane run VM_ID                       # Start, print display URI, supervise until exit
    vmplane delete VM_ID

The supervisor lives inside this process, so ``run`` keeps the VM alive only
while the command runs; Ctrl-C stops the guest gracefully.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click
from pydantic import BaseModel

from vmplane import __version__
from vmplane._logging import configure_logging
from vmplane.control_plane import ControlPlane
from vmplane.exceptions import (
    AlreadyRunningError,
    ConfigValidationError,
    ControlPlaneError,
    NotFoundError,
    NotRunningError,
    SpawnError,
    StorageError,
)
from vmplane.models import BootOrder
from vmplane.settings import Settings
from vmplane.vm_types import LifecycleState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from vmplane.models import VMRecord

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CONTROL_PLANE_ERROR = 125
EXIT_INTERRUPTED = 130

# How often `run` checks whether the supervised VM is still alive
_RUN_POLL_INTERVAL_SECONDS = 0.5


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def describe_error(error: ControlPlaneError) -> str:
    """Pick title and suggestions for a control-plane error."""
    if isinstance(error, ConfigValidationError):
        return format_error(
            "Invalid configuration",
            error.message,
            [
                "Memory must be at least 512 MiB, CPU cores and disk size at least 1",
                "VM ids contain only letters, digits, '-' and '_'",
            ],
        )
    if isinstance(error, NotFoundError):
        return format_error("Not found", error.message, ["List VMs with: vmplane list"])
    if isinstance(error, AlreadyRunningError | NotRunningError):
        return format_error("Invalid VM state", error.message, ["Check the VM status with: vmplane show VM_ID"])
    if isinstance(error, SpawnError):
        stderr = error.context.get("stderr") or []
        message = error.message + "".join(f"\n    | {line}" for line in stderr)
        return format_error(
            "Hypervisor failed to start",
            message,
            [
                "Check that QEMU is installed: brew install qemu / apt install qemu-system",
                "Point VMPLANE_QEMU_BINARY at a qemu-system-* binary",
                "Run with -v for the full hypervisor output",
            ],
        )
    if isinstance(error, StorageError):
        return format_error(
            "Disk operation failed",
            error.message,
            ["Check that qemu-img is installed and VMPLANE_DATA_DIR is writable"],
        )
    return format_error("Control plane error", error.message)


def _dump(value: BaseModel | list[BaseModel]) -> str:
    if isinstance(value, list):
        return json.dumps([v.model_dump(mode="json") for v in value], indent=2)
    return json.dumps(value.model_dump(mode="json"), indent=2)


def _format_record(record: VMRecord) -> str:
    fields: list[tuple[str, Any]] = [
        ("ID", record.id),
        ("Name", record.name),
        ("Status", record.status.value),
        ("Memory", f"{record.memory_mib} MiB"),
        ("CPU cores", record.cpu_cores),
        ("Disk", f"{record.disk_size_gib} GiB"),
        ("OS", record.os),
        ("Boot order", record.boot_order.value),
        ("Network", record.network_mode.value),
        ("Install media", record.install_media or "-"),
        ("Created", record.created_at.isoformat(timespec="seconds")),
        ("Updated", record.updated_at.isoformat(timespec="seconds")),
    ]
    return "\n".join(f"{label + ':':<15}{value}" for label, value in fields)


def _format_table(records: list[VMRecord]) -> str:
    header = f"{'ID':<32}  {'NAME':<20}  {'STATUS':<8}  {'MEMORY':>8}  {'CPUS':>4}  {'DISK':>6}"
    rows = [
        f"{r.id:<32}  {r.name[:20]:<20}  {r.status.value:<8}  "
        f"{r.memory_mib:>5}MiB  {r.cpu_cores:>4}  {r.disk_size_gib:>3}GiB"
        for r in records
    ]
    return "\n".join([header, *rows])


async def _with_plane(action: Callable[[ControlPlane], Awaitable[int]]) -> int:
    """Run ``action`` against a fresh ControlPlane, mapping errors to exit codes."""
    try:
        async with ControlPlane(Settings()) as plane:
            return await action(plane)
    except ControlPlaneError as e:
        click.echo(describe_error(e), err=True)
        return EXIT_CONTROL_PLANE_ERROR


def _execute(action: Callable[[ControlPlane], Awaitable[int]]) -> NoReturn:
    try:
        exit_code = asyncio.run(_with_plane(action))
    except KeyboardInterrupt:
        exit_code = EXIT_INTERRUPTED
    sys.exit(exit_code)


json_option = click.option("--json", "json_output", is_flag=True, help="Output as JSON")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="vmplane")
def main(verbose: bool, quiet: bool) -> None:
    """Create, run and manage local QEMU virtual machines.

    Configuration comes from VMPLANE_* environment variables
    (e.g. VMPLANE_DATA_DIR, VMPLANE_QEMU_BINARY, VMPLANE_FORCE_EMULATION).
    """
    configure_logging(level=logging.DEBUG if verbose else None, quiet=quiet)


@main.command()
@json_option
def detect(json_output: bool) -> NoReturn:
    """Look for a usable QEMU system emulator."""

    async def action(plane: ControlPlane) -> int:
        info = await plane.detect_hypervisor()
        if json_output:
            click.echo(_dump(info))
        elif info.detected:
            click.echo(f"QEMU {info.version} at {info.path} (accelerator: {info.accelerator.value})")
        else:
            click.echo(
                format_error(
                    "QEMU not found",
                    "No working qemu-system-* binary was found.",
                    ["Install QEMU: brew install qemu / apt install qemu-system", "Or set VMPLANE_QEMU_BINARY"],
                ),
                err=True,
            )
        return EXIT_SUCCESS if info.detected else EXIT_CONTROL_PLANE_ERROR

    _execute(action)


@main.command()
@json_option
def host(json_output: bool) -> NoReturn:
    """Show host capabilities."""

    async def action(plane: ControlPlane) -> int:
        caps = await plane.get_host_capabilities()
        if json_output:
            click.echo(_dump(caps))
            return EXIT_SUCCESS
        click.echo(f"OS:           {caps.os} ({caps.arch})")
        click.echo(f"CPUs:         {caps.cpu_count}")
        click.echo(f"Memory:       {caps.total_memory_mib} MiB")
        click.echo(f"Accelerator:  {caps.accelerator.value}")
        hv = caps.hypervisor
        click.echo(f"QEMU:         {f'{hv.version} ({hv.path})' if hv.detected else 'not found'}")
        return EXIT_SUCCESS

    _execute(action)


@main.command()
@click.option("-n", "--name", required=True, help="VM name")
@click.option("-m", "--memory", default=2048, show_default=True, help="Memory in MiB")
@click.option("-c", "--cpus", default=2, show_default=True, help="CPU cores")
@click.option("-d", "--disk", default=20, show_default=True, help="Disk size in GiB")
@click.option("--os", "guest_os", default="linux", show_default=True, help="Guest OS tag")
@click.option("--iso", type=click.Path(path_type=Path), help="Install media attached as CD-ROM")
@click.option(
    "--boot",
    type=click.Choice([b.value for b in BootOrder]),
    default=BootOrder.DISK_FIRST.value,
    show_default=True,
    help="Boot order",
)
@json_option
def create(
    name: str,
    memory: int,
    cpus: int,
    disk: int,
    guest_os: str,
    iso: Path | None,
    boot: str,
    json_output: bool,
) -> NoReturn:
    """Register a new VM and allocate its disk."""
    config = {
        "name": name,
        "memory_mib": memory,
        "cpu_cores": cpus,
        "disk_size_gib": disk,
        "os": guest_os,
        "boot_order": boot,
        "install_media": iso,
    }

    async def action(plane: ControlPlane) -> int:
        record = await plane.create(config)
        click.echo(_dump(record) if json_output else record.id)
        return EXIT_SUCCESS

    _execute(action)


@main.command(name="list")
@json_option
def list_vms(json_output: bool) -> NoReturn:
    """List VMs, newest first."""

    async def action(plane: ControlPlane) -> int:
        records = await plane.list()
        if json_output:
            click.echo(_dump(records))
        elif records:
            click.echo(_format_table(records))
        else:
            click.echo("No VMs. Create one with: vmplane create -n NAME", err=True)
        return EXIT_SUCCESS

    _execute(action)


@main.command()
@click.argument("vm_id")
@json_option
def show(vm_id: str, json_output: bool) -> NoReturn:
    """Show one VM."""

    async def action(plane: ControlPlane) -> int:
        record = await plane.get(vm_id)
        click.echo(_dump(record) if json_output else _format_record(record))
        return EXIT_SUCCESS

    _execute(action)


@main.command()
@click.argument("vm_id")
@click.option("-n", "--name", help="VM name")
@click.option("-m", "--memory", type=int, help="Memory in MiB")
@click.option("-c", "--cpus", type=int, help="CPU cores")
@click.option("--os", "guest_os", help="Guest OS tag")
@click.option("--iso", type=click.Path(path_type=Path), help="Install media attached as CD-ROM")
@click.option("--boot", type=click.Choice([b.value for b in BootOrder]), help="Boot order")
@json_option
def update(
    vm_id: str,
    name: str | None,
    memory: int | None,
    cpus: int | None,
    guest_os: str | None,
    iso: Path | None,
    boot: str | None,
    json_output: bool,
) -> NoReturn:
    """Change the configuration of a stopped VM."""
    candidates = {
        "name": name,
        "memory_mib": memory,
        "cpu_cores": cpus,
        "os": guest_os,
        "install_media": iso,
        "boot_order": boot,
    }
    patch = {key: value for key, value in candidates.items() if value is not None}
    if not patch:
        raise click.UsageError("Nothing to update. Pass at least one option.")

    async def action(plane: ControlPlane) -> int:
        record = await plane.update(vm_id, patch)
        click.echo(_dump(record) if json_output else _format_record(record))
        return EXIT_SUCCESS

    _execute(action)


@main.command()
@click.argument("vm_id")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def delete(vm_id: str, yes: bool) -> NoReturn:
    """Delete a VM and its disk."""
    if not yes:
        click.confirm(f"Delete VM {vm_id} and its disk?", abort=True)

    async def action(plane: ControlPlane) -> int:
        await plane.delete(vm_id)
        click.echo(f"Deleted {vm_id}", err=True)
        return EXIT_SUCCESS

    _execute(action)


@main.command()
@click.argument("vm_id")
@json_option
def run(vm_id: str, json_output: bool) -> NoReturn:
    """Start a VM and supervise it until it exits (Ctrl-C stops it)."""

    async def action(plane: ControlPlane) -> int:
        await plane.start(vm_id)
        session = await plane.open_display(vm_id)
        if json_output:
            click.echo(_dump(session))
        else:
            click.echo(click.style(f"✓ VM {vm_id} running", fg="green"), err=True)
            click.echo(session.uri)

        while plane.supervisor.is_running(vm_id):
            await asyncio.sleep(_RUN_POLL_INTERVAL_SECONDS)

        info = plane.supervisor.info(vm_id)
        if info is not None and info.state is LifecycleState.ERROR:
            click.echo(format_error("VM exited", info.last_error or "QEMU exited unexpectedly"), err=True)
            return EXIT_CONTROL_PLANE_ERROR
        click.echo(f"VM {vm_id} stopped", err=True)
        return EXIT_SUCCESS

    _execute(action)


if __name__ == "__main__":
    main()
