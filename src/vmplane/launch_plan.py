"""QEMU launch plan: VM configuration to command line.

Pure functions only. The same inputs always produce the same argument list,
so launch behaviour is testable without spawning anything.

Argument layout (order is stable):

    qemu-system-*                       binary
    -m / -smp / -accel                  machine resources
    -drive (disk) [-drive (cdrom)]      storage, virtio + explicit qcow2 format
    -boot                               boot order
    -netdev user / -device virtio-net   single user-mode NAT device
    -spice                              remote display, loopback only
    -device usb-ehci / usb-tablet       absolute pointer
    -qmp                                control socket
    -name                               process name (always last)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from vmplane import constants
from vmplane.exceptions import ConfigValidationError
from vmplane.models import BootOrder, NetworkMode

if TYPE_CHECKING:
    from pathlib import Path

    from vmplane.models import VMConfiguration
    from vmplane.vm_types import AccelType


def _opt_escape(value: object) -> str:
    """Escape a value embedded in a QEMU option string (commas are doubled)."""
    return str(value).replace(",", ",,")


_BOOT_ORDER_ARG: dict[BootOrder, str] = {
    BootOrder.DISK_FIRST: "order=c",
    BootOrder.CDROM_FIRST: "order=dc",
}


def display_port_for(vm_id: str) -> int:
    """Derive the remote-display port for a VM id.

    Polynomial rolling hash over the id's UTF-8 bytes, reduced into a fixed
    window above the base port. Different ids may share a port; the control
    socket, not the port, identifies a VM.
    """
    h = 0
    for b in vm_id.encode():
        h = (h * constants.DISPLAY_HASH_MULTIPLIER + b) % constants.DISPLAY_PORT_WINDOW
    return constants.DISPLAY_BASE_PORT + h


def build_launch_args(
    vm_id: str,
    config: VMConfiguration,
    disk_path: Path,
    control_socket: Path,
    accel: AccelType,
    qemu_binary: str = "qemu-system-x86_64",
) -> list[str]:
    """Build the QEMU argument vector for one VM.

    Args:
        vm_id: VM id (selects the display port)
        config: Validated VM configuration
        disk_path: qcow2 backing file
        control_socket: Path QEMU listens on for QMP
        accel: Accelerator for ``-accel``
        qemu_binary: Emulator executable, becomes argv[0]

    Returns:
        Ordered argument list, argv[0] included

    Raises:
        ConfigValidationError: Memory or CPU count is zero
    """
    if config.memory_mib <= 0:
        raise ConfigValidationError("Memory must be > 0 MiB", context={"vm_id": vm_id})
    if config.cpu_cores <= 0:
        raise ConfigValidationError("CPU count must be > 0", context={"vm_id": vm_id})
    if config.network_mode is not NetworkMode.NAT:
        raise ConfigValidationError(f"Unsupported network mode: {config.network_mode}", context={"vm_id": vm_id})

    args = [
        str(qemu_binary),
        "-m",
        str(config.memory_mib),
        "-smp",
        f"cores={config.cpu_cores}",
        "-accel",
        accel.value,
        "-drive",
        f"file={_opt_escape(disk_path)},format=qcow2,if=virtio",
    ]

    if config.install_media is not None:
        args.extend(["-drive", f"file={_opt_escape(config.install_media)},media=cdrom,readonly=on"])

    args.extend(["-boot", _BOOT_ORDER_ARG[config.boot_order]])

    args.extend(
        [
            "-netdev",
            "user,id=net0",
            "-device",
            "virtio-net-pci,netdev=net0",
        ]
    )

    # Ticketing is disabled, so the listener must never leave loopback
    port = display_port_for(vm_id)
    args.extend(["-spice", f"port={port},addr={constants.DISPLAY_HOST},disable-ticketing=on"])

    args.extend(["-device", "usb-ehci,id=usb", "-device", "usb-tablet"])

    args.extend(["-qmp", f"unix:{_opt_escape(control_socket)},server=on,wait=off"])
    args.extend(["-name", _opt_escape(config.name)])
    return args
