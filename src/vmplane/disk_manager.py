"""Disk images backing each VM.

DiskManager is the interface the supervisor and control plane consume;
QemuImgDiskManager stores one qcow2 file per VM, ``{disks_dir}/{vm_id}.qcow2``,
created with ``qemu-img create``.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles.os

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.exceptions import StorageError

logger = get_logger(__name__)


@runtime_checkable
class DiskManager(Protocol):
    """Allocates and removes per-VM backing storage."""

    async def allocate(self, vm_id: str, size_gib: int) -> Path:
        """Ensure a disk exists for ``vm_id`` and return its path."""
        ...

    async def delete(self, vm_id: str) -> None: ...

    async def size_of(self, vm_id: str) -> int:
        """Bytes currently used on the host by the VM's disk."""
        ...


class QemuImgDiskManager:
    """qcow2 disks managed through the ``qemu-img`` binary."""

    def __init__(self, disks_dir: Path, qemu_img: Path | str = "qemu-img") -> None:
        self.disks_dir = disks_dir
        self.qemu_img = str(qemu_img)

    def path_for(self, vm_id: str) -> Path:
        return self.disks_dir / f"{vm_id}.qcow2"

    async def _run_qemu_img(self, *args: str, vm_id: str) -> str:
        """Run qemu-img and return stdout.

        Raises:
            StorageError: Binary missing, non-zero exit, or timeout.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.qemu_img,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            msg = f"qemu-img could not be executed: {e}"
            raise StorageError(msg, context={"vm_id": vm_id, "qemu_img": self.qemu_img}) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=constants.QEMU_IMG_TIMEOUT_SECONDS)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            msg = f"qemu-img {args[0]} timed out"
            raise StorageError(msg, context={"vm_id": vm_id}) from e

        if proc.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            msg = f"qemu-img {args[0]} failed: {err or f'exit code {proc.returncode}'}"
            raise StorageError(
                msg,
                context={"vm_id": vm_id, "returncode": proc.returncode, "args": list(args)},
                stderr=err,
            )
        return stdout.decode(errors="replace")

    async def allocate(self, vm_id: str, size_gib: int) -> Path:
        """Create ``{vm_id}.qcow2`` of ``size_gib`` unless it already exists.

        An existing file is reused as-is; a VM's disk survives stop/start.
        """
        if size_gib < constants.MIN_DISK_SIZE_GIB:
            msg = f"Disk size must be at least {constants.MIN_DISK_SIZE_GIB} GiB"
            raise StorageError(msg, context={"vm_id": vm_id, "size_gib": size_gib})

        path = self.path_for(vm_id)
        if await aiofiles.os.path.exists(path):
            logger.debug("Reusing existing disk", extra={"vm_id": vm_id, "path": str(path)})
            return path

        try:
            await aiofiles.os.makedirs(self.disks_dir, exist_ok=True)
        except OSError as e:
            msg = f"Cannot create disk directory {self.disks_dir}: {e}"
            raise StorageError(msg, context={"vm_id": vm_id}) from e

        await self._run_qemu_img("create", "-f", "qcow2", str(path), f"{size_gib}G", vm_id=vm_id)
        logger.info("Disk allocated", extra={"vm_id": vm_id, "path": str(path), "size_gib": size_gib})
        return path

    async def delete(self, vm_id: str) -> None:
        """Remove the VM's disk. A missing file is not an error."""
        path = self.path_for(vm_id)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            msg = f"Failed to delete disk {path}: {e}"
            raise StorageError(msg, context={"vm_id": vm_id, "path": str(path)}) from e
        logger.info("Disk deleted", extra={"vm_id": vm_id, "path": str(path)})

    async def size_of(self, vm_id: str) -> int:
        path = self.path_for(vm_id)
        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError as e:
            msg = f"Disk for VM {vm_id} not found"
            raise StorageError(msg, context={"vm_id": vm_id, "path": str(path)}) from e
        return stat.st_size

    async def virtual_size_of(self, vm_id: str) -> int:
        """Guest-visible capacity in bytes, from ``qemu-img info``."""
        path = self.path_for(vm_id)
        out = await self._run_qemu_img("info", "--output=json", str(path), vm_id=vm_id)
        try:
            return int(json.loads(out)["virtual-size"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            msg = "Unexpected qemu-img info output"
            raise StorageError(msg, context={"vm_id": vm_id, "output": out[:200]}) from e
