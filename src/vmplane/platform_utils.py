"""Host detection and process utilities.

Uses psutil's OS constants for platform identification and wraps asyncio
subprocesses with psutil for PID-reuse safe signalling.
"""

import asyncio
import contextlib
import platform
import sys
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM acceleration)."""

    MACOS = auto()
    """macOS (HVF acceleration)."""

    WINDOWS = auto()
    """Windows (WHPX acceleration)."""

    UNKNOWN = auto()


class HostArch(Enum):
    """Host CPU architectures QEMU system emulators exist for."""

    X86_64 = auto()
    AARCH64 = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    if psutil.WINDOWS:
        return HostOS.WINDOWS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect host CPU architecture from ``platform.machine()``."""
    machine = platform.machine().lower()
    if machine in {"x86_64", "amd64"}:
        return HostArch.X86_64
    if machine in {"arm64", "aarch64"}:
        return HostArch.AARCH64
    return HostArch.UNKNOWN


def default_qemu_binary_name(arch: HostArch | None = None) -> str:
    """QEMU system emulator matching the host architecture."""
    arch = arch or detect_host_arch()
    return "qemu-system-aarch64" if arch == HostArch.AARCH64 else "qemu-system-x86_64"


def get_data_dir() -> Path:
    """Platform-specific data directory for disks and the registry.

    - Linux: ~/.local/share/vmplane
    - macOS: ~/Library/Application Support/vmplane
    """
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "vmplane"
    return Path.home() / ".local" / "share" / "vmplane"


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so that signals are
    never delivered to an unrelated process that inherited a recycled PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        psutil calls run in a worker thread so a hung /proc read cannot stall
        the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        return await self.async_proc.wait()

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def terminate(self) -> None:
        """Send SIGTERM."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        elif self.async_proc.returncode is None:
            self.async_proc.terminate()

    async def kill(self) -> None:
        """Send SIGKILL."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        elif self.async_proc.returncode is None:
            self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit within ``timeout`` seconds.

        The supervisor always drains stdout/stderr from a background task, so a
        plain wait() cannot deadlock on a full pipe here.

        Raises:
            TimeoutError: Process did not exit in time.
        """
        async with asyncio.timeout(timeout):
            return await self.wait()
