"""Host capability probes: acceleration mode and QEMU discovery.

Probes run once and cache their results. Async probes share a cache container
whose locks are created lazily (an asyncio.Lock needs a running loop).

Acceleration is verified in two layers:
    1. Kernel: /dev/kvm usable (Linux) or kern.hv_support=1 (macOS)
    2. QEMU:   the emulator binary lists the accelerator in ``-accel help``
Anything else falls back to TCG software emulation.
"""

from __future__ import annotations

import asyncio
import os
import platform
import re
import shutil
import sys
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles.os
import psutil

from vmplane import constants
from vmplane._logging import get_logger
from vmplane.models import HostCapabilities, HypervisorInfo
from vmplane.platform_utils import HostArch, HostOS, default_qemu_binary_name, detect_host_arch, detect_host_os
from vmplane.vm_types import AccelType

logger = get_logger(__name__)

# linux/kvm.h, stable ABI
_KVM_GET_API_VERSION = 0xAE00
_KVM_API_VERSION_EXPECTED = 12

_QEMU_VERSION_RE = re.compile(r"version\s+(\d+(?:\.\d+)+)")


@runtime_checkable
class CapabilityProbe(Protocol):
    """What the supervisor needs to know about the host before launching."""

    async def preferred_acceleration_mode(self) -> AccelType: ...


class _ProbeCache:
    """Container for cached probe results (avoids module-level globals).

    The locks prevent a stampede of identical probe subprocesses when several
    VMs start at once.
    """

    __slots__ = ("_locks", "hvf", "kvm", "qemu_accels")

    def __init__(self) -> None:
        self.hvf: bool | None = None
        self.kvm: bool | None = None
        self.qemu_accels: dict[str, set[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def clear(self) -> None:
        self.hvf = None
        self.kvm = None
        self.qemu_accels.clear()
        self._locks.clear()


_probe_cache = _ProbeCache()


async def _run_probe(*argv: str) -> tuple[int | None, str]:
    """Run a short probe command; returns (returncode, stdout)."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=constants.PROBE_TIMEOUT_SECONDS)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode, stdout.decode(errors="replace")


def find_qemu_binary(preferred: Path | str | None = None) -> Path | None:
    """Locate a QEMU system emulator.

    ``preferred`` (an explicit path or command name) wins when it resolves.
    Otherwise the host-architecture emulator is tried before the other one,
    first on $PATH, then in the usual install prefixes.
    """
    search_path = os.pathsep.join([os.environ.get("PATH", ""), *constants.QEMU_SEARCH_PATHS])
    if preferred is not None:
        found = shutil.which(str(preferred), path=search_path)
        return Path(found) if found else None

    names = [default_qemu_binary_name()]
    names += [n for n in ("qemu-system-aarch64", "qemu-system-x86_64") if n not in names]
    for name in names:
        found = shutil.which(name, path=search_path)
        if found:
            return Path(found)
    return None


async def probe_qemu_version(binary: Path | str) -> str | None:
    """``qemu-system-* --version`` -> "9.1.0", or None if the binary does not run."""
    try:
        returncode, out = await _run_probe(str(binary), "--version")
    except (OSError, TimeoutError) as e:
        logger.debug("QEMU version probe failed", extra={"qemu_bin": str(binary), "error": str(e)})
        return None
    if returncode != 0:
        return None
    match = _QEMU_VERSION_RE.search(out)
    return match.group(1) if match else out.strip().splitlines()[0] if out.strip() else None


async def _probe_qemu_accelerators(binary: Path | str) -> set[str]:
    """Accelerators compiled into ``binary`` per ``-accel help`` (cached per binary)."""
    key = str(binary)
    if key in _probe_cache.qemu_accels:
        return _probe_cache.qemu_accels[key]

    async with _probe_cache.get_lock(f"qemu_accels:{key}"):
        if key in _probe_cache.qemu_accels:
            return _probe_cache.qemu_accels[key]

        accels: set[str] = set()
        try:
            returncode, out = await _run_probe(key, "-accel", "help")
            if returncode == 0:
                # "Accelerators supported in QEMU binary:\ntcg\nkvm\n"
                for raw_line in out.splitlines():
                    name = raw_line.strip().lower()
                    if name and not name.startswith("accelerator"):
                        accels.add(name)
            else:
                logger.warning("QEMU accelerator probe failed", extra={"qemu_bin": key, "returncode": returncode})
        except FileNotFoundError:
            logger.warning("QEMU binary not found for accelerator probe", extra={"qemu_bin": key})
        except (OSError, TimeoutError) as e:
            logger.warning("QEMU accelerator probe failed", extra={"qemu_bin": key, "error": str(e)})

        _probe_cache.qemu_accels[key] = accels
        logger.debug("QEMU accelerator probe complete", extra={"qemu_bin": key, "accelerators": sorted(accels)})
        return accels


async def _check_kvm_available() -> bool:
    """Kernel layer: /dev/kvm exists, is read/writable and answers KVM_GET_API_VERSION (cached)."""
    if _probe_cache.kvm is not None:
        return _probe_cache.kvm

    async with _probe_cache.get_lock("kvm"):
        if _probe_cache.kvm is not None:
            return _probe_cache.kvm

        kvm_path = "/dev/kvm"
        available = False
        if not await aiofiles.os.path.exists(kvm_path):
            logger.debug("KVM not available: /dev/kvm does not exist")
        elif not await asyncio.to_thread(os.access, kvm_path, os.R_OK | os.W_OK):
            logger.debug("KVM not available: permission denied on /dev/kvm")
        else:
            # ioctl in a child process: a wedged KVM module must not block the event loop
            try:
                returncode, out = await _run_probe(
                    sys.executable,
                    "-c",
                    f"import fcntl; f=open('{kvm_path}','rb'); print(fcntl.ioctl(f.fileno(), {_KVM_GET_API_VERSION}))",
                )
                api_version = int(out.strip()) if returncode == 0 else None
                if api_version == _KVM_API_VERSION_EXPECTED:
                    available = True
                else:
                    logger.warning("KVM device present but ioctl check failed", extra={"api_version": api_version})
            except (OSError, TimeoutError, ValueError) as e:
                logger.debug("KVM not available: failed to verify /dev/kvm", extra={"error": str(e)})

        _probe_cache.kvm = available
        return available


async def _check_hvf_available() -> bool:
    """Kernel layer: ``sysctl kern.hv_support`` is 1 (cached)."""
    if _probe_cache.hvf is not None:
        return _probe_cache.hvf

    async with _probe_cache.get_lock("hvf"):
        if _probe_cache.hvf is not None:
            return _probe_cache.hvf
        try:
            returncode, out = await _run_probe("/usr/sbin/sysctl", "-n", "kern.hv_support")
            available = returncode == 0 and out.strip() == "1"
        except (OSError, TimeoutError) as e:
            logger.debug("HVF not available: sysctl check failed", extra={"error": str(e)})
            available = False
        _probe_cache.hvf = available
        return available


async def detect_accel_type(
    qemu_binary: Path | str | None = None,
    *,
    kvm_available: bool | None = None,
    hvf_available: bool | None = None,
    qemu_accels: set[str] | None = None,
    force_emulation: bool = False,
) -> AccelType:
    """Pick the accelerator to launch with.

    Args:
        qemu_binary: Emulator to check for compiled-in support
        kvm_available: Override the kernel KVM check (testing)
        hvf_available: Override the kernel HVF check (testing)
        qemu_accels: Override ``-accel help`` output (testing)
        force_emulation: Always use TCG

    Returns:
        KVM on Linux, HVF on macOS, WHPX on Windows when both layers agree;
        otherwise TCG.
    """
    if force_emulation:
        return AccelType.TCG

    async def accels() -> set[str]:
        if qemu_accels is not None:
            return qemu_accels
        if qemu_binary is None:
            return set()
        return await _probe_qemu_accelerators(qemu_binary)

    host_os = detect_host_os()
    if host_os == HostOS.LINUX:
        if kvm_available is None:
            kvm_available = await _check_kvm_available()
        if kvm_available and "kvm" in await accels():
            return AccelType.KVM
    elif host_os == HostOS.MACOS:
        if hvf_available is None:
            hvf_available = await _check_hvf_available()
        if hvf_available and "hvf" in await accels():
            return AccelType.HVF
    elif host_os == HostOS.WINDOWS and "whpx" in await accels():
        return AccelType.WHPX
    return AccelType.TCG


class HostCapabilityProbe:
    """CapabilityProbe for the local host, driven by Settings."""

    def __init__(self, qemu_binary: Path | str | None = None, *, force_emulation: bool = False) -> None:
        self._qemu_binary = qemu_binary
        self._force_emulation = force_emulation
        self._accel: AccelType | None = None

    def qemu_binary(self) -> Path | None:
        """Configured emulator if set, else whatever find_qemu_binary() locates."""
        return find_qemu_binary(self._qemu_binary)

    async def preferred_acceleration_mode(self) -> AccelType:
        if self._accel is None:
            self._accel = await detect_accel_type(self.qemu_binary(), force_emulation=self._force_emulation)
            logger.info("Acceleration mode selected", extra={"accelerator": self._accel.value})
        return self._accel

    async def detect_hypervisor(self) -> HypervisorInfo:
        binary = self.qemu_binary()
        if binary is None:
            return HypervisorInfo(detected=False)
        version = await probe_qemu_version(binary)
        if version is None:
            return HypervisorInfo(detected=False, path=str(binary))
        return HypervisorInfo(
            detected=True,
            path=str(binary),
            version=version,
            accelerator=await self.preferred_acceleration_mode(),
        )

    async def host_capabilities(self) -> HostCapabilities:
        hypervisor = await self.detect_hypervisor()
        arch = detect_host_arch()
        return HostCapabilities(
            os=detect_host_os().name.lower(),
            arch=arch.name.lower() if arch != HostArch.UNKNOWN else platform.machine(),
            accelerator=hypervisor.accelerator if hypervisor.detected else await self.preferred_acceleration_mode(),
            cpu_count=psutil.cpu_count(logical=True) or 1,
            total_memory_mib=psutil.virtual_memory().total // (1024 * 1024),
            hypervisor=hypervisor,
        )
