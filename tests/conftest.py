"""Shared pytest fixtures for vmplane tests."""

import shutil
import stat
import sys
import tempfile
from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest

from vmplane.control_plane import ControlPlane
from vmplane.disk_manager import QemuImgDiskManager
from vmplane.models import VMConfiguration
from vmplane.registry import SqliteRegistry
from vmplane.settings import Settings
from vmplane.supervisor import ProcessSupervisor
from vmplane.system_probes import HostCapabilityProbe, _probe_cache

TESTS_DIR = Path(__file__).parent

# ============================================================================
# Fake binaries
# ============================================================================
# Lifecycle tests run real subprocesses, but not real QEMU: tests/fake_qemu.py
# serves QMP on the socket named in its -qmp argument and tests/fake_qemu_img.py
# writes tiny placeholder images. Each is wrapped in a shell script so the code
# under test execs it exactly like a binary found on PATH.


def _write_wrapper(directory: Path, name: str, script: Path) -> Path:
    wrapper = directory / name
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture(scope="session")
def fake_bin_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("bin")


@pytest.fixture(scope="session")
def fake_qemu(fake_bin_dir: Path) -> Path:
    """Executable that behaves like qemu-system-x86_64 (see tests/fake_qemu.py)."""
    return _write_wrapper(fake_bin_dir, "qemu-system-x86_64", TESTS_DIR / "fake_qemu.py")


@pytest.fixture(scope="session")
def fake_qemu_img(fake_bin_dir: Path) -> Path:
    return _write_wrapper(fake_bin_dir, "qemu-img", TESTS_DIR / "fake_qemu_img.py")


# ============================================================================
# Settings and collaborators
# ============================================================================


@pytest.fixture
def socket_dir() -> Iterator[Path]:
    """Short directory for control sockets (AF_UNIX paths max out around 104 bytes)."""
    path = Path(tempfile.mkdtemp(prefix="vmp-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(tmp_path: Path, socket_dir: Path, fake_qemu: Path, fake_qemu_img: Path) -> Settings:
    """Settings pointing at the fake binaries, with short lifecycle timeouts."""
    return Settings(
        data_dir=tmp_path / "data",
        socket_dir=socket_dir,
        qemu_binary=fake_qemu,
        qemu_img_binary=fake_qemu_img,
        force_emulation=True,
        qmp_connect_timeout=3.0,
        qmp_command_timeout=3.0,
        socket_wait_timeout=5.0,
        graceful_stop_timeout=2.0,
        quit_timeout=1.0,
        term_timeout=1.0,
        kill_timeout=1.0,
    )


@pytest.fixture(autouse=True)
def clear_probe_cache() -> Iterator[None]:
    _probe_cache.clear()
    yield
    _probe_cache.clear()


@pytest.fixture
def registry(tmp_path: Path) -> SqliteRegistry:
    return SqliteRegistry(tmp_path / "registry" / "vmplane.db")


@pytest.fixture
def disks(settings: Settings) -> QemuImgDiskManager:
    return QemuImgDiskManager(settings.resolved_disks_dir(), settings.qemu_img_binary)


@pytest.fixture
def probe(settings: Settings) -> HostCapabilityProbe:
    return HostCapabilityProbe(settings.qemu_binary, force_emulation=True)


@pytest.fixture
def vm_config() -> VMConfiguration:
    return VMConfiguration(name="test-vm", memory_mib=512, cpu_cores=1, disk_size_gib=1)


@pytest.fixture
async def supervisor(
    settings: Settings,
    disks: QemuImgDiskManager,
    probe: HostCapabilityProbe,
) -> AsyncGenerator[ProcessSupervisor, None]:
    """Supervisor without a registry (status is not persisted)."""
    async with ProcessSupervisor(settings, disks=disks, probe=probe) as sup:
        yield sup


@pytest.fixture
async def plane(
    settings: Settings,
    registry: SqliteRegistry,
    disks: QemuImgDiskManager,
    probe: HostCapabilityProbe,
) -> AsyncGenerator[ControlPlane, None]:
    async with ControlPlane(settings, registry=registry, disks=disks, probe=probe) as cp:
        yield cp
