"""Tests for best-effort cleanup helpers and ProcessWrapper."""

import asyncio
import sys
from pathlib import Path

import pytest

from vmplane.platform_utils import ProcessWrapper
from vmplane.resource_cleanup import cancel_task, cleanup_file, cleanup_process

IGNORE_SIGTERM = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(60)"


async def spawn(*args: str) -> ProcessWrapper:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    return ProcessWrapper(proc)


class TestCleanupProcess:
    async def test_none(self) -> None:
        assert await cleanup_process(None, "qemu", "vm1") is True

    async def test_already_exited(self) -> None:
        proc = await spawn("true")
        await proc.wait()
        assert await cleanup_process(proc, "qemu", "vm1") is True

    async def test_sigterm(self) -> None:
        proc = await spawn("sleep", "60")
        assert await proc.is_running()

        assert await cleanup_process(proc, "qemu", "vm1", term_timeout=2.0) is True

        assert proc.returncode is not None
        assert not await proc.is_running()

    async def test_escalates_to_sigkill(self) -> None:
        proc = await spawn(sys.executable, "-c", IGNORE_SIGTERM)
        assert proc.stdout is not None
        await proc.stdout.readline()

        assert await cleanup_process(proc, "qemu", "vm1", term_timeout=0.2, kill_timeout=2.0) is True

        assert proc.returncode == -9


class TestCleanupFile:
    async def test_none(self) -> None:
        assert await cleanup_file(None, "vm1") is True

    async def test_removes(self, tmp_path: Path) -> None:
        path = tmp_path / "qmp.sock"
        path.write_text("")
        assert await cleanup_file(path, "vm1", "control socket") is True
        assert not path.exists()

    async def test_missing_is_success(self, tmp_path: Path) -> None:
        assert await cleanup_file(tmp_path / "gone", "vm1") is True

    async def test_failure_reported(self, tmp_path: Path) -> None:
        directory = tmp_path / "a-directory"
        directory.mkdir()
        assert await cleanup_file(directory, "vm1") is False


class TestCancelTask:
    async def test_none(self) -> None:
        await cancel_task(None)

    async def test_cancels_running_task(self) -> None:
        task = asyncio.create_task(asyncio.sleep(60))
        await cancel_task(task)
        assert task.cancelled()

    async def test_failed_task_not_propagated(self) -> None:
        async def boom() -> None:
            raise RuntimeError("boom")

        task = asyncio.create_task(boom())
        await asyncio.sleep(0)
        await cancel_task(task)
        assert task.done()

    async def test_caller_cancellation_propagates(self) -> None:
        inner = asyncio.create_task(asyncio.sleep(60))

        async def canceller() -> None:
            await cancel_task(inner)

        outer = asyncio.create_task(canceller())
        await asyncio.sleep(0)
        outer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await outer
