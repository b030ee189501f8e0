"""Tests for SqliteRegistry."""

import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from vmplane.exceptions import RegistryError
from vmplane.models import BootOrder, VMConfiguration, VMRecord
from vmplane.registry import SqliteRegistry, VMRegistry
from vmplane.vm_types import VmStatus


def _record(vm_id: str, name: str = "dev", **config: object) -> VMRecord:
    base: dict[str, object] = {"name": name, "memory_mib": 1024, "cpu_cores": 2, "disk_size_gib": 10}
    base.update(config)
    return VMRecord.from_config(vm_id, VMConfiguration.model_validate(base))


class TestRecords:
    """CRUD on the vms table."""

    def test_satisfies_protocol(self, registry: SqliteRegistry) -> None:
        assert isinstance(registry, VMRegistry)

    async def test_create_and_get(self, registry: SqliteRegistry) -> None:
        record = _record("vm1", install_media=Path("/isos/alpine.iso"), boot_order=BootOrder.CDROM_FIRST)

        await registry.create(record)

        assert await registry.get("vm1") == record
        assert registry.path.exists()

    async def test_get_missing(self, registry: SqliteRegistry) -> None:
        assert await registry.get("nope") is None

    async def test_duplicate_id(self, registry: SqliteRegistry) -> None:
        await registry.create(_record("vm1"))
        with pytest.raises(RegistryError, match="already exists"):
            await registry.create(_record("vm1", name="other"))

    async def test_list_newest_first(self, registry: SqliteRegistry) -> None:
        first = _record("a")
        second = _record("b").model_copy(update={"created_at": first.created_at + timedelta(seconds=1)})
        await registry.create(first)
        await registry.create(second)

        assert [r.id for r in await registry.list()] == ["b", "a"]

    async def test_list_empty(self, registry: SqliteRegistry) -> None:
        assert await registry.list() == []

    async def test_update(self, registry: SqliteRegistry) -> None:
        record = _record("vm1")
        await registry.create(record)

        await registry.update(record.with_status(VmStatus.RUNNING))

        stored = await registry.get("vm1")
        assert stored is not None
        assert stored.status is VmStatus.RUNNING
        assert stored.created_at == record.created_at
        assert stored.updated_at >= record.updated_at

    async def test_update_missing(self, registry: SqliteRegistry) -> None:
        with pytest.raises(RegistryError, match="VM ghost not found"):
            await registry.update(_record("ghost"))

    async def test_delete(self, registry: SqliteRegistry) -> None:
        await registry.create(_record("vm1"))
        await registry.delete("vm1")
        assert await registry.get("vm1") is None

    async def test_delete_missing_is_noop(self, registry: SqliteRegistry) -> None:
        await registry.delete("never-existed")

    async def test_survives_reopen(self, registry: SqliteRegistry) -> None:
        record = _record("vm1")
        await registry.create(record)

        reopened = SqliteRegistry(registry.path)

        assert await reopened.get("vm1") == record


class TestSettingsTable:
    async def test_get_unset(self, registry: SqliteRegistry) -> None:
        assert await registry.get_setting("default_os") is None

    async def test_set_and_overwrite(self, registry: SqliteRegistry) -> None:
        await registry.set_setting("default_os", "linux")
        await registry.set_setting("default_os", "windows")
        assert await registry.get_setting("default_os") == "windows"


class TestFailures:
    async def test_unwritable_location(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        registry = SqliteRegistry(blocker / "vmplane.db")

        with pytest.raises(RegistryError, match="initialize failed"):
            await registry.initialize()

    async def test_corrupt_database(self, tmp_path: Path) -> None:
        path = tmp_path / "corrupt.db"
        path.write_bytes(b"this is not a sqlite database" * 100)
        registry = SqliteRegistry(path)

        with pytest.raises(RegistryError) as exc_info:
            await registry.list()
        assert isinstance(exc_info.value.__cause__, sqlite3.DatabaseError)
