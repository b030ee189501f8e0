"""Durable VM registry.

VMRegistry is the interface the control plane consumes; SqliteRegistry is the
shipped implementation (one SQLite file, two tables).

Schema:
    vms(id PK, name, status, memory_mib, cpu_cores, disk_size_gib, os,
        boot_order, network_mode, install_media, created_at, updated_at)
    settings(key PK, value)

Every operation opens a short-lived aiosqlite connection; an asyncio.Lock
serializes writers within the process.
"""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import aiofiles.os
import aiosqlite

from vmplane._logging import get_logger
from vmplane.exceptions import RegistryError
from vmplane.models import VMRecord

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS vms (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    memory_mib INTEGER NOT NULL,
    cpu_cores INTEGER NOT NULL,
    disk_size_gib INTEGER NOT NULL,
    os TEXT NOT NULL,
    boot_order TEXT NOT NULL,
    network_mode TEXT NOT NULL,
    install_media TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_COLUMNS = (
    "id",
    "name",
    "status",
    "memory_mib",
    "cpu_cores",
    "disk_size_gib",
    "os",
    "boot_order",
    "network_mode",
    "install_media",
    "created_at",
    "updated_at",
)


@runtime_checkable
class VMRegistry(Protocol):
    """Persistent store of VM records and free-form settings."""

    async def create(self, record: VMRecord) -> None: ...

    async def get(self, vm_id: str) -> VMRecord | None: ...

    async def list(self) -> list[VMRecord]:
        """All records, newest first."""
        ...

    async def update(self, record: VMRecord) -> None:
        """Replace a record. Raises RegistryError if the id is absent."""
        ...

    async def delete(self, vm_id: str) -> None: ...

    async def get_setting(self, key: str) -> str | None: ...

    async def set_setting(self, key: str, value: str) -> None: ...


def _to_row(record: VMRecord) -> tuple[Any, ...]:
    return (
        record.id,
        record.name,
        record.status.value,
        record.memory_mib,
        record.cpu_cores,
        record.disk_size_gib,
        record.os,
        record.boot_order.value,
        record.network_mode.value,
        str(record.install_media) if record.install_media is not None else None,
        record.created_at.isoformat(),
        record.updated_at.isoformat(),
    )


def _from_row(row: aiosqlite.Row) -> VMRecord:
    data = dict(row)
    data["created_at"] = datetime.fromisoformat(data["created_at"])
    data["updated_at"] = datetime.fromisoformat(data["updated_at"])
    return VMRecord.model_validate(data)


class SqliteRegistry:
    """VMRegistry backed by a single SQLite database file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._write_lock = asyncio.Lock()
        self._initialized = False

    @contextlib.asynccontextmanager
    async def _connect(self, op: str, **context: Any) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection for one operation, mapping sqlite errors to RegistryError."""
        try:
            if not self._initialized:
                await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
                async with aiosqlite.connect(self.path, timeout=5.0) as db:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.executescript(_SCHEMA)
                    await db.commit()
                self._initialized = True
            async with aiosqlite.connect(self.path, timeout=5.0) as db:
                db.row_factory = aiosqlite.Row
                yield db
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            msg = f"Registry {op} failed: {e}"
            raise RegistryError(msg, context={"path": str(self.path), **context}) from e

    async def initialize(self) -> None:
        """Create the database file and tables if missing."""
        async with self._connect("initialize"):
            pass

    async def create(self, record: VMRecord) -> None:
        query = f"INSERT INTO vms ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' * len(_COLUMNS))})"
        async with self._write_lock:
            try:
                async with self._connect("create", vm_id=record.id) as db:
                    await db.execute(query, _to_row(record))
            except RegistryError as e:
                if isinstance(e.__cause__, sqlite3.IntegrityError):
                    msg = f"VM {record.id} already exists"
                    raise RegistryError(msg, context={"vm_id": record.id}) from e
                raise
        logger.debug("VM record created", extra={"vm_id": record.id, "vm_name": record.name})

    async def get(self, vm_id: str) -> VMRecord | None:
        async with self._connect("get", vm_id=vm_id) as db:
            rows = await db.execute_fetchall(f"SELECT {', '.join(_COLUMNS)} FROM vms WHERE id = ?", (vm_id,))
        return _from_row(rows[0]) if rows else None

    async def list(self) -> list[VMRecord]:
        async with self._connect("list") as db:
            rows = await db.execute_fetchall(f"SELECT {', '.join(_COLUMNS)} FROM vms ORDER BY created_at DESC")
        return [_from_row(row) for row in rows]

    async def update(self, record: VMRecord) -> None:
        assignments = ", ".join(f"{col} = ?" for col in _COLUMNS[1:])
        row = _to_row(record)
        async with self._write_lock, self._connect("update", vm_id=record.id) as db:
            cursor = await db.execute(f"UPDATE vms SET {assignments} WHERE id = ?", (*row[1:], record.id))
            changed = cursor.rowcount
        if changed == 0:
            msg = f"VM {record.id} not found"
            raise RegistryError(msg, context={"vm_id": record.id})

    async def delete(self, vm_id: str) -> None:
        async with self._write_lock, self._connect("delete", vm_id=vm_id) as db:
            await db.execute("DELETE FROM vms WHERE id = ?", (vm_id,))
        logger.debug("VM record deleted", extra={"vm_id": vm_id})

    async def get_setting(self, key: str) -> str | None:
        async with self._connect("get_setting", key=key) as db:
            rows = await db.execute_fetchall("SELECT value FROM settings WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    async def set_setting(self, key: str, value: str) -> None:
        async with self._write_lock, self._connect("set_setting", key=key) as db:
            await db.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
