"""Data models for vmplane."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field, field_validator

from vmplane import constants
from vmplane.exceptions import ConfigValidationError
from vmplane.vm_types import AccelType, VmStatus


class BootOrder(str, Enum):
    """Which device the firmware tries first."""

    DISK_FIRST = "disk-first"
    CDROM_FIRST = "cdrom-first"


class NetworkMode(str, Enum):
    """Guest networking. A single user-mode NAT device is the only topology."""

    NAT = "nat"


class DisplayStatus(str, Enum):
    """Reachability of a remote-display session."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class VMConfiguration(BaseModel):
    """Declarative, immutable description of one VM.

    Construction validates every field, so an instance that exists is safe to
    hand to the disk manager, the registry and the launch planner.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Human-readable VM name, also the QEMU process name")
    memory_mib: int = Field(description="Guest RAM in MiB")
    cpu_cores: int = Field(description="Virtual CPU cores")
    disk_size_gib: int = Field(description="Backing disk size in GiB")
    os: str = Field(default=constants.DEFAULT_GUEST_OS, description="Guest OS tag")
    boot_order: BootOrder = BootOrder.DISK_FIRST
    network_mode: NetworkMode = NetworkMode.NAT
    install_media: Path | None = Field(default=None, description="Optional ISO attached as a CD-ROM")

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("VM name cannot be empty")
        if len(v) > constants.MAX_VM_NAME_LENGTH:
            raise ValueError(f"VM name must be at most {constants.MAX_VM_NAME_LENGTH} characters")
        return v

    @field_validator("memory_mib")
    @classmethod
    def _check_memory(cls, v: int) -> int:
        if v < constants.MIN_MEMORY_MIB:
            raise ValueError(f"Memory must be at least {constants.MIN_MEMORY_MIB} MiB")
        return v

    @field_validator("cpu_cores")
    @classmethod
    def _check_cpu(cls, v: int) -> int:
        if v < constants.MIN_CPU_CORES:
            raise ValueError(f"CPU cores must be at least {constants.MIN_CPU_CORES}")
        return v

    @field_validator("disk_size_gib")
    @classmethod
    def _check_disk(cls, v: int) -> int:
        if v < constants.MIN_DISK_SIZE_GIB:
            raise ValueError(f"Disk size must be at least {constants.MIN_DISK_SIZE_GIB} GiB")
        return v

    @field_validator("os")
    @classmethod
    def _check_os(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Guest OS tag cannot be empty")
        return v


class VMConfigPatch(BaseModel):
    """Partial update. Unset fields keep their stored value.

    Disk size is not patchable: growing or shrinking a backing image is a
    storage operation, not a configuration edit.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str | None = None
    memory_mib: int | None = None
    cpu_cores: int | None = None
    os: str | None = None
    boot_order: BootOrder | None = None
    network_mode: NetworkMode | None = None
    install_media: Path | None = None

    def apply(self, config: VMConfiguration) -> VMConfiguration:
        """Merge onto ``config`` and re-validate the whole result."""
        merged = config.model_dump()
        merged.update(self.model_dump(exclude_unset=True))
        return parse_config(merged)


class VMRecord(BaseModel):
    """Durable registry row for one VM."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str
    status: VmStatus = VmStatus.STOPPED
    memory_mib: int
    cpu_cores: int
    disk_size_gib: int
    os: str
    boot_order: BootOrder = BootOrder.DISK_FIRST
    network_mode: NetworkMode = NetworkMode.NAT
    install_media: Path | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_config(cls, vm_id: str, config: VMConfiguration, *, status: VmStatus = VmStatus.STOPPED) -> VMRecord:
        now = utcnow()
        return cls(id=vm_id, status=status, created_at=now, updated_at=now, **config.model_dump())

    @property
    def config(self) -> VMConfiguration:
        return VMConfiguration(
            name=self.name,
            memory_mib=self.memory_mib,
            cpu_cores=self.cpu_cores,
            disk_size_gib=self.disk_size_gib,
            os=self.os,
            boot_order=self.boot_order,
            network_mode=self.network_mode,
            install_media=self.install_media,
        )

    def with_config(self, config: VMConfiguration) -> VMRecord:
        return self.model_copy(update={**config.model_dump(), "updated_at": utcnow()})

    def with_status(self, status: VmStatus) -> VMRecord:
        return self.model_copy(update={"status": status, "updated_at": utcnow()})


class DisplaySession(BaseModel):
    """Tracked remote-display endpoint for one VM."""

    model_config = ConfigDict(frozen=True)

    vm_id: str
    protocol: str = constants.DISPLAY_PROTOCOL
    host: str = constants.DISPLAY_HOST
    port: int
    status: DisplayStatus = DisplayStatus.CONNECTED
    reconnect_attempts: int = Field(default=0, ge=0)
    last_error: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def uri(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


class HypervisorInfo(BaseModel):
    """Result of looking for a usable QEMU system emulator on this host."""

    detected: bool
    path: str | None = None
    version: str | None = None
    accelerator: AccelType = AccelType.TCG


class HostCapabilities(BaseModel):
    """Host facts a caller needs to size and place VMs."""

    os: str
    arch: str
    accelerator: AccelType
    cpu_count: int
    total_memory_mib: int
    hypervisor: HypervisorInfo


class OperationResult(BaseModel):
    """Structured outcome of one caller-facing operation."""

    success: bool
    data: Any = None
    error: str | None = None
    error_type: str | None = None


def utcnow() -> datetime:
    return datetime.now(UTC)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        msg = str(err["msg"]).removeprefix("Value error, ")
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(msg if err["type"] == "value_error" else f"{loc}: {msg}")
    return "; ".join(parts)


def parse_config(data: Mapping[str, Any] | VMConfiguration) -> VMConfiguration:
    """Build a VMConfiguration, translating pydantic errors to ConfigValidationError.

    Raises:
        ConfigValidationError: Any field is missing or violates its constraint.
    """
    if isinstance(data, VMConfiguration):
        return data
    try:
        return VMConfiguration.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigValidationError(
            _format_validation_error(e),
            context={"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def parse_patch(data: Mapping[str, Any] | VMConfigPatch) -> VMConfigPatch:
    """Build a VMConfigPatch, translating pydantic errors to ConfigValidationError."""
    if isinstance(data, VMConfigPatch):
        return data
    try:
        return VMConfigPatch.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigValidationError(
            _format_validation_error(e),
            context={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
