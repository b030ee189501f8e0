"""Runtime configuration from environment variables."""

import hashlib
import os
import tempfile
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmplane import constants
from vmplane.platform_utils import get_data_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VMPLANE_ prefix.
    Example: VMPLANE_FORCE_EMULATION=true
    """

    model_config = SettingsConfigDict(
        env_prefix="VMPLANE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default_factory=get_data_dir)
    disks_dir: Path | None = None
    """Defaults to ``data_dir / "disks"``."""
    registry_path: Path | None = None
    """Defaults to ``data_dir / "vmplane.db"``."""

    socket_dir: Path | None = None
    """Defaults to a per-user, per-data_dir directory under the temp dir."""

    # QEMU
    qemu_binary: Path | None = None
    """None = auto-detect on PATH for the host architecture."""
    qemu_img_binary: Path = Path("qemu-img")
    force_emulation: bool = False
    """Force TCG even when KVM/HVF is available."""

    # Control protocol
    qmp_connect_timeout: float = constants.QMP_CONNECT_TIMEOUT_SECONDS
    qmp_command_timeout: float = constants.QMP_COMMAND_TIMEOUT_SECONDS

    # Process lifecycle
    socket_wait_timeout: float = constants.SOCKET_WAIT_TIMEOUT_SECONDS
    graceful_stop_timeout: float = constants.GRACEFUL_STOP_TIMEOUT_SECONDS
    quit_timeout: float = constants.QUIT_TIMEOUT_SECONDS
    term_timeout: float = constants.TERM_TIMEOUT_SECONDS
    kill_timeout: float = constants.KILL_TIMEOUT_SECONDS

    def resolved_disks_dir(self) -> Path:
        return self.disks_dir or self.data_dir / "disks"

    def resolved_registry_path(self) -> Path:
        return self.registry_path or self.data_dir / "vmplane.db"

    def resolved_socket_dir(self) -> Path:
        # Under the temp dir: AF_UNIX paths are capped at ~104-108 bytes
        if self.socket_dir is not None:
            return self.socket_dir
        user = os.getuid() if hasattr(os, "getuid") else os.environ.get("USERNAME", "")
        owner = f"{user}:{self.data_dir.expanduser().resolve()}"
        digest = hashlib.sha256(owner.encode()).hexdigest()[:12]
        return Path(tempfile.gettempdir()) / f"vmplane-{digest}"
