"""Settings and runtime settings models.

Settings is the agent configuration (read at startup). RuntimeSettings holds
the counters the state machine mutates and persists across reboots.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator

from update_agent.models.base import KebabModel

DEFAULT_INSTALL_MODES = ["copy", "dry-run", "raw"]


class Polling(KebabModel):
    enabled: bool = Field(True, description="Automatic polling enabled")
    interval: int = Field(
        86400, gt=0, description="Seconds between regular probes (default 1 day)"
    )
    extra_interval: int = Field(
        300, gt=0, description="Backoff seconds after a failed probe"
    )
    max_retries: int = Field(
        5,
        ge=1,
        description="Failed probes retried on extra_interval before falling back to interval",
    )


class Network(KebabModel):
    server_address: str = Field("https://api.updatehub.io")
    listen_host: str = Field("127.0.0.1", description="Local control API address")
    listen_port: int = Field(8080, gt=0, lt=65536)

    @field_validator("server_address")
    @classmethod
    def require_scheme(cls, v: str) -> str:
        """Server address must carry the protocol prefix."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("server address must start with http:// or https://")
        return v.rstrip("/")


class Storage(KebabModel):
    read_only: bool = Field(False, description="Never write runtime settings")
    runtime_settings: Path = Field(
        Path("/var/lib/update-agent/runtime_settings.json"),
        description="Runtime settings file",
    )


class Update(KebabModel):
    download_dir: Path = Field(Path("/tmp/update-agent"))
    auto_download_when_available: bool = True
    auto_install_after_download: bool = True
    auto_reboot_after_install: bool = True
    supported_install_modes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INSTALL_MODES)
    )


class Firmware(KebabModel):
    metadata_path: Path = Field(
        Path("/usr/share/updatehub"),
        description="Directory holding product-uid and identity scripts",
    )


class Settings(KebabModel):
    """Root settings schema persisted as JSON."""

    polling: Polling = Field(default_factory=Polling)
    network: Network = Field(default_factory=Network)
    storage: Storage = Field(default_factory=Storage)
    update: Update = Field(default_factory=Update)
    firmware: Firmware = Field(default_factory=Firmware)


class RuntimePolling(KebabModel):
    last_poll: Optional[datetime] = None
    first_poll: Optional[datetime] = None
    retries: int = Field(0, ge=0)
    probe_asap: bool = Field(
        False, description="Probe on the next cycle regardless of the schedule"
    )

    @field_validator("last_poll", "first_poll", mode="before")
    @classmethod
    def parse_iso8601(cls, v):
        """Parse ISO 8601 timestamp strings."""
        if v is None:
            return None
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v


class RuntimeUpdate(KebabModel):
    applied_package_uid: Optional[str] = None


class RuntimeSettings(KebabModel):
    """Persistent runtime counters.

    Survives reboots. Written on every mutation unless storage is read-only.
    """

    polling: RuntimePolling = Field(default_factory=RuntimePolling)
    update: RuntimeUpdate = Field(default_factory=RuntimeUpdate)
