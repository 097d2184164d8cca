"""Settings store: configuration plus persistent runtime counters."""

import json
import logging
import os
import random
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pydantic

from update_agent.errors import ConfigError
from update_agent.models.settings import RuntimeSettings, Settings

MIN_POLLING_INTERVAL = 60


def load_settings(path: Path) -> Settings:
    """Load agent settings from a JSON file.

    Args:
        path: Settings file path. Defaults are used when it doesn't exist.

    Returns:
        Validated Settings

    Raises:
        ConfigError: If the file is unreadable, malformed or invalid
    """
    logger = logging.getLogger("update_agent.settings")

    if not path.exists():
        logger.debug(f"Settings file {path} does not exist, using default settings")
        return Settings()

    logger.debug(f"Loading settings from {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            settings = Settings.model_validate(json.load(f))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read settings file {path}: {e}") from e
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e

    if settings.polling.interval < MIN_POLLING_INTERVAL:
        raise ConfigError(
            f"Invalid polling interval {settings.polling.interval}s, "
            f"it cannot be less than {MIN_POLLING_INTERVAL} seconds"
        )

    return settings


class SettingsStore:
    """Single owner of Settings and RuntimeSettings.

    Every runtime mutation goes through this class and is flushed to
    storage.runtime_settings before the method returns, unless storage is
    read-only.
    """

    def __init__(self, settings: Settings, runtime: Optional[RuntimeSettings] = None):
        """Initialize settings store.

        Args:
            settings: Agent configuration
            runtime: Runtime counters (loaded from disk if None)
        """
        self.logger = logging.getLogger("update_agent.settings")
        self.settings = settings
        self.runtime_file_path = Path(settings.storage.runtime_settings)
        self.runtime = runtime if runtime is not None else self.load_runtime()

    @property
    def persistent(self) -> bool:
        return not self.settings.storage.read_only

    def load_runtime(self) -> RuntimeSettings:
        """Load runtime settings from disk.

        Returns:
            RuntimeSettings from file, or defaults if missing or corrupted
        """
        if not self.runtime_file_path.exists():
            self.logger.debug(
                f"Runtime settings file {self.runtime_file_path} does not exist, "
                f"using default settings"
            )
            return RuntimeSettings()

        try:
            with open(self.runtime_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            runtime = RuntimeSettings.model_validate(data)
            self.logger.info(
                f"Loaded runtime settings: retries={runtime.polling.retries}, "
                f"last_poll={runtime.polling.last_poll}"
            )
            return runtime
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load runtime settings: {e}", exc_info=True)
            # Corrupted runtime file, start over from defaults
            if self.persistent:
                self.runtime_file_path.unlink(missing_ok=True)
            return RuntimeSettings()

    def save_runtime(self) -> None:
        """Write runtime settings atomically (temp file + rename)."""
        if not self.persistent:
            self.logger.debug("Storage is read-only, runtime settings kept in memory")
            return

        tmp_path = self.runtime_file_path.with_name(f"{self.runtime_file_path.name}.tmp")
        try:
            self.runtime_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self.runtime.model_dump(mode="json", by_alias=True), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.runtime_file_path)
            self.logger.debug(f"Saved runtime settings to {self.runtime_file_path}")
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            self.logger.error(f"Failed to save runtime settings: {e}", exc_info=True)
            raise

    def record_probe_success(self, now: datetime) -> None:
        polling = self.runtime.polling
        polling.last_poll = now
        polling.retries = 0
        polling.probe_asap = False
        self.save_runtime()

    def record_probe_failure(self, now: datetime) -> None:
        polling = self.runtime.polling
        polling.last_poll = now
        polling.retries += 1
        polling.probe_asap = False
        self.save_runtime()
        self.logger.warning(f"Probe failed, retries={polling.retries}")

    def reset_retries(self) -> None:
        self.runtime.polling.retries = 0
        self.save_runtime()

    def request_probe_asap(self) -> None:
        self.runtime.polling.probe_asap = True
        self.save_runtime()

    def set_applied_package_uid(self, package_uid: str) -> None:
        self.runtime.update.applied_package_uid = package_uid
        self.save_runtime()

    def retry_ceiling_reached(self) -> bool:
        return self.runtime.polling.retries >= self.settings.polling.max_retries

    def next_poll_time(self, now: datetime) -> datetime:
        """Compute when the next probe is due.

        - Never polled: a random instant inside the first interval, anchored in
          first_poll so restarts keep the same cadence.
        - last_poll in the future (clock moved back): now.
        - Failed probes below the retry ceiling: last_poll + extra_interval.
        - Otherwise: last_poll + interval.
        """
        polling = self.settings.polling
        state = self.runtime.polling

        if state.last_poll is None:
            if state.first_poll is None:
                offset = random.randrange(polling.interval)
                state.first_poll = now + timedelta(seconds=offset)
                self.save_runtime()
                self.logger.info(f"First poll scheduled at {state.first_poll.isoformat()}")
            return state.first_poll

        if state.last_poll > now:
            self.logger.info("Last poll seems to have happened in the future")
            return now

        if 0 < state.retries < polling.max_retries:
            return state.last_poll + timedelta(seconds=polling.extra_interval)

        return state.last_poll + timedelta(seconds=polling.interval)
