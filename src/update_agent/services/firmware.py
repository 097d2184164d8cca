"""Firmware identity provider and state change callbacks.

The metadata directory follows this layout:

    <metadata_path>/
    ├── product-uid              # plain text
    ├── hardware                 # executable, prints the hardware name
    ├── version                  # executable, prints the firmware version
    ├── device-identity.d/       # executables printing key=value lines
    ├── device-attributes.d/     # executables printing key=value lines
    └── state-change-callback    # optional, called with the state name
"""

import asyncio
import logging
import os
from pathlib import Path

from update_agent.errors import ProbeError
from update_agent.models.metadata import FirmwareMetadata


class FirmwareMetadataProvider:
    """Builds FirmwareMetadata snapshots from the metadata directory."""

    def __init__(self, metadata_path: Path):
        self.logger = logging.getLogger("update_agent.firmware")
        self.metadata_path = Path(metadata_path)

    async def load(self) -> FirmwareMetadata:
        """Read the current device identity.

        Raises:
            ProbeError: If the product uid, hardware or version can't be read
        """
        try:
            product_uid = (self.metadata_path / "product-uid").read_text().strip()
        except OSError as e:
            raise ProbeError(f"Failed to read product-uid: {e}") from e

        hardware = await self._run_single_value("hardware")
        version = await self._run_single_value("version")
        identity = await self._run_key_values("device-identity.d")
        attributes = await self._run_key_values("device-attributes.d")

        return FirmwareMetadata(
            product_uid=product_uid,
            version=version,
            hardware=hardware,
            device_identity=identity,
            device_attributes=attributes,
        )

    async def state_change_callback(self, state: str) -> bool:
        """Run the state change callback, if installed.

        Args:
            state: Name of the state about to be entered

        Returns:
            False if the callback asked to cancel the transition, True otherwise
        """
        script = self.metadata_path / "state-change-callback"
        if not script.exists():
            return True

        output = await self._run(script, state)
        if output.strip() == "cancel":
            self.logger.info(f"State change callback cancelled transition to {state}")
            return False
        return True

    async def _run_single_value(self, name: str) -> str:
        script = self.metadata_path / name
        if not script.exists():
            raise ProbeError(f"Missing firmware metadata script: {script}")
        return (await self._run(script)).strip()

    async def _run_key_values(self, dirname: str) -> dict[str, str]:
        directory = self.metadata_path / dirname
        values: dict[str, str] = {}
        if not directory.is_dir():
            return values

        for script in sorted(directory.iterdir()):
            if not script.is_file() or not os.access(script, os.X_OK):
                continue
            for line in (await self._run(script)).splitlines():
                key, sep, value = line.partition("=")
                if not sep:
                    continue
                values[key.strip()] = value.strip()
        return values

    async def _run(self, script: Path, *args: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                str(script),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise ProbeError(f"Failed to run {script}: {e}") from e

        if process.returncode != 0:
            raise ProbeError(
                f"{script} failed: exit code {process.returncode}, "
                f"stderr: {stderr.decode(errors='replace')}"
            )
        return stdout.decode(errors="replace")
