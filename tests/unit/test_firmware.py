"""Unit tests for FirmwareMetadataProvider using real helper scripts."""

import stat

import pytest

from update_agent.errors import ProbeError
from update_agent.services.firmware import FirmwareMetadataProvider


def _script(path, body: str):
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


@pytest.fixture
def metadata_dir(tmp_path):
    """Firmware metadata directory with product uid, hardware and version."""
    directory = tmp_path / "metadata"
    directory.mkdir()
    (directory / "product-uid").write_text("product-1\n")
    _script(directory / "hardware", "echo board-a")
    _script(directory / "version", "echo 1.0.0")
    return directory


@pytest.mark.unit
class TestFirmwareLoad:
    """Test FirmwareMetadataProvider.load()."""

    @pytest.mark.asyncio
    async def test_load_identity(self, metadata_dir):
        # Arrange
        identity = metadata_dir / "device-identity.d"
        identity.mkdir()
        _script(identity / "10-serial", "echo serial=ABC123\necho mac = 00:11:22")
        _script(identity / "20-ignored", "echo no separator here")
        attributes = metadata_dir / "device-attributes.d"
        attributes.mkdir()
        _script(attributes / "board", "echo ram=512M")

        # Act
        firmware = await FirmwareMetadataProvider(metadata_dir).load()

        # Assert
        assert firmware.product_uid == "product-1"
        assert firmware.hardware == "board-a"
        assert firmware.version == "1.0.0"
        assert firmware.device_identity == {"serial": "ABC123", "mac": "00:11:22"}
        assert firmware.device_attributes == {"ram": "512M"}

    @pytest.mark.asyncio
    async def test_missing_product_uid(self, metadata_dir):
        (metadata_dir / "product-uid").unlink()

        with pytest.raises(ProbeError, match="product-uid"):
            await FirmwareMetadataProvider(metadata_dir).load()

    @pytest.mark.asyncio
    async def test_missing_version_script(self, metadata_dir):
        (metadata_dir / "version").unlink()

        with pytest.raises(ProbeError, match="Missing firmware metadata script"):
            await FirmwareMetadataProvider(metadata_dir).load()

    @pytest.mark.asyncio
    async def test_failing_script(self, metadata_dir):
        _script(metadata_dir / "hardware", "echo broken >&2\nexit 3")

        with pytest.raises(ProbeError, match="exit code 3"):
            await FirmwareMetadataProvider(metadata_dir).load()


@pytest.mark.unit
class TestStateChangeCallback:
    """Test FirmwareMetadataProvider.state_change_callback()."""

    @pytest.mark.asyncio
    async def test_no_callback_allows_transition(self, metadata_dir):
        assert await FirmwareMetadataProvider(metadata_dir).state_change_callback("download")

    @pytest.mark.asyncio
    async def test_cancel_output_blocks_transition(self, metadata_dir):
        _script(
            metadata_dir / "state-change-callback",
            'if [ "$1" = "install" ]; then echo cancel; fi',
        )
        provider = FirmwareMetadataProvider(metadata_dir)

        assert await provider.state_change_callback("download") is True
        assert await provider.state_change_callback("install") is False
