"""Global pytest fixtures and configuration."""

import hashlib
import json
import sys
import zipfile
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from update_agent.models.metadata import FirmwareMetadata  # noqa: E402
from update_agent.models.settings import RuntimeSettings, Settings  # noqa: E402
from update_agent.services.settings_store import SettingsStore  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    """Settings with every path inside tmp_path."""
    return Settings.model_validate(
        {
            "polling": {"interval": 3600, "extra-interval": 300},
            "storage": {"runtime-settings": str(tmp_path / "runtime_settings.json")},
            "update": {"download-dir": str(tmp_path / "downloads")},
            "firmware": {"metadata-path": str(tmp_path / "metadata")},
        }
    )


@pytest.fixture
def store(settings):
    """SettingsStore starting from default runtime counters."""
    return SettingsStore(settings, RuntimeSettings())


@pytest.fixture
def firmware_metadata():
    """Sample device identity."""
    return FirmwareMetadata(
        product_uid="product-1",
        version="1.0.0",
        hardware="board-a",
        device_identity={"id1": "value1"},
    )


@pytest.fixture
def make_object():
    """Factory for object metadata dicts matching the given content."""

    def _make(content: bytes, mode: str = "dry-run", filename: str = "rootfs.img", **extra):
        obj = {
            "mode": mode,
            "filename": filename,
            "size": len(content),
            "sha256sum": hashlib.sha256(content).hexdigest(),
        }
        obj.update(extra)
        return obj

    return _make


@pytest.fixture
def make_metadata():
    """Factory for raw update metadata bytes."""

    def _make(objects, product_uid: str = "product-1", **extra) -> bytes:
        metadata = {
            "product-uid": product_uid,
            "version": "2.0.0",
            "supported-hardware": "any",
            "objects": objects,
        }
        metadata.update(extra)
        return json.dumps(metadata).encode()

    return _make


@pytest.fixture
def sample_package(tmp_path, make_object, make_metadata):
    """Local update package with one dry-run object.

    Returns:
        (package path, object content)
    """
    content = b"object payload " * 100
    obj = make_object(content)
    package_path = tmp_path / "update.uhupkg"
    with zipfile.ZipFile(package_path, "w") as zf:
        zf.writestr("metadata", make_metadata([obj]))
        zf.writestr(obj["sha256sum"], content)
    return package_path, content


@pytest.fixture
def unreadable_package(tmp_path, make_object, make_metadata):
    """Package whose metadata member uses an unknown compression method."""
    package_path = tmp_path / "unreadable.uhupkg"
    with zipfile.ZipFile(package_path, "w", zipfile.ZIP_STORED) as zf:
        zf.writestr("metadata", make_metadata([make_object(b"payload")]))

    # Compression method lives at offset 8 of the local header and 10 of the
    # central directory entry
    data = bytearray(package_path.read_bytes())
    for signature, offset in ((b"PK\x03\x04", 8), (b"PK\x01\x02", 10)):
        start = data.find(signature)
        data[start + offset:start + offset + 2] = (99).to_bytes(2, "little")
    package_path.write_bytes(bytes(data))
    return package_path
