"""Firmware identity and update package metadata models."""

import hashlib
import json
from typing import Annotated, Literal, Optional, Union

import pydantic
from pydantic import Field, PrivateAttr, field_validator

from update_agent.errors import ValidationError
from update_agent.models.base import KebabModel


class FirmwareMetadata(KebabModel):
    """Snapshot of the device identity, rebuilt before every probe."""

    product_uid: str
    version: str
    hardware: str
    device_identity: dict[str, str] = Field(default_factory=dict)
    device_attributes: dict[str, str] = Field(default_factory=dict)


class _ObjectBase(KebabModel):
    filename: str = Field(..., description="Object file name inside the package")
    size: int = Field(..., ge=0, description="Expected bytes")
    sha256sum: str = Field(
        ..., pattern=r"^[a-f0-9]{64}$", description="Expected SHA-256 digest"
    )


class RawObject(_ObjectBase):
    """Object written straight to a block device or file."""

    mode: Literal["raw"]
    target: str = Field(..., description="Block device or file to write to")
    seek: int = Field(0, ge=0, description="Byte offset inside the target")
    chunk_size: int = Field(128 * 1024, gt=0, description="Write block size")
    truncate: bool = Field(False, description="Truncate the target before writing")


class CopyObject(_ObjectBase):
    """Object copied to a regular file, replaced atomically."""

    mode: Literal["copy"]
    target_path: str = Field(..., pattern=r"^/.*$", description="Absolute path")
    target_permissions: Optional[str] = Field(
        None, pattern=r"^0?[0-7]{3,4}$", description="Octal file mode"
    )

    @field_validator("target_path")
    @classmethod
    def no_directory_traversal(cls, v: str) -> str:
        """Prevent directory traversal in the target path."""
        if ".." in v:
            raise ValueError("Target path must not contain '..'")
        return v


class DryRunObject(_ObjectBase):
    """Object consumed and verified without being committed anywhere."""

    mode: Literal["dry-run"]


ObjectMetadata = Annotated[
    Union[RawObject, CopyObject, DryRunObject], Field(discriminator="mode")
]


class UpdateMetadata(KebabModel):
    """Update package metadata offered by the server or a local package.

    Not mutated after parsing. package_uid is the SHA-256 of the raw bytes the
    metadata was parsed from.
    """

    product_uid: str
    version: str
    supported_hardware: Union[Literal["any"], list[str]] = "any"
    objects: list[ObjectMetadata] = Field(..., min_length=1)

    _package_uid: str = PrivateAttr(default="")

    @field_validator("objects", mode="before")
    @classmethod
    def first_installation_set(cls, v):
        """Accept either a flat object list or a list of installation sets."""
        if isinstance(v, list) and v and isinstance(v[0], list):
            return v[0]
        return v

    @property
    def package_uid(self) -> str:
        return self._package_uid

    @classmethod
    def parse(cls, raw: bytes) -> "UpdateMetadata":
        """Parse metadata bytes.

        Raises:
            ValidationError: If the bytes are not valid metadata JSON, or an
                object declares an unknown install mode
        """
        try:
            metadata = cls.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"Invalid update metadata JSON: {e}") from e
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid update metadata: {e}") from e
        metadata._package_uid = hashlib.sha256(raw).hexdigest()
        return metadata

    def validate_for(
        self, firmware: FirmwareMetadata, supported_modes: list[str]
    ) -> None:
        """Check the package applies to this device before anything is fetched.

        Raises:
            ValidationError: On product, hardware or install mode mismatch
        """
        if self.product_uid != firmware.product_uid:
            raise ValidationError(
                f"Product uid mismatch: package targets {self.product_uid}, "
                f"device is {firmware.product_uid}"
            )

        if self.supported_hardware != "any" and firmware.hardware not in self.supported_hardware:
            raise ValidationError(
                f"Hardware {firmware.hardware} not supported by package "
                f"(supports {', '.join(self.supported_hardware)})"
            )

        for obj in self.objects:
            if obj.mode not in supported_modes:
                raise ValidationError(
                    f"Install mode '{obj.mode}' of {obj.filename} is not supported"
                )
