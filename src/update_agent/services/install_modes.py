"""Install mode registry and handlers.

Each install mode tag maps to one handler class consuming an object's bytes
through receive(chunk) and committing them on finalize(). Metadata validation
rejects unknown modes, so install never has to deal with them.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles

from update_agent.errors import InstallError
from update_agent.models.metadata import CopyObject, DryRunObject, RawObject


class InstallHandler:
    """Base class for install mode handlers."""

    mode: str = ""

    def __init__(self, obj):
        self.logger = logging.getLogger(f"update_agent.install.{self.mode}")
        self.obj = obj
        self.committed = 0

    def receive(self, chunk: bytes) -> int:
        """Consume a chunk, returning the number of bytes committed."""
        raise NotImplementedError

    def finalize(self) -> None:
        raise NotImplementedError

    def abort(self) -> None:
        """Release resources after a failure."""


class RawHandler(InstallHandler):
    """Writes fixed-size blocks to a block device at sequential offsets."""

    mode = "raw"

    def __init__(self, obj: RawObject):
        super().__init__(obj)
        self._buffer = bytearray()
        self._offset = obj.seek
        self._fd: Optional[int] = None

    def _open(self) -> int:
        if self._fd is None:
            flags = os.O_WRONLY | os.O_CREAT
            if self.obj.truncate:
                flags |= os.O_TRUNC
            self._fd = os.open(self.obj.target, flags, 0o644)
            self.logger.info(f"Writing {self.obj.filename} to {self.obj.target} at offset {self._offset}")
        return self._fd

    def _write_block(self, block: bytes) -> int:
        fd = self._open()
        written = os.pwrite(fd, block, self._offset)
        if written != len(block):
            raise OSError(f"Short write on {self.obj.target}: {written}/{len(block)} bytes")
        self._offset += written
        self.committed += written
        return written

    def receive(self, chunk: bytes) -> int:
        self._buffer.extend(chunk)
        committed = 0
        chunk_size = self.obj.chunk_size
        while len(self._buffer) >= chunk_size:
            committed += self._write_block(bytes(self._buffer[:chunk_size]))
            del self._buffer[:chunk_size]
        return committed

    def finalize(self) -> None:
        fd = self._open()
        if self._buffer:
            self._write_block(bytes(self._buffer))
            self._buffer.clear()
        os.fsync(fd)
        os.close(fd)
        self._fd = None

    def abort(self) -> None:
        self._buffer.clear()
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


class CopyHandler(InstallHandler):
    """Stages bytes next to the target file and replaces it atomically."""

    mode = "copy"

    def __init__(self, obj: CopyObject):
        super().__init__(obj)
        self.target = Path(obj.target_path)
        self.tmp_path = self.target.parent / f"{self.target.name}.tmp"
        self._file = None

    def receive(self, chunk: bytes) -> int:
        if self._file is None:
            self.target.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.tmp_path, "wb")
        self._file.write(chunk)
        self.committed += len(chunk)
        return len(chunk)

    def finalize(self) -> None:
        if self._file is None:
            # Empty object still replaces the target
            self.receive(b"")
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        self._file = None

        if self.obj.target_permissions is not None:
            os.chmod(self.tmp_path, int(self.obj.target_permissions, 8))

        # Atomic rename to final destination
        os.replace(self.tmp_path, self.target)
        self.logger.info(f"Copied {self.obj.filename} to {self.target}")

    def abort(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        self.tmp_path.unlink(missing_ok=True)


class DryRunHandler(InstallHandler):
    """Consumes the object without committing it anywhere."""

    mode = "dry-run"

    def __init__(self, obj: DryRunObject):
        super().__init__(obj)

    def receive(self, chunk: bytes) -> int:
        self.committed += len(chunk)
        return len(chunk)

    def finalize(self) -> None:
        self.logger.info(f"Dry run of {self.obj.filename}: {self.committed} bytes")


DEFAULT_HANDLERS = {
    handler.mode: handler for handler in (RawHandler, CopyHandler, DryRunHandler)
}


class InstallModeRegistry:
    """Maps install mode tags onto handler classes."""

    def __init__(self, handlers: Optional[dict] = None):
        self.logger = logging.getLogger("update_agent.install")
        self._handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    @property
    def modes(self) -> list[str]:
        return sorted(self._handlers)

    def handler_for(self, obj) -> InstallHandler:
        """Create the handler for an object's install mode.

        Raises:
            InstallError: If no handler is registered for the mode
        """
        handler_cls = self._handlers.get(obj.mode)
        if handler_cls is None:
            raise InstallError(f"No handler registered for install mode '{obj.mode}'")
        return handler_cls(obj)

    async def install(self, obj, staged_path: Path, chunk_size: int = 64 * 1024) -> int:
        """Feed a verified staged object through its install mode handler.

        Args:
            obj: Object metadata
            staged_path: Verified object bytes
            chunk_size: Read size from the staged file

        Returns:
            Number of bytes committed

        Raises:
            InstallError: If reading the staged object or committing it fails
        """
        handler = self.handler_for(obj)
        self.logger.info(f"Installing {obj.filename} using '{obj.mode}' mode")
        try:
            async with aiofiles.open(staged_path, "rb") as f:
                while chunk := await f.read(chunk_size):
                    await asyncio.to_thread(handler.receive, chunk)
            await asyncio.to_thread(handler.finalize)
        except OSError as e:
            handler.abort()
            raise InstallError(f"Failed to install {obj.filename}: {e}") from e

        return handler.committed
