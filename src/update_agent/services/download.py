"""Transfer and verification pipeline for update objects."""

import asyncio
import hashlib
import logging
import zipfile
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import httpx

from update_agent.errors import DownloadAborted, TransferError, ValidationError
from update_agent.models.metadata import UpdateMetadata
from update_agent.services.client import ServerClient
from update_agent.utils.verification import hash_existing, verify_sha256

METADATA_MEMBER = "metadata"


class RemoteObjectSource:
    """Fetches object bytes from the update server."""

    def __init__(
        self,
        client: ServerClient,
        server_address: str,
        product_uid: str,
        package_uid: str,
    ):
        self.client = client
        self.server_address = server_address
        self.product_uid = product_uid
        self.package_uid = package_uid

    def stream(self, obj, offset: int, chunk_size: int) -> AsyncIterator[bytes]:
        return self.client.iter_object(
            self.server_address,
            self.product_uid,
            self.package_uid,
            obj.sha256sum,
            offset=offset,
            chunk_size=chunk_size,
        )

    def __repr__(self) -> str:
        return f"RemoteObjectSource({self.server_address})"


class LocalPackageSource:
    """Reads objects from a locally staged update package (ZIP).

    The package holds a 'metadata' member plus one member per object, named
    after the object's sha256sum or its filename.
    """

    def __init__(self, package_path: Path):
        self.package_path = Path(package_path)

    def read_metadata(self) -> UpdateMetadata:
        """Parse the package metadata.

        Raises:
            ValidationError: If the file is missing, unreadable, not a ZIP,
                or carries no valid metadata
        """
        if not self.package_path.is_file():
            raise ValidationError(f"Package not found: {self.package_path}")
        try:
            with zipfile.ZipFile(self.package_path, "r") as zf:
                if METADATA_MEMBER not in zf.namelist():
                    raise ValidationError("metadata not found in package root")
                raw = zf.read(METADATA_MEMBER)
        except (zipfile.BadZipFile, OSError, NotImplementedError, RuntimeError) as e:
            raise ValidationError(f"Invalid package {self.package_path}: {e}") from e
        return UpdateMetadata.parse(raw)

    async def stream(self, obj, offset: int, chunk_size: int) -> AsyncIterator[bytes]:
        try:
            zf = zipfile.ZipFile(self.package_path, "r")
        except (OSError, zipfile.BadZipFile) as e:
            raise TransferError(f"Failed to open package {self.package_path}: {e}") from e

        with zf:
            names = zf.namelist()
            member = obj.sha256sum if obj.sha256sum in names else obj.filename
            if member not in names:
                raise TransferError(f"Object {obj.filename} not found in package")

            with zf.open(member) as src:
                remaining = offset
                while remaining > 0:
                    skipped = await asyncio.to_thread(src.read, min(remaining, chunk_size))
                    if not skipped:
                        return
                    remaining -= len(skipped)
                while chunk := await asyncio.to_thread(src.read, chunk_size):
                    yield chunk

    def __repr__(self) -> str:
        return f"LocalPackageSource({self.package_path})"


class ObjectProgress:
    """Transfer progress of a single object."""

    def __init__(self, size: int):
        self.size = size
        self.bytes_transferred = 0
        self.done = False


class DownloadSession:
    """Ephemeral state of one Download run: progress and cancellation.

    Never persisted. A crash during download restarts the update attempt.
    """

    def __init__(self, metadata: UpdateMetadata):
        self.package_uid = metadata.package_uid
        self.progress = {obj.sha256sum: ObjectProgress(obj.size) for obj in metadata.objects}
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def advance(self, sha256sum: str, nbytes: int) -> None:
        self.progress[sha256sum].bytes_transferred += nbytes

    def mark_done(self, sha256sum: str) -> None:
        progress = self.progress[sha256sum]
        progress.bytes_transferred = progress.size
        progress.done = True

    def percent(self) -> int:
        total = sum(p.size for p in self.progress.values())
        if total == 0:
            return 100
        done = sum(p.bytes_transferred for p in self.progress.values())
        return min(100, int(done * 100 / total))


class TransferPipeline:
    """Streams update objects into the download directory and verifies them.

    Each object is staged at <download_dir>/<sha256sum>. Only staged files
    whose size and digest match their metadata leave this pipeline.
    """

    def __init__(
        self,
        download_dir: Path,
        chunk_size: int = 64 * 1024,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize transfer pipeline.

        Args:
            download_dir: Directory objects are staged in
            chunk_size: Read size per chunk, also the cancellation granularity
            max_attempts: Transport attempts per object before giving up
            retry_delay: Seconds to wait between attempts
        """
        self.logger = logging.getLogger("update_agent.download")
        self.download_dir = Path(download_dir)
        self.chunk_size = chunk_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def staged_path(self, obj) -> Path:
        return self.download_dir / obj.sha256sum

    async def run(self, metadata: UpdateMetadata, source, session: DownloadSession) -> list[Path]:
        """Transfer and verify every object of the package, in order.

        Returns:
            Staged object paths in metadata order

        Raises:
            DownloadAborted: If the session was cancelled
            TransferError: On transport failure after retries, or size/digest
                mismatch
        """
        self.download_dir.mkdir(parents=True, exist_ok=True)
        self._prune(metadata)

        staged = []
        for idx, obj in enumerate(metadata.objects, start=1):
            if session.cancelled:
                raise DownloadAborted("Download aborted by request")

            path = self.staged_path(obj)
            if self._is_ready(obj, path):
                self.logger.info(f"Object {obj.filename} already downloaded, skipping")
            else:
                self.logger.info(
                    f"Downloading object {idx}/{len(metadata.objects)}: "
                    f"{obj.filename} ({obj.size} bytes) from {source!r}"
                )
                await self._transfer(obj, source, session, path)

            session.mark_done(obj.sha256sum)
            staged.append(path)

        self.logger.info(f"All {len(staged)} objects downloaded and verified")
        return staged

    def _prune(self, metadata: UpdateMetadata) -> None:
        """Remove leftovers from previous attempts that this package doesn't use."""
        wanted = {obj.sha256sum for obj in metadata.objects}
        for entry in self.download_dir.iterdir():
            if entry.is_file() and entry.name not in wanted:
                self.logger.debug(f"Removing leftover file {entry.name}")
                entry.unlink()

    def _is_ready(self, obj, path: Path) -> bool:
        if not path.is_file() or path.stat().st_size != obj.size:
            return False
        if verify_sha256(path, obj.sha256sum):
            return True
        self.logger.warning(f"Removing corrupted object {obj.filename}")
        path.unlink()
        return False

    async def _transfer(self, obj, source, session: DownloadSession, path: Path) -> None:
        attempt = 0
        while True:
            attempt += 1
            offset = path.stat().st_size if path.exists() else 0
            if offset > obj.size:
                path.unlink()
                offset = 0
            digest = hash_existing(path) if offset else hashlib.sha256()
            if offset:
                self.logger.info(f"Resuming {obj.filename} from byte {offset}")
                session.advance(obj.sha256sum, offset)

            try:
                await self._stream_into(obj, source, session, path, offset, digest)
                break
            except TransferError:
                # Aborted, or the source can't provide this object at all
                path.unlink(missing_ok=True)
                raise
            except (httpx.HTTPError, OSError) as e:
                if attempt >= self.max_attempts:
                    path.unlink(missing_ok=True)
                    raise TransferError(
                        f"Failed to download {obj.filename} after {attempt} attempts: {e}"
                    ) from e
                self.logger.warning(
                    f"Transfer of {obj.filename} failed (attempt {attempt}/"
                    f"{self.max_attempts}): {e}"
                )
                session.progress[obj.sha256sum].bytes_transferred = 0
                await asyncio.sleep(self.retry_delay)

        size = path.stat().st_size
        if size != obj.size:
            path.unlink(missing_ok=True)
            raise TransferError(
                f"SIZE_MISMATCH: {obj.filename} expected {obj.size} bytes, got {size}"
            )

        actual = digest.hexdigest()
        if actual != obj.sha256sum:
            path.unlink(missing_ok=True)
            raise TransferError(
                f"SHA256_MISMATCH: {obj.filename} expected {obj.sha256sum}, got {actual}"
            )
        self.logger.info(f"Object {obj.filename} verified")

    async def _stream_into(
        self,
        obj,
        source,
        session: DownloadSession,
        path: Path,
        offset: int,
        digest,
    ) -> None:
        stream = source.stream(obj, offset, self.chunk_size)
        last_progress = -1
        try:
            async with aiofiles.open(path, "ab" if offset else "wb") as f:
                async for chunk in stream:
                    if session.cancelled:
                        raise DownloadAborted("Download aborted by request")
                    await f.write(chunk)
                    digest.update(chunk)
                    session.advance(obj.sha256sum, len(chunk))

                    current_progress = session.percent()
                    if current_progress >= last_progress + 5:
                        last_progress = current_progress
                        self.logger.debug(f"Download progress: {current_progress}%")
            if session.cancelled:
                raise DownloadAborted("Download aborted by request")
        finally:
            await stream.aclose()
