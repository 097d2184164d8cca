"""Update server API client: probe, object download and state reports."""

import logging
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import httpx

from update_agent.errors import ProbeError, TransferError, ValidationError
from update_agent.models.metadata import FirmwareMetadata, UpdateMetadata

API_CONTENT_TYPE = "application/vnd.updatehub-v1+json"


class ProbeResponse:
    """Result of one probe exchange.

    Exactly one of these holds: no update (both None), an update offered
    (metadata set), or the server asking to come back later (extra_poll set).
    """

    def __init__(
        self,
        metadata: Optional[UpdateMetadata] = None,
        extra_poll: Optional[int] = None,
    ):
        self.metadata = metadata
        self.extra_poll = extra_poll

    @property
    def update_available(self) -> bool:
        return self.metadata is not None

    def __repr__(self) -> str:
        return f"ProbeResponse(metadata={self.metadata!r}, extra_poll={self.extra_poll!r})"


class ServerClient:
    """Talks to the remote update server."""

    def __init__(
        self,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize server client.

        Args:
            timeout: Connect/read timeout in seconds for every request
            transport: Optional httpx transport (used to inject a mock server)
        """
        self.logger = logging.getLogger("update_agent.client")
        self.timeout = timeout
        self.transport = transport

    def _client(self, server_address: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=server_address,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "User-Agent": "update-agent",
                "Content-Type": "application/json",
                "Api-Content-Type": API_CONTENT_TYPE,
            },
        )

    async def probe(
        self, server_address: str, firmware: FirmwareMetadata, retries: int
    ) -> ProbeResponse:
        """Ask the server whether an update is available.

        Args:
            server_address: Server base URL
            firmware: Current device identity
            retries: Number of consecutive failed probes so far

        Returns:
            ProbeResponse

        Raises:
            ProbeError: On transport failure, unexpected status or
                unparseable metadata
        """
        self.logger.debug(f"Probing {server_address} (retries={retries})")
        try:
            async with self._client(server_address) as client:
                response = await client.post(
                    "/upgrades",
                    json=firmware.model_dump(mode="json", by_alias=True),
                    headers={"Api-Retries": str(retries)},
                )
        except httpx.HTTPError as e:
            raise ProbeError(f"Probe request failed: {e}") from e

        if response.status_code == 404:
            return ProbeResponse()

        if response.status_code != 200:
            raise ProbeError(f"Invalid status code received: {response.status_code}")

        extra_poll = response.headers.get("Add-Extra-Poll")
        if extra_poll is not None:
            try:
                seconds = int(extra_poll)
            except ValueError:
                seconds = -1
            if seconds >= 0:
                return ProbeResponse(extra_poll=seconds)
            self.logger.warning(f"Ignoring invalid Add-Extra-Poll header: {extra_poll}")

        try:
            metadata = UpdateMetadata.parse(response.content)
        except ValidationError as e:
            raise ProbeError(str(e)) from e
        return ProbeResponse(metadata=metadata)

    async def iter_object(
        self,
        server_address: str,
        product_uid: str,
        package_uid: str,
        sha256sum: str,
        offset: int = 0,
        chunk_size: int = 64 * 1024,
    ) -> AsyncIterator[bytes]:
        """Stream an object's bytes starting at offset.

        Raises:
            httpx.HTTPError: On transport failure or non-success status
        """
        url = f"/products/{product_uid}/packages/{package_uid}/objects/{sha256sum}"
        headers = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        async with self._client(server_address) as client:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()

                # Server ignored the Range header, drop what we already have
                to_skip = offset if offset > 0 and response.status_code != 206 else 0
                async for chunk in response.aiter_bytes(chunk_size=chunk_size):
                    if to_skip:
                        if len(chunk) <= to_skip:
                            to_skip -= len(chunk)
                            continue
                        chunk = chunk[to_skip:]
                        to_skip = 0
                    yield chunk

    async def fetch_package(self, url: str, dest: Path) -> Path:
        """Download a complete update package from an absolute URL.

        The file at dest is replaced and removed again if the transfer fails.

        Raises:
            TransferError: On transport failure or non-success status
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Fetching update package from {url}")

        try:
            async with self._client("") as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    async with aiofiles.open(dest, "wb") as f:
                        async for chunk in response.aiter_bytes(chunk_size=64 * 1024):
                            await f.write(chunk)
        except (httpx.HTTPError, OSError) as e:
            dest.unlink(missing_ok=True)
            raise TransferError(f"Failed to fetch package from {url}: {e}") from e

        self.logger.info(f"Update package saved to {dest} ({dest.stat().st_size} bytes)")
        return dest

    async def report(
        self,
        server_address: str,
        state: str,
        firmware: FirmwareMetadata,
        package_uid: str,
        previous_state: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Report a state change to the server.

        Note:
            Failures are logged but not raised to avoid blocking OTA operations
        """
        payload = firmware.model_dump(mode="json", by_alias=True)
        payload["status"] = state
        payload["package-uid"] = package_uid
        if previous_state is not None:
            payload["previous-state"] = previous_state
        if error_message is not None:
            payload["error-message"] = error_message

        try:
            async with self._client(server_address) as client:
                response = await client.post("/report", json=payload)
                response.raise_for_status()
            self.logger.debug(f"Reported state {state} for package {package_uid}")
        except httpx.HTTPError as e:
            self.logger.warning(
                f"Failed to report state {state}: {e}. Continuing OTA operation..."
            )
