"""Update orchestration state machine.

The machine runs as one background asyncio task. Every step holds
``self._lock``; waiting for the next poll (or parking) happens outside the
lock, so control requests (probe, local install, abort, status) are served
while the machine sleeps. Transitions are listed on AgentState.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

from update_agent import __version__
from update_agent.api.models import AgentStatus, ProbeResult
from update_agent.errors import (
    BusyError,
    DownloadAborted,
    InstallError,
    ProbeError,
    TransferError,
    ValidationError,
)
from update_agent.models.metadata import FirmwareMetadata, UpdateMetadata
from update_agent.models.status import AgentState
from update_agent.services.client import ServerClient
from update_agent.services.download import (
    DownloadSession,
    LocalPackageSource,
    RemoteObjectSource,
    TransferPipeline,
)
from update_agent.services.firmware import FirmwareMetadataProvider
from update_agent.services.install_modes import InstallModeRegistry
from update_agent.services.process import Rebooter
from update_agent.services.settings_store import SettingsStore

ERROR_BACKOFF = 1.0

# Kept in a subdirectory, the transfer pipeline prunes loose files only
FETCHED_PACKAGE = Path("fetched") / "remote_install.uhupkg"


class StateContext:
    """Data carried from one state to the next within a single update cycle."""

    def __init__(
        self,
        server_address: Optional[str] = None,
        firmware: Optional[FirmwareMetadata] = None,
        metadata: Optional[UpdateMetadata] = None,
        source=None,
        staged: Optional[list[Path]] = None,
        extra_poll: Optional[int] = None,
        fresh_window: bool = False,
    ):
        self.server_address = server_address
        self.firmware = firmware
        self.metadata = metadata
        self.source = source
        self.staged = staged
        self.extra_poll = extra_poll
        self.fresh_window = fresh_window


class Transition:
    """Next state, its context, and how long to wait before entering it.

    delay 0 means immediately, None means wait for a command. A None state
    means the machine is done for this run (reboot requested).
    """

    def __init__(
        self,
        state: Optional[AgentState],
        context: Optional[StateContext] = None,
        delay: Optional[float] = 0,
    ):
        self.state = state
        self.context = context or StateContext()
        self.delay = delay

    def __repr__(self) -> str:
        return f"Transition({self.state}, delay={self.delay})"


class StateMachine:
    """Owns the agent state and drives the update cycle."""

    def __init__(
        self,
        store: SettingsStore,
        firmware: Optional[FirmwareMetadataProvider] = None,
        client: Optional[ServerClient] = None,
        pipeline: Optional[TransferPipeline] = None,
        registry: Optional[InstallModeRegistry] = None,
        rebooter: Optional[Rebooter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the state machine.

        Args:
            store: Settings store, the single writer of persisted state
            firmware: Identity provider (built from settings if None)
            client: Update server client
            pipeline: Transfer pipeline (built from settings if None)
            registry: Install mode registry
            rebooter: Reboot collaborator
            clock: Returns the current UTC time
        """
        self.logger = logging.getLogger("update_agent.state_machine")
        self.store = store
        settings = store.settings
        self.firmware = firmware or FirmwareMetadataProvider(settings.firmware.metadata_path)
        self.client = client or ServerClient()
        self.pipeline = pipeline or TransferPipeline(settings.update.download_dir)
        self.registry = registry or InstallModeRegistry()
        self.rebooter = rebooter or Rebooter()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._generation = 0
        self._running = False
        self._paused = False
        self._session: Optional[DownloadSession] = None
        self._last_firmware: Optional[FirmwareMetadata] = None

        if settings.polling.enabled:
            self._state = AgentState.ENTRY_POINT
        else:
            self._state = AgentState.PARK
        self._context = StateContext()
        self.logger.info(f"State machine initialized in {self._state.value} state")

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    @property
    def current_state(self) -> AgentState:
        return self._state

    @property
    def settings(self):
        return self.store.settings

    def status(self) -> AgentStatus:
        """Non-blocking read of the current state."""
        return AgentStatus(busy=self._state.is_busy, current_state=self._state)

    async def probe(
        self, server_address: Optional[str] = None
    ) -> ProbeResult:
        """Probe the server now.

        Args:
            server_address: Server to use for this probe and the update it
                may start. Not persisted.

        Returns:
            ProbeResult

        Raises:
            BusyError: If a download or install is running
        """
        if self._state.is_busy:
            self.logger.info(f"Probe requested while busy in {self._state.value} state")
            raise BusyError(self._state)

        async with self._lock:
            if self._state.is_busy:
                raise BusyError(self._state)

            self.logger.info("Probe requested, preempting current state")
            self._enter(AgentState.PROBE, StateContext(server_address=server_address))
            try:
                result, transition = await self._probe(self._context)
            except Exception:
                self._enter(AgentState.ENTRY_POINT)
                raise
            self._enter(transition.state, transition.context)
        return result

    async def local_install(self, package_path: Union[str, Path]) -> tuple[bool, AgentStatus]:
        """Install an update package from the local filesystem.

        Returns:
            (accepted, status) where status is the state before the request
        """
        if self._state.is_busy:
            self.logger.warning(f"Local install rejected, busy in {self._state.value} state")
            return False, self.status()

        source = LocalPackageSource(Path(package_path))
        try:
            metadata = source.read_metadata()
            firmware = await self.firmware.load()
            metadata.validate_for(firmware, self.settings.update.supported_install_modes)
        except (ValidationError, ProbeError) as e:
            self.logger.error(f"Local install of {package_path} rejected: {e}")
            return False, self.status()

        async with self._lock:
            if self._state.is_busy:
                return False, self.status()
            status = self.status()
            self.logger.info(f"Local install of {package_path} accepted")
            self._enter(
                AgentState.DOWNLOAD,
                StateContext(firmware=firmware, metadata=metadata, source=source),
            )
        return True, status

    async def remote_install(self, url: str) -> tuple[bool, AgentStatus]:
        """Fetch an update package from url and install it like local_install().

        The package is stored under the download directory, replacing any
        package fetched before.

        Returns:
            (accepted, status) where status is the state before the request
        """
        if self._state.is_busy:
            self.logger.warning(f"Remote install rejected, busy in {self._state.value} state")
            return False, self.status()

        package_path = self.settings.update.download_dir / FETCHED_PACKAGE
        try:
            await self.client.fetch_package(url, package_path)
        except TransferError as e:
            self.logger.error(f"Remote install from {url} rejected: {e}")
            return False, self.status()
        return await self.local_install(package_path)

    def abort_download(self) -> bool:
        """Cancel the running download.

        Returns:
            True if a download was running and is now aborting, False if
            there was nothing to abort
        """
        session = self._session
        if self._state is not AgentState.DOWNLOAD or session is None or session.cancelled:
            self.logger.info("Abort requested but there is no download in progress")
            return False

        self.logger.info("Aborting download")
        session.cancel()
        return True

    async def pause(self) -> bool:
        """Park the machine until resume(). Returns False while busy."""
        if self._state.is_busy:
            return False
        async with self._lock:
            if self._state.is_busy:
                return False
            self._paused = True
            self._enter(AgentState.PARK)
        return True

    async def resume(self) -> None:
        """Leave Park, enabling polling for this process."""
        async with self._lock:
            self._paused = False
            self.settings.polling.enabled = True
            if self._state is AgentState.PARK:
                self._enter(AgentState.ENTRY_POINT)

    async def info(self) -> dict:
        """Agent version, effective settings with runtime counters, firmware."""
        try:
            self._last_firmware = await self.firmware.load()
        except ProbeError as e:
            self.logger.warning(f"Failed to read firmware metadata: {e}")

        config = self.settings.model_dump(mode="json", by_alias=True)
        runtime = self.store.runtime.polling
        config["polling"].update(
            {
                "last-poll": runtime.last_poll.isoformat() if runtime.last_poll else None,
                "first-poll": runtime.first_poll.isoformat() if runtime.first_poll else None,
                "retries": runtime.retries,
            }
        )
        firmware = None
        if self._last_firmware is not None:
            firmware = self._last_firmware.model_dump(mode="json", by_alias=True)
        return {"version": __version__, "config": config, "firmware": firmware}

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Drive the machine until stop() or a reboot is requested."""
        self.logger.info("Starting state machine")
        self._running = True
        while self._running:
            generation = self._generation
            async with self._lock:
                if generation != self._generation:
                    continue
                try:
                    transition = await self._step()
                except Exception as e:
                    self.logger.error(
                        f"Unexpected error in {self._state.value} state: {e}", exc_info=True
                    )
                    transition = Transition(AgentState.ENTRY_POINT, delay=ERROR_BACKOFF)

                if transition.state is None:
                    self._running = False
                    break
                if transition.delay == 0:
                    self._enter(transition.state, transition.context)
                    continue

            await self._wait(transition.delay, generation)
            if self._running and generation == self._generation:
                self._enter(transition.state, transition.context)

        self.logger.info("State machine stopped")

    def stop(self) -> None:
        self._running = False
        self._wakeup.set()

    async def step(self) -> Transition:
        """Run the current state once and enter the next state without waiting.

        Returns:
            The transition taken, including the delay run() would have waited
        """
        async with self._lock:
            transition = await self._step()
            if transition.state is not None:
                self._enter(transition.state, transition.context)
        return transition

    async def _wait(self, delay: Optional[float], generation: int) -> None:
        if generation != self._generation:
            return
        self._wakeup.clear()
        if delay is None:
            self.logger.debug(f"Staying on {self._state.value} state")
            await self._wakeup.wait()
            return
        self.logger.debug(f"Sleeping for {delay:.0f} seconds")
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _enter(self, state: AgentState, context: Optional[StateContext] = None) -> None:
        """Switch state and wake the background task."""
        self._state = state
        self._context = context or StateContext()
        if state is AgentState.DOWNLOAD:
            self._session = DownloadSession(self._context.metadata)
        else:
            self._session = None
        self._generation += 1
        self._wakeup.set()

    async def _step(self) -> Transition:
        handler = {
            AgentState.PARK: self._handle_park,
            AgentState.ENTRY_POINT: self._handle_entry_point,
            AgentState.POLL: self._handle_poll,
            AgentState.PROBE: self._handle_probe,
            AgentState.DOWNLOAD: self._handle_download,
            AgentState.INSTALL: self._handle_install,
            AgentState.REBOOT: self._handle_reboot,
        }[self._state]
        return await handler(self._context)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _handle_park(self, ctx: StateContext) -> Transition:
        self.logger.debug("Parking the state machine")
        return Transition(AgentState.PARK, delay=None)

    async def _handle_entry_point(self, ctx: StateContext) -> Transition:
        if not self.settings.polling.enabled or self._paused:
            self.logger.debug("Polling is disabled, parking the state machine")
            return Transition(AgentState.PARK)

        if self.store.runtime.polling.probe_asap:
            self.logger.info("Probe requested for this cycle, moving to Probe state")
            return Transition(AgentState.PROBE)

        self.logger.debug("Polling is enabled, moving to Poll state")
        return Transition(AgentState.POLL)

    async def _handle_poll(self, ctx: StateContext) -> Transition:
        if ctx.extra_poll is not None:
            self.logger.info(f"Delaying the probe {ctx.extra_poll}s as requested by the server")
            return Transition(AgentState.PROBE, delay=ctx.extra_poll)

        now = self.clock()
        fresh_window = self.store.retry_ceiling_reached()
        next_poll = self.store.next_poll_time(now)
        delay = max(0.0, (next_poll - now).total_seconds())
        if delay == 0:
            self.logger.info("Moving to Probe state as the poll is due")
        else:
            self.logger.debug(f"Moving to Probe state at {next_poll.isoformat()}")
        return Transition(AgentState.PROBE, StateContext(fresh_window=fresh_window), delay=delay)

    async def _handle_probe(self, ctx: StateContext) -> Transition:
        _, transition = await self._probe(ctx)
        return transition

    async def _probe(self, ctx: StateContext) -> tuple[ProbeResult, Transition]:
        """Run one probe exchange and decide where to go next."""
        settings = self.settings
        server_address = ctx.server_address or settings.network.server_address
        now = self.clock()

        if ctx.fresh_window:
            self.logger.info("Retry ceiling reached, starting a fresh polling window")
            self.store.reset_retries()

        try:
            firmware = await self.firmware.load()
            self._last_firmware = firmware
            response = await self.client.probe(
                server_address, firmware, self.store.runtime.polling.retries
            )
        except ProbeError as e:
            self.logger.error(f"Probe failed: {e}")
            self.store.record_probe_failure(now)
            try_again_in = (self.store.next_poll_time(now) - now).total_seconds()
            return (
                ProbeResult(update_available=False, try_again_in=max(0, int(try_again_in))),
                Transition(AgentState.ENTRY_POINT),
            )

        self.store.record_probe_success(now)

        if response.extra_poll is not None:
            return (
                ProbeResult(update_available=False, try_again_in=response.extra_poll),
                Transition(AgentState.POLL, StateContext(extra_poll=response.extra_poll)),
            )

        if not response.update_available:
            self.logger.debug("Moving to EntryPoint state as no update is available")
            return ProbeResult(update_available=False), Transition(AgentState.ENTRY_POINT)

        metadata = response.metadata
        try:
            metadata.validate_for(firmware, settings.update.supported_install_modes)
        except ValidationError as e:
            self.logger.error(f"Update package rejected: {e}")
            return ProbeResult(update_available=False), Transition(AgentState.ENTRY_POINT)

        if metadata.package_uid == self.store.runtime.update.applied_package_uid:
            self.logger.info("Not applying the update package, it has already been installed")
            return ProbeResult(update_available=False), Transition(AgentState.ENTRY_POINT)

        if not settings.update.auto_download_when_available:
            self.logger.info(f"Update {metadata.version} available, automatic download disabled")
            return ProbeResult(update_available=True), Transition(AgentState.ENTRY_POINT)

        self.logger.info(f"Update {metadata.version} available, moving to Download state")
        source = RemoteObjectSource(
            self.client, server_address, firmware.product_uid, metadata.package_uid
        )
        return (
            ProbeResult(update_available=True),
            Transition(
                AgentState.DOWNLOAD,
                StateContext(
                    server_address=server_address,
                    firmware=firmware,
                    metadata=metadata,
                    source=source,
                ),
            ),
        )

    async def _handle_download(self, ctx: StateContext) -> Transition:
        if not await self._transition_allowed("download"):
            return Transition(AgentState.ENTRY_POINT)

        await self._report(ctx, "downloading")
        try:
            staged = await self.pipeline.run(ctx.metadata, ctx.source, self._session)
        except DownloadAborted:
            self.logger.info("Download aborted, moving to EntryPoint state")
            return Transition(AgentState.ENTRY_POINT)
        except TransferError as e:
            self.logger.error(f"Download failed: {e}")
            await self._report(ctx, "error", previous_state="downloading", error_message=str(e))
            return Transition(AgentState.ENTRY_POINT)
        await self._report(ctx, "downloaded")

        if not self.settings.update.auto_install_after_download:
            self.logger.info("Update downloaded, automatic install disabled")
            return Transition(AgentState.ENTRY_POINT)

        ctx.staged = staged
        return Transition(AgentState.INSTALL, ctx)

    async def _handle_install(self, ctx: StateContext) -> Transition:
        if not await self._transition_allowed("install"):
            return Transition(AgentState.ENTRY_POINT)

        metadata = ctx.metadata
        self.logger.info(f"Installing update {metadata.version} ({metadata.package_uid})")
        await self._report(ctx, "installing")
        try:
            for obj, staged_path in zip(metadata.objects, ctx.staged):
                await self.registry.install(obj, staged_path)
        except InstallError as e:
            self.logger.error(f"Install failed: {e}")
            await self._report(ctx, "error", previous_state="installing", error_message=str(e))
            return Transition(AgentState.ENTRY_POINT)

        # Avoid installing the same package twice and probe right after boot
        self.store.set_applied_package_uid(metadata.package_uid)
        self.store.request_probe_asap()
        await self._report(ctx, "installed")
        self.logger.info("Update installed successfully")

        if not self.settings.update.auto_reboot_after_install:
            self.logger.info("Automatic reboot disabled, moving to EntryPoint state")
            return Transition(AgentState.ENTRY_POINT)
        return Transition(AgentState.REBOOT, ctx)

    async def _handle_reboot(self, ctx: StateContext) -> Transition:
        if not await self._transition_allowed("reboot"):
            return Transition(AgentState.ENTRY_POINT)

        await self._report(ctx, "rebooting")
        try:
            await self.rebooter.reboot()
        except RuntimeError as e:
            self.logger.error(f"Reboot failed: {e}")
            await self._report(ctx, "error", previous_state="rebooting", error_message=str(e))
            return Transition(AgentState.ENTRY_POINT)
        return Transition(None)

    async def _transition_allowed(self, state: str) -> bool:
        try:
            return await self.firmware.state_change_callback(state)
        except ProbeError as e:
            self.logger.error(f"State change callback failed for {state}: {e}")
            return False

    async def _report(
        self,
        ctx: StateContext,
        state: str,
        previous_state: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if ctx.firmware is None or ctx.metadata is None:
            return
        await self.client.report(
            ctx.server_address or self.settings.network.server_address,
            state,
            ctx.firmware,
            ctx.metadata.package_uid,
            previous_state=previous_state,
            error_message=error_message,
        )
