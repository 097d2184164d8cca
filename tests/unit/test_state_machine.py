"""Unit tests for the update state machine."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from update_agent.api.models import AgentStatus
from update_agent.errors import (
    BusyError,
    DownloadAborted,
    InstallError,
    ProbeError,
    TransferError,
)
from update_agent.models.metadata import UpdateMetadata
from update_agent.models.status import AgentState
from update_agent.services.client import ProbeResponse
from update_agent.services.download import LocalPackageSource
from update_agent.services.state_machine import StateMachine

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
OTHER_SERVER = "http://other.example.com"


@pytest.fixture
def firmware(firmware_metadata):
    provider = MagicMock()
    provider.load = AsyncMock(return_value=firmware_metadata)
    provider.state_change_callback = AsyncMock(return_value=True)
    return provider


@pytest.fixture
def client():
    server_client = MagicMock()
    server_client.probe = AsyncMock(return_value=ProbeResponse())
    server_client.report = AsyncMock()
    return server_client


@pytest.fixture
def pipeline(tmp_path):
    transfer = MagicMock()
    transfer.run = AsyncMock(return_value=[tmp_path / "staged-object"])
    return transfer


@pytest.fixture
def registry():
    modes = MagicMock()
    modes.install = AsyncMock(return_value=0)
    return modes


@pytest.fixture
def rebooter():
    reboot = MagicMock()
    reboot.reboot = AsyncMock()
    return reboot


@pytest.fixture
def machine(store, firmware, client, pipeline, registry, rebooter):
    return StateMachine(
        store,
        firmware=firmware,
        client=client,
        pipeline=pipeline,
        registry=registry,
        rebooter=rebooter,
        clock=lambda: T0,
    )


@pytest.fixture
def update(make_object, make_metadata):
    """Update metadata offered by the server."""
    return UpdateMetadata.parse(make_metadata([make_object(b"new firmware")]))


def _reported_states(client):
    return [c.args[1] for c in client.report.call_args_list]


@pytest.mark.unit
class TestIdleAndPark:
    """Test EntryPoint and Park transitions."""

    def test_initial_state_idle(self, machine):
        assert machine.current_state is AgentState.ENTRY_POINT
        assert machine.status() == AgentStatus(busy=False, current_state=AgentState.ENTRY_POINT)

    def test_initial_state_park_when_polling_disabled(self, store, firmware, client):
        store.settings.polling.enabled = False

        machine = StateMachine(store, firmware=firmware, client=client)

        assert machine.current_state is AgentState.PARK

    @pytest.mark.asyncio
    async def test_park_waits_for_command(self, store, machine):
        """With polling disabled the machine never leaves Park on its own."""
        store.settings.polling.enabled = False
        machine._enter(AgentState.PARK)

        transition = await machine.step()

        assert transition.state is AgentState.PARK
        assert transition.delay is None

    @pytest.mark.asyncio
    async def test_entry_point_parks_when_disabled(self, store, machine):
        store.settings.polling.enabled = False

        await machine.step()

        assert machine.current_state is AgentState.PARK

    @pytest.mark.asyncio
    async def test_entry_point_polls(self, machine):
        await machine.step()

        assert machine.current_state is AgentState.POLL

    @pytest.mark.asyncio
    async def test_entry_point_probe_asap(self, store, machine):
        store.request_probe_asap()

        await machine.step()

        assert machine.current_state is AgentState.PROBE

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, machine):
        assert await machine.pause() is True
        assert machine.current_state is AgentState.PARK

        await machine.step()
        assert machine.current_state is AgentState.PARK

        await machine.resume()
        assert machine.current_state is AgentState.ENTRY_POINT
        await machine.step()
        assert machine.current_state is AgentState.POLL

    @pytest.mark.asyncio
    async def test_resume_enables_polling(self, store, machine):
        store.settings.polling.enabled = False
        machine._enter(AgentState.PARK)

        await machine.resume()

        assert store.settings.polling.enabled is True
        assert machine.current_state is AgentState.ENTRY_POINT


@pytest.mark.unit
class TestPoll:
    """Test Poll scheduling."""

    @pytest.mark.asyncio
    async def test_waits_until_next_poll(self, store, machine):
        store.record_probe_success(T0 - timedelta(seconds=100))
        machine._enter(AgentState.POLL)

        transition = await machine.step()

        assert transition.state is AgentState.PROBE
        assert transition.delay == 3500

    @pytest.mark.asyncio
    async def test_overdue_poll_probes_now(self, store, machine):
        store.record_probe_success(T0 - timedelta(days=3))
        machine._enter(AgentState.POLL)

        transition = await machine.step()

        assert transition.delay == 0

    @pytest.mark.asyncio
    async def test_failed_probe_backs_off(self, store, machine, client):
        """Failure at t=0 schedules the next probe at t=300 with retries=1."""
        # Arrange
        client.probe.side_effect = ProbeError("connection refused")
        machine._enter(AgentState.PROBE)

        # Act
        await machine.step()
        await machine.step()
        transition = await machine.step()

        # Assert
        assert store.runtime.polling.retries == 1
        assert machine.current_state is AgentState.PROBE
        assert transition.delay == 300

    @pytest.mark.asyncio
    async def test_retry_ceiling_starts_fresh_window(self, store, machine, client):
        """At the ceiling the regular interval applies and retries restart."""
        # Arrange
        store.settings.polling.max_retries = 2
        store.record_probe_failure(T0 - timedelta(seconds=3600))
        store.record_probe_failure(T0 - timedelta(seconds=3600))
        client.probe.side_effect = ProbeError("still down")
        machine._enter(AgentState.POLL)

        # Act
        poll = await machine.step()
        await machine.step()

        # Assert
        assert poll.delay == 0
        assert client.probe.call_args.args[2] == 0
        assert store.runtime.polling.retries == 1

    @pytest.mark.asyncio
    async def test_failure_at_ceiling_reports_regular_interval(self, store, machine, client):
        """The failure that reaches the ceiling waits the regular interval."""
        # Arrange
        store.settings.polling.max_retries = 3
        store.record_probe_failure(T0 - timedelta(seconds=300))
        store.record_probe_failure(T0 - timedelta(seconds=300))
        client.probe.side_effect = ProbeError("still down")

        # Act
        result = await machine.probe()

        # Assert
        next_poll = store.next_poll_time(T0)
        assert store.runtime.polling.retries == 3
        assert result.try_again_in == 3600
        assert result.try_again_in == (next_poll - T0).total_seconds()

    @pytest.mark.asyncio
    async def test_extra_poll(self, store, machine, client):
        client.probe.return_value = ProbeResponse(extra_poll=120)

        result = await machine.probe()
        transition = await machine.step()

        assert result.update_available is False
        assert result.try_again_in == 120
        assert transition.state is AgentState.PROBE
        assert transition.delay == 120


@pytest.mark.unit
class TestProbe:
    """Test probe() and the Probe state."""

    @pytest.mark.asyncio
    async def test_no_update(self, store, machine):
        result = await machine.probe()

        assert result.update_available is False
        assert machine.current_state is AgentState.ENTRY_POINT
        assert store.runtime.polling.last_poll == T0

    @pytest.mark.asyncio
    async def test_probe_failure(self, store, machine, client):
        client.probe.side_effect = ProbeError("timeout")

        result = await machine.probe()

        assert result.update_available is False
        assert result.try_again_in == 300
        assert store.runtime.polling.retries == 1
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_unexpected_error_leaves_probe_state(self, machine, client):
        """An error escaping the exchange does not leave the machine in probe."""
        client.probe.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await machine.probe()

        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_update_available_starts_download(self, machine, client, update):
        client.probe.return_value = ProbeResponse(metadata=update)

        result = await machine.probe()

        assert result.update_available is True
        assert machine.current_state is AgentState.DOWNLOAD
        assert machine.status().busy is True

    @pytest.mark.asyncio
    async def test_server_override_not_persisted(self, store, machine, client):
        await machine.probe(OTHER_SERVER)

        assert client.probe.call_args.args[0] == OTHER_SERVER
        assert store.settings.network.server_address == "https://api.updatehub.io"

    @pytest.mark.asyncio
    async def test_validation_failure_skips_update(self, store, machine, client, make_object, make_metadata):
        """A package for another product is skipped without counting a failure."""
        # Arrange
        foreign = UpdateMetadata.parse(
            make_metadata([make_object(b"x")], product_uid="other-product")
        )
        client.probe.return_value = ProbeResponse(metadata=foreign)

        # Act
        result = await machine.probe()

        # Assert
        assert result.update_available is False
        assert store.runtime.polling.retries == 0
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_already_applied_package(self, store, machine, client, update):
        store.set_applied_package_uid(update.package_uid)
        client.probe.return_value = ProbeResponse(metadata=update)

        result = await machine.probe()

        assert result.update_available is False
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_auto_download_disabled(self, store, machine, client, update):
        store.settings.update.auto_download_when_available = False
        client.probe.return_value = ProbeResponse(metadata=update)

        result = await machine.probe()

        assert result.update_available is True
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_probe_while_busy(self, machine, client, update):
        client.probe.return_value = ProbeResponse(metadata=update)
        await machine.probe()

        with pytest.raises(BusyError):
            await machine.probe()

        assert client.probe.await_count == 1


@pytest.mark.unit
class TestUpdateCycle:
    """Test Download, Install and Reboot."""

    async def _start_download(self, machine, client, update):
        client.probe.return_value = ProbeResponse(metadata=update)
        await machine.probe(OTHER_SERVER)
        assert machine.current_state is AgentState.DOWNLOAD

    @pytest.mark.asyncio
    async def test_full_cycle(self, store, machine, client, registry, rebooter, update):
        """Download, install and reboot, reporting every step."""
        # Arrange
        await self._start_download(machine, client, update)

        # Act / Assert: download
        await machine.step()
        assert machine.current_state is AgentState.INSTALL

        # install
        await machine.step()
        assert machine.current_state is AgentState.REBOOT
        registry.install.assert_awaited_once()
        assert store.runtime.update.applied_package_uid == update.package_uid
        assert store.runtime.polling.probe_asap is True

        # reboot
        transition = await machine.step()
        assert transition.state is None
        rebooter.reboot.assert_awaited_once()

        assert _reported_states(client) == [
            "downloading",
            "downloaded",
            "installing",
            "installed",
            "rebooting",
        ]
        # Downloads and reports use the server the probe used
        assert all(c.args[0] == OTHER_SERVER for c in client.report.call_args_list)

    @pytest.mark.asyncio
    async def test_download_aborted(self, machine, client, update, pipeline):
        await self._start_download(machine, client, update)
        pipeline.run.side_effect = DownloadAborted("Download aborted by request")

        await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT
        assert "error" not in _reported_states(client)

    @pytest.mark.asyncio
    async def test_download_failure_reported(self, machine, client, update, pipeline, registry):
        await self._start_download(machine, client, update)
        pipeline.run.side_effect = TransferError("SHA256_MISMATCH: rootfs.img")

        await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT
        registry.install.assert_not_awaited()
        error = client.report.call_args_list[-1]
        assert error.args[1] == "error"
        assert error.kwargs["previous_state"] == "downloading"
        assert "SHA256_MISMATCH" in error.kwargs["error_message"]

    @pytest.mark.asyncio
    async def test_callback_cancels_download(self, machine, client, update, firmware, pipeline):
        await self._start_download(machine, client, update)
        firmware.state_change_callback.return_value = False

        await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT
        pipeline.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_auto_install_disabled(self, store, machine, client, update, registry):
        await self._start_download(machine, client, update)
        store.settings.update.auto_install_after_download = False

        await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT
        registry.install.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_install_failure(self, store, machine, client, update, registry):
        await self._start_download(machine, client, update)
        registry.install.side_effect = InstallError("disk full")

        await machine.step()
        await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT
        assert store.runtime.update.applied_package_uid is None
        assert _reported_states(client)[-1] == "error"

    @pytest.mark.asyncio
    async def test_auto_reboot_disabled(self, store, machine, client, update, rebooter):
        await self._start_download(machine, client, update)
        store.settings.update.auto_reboot_after_install = False

        await machine.step()
        await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT
        rebooter.reboot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reboot_failure(self, machine, client, update, rebooter):
        await self._start_download(machine, client, update)
        rebooter.reboot.side_effect = RuntimeError("Reboot failed: exit code 1")

        for _ in range(3):
            await machine.step()

        assert machine.current_state is AgentState.ENTRY_POINT


@pytest.mark.unit
class TestLocalInstallAndAbort:
    """Test local_install() and abort_download()."""

    @pytest.mark.asyncio
    async def test_local_install_accepted(self, machine, pipeline, sample_package):
        package_path, _ = sample_package

        accepted, status = await machine.local_install(package_path)

        assert accepted is True
        assert status.current_state is AgentState.ENTRY_POINT
        assert machine.current_state is AgentState.DOWNLOAD

        await machine.step()
        assert isinstance(pipeline.run.call_args.args[1], LocalPackageSource)

    @pytest.mark.asyncio
    async def test_local_install_while_downloading(self, machine, sample_package):
        """Busy machine rejects the request with its current state."""
        package_path, _ = sample_package
        await machine.local_install(package_path)

        accepted, status = await machine.local_install("/tmp/update.uhupkg")

        assert accepted is False
        assert status == AgentStatus(busy=True, current_state=AgentState.DOWNLOAD)

    @pytest.mark.asyncio
    async def test_local_install_invalid_package(self, machine, tmp_path):
        accepted, status = await machine.local_install(tmp_path / "missing.uhupkg")

        assert accepted is False
        assert status.busy is False
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_local_install_unreadable_package(self, machine, unreadable_package):
        accepted, status = await machine.local_install(unreadable_package)

        assert accepted is False
        assert status == AgentStatus(busy=False, current_state=AgentState.ENTRY_POINT)
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_local_install_foreign_product(self, machine, firmware, firmware_metadata, sample_package):
        firmware.load.return_value = firmware_metadata.model_copy(
            update={"product_uid": "other-product"}
        )
        package_path, _ = sample_package

        accepted, _ = await machine.local_install(package_path)

        assert accepted is False

    def test_abort_without_download(self, machine):
        assert machine.abort_download() is False
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_abort_running_download(self, machine, sample_package):
        package_path, _ = sample_package
        await machine.local_install(package_path)

        assert machine.abort_download() is True
        assert machine._session.cancelled is True
        assert machine.current_state is AgentState.DOWNLOAD
        # Second abort finds nothing left to abort
        assert machine.abort_download() is False


@pytest.mark.unit
class TestRemoteInstall:
    """Test remote_install()."""

    URL = "http://files.example.com/update.uhupkg"

    @pytest.fixture
    def fetch(self, client, sample_package):
        package_path, _ = sample_package

        async def _fetch(url, dest):
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(package_path.read_bytes())
            return dest

        client.fetch_package = AsyncMock(side_effect=_fetch)
        return client.fetch_package

    @pytest.mark.asyncio
    async def test_remote_install_accepted(self, store, machine, pipeline, fetch):
        """The fetched package goes through the local install path."""
        # Act
        accepted, status = await machine.remote_install(self.URL)

        # Assert
        dest = fetch.call_args.args[1]
        assert accepted is True
        assert status.current_state is AgentState.ENTRY_POINT
        assert machine.current_state is AgentState.DOWNLOAD
        assert fetch.call_args.args[0] == self.URL
        assert dest.parent.parent == store.settings.update.download_dir

        await machine.step()
        source = pipeline.run.call_args.args[1]
        assert isinstance(source, LocalPackageSource)
        assert source.package_path == dest

    @pytest.mark.asyncio
    async def test_remote_install_fetch_failure(self, machine, client):
        client.fetch_package = AsyncMock(side_effect=TransferError("404 Not Found"))

        accepted, status = await machine.remote_install(self.URL)

        assert accepted is False
        assert status.busy is False
        assert machine.current_state is AgentState.ENTRY_POINT

    @pytest.mark.asyncio
    async def test_remote_install_while_downloading(self, machine, fetch, sample_package):
        package_path, _ = sample_package
        await machine.local_install(package_path)

        accepted, status = await machine.remote_install(self.URL)

        assert accepted is False
        assert status == AgentStatus(busy=True, current_state=AgentState.DOWNLOAD)
        fetch.assert_not_awaited()


@pytest.mark.unit
class TestInfo:
    @pytest.mark.asyncio
    async def test_info(self, store, machine):
        store.record_probe_failure(T0)

        info = await machine.info()

        assert info["version"]
        assert info["config"]["polling"]["retries"] == 1
        assert info["config"]["polling"]["extra-interval"] == 300
        assert info["firmware"]["product-uid"] == "product-1"

    @pytest.mark.asyncio
    async def test_info_without_firmware(self, machine, firmware):
        firmware.load.side_effect = ProbeError("no product-uid")

        info = await machine.info()

        assert info["firmware"] is None


@pytest.mark.unit
class TestRun:
    """Test the background task."""

    @pytest.mark.asyncio
    async def test_stop_parked_machine(self, store, machine):
        store.settings.polling.enabled = False
        task = asyncio.create_task(machine.run())
        await asyncio.sleep(0.01)

        machine.stop()
        await asyncio.wait_for(task, timeout=1)

        assert machine.current_state is AgentState.PARK

    @pytest.mark.asyncio
    async def test_local_install_wakes_parked_machine(
        self, store, machine, registry, rebooter, sample_package
    ):
        """A parked machine runs a local install through to reboot."""
        # Arrange
        store.settings.polling.enabled = False
        task = asyncio.create_task(machine.run())
        await asyncio.sleep(0.01)
        package_path, _ = sample_package

        # Act
        accepted, _ = await machine.local_install(package_path)
        await asyncio.wait_for(task, timeout=2)

        # Assert
        assert accepted is True
        registry.install.assert_awaited_once()
        rebooter.reboot.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_probe_request_preempts_poll_wait(self, store, machine, client):
        store.record_probe_success(T0)
        task = asyncio.create_task(machine.run())
        await asyncio.sleep(0.01)
        assert machine.current_state is AgentState.POLL

        result = await machine.probe()
        await asyncio.sleep(0.01)

        assert result.update_available is False
        assert machine.current_state is AgentState.POLL
        machine.stop()
        await asyncio.wait_for(task, timeout=1)
