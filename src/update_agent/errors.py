"""Error taxonomy for the update agent.

Only ConfigError is fatal to the process. Every other error is recovered by
returning the state machine to an idle-capable state.
"""


class UpdateAgentError(Exception):
    """Base class for all agent errors."""


class ConfigError(UpdateAgentError):
    """Settings file is malformed or fails validation."""


class ProbeError(UpdateAgentError):
    """Network or parse failure while probing the update server."""


class ValidationError(UpdateAgentError):
    """Update metadata does not apply to this device."""


class TransferError(UpdateAgentError):
    """Object transfer failed or the transferred bytes failed verification."""


class DownloadAborted(TransferError):
    """Download was cancelled through abort_download()."""


class InstallError(UpdateAgentError):
    """An install mode handler failed to commit an object."""


class BusyError(UpdateAgentError):
    """A control request arrived while an update activity is running."""

    def __init__(self, current_state: str):
        super().__init__(f"agent is busy: {current_state}")
        self.current_state = current_state
