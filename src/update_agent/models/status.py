"""Agent state enum."""

from enum import Enum


class AgentState(str, Enum):
    """Update state machine states.

    State transitions:
    park ←→ idle → poll → probe → download → install → reboot
              ↑              ↓         ↓          ↓         ↓
              └──────────────┴─────────┴──────────┴─────────┘
    """

    PARK = "park"
    ENTRY_POINT = "idle"
    POLL = "poll"
    PROBE = "probe"
    DOWNLOAD = "download"
    INSTALL = "install"
    REBOOT = "reboot"

    @property
    def is_busy(self) -> bool:
        """True while an update activity (download/install) is running."""
        return self in (AgentState.DOWNLOAD, AgentState.INSTALL)
