"""Pydantic models for HTTP API responses."""

from typing import Optional

from pydantic import BaseModel, Field

from update_agent.models.base import KebabModel
from update_agent.models.status import AgentState


class ProbeResult(KebabModel):
    """POST /probe response when the agent is not busy.

    Example:
        {"update-available": false, "try-again-in": 300}
    """

    update_available: bool = Field(..., description="An applicable update was found")
    try_again_in: Optional[int] = Field(
        None, ge=0, description="Seconds until the server wants another probe"
    )


class AgentStatus(KebabModel):
    """Busy flag and current state.

    Returned by POST /probe (202) and POST /local_install.

    Example:
        {"busy": true, "current-state": "download"}
    """

    busy: bool = Field(..., description="A download or install is running")
    current_state: AgentState = Field(..., description="Current state machine state")


class MessageResponse(BaseModel):
    """Success message for command endpoints."""

    message: str


class ErrorResponse(BaseModel):
    """Error message for rejected commands."""

    error: str


class LogEntry(BaseModel):
    """One buffered log record served by /log."""

    level: str = Field(..., description="error, warning, info, debug or trace")
    message: str
    time: str = Field(..., description="ISO-8601 UTC timestamp")
    data: dict[str, str] = Field(default_factory=dict)


class InfoResponse(BaseModel):
    """GET /info response."""

    version: str = Field(..., description="Agent version")
    config: dict = Field(..., description="Effective settings with runtime counters")
    firmware: Optional[dict] = Field(None, description="Firmware metadata snapshot")
