"""Update agent: embedded OTA update agent."""

__version__ = "0.1.0"
