"""Exception hierarchy for the bridge.

Every error raised by bridge code derives from ``BridgeError`` so callers at
the event-loop boundary can log and drop without catching unrelated faults.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ConfigError(BridgeError):
    """Configuration is missing, malformed or inconsistent.

    Raised at startup only; the process refuses to start.

    Attributes:
        setting: Name of the offending setting (env var or YAML path)

    """

    def __init__(self, message: str, setting: str = "") -> None:
        """Initialize config error with message and setting name."""
        self.setting: str = setting
        suffix = f" ({setting})" if setting else ""
        super().__init__(f"{message}{suffix}")


class DeviceConnectionError(BridgeError):
    """A device link could not be established or was lost.

    Attributes:
        device: Device name
        reason: Specific failure reason

    """

    def __init__(self, device: str, reason: str) -> None:
        """Initialize device connection error."""
        self.device: str = device
        self.reason: str = reason
        super().__init__(f"Device '{device}' connection error: {reason}")


class CommandSendError(BridgeError):
    """A forwarded command was rejected by or failed on the device.

    Attributes:
        device: Device name
        reason: Specific failure reason

    """

    def __init__(self, device: str, reason: str) -> None:
        """Initialize command send error."""
        self.device: str = device
        self.reason: str = reason
        super().__init__(f"Command to device '{device}' failed: {reason}")


class PayloadDecodeError(BridgeError):
    """Inbound broker payload is not a JSON object.

    Attributes:
        reason: Specific failure reason
        payload_preview: First 64 bytes of the payload

    """

    def __init__(self, reason: str, payload: bytes = b"") -> None:
        """Initialize payload decode error."""
        self.reason: str = reason
        self.payload_preview: bytes = payload[:64] if payload else b""
        super().__init__(f"Payload decode failed: {reason}")
