from __future__ import annotations


class BridgeError(Exception):
    """Base error for the NEA Smart bridge."""


class AuthError(BridgeError):
    """Full login rejected; the configured credentials are wrong."""


class RefreshExpired(BridgeError):
    """The refresh credential itself is no longer accepted."""


class NetworkError(BridgeError):
    """Transport-level failure talking to the cloud."""


class SessionExpired(BridgeError):
    """A data call was answered with 401; the access credential is stale."""


class ParseError(BridgeError):
    """Cloud payload does not have the expected shape."""


class ZoneNotFound(BridgeError):
    def __init__(self, zone_id: str):
        super().__init__(f"unknown zone {zone_id}")
        self.zone_id = zone_id


class UnsupportedField(BridgeError):
    def __init__(self, field: str):
        super().__init__(f"field {field!r} is not commandable")
        self.field = field


class OutOfRange(BridgeError):
    def __init__(self, value: float, low: float, high: float):
        super().__init__(f"{value} outside [{low}, {high}]")
        self.value = value
        self.low = low
        self.high = high


class CommandRejected(BridgeError):
    """The cloud did not accept a command, or the bridge is shutting down."""


class BusDisconnected(BridgeError):
    """MQTT broker connection is down; nothing is queued locally."""


class InvalidCommand(BridgeError):
    """Command value cannot be interpreted for the target field."""
