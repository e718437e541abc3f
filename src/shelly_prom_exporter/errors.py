from __future__ import annotations


class ShellyClientError(Exception):
    """Base error for Shelly device communication failures."""


class ShellyTimeout(ShellyClientError):
    """Timeout while communicating with the device."""


class ShellyConnectionError(ShellyClientError):
    """Network connection to the device failed."""


class ShellyHandshakeError(ShellyClientError):
    """WebSocket handshake was rejected."""


class ShellyAuthenticationError(ShellyClientError):
    """Authentication challenge could not be processed."""


class ShellyCancelledError(ShellyClientError):
    """Operation aborted by the handler's cancellation scope."""
