# =============================================================================
# HyperWa -- Error Types
# =============================================================================

from __future__ import annotations


class HyperWaError(Exception):
    """Base exception for all HyperWa errors."""


class SetupError(HyperWaError):
    """Connection setup failed (auth load, version discovery, store bind)."""


class NotConnectedError(HyperWaError):
    """No live connection handle is open."""


class TransportError(HyperWaError):
    """Socket-level failure (open failed, send on a dead socket)."""


class QueryTimeoutError(TransportError):
    """A request/response query got no answer in time."""


class AuthStoreError(HyperWaError):
    """Credential state could not be read or written."""


class DisconnectError(HyperWaError):
    """Cause of a closed connection, carried in ``lastDisconnect.error``.

    Attributes:
        status_code: Protocol status code (see :class:`DisconnectReason`),
            or ``None`` when the close carried no status.
    """

    def __init__(self, message: str = "Connection closed", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class BridgeError(HyperWaError):
    """The secondary-platform bridge rejected a call."""
