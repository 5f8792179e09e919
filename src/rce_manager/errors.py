"""
Exceptions raised inside rce-manager.

None of these escape the manager's public coroutines: each is caught where
it originates, logged, and turned into a retry, a ``False`` return value or
an ``Error`` event.
"""


class RCEError(Exception):
    """Base class for every rce-manager failure."""


class AuthError(RCEError):
    """Raised when the refresh token is missing or the token exchange fails."""


class TransportError(RCEError):
    """Raised when the websocket is unavailable or a send fails."""


class CommandError(RCEError):
    """Raised when an out-of-band GraphQL call fails or its preconditions are unmet."""


class ParseError(RCEError):
    """Raised when an inbound frame or console payload is malformed."""


__all__ = [
    "RCEError",
    "AuthError",
    "TransportError",
    "CommandError",
    "ParseError",
]
