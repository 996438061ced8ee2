"""Exceptions raised by the realtime voice client."""


class RealtimeError(Exception):
    """Base exception for realtime client errors."""


class TransportError(RealtimeError):
    """Raised when a transport cannot be established or fails mid-flight."""

    def __init__(self, message: str, code: str = "connection_error"):
        super().__init__(message)
        self.code = code


class AuthenticationError(TransportError):
    """Raised when upstream rejects the credential."""

    def __init__(self, message: str = "Authentication failed", code: str = "authentication_error"):
        super().__init__(message, code=code)


class NotConnectedError(RealtimeError):
    """Raised when a command is issued while the connection is not open."""


class CredentialError(RealtimeError):
    """Raised when a credential provider cannot produce a token."""
