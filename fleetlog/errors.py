from __future__ import annotations


class ConfigError(ValueError):
    """Invalid or incomplete configuration; fatal at startup."""


class IdentityError(ConfigError):
    """Raised when a required identity or credential fact cannot be read."""


class AddressResolutionError(ConfigError):
    """Raised when the forwarding address cannot be discovered.

    exit_status is set when the discovery command ran and failed.
    """

    def __init__(self, message: str, exit_status: int | None = None):
        super().__init__(message)
        self.exit_status = exit_status


class DeliveryError(RuntimeError):
    """Raised when a batch could not be handed off to the collection endpoint.

    code is the HTTP status code as returned by the server (None when the
    request never produced a response). body is truncated to 500 characters.
    """

    def __init__(self, message: str, *, code: str | None = None, body: str = ""):
        super().__init__(message)
        self.code = code
        self.body = body
