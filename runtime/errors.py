from __future__ import annotations


class ConfigurationError(RuntimeError):
    """A required credential or endpoint is missing. Not retried."""


class UpstreamError(RuntimeError):
    """A remote model or service failed: bad status, malformed payload, timeout or empty answer."""

    def __init__(self, message: str, *, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider
