from typing import Optional


class StoreError(Exception):
    """Base class for storefront errors."""


class ConfigurationError(StoreError):
    """A required secret or setting is missing or unsafe."""


class IntegrationError(StoreError):
    """A third-party API answered with a non-success response."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class SignatureError(StoreError):
    """An inbound gateway message failed its authenticity check."""
