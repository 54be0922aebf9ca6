"""
Exception Hierarchy for the AIoT MQTT device client.

Derivation failures are split by cause so the connection manager can
decide what is worth retrying:
- `InvalidIdentityError`: caller-supplied configuration is unusable.
- `SigningFailureError`: the HMAC primitive failed for this attempt.
"""
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_IDENTITY = "invalid_identity"
    SIGNING_FAILURE = "signing_failure"
    INVALID_CONFIG = "invalid_config"


class AiotError(Exception):
    """Base exception for all errors raised by this package."""

    def __init__(self, message: str, kind: ErrorKind):
        self.message = message
        self.kind = kind
        super().__init__(message)


class CredentialError(AiotError):
    """Connect credentials could not be derived. Never carries the device secret."""


class InvalidIdentityError(CredentialError):
    def __init__(self, message: str):
        super().__init__(message, ErrorKind.INVALID_IDENTITY)


class SigningFailureError(CredentialError):
    def __init__(self, message: str):
        super().__init__(message, ErrorKind.SIGNING_FAILURE)


class ConfigError(AiotError):
    """The configuration file or environment holds a malformed value."""

    def __init__(self, message: str):
        super().__init__(message, ErrorKind.INVALID_CONFIG)
