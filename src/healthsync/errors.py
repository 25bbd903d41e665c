"""Error taxonomy for the sync engine and its user-facing surfacing.

Three families mirror the three collaborators:

    AcquisitionError — reading samples from the device data source
    DeliveryError    — talking to the remote gateway
    LedgerError      — reading/writing the durable local ledger

Delivery errors are split into *permanent* failures (bad credentials or
configuration; retrying cannot help) and *retryable* ones (network trouble,
timeouts, 5xx responses).  ``ErrorInfo.from_exception`` turns any exception
into the flat record the control API and status stream publish.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class HealthStackError(Exception):
    """Root of every error raised by the sync engine."""


# ---------------------------------------------------------------------------
# Acquisition
# ---------------------------------------------------------------------------


class AcquisitionError(HealthStackError):
    """The device data source failed."""


class AcquisitionUnavailableError(AcquisitionError):
    """The data source is not available on this device."""


class AcquisitionQueryError(AcquisitionError):
    """A query against the data source failed."""


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class DeliveryError(HealthStackError):
    """Base class for gateway delivery failures."""

    #: Retrying cannot succeed until the user changes settings.
    permanent: bool = False

    @property
    def retryable(self) -> bool:
        return False


class InvalidConfigurationError(DeliveryError):
    permanent = True

    def __init__(self, message: str = "Gateway configuration is invalid") -> None:
        super().__init__(message)


class InsecureConnectionError(DeliveryError):
    permanent = True

    def __init__(
        self, message: str = "Only HTTPS connections are allowed. Please use a secure URL."
    ) -> None:
        super().__init__(message)


class AuthenticationError(DeliveryError):
    permanent = True

    def __init__(
        self, message: str = "Authentication failed. Please check your credentials."
    ) -> None:
        super().__init__(message)


class ServerError(DeliveryError):
    """Non-2xx response other than auth/timeout statuses."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Server error ({status_code}): {message}")

    @property
    def retryable(self) -> bool:
        return self.status_code >= 500


class DeliveryTimeoutError(DeliveryError):
    def __init__(self, message: str = "Request timed out. Please check your connection.") -> None:
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return True


class NetworkError(DeliveryError):
    """Transport-level failure (DNS, refused connection, reset...)."""

    @property
    def retryable(self) -> bool:
        return True


class TLSValidationError(DeliveryError):
    def __init__(self, message: str = "SSL certificate validation failed") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerError(HealthStackError):
    """The durable ledger failed."""


class LedgerSaveError(LedgerError):
    pass


class LedgerFetchError(LedgerError):
    pass


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class SyncInProgressError(HealthStackError):
    def __init__(self) -> None:
        super().__init__("A sync operation is already in progress")


# ---------------------------------------------------------------------------
# User-facing surfacing
# ---------------------------------------------------------------------------


_FRIENDLY_MESSAGES: list[tuple[type[Exception], str]] = [
    (AcquisitionUnavailableError, "Health data is not available on this device."),
    (AcquisitionQueryError, "Failed to retrieve health data from the device."),
    (InvalidConfigurationError, "Gateway configuration is invalid. Please check your settings and try again."),
    (InsecureConnectionError, "Only secure HTTPS connections are allowed. Please update your gateway URL to use HTTPS."),
    (AuthenticationError, "Authentication failed. Please verify your credentials in Settings."),
    (DeliveryTimeoutError, "The request timed out. Please check your internet connection and try again."),
    (NetworkError, "Network error. Please check your internet connection."),
    (TLSValidationError, "SSL certificate validation failed. The server's security certificate could not be verified."),
    (LedgerSaveError, "Failed to save data. Your device may be low on storage."),
    (LedgerFetchError, "Failed to retrieve data from local storage."),
    (SyncInProgressError, "A sync operation is already in progress."),
]

_RECOVERY_SUGGESTIONS: list[tuple[type[Exception], str]] = [
    (AcquisitionUnavailableError, "Sync requires a device with health data support."),
    (AcquisitionQueryError, "Try restarting the app or your device."),
    (InvalidConfigurationError, "Go to Settings to configure your gateway."),
    (InsecureConnectionError, "Update your gateway URL to start with 'https://'."),
    (AuthenticationError, "Verify your API key or username/password in Settings."),
    (ServerError, "Contact your system administrator for assistance."),
    (DeliveryTimeoutError, "Try again with a better internet connection."),
    (NetworkError, "Check your internet connection and try again."),
    (TLSValidationError, "Contact your system administrator to verify the server certificate."),
    (LedgerSaveError, "Free up storage space on your device and try again."),
    (LedgerFetchError, "Try restarting the app."),
    (SyncInProgressError, "Wait for the current sync to finish."),
]


def _lookup(table: list[tuple[type[Exception], str]], exc: BaseException) -> str | None:
    for cls, text in table:
        if isinstance(exc, cls):
            return text
    return None


def should_retry(exc: BaseException) -> bool:
    """Return True for transient failures worth retrying."""
    return isinstance(exc, DeliveryError) and exc.retryable


def needs_settings(exc: BaseException) -> bool:
    """Return True when the user must change settings to recover."""
    return isinstance(exc, (InvalidConfigurationError, InsecureConnectionError, AuthenticationError))


@dataclass(frozen=True)
class ErrorInfo:
    """Flat, presentation-ready description of a failure.

    Attributes:
        message:             User-friendly message.
        underlying_error:    ``repr`` of the original exception for diagnostics.
        recovery_suggestion: What the user can do about it, if anything.
        retryable:           True for transient network failures.
        needs_settings:      True for auth/config failures.
    """

    message: str
    underlying_error: str | None = None
    recovery_suggestion: str | None = None
    retryable: bool = False
    needs_settings: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        if isinstance(exc, ServerError):
            message = f"Server error ({exc.status_code}): {exc.message}."
        else:
            message = _lookup(_FRIENDLY_MESSAGES, exc) or str(exc) or type(exc).__name__
        return cls(
            message=message,
            underlying_error=f"{type(exc).__name__}: {exc}",
            recovery_suggestion=_lookup(_RECOVERY_SUGGESTIONS, exc),
            retryable=should_retry(exc),
            needs_settings=needs_settings(exc),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "underlying_error": self.underlying_error,
            "recovery_suggestion": self.recovery_suggestion,
            "retryable": self.retryable,
            "needs_settings": self.needs_settings,
        }
