"""
Error taxonomy for the engine.

Internals raise these; public operations catch them and return a result
object carrying `error` and `error_kind` instead of propagating.

- NeedsDeposit: the account has no collateral. User action required.
- SigningFailure: a signature was declined or could not be verified.
  KeyStoreFailure: the stored agent key is unreadable (wrong passphrase,
  corrupt or inaccessible file).
- ExchangeRejection: the exchange refused the action. Reason kept verbatim.
- NetworkFailure: timeout / connectivity. Only reads are retried.
- InvalidRequest: rejected locally before anything was sent.
"""

from enum import Enum


class ErrorKind(str, Enum):
    NEEDS_DEPOSIT = "needs_deposit"
    SIGNING_FAILURE = "signing_failure"
    EXCHANGE_REJECTION = "exchange_rejection"
    NETWORK_FAILURE = "network_failure"
    INVALID_REQUEST = "invalid_request"


class EngineError(Exception):
    """Base class for all engine errors."""
    kind: ErrorKind = ErrorKind.EXCHANGE_REJECTION

    @property
    def retryable(self) -> bool:
        return False


class NeedsDeposit(EngineError):
    kind = ErrorKind.NEEDS_DEPOSIT


class SigningFailure(EngineError):
    kind = ErrorKind.SIGNING_FAILURE

    @property
    def retryable(self) -> bool:
        return True


class KeyStoreFailure(SigningFailure):
    """The agent key record exists but cannot be read or written."""

    @property
    def retryable(self) -> bool:
        return False


class ExchangeRejection(EngineError):
    kind = ErrorKind.EXCHANGE_REJECTION


class NetworkFailure(EngineError):
    kind = ErrorKind.NETWORK_FAILURE

    @property
    def retryable(self) -> bool:
        return True


class InvalidRequest(EngineError):
    kind = ErrorKind.INVALID_REQUEST


# Substrings of exchange error text that mean "no account / no collateral"
DEPOSIT_REQUIRED_MARKERS = (
    "Must deposit before performing actions",
    "does not exist",
)


def is_deposit_required(message: str) -> bool:
    return any(marker in message for marker in DEPOSIT_REQUIRED_MARKERS)
