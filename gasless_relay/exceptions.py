"""
Exceptions for the gasless relay SDK.
"""
from enum import Enum
from typing import Optional


class RelayError(str, Enum):
    """
    Reason codes for a rejected relay.

    These are carried on ``RelayOutcome.reason`` and on every exception
    raised by the SDK so callers can map them to user-facing messages.
    """
    MALFORMED_REQUEST = "MALFORMED_REQUEST"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    NONCE_REUSED = "NONCE_REUSED"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    TARGET_ACTION_FAILED = "TARGET_ACTION_FAILED"


class GaslessRelayError(Exception):
    """Base exception for all gasless relay errors."""

    error_code: Optional[RelayError] = None

    def __init__(self, message: str, detail: Optional[str] = None):
        self.detail = detail or message
        super().__init__(message)


class MalformedRequestError(GaslessRelayError):
    """Raised when a request is missing fields or has invalid values."""
    error_code = RelayError.MALFORMED_REQUEST


class ConfigurationError(GaslessRelayError):
    """Raised when the relayer configuration is incomplete or inconsistent."""
    pass


class LedgerError(GaslessRelayError):
    """Base exception for failures reported by or talking to the Ledger."""
    pass


class LedgerUnavailableError(LedgerError):
    """
    Raised when the Ledger cannot be reached or did not return a final result.

    ``submitted`` tells whether a state-changing call may already have been
    sent. A submitted relay must never be retried blindly.
    """
    error_code = RelayError.LEDGER_UNAVAILABLE

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        submitted: bool = False,
        execution_id: Optional[str] = None
    ):
        self.submitted = submitted
        self.execution_id = execution_id
        super().__init__(message, detail)


class LedgerRejectedError(LedgerError):
    """
    Raised when the Ledger refuses a request at its atomic check step.

    ``error_code`` is the Ledger's reason. Nonce state is unchanged, and
    ``submitted`` is False unless a transaction carrying the request was sent.
    """

    def __init__(
        self,
        reason: RelayError,
        message: str,
        detail: Optional[str] = None,
        submitted: bool = False
    ):
        self.error_code = reason
        self.submitted = submitted
        super().__init__(message, detail)


class TargetActionFailedError(LedgerError):
    """
    Raised when the target action faulted after passing authorization.

    ``submitted`` is True when the attempt was recorded and spent the nonce,
    False when the fault was found before anything was sent.
    """
    error_code = RelayError.TARGET_ACTION_FAILED

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        return_data: bytes = b"",
        execution_id: Optional[str] = None,
        submitted: bool = False
    ):
        self.return_data = return_data
        self.execution_id = execution_id
        self.submitted = submitted
        super().__init__(message, detail)
