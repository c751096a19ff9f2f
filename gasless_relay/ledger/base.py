"""
Ledger interface.

The Ledger is the durable executor that owns per-signer nonce state and
runs the target action. This module defines the contract the rest of the
SDK relies on, regardless of whether the Ledger is an on-chain forwarder
contract or the in-memory reference implementation.
"""
import re
from abc import ABC, abstractmethod

from ..exceptions import MalformedRequestError
from ..models import ForwardRequest, ExecutionResult, ExecutionStatus

_EXECUTION_ID = re.compile(r"^0x[0-9a-fA-F]{64}$")


def validate_execution_id(execution_id: str) -> str:
    """
    Check that an execution id is a 32-byte 0x-prefixed hex string.

    Raises:
        MalformedRequestError: If it is not
    """
    if not isinstance(execution_id, str) or not _EXECUTION_ID.match(execution_id):
        raise MalformedRequestError(f"Invalid execution id: {execution_id!r}")
    return execution_id.lower()


class Ledger(ABC):
    """
    Abstract base class for Ledger implementations.

    Implementations must make the signature check, the nonce comparison and
    the nonce increment of ``verify_and_execute`` one indivisible step.
    """

    @abstractmethod
    def get_nonce(self, identity: str) -> int:
        """
        Read the next nonce for an identity.

        Args:
            identity: Signer address

        Returns:
            Next nonce the Ledger will accept for this signer

        Raises:
            LedgerUnavailableError: If the Ledger cannot be read
        """
        pass

    @abstractmethod
    def verify(self, request: ForwardRequest, signature: bytes) -> bool:
        """
        Read-only check of a signed request, without consuming its nonce.

        Returns:
            True if ``verify_and_execute`` would accept the signature and nonce right now

        Raises:
            LedgerUnavailableError: If the Ledger cannot be read
        """
        pass

    @abstractmethod
    def verify_and_execute(self, request: ForwardRequest, signature: bytes) -> ExecutionResult:
        """
        Atomically verify a signed request, consume its nonce and execute it.

        Args:
            request: Forward request
            signature: Signer's EIP-712 signature over the request

        Returns:
            Final, confirmed execution result

        Raises:
            LedgerRejectedError: If the signature or nonce does not match; nonce state is unchanged
            TargetActionFailedError: If the target action faulted
            LedgerUnavailableError: If no final result could be obtained
        """
        pass

    @abstractmethod
    def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        """
        Look up a previously submitted execution.

        Args:
            execution_id: Identifier returned in ExecutionResult.execution_id

        Returns:
            Execution status with the raw log entries

        Raises:
            MalformedRequestError: If the execution id is not a 32-byte hex string
            LedgerUnavailableError: If the Ledger cannot be read
        """
        pass

    @abstractmethod
    def call(self, to: str, data: bytes) -> bytes:
        """
        Run a read-only call against a target contract.

        Args:
            to: Target address
            data: ABI-encoded calldata

        Returns:
            Raw return data

        Raises:
            TargetActionFailedError: If the call reverted (``submitted`` is False)
            LedgerUnavailableError: If the Ledger cannot be read
        """
        pass

    def close(self) -> None:
        """Release any open connections or resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
