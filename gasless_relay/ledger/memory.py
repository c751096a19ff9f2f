"""
In-memory Ledger.

A reference Ledger with the same contract as the on-chain forwarder: it
keeps a nonce table per signer, verifies EIP-712 signatures through the
codec, and runs registered target handlers. It has no external
dependencies and is used for tests and local development.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from eth_account import Account
from eth_utils import keccak
from web3 import Web3

from .. import codec
from ..exceptions import (
    LedgerRejectedError, TargetActionFailedError, MalformedRequestError, RelayError
)
from ..models import (
    Domain, ForwardRequest, ExecutionResult, ExecutionStatus, ExecutionState, LogEntry
)
from .base import Ledger, validate_execution_id

logger = logging.getLogger(__name__)

# handler(sender, value, data) -> (return_data, log_entries); raising means the action faulted.
# A handler may also expose view(data) -> return_data for read-only calls.
TargetHandler = Callable[[str, int, bytes], Tuple[bytes, List[LogEntry]]]


class InMemoryLedger(Ledger):
    """
    Serializing, process-local Ledger.

    All check-and-increment steps run under one lock, so concurrent
    executions of requests sharing a nonce admit exactly one of them.
    """

    def __init__(self, domain: Domain, targets: Optional[Dict[str, TargetHandler]] = None):
        """
        Initialize the ledger.

        Args:
            domain: Domain the ledger verifies signatures against
            targets: Optional mapping of target address to handler
        """
        self.domain = domain
        self._nonces: Dict[str, int] = {}
        self._targets: Dict[str, TargetHandler] = {}
        self._executions: Dict[str, ExecutionStatus] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        for address, handler in (targets or {}).items():
            self.register_target(address, handler)

    def register_target(self, address: str, handler: TargetHandler) -> None:
        """Route calls to ``address`` to ``handler``."""
        self._targets[Web3.to_checksum_address(address)] = handler

    def get_nonce(self, identity: str) -> int:
        if not Web3.is_address(identity):
            raise MalformedRequestError(f"Invalid signer address: {identity!r}")
        with self._lock:
            return self._nonces.get(Web3.to_checksum_address(identity), 0)

    def verify(self, request: ForwardRequest, signature: bytes) -> bool:
        """Read-only equivalent of the forwarder's ``verify`` view."""
        with self._lock:
            return (
                self._signature_matches(request, signature)
                and self._nonces.get(request.from_, 0) == request.nonce
            )

    def verify_and_execute(self, request: ForwardRequest, signature: bytes) -> ExecutionResult:
        with self._lock:
            if not self._signature_matches(request, signature):
                raise LedgerRejectedError(
                    RelayError.SIGNATURE_MISMATCH,
                    "signature does not match request"
                )
            expected = self._nonces.get(request.from_, 0)
            if request.nonce != expected:
                raise LedgerRejectedError(
                    RelayError.NONCE_REUSED,
                    "nonce does not match request",
                    f"expected nonce {expected}, got {request.nonce}"
                )
            # Nonce is spent before the call, like the forwarder contract
            self._nonces[request.from_] = expected + 1
            self._sequence += 1
            execution_id = self._execution_id(request)
            block_number = self._sequence

            handler = self._targets.get(request.to)
            try:
                if handler is None:
                    return_data, log_entries = b"", []
                else:
                    return_data, log_entries = handler(request.from_, request.value, request.data)
            except Exception as e:
                logger.warning(f"Target action at {request.to[:10]}... failed: {e}")
                self._executions[execution_id] = ExecutionStatus(
                    execution_id=execution_id,
                    state=ExecutionState.FAILED,
                    block_number=block_number,
                    gas_used=0
                )
                raise TargetActionFailedError(
                    f"Target action failed: {e}",
                    execution_id=execution_id,
                    submitted=True
                ) from e

            self._executions[execution_id] = ExecutionStatus(
                execution_id=execution_id,
                state=ExecutionState.SUCCESS,
                block_number=block_number,
                gas_used=request.gas,
                log_entries=list(log_entries)
            )
            logger.debug(f"Executed request {request.nonce} from {request.from_[:10]}... as {execution_id[:10]}...")
            return ExecutionResult(
                success=True,
                return_data=return_data,
                log_entries=list(log_entries),
                execution_id=execution_id,
                block_number=block_number,
                gas_used=request.gas
            )

    def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        execution_id = validate_execution_id(execution_id)
        with self._lock:
            status = self._executions.get(execution_id)
        if status is None:
            return ExecutionStatus(execution_id=execution_id, state=ExecutionState.NOT_FOUND)
        return status

    def call(self, to: str, data: bytes) -> bytes:
        """Route a read-only call to the target handler's ``view``."""
        handler = self._targets.get(Web3.to_checksum_address(to)) if Web3.is_address(to) else None
        view = getattr(handler, "view", None)
        if view is None:
            raise TargetActionFailedError(f"No readable target at {to}")
        with self._lock:
            try:
                return view(bytes(data))
            except Exception as e:
                raise TargetActionFailedError(f"Call to {to[:10]}... reverted: {e}") from e

    def _signature_matches(self, request: ForwardRequest, signature: bytes) -> bool:
        if codec.signature_defect(signature):
            return False
        try:
            recovered = Account.recover_message(
                codec.signable_message(self.domain, request),
                signature=signature
            )
        except Exception:
            return False
        return recovered == request.from_

    def _execution_id(self, request: ForwardRequest) -> str:
        digest = codec.encode(self.domain, request)
        return "0x" + keccak(digest + self._sequence.to_bytes(32, "big")).hex()
