"""
On-chain Ledger backed by a MinimalForwarder contract.
"""
import logging
import urllib.parse
import os
from typing import Dict, Any, Optional, Protocol, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.types import RPCEndpoint
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_bytes
from eth_account import Account

from .._rate_limited_log import rate_limited_log
from ..exceptions import (
    ConfigurationError, LedgerRejectedError, LedgerUnavailableError,
    MalformedRequestError, TargetActionFailedError, RelayError
)
from ..models import ForwardRequest, ExecutionResult, ExecutionStatus, ExecutionState, LogEntry
from .base import Ledger, validate_execution_id

logger = logging.getLogger(__name__)

# Revert reason the forwarder uses for both a bad signature and a stale nonce
FORWARDER_MISMATCH_REASON = "signature does not match request"

# Prefix of OpenZeppelin ECDSA reverts for malformed or malleable signatures
ECDSA_REVERT_PREFIX = "ECDSA:"

DEFAULT_RELAY_GAS = 300000

_FORWARD_REQUEST_COMPONENTS = [
    {"internalType": "address", "name": "from", "type": "address"},
    {"internalType": "address", "name": "to", "type": "address"},
    {"internalType": "uint256", "name": "value", "type": "uint256"},
    {"internalType": "uint256", "name": "gas", "type": "uint256"},
    {"internalType": "uint256", "name": "nonce", "type": "uint256"},
    {"internalType": "bytes", "name": "data", "type": "bytes"},
]


class Signer(Protocol):
    """Protocol for custom relayer signers"""
    address: str

    def sign_transaction(self, transaction_dict: Dict[str, Any]) -> Any:
        """Sign transaction and return signed tx object"""
        ...


class Web3Ledger(Ledger):
    """
    Ledger that relays through a deployed MinimalForwarder.

    The relayer account pays for gas. Every request is simulated with
    ``eth_call`` first, so signature/nonce rejections and target reverts
    are reported without spending anything; only requests that would
    succeed are sent. The forwarder does not revert when the target call
    fails, so after mining the target's result is read back from the
    transaction trace, or by replaying the call on the pre-state when the
    transaction was first in its block.
    """

    FORWARDER_ABI = [
        {
            "inputs": [{"internalType": "address", "name": "from", "type": "address"}],
            "name": "getNonce",
            "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
            "stateMutability": "view",
            "type": "function"
        },
        {
            "inputs": [
                {
                    "components": _FORWARD_REQUEST_COMPONENTS,
                    "internalType": "struct MinimalForwarder.ForwardRequest",
                    "name": "req",
                    "type": "tuple"
                },
                {"internalType": "bytes", "name": "signature", "type": "bytes"}
            ],
            "name": "verify",
            "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
            "stateMutability": "view",
            "type": "function"
        },
        {
            "inputs": [
                {
                    "components": _FORWARD_REQUEST_COMPONENTS,
                    "internalType": "struct MinimalForwarder.ForwardRequest",
                    "name": "req",
                    "type": "tuple"
                },
                {"internalType": "bytes", "name": "signature", "type": "bytes"}
            ],
            "name": "execute",
            "outputs": [
                {"internalType": "bool", "name": "", "type": "bool"},
                {"internalType": "bytes", "name": "", "type": "bytes"}
            ],
            "stateMutability": "payable",
            "type": "function"
        }
    ]

    def __init__(
        self,
        rpc_url: str,
        forwarder_address: str,
        priv_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        retry_count: int = 3,
        timeout: int = 30,
        receipt_timeout: int = 120,
        poll_interval: float = 0.1
    ):
        """
        Initialize the ledger.

        Args:
            rpc_url: Ethereum RPC endpoint URL
            forwarder_address: Deployed MinimalForwarder address
            priv_key: Relayer private key (optional if signer provided)
            signer: Custom relayer signer (optional if priv_key provided)
            retry_count: Connection retries for RPC requests
            timeout: Timeout for RPC requests in seconds
            receipt_timeout: How long to wait for a receipt in seconds
            poll_interval: How often to poll for the receipt in seconds

        Raises:
            ConfigurationError: If the URL is insecure or the forwarder address is invalid

        Note:
            Without a key or signer the ledger is read-only: nonces and
            execution status work, relaying raises ConfigurationError.
        """
        validate_rpc_url(rpc_url)
        if not Web3.is_address(forwarder_address):
            raise ConfigurationError(f"Invalid forwarder address: {forwarder_address!r}")

        self.rpc_url = rpc_url
        self.forwarder_address = Web3.to_checksum_address(forwarder_address)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

        # Connection-level retries only: a replayed eth_sendRawTransaction is never wanted
        self.session = requests.Session()
        retries = Retry(
            total=retry_count,
            connect=retry_count,
            read=0,
            backoff_factor=0.5,
            status_forcelist=[502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False
        )
        self.session.mount("http://", HTTPAdapter(max_retries=retries))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))

        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}, session=self.session))
        self.contract = self.w3.eth.contract(address=self.forwarder_address, abi=self.FORWARDER_ABI)

        self.signer: Optional[Signer] = signer
        if priv_key:
            self.signer = Account.from_key(priv_key)

    @property
    def relayer_address(self) -> Optional[str]:
        return self.signer.address if self.signer else None

    def assert_chain_id(self, expected_chain_id: int) -> None:
        """
        Check that the RPC endpoint serves the chain the domain was built for.

        Raises:
            ConfigurationError: If the chain IDs differ
            LedgerUnavailableError: If the chain ID cannot be read
        """
        try:
            actual = self.w3.eth.chain_id
        except Exception as e:
            raise LedgerUnavailableError(f"Failed to read chain ID: {e}") from e
        if actual != expected_chain_id:
            raise ConfigurationError(
                f"Chain ID mismatch: domain uses {expected_chain_id}, RPC endpoint serves {actual}"
            )

    def get_nonce(self, identity: str) -> int:
        if not Web3.is_address(identity):
            raise MalformedRequestError(f"Invalid signer address: {identity!r}")
        try:
            return int(self.contract.functions.getNonce(Web3.to_checksum_address(identity)).call())
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(f"Failed to read nonce: {e}") from e

    def verify(self, request: ForwardRequest, signature: bytes) -> bool:
        """Call the forwarder's ``verify`` view."""
        try:
            return bool(self.contract.functions.verify(request.as_tuple(), signature).call())
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(f"Failed to verify request: {e}") from e

    def verify_and_execute(self, request: ForwardRequest, signature: bytes) -> ExecutionResult:
        if not self.signer:
            raise ConfigurationError("Relaying requires a relayer private key or signer")

        relayer = self.signer.address
        execute = self.contract.functions.execute(request.as_tuple(), signature)
        call_params = {"from": relayer, "value": request.value}

        # 1. Simulate to surface rejections and target reverts without spending gas
        try:
            success, return_data = execute.call(call_params)
        except ContractLogicError as e:
            raise self._revert_error(e) from e
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(f"Failed to simulate request: {e}", submitted=False) from e

        if not success:
            raise TargetActionFailedError(
                "Target action reverted in simulation",
                return_data=bytes(return_data),
                submitted=False
            )

        # 2. Estimate gas with a buffer, falling back to a fixed default
        try:
            gas = int(execute.estimate_gas(call_params) * 1.1)
            logger.debug(f"Estimated relay gas: {gas}")
        except Exception as e:
            gas = max(DEFAULT_RELAY_GAS, request.gas * 2)
            logger.warning(f"Gas estimation failed, using default: {gas}. Error: {e}")

        # 3. Build and sign
        try:
            tx = execute.build_transaction({
                "from": relayer,
                "value": request.value,
                "gas": gas,
                "nonce": self.w3.eth.get_transaction_count(relayer, "pending"),
                "gasPrice": self.w3.eth.gas_price,
            })
            signed_tx = self.signer.sign_transaction(tx)
        except (requests.RequestException, Web3Exception, OSError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(f"Failed to build relay transaction: {e}", submitted=False) from e

        # 4. Send; from here on the request may be spent
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except (requests.RequestException, OSError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(
                f"Connection lost while sending relay transaction: {e}", submitted=True
            ) from e
        except (Web3Exception, ValueError) as e:
            # The node answered and refused the transaction
            raise LedgerUnavailableError(f"Node rejected relay transaction: {e}", submitted=False) from e

        execution_id = _to_hex(tx_hash)
        logger.info(f"Relay transaction sent: {execution_id}")

        # 5. Wait for the durable result
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.receipt_timeout,
                poll_latency=self.poll_interval
            )
        except TimeExhausted as e:
            raise LedgerUnavailableError(
                f"No receipt after {self.receipt_timeout}s",
                submitted=True,
                execution_id=execution_id
            ) from e
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(
                f"Failed while waiting for receipt: {e}",
                submitted=True,
                execution_id=execution_id
            ) from e

        if receipt["status"] != 1:
            raise TargetActionFailedError(
                f"Relay transaction {execution_id} reverted",
                execution_id=execution_id,
                submitted=True
            )

        # 6. The receipt only says the forwarder ran; confirm the target call itself
        outcome = self._traced_outcome(execution_id)
        if outcome is None:
            outcome = self._replayed_outcome(execute, call_params, receipt)
        if outcome is None:
            raise LedgerUnavailableError(
                f"Relay transaction {execution_id} was mined but its target outcome could not be confirmed",
                submitted=True,
                execution_id=execution_id
            )
        success, return_data = outcome
        if not success:
            raise TargetActionFailedError(
                f"Target action failed in relay transaction {execution_id}",
                return_data=return_data,
                execution_id=execution_id,
                submitted=True
            )

        logger.info(
            f"Relay transaction confirmed: {execution_id} "
            f"(block {receipt['blockNumber']}, gas used {receipt['gasUsed']})"
        )
        return ExecutionResult(
            success=True,
            return_data=bytes(return_data),
            log_entries=[LogEntry.from_web3(log) for log in receipt["logs"]],
            execution_id=execution_id,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"]
        )

    def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        execution_id = validate_execution_id(execution_id)
        try:
            try:
                receipt = self.w3.eth.get_transaction_receipt(execution_id)
            except TransactionNotFound:
                try:
                    self.w3.eth.get_transaction(execution_id)
                except TransactionNotFound:
                    return ExecutionStatus(execution_id=execution_id, state=ExecutionState.NOT_FOUND)
                return ExecutionStatus(execution_id=execution_id, state=ExecutionState.PENDING)
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(f"Failed to fetch execution status: {e}") from e

        state = ExecutionState.SUCCESS if receipt["status"] == 1 else ExecutionState.FAILED
        if state == ExecutionState.SUCCESS:
            # Without a trace only the forwarder's own success is known
            outcome = self._traced_outcome(execution_id)
            if outcome is not None and not outcome[0]:
                state = ExecutionState.FAILED

        return ExecutionStatus(
            execution_id=_to_hex(receipt["transactionHash"]),
            state=state,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            log_entries=[LogEntry.from_web3(log) for log in receipt["logs"]]
        )

    def call(self, to: str, data: bytes) -> bytes:
        if not Web3.is_address(to):
            raise MalformedRequestError(f"Invalid target address: {to!r}")
        try:
            return bytes(self.w3.eth.call({"to": Web3.to_checksum_address(to), "data": bytes(data)}))
        except ContractLogicError as e:
            raise TargetActionFailedError(f"Call to {to[:10]}... reverted: {e}") from e
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            self._report_unavailable(e)
            raise LedgerUnavailableError(f"Failed to call {to[:10]}...: {e}") from e

    def close(self) -> None:
        self.session.close()

    def _traced_outcome(self, execution_id: str) -> Optional[Tuple[bool, bytes]]:
        """
        Read ``execute``'s return value from a call trace of the mined transaction.

        Returns:
            (success, return_data), or None if the node cannot trace it
        """
        try:
            response = self.w3.provider.make_request(
                RPCEndpoint("debug_traceTransaction"),
                [execution_id, {"tracer": "callTracer"}]
            )
        except (requests.RequestException, Web3Exception, OSError, ValueError) as e:
            logger.debug(f"Trace of {execution_id[:10]}... unavailable: {e}")
            return None

        trace = response.get("result") if isinstance(response, dict) else None
        if not isinstance(trace, dict) or not isinstance(trace.get("output"), str) or trace.get("error"):
            logger.debug(f"Trace of {execution_id[:10]}... unavailable: {response!r:.200}")
            return None
        try:
            success, return_data = abi_decode(["bool", "bytes"], to_bytes(hexstr=trace["output"]))
        except (DecodingError, ValueError) as e:
            logger.debug(f"Could not decode traced output of {execution_id[:10]}...: {e}")
            return None
        return bool(success), bytes(return_data)

    def _replayed_outcome(self, execute, call_params: Dict[str, Any], receipt) -> Optional[Tuple[bool, bytes]]:
        """
        Replay ``execute`` on the parent block's state.

        That state is the transaction's exact pre-state only when it was the
        first transaction in its block; otherwise None is returned.
        """
        if receipt.get("transactionIndex") != 0:
            return None
        try:
            success, return_data = execute.call(call_params, block_identifier=receipt["blockNumber"] - 1)
        except (ContractLogicError, requests.RequestException, Web3Exception, OSError, ValueError) as e:
            logger.debug(f"Replay on block {receipt['blockNumber'] - 1} failed: {e}")
            return None
        return bool(success), bytes(return_data)

    def _revert_error(self, error: ContractLogicError) -> Exception:
        message = str(error)
        if ECDSA_REVERT_PREFIX in message:
            logger.warning(f"Forwarder refused signature: {message}")
            return LedgerRejectedError(RelayError.SIGNATURE_MISMATCH, message)
        if FORWARDER_MISMATCH_REASON in message:
            # The forwarder reports signature and nonce failures alike; pre-flight passed the signature,
            # so the nonce moved underneath us
            logger.warning(f"Forwarder rejected request: {message}")
            return LedgerRejectedError(RelayError.NONCE_REUSED, message)
        logger.warning(f"Target action reverted in simulation: {message}")
        return TargetActionFailedError(f"Target action reverted: {message}", submitted=False)

    def _report_unavailable(self, error: Exception) -> None:
        rate_limited_log(f"Ledger at {self.rpc_url} unavailable: {error}", level="warning", interval=60)


def validate_rpc_url(url: str) -> None:
    """
    Validate that an RPC URL is secure.

    Args:
        url: RPC URL to validate

    Raises:
        ConfigurationError: If URL uses plain HTTP for a non-local host
    """
    parsed = urllib.parse.urlparse(url)
    host = parsed.hostname or ""
    is_local = host in ("localhost", "127.0.0.1", "::1")
    if parsed.scheme != "https" and not is_local:
        if os.environ.get("GASLESS_INSECURE_RPC") != "1":
            raise ConfigurationError(
                f"RPC URL must use https:// for security (got: {parsed.scheme}://). "
                "Set GASLESS_INSECURE_RPC=1 to allow HTTP for development."
            )


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value if str(value).startswith("0x") else "0x" + str(value)
