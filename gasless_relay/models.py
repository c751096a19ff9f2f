"""
Data models for the gasless relay SDK.
"""
from enum import Enum
from typing import Dict, Any, Optional, List, Union, Annotated

from pydantic import BaseModel, ConfigDict, Field, BeforeValidator, PlainSerializer
from web3 import Web3

from .exceptions import RelayError

UINT256_MAX = 2 ** 256 - 1


def _to_checksum_address(value: Any) -> str:
    if isinstance(value, bytes) and len(value) == 20:
        value = "0x" + value.hex()
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"not a valid address: {value!r}")
    return Web3.to_checksum_address(value)


def _to_uint256(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("booleans are not uint256 values")
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"not an integer: {value!r}")
    if not isinstance(value, int):
        raise ValueError(f"expected an integer, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"{value} is out of uint256 range")
    return value


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(text)
        except ValueError:
            raise ValueError(f"not a hex string: {value!r}")
    raise ValueError(f"expected bytes or hex string, got {type(value).__name__}")


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


# EIP-55 checksummed 20-byte address
Address = Annotated[str, BeforeValidator(_to_checksum_address)]
# uint256, rendered as a decimal string on the wire like the forwarder's JSON clients expect
Uint256 = Annotated[int, BeforeValidator(_to_uint256), PlainSerializer(str, return_type=str, when_used="json")]
HexBytes = Annotated[bytes, BeforeValidator(_to_bytes), PlainSerializer(_hex, return_type=str, when_used="json")]


class Domain(BaseModel):
    """EIP-712 domain binding signatures to one forwarder deployment"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = "MinimalForwarder"
    version: str = "0.0.1"
    chain_id: int = Field(..., alias="chainId")
    verifying_contract: Address = Field(..., alias="verifyingContract")


class ForwardRequest(BaseModel):
    """
    A meta-transaction: ``from_`` authorizes sending ``value`` and up to
    ``gas`` to ``to`` with calldata ``data``, consuming ``nonce``.

    The signer field is named ``from`` on the wire.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: Address = Field(..., alias="from")
    to: Address
    value: Uint256 = 0
    gas: Uint256
    nonce: Uint256
    data: HexBytes = b""

    def as_tuple(self) -> tuple:
        """Positional form used by the forwarder contract ABI"""
        return (self.from_, self.to, self.value, self.gas, self.nonce, self.data)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict with the wire field names"""
        return self.model_dump(mode="json", by_alias=True)


class SignedRequest(BaseModel):
    """A ForwardRequest plus the signer's EIP-712 signature"""
    model_config = ConfigDict(frozen=True)

    request: ForwardRequest
    signature: HexBytes


class TargetAction(BaseModel):
    """Already-encoded call on a target contract"""
    to: Address
    data: HexBytes
    value: Optional[Uint256] = None
    gas: Optional[Uint256] = None


class BuiltRequest(BaseModel):
    """Unsigned request with the digest and wallet typed data the signer needs"""
    request: ForwardRequest
    signing_payload: HexBytes
    typed_data: Dict[str, Any]


class Verification(BaseModel):
    """Result of an advisory signature and nonce check"""
    ok: bool
    reason: Optional[RelayError] = None
    detail: Optional[str] = None
    recovered: Optional[str] = None


class LogEntry(BaseModel):
    """Raw event log appended by the Ledger"""
    emitter: Address
    topics: List[HexBytes] = Field(default_factory=list)
    data: HexBytes = b""

    @classmethod
    def from_web3(cls, log: Any) -> "LogEntry":
        """
        Convert a web3 receipt log to a LogEntry

        Args:
            log: Log entry from a web3 transaction receipt

        Returns:
            LogEntry with the log's address, topics and data
        """
        return cls(emitter=log["address"], topics=list(log["topics"]), data=log["data"])


class ExecutionResult(BaseModel):
    """Final result of an executed request"""
    success: bool
    return_data: HexBytes = b""
    log_entries: List[LogEntry] = Field(default_factory=list)
    execution_id: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


class EventCategory(str, Enum):
    KNOWN_EVENT = "KnownEvent"
    UNKNOWN_FROM_KNOWN_EMITTER = "UnknownFromKnownEmitter"
    FROM_UNKNOWN_EMITTER = "FromUnknownEmitter"
    UNPARSEABLE = "Unparseable"


class ClassifiedEvent(BaseModel):
    """One log entry after classification against the emitter registry"""
    index: int
    emitter: Optional[str] = None
    category: EventCategory
    label: Optional[str] = None
    name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    decode_error: Optional[str] = None
    topics: Optional[List[str]] = None
    data: Optional[str] = None


class Outcome(str, Enum):
    SUCCESS = "Success"
    REJECTED = "Rejected"


class RelayOutcome(BaseModel):
    """
    Structured result of a relay attempt.

    ``submitted`` is True once the state-changing call left this process;
    such a relay must not be retried with the same signed request.
    """
    outcome: Outcome
    reason: Optional[RelayError] = None
    detail: Optional[str] = None
    result: Optional[ExecutionResult] = None
    classified_events: List[ClassifiedEvent] = Field(default_factory=list)
    execution_id: Optional[str] = None
    submitted: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @classmethod
    def rejected(
        cls,
        reason: RelayError,
        detail: str,
        submitted: bool = False,
        execution_id: Optional[str] = None
    ) -> "RelayOutcome":
        return cls(
            outcome=Outcome.REJECTED,
            reason=reason,
            detail=detail,
            submitted=submitted,
            execution_id=execution_id
        )


class ExecutionState(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


class ExecutionStatus(BaseModel):
    """Status of a previously submitted execution, looked up by its id"""
    execution_id: str
    state: ExecutionState
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    log_entries: List[LogEntry] = Field(default_factory=list)
    classified_events: List[ClassifiedEvent] = Field(default_factory=list)


LogInput = Union[LogEntry, Dict[str, Any]]
