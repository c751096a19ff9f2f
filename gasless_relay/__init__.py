"""
Gasless relay SDK: EIP-712 forward requests, replay-protected relaying
through a MinimalForwarder, and classification of execution logs.
"""
from .version import __version__
from .builder import DEFAULT_GAS_LIMIT, RequestBuilder
from .classifier import EmitterRegistry, KnownEmitter, ReceiptClassifier, classify
from .client import RelayClient
from .config import NetworkConfig, RelayerConfig
from .exceptions import (
    ConfigurationError, GaslessRelayError, LedgerError, LedgerRejectedError,
    LedgerUnavailableError, MalformedRequestError, RelayError, TargetActionFailedError
)
from .ledger import InMemoryLedger, Ledger, Web3Ledger
from .models import (
    BuiltRequest, ClassifiedEvent, Domain, EventCategory, ExecutionResult,
    ExecutionState, ExecutionStatus, ForwardRequest, LogEntry, Outcome,
    RelayOutcome, SignedRequest, TargetAction, Verification
)
from .relayer import Relayer
from .verifier import Verifier

__all__ = [
    "__version__",
    "DEFAULT_GAS_LIMIT",
    "RequestBuilder",
    "EmitterRegistry",
    "KnownEmitter",
    "ReceiptClassifier",
    "classify",
    "RelayClient",
    "NetworkConfig",
    "RelayerConfig",
    "ConfigurationError",
    "GaslessRelayError",
    "LedgerError",
    "LedgerRejectedError",
    "LedgerUnavailableError",
    "MalformedRequestError",
    "RelayError",
    "TargetActionFailedError",
    "InMemoryLedger",
    "Ledger",
    "Web3Ledger",
    "BuiltRequest",
    "ClassifiedEvent",
    "Domain",
    "EventCategory",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "ForwardRequest",
    "LogEntry",
    "Outcome",
    "RelayOutcome",
    "SignedRequest",
    "TargetAction",
    "Verification",
    "Relayer",
    "Verifier",
]
