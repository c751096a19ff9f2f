"""
RelayClient - caller-facing facade over the builder, relayer and ledger.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from web3 import Web3

from .builder import DEFAULT_GAS_LIMIT, RequestBuilder
from .classifier import EmitterRegistry, ReceiptClassifier
from .config import RelayerConfig
from .exceptions import ConfigurationError, MalformedRequestError
from .ledger.base import Ledger
from .ledger.web3_ledger import Web3Ledger
from .models import (
    BuiltRequest, ClassifiedEvent, Domain, ExecutionStatus, LogInput,
    RelayOutcome, SignedRequest, TargetAction
)
from .relayer import Relayer
from .targets.nft import NFT_ABI, NFT_LABEL, decode_output, encode_call

FORWARDER_LABEL = "Forwarder"


class RelayClient:
    """
    Client for building and relaying gasless requests.

    Wires one Ledger and one Domain into a RequestBuilder, a Relayer and a
    ReceiptClassifier whose registry knows the forwarder and, when
    configured, the NFT contract.
    """

    def __init__(
        self,
        ledger: Ledger,
        domain: Domain,
        nft_address: Optional[str] = None,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        registry: Optional[EmitterRegistry] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the client.

        Args:
            ledger: Ledger to read nonces from and execute against
            domain: Forwarder domain requests are signed under
            nft_address: GaslessNFT contract (optional)
            gas_limit: Default gas ceiling for built requests
            registry: Emitter registry (defaults to forwarder plus NFT)
            logger: Optional logger
        """
        self.ledger = ledger
        self.domain = domain
        self.nft_address = Web3.to_checksum_address(nft_address) if nft_address else None
        self.logger = logger or logging.getLogger(__name__)

        if registry is None:
            registry = EmitterRegistry()
            registry.register(domain.verifying_contract, FORWARDER_LABEL)
            if self.nft_address:
                registry.register(self.nft_address, NFT_LABEL, NFT_ABI)
        self.registry = registry
        self.classifier = ReceiptClassifier(registry)
        self.builder = RequestBuilder(ledger, domain, gas_limit=gas_limit, nft_address=self.nft_address)
        self.relayer = Relayer(ledger, domain, classifier=self.classifier)
        self.logger.debug(
            f"RelayClient ready for forwarder {domain.verifying_contract[:10]}... on chain {domain.chain_id}"
        )

    @classmethod
    def from_config(cls, config: RelayerConfig, logger: Optional[logging.Logger] = None) -> "RelayClient":
        """
        Create a client backed by the on-chain forwarder.

        Args:
            config: Relayer configuration
            logger: Optional logger

        Returns:
            RelayClient over a Web3Ledger
        """
        ledger = Web3Ledger(
            rpc_url=config.rpc_url,
            forwarder_address=config.forwarder_address,
            priv_key=config.private_key(),
            receipt_timeout=config.receipt_timeout
        )
        return cls(
            ledger,
            config.domain(),
            nft_address=config.nft_address,
            gas_limit=config.gas_limit,
            logger=logger
        )

    def build_request(
        self,
        signer: str,
        target_action: TargetAction,
        value: Optional[int] = None,
        gas: Optional[int] = None
    ) -> BuiltRequest:
        return self.builder.build(signer, target_action, value=value, gas=gas)

    def build_mint(self, signer: str, to: str) -> BuiltRequest:
        return self.builder.build_mint(signer, to)

    def build_transfer(self, signer: str, to: str, token_id: int) -> BuiltRequest:
        return self.builder.build_transfer(signer, to, token_id)

    def build_approve(self, signer: str, to: str, token_id: int) -> BuiltRequest:
        return self.builder.build_approve(signer, to, token_id)

    def relay(self, signed_request: Union[SignedRequest, Dict[str, Any]]) -> RelayOutcome:
        return self.relayer.relay(signed_request)

    def classify(self, log_entries: Sequence[LogInput]) -> List[ClassifiedEvent]:
        return self.classifier.classify(log_entries)

    def get_nonce(self, identity: str) -> int:
        return self.ledger.get_nonce(identity)

    def get_execution_status(self, execution_id: str) -> ExecutionStatus:
        """
        Look up an execution and classify its logs.

        Args:
            execution_id: Identifier from a previous relay

        Returns:
            ExecutionStatus with classified_events filled in

        Raises:
            LedgerUnavailableError: If the Ledger cannot be read
        """
        status = self.ledger.get_execution_status(execution_id)
        if not status.log_entries:
            return status
        return status.model_copy(update={"classified_events": self.classify(status.log_entries)})

    def nft_info(self, address: str) -> Dict[str, Any]:
        """
        Read an owner's NFT balance and the collection's total supply.

        Args:
            address: Owner address

        Returns:
            Dictionary with the checksummed address, balance and totalSupply

        Raises:
            ConfigurationError: If no NFT contract is configured
            MalformedRequestError: If the address is invalid
            LedgerUnavailableError: If the Ledger cannot be read
        """
        if not self.nft_address:
            raise ConfigurationError("NFT contract address is not configured")
        if not isinstance(address, str) or not Web3.is_address(address):
            raise MalformedRequestError(f"Invalid owner address: {address!r}")
        owner = Web3.to_checksum_address(address)

        (balance,) = decode_output("balanceOf", self.ledger.call(self.nft_address, encode_call("balanceOf", owner)))
        (total_supply,) = decode_output("totalSupply", self.ledger.call(self.nft_address, encode_call("totalSupply")))
        return {"address": owner, "balance": balance, "totalSupply": total_supply}

    def health(self) -> Dict[str, Any]:
        """
        Report relayer status.

        Returns:
            Dictionary with status, timestamp, chain ID, contract addresses and relayer address
        """
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "chainId": self.domain.chain_id,
            "contracts": {
                "forwarder": self.domain.verifying_contract,
                "nft": self.nft_address,
            },
            "relayer": getattr(self.ledger, "relayer_address", None),
        }

    def close(self) -> None:
        self.ledger.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
