"""
Request construction.

Turns a target action into an unsigned ForwardRequest with the signer's
current nonce, plus the digest and wallet typed data needed to sign it.
"""
import logging
from typing import Optional

from pydantic import ValidationError
from web3 import Web3

from . import codec
from .exceptions import ConfigurationError, MalformedRequestError
from .ledger.base import Ledger
from .models import BuiltRequest, Domain, ForwardRequest, TargetAction
from .targets import nft

logger = logging.getLogger(__name__)

# Fixed gas ceiling attached to every request unless overridden
DEFAULT_GAS_LIMIT = 500000


class RequestBuilder:
    """
    Builds unsigned forward requests for a single forwarder domain.
    """

    def __init__(
        self,
        ledger: Ledger,
        domain: Domain,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        nft_address: Optional[str] = None
    ):
        """
        Initialize the builder.

        Args:
            ledger: Ledger used to read the signer's next nonce
            domain: Domain the request will be signed under
            gas_limit: Gas ceiling for requests whose action sets none
            nft_address: GaslessNFT contract for the convenience builders
        """
        self.ledger = ledger
        self.domain = domain
        self.gas_limit = gas_limit
        self.nft_address = Web3.to_checksum_address(nft_address) if nft_address else None

    def build(
        self,
        signer: str,
        target_action: TargetAction,
        value: Optional[int] = None,
        gas: Optional[int] = None
    ) -> BuiltRequest:
        """
        Build an unsigned request for ``signer``.

        Args:
            signer: Address that will sign the request
            target_action: Encoded call on the target contract
            value: Optional per-call value override
            gas: Optional per-call gas override

        Returns:
            BuiltRequest with the request, its 32-byte signing payload and typed data

        Raises:
            MalformedRequestError: If the signer or action is invalid
            LedgerUnavailableError: If the nonce could not be read
        """
        if not isinstance(signer, str) or not Web3.is_address(signer):
            raise MalformedRequestError(f"Invalid signer address: {signer!r}")
        signer = Web3.to_checksum_address(signer)

        nonce = self.ledger.get_nonce(signer)

        if value is None:
            value = target_action.value if target_action.value is not None else 0
        if gas is None:
            gas = target_action.gas if target_action.gas is not None else self.gas_limit

        try:
            request = ForwardRequest(
                from_=signer,
                to=target_action.to,
                value=value,
                gas=gas,
                nonce=nonce,
                data=target_action.data
            )
        except ValidationError as e:
            raise MalformedRequestError(f"Invalid request fields: {e}") from e

        logger.debug(f"Built request for {signer[:10]}... to {request.to[:10]}... with nonce {nonce}")
        return BuiltRequest(
            request=request,
            signing_payload=codec.encode(self.domain, request),
            typed_data=codec.typed_data(self.domain, request)
        )

    def build_mint(self, signer: str, to: str) -> BuiltRequest:
        """Build a request minting an NFT to ``to``."""
        return self.build(signer, nft.mint_action(self._require_nft(), self._recipient(to)))

    def build_transfer(self, signer: str, to: str, token_id: int) -> BuiltRequest:
        """Build a request transferring the signer's ``token_id`` to ``to``."""
        return self.build(signer, nft.transfer_action(self._require_nft(), self._recipient(to), token_id))

    def build_approve(self, signer: str, to: str, token_id: int) -> BuiltRequest:
        """Build a request approving ``to`` for the signer's ``token_id``."""
        return self.build(signer, nft.approve_action(self._require_nft(), self._recipient(to), token_id))

    def _require_nft(self) -> str:
        if not self.nft_address:
            raise ConfigurationError("NFT contract address is not configured")
        return self.nft_address

    @staticmethod
    def _recipient(to: str) -> str:
        if not isinstance(to, str) or not Web3.is_address(to):
            raise MalformedRequestError(f"Invalid recipient address: {to!r}")
        return to
