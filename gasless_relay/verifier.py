"""
Advisory pre-flight verification of signed requests.
"""
import logging

from eth_account import Account

from . import codec
from .exceptions import RelayError
from .ledger.base import Ledger
from .models import Domain, SignedRequest, Verification

logger = logging.getLogger(__name__)


class Verifier:
    """
    Checks a signed request's signature and nonce before submission.

    The result is advisory: the Ledger repeats both checks atomically and
    its answer is authoritative. Nonces are read from the Ledger on every
    call and never cached.
    """

    def __init__(self, ledger: Ledger, domain: Domain):
        self.ledger = ledger
        self.domain = domain

    def verify(self, signed_request: SignedRequest) -> Verification:
        """
        Verify a signed request.

        Args:
            signed_request: Request and signature to check

        Returns:
            Verification; ``ok`` is False with SIGNATURE_MISMATCH or NONCE_REUSED on failure

        Raises:
            LedgerUnavailableError: If the nonce could not be read
        """
        request = signed_request.request
        signature = signed_request.signature

        defect = codec.signature_defect(signature)
        if defect:
            return Verification(ok=False, reason=RelayError.SIGNATURE_MISMATCH, detail=defect)

        try:
            recovered = Account.recover_message(
                codec.signable_message(self.domain, request),
                signature=signature
            )
        except Exception as e:
            logger.debug(f"Signature recovery failed: {e}")
            return Verification(
                ok=False,
                reason=RelayError.SIGNATURE_MISMATCH,
                detail=f"signature could not be recovered: {e}"
            )

        if recovered != request.from_:
            return Verification(
                ok=False,
                reason=RelayError.SIGNATURE_MISMATCH,
                detail=f"signature recovers {recovered}, not {request.from_}",
                recovered=recovered
            )

        expected = self.ledger.get_nonce(request.from_)
        if request.nonce != expected:
            return Verification(
                ok=False,
                reason=RelayError.NONCE_REUSED,
                detail=f"expected nonce {expected}, got {request.nonce}",
                recovered=recovered
            )

        return Verification(ok=True, recovered=recovered)
