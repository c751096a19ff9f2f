"""
Relayer: the trust boundary between untrusted signed requests and the Ledger.
"""
import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .classifier import EmitterRegistry, ReceiptClassifier
from .exceptions import (
    LedgerRejectedError, LedgerUnavailableError, MalformedRequestError,
    RelayError, TargetActionFailedError
)
from .ledger.base import Ledger
from .models import Domain, Outcome, RelayOutcome, SignedRequest
from .verifier import Verifier

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("from", "to", "value", "gas", "nonce", "data")


class Relayer:
    """
    Validates, pre-flights and submits signed forward requests.

    ``relay`` holds no per-request state and may be called from many
    threads. Each accepted request is handed to the Ledger exactly once;
    a relay whose outcome is unknown after submission is reported, never
    re-sent.
    """

    def __init__(
        self,
        ledger: Ledger,
        domain: Domain,
        classifier: Optional[ReceiptClassifier] = None,
        verifier: Optional[Verifier] = None
    ):
        """
        Initialize the relayer.

        Args:
            ledger: Ledger that executes requests
            domain: Domain requests must be signed under
            classifier: Classifier for execution logs (defaults to an empty registry)
            verifier: Pre-flight verifier (defaults to one over ``ledger``)
        """
        self.ledger = ledger
        self.domain = domain
        self.classifier = classifier or ReceiptClassifier(EmitterRegistry())
        self.verifier = verifier or Verifier(ledger, domain)

    def relay(self, signed_request: Union[SignedRequest, Dict[str, Any]]) -> RelayOutcome:
        """
        Relay a signed request to the Ledger.

        Args:
            signed_request: SignedRequest, or a raw ``{"request": {...}, "signature": "0x..."}`` body

        Returns:
            RelayOutcome; rejections carry a RelayError reason and detail
        """
        try:
            signed = self.parse(signed_request)
        except MalformedRequestError as e:
            logger.warning(f"Rejected malformed request: {e.detail}")
            return RelayOutcome.rejected(RelayError.MALFORMED_REQUEST, e.detail)

        request = signed.request
        try:
            verification = self.verifier.verify(signed)
        except LedgerUnavailableError as e:
            logger.warning(f"Ledger unavailable during pre-flight for {request.from_[:10]}...: {e.detail}")
            return RelayOutcome.rejected(RelayError.LEDGER_UNAVAILABLE, e.detail, submitted=False)

        if not verification.ok:
            logger.warning(
                f"Pre-flight rejected request {request.nonce} from {request.from_[:10]}...: "
                f"{verification.reason.value} ({verification.detail})"
            )
            return RelayOutcome.rejected(verification.reason, verification.detail)

        self._log_call(signed)
        logger.info(f"Submitting request {request.nonce} from {request.from_[:10]}... to {request.to[:10]}...")

        try:
            result = self.ledger.verify_and_execute(request, signed.signature)
        except LedgerRejectedError as e:
            reason = e.error_code
            logger.warning(
                f"Ledger rejected request {request.nonce} from {request.from_[:10]}...: "
                f"{reason.value} ({e.detail})"
            )
            return RelayOutcome.rejected(reason, e.detail, submitted=e.submitted)
        except TargetActionFailedError as e:
            logger.warning(f"Target action failed for request {request.nonce} from {request.from_[:10]}...: {e.detail}")
            return RelayOutcome.rejected(
                RelayError.TARGET_ACTION_FAILED,
                e.detail,
                submitted=e.submitted,
                execution_id=e.execution_id
            )
        except LedgerUnavailableError as e:
            logger.error(
                f"Ledger unavailable for request {request.nonce} from {request.from_[:10]}... "
                f"(submitted={e.submitted}): {e.detail}"
            )
            return RelayOutcome.rejected(
                RelayError.LEDGER_UNAVAILABLE,
                e.detail,
                submitted=e.submitted,
                execution_id=e.execution_id
            )

        if not result.success:
            logger.warning(f"Target action reported failure for request {request.nonce} from {request.from_[:10]}...")
            return RelayOutcome.rejected(
                RelayError.TARGET_ACTION_FAILED,
                "target action returned failure",
                submitted=True,
                execution_id=result.execution_id
            )

        events = self.classifier.classify(result.log_entries)
        logger.info(
            f"Relayed request {request.nonce} from {request.from_[:10]}... "
            f"with {len(events)} event(s)"
        )
        return RelayOutcome(
            outcome=Outcome.SUCCESS,
            result=result,
            classified_events=events,
            execution_id=result.execution_id,
            submitted=True
        )

    @staticmethod
    def parse(signed_request: Union[SignedRequest, Dict[str, Any]]) -> SignedRequest:
        """
        Validate a raw relay body into a SignedRequest.

        Args:
            signed_request: SignedRequest or raw body

        Returns:
            Validated SignedRequest

        Raises:
            MalformedRequestError: Naming the missing or invalid fields
        """
        if isinstance(signed_request, SignedRequest):
            return signed_request
        if not isinstance(signed_request, dict):
            raise MalformedRequestError(f"Expected a request body, got {type(signed_request).__name__}")

        request = signed_request.get("request")
        signature = signed_request.get("signature")
        if not isinstance(request, dict):
            raise MalformedRequestError("Missing request")
        if not signature:
            raise MalformedRequestError("Missing signature")

        missing = [f for f in REQUIRED_FIELDS if request.get(f) is None]
        if missing:
            raise MalformedRequestError(f"Missing required fields: {', '.join(missing)}")

        try:
            return SignedRequest.model_validate({"request": request, "signature": signature})
        except ValidationError as e:
            invalid = sorted({str(err["loc"][-1]) for err in e.errors() if err.get("loc")})
            raise MalformedRequestError(
                f"Invalid fields: {', '.join(invalid)}",
                detail=f"Invalid fields: {', '.join(invalid)}"
            ) from e

    def _log_call(self, signed: SignedRequest) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        decoded = self.classifier.decode_call(signed.request.to, signed.request.data)
        if decoded is None:
            logger.debug(f"Could not decode call data for {signed.request.to[:10]}...")
            return
        name, args = decoded
        logger.debug(f"Decoded call: {name}({args})")
