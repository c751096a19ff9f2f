"""
Tests for the Relayer trust boundary.
"""
import logging
import threading
import pytest
from unittest.mock import MagicMock

from gasless_relay.classifier import EmitterRegistry, ReceiptClassifier
from gasless_relay.exceptions import (
    LedgerRejectedError, LedgerUnavailableError, RelayError, TargetActionFailedError
)
from gasless_relay.ledger import InMemoryLedger
from gasless_relay.ledger.base import Ledger
from gasless_relay.models import EventCategory, ExecutionResult, Outcome
from gasless_relay.relayer import Relayer
from gasless_relay.targets import NFT_ABI, encode_call
from tests.test_helpers import (
    NFT_ADDRESS, OTHER_KEY, SIGNER_KEY, make_request, relay_body, sign_request
)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@pytest.fixture
def registry(domain):
    registry = EmitterRegistry()
    registry.register(domain.verifying_contract, "Forwarder")
    registry.register(NFT_ADDRESS, "NFT", NFT_ABI)
    return registry


@pytest.fixture
def relayer(ledger, domain, registry):
    return Relayer(ledger, domain, classifier=ReceiptClassifier(registry))


def _mint(signer_address, nonce=0, to=None):
    return make_request(signer_address, nonce=nonce, data=encode_call("mint", to or signer_address))


def _mock_ledger(nonce=0):
    ledger = MagicMock(spec=Ledger)
    ledger.get_nonce.return_value = nonce
    return ledger


class TestEndToEnd:
    def test_mint_scenario(self, relayer, client, ledger, domain, signer_account, nft):
        """Build, sign, relay, classify, then replay."""
        built = client.build_mint(signer_account.address, signer_account.address)
        assert built.request.nonce == 0

        signed = sign_request(SIGNER_KEY, domain, built.request)
        outcome = relayer.relay(signed)

        assert outcome.outcome == Outcome.SUCCESS
        assert outcome.submitted is True
        assert ledger.get_nonce(signer_account.address) == 1
        assert nft.owner_of(0) == signer_account.address

        assert len(outcome.classified_events) == 1
        event = outcome.classified_events[0]
        assert event.category == EventCategory.KNOWN_EVENT
        assert event.label == "NFT"
        assert event.name == "Transfer"
        assert event.args == {"from": ZERO_ADDRESS, "to": signer_account.address, "tokenId": 0}

        replay = relayer.relay(signed)
        assert replay.outcome == Outcome.REJECTED
        assert replay.reason == RelayError.NONCE_REUSED
        assert ledger.get_nonce(signer_account.address) == 1

    def test_raw_body(self, relayer, domain, signer_account):
        signed = sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        outcome = relayer.relay(relay_body(signed))
        assert outcome.ok
        assert outcome.execution_id == outcome.result.execution_id
        assert outcome.execution_id.startswith("0x")

    def test_transfer_after_mint(self, relayer, domain, signer_account, other_account, nft):
        relayer.relay(sign_request(SIGNER_KEY, domain, _mint(signer_account.address)))
        transfer = make_request(
            signer_account.address, nonce=1,
            data=encode_call("gaslessTransfer", other_account.address, 0)
        )
        outcome = relayer.relay(sign_request(SIGNER_KEY, domain, transfer))
        assert outcome.ok
        assert nft.owner_of(0) == other_account.address
        assert outcome.classified_events[0].args["from"] == signer_account.address


class TestMalformed:
    @pytest.mark.parametrize("field", ["from", "to", "value", "gas", "nonce", "data"])
    def test_missing_field(self, relayer, ledger, domain, signer_account, field):
        signed = sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        outcome = relayer.relay(relay_body(signed, drop=field))
        assert outcome.reason == RelayError.MALFORMED_REQUEST
        assert field in outcome.detail
        assert ledger.get_nonce(signer_account.address) == 0

    @pytest.mark.parametrize("body", [
        None,
        "not a body",
        {},
        {"request": {"from": "0x0"}},
        {"request": "x", "signature": "0x00"},
    ])
    def test_bad_body(self, relayer, body):
        outcome = relayer.relay(body)
        assert outcome.reason == RelayError.MALFORMED_REQUEST
        assert not outcome.submitted

    def test_invalid_field_value(self, relayer, domain, signer_account):
        body = relay_body(sign_request(SIGNER_KEY, domain, _mint(signer_account.address)))
        body["request"]["gas"] = "-5"
        outcome = relayer.relay(body)
        assert outcome.reason == RelayError.MALFORMED_REQUEST
        assert "gas" in outcome.detail

    def test_malformed_never_reaches_ledger(self, domain):
        ledger = _mock_ledger()
        Relayer(ledger, domain).relay({"request": {}, "signature": "0x00"})
        ledger.get_nonce.assert_not_called()
        ledger.verify_and_execute.assert_not_called()


class TestPreflight:
    def test_wrong_signer_rejected_before_submission(self, domain, signer_account):
        ledger = _mock_ledger()
        outcome = Relayer(ledger, domain).relay(
            sign_request(OTHER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.SIGNATURE_MISMATCH
        assert outcome.submitted is False
        ledger.verify_and_execute.assert_not_called()

    def test_stale_nonce_rejected_before_submission(self, domain, signer_account):
        ledger = _mock_ledger(nonce=3)
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address, nonce=2))
        )
        assert outcome.reason == RelayError.NONCE_REUSED
        ledger.verify_and_execute.assert_not_called()

    def test_ledger_unavailable_during_preflight(self, domain, signer_account):
        ledger = _mock_ledger()
        ledger.get_nonce.side_effect = LedgerUnavailableError("connection refused")
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.LEDGER_UNAVAILABLE
        assert outcome.submitted is False
        ledger.verify_and_execute.assert_not_called()


class TestSubmission:
    @pytest.mark.parametrize("reason", [RelayError.SIGNATURE_MISMATCH, RelayError.NONCE_REUSED])
    def test_ledger_rejection_reason_is_kept(self, domain, signer_account, reason):
        ledger = _mock_ledger()
        ledger.verify_and_execute.side_effect = LedgerRejectedError(
            reason, "MinimalForwarder: signature does not match request"
        )
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == reason
        assert "signature does not match request" in outcome.detail
        assert outcome.submitted is False
        assert ledger.verify_and_execute.call_count == 1

    def test_ledger_on_another_domain_reports_signature_mismatch(self, domain, signer_account, nft):
        # The relayer accepts the signature, the Ledger's domain does not
        ledger = InMemoryLedger(domain.model_copy(update={"chain_id": 1}), targets={NFT_ADDRESS: nft})
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.SIGNATURE_MISMATCH
        assert outcome.submitted is False
        assert ledger.get_nonce(signer_account.address) == 0

    def test_rejected_after_sending_is_submitted(self, domain, signer_account):
        ledger = _mock_ledger()
        ledger.verify_and_execute.side_effect = LedgerRejectedError(
            RelayError.NONCE_REUSED, "nonce does not match request", submitted=True
        )
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.submitted is True

    def test_target_failure(self, relayer, ledger, domain, signer_account):
        # Transferring a token nobody minted faults in the target
        transfer = make_request(
            signer_account.address,
            data=encode_call("gaslessTransfer", signer_account.address, 99)
        )
        outcome = relayer.relay(sign_request(SIGNER_KEY, domain, transfer))
        assert outcome.reason == RelayError.TARGET_ACTION_FAILED
        assert outcome.submitted is True
        assert outcome.execution_id is not None
        # The nonce was spent by the attempt
        assert ledger.get_nonce(signer_account.address) == 1

    def test_unavailable_after_submission_is_not_retried(self, domain, signer_account):
        ledger = _mock_ledger()
        ledger.verify_and_execute.side_effect = LedgerUnavailableError(
            "No receipt after 120s", submitted=True, execution_id="0xabc"
        )
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.LEDGER_UNAVAILABLE
        assert outcome.submitted is True
        assert outcome.execution_id == "0xabc"
        assert ledger.verify_and_execute.call_count == 1

    def test_target_failure_from_ledger_exception(self, domain, signer_account):
        ledger = _mock_ledger()
        ledger.verify_and_execute.side_effect = TargetActionFailedError(
            "Target action reverted: Not the owner", execution_id="0xdef"
        )
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.TARGET_ACTION_FAILED
        assert outcome.execution_id == "0xdef"
        assert outcome.submitted is False

    def test_target_failure_after_mining_is_submitted(self, domain, signer_account):
        ledger = _mock_ledger()
        ledger.verify_and_execute.side_effect = TargetActionFailedError(
            "Target action failed in relay transaction 0xdef", execution_id="0xdef", submitted=True
        )
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.TARGET_ACTION_FAILED
        assert outcome.submitted is True

    def test_unsuccessful_result(self, domain, signer_account):
        ledger = _mock_ledger()
        ledger.verify_and_execute.return_value = ExecutionResult(success=False, execution_id="0x01")
        outcome = Relayer(ledger, domain).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.reason == RelayError.TARGET_ACTION_FAILED

    def test_unknown_and_unparseable_events_do_not_fail_relay(self, domain, signer_account, registry):
        ledger = _mock_ledger()
        ledger.verify_and_execute.return_value = ExecutionResult(
            success=True,
            log_entries=[
                {"emitter": domain.verifying_contract, "topics": [b"\x01" * 32], "data": b""},
                {"emitter": "0x000000000000000000000000000000000000dEaD", "topics": [], "data": b""},
            ]
        )
        outcome = Relayer(ledger, domain, classifier=ReceiptClassifier(registry)).relay(
            sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
        )
        assert outcome.ok
        assert [e.category for e in outcome.classified_events] == [
            EventCategory.UNKNOWN_FROM_KNOWN_EMITTER,
            EventCategory.FROM_UNKNOWN_EMITTER,
        ]
        assert outcome.classified_events[0].label == "Forwarder"


def test_concurrent_relays_of_same_nonce(ledger, domain, signer_account):
    """Exactly one of many concurrent submissions of one nonce succeeds."""
    relayer = Relayer(ledger, domain)
    signed = sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
    outcomes = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def worker():
        start.wait()
        outcome = relayer.relay(signed)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for o in outcomes if o.ok) == 1
    assert all(o.reason == RelayError.NONCE_REUSED for o in outcomes if not o.ok)
    assert ledger.get_nonce(signer_account.address) == 1


def test_concurrent_relays_of_distinct_signers(domain, signer_account, other_account):
    ledger = InMemoryLedger(domain)
    relayer = Relayer(ledger, domain)
    requests = [
        sign_request(SIGNER_KEY, domain, make_request(signer_account.address)),
        sign_request(OTHER_KEY, domain, make_request(other_account.address)),
    ]
    results = [None, None]

    def worker(i):
        results[i] = relayer.relay(requests[i])

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r.ok for r in results)


def test_logs_decoded_call_and_never_signature(relayer, domain, signer_account, caplog):
    signed = sign_request(SIGNER_KEY, domain, _mint(signer_account.address))
    with caplog.at_level(logging.DEBUG, logger="gasless_relay"):
        relayer.relay(signed)

    assert "Decoded call: mint(" in caplog.text
    assert signed.signature.hex() not in caplog.text


def test_nonce_advances_once_per_successful_relay(relayer, ledger, domain, signer_account):
    start = ledger.get_nonce(signer_account.address)
    for nonce in range(start, start + 5):
        assert relayer.relay(sign_request(SIGNER_KEY, domain, _mint(signer_account.address, nonce=nonce))).ok
    assert ledger.get_nonce(signer_account.address) == start + 5


def test_scenario_under_custom_domain(domain, signer_account, nft):
    custom = domain.model_copy(update={"name": "F", "version": "1"})
    ledger = InMemoryLedger(custom, targets={NFT_ADDRESS: nft})
    registry = EmitterRegistry()
    registry.register(NFT_ADDRESS, "NFT", NFT_ABI)
    relayer = Relayer(ledger, custom, classifier=ReceiptClassifier(registry))

    signed = sign_request(SIGNER_KEY, custom, _mint(signer_account.address))
    assert bytes(signed.request.data[:4]) == bytes.fromhex("6a627842")

    # A signature under the default domain is not valid here
    assert relayer.relay(sign_request(SIGNER_KEY, domain, signed.request)).reason == RelayError.SIGNATURE_MISMATCH

    outcome = relayer.relay(signed)
    assert outcome.ok
    assert ledger.get_nonce(signer_account.address) == 1
    [event] = outcome.classified_events
    assert (event.name, event.args["to"], event.args["tokenId"]) == ("Transfer", signer_account.address, 0)
    assert relayer.relay(signed).reason == RelayError.NONCE_REUSED
