"""
Tests for the in-memory reference Ledger.
"""
import pytest

from gasless_relay.exceptions import (
    LedgerRejectedError, MalformedRequestError, RelayError, TargetActionFailedError
)
from gasless_relay.ledger import InMemoryLedger
from gasless_relay.models import ExecutionState
from gasless_relay.targets import encode_call
from gasless_relay.targets.nft import decode_output
from tests.test_helpers import NFT_ADDRESS, OTHER_KEY, SIGNER_KEY, make_request, malleable, sign_request


def _signed_mint(domain, signer_address, nonce=0, key=SIGNER_KEY):
    request = make_request(signer_address, nonce=nonce, data=encode_call("mint", signer_address))
    return sign_request(key, domain, request)


def test_nonce_starts_at_zero(ledger, signer_account):
    assert ledger.get_nonce(signer_account.address) == 0
    assert ledger.get_nonce(signer_account.address.lower()) == 0


def test_invalid_identity(ledger):
    with pytest.raises(MalformedRequestError):
        ledger.get_nonce("0x1234")


def test_execute_increments_nonce_and_records_status(ledger, domain, signer_account):
    signed = _signed_mint(domain, signer_account.address)
    result = ledger.verify_and_execute(signed.request, signed.signature)

    assert result.success
    assert len(result.log_entries) == 1
    assert int.from_bytes(result.return_data, "big") == 0
    assert ledger.get_nonce(signer_account.address) == 1

    status = ledger.get_execution_status(result.execution_id)
    assert status.state == ExecutionState.SUCCESS
    assert status.log_entries == result.log_entries


def test_replay_rejected_without_state_change(ledger, domain, signer_account, nft):
    signed = _signed_mint(domain, signer_account.address)
    ledger.verify_and_execute(signed.request, signed.signature)

    with pytest.raises(LedgerRejectedError) as exc_info:
        ledger.verify_and_execute(signed.request, signed.signature)
    assert exc_info.value.error_code == RelayError.NONCE_REUSED
    assert "expected nonce 1, got 0" in exc_info.value.detail
    assert ledger.get_nonce(signer_account.address) == 1
    assert nft.balance_of(signer_account.address) == 1


def test_bad_signature_rejected_without_state_change(ledger, domain, signer_account):
    signed = _signed_mint(domain, signer_account.address, key=OTHER_KEY)
    with pytest.raises(LedgerRejectedError) as exc_info:
        ledger.verify_and_execute(signed.request, signed.signature)
    assert exc_info.value.error_code == RelayError.SIGNATURE_MISMATCH
    assert ledger.get_nonce(signer_account.address) == 0
    assert exc_info.value.submitted is False


def test_target_failure_spends_nonce(ledger, domain, signer_account):
    request = make_request(signer_account.address, data=encode_call("gaslessApprove", signer_account.address, 9))
    signed = sign_request(SIGNER_KEY, domain, request)

    with pytest.raises(TargetActionFailedError) as exc_info:
        ledger.verify_and_execute(signed.request, signed.signature)
    assert "Not the owner" in str(exc_info.value)
    assert exc_info.value.submitted is True
    assert ledger.get_nonce(signer_account.address) == 1
    assert ledger.get_execution_status(exc_info.value.execution_id).state == ExecutionState.FAILED


def test_unregistered_target_succeeds_without_logs(domain, signer_account):
    ledger = InMemoryLedger(domain)
    signed = sign_request(SIGNER_KEY, domain, make_request(signer_account.address))
    result = ledger.verify_and_execute(signed.request, signed.signature)
    assert result.success
    assert result.log_entries == []


def test_nonces_are_per_signer(ledger, domain, signer_account, other_account):
    first = _signed_mint(domain, signer_account.address)
    ledger.verify_and_execute(first.request, first.signature)
    assert ledger.get_nonce(other_account.address) == 0


def test_verify_is_read_only(ledger, domain, signer_account):
    signed = _signed_mint(domain, signer_account.address)
    assert ledger.verify(signed.request, signed.signature) is True
    assert ledger.get_nonce(signer_account.address) == 0

    ledger.verify_and_execute(signed.request, signed.signature)
    assert ledger.verify(signed.request, signed.signature) is False


def test_execution_ids_are_unique(ledger, domain, signer_account):
    ids = set()
    for nonce in range(3):
        signed = _signed_mint(domain, signer_account.address, nonce=nonce)
        ids.add(ledger.verify_and_execute(signed.request, signed.signature).execution_id)
    assert len(ids) == 3


def test_unknown_execution_id(ledger):
    assert ledger.get_execution_status("0x" + "00" * 32).state == ExecutionState.NOT_FOUND


def test_context_manager(domain):
    with InMemoryLedger(domain) as ledger:
        assert ledger.get_nonce(NFT_ADDRESS) == 0


def test_high_s_signature_rejected(ledger, domain, signer_account):
    signed = malleable(_signed_mint(domain, signer_account.address))
    assert ledger.verify(signed.request, signed.signature) is False
    with pytest.raises(LedgerRejectedError) as exc_info:
        ledger.verify_and_execute(signed.request, signed.signature)
    assert exc_info.value.error_code == RelayError.SIGNATURE_MISMATCH
    assert ledger.get_nonce(signer_account.address) == 0


@pytest.mark.parametrize("execution_id", ["0x01", "not-a-hash", "0x" + "zz" * 32, None])
def test_malformed_execution_id(ledger, execution_id):
    with pytest.raises(MalformedRequestError):
        ledger.get_execution_status(execution_id)


def test_read_only_call(ledger, domain, signer_account, nft):
    signed = _signed_mint(domain, signer_account.address)
    ledger.verify_and_execute(signed.request, signed.signature)

    (balance,) = decode_output("balanceOf", ledger.call(NFT_ADDRESS, encode_call("balanceOf", signer_account.address)))
    (supply,) = decode_output("totalSupply", ledger.call(NFT_ADDRESS, encode_call("totalSupply")))
    assert (balance, supply) == (1, 1)
    # Reads never touch nonces
    assert ledger.get_nonce(signer_account.address) == 1


def test_read_only_call_failures(ledger, domain):
    with pytest.raises(TargetActionFailedError) as exc_info:
        ledger.call(NFT_ADDRESS, encode_call("ownerOf", 42))
    assert exc_info.value.submitted is False
    with pytest.raises(TargetActionFailedError):
        InMemoryLedger(domain).call(NFT_ADDRESS, encode_call("totalSupply"))
