"""
Pytest fixtures for the gasless relay tests.
"""
import pytest
from eth_account import Account
from web3.providers.rpc import HTTPProvider

from gasless_relay._rate_limited_log import reset_rate_limits
from gasless_relay.client import RelayClient
from gasless_relay.config import NetworkConfig
from gasless_relay.ledger import InMemoryLedger
from gasless_relay.models import Domain
from gasless_relay.targets import SimulatedNft
from tests.test_helpers import (
    CHAIN_ID, FORWARDER_ADDRESS, NFT_ADDRESS, OTHER_KEY, RELAYER_KEY, SIGNER_KEY
)


@pytest.fixture(autouse=True)
def _patch_http_provider(monkeypatch):
    """
    Stub every Web3 HTTP call so no DNS / network traffic is triggered.
    Works for all tests because it is autouse.
    """
    def _dummy(self, method, params=None, _=None):
        if method == "eth_chainId":
            return {"jsonrpc": "2.0", "id": 1, "result": hex(CHAIN_ID)}
        if method == "eth_gasPrice":
            return {"jsonrpc": "2.0", "id": 1, "result": "0x3b9aca00"}  # 1 gwei
        return {"jsonrpc": "2.0", "id": 1, "result": "0x0"}

    monkeypatch.setattr(HTTPProvider, "make_request", _dummy, raising=True)


@pytest.fixture(autouse=True)
def _reset_shared_state():
    """Rate-limited log and network caches are module state; reset around each test."""
    reset_rate_limits()
    NetworkConfig._networks_cache = None
    yield
    reset_rate_limits()
    NetworkConfig._networks_cache = None


@pytest.fixture
def signer_account():
    return Account.from_key(SIGNER_KEY)


@pytest.fixture
def other_account():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def relayer_account():
    return Account.from_key(RELAYER_KEY)


@pytest.fixture
def domain():
    return Domain(chain_id=CHAIN_ID, verifying_contract=FORWARDER_ADDRESS)


@pytest.fixture
def nft():
    return SimulatedNft(NFT_ADDRESS)


@pytest.fixture
def ledger(domain, nft):
    """In-memory ledger with the simulated NFT as its only target"""
    return InMemoryLedger(domain, targets={NFT_ADDRESS: nft})


@pytest.fixture
def client(ledger, domain):
    return RelayClient(ledger, domain, nft_address=NFT_ADDRESS)
