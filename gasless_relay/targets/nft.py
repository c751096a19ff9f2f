"""
Example target: the GaslessNFT contract.

Provides the contract ABI, TargetAction builders for its gasless entry
points, and an in-process simulation usable as an InMemoryLedger target.
"""
import threading
from typing import Dict, List, Optional, Tuple

from eth_abi import decode as abi_decode, encode as abi_encode
from eth_utils import event_abi_to_log_topic, function_abi_to_4byte_selector
from web3 import Web3

from ..models import LogEntry, TargetAction

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NFT_LABEL = "NFT"


def _fn(name: str, inputs: List[Tuple[str, str]], outputs: Tuple[str, ...] = (), mutability: str = "nonpayable") -> Dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": mutability
    }


def _event(name: str, inputs: List[Tuple[str, str]]) -> Dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": True} for n, t in inputs]
    }


NFT_ABI = [
    _fn("mint", [("to", "address")], ("uint256",)),
    _fn("gaslessTransfer", [("to", "address"), ("tokenId", "uint256")]),
    _fn("gaslessApprove", [("to", "address"), ("tokenId", "uint256")]),
    _fn("ownerOf", [("tokenId", "uint256")], ("address",), "view"),
    _fn("getApproved", [("tokenId", "uint256")], ("address",), "view"),
    _fn("balanceOf", [("owner", "address")], ("uint256",), "view"),
    _fn("totalSupply", [], ("uint256",), "view"),
    _event("Transfer", [("from", "address"), ("to", "address"), ("tokenId", "uint256")]),
    _event("Approval", [("owner", "address"), ("approved", "address"), ("tokenId", "uint256")]),
    _event("NFTMinted", [("to", "address"), ("tokenId", "uint256")]),
    _event("NFTTransferred", [("from", "address"), ("to", "address"), ("tokenId", "uint256")]),
]

_FUNCTIONS = {item["name"]: item for item in NFT_ABI if item["type"] == "function"}
_EVENTS = {item["name"]: item for item in NFT_ABI if item["type"] == "event"}

MINT_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["mint"])
TRANSFER_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["gaslessTransfer"])
APPROVE_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["gaslessApprove"])
OWNER_OF_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["ownerOf"])
GET_APPROVED_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["getApproved"])
BALANCE_OF_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["balanceOf"])
TOTAL_SUPPLY_SELECTOR = function_abi_to_4byte_selector(_FUNCTIONS["totalSupply"])

TRANSFER_TOPIC = event_abi_to_log_topic(_EVENTS["Transfer"])
APPROVAL_TOPIC = event_abi_to_log_topic(_EVENTS["Approval"])


def encode_call(name: str, *args) -> bytes:
    """
    ABI-encode a call to one of the NFT contract's functions.

    Args:
        name: Function name from NFT_ABI
        *args: Positional arguments

    Returns:
        Selector followed by the encoded arguments
    """
    fn_abi = _FUNCTIONS[name]
    types = [i["type"] for i in fn_abi["inputs"]]
    return function_abi_to_4byte_selector(fn_abi) + abi_encode(types, list(args))


def decode_output(name: str, data: bytes) -> tuple:
    """Decode the return data of an NFT contract function."""
    return abi_decode([o["type"] for o in _FUNCTIONS[name]["outputs"]], bytes(data))


def mint_action(nft_address: str, to: str, gas: Optional[int] = None) -> TargetAction:
    """Mint a token to ``to``."""
    return TargetAction(to=nft_address, data=encode_call("mint", Web3.to_checksum_address(to)), gas=gas)


def transfer_action(nft_address: str, to: str, token_id: int, gas: Optional[int] = None) -> TargetAction:
    """Transfer ``token_id`` from the signer to ``to``."""
    return TargetAction(
        to=nft_address,
        data=encode_call("gaslessTransfer", Web3.to_checksum_address(to), int(token_id)),
        gas=gas
    )


def approve_action(nft_address: str, to: str, token_id: int, gas: Optional[int] = None) -> TargetAction:
    """Approve ``to`` to move the signer's ``token_id``."""
    return TargetAction(
        to=nft_address,
        data=encode_call("gaslessApprove", Web3.to_checksum_address(to), int(token_id)),
        gas=gas
    )


def _topic(address: str) -> bytes:
    return abi_encode(["address"], [address])


def _uint_topic(value: int) -> bytes:
    return value.to_bytes(32, "big")


class SimulatedNft:
    """
    Process-local stand-in for the GaslessNFT contract.

    Called as an InMemoryLedger target handler with the forwarded sender.
    Emits the standard ERC-721 ``Transfer`` and ``Approval`` logs.
    """

    def __init__(self, address: str):
        self.address = Web3.to_checksum_address(address)
        self.owners: Dict[int, str] = {}
        self.approvals: Dict[int, str] = {}
        self._next_token_id = 0
        self._lock = threading.Lock()

    def __call__(self, sender: str, value: int, data: bytes) -> Tuple[bytes, List[LogEntry]]:
        selector, args = bytes(data[:4]), bytes(data[4:])
        with self._lock:
            if selector == MINT_SELECTOR:
                (to,) = abi_decode(["address"], args)
                return self._mint(Web3.to_checksum_address(to))
            if selector == TRANSFER_SELECTOR:
                to, token_id = abi_decode(["address", "uint256"], args)
                return self._transfer(sender, Web3.to_checksum_address(to), token_id)
            if selector == APPROVE_SELECTOR:
                to, token_id = abi_decode(["address", "uint256"], args)
                return self._approve(sender, Web3.to_checksum_address(to), token_id)
        raise ValueError(f"unknown selector 0x{selector.hex()}")

    def view(self, data: bytes) -> bytes:
        """Answer the contract's read-only calls."""
        selector, args = bytes(data[:4]), bytes(data[4:])
        with self._lock:
            if selector == BALANCE_OF_SELECTOR:
                (owner,) = abi_decode(["address"], args)
                return abi_encode(["uint256"], [self.balance_of(owner)])
            if selector == TOTAL_SUPPLY_SELECTOR:
                return abi_encode(["uint256"], [self.total_supply()])
            if selector == OWNER_OF_SELECTOR:
                (token_id,) = abi_decode(["uint256"], args)
                return abi_encode(["address"], [self.owner_of(token_id)])
            if selector == GET_APPROVED_SELECTOR:
                (token_id,) = abi_decode(["uint256"], args)
                self.owner_of(token_id)
                return abi_encode(["address"], [self.approvals.get(token_id, ZERO_ADDRESS)])
        raise ValueError(f"unknown selector 0x{selector.hex()}")

    def owner_of(self, token_id: int) -> str:
        if token_id not in self.owners:
            raise ValueError(f"token {token_id} does not exist")
        return self.owners[token_id]

    def balance_of(self, owner: str) -> int:
        owner = Web3.to_checksum_address(owner)
        return sum(1 for o in self.owners.values() if o == owner)

    def total_supply(self) -> int:
        return len(self.owners)

    def _mint(self, to: str) -> Tuple[bytes, List[LogEntry]]:
        token_id = self._next_token_id
        self._next_token_id += 1
        self.owners[token_id] = to
        log = LogEntry(
            emitter=self.address,
            topics=[TRANSFER_TOPIC, _topic(ZERO_ADDRESS), _topic(to), _uint_topic(token_id)]
        )
        return abi_encode(["uint256"], [token_id]), [log]

    def _transfer(self, sender: str, to: str, token_id: int) -> Tuple[bytes, List[LogEntry]]:
        if self.owners.get(token_id) != sender:
            raise ValueError("Not the owner")
        self.owners[token_id] = to
        self.approvals.pop(token_id, None)
        log = LogEntry(
            emitter=self.address,
            topics=[TRANSFER_TOPIC, _topic(sender), _topic(to), _uint_topic(token_id)]
        )
        return b"", [log]

    def _approve(self, sender: str, to: str, token_id: int) -> Tuple[bytes, List[LogEntry]]:
        if self.owners.get(token_id) != sender:
            raise ValueError("Not the owner")
        self.approvals[token_id] = to
        log = LogEntry(
            emitter=self.address,
            topics=[APPROVAL_TOPIC, _topic(sender), _topic(to), _uint_topic(token_id)]
        )
        return b"", [log]
