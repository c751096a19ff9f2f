"""
Example target contracts.
"""
from .nft import (
    NFT_ABI, NFT_LABEL, SimulatedNft, approve_action, decode_output, encode_call,
    mint_action, transfer_action
)

__all__ = [
    "NFT_ABI",
    "NFT_LABEL",
    "SimulatedNft",
    "approve_action",
    "decode_output",
    "encode_call",
    "mint_action",
    "transfer_action",
]
