"""
Shared helpers for the gasless relay tests.
"""
from .signing import (
    CHAIN_ID, FORWARDER_ADDRESS, NFT_ADDRESS, OTHER_KEY, RELAYER_KEY, SIGNER_KEY,
    make_request, malleable, relay_body, sign_request
)

__all__ = [
    "CHAIN_ID",
    "FORWARDER_ADDRESS",
    "NFT_ADDRESS",
    "OTHER_KEY",
    "RELAYER_KEY",
    "SIGNER_KEY",
    "make_request",
    "malleable",
    "relay_body",
    "sign_request",
]
