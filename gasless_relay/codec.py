"""
EIP-712 signing payload for forward requests.

The digest produced here is what the signer signs and what both the
Verifier and the forwarder contract re-derive. Changing a type string or
field order invalidates every outstanding signature, so any such change
must bump ``SCHEMA_VERSION``.
"""
from typing import Dict, Any, Optional

from eth_abi import encode as abi_encode
from eth_account.messages import SignableMessage
from eth_utils import keccak

from .models import Domain, ForwardRequest

SCHEMA_VERSION = 1

EIP712_PREFIX = b"\x19\x01"

DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
FORWARD_REQUEST_TYPE = (
    "ForwardRequest(address from,address to,uint256 value,uint256 gas,uint256 nonce,bytes data)"
)

DOMAIN_TYPEHASH = keccak(text=DOMAIN_TYPE)
FORWARD_REQUEST_TYPEHASH = keccak(text=FORWARD_REQUEST_TYPE)

SIGNATURE_LENGTH = 65

# Order of the secp256k1 group; the forwarder only accepts s in the lower half
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Field lists in wallet (eth_signTypedData_v4) form
EIP712_DOMAIN_FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]
FORWARD_REQUEST_FIELDS = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "gas", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "data", "type": "bytes"},
]


def domain_separator(domain: Domain) -> bytes:
    """
    Compute the EIP-712 domain separator.

    Args:
        domain: Forwarder domain

    Returns:
        32-byte domain separator
    """
    encoded = abi_encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            DOMAIN_TYPEHASH,
            keccak(text=domain.name),
            keccak(text=domain.version),
            domain.chain_id,
            domain.verifying_contract,
        ],
    )
    return keccak(encoded)


def struct_hash(request: ForwardRequest) -> bytes:
    """
    Compute the EIP-712 struct hash of a forward request.

    Args:
        request: Request to hash

    Returns:
        32-byte struct hash
    """
    encoded = abi_encode(
        ["bytes32", "address", "address", "uint256", "uint256", "uint256", "bytes32"],
        [
            FORWARD_REQUEST_TYPEHASH,
            request.from_,
            request.to,
            request.value,
            request.gas,
            request.nonce,
            keccak(request.data),
        ],
    )
    return keccak(encoded)


def signable_message(domain: Domain, request: ForwardRequest) -> SignableMessage:
    """EIP-191 version 0x01 message for eth_account signing and recovery"""
    return SignableMessage(
        version=EIP712_PREFIX[1:],
        header=domain_separator(domain),
        body=struct_hash(request),
    )


def encode(domain: Domain, request: ForwardRequest) -> bytes:
    """
    Encode a request under a domain into the digest the signer signs.

    Args:
        domain: Forwarder domain
        request: Request to encode

    Returns:
        32-byte digest keccak256(0x1901 || domainSeparator || structHash)
    """
    return keccak(EIP712_PREFIX + domain_separator(domain) + struct_hash(request))


def typed_data(domain: Domain, request: ForwardRequest) -> Dict[str, Any]:
    """
    Build the full EIP-712 document a wallet signs with eth_signTypedData_v4.

    Args:
        domain: Forwarder domain
        request: Request to sign

    Returns:
        Typed data dictionary with types, domain, primaryType and message
    """
    return {
        "types": {
            "EIP712Domain": list(EIP712_DOMAIN_FIELDS),
            "ForwardRequest": list(FORWARD_REQUEST_FIELDS),
        },
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": domain.chain_id,
            "verifyingContract": domain.verifying_contract,
        },
        "primaryType": "ForwardRequest",
        "message": {
            "from": request.from_,
            "to": request.to,
            "value": request.value,
            "gas": request.gas,
            "nonce": request.nonce,
            "data": "0x" + request.data.hex(),
        },
    }


def signature_defect(signature: bytes) -> Optional[str]:
    """
    Check a signature against the forwarder's ECDSA rules.

    The forwarder rejects malleable signatures (``s`` in the upper half of
    the curve order) and recovery ids other than 27 and 28, even though
    they recover to the same address off-chain.

    Args:
        signature: 65-byte ``r || s || v`` signature

    Returns:
        Why the forwarder would refuse the signature, or None if it is canonical
    """
    if len(signature) != SIGNATURE_LENGTH:
        return f"signature must be {SIGNATURE_LENGTH} bytes, got {len(signature)}"
    s = int.from_bytes(signature[32:64], "big")
    if s > SECP256K1_N // 2:
        return "signature 's' value is not in the lower half of the curve order"
    v = signature[64]
    if v not in (27, 28):
        return f"signature 'v' value must be 27 or 28, got {v}"
    return None
