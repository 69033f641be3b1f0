"""
Trinity Proof Signing

Validators sign each chain proof with secp256k1 so the coordinator can check
that the root was vouched for by a registered validator of that ledger. The
signed message binds the operation, the ledger, the root and the commit time.
"""

from typing import Union

from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

from ..exceptions import InvalidSignatureError
from .hashing import hex_to_bytes, keccak256, to_bytes32

PROOF_DOMAIN = b"TRINITY_CHAIN_PROOF_V1"


def proof_message_hash(operation_id: str, ledger_id: int, merkle_root: str, timestamp: int) -> bytes:
    """keccak256(domain || operation_id || u8 ledger || root || u64 timestamp)."""
    return keccak256(
        PROOF_DOMAIN
        + to_bytes32(operation_id)
        + int(ledger_id).to_bytes(1, 'big')
        + to_bytes32(merkle_root)
        + int(timestamp).to_bytes(8, 'big')
    )


def load_private_key(key: Union[str, bytes]) -> keys.PrivateKey:
    if isinstance(key, str):
        key = hex_to_bytes(key)
    return keys.PrivateKey(key)


def address_of(private_key: keys.PrivateKey) -> str:
    return private_key.public_key.to_checksum_address()


def sign_proof(
    private_key: keys.PrivateKey,
    operation_id: str,
    ledger_id: int,
    merkle_root: str,
    timestamp: int,
) -> str:
    """Return the 65-byte (r, s, v) signature as 0x hex."""
    msg_hash = proof_message_hash(operation_id, ledger_id, merkle_root, timestamp)
    return '0x' + private_key.sign_msg_hash(msg_hash).to_bytes().hex()


def recover_signer(
    signature: str,
    operation_id: str,
    ledger_id: int,
    merkle_root: str,
    timestamp: int,
) -> str:
    """
    Recover the checksum address that produced *signature*.

    Raises:
        InvalidSignatureError: if the signature cannot be decoded or recovered
    """
    if not signature:
        raise InvalidSignatureError("proof is not signed")
    try:
        sig = keys.Signature(signature_bytes=hex_to_bytes(signature))
        msg_hash = proof_message_hash(operation_id, ledger_id, merkle_root, timestamp)
        public_key = sig.recover_public_key_from_msg_hash(msg_hash)
    except (ValueError, BadSignature, ValidationError) as e:
        raise InvalidSignatureError(f"malformed proof signature: {e}") from e
    return public_key.to_checksum_address()
