"""
QR Payload Signing

Manufacturers sign the QR payload with their wallet key. A scanner recovers
the signer address and compares it with the batch's manufacturer.

Signing scheme (wallet-compatible):
- message_hash = keccak256(utf8(compact JSON of data, keys in payload order))
- signature    = EIP-191 personal_sign over the 32 raw bytes of message_hash

Signatures are 65-byte secp256k1 (r, s, v), hex encoded with 0x prefix.
"""

import json
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3


class SignatureInvalid(Exception):
    """Raised when a signature cannot be decoded or recovered."""
    pass


class QRSigner:
    """
    Sign and recover QR payloads.

    Recovery proves who signed, not that they were entitled to.
    Callers compare the recovered address with the batch manufacturer.
    """

    @staticmethod
    def serialize(data: dict[str, Any]) -> str:
        """Compact JSON in insertion order, non-ASCII kept as UTF-8."""
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False)

    @staticmethod
    def message_hash(data: dict[str, Any]) -> bytes:
        """keccak256 of the serialized payload (32 bytes)."""
        return bytes(Web3.keccak(text=QRSigner.serialize(data)))

    @staticmethod
    def generate_account() -> tuple[str, str]:
        """
        Generate a new secp256k1 account.

        Returns:
            Tuple of (private_key_hex, address_lowercase)
        """
        account = Account.create()
        return Web3.to_hex(account.key), account.address.lower()

    @staticmethod
    def sign(data: dict[str, Any], private_key: str) -> str:
        """
        Sign a QR payload.

        Args:
            data: The payload document
            private_key: Hex-encoded private key

        Returns:
            0x-prefixed hex signature
        """
        message = encode_defunct(primitive=QRSigner.message_hash(data))
        signed = Account.sign_message(message, private_key=private_key)
        return Web3.to_hex(signed.signature)

    @staticmethod
    def recover_signer(data: dict[str, Any], signature: str) -> str:
        """
        Recover the lower-cased address that signed data.

        Raises:
            SignatureInvalid: If the signature is malformed or unrecoverable
        """
        if not signature:
            raise SignatureInvalid("Signature is empty")
        try:
            message = encode_defunct(primitive=QRSigner.message_hash(data))
            return Account.recover_message(message, signature=signature).lower()
        except Exception as e:
            raise SignatureInvalid(f"Cannot recover signer: {e}") from e

    @staticmethod
    def verify(data: dict[str, Any], signature: str, expected_address: str) -> bool:
        """
        True if data was signed by expected_address (case-insensitive).
        """
        try:
            recovered = QRSigner.recover_signer(data, signature)
        except SignatureInvalid:
            return False
        return recovered == (expected_address or "").lower()
