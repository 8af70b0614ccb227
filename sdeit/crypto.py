# FILE: sdeit/crypto.py
from __future__ import annotations

import binascii
from dataclasses import dataclass, field
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .kv import RollingHasher
from .schemas import SdeitError

ED25519_PUBLIC_KEY_LEN = 32
ED25519_SIGNATURE_LEN = 64


class CryptoError(SdeitError):
    """Base crypto error for the engine."""


def _coerce_key_bytes(raw: Union[bytes, bytearray, str]) -> bytes:
    """
    Accept raw key bytes or their hex encoding.
    """
    if isinstance(raw, str):
        try:
            return binascii.unhexlify(raw.strip())
        except (binascii.Error, ValueError) as e:
            raise CryptoError(f"authority key is not valid hex: {e}") from e
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    raise CryptoError(f"unsupported authority key type: {type(raw).__name__}")


def load_authority_public_key(raw: Union[bytes, bytearray, str]) -> Ed25519PublicKey:
    key_bytes = _coerce_key_bytes(raw)
    if len(key_bytes) != ED25519_PUBLIC_KEY_LEN:
        raise CryptoError(
            f"authority key must be {ED25519_PUBLIC_KEY_LEN} raw bytes, got {len(key_bytes)}"
        )
    try:
        return Ed25519PublicKey.from_public_bytes(key_bytes)
    except ValueError as e:
        raise CryptoError(f"failed to load Ed25519 public key: {e}") from e


def fingerprint_public_key(pub: Ed25519PublicKey) -> str:
    """
    Short, stable key id for logs and metrics.
    """
    raw = pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    rh = RollingHasher(b"sdeit:v1:pubkey")
    rh.update_bytes(raw)
    return rh.hex()[:16]


@dataclass
class AuthorityVerifier:
    """
    Ed25519 verification of delta digests under the authority's fixed key.
    """

    public_key: Ed25519PublicKey
    key_id: str = field(default="")

    @classmethod
    def from_raw(cls, raw: Union[bytes, bytearray, str]) -> "AuthorityVerifier":
        pub = load_authority_public_key(raw)
        return cls(public_key=pub, key_id=fingerprint_public_key(pub))

    def verify_digest(self, digest: bytes, signature: bytes) -> bool:
        if not isinstance(signature, (bytes, bytearray)):
            return False
        if len(signature) != ED25519_SIGNATURE_LEN:
            return False
        try:
            self.public_key.verify(bytes(signature), digest)
            return True
        except InvalidSignature:
            return False


@dataclass
class AuthoritySigner:
    """
    Signing counterpart of AuthorityVerifier.

    Used by tooling and tests that need to produce authority deltas; the
    engine itself never holds a private key.
    """

    private_key: Ed25519PrivateKey = field(repr=False)

    @classmethod
    def generate(cls) -> "AuthoritySigner":
        return cls(private_key=Ed25519PrivateKey.generate())

    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def sign_digest(self, digest: bytes) -> bytes:
        return self.private_key.sign(digest)

    def verifier(self, key_id: Optional[str] = None) -> AuthorityVerifier:
        pub = self.private_key.public_key()
        return AuthorityVerifier(public_key=pub, key_id=key_id or fingerprint_public_key(pub))
