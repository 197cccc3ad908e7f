from __future__ import annotations

import base64
import binascii
import hashlib
from typing import Any, Optional

import jcs
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from potsettle.config import Settings, get_settings


def canonicalize(obj: Any) -> bytes:
    # values must already be JSON primitives: cents as int, datetimes as isoformat()
    return jcs.canonicalize(obj)


def canonical_hash(obj: Any) -> str:
    return hashlib.sha256(canonicalize(obj)).hexdigest()


class ProofSigner:
    """Signs proof checksums with one Ed25519 key."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self._public_key_hex = (
            private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
        )

    @classmethod
    def generate(cls) -> "ProofSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "ProofSigner":
        if len(seed) != 32:
            raise ValueError(f"Ed25519 seed must be 32 bytes, got {len(seed)}")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ProofSigner":
        settings = settings or get_settings()
        seed = settings.signing_seed_bytes
        return cls.from_seed(seed) if seed is not None else cls.generate()

    @property
    def public_key_hex(self) -> str:
        return self._public_key_hex

    def sign(self, data: bytes) -> str:
        raw = self._private_key.sign(data)
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    @staticmethod
    def verify(data: bytes, signature_b64: str, public_key_hex: str) -> bool:
        """Return True only if ``signature_b64`` is a valid signature of ``data``."""
        try:
            if len(public_key_hex) != 64:
                return False
            public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
            padding = "=" * (-len(signature_b64) % 4)
            raw = base64.urlsafe_b64decode(signature_b64 + padding)
            if len(raw) != 64:
                return False
            public_key.verify(raw, data)
        except (InvalidSignature, ValueError, TypeError, binascii.Error):
            return False
        return True
