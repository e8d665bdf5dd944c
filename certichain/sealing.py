"""
CERTICHAIN Sealed-Payload Gate

Hybrid encryption of sensitive lot data for a single recipient (the
designated laboratory). ECIES over secp256k1:

    ephemeral key ──ECDH──► shared secret ──HKDF-SHA256──► AES-256-GCM key

Wire layout of ``SealedPayload.ciphertext``:

    ephemeral public key (33, compressed) ‖ nonce (12) ‖ ciphertext ‖ tag (16)

The recipient fingerprint (SHA-256 of the compressed public key) is bound
as associated data, so a payload cannot be re-labelled for another key.
Every way unsealing can fail raises the same DecryptionFailed.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from typing import Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from certichain.errors import DecryptionFailed, ValidationError
from certichain.observability import CertichainLayer, get_logger

logger = get_logger("gate", CertichainLayer.SEALING)

CURVE = ec.SECP256K1()
HKDF_INFO = b"certichain-seal-v1"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
COMPRESSED_POINT_LENGTH = 33
FINGERPRINT_LENGTH = 32

PublicKeyLike = Union[str, ec.EllipticCurvePublicKey]
PrivateKeyLike = Union[str, ec.EllipticCurvePrivateKey]


@dataclass(frozen=True)
class SealedPayload:
    ciphertext: bytes
    recipient_public_key_fingerprint: str

    def to_hex(self) -> str:
        """Fingerprint ‖ ciphertext as uppercase hex, for a ledger memo."""
        return (bytes.fromhex(self.recipient_public_key_fingerprint) + self.ciphertext).hex().upper()

    @classmethod
    def from_hex(cls, data: str) -> "SealedPayload":
        try:
            raw = bytes.fromhex(data)
        except (ValueError, TypeError):
            raise DecryptionFailed() from None
        if len(raw) < FINGERPRINT_LENGTH + COMPRESSED_POINT_LENGTH + NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionFailed()
        return cls(
            ciphertext=raw[FINGERPRINT_LENGTH:],
            recipient_public_key_fingerprint=raw[:FINGERPRINT_LENGTH].hex(),
        )

    def to_dict(self):
        return {
            "recipient_public_key_fingerprint": self.recipient_public_key_fingerprint,
            "sealed": self.to_hex(),
        }


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _compressed(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    )


def load_public_key(public_key: PublicKeyLike) -> ec.EllipticCurvePublicKey:
    """Parse a secp256k1 public key from hex (compressed or uncompressed)."""
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return public_key
    if not isinstance(public_key, str):
        raise ValidationError("recipient_public_key", "must be a hex string", public_key)
    if len(public_key) == 66 and public_key[:2].upper() == "ED":
        raise ValidationError("recipient_public_key", "Ed25519 keys cannot receive sealed payloads; use secp256k1")
    try:
        raw = bytes.fromhex(public_key)
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, raw)
    except ValueError as e:
        raise ValidationError("recipient_public_key", f"not a secp256k1 public key: {e}") from e


def load_private_key(private_key: PrivateKeyLike) -> ec.EllipticCurvePrivateKey:
    """Parse a secp256k1 private key; raises DecryptionFailed on any problem."""
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        if not isinstance(private_key.curve, ec.SECP256K1):
            raise DecryptionFailed()
        return private_key
    if not isinstance(private_key, str):
        raise DecryptionFailed()
    key_hex = private_key
    # Some wallets export 33 bytes with a leading zero byte.
    if len(key_hex) == 66 and key_hex.startswith("00"):
        key_hex = key_hex[2:]
    if len(key_hex) != 64:
        raise DecryptionFailed()
    try:
        return ec.derive_private_key(int(key_hex, 16), CURVE)
    except ValueError:
        raise DecryptionFailed() from None


def fingerprint(public_key: PublicKeyLike) -> str:
    """SHA-256 of the compressed public key, lowercase hex."""
    return hashlib.sha256(_compressed(load_public_key(public_key))).hexdigest()


def generate_keypair() -> Tuple[str, str]:
    """New secp256k1 keypair as (private hex, compressed public hex)."""
    private_key = ec.generate_private_key(CURVE)
    private_hex = format(private_key.private_numbers().private_value, "064x").upper()
    return private_hex, _compressed(private_key.public_key()).hex().upper()


def _derive_key(shared_secret: bytes, ephemeral_public: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=ephemeral_public,
        info=HKDF_INFO,
    ).derive(shared_secret)


# ---------------------------------------------------------------------------
# Seal / unseal
# ---------------------------------------------------------------------------


def seal(payload: Union[bytes, str], recipient_public_key: PublicKeyLike) -> SealedPayload:
    """Encrypt ``payload`` so only the holder of the matching private key can read it."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    if not isinstance(payload, (bytes, bytearray)):
        raise ValidationError("payload", "must be bytes or str")

    recipient = load_public_key(recipient_public_key)
    recipient_fp = hashlib.sha256(_compressed(recipient)).digest()

    ephemeral = ec.generate_private_key(CURVE)
    ephemeral_public = _compressed(ephemeral.public_key())
    key = _derive_key(ephemeral.exchange(ec.ECDH(), recipient), ephemeral_public)

    nonce = os.urandom(NONCE_LENGTH)
    ct = AESGCM(key).encrypt(nonce, bytes(payload), recipient_fp)

    logger.debug("Sealed payload", recipient_fingerprint=recipient_fp.hex(), size=len(payload))
    return SealedPayload(
        ciphertext=ephemeral_public + nonce + ct,
        recipient_public_key_fingerprint=recipient_fp.hex(),
    )


def unseal(sealed: Union[SealedPayload, str], local_private_key: PrivateKeyLike) -> bytes:
    """Decrypt a sealed payload. Any failure raises DecryptionFailed."""
    try:
        return _open(sealed, load_private_key(local_private_key))
    except DecryptionFailed:
        # One message for every cause: the log must not say why opening failed.
        logger.warning("Sealed payload could not be opened", operation="unseal")
        raise


def _open(sealed: Union[SealedPayload, str], private_key: ec.EllipticCurvePrivateKey) -> bytes:
    if isinstance(sealed, str):
        sealed = SealedPayload.from_hex(sealed)
    if not isinstance(sealed, SealedPayload):
        raise DecryptionFailed()

    own_fp = hashlib.sha256(_compressed(private_key.public_key())).digest()
    if own_fp.hex() != sealed.recipient_public_key_fingerprint.lower():
        raise DecryptionFailed()

    body = sealed.ciphertext
    if len(body) < COMPRESSED_POINT_LENGTH + NONCE_LENGTH + TAG_LENGTH:
        raise DecryptionFailed()
    ephemeral_public = body[:COMPRESSED_POINT_LENGTH]
    nonce = body[COMPRESSED_POINT_LENGTH:COMPRESSED_POINT_LENGTH + NONCE_LENGTH]
    ct = body[COMPRESSED_POINT_LENGTH + NONCE_LENGTH:]

    try:
        ephemeral = ec.EllipticCurvePublicKey.from_encoded_point(CURVE, ephemeral_public)
        key = _derive_key(private_key.exchange(ec.ECDH(), ephemeral), ephemeral_public)
        return AESGCM(key).decrypt(nonce, ct, own_fp)
    except (InvalidTag, ValueError):
        raise DecryptionFailed() from None
