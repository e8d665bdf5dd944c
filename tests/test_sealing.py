"""Sealed-payload gate tests."""

import io
import json
import logging

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from certichain.errors import DecryptionFailed, ValidationError
from certichain.observability import configure_logging
from certichain.sealing import (
    COMPRESSED_POINT_LENGTH,
    SealedPayload,
    fingerprint,
    generate_keypair,
    load_public_key,
    seal,
    unseal,
)


@pytest.fixture
def keys():
    return generate_keypair()


class TestSealUnseal:

    def test_round_trip(self, keys):
        priv, pub = keys
        sealed = seal(b"moisture=11%; pesticide=none", pub)
        assert unseal(sealed, priv) == b"moisture=11%; pesticide=none"

    def test_str_payload_is_utf8(self, keys):
        priv, pub = keys
        assert unseal(seal("Café grade A", pub), priv) == "Café grade A".encode("utf-8")

    def test_empty_payload(self, keys):
        priv, pub = keys
        assert unseal(seal(b"", pub), priv) == b""

    def test_hex_round_trip(self, keys):
        priv, pub = keys
        sealed = seal(b"secret", pub)
        restored = SealedPayload.from_hex(sealed.to_hex())
        assert restored == sealed
        assert unseal(sealed.to_hex(), priv) == b"secret"

    def test_fresh_ephemeral_key_each_time(self, keys):
        _, pub = keys
        a, b = seal(b"same", pub), seal(b"same", pub)
        assert a.ciphertext != b.ciphertext
        assert a.recipient_public_key_fingerprint == b.recipient_public_key_fingerprint

    def test_fingerprint_matches_recipient(self, keys):
        _, pub = keys
        assert seal(b"x", pub).recipient_public_key_fingerprint == fingerprint(pub)

    def test_uncompressed_public_key_accepted(self, keys):
        priv, pub = keys
        key = load_public_key(pub)
        uncompressed = key.public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        ).hex()
        assert fingerprint(uncompressed) == fingerprint(pub)
        assert unseal(seal(b"x", uncompressed), priv) == b"x"

    def test_private_key_with_leading_zero_byte(self, keys):
        priv, pub = keys
        assert unseal(seal(b"x", pub), "00" + priv) == b"x"

    def test_private_key_object(self, keys):
        priv, pub = keys
        key = ec.derive_private_key(int(priv, 16), ec.SECP256K1())
        assert unseal(seal(b"x", pub), key) == b"x"


class TestFailures:

    def test_wrong_key_fails(self, keys):
        _, pub = keys
        other_priv, _ = generate_keypair()
        with pytest.raises(DecryptionFailed) as exc:
            unseal(seal(b"secret", pub), other_priv)
        assert str(exc.value) == "decryption failed"

    def test_relabelled_payload_fails(self, keys):
        """Pointing the fingerprint at another key does not help that key."""
        _, pub = keys
        other_priv, other_pub = generate_keypair()
        sealed = seal(b"secret", pub)
        forged = SealedPayload(sealed.ciphertext, fingerprint(other_pub))
        with pytest.raises(DecryptionFailed):
            unseal(forged, other_priv)

    def test_tampered_ciphertext_fails(self, keys):
        priv, pub = keys
        sealed = seal(b"secret", pub)
        body = bytearray(sealed.ciphertext)
        body[-1] ^= 0x01
        with pytest.raises(DecryptionFailed):
            unseal(SealedPayload(bytes(body), sealed.recipient_public_key_fingerprint), priv)

    def test_tampered_ephemeral_key_fails(self, keys):
        priv, pub = keys
        sealed = seal(b"secret", pub)
        body = bytearray(sealed.ciphertext)
        body[COMPRESSED_POINT_LENGTH - 1] ^= 0x01
        with pytest.raises(DecryptionFailed):
            unseal(SealedPayload(bytes(body), sealed.recipient_public_key_fingerprint), priv)

    @pytest.mark.parametrize("private_key", ["", "zz" * 32, "AB" * 10, "00" * 32, 12345, None])
    def test_malformed_private_key(self, keys, private_key):
        _, pub = keys
        with pytest.raises(DecryptionFailed) as exc:
            unseal(seal(b"secret", pub), private_key)
        assert str(exc.value) == "decryption failed"

    @pytest.mark.parametrize("blob", ["not-hex", "AB" * 20, ""])
    def test_malformed_sealed_blob(self, keys, blob):
        priv, _ = keys
        with pytest.raises(DecryptionFailed):
            unseal(blob, priv)

    def test_all_failures_look_the_same(self, keys):
        priv, pub = keys
        other_priv, _ = generate_keypair()
        sealed = seal(b"secret", pub)
        messages = set()
        for attempt in (
            lambda: unseal(sealed, other_priv),
            lambda: unseal("garbage", priv),
            lambda: unseal(SealedPayload(sealed.ciphertext[:-1], sealed.recipient_public_key_fingerprint), priv),
        ):
            with pytest.raises(DecryptionFailed) as exc:
                attempt()
            messages.add((type(exc.value), str(exc.value)))
        assert len(messages) == 1

    def test_failures_log_the_same_warning(self, keys):
        priv, pub = keys
        other_priv, _ = generate_keypair()
        sealed = seal(b"secret", pub)
        body = bytearray(sealed.ciphertext)
        body[-1] ^= 0x01

        stream = io.StringIO()
        handler = configure_logging(level="debug", fmt="json", stream=stream)
        try:
            for attempt in (
                lambda: unseal(sealed, other_priv),
                lambda: unseal(SealedPayload(bytes(body), sealed.recipient_public_key_fingerprint), priv),
                lambda: unseal(sealed, "zz" * 32),
            ):
                with pytest.raises(DecryptionFailed):
                    attempt()
        finally:
            logging.getLogger("certichain").removeHandler(handler)

        warnings = [
            (e["message"], e.get("operation"), e.get("context")) for e in map(json.loads, stream.getvalue().splitlines())
            if e["level"] == "warning"
        ]
        assert len(warnings) == 3
        assert len(set(json.dumps(w, sort_keys=True) for w in warnings)) == 1
        assert warnings[0][0] == "Sealed payload could not be opened"

    def test_ed25519_recipient_rejected(self):
        with pytest.raises(ValidationError) as exc:
            seal(b"x", "ED" + "11" * 32)
        assert exc.value.field == "recipient_public_key"

    def test_garbage_public_key_rejected(self):
        with pytest.raises(ValidationError):
            seal(b"x", "02" + "00" * 10)
