"""Ledger account references.

Classic ledger addresses are base58check strings over the ledger's own
alphabet: one version byte (0x00), a 20-byte account id and a 4-byte
double-SHA-256 checksum.
"""

from __future__ import annotations

import hashlib
from typing import Any

from certichain.errors import ValidationError

LEDGER_ALPHABET = b"rpshnaf39wBUDNEGHJKLM4PQRST7VWXYZ2bcdeCg65jkm8oFqi1tuvAxyz"
LEDGER_MAP = {c: i for i, c in enumerate(LEDGER_ALPHABET)}

ACCOUNT_ID_VERSION = 0x00
ACCOUNT_ID_LENGTH = 20


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in LEDGER_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + LEDGER_MAP[c]
    n_pad = 0
    for c in s_bytes:
        if c == LEDGER_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(LEDGER_ALPHABET[rem])
    out.extend(LEDGER_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def _checksum(payload: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def encode_classic_address(account_id: bytes) -> str:
    if len(account_id) != ACCOUNT_ID_LENGTH:
        raise ValueError(f"account id must be {ACCOUNT_ID_LENGTH} bytes")
    payload = bytes([ACCOUNT_ID_VERSION]) + account_id
    return b58encode(payload + _checksum(payload))


def decode_classic_address(address: str) -> bytes:
    """Return the 20-byte account id; ValueError if the address is invalid."""
    raw = b58decode(address)
    if len(raw) != 1 + ACCOUNT_ID_LENGTH + 4:
        raise ValueError("Invalid address length")
    payload, checksum = raw[:-4], raw[-4:]
    if payload[0] != ACCOUNT_ID_VERSION:
        raise ValueError("Invalid address version")
    if _checksum(payload) != checksum:
        raise ValueError("Invalid address checksum")
    return payload[1:]


def is_valid_address(address: Any) -> bool:
    if not isinstance(address, str) or not address.startswith("r"):
        return False
    try:
        decode_classic_address(address)
    except (ValueError, UnicodeEncodeError):
        return False
    return True


def require_address(field: str, address: Any) -> str:
    if not is_valid_address(address):
        raise ValidationError(field, "not a valid ledger account address", address)
    return address


def address_from_seed_text(text: str) -> str:
    """Deterministic address for a label; used for fixtures and local ledgers."""
    return encode_classic_address(hashlib.sha256(text.encode("utf-8")).digest()[:ACCOUNT_ID_LENGTH])
