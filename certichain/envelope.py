"""Metadata envelope codec.

A lot token carries a small JSON document (the envelope) in its metadata
field. The document is serialized canonically (sorted keys, no
insignificant whitespace, UTF-8, no floats) and embedded as uppercase hex.
Canonical serialization makes ``encode(decode(encode(x))) == encode(x)``.

The envelope shape is described by ``schemas/lot-envelope.schema.json``;
``MetadataEnvelope.from_dict`` validates against it.
"""

from __future__ import annotations

import binascii
import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from certichain.errors import MalformedEnvelope, ValidationError

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
ENVELOPE_SCHEMA = SCHEMAS_DIR / "lot-envelope.schema.json"

# Ledger limit on token metadata, measured on the decoded bytes.
MAX_ENVELOPE_BYTES = 1024

DEFAULT_LABORATORY_NAME = "Laboratory"


class EnvelopeStatus(Enum):
    SALE_INITIATED = "SALE_INITIATED"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"


class HistoryAction:
    """Well-known history actions."""
    CREATED = "CREATED"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    TRANSFERRED = "TRANSFERRED"


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Canonical JSON
# ---------------------------------------------------------------------------


def _check_json_types(obj: Any, path: str = "$") -> None:
    if obj is None or isinstance(obj, (str, bool, int)):
        return
    if isinstance(obj, float):
        raise ValidationError(path, "floats are not allowed; use integers or strings", obj)
    if isinstance(obj, (list, tuple)):
        for i, item in enumerate(obj):
            _check_json_types(item, f"{path}[{i}]")
        return
    if isinstance(obj, dict):
        for k, v in obj.items():
            if not isinstance(k, str):
                raise ValidationError(path, f"object keys must be strings, got {type(k).__name__}", k)
            _check_json_types(v, f"{path}.{k}")
        return
    raise ValidationError(path, f"unsupported type {type(obj).__name__}", obj)


def canonical_json(obj: Any) -> bytes:
    """Canonical UTF-8 JSON bytes (sorted keys, compact separators, floats rejected)."""
    _check_json_types(obj)
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def encode(obj: Dict[str, Any]) -> bytes:
    """Encode a JSON object to uppercase hex, returned as ASCII bytes."""
    if not isinstance(obj, dict):
        raise ValidationError("envelope", "must be a JSON object", obj)
    return binascii.hexlify(canonical_json(obj)).upper()


def _reject_number(token: str) -> Any:
    raise MalformedEnvelope(f"envelope contains a non-integer number: {token}")


def decode(data: Union[bytes, str]) -> Dict[str, Any]:
    """Decode hex (either case) into a JSON object."""
    try:
        raw = binascii.unhexlify(data)
    except (ValueError, TypeError) as e:
        raise MalformedEnvelope(f"envelope is not valid hex: {e}") from e

    try:
        obj = json.loads(raw.decode("utf-8"), parse_float=_reject_number, parse_constant=_reject_number)
    except UnicodeDecodeError as e:
        raise MalformedEnvelope("envelope is not valid UTF-8") from e
    except json.JSONDecodeError as e:
        raise MalformedEnvelope(f"envelope is not valid JSON: {e.msg}") from e

    if not isinstance(obj, dict):
        raise MalformedEnvelope(f"envelope must be a JSON object, got {type(obj).__name__}")
    return obj


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        schema_id = schema.get("$id") or f"https://schemas.certichain.org/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=1)
def envelope_validator() -> Draft202012Validator:
    schema = json.loads(ENVELOPE_SCHEMA.read_text(encoding="utf-8"))
    return Draft202012Validator(schema, registry=_schema_registry())


def validate_envelope_dict(obj: Any) -> List[str]:
    """Schema errors for an envelope object (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(envelope_validator().iter_errors(obj), key=lambda e: e.json_path)
    ]


# ---------------------------------------------------------------------------
# Envelope model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HistoryEntry:
    action: str
    by: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "by": self.by, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HistoryEntry":
        return cls(action=d["action"], by=d["by"], timestamp=d["timestamp"])


@dataclass(frozen=True)
class MetadataEnvelope:
    """Provenance envelope of one lot.

    Instances are immutable; ``with_event`` returns the next version with
    one appended history entry and ``step + 1``.
    """
    lot_number: str
    issuer_address: str
    counterparty_address: str
    laboratory_address: str
    created_at: int
    linked_artifact_hash: str = ""
    laboratory_public_key: Optional[str] = None
    laboratory_name: str = DEFAULT_LABORATORY_NAME
    carrier_id: Optional[str] = None
    step: int = 1
    status: EnvelopeStatus = EnvelopeStatus.SALE_INITIATED
    history: tuple = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lot_number": self.lot_number,
            "linked_artifact_hash": self.linked_artifact_hash,
            "issuer_address": self.issuer_address,
            "counterparty_address": self.counterparty_address,
            "laboratory_address": self.laboratory_address,
            "laboratory_public_key": self.laboratory_public_key,
            "laboratory_name": self.laboratory_name,
            "carrier_id": self.carrier_id,
            "step": self.step,
            "status": self.status.value,
            "history": [h.to_dict() for h in self.history],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MetadataEnvelope":
        errors = validate_envelope_dict(d)
        if errors:
            raise MalformedEnvelope("envelope failed schema validation: " + "; ".join(errors))
        return cls(
            lot_number=d["lot_number"],
            linked_artifact_hash=d["linked_artifact_hash"],
            issuer_address=d["issuer_address"],
            counterparty_address=d["counterparty_address"],
            laboratory_address=d["laboratory_address"],
            laboratory_public_key=d["laboratory_public_key"],
            laboratory_name=d["laboratory_name"],
            carrier_id=d["carrier_id"],
            step=d["step"],
            status=EnvelopeStatus(d["status"]),
            history=tuple(HistoryEntry.from_dict(h) for h in d["history"]),
            created_at=d["created_at"],
        )

    def with_event(
        self,
        action: str,
        by: str,
        status: Optional[EnvelopeStatus] = None,
        timestamp: Optional[int] = None,
    ) -> "MetadataEnvelope":
        entry = HistoryEntry(action=action, by=by, timestamp=now_ms() if timestamp is None else timestamp)
        return replace(
            self,
            step=self.step + 1,
            status=status or self.status,
            history=self.history + (entry,),
        )

    @property
    def last_event(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None


def build_initial_envelope(
    lot_number: str,
    issuer_address: str,
    counterparty_address: str,
    laboratory_address: str,
    laboratory_public_key: Optional[str] = None,
    laboratory_name: str = DEFAULT_LABORATORY_NAME,
    linked_artifact_hash: str = "",
    carrier_id: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> MetadataEnvelope:
    ts = now_ms() if timestamp is None else timestamp
    return MetadataEnvelope(
        lot_number=lot_number,
        linked_artifact_hash=linked_artifact_hash,
        issuer_address=issuer_address,
        counterparty_address=counterparty_address,
        laboratory_address=laboratory_address,
        laboratory_public_key=laboratory_public_key,
        laboratory_name=laboratory_name or DEFAULT_LABORATORY_NAME,
        carrier_id=carrier_id,
        step=1,
        status=EnvelopeStatus.SALE_INITIATED,
        history=(HistoryEntry(action=HistoryAction.CREATED, by=issuer_address, timestamp=ts),),
        created_at=ts,
    )


def encode_envelope(envelope: MetadataEnvelope) -> bytes:
    """Encode an envelope, enforcing the ledger metadata size limit."""
    encoded = encode(envelope.to_dict())
    size = len(encoded) // 2
    if size > MAX_ENVELOPE_BYTES:
        raise ValidationError(
            "metadata_envelope",
            f"encoded envelope is {size} bytes, limit is {MAX_ENVELOPE_BYTES}",
            size,
        )
    return encoded


def decode_envelope(data: Union[bytes, str]) -> MetadataEnvelope:
    return MetadataEnvelope.from_dict(decode(data))
