"""Credential gate and issuer.

Roles (buyer, seller, laboratory, transporter) are proven with on-ledger
credentials created by a trusted issuer and accepted by the subject. The
gate reads the ledger on every check; nothing is cached, so a revocation
takes effect on the next call.

Credential types are plain strings in configuration and hex on the ledger.
Expirations are ledger-epoch seconds (seconds since 2000-01-01T00:00:00Z).
"""

from __future__ import annotations

import binascii
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from certichain.addresses import require_address
from certichain.config import CertichainConfig, get_config
from certichain.errors import LedgerUnavailable, SubmissionFailed, ValidationError
from certichain.ledger import (
    TRANSPORT_ERRORS,
    LedgerReader,
    SubmissionAdapter,
    SubmissionResult,
    TransactionIntent,
)
from certichain.observability import CertichainLayer, get_logger

logger = get_logger("gate", CertichainLayer.CREDENTIALS)

LEDGER_EPOCH_OFFSET = 946684800


def to_ledger_time(unix_seconds: float) -> int:
    return int(unix_seconds) - LEDGER_EPOCH_OFFSET


def from_ledger_time(ledger_seconds: int) -> int:
    return int(ledger_seconds) + LEDGER_EPOCH_OFFSET


def credential_type_hex(credential_type: str) -> str:
    return binascii.hexlify(credential_type.encode("utf-8")).decode("ascii").upper()


def credential_type_from_hex(value: str) -> str:
    return bytes.fromhex(value).decode("utf-8")


def resolve_credential_type(role: str, config: Optional[CertichainConfig] = None) -> str:
    """Map a role name (``LABO``) to its configured credential type."""
    config = config or get_config()
    types = config.credentials.credential_types.get()
    key = (role or "").upper()
    if key not in types:
        raise ValidationError("role", f"unknown role; expected one of {sorted(types)}", role)
    return types[key]


@dataclass
class Credential:
    issuer: str
    subject: str
    credential_type: str
    accepted: bool = False
    expiration: Optional[int] = None  # ledger epoch seconds
    uri: Optional[str] = None
    revoked: bool = False

    def is_expired(self, now_unix: Optional[float] = None) -> bool:
        # No expiration means the credential never expires.
        if self.expiration is None:
            return False
        now = time.time() if now_unix is None else now_unix
        return from_ledger_time(self.expiration) <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issuer": self.issuer,
            "subject": self.subject,
            "credential_type": self.credential_type,
            "accepted": self.accepted,
            "expiration": self.expiration,
            "uri": self.uri,
            "revoked": self.revoked,
        }


class GateReason(Enum):
    GRANTED = "Granted"
    NOT_FOUND = "NotFound"
    REVOKED = "Revoked"
    EXPIRED = "Expired"
    BYPASSED = "Bypassed"


@dataclass
class GateDecision:
    granted: bool
    reason: GateReason
    subject: str
    issuer: str
    credential_type: str
    credential: Optional[Credential] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "reason": self.reason.value,
            "subject": self.subject,
            "issuer": self.issuer,
            "credential_type": self.credential_type,
            "credential": self.credential.to_dict() if self.credential else None,
        }


class CredentialGate:
    """Checks that a subject holds a live credential from a trusted issuer."""

    def __init__(self, reader: LedgerReader, clock: Callable[[], float] = time.time):
        self._reader = reader
        self._clock = clock

    def verify(
        self,
        issuer: str,
        subject: str,
        credential_type: str,
        *,
        enforce: bool = True,
    ) -> GateDecision:
        """
        Decide whether ``subject`` holds ``credential_type`` from ``issuer``.

        A denial is returned, not raised. Only a ledger transport failure
        raises (LedgerUnavailable). With ``enforce=False`` the ledger is not
        consulted and the decision is ``Bypassed``.
        """
        if not enforce:
            logger.warning(
                "Credential check bypassed",
                operation="verify",
                subject=subject,
                credential_type=credential_type,
            )
            return GateDecision(True, GateReason.BYPASSED, subject, issuer, credential_type)

        try:
            credential = self._reader.get_credential(subject, issuer, credential_type)
        except TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"credential lookup failed: {e}") from e

        if credential is None:
            decision = GateDecision(False, GateReason.NOT_FOUND, subject, issuer, credential_type)
        elif credential.revoked or not credential.accepted:
            decision = GateDecision(False, GateReason.REVOKED, subject, issuer, credential_type, credential)
        elif credential.is_expired(self._clock()):
            decision = GateDecision(False, GateReason.EXPIRED, subject, issuer, credential_type, credential)
        else:
            decision = GateDecision(True, GateReason.GRANTED, subject, issuer, credential_type, credential)

        logger.info(
            f"Credential check {decision.reason.value}",
            operation="verify",
            subject=subject,
            credential_type=credential_type,
            granted=decision.granted,
        )
        return decision


class CredentialIssuer:
    """Creates and deletes credentials on behalf of the trusted issuer account."""

    def __init__(
        self,
        adapter: SubmissionAdapter,
        issuer_address: str,
        config: Optional[CertichainConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._adapter = adapter
        self.issuer_address = require_address("issuer_address", issuer_address)
        self._config = config or get_config()
        self._clock = clock

    def build_create(
        self,
        subject: str,
        role: str,
        expiration_seconds: Optional[int] = None,
        uri: Optional[str] = None,
    ) -> TransactionIntent:
        require_address("subject", subject)
        credential_type = resolve_credential_type(role, self._config)
        if expiration_seconds is None:
            expiration_seconds = self._config.credentials.default_expiration_seconds.get()
        if expiration_seconds <= 0:
            raise ValidationError("expiration_seconds", "must be positive", expiration_seconds)

        fields: Dict[str, Any] = {
            "Subject": subject,
            "CredentialType": credential_type_hex(credential_type),
            "Expiration": to_ledger_time(self._clock() + expiration_seconds),
        }
        if uri:
            fields["URI"] = binascii.hexlify(uri.encode("utf-8")).decode("ascii").upper()
        return TransactionIntent("CredentialCreate", self.issuer_address, fields)

    def issue(
        self,
        subject: str,
        role: str,
        expiration_seconds: Optional[int] = None,
        uri: Optional[str] = None,
    ) -> SubmissionResult:
        intent = self.build_create(subject, role, expiration_seconds, uri)
        result = self._adapter.submit_checked(intent, SubmissionFailed)
        logger.info("Credential issued", operation="issue", subject=subject, role=role)
        return result

    def revoke(self, subject: str, role: str) -> SubmissionResult:
        require_address("subject", subject)
        credential_type = resolve_credential_type(role, self._config)
        intent = TransactionIntent("CredentialDelete", self.issuer_address, {
            "Subject": subject,
            "Issuer": self.issuer_address,
            "CredentialType": credential_type_hex(credential_type),
        })
        result = self._adapter.submit_checked(intent, SubmissionFailed)
        logger.info("Credential revoked", operation="revoke", subject=subject, role=role)
        return result

    def accept(self, subject: str, issuer: str, role: str) -> SubmissionResult:
        """Subject-side acceptance; the submitter must sign as ``subject``."""
        require_address("subject", subject)
        require_address("issuer", issuer)
        credential_type = resolve_credential_type(role, self._config)
        intent = TransactionIntent("CredentialAccept", subject, {
            "Issuer": issuer,
            "CredentialType": credential_type_hex(credential_type),
        })
        return self._adapter.submit_checked(intent, SubmissionFailed)
