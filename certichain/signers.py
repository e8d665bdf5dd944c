"""Authorization scheme (signer list) management.

A lot issuer delegates co-signing to the lot's laboratory through a signer
list. Setting a list replaces the previous one wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from certichain.addresses import require_address
from certichain.errors import AuthorizationRejected, ValidationError
from certichain.ledger import SubmissionAdapter, SubmissionResult, TransactionIntent
from certichain.observability import CertichainLayer, get_logger

logger = get_logger("manager", CertichainLayer.SIGNERS)

MAX_SIGNER_ENTRIES = 32
MIN_WEIGHT = 1
MAX_WEIGHT = 65535


@dataclass(frozen=True)
class SignerEntry:
    account: str
    weight: int = 1

    def to_ledger_json(self) -> Dict[str, Any]:
        return {"SignerEntry": {"Account": self.account, "SignerWeight": self.weight}}


@dataclass(frozen=True)
class AuthorizationScheme:
    quorum: int
    entries: tuple

    @property
    def total_weight(self) -> int:
        return sum(e.weight for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quorum": self.quorum,
            "entries": [{"account": e.account, "weight": e.weight} for e in self.entries],
        }


def single_cosigner(laboratory: str, weight: int = 1) -> AuthorizationScheme:
    """Quorum 1 with the laboratory as the only signer."""
    return AuthorizationScheme(quorum=1, entries=(SignerEntry(laboratory, weight),))


def validate_scheme(issuer_account: str, quorum: Any, entries: Sequence[SignerEntry]) -> AuthorizationScheme:
    """Check ledger constraints; raises ValidationError on the first violation."""
    require_address("issuer_account", issuer_account)

    if not entries:
        raise ValidationError("entries", "at least one signer entry is required")
    if len(entries) > MAX_SIGNER_ENTRIES:
        raise ValidationError("entries", f"at most {MAX_SIGNER_ENTRIES} signer entries", len(entries))

    seen = set()
    for i, entry in enumerate(entries):
        require_address(f"entries[{i}].account", entry.account)
        if entry.account == issuer_account:
            raise ValidationError(f"entries[{i}].account", "issuer may not list itself", entry.account)
        if entry.account in seen:
            raise ValidationError(f"entries[{i}].account", "duplicate signer", entry.account)
        seen.add(entry.account)
        if isinstance(entry.weight, bool) or not isinstance(entry.weight, int):
            raise ValidationError(f"entries[{i}].weight", "must be an integer", entry.weight)
        if not MIN_WEIGHT <= entry.weight <= MAX_WEIGHT:
            raise ValidationError(f"entries[{i}].weight", f"must be {MIN_WEIGHT}..{MAX_WEIGHT}", entry.weight)

    if isinstance(quorum, bool) or not isinstance(quorum, int) or quorum < 1:
        raise ValidationError("quorum", "must be a positive integer", quorum)
    scheme = AuthorizationScheme(quorum=quorum, entries=tuple(entries))
    if quorum > scheme.total_weight:
        raise ValidationError(
            "quorum",
            f"quorum {quorum} exceeds total signer weight {scheme.total_weight}",
            quorum,
        )
    return scheme


def build_signer_list_intent(issuer_account: str, scheme: AuthorizationScheme) -> TransactionIntent:
    return TransactionIntent("SignerListSet", issuer_account, {
        "SignerQuorum": scheme.quorum,
        "SignerEntries": [e.to_ledger_json() for e in scheme.entries],
    })


class SignerListManager:
    def __init__(self, adapter: SubmissionAdapter):
        self._adapter = adapter

    def configure(
        self,
        issuer_account: str,
        quorum: int,
        entries: Sequence[SignerEntry],
    ) -> SubmissionResult:
        """
        Replace the issuer's signer list.

        Raises ValidationError before submitting anything, and
        AuthorizationRejected with the ledger's code if it declines.
        """
        scheme = validate_scheme(issuer_account, quorum, list(entries))
        intent = build_signer_list_intent(issuer_account, scheme)
        result = self._adapter.submit_checked(intent, AuthorizationRejected)
        logger.info(
            "Signer list configured",
            operation="configure",
            issuer=issuer_account,
            quorum=scheme.quorum,
            signers=len(scheme.entries),
            receipt_id=result.receipt_id,
        )
        return result


def entries_from_dicts(items: Optional[List[Dict[str, Any]]]) -> List[SignerEntry]:
    """Accept ``[{"account": ..., "weight": ...}]`` as caller input."""
    out: List[SignerEntry] = []
    for i, item in enumerate(items or []):
        if isinstance(item, SignerEntry):
            out.append(item)
            continue
        if not isinstance(item, dict) or "account" not in item:
            raise ValidationError(f"entries[{i}]", "expected {account, weight}", item)
        out.append(SignerEntry(account=item["account"], weight=item.get("weight", 1)))
    return out
