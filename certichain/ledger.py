"""
CERTICHAIN Transaction Submission Adapter

Boundary between the lifecycle engine and the ledger. The engine builds
TransactionIntents; a TransactionSubmitter (wallet + RPC client, external)
signs and submits them and returns whatever response shape its client
library produces. This module normalises those responses into one
SubmissionResult and parses the affected-node metadata into typed effects.

Architecture:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    LIFECYCLE ORCHESTRATOR                            │
    │  SignerListSet, MPTokenIssuanceCreate, Payment, Credential*          │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │ TransactionIntent
                                   ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    SUBMISSION ADAPTER                                │
    │  fingerprint, sequence-conflict retry, response normalisation        │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │ tx_json
                                   ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                 TransactionSubmitter (external)                      │
    └─────────────────────────────────────────────────────────────────────┘

Result codes follow the ledger's class prefixes: ``tes`` applied, ``tec``
claimed fee but failed, ``tef``/``tem`` rejected, ``ter``/``tel`` retry or
local. Only sequence conflicts are retried by the adapter.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import binascii
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Type, Union

from certichain.envelope import canonical_json
from certichain.errors import LedgerRefusal, LedgerUnavailable, SubmissionFailed
from certichain.observability import CertichainLayer, get_logger
from certichain.resilience import RetryExhaustedError, RetryPolicy

if TYPE_CHECKING:
    from certichain.credentials import Credential

logger = get_logger("adapter", CertichainLayer.LEDGER)

SUCCESS_CODE = "tesSUCCESS"
UNKNOWN_RESULT_CODE = "UNKNOWN"

SEQUENCE_CONFLICT_CODES = frozenset({"tefPAST_SEQ", "terPRE_SEQ"})
SEQUENCE_CONFLICT_PREFIXES = ("telCAN_NOT_QUEUE",)

TRANSPORT_ERRORS = (ConnectionError, TimeoutError, OSError)


# =============================================================================
# RESULT CODES
# =============================================================================


def is_sequence_conflict(code: Optional[str]) -> bool:
    if not code:
        return False
    return code in SEQUENCE_CONFLICT_CODES or code.startswith(SEQUENCE_CONFLICT_PREFIXES)


def is_retryable_code(code: Optional[str]) -> bool:
    """True when resubmitting the same intent may succeed."""
    if not code:
        return False
    return code.startswith(("ter", "tel")) or is_sequence_conflict(code)


# =============================================================================
# INTENTS
# =============================================================================


def _hex(text: str) -> str:
    return binascii.hexlify(text.encode("utf-8")).decode("ascii").upper()


@dataclass(frozen=True)
class Memo:
    """Ledger memo; ``data_hex`` is already hex encoded."""
    memo_type: str
    data_hex: str

    @classmethod
    def text(cls, memo_type: str, text: str) -> "Memo":
        return cls(memo_type=memo_type, data_hex=_hex(text))

    def to_ledger_json(self) -> Dict[str, Any]:
        return {"Memo": {"MemoType": _hex(self.memo_type), "MemoData": self.data_hex.upper()}}


@dataclass(frozen=True)
class TransactionIntent:
    """An unsigned transaction the engine wants applied."""
    transaction_type: str
    account: str
    fields: Dict[str, Any] = field(default_factory=dict)
    memos: tuple = ()

    def to_ledger_json(self) -> Dict[str, Any]:
        tx: Dict[str, Any] = {"TransactionType": self.transaction_type, "Account": self.account}
        tx.update(self.fields)
        if self.memos:
            tx["Memos"] = [m.to_ledger_json() for m in self.memos]
        return tx

    @property
    def fingerprint(self) -> str:
        return fingerprint_tx_json(self.to_ledger_json())

    def memo(self, memo_type: str) -> Optional[Memo]:
        for m in self.memos:
            if m.memo_type == memo_type:
                return m
        return None


def fingerprint_tx_json(tx_json: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON of an unsigned transaction."""
    return hashlib.sha256(canonical_json(tx_json)).hexdigest()


# =============================================================================
# EFFECTS
# =============================================================================


class NodeKind(Enum):
    CREATED = "CreatedNode"
    MODIFIED = "ModifiedNode"
    DELETED = "DeletedNode"


@dataclass(frozen=True)
class LedgerEffect:
    """One affected ledger entry from transaction metadata."""
    node_kind: NodeKind
    entry_type: str
    ledger_index: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_kind": self.node_kind.value,
            "entry_type": self.entry_type,
            "ledger_index": self.ledger_index,
        }


@dataclass(frozen=True)
class Found:
    ledger_index: str


@dataclass(frozen=True)
class NotFound:
    entry_type: str


MatchResult = Union[Found, NotFound]


def parse_effects(meta: Optional[Dict[str, Any]]) -> List[LedgerEffect]:
    """Parse ``meta.AffectedNodes`` into typed effects, skipping unknown node kinds."""
    if not isinstance(meta, dict):
        return []
    effects: List[LedgerEffect] = []
    for node in meta.get("AffectedNodes") or []:
        if not isinstance(node, dict):
            continue
        for kind in NodeKind:
            body = node.get(kind.value)
            if isinstance(body, dict):
                effects.append(LedgerEffect(
                    node_kind=kind,
                    entry_type=str(body.get("LedgerEntryType", "")),
                    ledger_index=str(body.get("LedgerIndex", "")),
                    fields=dict(body.get("NewFields") or body.get("FinalFields") or {}),
                ))
    return effects


def match_created(effects: List[LedgerEffect], entry_type: str) -> MatchResult:
    """Find the first created entry of ``entry_type``."""
    for effect in effects:
        if effect.node_kind is NodeKind.CREATED and effect.entry_type == entry_type and effect.ledger_index:
            return Found(effect.ledger_index)
    return NotFound(entry_type)


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class SubmissionResult:
    """Normalised outcome of one submission."""
    success: bool
    native_result_code: str
    receipt_id: Optional[str] = None
    effects: List[LedgerEffect] = field(default_factory=list)
    fingerprint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "native_result_code": self.native_result_code,
            "receipt_id": self.receipt_id,
            "fingerprint": self.fingerprint,
            "effects": [e.to_dict() for e in self.effects],
        }


def normalize_response(
    raw: Any,
    fingerprint: str = "",
    success_code: str = SUCCESS_CODE,
) -> SubmissionResult:
    """
    Fold the response shapes client libraries return into a SubmissionResult.

    Accepts ``{"result": {...}}`` or the inner object directly. The result
    code is read from ``meta.TransactionResult`` falling back to
    ``engine_result``; the hash from the result, its ``tx_json`` or the
    outer envelope.
    """
    if not isinstance(raw, dict):
        return SubmissionResult(success=False, native_result_code=UNKNOWN_RESULT_CODE, fingerprint=fingerprint)

    result = raw.get("result") if isinstance(raw.get("result"), dict) else raw
    meta = result.get("meta") if isinstance(result.get("meta"), dict) else None

    code = (meta or {}).get("TransactionResult") or result.get("engine_result") or UNKNOWN_RESULT_CODE
    tx_json = result.get("tx_json") if isinstance(result.get("tx_json"), dict) else {}
    receipt_id = result.get("hash") or tx_json.get("hash") or raw.get("hash")

    return SubmissionResult(
        success=code == success_code,
        native_result_code=str(code),
        receipt_id=receipt_id,
        effects=parse_effects(meta),
        fingerprint=fingerprint,
    )


# =============================================================================
# COLLABORATORS
# =============================================================================


class TransactionSubmitter(Protocol):
    """Signs and submits a transaction, returning the client's raw response."""

    def submit(self, tx_json: Dict[str, Any]) -> Any:
        ...


class LedgerReader(Protocol):
    """
    Read access to ledger state. Eventually consistent: a just-committed
    transaction may not be visible yet.
    """

    def get_credential(self, subject: str, issuer: str, credential_type: str) -> Optional["Credential"]:
        """Credential entry, or None when absent."""
        ...

    def get_token_holder(self, token_id: str) -> Optional[str]:
        """Account currently holding the token's single unit."""
        ...

    def find_transaction(self, fingerprint: str) -> Optional[SubmissionResult]:
        """Final result of the transaction with this intent fingerprint, if known."""
        ...


# =============================================================================
# ADAPTER
# =============================================================================


class SequenceConflict(Exception):
    """Raised inside the retry loop for sequence-conflict results."""

    def __init__(self, result: SubmissionResult):
        self.result = result
        super().__init__(result.native_result_code)


class SubmissionAdapter:
    """
    Submit intents and return normalised results.

    Transport errors raise LedgerUnavailable and are not retried: the
    transaction may have been applied, so the caller reconciles instead.
    Sequence conflicts are retried under ``retry_policy``; once exhausted
    the last conflicting result is returned.
    """

    def __init__(
        self,
        submitter: TransactionSubmitter,
        retry_policy: Optional[RetryPolicy] = None,
        success_code: str = SUCCESS_CODE,
    ):
        self._submitter = submitter
        self._success_code = success_code
        self._retry = retry_policy or RetryPolicy(
            max_attempts=4,
            base_delay_seconds=0.5,
            max_delay_seconds=8.0,
            retryable_exceptions=(SequenceConflict,),
        )

    @classmethod
    def from_config(cls, submitter: TransactionSubmitter, config, **retry_kwargs) -> "SubmissionAdapter":
        policy = RetryPolicy.from_config(
            config.submission,
            retryable_exceptions=(SequenceConflict,),
            **retry_kwargs,
        )
        return cls(submitter, retry_policy=policy, success_code=config.ledger.success_code.get())

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def _attempt(self, intent: TransactionIntent, tx_json: Dict[str, Any], fingerprint: str) -> SubmissionResult:
        try:
            raw = self._submitter.submit(dict(tx_json))
        except TRANSPORT_ERRORS as e:
            logger.warning(
                f"Ledger unreachable submitting {intent.transaction_type}",
                operation="submit",
                fingerprint=fingerprint,
                error=type(e).__name__,
            )
            raise LedgerUnavailable(f"ledger unreachable: {e}") from e

        result = normalize_response(raw, fingerprint, self._success_code)
        if not result.success and is_sequence_conflict(result.native_result_code):
            logger.info(
                f"Sequence conflict on {intent.transaction_type}",
                operation="submit",
                native_result_code=result.native_result_code,
            )
            raise SequenceConflict(result)
        return result

    def submit(self, intent: TransactionIntent) -> SubmissionResult:
        tx_json = intent.to_ledger_json()
        fingerprint = fingerprint_tx_json(tx_json)
        try:
            result = self._retry.execute(lambda: self._attempt(intent, tx_json, fingerprint))
        except RetryExhaustedError as e:
            result = e.last_exception.result

        logger.info(
            f"Submitted {intent.transaction_type}",
            operation="submit",
            account=intent.account,
            success=result.success,
            native_result_code=result.native_result_code,
            receipt_id=result.receipt_id,
        )
        return result

    def submit_checked(
        self,
        intent: TransactionIntent,
        error_cls: Type[LedgerRefusal] = SubmissionFailed,
    ) -> SubmissionResult:
        """Submit and raise ``error_cls`` unless the ledger applied the intent."""
        result = self.submit(intent)
        if not result.success:
            raise error_cls(
                result.native_result_code,
                f"{intent.transaction_type} declined: {result.native_result_code}",
                receipt_id=result.receipt_id,
            )
        return result
