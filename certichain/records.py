"""
CERTICHAIN Provenance Records

Off-ledger view of each lot: workflow state, participants, the current
envelope (with every history entry appended since issuance), receipts and
any pending submission. The ledger token itself is immutable after
issuance; everything that changes afterwards lives here.

State Machine:

    UNINITIALIZED ──► AUTH_CONFIGURED ──► ISSUED ──┬──► VALIDATED ──► TRANSFERRED
                           │  ▲                    ├──► REJECTED (terminal)
                           └──┘                    └──► TRANSFERRED ──┬──► TRANSFERRED
                                                                      ├──► VALIDATED
                                                                      └──► REJECTED

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from certichain.envelope import MetadataEnvelope, now_ms
from certichain.ledger import TransactionIntent
from certichain.sealing import SealedPayload
from certichain.signers import AuthorizationScheme


class LotState(Enum):
    UNINITIALIZED = "UNINITIALIZED"
    AUTH_CONFIGURED = "AUTH_CONFIGURED"
    ISSUED = "ISSUED"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    TRANSFERRED = "TRANSFERRED"

    def is_terminal(self) -> bool:
        return self is LotState.REJECTED


VALID_TRANSITIONS: Dict[LotState, Set[LotState]] = {
    LotState.UNINITIALIZED: {LotState.AUTH_CONFIGURED},
    LotState.AUTH_CONFIGURED: {LotState.AUTH_CONFIGURED, LotState.ISSUED},
    LotState.ISSUED: {LotState.VALIDATED, LotState.REJECTED, LotState.TRANSFERRED},
    LotState.VALIDATED: {LotState.TRANSFERRED},
    LotState.TRANSFERRED: {LotState.TRANSFERRED, LotState.VALIDATED, LotState.REJECTED},
    LotState.REJECTED: set(),
}

# Transitions that require no laboratory decision to exist yet.
UNDECIDED_ONLY = {
    (LotState.TRANSFERRED, LotState.VALIDATED),
    (LotState.TRANSFERRED, LotState.REJECTED),
}


@dataclass
class StateTransition:
    """Record of a state transition of one lot."""
    from_state: LotState
    to_state: LotState
    timestamp: int
    operation: str
    actor: Optional[str] = None
    receipt_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "operation": self.operation,
            "actor": self.actor,
            "receipt_id": self.receipt_id,
        }


@dataclass
class ProvenanceRecord:
    lot_number: str
    state: LotState = LotState.UNINITIALIZED
    issuer: Optional[str] = None
    laboratory: Optional[str] = None
    counterparty: Optional[str] = None
    scheme: Optional[AuthorizationScheme] = None
    token_id: Optional[str] = None
    envelope: Optional[MetadataEnvelope] = None
    current_owner: Optional[str] = None
    decision: Optional[LotState] = None
    decision_note: Optional[str] = None
    last_completed_step: Optional[str] = None
    pending_intent: Optional[TransactionIntent] = None
    # Record update to apply once pending_intent is known to have committed.
    pending_update: Optional[Dict[str, Any]] = None
    signer_receipt: Optional[str] = None
    issuance_receipt: Optional[str] = None
    transfer_receipts: List[str] = field(default_factory=list)
    sealed_payload: Optional[SealedPayload] = None
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def pending_fingerprint(self) -> Optional[str]:
        return self.pending_intent.fingerprint if self.pending_intent else None

    @property
    def pending_operation(self) -> Optional[str]:
        if self.pending_intent is None:
            return None
        return (self.pending_update or {}).get("operation")

    def set_pending(self, intent: TransactionIntent, operation: str, **update: Any) -> None:
        self.pending_intent = intent
        self.pending_update = dict(update, operation=operation)

    def clear_pending(self) -> None:
        self.pending_intent = None
        self.pending_update = None

    def can_transition_to(self, target: LotState) -> bool:
        if target not in VALID_TRANSITIONS.get(self.state, set()):
            return False
        if (self.state, target) in UNDECIDED_ONLY and self.decision is not None:
            return False
        return True

    def advance_to(
        self,
        target: LotState,
        operation: str,
        actor: Optional[str] = None,
        receipt_id: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> bool:
        """
        Move to ``target``.

        Returns False, leaving the record untouched, if the state machine
        does not allow the transition.
        """
        if not self.can_transition_to(target):
            return False
        self.transitions.append(StateTransition(
            from_state=self.state,
            to_state=target,
            timestamp=now_ms() if timestamp is None else timestamp,
            operation=operation,
            actor=actor,
            receipt_id=receipt_id,
        ))
        self.state = target
        self.last_completed_step = operation
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lot_number": self.lot_number,
            "state": self.state.value,
            "issuer": self.issuer,
            "laboratory": self.laboratory,
            "counterparty": self.counterparty,
            "scheme": self.scheme.to_dict() if self.scheme else None,
            "token_id": self.token_id,
            "envelope": self.envelope.to_dict() if self.envelope else None,
            "current_owner": self.current_owner,
            "decision": self.decision.value if self.decision else None,
            "decision_note": self.decision_note,
            "last_completed_step": self.last_completed_step,
            "pending_fingerprint": self.pending_fingerprint,
            "pending_operation": self.pending_operation,
            "signer_receipt": self.signer_receipt,
            "issuance_receipt": self.issuance_receipt,
            "transfer_receipts": list(self.transfer_receipts),
            "sealed_payload": self.sealed_payload.to_dict() if self.sealed_payload else None,
            "transitions": [t.to_dict() for t in self.transitions],
        }


class RecordStore:
    """In-process record store keyed by lot number and indexed by token id."""

    def __init__(self):
        self._records: Dict[str, ProvenanceRecord] = {}
        self._by_token: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, lot_number: str) -> Optional[ProvenanceRecord]:
        with self._lock:
            return self._records.get(lot_number)

    def get_or_create(self, lot_number: str) -> ProvenanceRecord:
        with self._lock:
            record = self._records.get(lot_number)
            if record is None:
                record = ProvenanceRecord(lot_number=lot_number)
                self._records[lot_number] = record
            return record

    def index_token(self, record: ProvenanceRecord) -> None:
        if not record.token_id:
            return
        with self._lock:
            self._by_token[record.token_id] = record.lot_number

    def find_by_token(self, token_id: str) -> Optional[ProvenanceRecord]:
        with self._lock:
            lot_number = self._by_token.get(token_id)
            return self._records.get(lot_number) if lot_number else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self):
        with self._lock:
            return iter(list(self._records.values()))
