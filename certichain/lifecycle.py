"""
CERTICHAIN Token Lifecycle Orchestrator

Drives one lot through authorization, issuance, laboratory decision and
transfers, enforcing the state machine in ``certichain.records``.

Operation order per lot:

    1. configure_authorization   SignerListSet (issuer delegates to laboratory)
    2. issue_token               MPTokenIssuanceCreate with the envelope
    3. validate_or_reject        laboratory decision, credential-gated
    4. transfer_token            Payment of the single unit (repeatable)

A per-lot lock serialises ledger writes for the same lot within a process.
Ledger writes happen before the record is updated: a refused or failed
submission leaves the record as it was, except for the pending intent
(issuance, transfer or decision marker) and its deferred record update,
which are kept until reconciliation by fingerprint proves the outcome.
Repeating the interrupted operation reconciles first.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from certichain.addresses import require_address
from certichain.config import CertichainConfig, get_config
from certichain.credentials import CredentialGate, GateDecision, resolve_credential_type
from certichain.envelope import (
    EnvelopeStatus,
    HistoryAction,
    MetadataEnvelope,
    build_initial_envelope,
    decode_envelope,
    encode_envelope,
    now_ms,
)
from certichain.errors import (
    CertichainError,
    ConfigError,
    CredentialRequired,
    LedgerUnavailable,
    PartialFailure,
    PreconditionFailed,
    SubmissionFailed,
    TokenIdNotFound,
    ValidationError,
)
from certichain.ledger import (
    TRANSPORT_ERRORS,
    Found,
    LedgerReader,
    Memo,
    SubmissionAdapter,
    SubmissionResult,
    TransactionIntent,
    match_created,
)
from certichain.observability import AuditLogger, CertichainLayer, get_logger, timed_operation
from certichain.records import LotState, ProvenanceRecord, RecordStore
from certichain.sealing import SealedPayload, seal
from certichain.signers import AuthorizationScheme, SignerListManager, entries_from_dicts, single_cosigner

logger = get_logger("orchestrator", CertichainLayer.LIFECYCLE)

ISSUANCE_ENTRY_TYPE = "MPTokenIssuance"

# MPTokenIssuanceCreate flags
TF_MPT_CAN_TRANSFER = 0x00000020
TF_MPT_CAN_CLAWBACK = 0x00000040
ISSUANCE_FLAGS = TF_MPT_CAN_TRANSFER | TF_MPT_CAN_CLAWBACK

FULL_UNIT = "1"

SEAL_MEMO_TYPE = "SEAL_LAB"
DECISION_MEMO_TYPE = "LAB_DECISION"
TRANSFER_MEMO_TYPE = "CUSTODY_STEP"

STAGE_AUTH_CONFIGURED_NO_TOKEN = "auth-configured-no-token"

TRANSFER_STATUSES = {EnvelopeStatus.IN_TRANSIT, EnvelopeStatus.DELIVERED}


# =============================================================================
# REQUESTS AND RECEIPTS
# =============================================================================


@dataclass
class IssuanceRequest:
    lot_number: str
    counterparty_address: str
    laboratory_public_key: Optional[str] = None
    laboratory_name: str = "Laboratory"
    linked_artifact_hash: str = ""
    carrier_id: Optional[str] = None
    sensitive_payload: Optional[Union[bytes, str]] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "IssuanceRequest":
        known = {
            "lot_number", "counterparty_address", "laboratory_public_key", "laboratory_name",
            "linked_artifact_hash", "carrier_id", "sensitive_payload",
        }
        unknown = set(d) - known
        if unknown:
            raise ValidationError("request", f"unknown fields: {sorted(unknown)}")
        if "lot_number" not in d or "counterparty_address" not in d:
            raise ValidationError("request", "lot_number and counterparty_address are required")
        return cls(**d)


@dataclass
class IssuanceReceipt:
    lot_number: str
    token_id: str
    receipt_id: Optional[str]
    envelope: MetadataEnvelope
    adopted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lot_number": self.lot_number,
            "token_id": self.token_id,
            "receipt_id": self.receipt_id,
            "status": self.envelope.status.value,
            "step": self.envelope.step,
            "adopted": self.adopted,
        }


@dataclass
class DecisionReceipt:
    token_id: str
    decision: LotState
    status: EnvelopeStatus
    step: int
    marker_receipt: Optional[str] = None
    adopted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "decision": self.decision.value,
            "status": self.status.value,
            "step": self.step,
            "marker_receipt": self.marker_receipt,
            "adopted": self.adopted,
        }


@dataclass
class TransferReceipt:
    token_id: str
    tx_receipt: Optional[str]
    new_owner: str
    step: int
    adopted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "tx_receipt": self.tx_receipt,
            "new_owner": self.new_owner,
            "step": self.step,
            "adopted": self.adopted,
        }


class ReconcileStatus(Enum):
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"
    NOTHING_PENDING = "NOTHING_PENDING"


@dataclass
class ReconcileReport:
    lot_number: str
    status: ReconcileStatus
    fingerprint: Optional[str] = None
    token_id: Optional[str] = None
    native_result_code: Optional[str] = None
    operation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lot_number": self.lot_number,
            "status": self.status.value,
            "fingerprint": self.fingerprint,
            "token_id": self.token_id,
            "native_result_code": self.native_result_code,
            "operation": self.operation,
        }


# =============================================================================
# INTENT BUILDERS
# =============================================================================


def build_issuance_intent(
    issuer: str,
    envelope_hex: bytes,
    sealed: Optional[SealedPayload] = None,
) -> TransactionIntent:
    memos = (Memo(SEAL_MEMO_TYPE, sealed.to_hex()),) if sealed else ()
    return TransactionIntent(
        "MPTokenIssuanceCreate",
        issuer,
        {
            "MaximumAmount": FULL_UNIT,
            "AssetScale": 0,
            "TransferFee": 0,
            "Flags": ISSUANCE_FLAGS,
            "MPTokenMetadata": envelope_hex.decode("ascii"),
        },
        memos,
    )


def build_payment_intent(
    token_id: str,
    sender: str,
    destination: str,
    lot_number: Optional[str] = None,
    step: Optional[int] = None,
) -> TransactionIntent:
    """
    Payment of the single unit.

    With ``lot_number`` and ``step`` a custody memo is attached, so two
    hops between the same accounts never share a fingerprint.
    """
    memos = ()
    if lot_number is not None and step is not None:
        memos = (Memo.text(TRANSFER_MEMO_TYPE, f"{lot_number}:{step}"),)
    return TransactionIntent("Payment", sender, {
        "Destination": destination,
        "Amount": {"mpt_issuance_id": token_id, "value": FULL_UNIT},
    }, memos)


def build_holder_authorization_intent(token_id: str, holder: str) -> TransactionIntent:
    return TransactionIntent("MPTokenAuthorize", holder, {"MPTokenIssuanceID": token_id})


def build_decision_marker_intent(
    laboratory: str,
    lot_number: str,
    token_id: str,
    decision: LotState,
    note: Optional[str],
) -> TransactionIntent:
    body = json.dumps(
        {"lot_number": lot_number, "token_id": token_id, "decision": decision.value, "note": note},
        sort_keys=True,
        separators=(",", ":"),
    )
    return TransactionIntent("AccountSet", laboratory, {}, (Memo.text(DECISION_MEMO_TYPE, body),))


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class LifecycleOrchestrator:
    """
    Lot lifecycle engine.

    Collaborators:
        adapter   submits intents (SubmissionAdapter)
        reader    reads credentials, token holders and past submissions
        records   off-ledger provenance records
        gate      credential gate; built from ``reader`` when omitted
    """

    def __init__(
        self,
        adapter: SubmissionAdapter,
        reader: LedgerReader,
        records: Optional[RecordStore] = None,
        gate: Optional[CredentialGate] = None,
        config: Optional[CertichainConfig] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._adapter = adapter
        self._reader = reader
        self._records = records if records is not None else RecordStore()
        self._gate = gate or CredentialGate(reader)
        self._config = config or get_config()
        self._clock = clock
        self._signers = SignerListManager(adapter)
        self._audit = AuditLogger(get_logger("audit", CertichainLayer.LIFECYCLE))
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def records(self) -> RecordStore:
        return self._records

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    def _lock_for(self, lot_number: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(lot_number)
            if lock is None:
                lock = threading.RLock()
                self._locks[lot_number] = lock
            return lock

    def _record_for_token(self, token_id: str, operation: str) -> ProvenanceRecord:
        if not token_id or not isinstance(token_id, str):
            raise ValidationError("token_id", "required", token_id)
        record = self._records.find_by_token(token_id)
        if record is None:
            raise PreconditionFailed(operation, LotState.UNINITIALIZED.value, f"unknown token {token_id}")
        return record

    def _advance(
        self,
        record: ProvenanceRecord,
        target: LotState,
        operation: str,
        actor: Optional[str],
        receipt_id: Optional[str] = None,
    ) -> None:
        from_state = record.state
        if not record.advance_to(target, operation, actor, receipt_id, self._clock()):
            raise PreconditionFailed(operation, from_state.value)
        logger.info(
            f"Lot {record.lot_number}: {from_state.value} -> {target.value}",
            operation=operation,
            lot_number=record.lot_number,
            receipt_id=receipt_id,
        )
        self._audit.log(
            actor=actor or "",
            action=operation,
            resource_type="lot",
            resource_id=record.lot_number,
            outcome="success",
            from_state=from_state.value,
            to_state=target.value,
            receipt_id=receipt_id,
        )

    def _read_holder(self, token_id: str) -> Optional[str]:
        try:
            return self._reader.get_token_holder(token_id)
        except TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"token holder lookup failed: {e}") from e

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    @timed_operation(logger, "configure_authorization")
    def configure_authorization(
        self,
        lot_number: str,
        issuer: str,
        laboratory: str,
        quorum: Optional[int] = None,
        entries: Optional[List[Any]] = None,
    ) -> SubmissionResult:
        if not lot_number or not isinstance(lot_number, str):
            raise ValidationError("lot_number", "required", lot_number)
        require_address("issuer", issuer)
        require_address("laboratory", laboratory)

        lifecycle_config = self._config.lifecycle
        if entries is None:
            scheme = single_cosigner(laboratory, lifecycle_config.laboratory_weight.get())
            signer_entries = list(scheme.entries)
        else:
            signer_entries = entries_from_dicts(entries)
        if quorum is None:
            quorum = lifecycle_config.default_quorum.get()

        with self._lock_for(lot_number):
            record = self._records.get_or_create(lot_number)
            if record.state not in (LotState.UNINITIALIZED, LotState.AUTH_CONFIGURED):
                raise PreconditionFailed("configure_authorization", record.state.value)
            if record.pending_intent is not None:
                raise PreconditionFailed(
                    "configure_authorization",
                    record.state.value,
                    "an issuance is pending; reconcile before reconfiguring",
                )

            result = self._signers.configure(issuer, quorum, signer_entries)

            record.issuer = issuer
            record.laboratory = laboratory
            record.scheme = AuthorizationScheme(quorum=quorum, entries=tuple(signer_entries))
            record.signer_receipt = result.receipt_id
            self._advance(record, LotState.AUTH_CONFIGURED, "configure_authorization", issuer, result.receipt_id)
            return result

    # -------------------------------------------------------------------------
    # Issuance
    # -------------------------------------------------------------------------

    def _build_issuance(self, record: ProvenanceRecord, request: IssuanceRequest) -> TransactionIntent:
        envelope = build_initial_envelope(
            lot_number=request.lot_number,
            issuer_address=record.issuer,
            counterparty_address=request.counterparty_address,
            laboratory_address=record.laboratory,
            laboratory_public_key=request.laboratory_public_key,
            laboratory_name=request.laboratory_name,
            linked_artifact_hash=request.linked_artifact_hash,
            carrier_id=request.carrier_id,
            timestamp=self._clock(),
        )
        envelope_hex = encode_envelope(envelope)

        sealed = None
        if request.sensitive_payload is not None:
            if not request.laboratory_public_key:
                raise ValidationError(
                    "laboratory_public_key",
                    "required to seal a sensitive payload",
                )
            sealed = seal(request.sensitive_payload, request.laboratory_public_key)

        return build_issuance_intent(record.issuer, envelope_hex, sealed)

    def _adopt_issuance(
        self,
        record: ProvenanceRecord,
        intent: TransactionIntent,
        result: SubmissionResult,
        adopted: bool,
    ) -> IssuanceReceipt:
        match = match_created(result.effects, ISSUANCE_ENTRY_TYPE)
        if not isinstance(match, Found):
            raise TokenIdNotFound(result.receipt_id)

        envelope = decode_envelope(intent.fields["MPTokenMetadata"])
        seal_memo = intent.memo(SEAL_MEMO_TYPE)
        record.sealed_payload = SealedPayload.from_hex(seal_memo.data_hex) if seal_memo else None
        record.token_id = match.ledger_index
        record.envelope = envelope
        record.counterparty = envelope.counterparty_address
        record.current_owner = record.issuer
        record.issuance_receipt = result.receipt_id
        record.clear_pending()
        self._records.index_token(record)
        self._advance(record, LotState.ISSUED, "issue_token", record.issuer, result.receipt_id)
        return IssuanceReceipt(
            lot_number=record.lot_number,
            token_id=match.ledger_index,
            receipt_id=result.receipt_id,
            envelope=envelope,
            adopted=adopted,
        )

    @timed_operation(logger, "issue_token")
    def issue_token(self, request: IssuanceRequest) -> IssuanceReceipt:
        """
        Issue the lot token.

        Requires AUTH_CONFIGURED. If an earlier attempt left a pending
        submission, its outcome is reconciled first: a committed issuance
        is adopted, never duplicated. Transport failures and ledger
        refusals raise PartialFailure: authorization is configured but no
        token exists, and calling issue_token again resumes from there.
        """
        if not isinstance(request, IssuanceRequest):
            raise ValidationError("request", "expected an IssuanceRequest", request)
        if not request.lot_number or not isinstance(request.lot_number, str):
            raise ValidationError("lot_number", "required", request.lot_number)
        require_address("counterparty_address", request.counterparty_address)

        with self._lock_for(request.lot_number):
            record = self._records.get(request.lot_number)
            state = record.state if record else LotState.UNINITIALIZED
            if record is None or state is not LotState.AUTH_CONFIGURED:
                raise PreconditionFailed("issue_token", state.value)

            intent = None
            if record.pending_intent is not None:
                report, adopted = self._settle_pending(record)
                if report.status is ReconcileStatus.COMMITTED:
                    logger.info(
                        "Adopted previously committed issuance",
                        operation="issue_token",
                        lot_number=record.lot_number,
                        token_id=report.token_id,
                    )
                    return adopted
                if report.status is ReconcileStatus.UNKNOWN:
                    # Same intent, same fingerprint: a late commit stays detectable.
                    intent = record.pending_intent

            if intent is None:
                intent = self._build_issuance(record, request)
            record.set_pending(intent, "issue_token")

            try:
                result = self._adapter.submit(intent)
            except LedgerUnavailable as e:
                self._audit_failure(record, "issue_token", e)
                raise PartialFailure(STAGE_AUTH_CONFIGURED_NO_TOKEN, "configure_authorization", e) from e

            if not result.success:
                record.clear_pending()
                cause = SubmissionFailed(
                    result.native_result_code,
                    f"issuance declined: {result.native_result_code}",
                    receipt_id=result.receipt_id,
                )
                self._audit_failure(record, "issue_token", cause)
                raise PartialFailure(STAGE_AUTH_CONFIGURED_NO_TOKEN, "configure_authorization", cause)

            return self._adopt_issuance(record, intent, result, adopted=False)

    def _audit_failure(self, record: ProvenanceRecord, operation: str, error: CertichainError) -> None:
        logger.warning(
            f"{operation} failed for lot {record.lot_number}",
            operation=operation,
            error_code=error.code,
            lot_number=record.lot_number,
        )
        self._audit.log(
            actor=record.issuer or "",
            action=operation,
            resource_type="lot",
            resource_id=record.lot_number,
            outcome="failure",
            error_code=error.code,
            **error.details(),
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def _settle_pending(self, record: ProvenanceRecord) -> Tuple[ReconcileReport, Any]:
        """
        Look up the pending submission by fingerprint and settle the record.

        Returns the report and, when the submission committed, the receipt
        of the operation whose deferred update was applied.
        """
        intent = record.pending_intent
        if intent is None:
            status = ReconcileStatus.COMMITTED if record.token_id else ReconcileStatus.NOTHING_PENDING
            return ReconcileReport(record.lot_number, status, token_id=record.token_id), None

        operation = record.pending_operation or "issue_token"
        fingerprint = intent.fingerprint
        try:
            found = self._reader.find_transaction(fingerprint)
        except TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"transaction lookup failed: {e}") from e

        if found is None:
            report = ReconcileReport(
                record.lot_number,
                ReconcileStatus.UNKNOWN,
                fingerprint,
                token_id=record.token_id,
                operation=operation,
            )
            return report, None

        if not found.success:
            record.clear_pending()
            report = ReconcileReport(
                record.lot_number,
                ReconcileStatus.FAILED,
                fingerprint,
                token_id=record.token_id,
                native_result_code=found.native_result_code,
                operation=operation,
            )
            return report, None

        if operation == "transfer_token":
            receipt = self._apply_transfer(record, found.receipt_id, adopted=True)
        elif operation == "validate_or_reject":
            receipt = self._apply_decision(record, found.receipt_id, adopted=True)
        else:
            receipt = self._adopt_issuance(record, intent, found, adopted=True)
        report = ReconcileReport(
            record.lot_number,
            ReconcileStatus.COMMITTED,
            fingerprint,
            token_id=record.token_id,
            native_result_code=found.native_result_code,
            operation=operation,
        )
        return report, receipt

    def _reconcile_locked(self, record: ProvenanceRecord) -> ReconcileReport:
        return self._settle_pending(record)[0]

    def _resume(
        self,
        record: ProvenanceRecord,
        operation: str,
        **expected: Any,
    ) -> Tuple[Any, Optional[TransactionIntent]]:
        """
        Settle a pending submission before ``operation`` runs again.

        Returns ``(receipt, None)`` when the pending submission was this very
        operation and it committed, ``(None, intent)`` when it is still
        unknown and must be resent unchanged, and ``(None, None)`` when the
        caller should proceed from the current record.
        """
        if record.pending_intent is None:
            return None, None
        pending = dict(record.pending_update or {})
        same = pending.get("operation") == operation and all(
            pending.get(key) == value for key, value in expected.items()
        )
        report, receipt = self._settle_pending(record)
        if report.status is ReconcileStatus.COMMITTED and same:
            logger.info(
                f"Adopted previously committed {operation}",
                operation=operation,
                lot_number=record.lot_number,
                fingerprint=report.fingerprint,
            )
            return receipt, None
        if report.status is ReconcileStatus.UNKNOWN:
            if not same:
                raise PreconditionFailed(
                    operation,
                    record.state.value,
                    f"a {report.operation} submission is pending; reconcile before continuing",
                )
            return None, record.pending_intent
        return None, None

    def reconcile(self, lot_number: str) -> ReconcileReport:
        """Resolve a pending submission whose outcome was never observed."""
        with self._lock_for(lot_number):
            record = self._records.get(lot_number)
            if record is None:
                raise PreconditionFailed("reconcile", LotState.UNINITIALIZED.value, f"unknown lot {lot_number}")
            report = self._reconcile_locked(record)
            logger.info(
                f"Reconciled lot {lot_number}: {report.status.value}",
                operation="reconcile",
                lot_number=lot_number,
                fingerprint=report.fingerprint,
                pending_operation=report.operation,
            )
            return report

    # -------------------------------------------------------------------------
    # Laboratory decision
    # -------------------------------------------------------------------------

    def _check_laboratory_credential(self, caller: str) -> GateDecision:
        credentials = self._config.credentials
        enforce = credentials.enforce.get()
        trusted_issuer = credentials.issuer_address.get()
        if enforce and not trusted_issuer:
            raise ConfigError("credentials.issuer_address is not configured")
        credential_type = resolve_credential_type(credentials.laboratory_role.get(), self._config)
        return self._gate.verify(trusted_issuer, caller, credential_type, enforce=enforce)

    @timed_operation(logger, "validate_or_reject")
    def validate_or_reject(
        self,
        token_id: str,
        caller: str,
        approve: bool,
        note: Optional[str] = None,
    ) -> DecisionReceipt:
        require_address("caller", caller)
        if not isinstance(approve, bool):
            raise ValidationError("approve", "must be a boolean", approve)
        record = self._record_for_token(token_id, "validate_or_reject")

        decision = self._check_laboratory_credential(caller)
        if not decision.granted:
            self._audit.log(
                actor=caller,
                action="validate_or_reject",
                resource_type="lot",
                resource_id=record.lot_number,
                outcome="denied",
                reason=decision.reason.value,
            )
            raise CredentialRequired(decision)

        with self._lock_for(record.lot_number):
            if caller != record.laboratory:
                raise PreconditionFailed(
                    "validate_or_reject",
                    record.state.value,
                    "caller is not the designated laboratory for this lot",
                )
            target = LotState.VALIDATED if approve else LotState.REJECTED
            adopted, intent = self._resume(record, "validate_or_reject", actor=caller, decision=target.value)
            if adopted is not None:
                return adopted
            if record.decision is not None or not record.can_transition_to(target):
                raise PreconditionFailed("validate_or_reject", record.state.value)

            update = {"actor": caller, "decision": target.value, "note": note, "timestamp": self._clock()}
            if intent is None and self._config.lifecycle.submit_decision_marker.get():
                intent = build_decision_marker_intent(caller, record.lot_number, token_id, target, note)
            if intent is None:
                return self._apply_decision(record, None, adopted=False, update=update)

            record.set_pending(intent, "validate_or_reject", **update)
            result = self._submit_pending(record, "validate_or_reject")
            return self._apply_decision(record, result.receipt_id, adopted=False)

    def _apply_decision(
        self,
        record: ProvenanceRecord,
        marker_receipt: Optional[str],
        adopted: bool,
        update: Optional[Dict[str, Any]] = None,
    ) -> DecisionReceipt:
        update = update if update is not None else record.pending_update
        target = LotState(update["decision"])
        approve = target is LotState.VALIDATED
        status = EnvelopeStatus.VALIDATED if approve else EnvelopeStatus.REJECTED
        action = HistoryAction.VALIDATED if approve else HistoryAction.REJECTED

        record.envelope = record.envelope.with_event(action, update["actor"], status, update["timestamp"])
        record.decision = target
        record.decision_note = update.get("note")
        record.clear_pending()
        self._advance(record, target, "validate_or_reject", update["actor"], marker_receipt)

        return DecisionReceipt(
            token_id=record.token_id,
            decision=target,
            status=status,
            step=record.envelope.step,
            marker_receipt=marker_receipt,
            adopted=adopted,
        )

    def _submit_pending(self, record: ProvenanceRecord, operation: str) -> SubmissionResult:
        """Submit ``record.pending_intent``; a refusal clears it, a transport failure keeps it."""
        try:
            return self._adapter.submit_checked(record.pending_intent, SubmissionFailed)
        except SubmissionFailed as e:
            record.clear_pending()
            self._audit_failure(record, operation, e)
            raise
        except LedgerUnavailable as e:
            self._audit_failure(record, operation, e)
            raise

    # -------------------------------------------------------------------------
    # Transfer
    # -------------------------------------------------------------------------

    def _transfer_allowed(self, record: ProvenanceRecord) -> bool:
        if not record.can_transition_to(LotState.TRANSFERRED):
            return False
        if self._config.lifecycle.require_validation_before_transfer.get():
            return record.decision is LotState.VALIDATED
        return True

    @timed_operation(logger, "transfer_token")
    def transfer_token(
        self,
        token_id: str,
        sender: str,
        destination: str,
        amount: Any = FULL_UNIT,
        status: Union[EnvelopeStatus, str] = EnvelopeStatus.IN_TRANSIT,
    ) -> TransferReceipt:
        """
        Move the unit from ``sender`` to ``destination``.

        A transfer whose reply was lost stays pending on the record. Calling
        transfer_token again with the same sender and destination adopts it
        if it committed, or resends the identical Payment otherwise.
        """
        if isinstance(amount, bool) or str(amount) != FULL_UNIT:
            raise ValidationError("amount", f"must be the full unit {FULL_UNIT!r}", amount)
        require_address("sender", sender)
        require_address("destination", destination)
        if sender == destination:
            raise ValidationError("destination", "must differ from sender", destination)
        try:
            status = EnvelopeStatus(status)
        except ValueError:
            raise ValidationError("status", "unknown envelope status", status) from None
        if status not in TRANSFER_STATUSES:
            raise ValidationError("status", "transfers may only set IN_TRANSIT or DELIVERED", status.value)

        record = self._record_for_token(token_id, "transfer_token")
        with self._lock_for(record.lot_number):
            adopted, intent = self._resume(record, "transfer_token", actor=sender, destination=destination)
            if adopted is not None:
                return adopted
            if not self._transfer_allowed(record):
                raise PreconditionFailed("transfer_token", record.state.value)

            holder = self._read_holder(token_id)
            if holder != sender:
                raise PreconditionFailed(
                    "transfer_token",
                    record.state.value,
                    f"sender {sender} does not hold token {token_id}",
                )

            if intent is None:
                intent = build_payment_intent(
                    token_id, sender, destination, record.lot_number, record.envelope.step + 1,
                )
            record.set_pending(
                intent,
                "transfer_token",
                actor=sender,
                destination=destination,
                status=status.value,
                timestamp=self._clock(),
            )
            result = self._submit_pending(record, "transfer_token")
            return self._apply_transfer(record, result.receipt_id, adopted=False)

    def _apply_transfer(self, record: ProvenanceRecord, receipt_id: Optional[str], adopted: bool) -> TransferReceipt:
        update = record.pending_update
        sender = update["actor"]
        destination = update["destination"]
        status = EnvelopeStatus(update["status"])

        record.envelope = record.envelope.with_event(HistoryAction.TRANSFERRED, sender, status, update["timestamp"])
        record.current_owner = destination
        record.transfer_receipts.append(receipt_id)
        record.clear_pending()
        self._advance(record, LotState.TRANSFERRED, "transfer_token", sender, receipt_id)

        return TransferReceipt(
            token_id=record.token_id,
            tx_receipt=receipt_id,
            new_owner=destination,
            step=record.envelope.step,
            adopted=adopted,
        )

    def authorize_holder(self, token_id: str, holder: str) -> SubmissionResult:
        """Opt ``holder`` in to receiving the token; the submitter signs as holder."""
        require_address("holder", holder)
        record = self._record_for_token(token_id, "authorize_holder")
        with self._lock_for(record.lot_number):
            if record.state is LotState.REJECTED:
                raise PreconditionFailed("authorize_holder", record.state.value)
            result = self._adapter.submit_checked(build_holder_authorization_intent(token_id, holder), SubmissionFailed)
            logger.info(
                "Holder authorized",
                operation="authorize_holder",
                lot_number=record.lot_number,
                holder=holder,
            )
            return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_record(self, lot_number: str) -> Optional[ProvenanceRecord]:
        return self._records.get(lot_number)

    def find_by_token(self, token_id: str) -> Optional[ProvenanceRecord]:
        return self._records.find_by_token(token_id)
