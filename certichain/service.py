"""
CERTICHAIN Provenance Service

Caller-facing operations. Each returns an OperationResult
``{success, data, error}``; engine errors are converted to ErrorInfo here
and never propagate to the caller.

Usage:

    ledger = InMemoryLedger()
    service = ProvenanceService.create(submitter=ledger, reader=ledger)

    service.configure_authorization("LOT-2025-001", issuer, laboratory)
    result = service.issue_token({"lot_number": "LOT-2025-001", "counterparty_address": buyer})
    if result.success:
        token_id = result.data["token_id"]

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from certichain.artifacts import ArtifactStore
from certichain.config import CertichainConfig, get_config
from certichain.credentials import CredentialGate, CredentialIssuer, resolve_credential_type
from certichain.envelope import EnvelopeStatus
from certichain.errors import CertichainError, PartialFailure, ValidationError
from certichain.ledger import LedgerReader, SubmissionAdapter, TransactionSubmitter
from certichain.lifecycle import IssuanceRequest, LifecycleOrchestrator
from certichain.observability import (
    CertichainLayer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from certichain.records import RecordStore
from certichain.sealing import PrivateKeyLike, PublicKeyLike, SealedPayload, seal, unseal

logger = get_logger("provenance", CertichainLayer.SERVICE)

INTERNAL_ERROR = "InternalError"


@dataclass
class ErrorInfo:
    """Structured error surfaced to callers."""
    code: str
    message: str
    step: str
    native_result_code: Optional[str] = None
    retryable: bool = False
    partial_failure: Optional[str] = None
    last_completed_step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: CertichainError, step: str) -> "ErrorInfo":
        root = exc.cause if isinstance(exc, PartialFailure) else exc
        return cls(
            code=exc.code,
            message=str(exc),
            step=step,
            native_result_code=getattr(root, "native_result_code", None),
            retryable=bool(exc.retryable),
            partial_failure=exc.stage if isinstance(exc, PartialFailure) else None,
            last_completed_step=exc.last_completed_step if isinstance(exc, PartialFailure) else None,
            details=exc.details(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "step": self.step,
            "native_result_code": self.native_result_code,
            "retryable": self.retryable,
            "partial_failure": self.partial_failure,
            "last_completed_step": self.last_completed_step,
            "details": self.details,
        }


@dataclass
class OperationResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "OperationResult":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, error: ErrorInfo) -> "OperationResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
        }


class ProvenanceService:
    """Public boundary of the lifecycle engine."""

    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        gate: Optional[CredentialGate] = None,
        credential_issuer: Optional[CredentialIssuer] = None,
        artifact_store: Optional[ArtifactStore] = None,
        config: Optional[CertichainConfig] = None,
    ):
        self.orchestrator = orchestrator
        self._gate = gate
        self._credential_issuer = credential_issuer
        self._artifacts = artifact_store
        self._config = config or get_config()

    @classmethod
    def create(
        cls,
        submitter: TransactionSubmitter,
        reader: LedgerReader,
        config: Optional[CertichainConfig] = None,
        artifact_store: Optional[ArtifactStore] = None,
        records: Optional[RecordStore] = None,
        **retry_kwargs: Any,
    ) -> "ProvenanceService":
        """Wire the engine from its two ledger collaborators."""
        config = config or get_config()
        adapter = SubmissionAdapter.from_config(submitter, config, **retry_kwargs)
        gate = CredentialGate(reader)
        orchestrator = LifecycleOrchestrator(adapter, reader, records=records, gate=gate, config=config)
        issuer_address = config.credentials.issuer_address.get()
        credential_issuer = CredentialIssuer(adapter, issuer_address, config) if issuer_address else None
        return cls(orchestrator, gate, credential_issuer, artifact_store, config)

    def _run(self, step: str, func: Callable[[], Dict[str, Any]]) -> OperationResult:
        token = set_correlation_id(generate_correlation_id())
        try:
            return OperationResult.ok(func())
        except CertichainError as e:
            logger.warning(
                f"{step} failed: {e}",
                operation=step,
                error_code=e.code,
                retryable=e.retryable,
            )
            return OperationResult.fail(ErrorInfo.from_exception(e, step))
        except Exception as e:
            logger.error(f"{step} raised unexpectedly", error_code=INTERNAL_ERROR, exc_info=True, operation=step)
            return OperationResult.fail(ErrorInfo(
                code=INTERNAL_ERROR,
                message=f"{type(e).__name__}: {e}",
                step=step,
            ))
        finally:
            reset_correlation_id(token)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def configure_authorization(
        self,
        lot_number: str,
        issuer: str,
        laboratory: str,
        quorum: Optional[int] = None,
        entries: Optional[list] = None,
    ) -> OperationResult:
        def op() -> Dict[str, Any]:
            result = self.orchestrator.configure_authorization(lot_number, issuer, laboratory, quorum, entries)
            return {
                "lot_number": lot_number,
                "state": self.orchestrator.get_record(lot_number).state.value,
                "receipt_id": result.receipt_id,
                "native_result_code": result.native_result_code,
            }
        return self._run("configure_authorization", op)

    def issue_token(self, request: Union[IssuanceRequest, Dict[str, Any]]) -> OperationResult:
        def op() -> Dict[str, Any]:
            req = IssuanceRequest.from_dict(request) if isinstance(request, dict) else request
            return self.orchestrator.issue_token(req).to_dict()
        return self._run("issue_token", op)

    def validate_or_reject(
        self,
        token_id: str,
        caller: str,
        approve: bool,
        note: Optional[str] = None,
    ) -> OperationResult:
        return self._run(
            "validate_or_reject",
            lambda: self.orchestrator.validate_or_reject(token_id, caller, approve, note).to_dict(),
        )

    def transfer_token(
        self,
        token_id: str,
        sender: str,
        destination: str,
        amount: Any = "1",
        status: Union[EnvelopeStatus, str] = EnvelopeStatus.IN_TRANSIT,
    ) -> OperationResult:
        return self._run(
            "transfer_token",
            lambda: self.orchestrator.transfer_token(token_id, sender, destination, amount, status).to_dict(),
        )

    def authorize_holder(self, token_id: str, holder: str) -> OperationResult:
        return self._run(
            "authorize_holder",
            lambda: self.orchestrator.authorize_holder(token_id, holder).to_dict(),
        )

    def reconcile(self, lot_number: str) -> OperationResult:
        return self._run("reconcile", lambda: self.orchestrator.reconcile(lot_number).to_dict())

    def get_record(self, lot_number: str) -> OperationResult:
        def op() -> Dict[str, Any]:
            record = self.orchestrator.get_record(lot_number)
            return record.to_dict() if record else {"lot_number": lot_number, "state": "UNINITIALIZED"}
        return self._run("get_record", op)

    # -------------------------------------------------------------------------
    # Sealed payloads
    # -------------------------------------------------------------------------

    def seal_payload_for(self, recipient_public_key: PublicKeyLike, payload: Union[bytes, str]) -> OperationResult:
        return self._run("seal_payload_for", lambda: seal(payload, recipient_public_key).to_dict())

    def unseal_payload(
        self,
        sealed: Union[SealedPayload, str],
        local_private_key: PrivateKeyLike,
    ) -> OperationResult:
        return self._run("unseal_payload", lambda: {"payload": unseal(sealed, local_private_key)})

    # -------------------------------------------------------------------------
    # Credentials and artifacts
    # -------------------------------------------------------------------------

    def verify_credential(self, subject: str, role: str, issuer: Optional[str] = None) -> OperationResult:
        """Report the gate decision; a denial is a successful call with ``granted`` false."""
        def op() -> Dict[str, Any]:
            if self._gate is None:
                raise ValidationError("gate", "no credential gate configured")
            credentials = self._config.credentials
            trusted = issuer or credentials.issuer_address.get()
            credential_type = resolve_credential_type(role, self._config)
            return self._gate.verify(trusted, subject, credential_type, enforce=credentials.enforce.get()).to_dict()
        return self._run("verify_credential", op)

    def issue_credential(
        self,
        subject: str,
        role: str,
        expiration_seconds: Optional[int] = None,
        uri: Optional[str] = None,
    ) -> OperationResult:
        def op() -> Dict[str, Any]:
            if self._credential_issuer is None:
                raise ValidationError("credentials.issuer_address", "no trusted issuer configured")
            return self._credential_issuer.issue(subject, role, expiration_seconds, uri).to_dict()
        return self._run("issue_credential", op)

    def revoke_credential(self, subject: str, role: str) -> OperationResult:
        def op() -> Dict[str, Any]:
            if self._credential_issuer is None:
                raise ValidationError("credentials.issuer_address", "no trusted issuer configured")
            return self._credential_issuer.revoke(subject, role).to_dict()
        return self._run("revoke_credential", op)

    def store_artifact(self, content: Any, artifact_type: str) -> OperationResult:
        """Store bytes as-is, anything else as canonical JSON; returns the content id."""
        def op() -> Dict[str, Any]:
            if self._artifacts is None:
                raise ValidationError("artifact_store", "no artifact store configured")
            if isinstance(content, (bytes, bytearray)):
                cid = self._artifacts.put_bytes(bytes(content), artifact_type)
            else:
                cid = self._artifacts.put_json(content, artifact_type)
            return {"cid": cid, "artifact_type": artifact_type}
        return self._run("store_artifact", op)
