"""
CERTICHAIN Error Taxonomy

Every failure the engine can report is a subclass of CertichainError and
carries a stable ``code``. Modules raise these; the caller-facing service
converts them into structured results at the public boundary.

    ValidationError          bad input shape (caller bug, never retried)
    MalformedEnvelope        metadata blob is not hex / not a JSON object
    AuthorizationRejected    ledger declined a signer-list change
    SubmissionFailed         ledger declined any other intent
    PreconditionFailed       state-machine order violated
    CredentialRequired       credential gate denied the caller
    TokenIdNotFound          success result without the created issuance
    PartialFailure           multi-step workflow stopped mid-sequence
    LedgerUnavailable        transport failure or timeout (retryable)
    DecryptionFailed         sealed payload could not be opened
    ArtifactError            stored artifact bytes do not match their digest

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CertichainError(Exception):
    """Base class for all engine errors."""

    code = "CertichainError"
    retryable = False

    def details(self) -> Dict[str, Any]:
        """Structured fields surfaced alongside the message."""
        return {}


class ConfigError(CertichainError):
    """Configuration error."""

    code = "ConfigError"


class ValidationError(CertichainError):
    """Input failed validation before reaching the ledger."""

    code = "ValidationError"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def details(self) -> Dict[str, Any]:
        return {"field": self.field}


class MalformedEnvelope(CertichainError):
    """Envelope bytes are not valid hex, UTF-8 or a JSON object."""

    code = "MalformedEnvelope"


class LedgerRefusal(CertichainError):
    """The ledger answered but declined the transaction."""

    code = "LedgerRefusal"

    def __init__(self, native_result_code: str, message: str = "", receipt_id: Optional[str] = None):
        from certichain.ledger import is_retryable_code

        self.native_result_code = native_result_code
        self.receipt_id = receipt_id
        self.retryable = is_retryable_code(native_result_code)
        super().__init__(message or f"ledger declined transaction: {native_result_code}")

    def details(self) -> Dict[str, Any]:
        return {
            "native_result_code": self.native_result_code,
            "receipt_id": self.receipt_id,
        }


class AuthorizationRejected(LedgerRefusal):
    """Ledger declined a signer-list replacement."""

    code = "AuthorizationRejected"


class SubmissionFailed(LedgerRefusal):
    """Ledger declined an issuance, payment or credential intent."""

    code = "SubmissionFailed"


class PreconditionFailed(CertichainError):
    """Operation attempted from a state that does not allow it."""

    code = "PreconditionFailed"

    def __init__(self, operation: str, state: str, message: str = ""):
        self.operation = operation
        self.state = state
        super().__init__(message or f"{operation} not allowed from state {state}")

    def details(self) -> Dict[str, Any]:
        return {"operation": self.operation, "state": self.state}


class CredentialRequired(CertichainError):
    """The credential gate did not grant the caller."""

    code = "CredentialRequired"

    def __init__(self, decision: Any):
        self.decision = decision
        super().__init__(
            f"credential {decision.credential_type} not granted to {decision.subject}: {decision.reason.value}"
        )

    def details(self) -> Dict[str, Any]:
        return self.decision.to_dict()


class TokenIdNotFound(CertichainError):
    """Issuance reported success but no created issuance entry was found."""

    code = "TokenIdNotFound"

    def __init__(self, receipt_id: Optional[str]):
        self.receipt_id = receipt_id
        super().__init__(f"no MPTokenIssuance created by successful transaction {receipt_id}")

    def details(self) -> Dict[str, Any]:
        return {"receipt_id": self.receipt_id}


class PartialFailure(CertichainError):
    """A multi-step workflow committed some steps and then stopped."""

    code = "PartialFailure"

    def __init__(self, stage: str, last_completed_step: str, cause: CertichainError):
        self.stage = stage
        self.last_completed_step = last_completed_step
        self.cause = cause
        # Calling the operation again resumes after last_completed_step.
        self.resumable = True
        self.retryable = cause.retryable
        super().__init__(f"{stage}: {cause}")

    def details(self) -> Dict[str, Any]:
        out = {
            "partial_failure": self.stage,
            "last_completed_step": self.last_completed_step,
            "cause": self.cause.code,
            "resumable": self.resumable,
        }
        out.update(self.cause.details())
        return out


class LedgerUnavailable(CertichainError):
    """Transport failure or timeout reaching the ledger."""

    code = "LedgerUnavailable"
    retryable = True


class DecryptionFailed(CertichainError):
    """Sealed payload could not be opened with the supplied key."""

    code = "DecryptionFailed"

    def __init__(self) -> None:
        super().__init__("decryption failed")


class ArtifactError(CertichainError):
    """Artifact store content does not match its identifier."""

    code = "ArtifactError"
