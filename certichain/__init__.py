"""
CERTICHAIN: Provenance Token Lifecycle Engine

Tracks the custody and certification of a physical agricultural lot as a
single-unit, transferable token on the ledger. Issuance is co-signed by the
lot's laboratory, laboratory decisions are gated by on-ledger credentials,
and sensitive lot data travels sealed to the laboratory's key.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        PROVENANCE ENGINE                                 │
    │                                                                          │
    │  BOUNDARY                                                               │
    │    service.py       {success, data, error} results, correlation ids     │
    │                                                                          │
    │  LIFECYCLE                                                              │
    │    lifecycle.py     configure → issue → validate/reject → transfer      │
    │    records.py       off-ledger provenance records and state machine     │
    │    signers.py       signer-list (co-signer) configuration               │
    │    credentials.py   credential gate and trusted-issuer operations       │
    │    sealing.py       ECIES secp256k1 sealed payloads                     │
    │    envelope.py      canonical hex metadata envelope                     │
    │                                                                          │
    │  LEDGER BOUNDARY                                                        │
    │    ledger.py        intents, response normalisation, effect matching    │
    │    memory.py        in-memory ledger for tests and local development    │
    │    addresses.py     account address validation                          │
    │    artifacts.py     content-addressed off-ledger artifacts              │
    │                                                                          │
    │  INFRASTRUCTURE                                                         │
    │    config.py  observability.py  resilience.py  errors.py                │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Fail Closed: credential checks are enforced unless configuration
    explicitly disables them, and every bypass is logged.

    No Duplicate Tokens: an issuance whose outcome was not observed is
    reconciled by fingerprint before anything is resubmitted.

    Immutable Token: the on-ledger envelope is written once; later history
    lives in off-ledger provenance records.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import engine modules on first access."""

    if name in ("ProvenanceService", "OperationResult", "ErrorInfo"):
        from certichain import service
        return getattr(service, name)

    if name in ("LifecycleOrchestrator", "IssuanceRequest", "IssuanceReceipt",
                "TransferReceipt", "DecisionReceipt", "ReconcileReport", "ReconcileStatus"):
        from certichain import lifecycle
        return getattr(lifecycle, name)

    if name in ("LotState", "ProvenanceRecord", "RecordStore"):
        from certichain import records
        return getattr(records, name)

    if name in ("MetadataEnvelope", "EnvelopeStatus", "encode", "decode",
                "encode_envelope", "decode_envelope", "build_initial_envelope"):
        from certichain import envelope
        return getattr(envelope, name)

    if name in ("CredentialGate", "CredentialIssuer", "GateDecision", "GateReason", "Credential"):
        from certichain import credentials
        return getattr(credentials, name)

    if name in ("SignerListManager", "SignerEntry", "AuthorizationScheme"):
        from certichain import signers
        return getattr(signers, name)

    if name in ("seal", "unseal", "fingerprint", "generate_keypair", "SealedPayload"):
        from certichain import sealing
        return getattr(sealing, name)

    if name in ("SubmissionAdapter", "SubmissionResult", "TransactionIntent",
                "LedgerEffect", "Found", "NotFound", "match_created"):
        from certichain import ledger
        return getattr(ledger, name)

    if name == "InMemoryLedger":
        from certichain import memory
        return memory.InMemoryLedger

    if name in ("ArtifactStore", "LocalArtifactStore"):
        from certichain import artifacts
        return getattr(artifacts, name)

    raise AttributeError(f"module 'certichain' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Service
    "ProvenanceService",
    "OperationResult",
    "ErrorInfo",
    # Lifecycle
    "LifecycleOrchestrator",
    "IssuanceRequest",
    "IssuanceReceipt",
    "TransferReceipt",
    "DecisionReceipt",
    "ReconcileReport",
    "ReconcileStatus",
    "LotState",
    "ProvenanceRecord",
    "RecordStore",
    # Envelope
    "MetadataEnvelope",
    "EnvelopeStatus",
    "encode",
    "decode",
    "encode_envelope",
    "decode_envelope",
    "build_initial_envelope",
    # Credentials
    "CredentialGate",
    "CredentialIssuer",
    "GateDecision",
    "GateReason",
    "Credential",
    # Signers
    "SignerListManager",
    "SignerEntry",
    "AuthorizationScheme",
    # Sealing
    "seal",
    "unseal",
    "fingerprint",
    "generate_keypair",
    "SealedPayload",
    # Ledger
    "SubmissionAdapter",
    "SubmissionResult",
    "TransactionIntent",
    "LedgerEffect",
    "Found",
    "NotFound",
    "match_created",
    "InMemoryLedger",
    "ArtifactStore",
    "LocalArtifactStore",
]
