"""
CERTICHAIN In-Memory Ledger

Simulates the ledger for tests and local development without network
calls. Implements both the TransactionSubmitter and LedgerReader
collaborators and answers with the same response shape a ledger client
returns (``{"result": {"hash", "meta": {"TransactionResult",
"AffectedNodes"}, "tx_json"}}``).

Failures can be scripted:

    ledger.fail_next("tefPAST_SEQ", times=2)      # ledger declines
    ledger.raise_next(TimeoutError("slow"))       # lost before applying
    ledger.raise_next(TimeoutError("slow"), commit=True)  # applied, reply lost

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import hashlib
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from certichain.credentials import Credential, credential_type_from_hex, credential_type_hex
from certichain.envelope import MAX_ENVELOPE_BYTES
from certichain.ledger import (
    SUCCESS_CODE,
    SubmissionResult,
    fingerprint_tx_json,
    normalize_response,
)

RESPONSE_STYLES = ("wrapped", "flat", "engine")


@dataclass
class _ScriptedFailure:
    code: Optional[str] = None
    error: Optional[BaseException] = None
    commit: bool = False


class _Rejected(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


def _node(kind: str, entry_type: str, ledger_index: str, fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"LedgerEntryType": entry_type, "LedgerIndex": ledger_index}
    if fields:
        body["NewFields" if kind == "CreatedNode" else "FinalFields"] = fields
    return {kind: body}


class InMemoryLedger:
    """
    Ledger simulator.

    ``response_style`` selects the reply shape: ``wrapped`` (result under
    ``"result"``), ``flat`` (result object only) or ``engine``
    (``engine_result`` without metadata, as a submit-only client returns).
    """

    def __init__(self, response_style: str = "wrapped", require_holder_authorization: bool = False):
        if response_style not in RESPONSE_STYLES:
            raise ValueError(f"response_style must be one of {RESPONSE_STYLES}")
        self.response_style = response_style
        self.require_holder_authorization = require_holder_authorization

        self._lock = threading.RLock()
        self._sequence = 0
        self._script: Deque[_ScriptedFailure] = deque()
        self._read_errors: Deque[BaseException] = deque()

        self.submitted: List[Dict[str, Any]] = []
        self.signer_lists: Dict[str, Dict[str, Any]] = {}
        self.issuances: Dict[str, Dict[str, Any]] = {}
        self.holders: Dict[str, str] = {}
        self.authorized: Dict[str, Set[str]] = {}
        self.credentials: Dict[Tuple[str, str, str], Credential] = {}
        self._by_fingerprint: Dict[str, Dict[str, Any]] = {}

    # -------------------------------------------------------------------------
    # Scripting
    # -------------------------------------------------------------------------

    def fail_next(self, code: str, times: int = 1) -> None:
        with self._lock:
            for _ in range(times):
                self._script.append(_ScriptedFailure(code=code))

    def raise_next(self, error: BaseException, commit: bool = False) -> None:
        with self._lock:
            self._script.append(_ScriptedFailure(error=error, commit=commit))

    def fail_reads(self, error: BaseException, times: int = 1) -> None:
        with self._lock:
            for _ in range(times):
                self._read_errors.append(error)

    def grant_credential(
        self,
        subject: str,
        issuer: str,
        credential_type: str,
        accepted: bool = True,
        expiration: Optional[int] = None,
        revoked: bool = False,
    ) -> Credential:
        """Place a credential directly into ledger state."""
        credential = Credential(
            issuer=issuer,
            subject=subject,
            credential_type=credential_type,
            accepted=accepted,
            expiration=expiration,
            revoked=revoked,
        )
        with self._lock:
            self.credentials[(subject, issuer, credential_type)] = credential
        return credential

    def submissions_of(self, transaction_type: str) -> List[Dict[str, Any]]:
        return [tx for tx in self.submitted if tx.get("TransactionType") == transaction_type]

    # -------------------------------------------------------------------------
    # TransactionSubmitter
    # -------------------------------------------------------------------------

    def submit(self, tx_json: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            tx = copy.deepcopy(tx_json)
            self.submitted.append(tx)
            scripted = self._script.popleft() if self._script else None

            if scripted is not None and scripted.error is not None:
                if scripted.commit:
                    self._apply(tx)
                raise scripted.error

            if scripted is not None and scripted.code is not None:
                return self._respond(tx, scripted.code, [], self._next_hash(tx))

            return self._apply(tx)

    def _next_hash(self, tx: Dict[str, Any]) -> str:
        self._sequence += 1
        seed = f"{fingerprint_tx_json(tx)}:{self._sequence}".encode()
        return hashlib.sha256(seed).hexdigest().upper()

    def _apply(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        tx_hash = self._next_hash(tx)
        handler = getattr(self, f"_apply_{tx.get('TransactionType')}", None)
        if handler is None:
            return self._respond(tx, "temUNKNOWN", [], tx_hash)
        try:
            nodes = handler(tx, tx_hash)
        except _Rejected as r:
            response = self._respond(tx, r.code, [], tx_hash)
            if r.code.startswith("tec"):
                self._by_fingerprint[fingerprint_tx_json(tx)] = response
            return response

        response = self._respond(tx, SUCCESS_CODE, nodes, tx_hash)
        self._by_fingerprint[fingerprint_tx_json(tx)] = response
        return response

    def _respond(self, tx: Dict[str, Any], code: str, nodes: List[Dict[str, Any]], tx_hash: str) -> Dict[str, Any]:
        tx_out = dict(tx, hash=tx_hash)
        if self.response_style == "engine":
            return {"engine_result": code, "tx_json": tx_out}
        result = {
            "hash": tx_hash,
            "validated": True,
            "meta": {"TransactionResult": code, "AffectedNodes": nodes},
            "tx_json": tx_out,
        }
        if self.response_style == "flat":
            return result
        return {"result": result}

    # -------------------------------------------------------------------------
    # Transaction handlers
    # -------------------------------------------------------------------------

    def _apply_SignerListSet(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        account = tx["Account"]
        entries = [e["SignerEntry"] for e in tx.get("SignerEntries", [])]
        quorum = tx.get("SignerQuorum", 0)
        if quorum > sum(e["SignerWeight"] for e in entries):
            raise _Rejected("temBAD_QUORUM")
        if any(e["Account"] == account for e in entries):
            raise _Rejected("temBAD_SIGNER")
        kind = "ModifiedNode" if account in self.signer_lists else "CreatedNode"
        self.signer_lists[account] = {"quorum": quorum, "entries": entries}
        index = hashlib.sha256(f"signers:{account}".encode()).hexdigest().upper()
        return [_node(kind, "SignerList", index, {"SignerQuorum": quorum})]

    def _apply_MPTokenIssuanceCreate(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        metadata = tx.get("MPTokenMetadata", "")
        if len(metadata) // 2 > MAX_ENVELOPE_BYTES:
            raise _Rejected("temMALFORMED")
        issuer = tx["Account"]
        token_id = hashlib.sha256(f"mpt:{issuer}:{tx_hash}".encode()).hexdigest()[:48].upper()
        self.issuances[token_id] = {
            "issuer": issuer,
            "metadata": metadata,
            "flags": tx.get("Flags", 0),
            "maximum_amount": tx.get("MaximumAmount"),
        }
        self.holders[token_id] = issuer
        self.authorized[token_id] = set()
        return [
            _node("ModifiedNode", "AccountRoot", hashlib.sha256(issuer.encode()).hexdigest().upper()),
            _node("CreatedNode", "MPTokenIssuance", token_id, {"Issuer": issuer, "MPTokenMetadata": metadata}),
        ]

    def _apply_MPTokenAuthorize(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        token_id = tx.get("MPTokenIssuanceID", "")
        if token_id not in self.issuances:
            raise _Rejected("tecOBJECT_NOT_FOUND")
        self.authorized[token_id].add(tx["Account"])
        index = hashlib.sha256(f"mptoken:{token_id}:{tx['Account']}".encode()).hexdigest().upper()
        return [_node("CreatedNode", "MPToken", index, {"Account": tx["Account"]})]

    def _apply_Payment(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        amount = tx.get("Amount")
        if not isinstance(amount, dict) or "mpt_issuance_id" not in amount:
            raise _Rejected("temBAD_AMOUNT")
        token_id = amount["mpt_issuance_id"]
        if token_id not in self.issuances:
            raise _Rejected("tecOBJECT_NOT_FOUND")
        if amount.get("value") != "1":
            raise _Rejected("temBAD_AMOUNT")
        if self.holders.get(token_id) != tx["Account"]:
            raise _Rejected("tecINSUFFICIENT_FUNDS")
        destination = tx.get("Destination")
        if (
            self.require_holder_authorization
            and destination != self.issuances[token_id]["issuer"]
            and destination not in self.authorized[token_id]
        ):
            raise _Rejected("tecNO_AUTH")
        self.holders[token_id] = destination
        index = hashlib.sha256(f"mptoken:{token_id}".encode()).hexdigest().upper()
        return [_node("ModifiedNode", "MPToken", index, {"Holder": destination})]

    def _apply_CredentialCreate(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        credential_type = credential_type_from_hex(tx["CredentialType"])
        key = (tx["Subject"], tx["Account"], credential_type)
        if key in self.credentials:
            raise _Rejected("tecDUPLICATE")
        uri = bytes.fromhex(tx["URI"]).decode("utf-8") if tx.get("URI") else None
        self.credentials[key] = Credential(
            issuer=tx["Account"],
            subject=tx["Subject"],
            credential_type=credential_type,
            accepted=False,
            expiration=tx.get("Expiration"),
            uri=uri,
        )
        return [_node("CreatedNode", "Credential", self._credential_index(key))]

    def _apply_CredentialAccept(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        key = (tx["Account"], tx["Issuer"], credential_type_from_hex(tx["CredentialType"]))
        credential = self.credentials.get(key)
        if credential is None:
            raise _Rejected("tecNO_ENTRY")
        if credential.accepted:
            raise _Rejected("tecDUPLICATE")
        credential.accepted = True
        return [_node("ModifiedNode", "Credential", self._credential_index(key))]

    def _apply_CredentialDelete(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        key = (tx["Subject"], tx["Issuer"], credential_type_from_hex(tx["CredentialType"]))
        if tx["Account"] not in (key[0], key[1]):
            raise _Rejected("tecNO_PERMISSION")
        if key not in self.credentials:
            raise _Rejected("tecNO_ENTRY")
        del self.credentials[key]
        return [_node("DeletedNode", "Credential", self._credential_index(key))]

    def _apply_AccountSet(self, tx: Dict[str, Any], tx_hash: str) -> List[Dict[str, Any]]:
        return [_node("ModifiedNode", "AccountRoot", hashlib.sha256(tx["Account"].encode()).hexdigest().upper())]

    @staticmethod
    def _credential_index(key: Tuple[str, str, str]) -> str:
        subject, issuer, credential_type = key
        seed = f"credential:{subject}:{issuer}:{credential_type_hex(credential_type)}"
        return hashlib.sha256(seed.encode()).hexdigest().upper()

    # -------------------------------------------------------------------------
    # LedgerReader
    # -------------------------------------------------------------------------

    def _check_read(self) -> None:
        if self._read_errors:
            raise self._read_errors.popleft()

    def get_credential(self, subject: str, issuer: str, credential_type: str) -> Optional[Credential]:
        with self._lock:
            self._check_read()
            credential = self.credentials.get((subject, issuer, credential_type))
            return copy.copy(credential) if credential else None

    def get_token_holder(self, token_id: str) -> Optional[str]:
        with self._lock:
            self._check_read()
            return self.holders.get(token_id)

    def find_transaction(self, fingerprint: str) -> Optional[SubmissionResult]:
        with self._lock:
            self._check_read()
            raw = self._by_fingerprint.get(fingerprint)
            return normalize_response(raw, fingerprint) if raw is not None else None
