"""Lifecycle orchestrator tests: authorization, issuance, decision and transfer."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from certichain.credentials import GateReason, to_ledger_time
from certichain.envelope import MAX_ENVELOPE_BYTES, EnvelopeStatus, HistoryAction, decode
from certichain.errors import (
    AuthorizationRejected,
    ConfigError,
    CredentialRequired,
    PreconditionFailed,
    SubmissionFailed,
    ValidationError,
)
from certichain.lifecycle import (
    DECISION_MEMO_TYPE,
    ISSUANCE_FLAGS,
    SEAL_MEMO_TYPE,
    IssuanceRequest,
    LifecycleOrchestrator,
)
from certichain.ledger import SubmissionAdapter
from certichain.memory import InMemoryLedger
from certichain.records import LotState
from certichain.sealing import unseal
from conftest import LOT, Accounts, no_sleep


def _memo_types(tx):
    return [bytes.fromhex(m["Memo"]["MemoType"]).decode() for m in tx.get("Memos", [])]


class TestConfigureAuthorization:

    def test_single_laboratory_cosigner(self, orchestrator, ledger):
        result = orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        assert result.success
        record = orchestrator.get_record(LOT)
        assert record.state is LotState.AUTH_CONFIGURED
        assert record.scheme.quorum == 1
        assert record.signer_receipt == result.receipt_id
        assert ledger.signer_lists[Accounts.issuer]["entries"] == [
            {"Account": Accounts.laboratory, "SignerWeight": 1}
        ]

    def test_explicit_entries(self, orchestrator, ledger):
        orchestrator.configure_authorization(
            LOT, Accounts.issuer, Accounts.laboratory, quorum=2,
            entries=[{"account": Accounts.laboratory, "weight": 1}, {"account": Accounts.carrier, "weight": 1}],
        )
        assert ledger.signer_lists[Accounts.issuer]["quorum"] == 2

    def test_reconfigure_before_issue(self, orchestrator):
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        assert orchestrator.get_record(LOT).state is LotState.AUTH_CONFIGURED

    def test_not_after_issue(self, orchestrator, issued_token):
        with pytest.raises(PreconditionFailed) as exc:
            orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        assert exc.value.state == "ISSUED"

    def test_rejection_leaves_state(self, orchestrator, ledger):
        ledger.fail_next("tefBAD_QUORUM")
        with pytest.raises(AuthorizationRejected):
            orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        assert orchestrator.get_record(LOT).state is LotState.UNINITIALIZED

    def test_invalid_addresses(self, orchestrator, ledger):
        with pytest.raises(ValidationError):
            orchestrator.configure_authorization(LOT, "issuer", Accounts.laboratory)
        with pytest.raises(ValidationError):
            orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.issuer)
        assert ledger.submitted == []


class TestIssueToken:

    def test_issue_before_configure(self, orchestrator, issuance_request, ledger):
        with pytest.raises(PreconditionFailed) as exc:
            orchestrator.issue_token(issuance_request)
        assert exc.value.state == "UNINITIALIZED"
        assert ledger.submitted == []

    def test_issuance_transaction_shape(self, orchestrator, issuance_request, ledger):
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        receipt = orchestrator.issue_token(issuance_request)

        tx = ledger.submissions_of("MPTokenIssuanceCreate")[0]
        assert tx["Account"] == Accounts.issuer
        assert tx["MaximumAmount"] == "1"
        assert tx["AssetScale"] == 0
        assert tx["Flags"] == ISSUANCE_FLAGS
        assert len(tx["MPTokenMetadata"]) // 2 <= MAX_ENVELOPE_BYTES

        envelope = decode(tx["MPTokenMetadata"])
        assert envelope["lot_number"] == LOT
        assert envelope["issuer_address"] == Accounts.issuer
        assert envelope["counterparty_address"] == Accounts.buyer
        assert envelope["laboratory_address"] == Accounts.laboratory
        assert envelope["laboratory_name"] == "Labo Central"
        assert envelope["step"] == 1
        assert envelope["status"] == "SALE_INITIATED"
        assert envelope["history"][0]["action"] == "CREATED"

        assert receipt.token_id in ledger.issuances
        assert receipt.to_dict()["status"] == "SALE_INITIATED"
        assert not receipt.adopted

    def test_record_after_issue(self, orchestrator, issued_token, ledger):
        record = orchestrator.find_by_token(issued_token)
        assert record.lot_number == LOT
        assert record.state is LotState.ISSUED
        assert record.current_owner == Accounts.issuer
        assert record.counterparty == Accounts.buyer
        assert record.pending_intent is None
        assert record.last_completed_step == "issue_token"
        assert ledger.holders[issued_token] == Accounts.issuer

    def test_issue_twice_fails(self, orchestrator, issued_token, issuance_request):
        with pytest.raises(PreconditionFailed):
            orchestrator.issue_token(issuance_request)

    def test_sensitive_payload_sealed_to_laboratory(self, orchestrator, issuance_request, lab_keys, ledger):
        issuance_request.sensitive_payload = b"pesticide residue: 0.01 mg/kg"
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        orchestrator.issue_token(issuance_request)

        tx = ledger.submissions_of("MPTokenIssuanceCreate")[0]
        assert _memo_types(tx) == [SEAL_MEMO_TYPE]
        sealed_hex = tx["Memos"][0]["Memo"]["MemoData"]
        assert b"pesticide" not in bytes.fromhex(sealed_hex)
        assert unseal(sealed_hex, lab_keys[0]) == b"pesticide residue: 0.01 mg/kg"
        assert orchestrator.get_record(LOT).sealed_payload.to_hex() == sealed_hex

    def test_sensitive_payload_needs_public_key(self, orchestrator, ledger):
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        request = IssuanceRequest(LOT, Accounts.buyer, sensitive_payload=b"x")
        with pytest.raises(ValidationError):
            orchestrator.issue_token(request)
        assert ledger.submissions_of("MPTokenIssuanceCreate") == []

    def test_oversized_envelope_not_submitted(self, orchestrator, ledger):
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        request = IssuanceRequest(LOT, Accounts.buyer, laboratory_name="L" * 2000)
        with pytest.raises(ValidationError):
            orchestrator.issue_token(request)
        assert ledger.submissions_of("MPTokenIssuanceCreate") == []
        assert orchestrator.get_record(LOT).state is LotState.AUTH_CONFIGURED

    def test_request_from_dict(self):
        request = IssuanceRequest.from_dict({"lot_number": LOT, "counterparty_address": Accounts.buyer})
        assert request.laboratory_name == "Laboratory"
        with pytest.raises(ValidationError):
            IssuanceRequest.from_dict({"lot_number": LOT})
        with pytest.raises(ValidationError):
            IssuanceRequest.from_dict({"lot_number": LOT, "counterparty_address": Accounts.buyer, "price": 3})


class TestLaboratoryDecision:

    def test_validate(self, orchestrator, issued_token, lab_credential):
        receipt = orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True, note="grade A")
        assert receipt.decision is LotState.VALIDATED
        assert receipt.status is EnvelopeStatus.VALIDATED
        assert receipt.step == 2

        record = orchestrator.get_record(LOT)
        assert record.state is LotState.VALIDATED
        assert record.decision_note == "grade A"
        assert record.envelope.last_event.action == HistoryAction.VALIDATED
        assert record.envelope.last_event.by == Accounts.laboratory

    def test_reject_is_terminal(self, orchestrator, issued_token, lab_credential):
        orchestrator.validate_or_reject(issued_token, Accounts.laboratory, False)
        record = orchestrator.get_record(LOT)
        assert record.state is LotState.REJECTED
        assert record.envelope.status is EnvelopeStatus.REJECTED
        with pytest.raises(PreconditionFailed):
            orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer)
        with pytest.raises(PreconditionFailed):
            orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)

    def test_decision_is_final(self, orchestrator, issued_token, lab_credential):
        orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        with pytest.raises(PreconditionFailed):
            orchestrator.validate_or_reject(issued_token, Accounts.laboratory, False)

    def test_no_credential_denied_without_mutation(self, orchestrator, issued_token, ledger):
        before = orchestrator.get_record(LOT).to_dict()
        submitted = len(ledger.submitted)
        with pytest.raises(CredentialRequired) as exc:
            orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        assert exc.value.decision.reason is GateReason.NOT_FOUND
        assert exc.value.details()["reason"] == "NotFound"
        assert orchestrator.get_record(LOT).to_dict() == before
        assert len(ledger.submitted) == submitted
        assert orchestrator.audit.events[-1].outcome == "denied"

    def test_expired_credential_denied(self, orchestrator, issued_token, ledger, config):
        ledger.grant_credential(
            Accounts.laboratory, Accounts.trusted_issuer, "CERTICHAIN_LABO", expiration=to_ledger_time(1000000000),
        )
        with pytest.raises(CredentialRequired) as exc:
            orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        assert exc.value.decision.reason is GateReason.EXPIRED

    def test_credentialed_caller_must_be_designated_lab(self, orchestrator, issued_token, ledger):
        ledger.grant_credential(Accounts.outsider, Accounts.trusted_issuer, "CERTICHAIN_LABO")
        with pytest.raises(PreconditionFailed):
            orchestrator.validate_or_reject(issued_token, Accounts.outsider, True)

    def test_unknown_token(self, orchestrator, lab_credential):
        with pytest.raises(PreconditionFailed):
            orchestrator.validate_or_reject("00" * 24, Accounts.laboratory, True)

    def test_approve_must_be_bool(self, orchestrator, issued_token, lab_credential):
        with pytest.raises(ValidationError):
            orchestrator.validate_or_reject(issued_token, Accounts.laboratory, "yes")

    def test_enforcement_needs_trusted_issuer(self, ledger, issuance_request, config):
        config.credentials.issuer_address.set("")
        adapter = SubmissionAdapter.from_config(ledger, config, sleep=no_sleep)
        orchestrator = LifecycleOrchestrator(adapter, ledger, config=config)
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        token_id = orchestrator.issue_token(issuance_request).token_id
        with pytest.raises(ConfigError):
            orchestrator.validate_or_reject(token_id, Accounts.laboratory, True)

    def test_enforcement_disabled_bypasses(self, orchestrator, issued_token, config):
        config.credentials.enforce.set(False)
        receipt = orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        assert receipt.decision is LotState.VALIDATED

    def test_decision_marker(self, orchestrator, issued_token, lab_credential, ledger, config):
        config.lifecycle.submit_decision_marker.set(True)
        receipt = orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True, note="ok")
        markers = ledger.submissions_of("AccountSet")
        assert len(markers) == 1
        assert markers[0]["Account"] == Accounts.laboratory
        assert _memo_types(markers[0]) == [DECISION_MEMO_TYPE]
        assert receipt.marker_receipt

    def test_refused_marker_keeps_state(self, orchestrator, issued_token, lab_credential, ledger, config):
        config.lifecycle.submit_decision_marker.set(True)
        ledger.fail_next("tecNO_PERMISSION")
        with pytest.raises(SubmissionFailed):
            orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        assert orchestrator.get_record(LOT).state is LotState.ISSUED


class TestTransfer:

    def test_transfer_before_issue(self, orchestrator):
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        with pytest.raises(PreconditionFailed):
            orchestrator.transfer_token("AB" * 24, Accounts.issuer, Accounts.buyer)

    def test_transfer(self, orchestrator, issued_token, ledger):
        receipt = orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer)
        assert receipt.new_owner == Accounts.buyer
        assert receipt.step == 2
        assert ledger.holders[issued_token] == Accounts.buyer

        tx = ledger.submissions_of("Payment")[0]
        assert tx["Amount"] == {"mpt_issuance_id": issued_token, "value": "1"}
        assert tx["Destination"] == Accounts.buyer

        record = orchestrator.get_record(LOT)
        assert record.state is LotState.TRANSFERRED
        assert record.current_owner == Accounts.buyer
        assert record.envelope.status is EnvelopeStatus.IN_TRANSIT
        assert record.transfer_receipts == [receipt.tx_receipt]

    def test_chain_of_transfers(self, orchestrator, issued_token, ledger):
        orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.carrier)
        receipt = orchestrator.transfer_token(issued_token, Accounts.carrier, Accounts.buyer, status="DELIVERED")
        assert receipt.step == 3
        assert ledger.holders[issued_token] == Accounts.buyer
        assert orchestrator.get_record(LOT).envelope.status is EnvelopeStatus.DELIVERED

    @pytest.mark.parametrize("amount", ["2", "0.5", 0, "", True, "1.0"])
    def test_partial_amount_rejected(self, orchestrator, issued_token, ledger, amount):
        with pytest.raises(ValidationError) as exc:
            orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer, amount=amount)
        assert exc.value.field == "amount"
        assert ledger.submissions_of("Payment") == []

    def test_integer_one_accepted(self, orchestrator, issued_token):
        assert orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer, amount=1).new_owner

    def test_sender_must_hold(self, orchestrator, issued_token, ledger):
        with pytest.raises(PreconditionFailed):
            orchestrator.transfer_token(issued_token, Accounts.buyer, Accounts.carrier)
        assert ledger.submissions_of("Payment") == []

    def test_self_transfer_rejected(self, orchestrator, issued_token):
        with pytest.raises(ValidationError):
            orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.issuer)

    @pytest.mark.parametrize("status", ["VALIDATED", "SALE_INITIATED", "LOST"])
    def test_bad_status(self, orchestrator, issued_token, status):
        with pytest.raises(ValidationError):
            orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer, status=status)

    def test_requires_validation_when_configured(self, orchestrator, issued_token, lab_credential, config):
        config.lifecycle.require_validation_before_transfer.set(True)
        with pytest.raises(PreconditionFailed):
            orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer)
        orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        assert orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer).step == 3

    def test_validate_after_transfer(self, orchestrator, issued_token, lab_credential):
        orchestrator.transfer_token(issued_token, Accounts.issuer, Accounts.buyer)
        receipt = orchestrator.validate_or_reject(issued_token, Accounts.laboratory, True)
        assert receipt.step == 3
        assert orchestrator.get_record(LOT).state is LotState.VALIDATED

    def test_holder_authorization(self, config, issuance_request):
        ledger = InMemoryLedger(require_holder_authorization=True)
        adapter = SubmissionAdapter.from_config(ledger, config, sleep=no_sleep)
        orchestrator = LifecycleOrchestrator(adapter, ledger, config=config)
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        token_id = orchestrator.issue_token(issuance_request).token_id

        with pytest.raises(SubmissionFailed) as exc:
            orchestrator.transfer_token(token_id, Accounts.issuer, Accounts.buyer)
        assert exc.value.native_result_code == "tecNO_AUTH"
        assert orchestrator.get_record(LOT).state is LotState.ISSUED

        orchestrator.authorize_holder(token_id, Accounts.buyer)
        assert orchestrator.transfer_token(token_id, Accounts.issuer, Accounts.buyer).new_owner == Accounts.buyer


class TestFullLifecycle:

    def test_end_to_end(self, orchestrator, issuance_request, lab_credential, ledger):
        orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
        token_id = orchestrator.issue_token(issuance_request).token_id
        orchestrator.validate_or_reject(token_id, Accounts.laboratory, True)
        orchestrator.transfer_token(token_id, Accounts.issuer, Accounts.carrier)
        orchestrator.transfer_token(token_id, Accounts.carrier, Accounts.buyer, status=EnvelopeStatus.DELIVERED)

        record = orchestrator.get_record(LOT)
        assert record.state is LotState.TRANSFERRED
        assert record.envelope.step == 4
        assert [h.action for h in record.envelope.history] == ["CREATED", "VALIDATED", "TRANSFERRED", "TRANSFERRED"]
        assert [t.to_state for t in record.transitions] == [
            LotState.AUTH_CONFIGURED, LotState.ISSUED, LotState.VALIDATED,
            LotState.TRANSFERRED, LotState.TRANSFERRED,
        ]
        assert [tx["TransactionType"] for tx in ledger.submitted] == [
            "SignerListSet", "MPTokenIssuanceCreate", "Payment", "Payment",
        ]

        # The token's metadata is never rewritten.
        assert decode(ledger.issuances[token_id]["metadata"])["step"] == 1

        assert orchestrator.audit.verify_chain()


@pytest.mark.slow
def test_many_lots_in_parallel(orchestrator, ledger):
    lots = [f"LOT-2025-{n:04d}" for n in range(200)]

    def run(lot):
        orchestrator.configure_authorization(lot, Accounts.issuer, Accounts.laboratory)
        token_id = orchestrator.issue_token(IssuanceRequest(lot_number=lot, counterparty_address=Accounts.buyer)).token_id
        orchestrator.transfer_token(token_id, Accounts.issuer, Accounts.carrier)
        return token_id

    with ThreadPoolExecutor(max_workers=16) as pool:
        token_ids = list(pool.map(run, lots))

    assert len(set(token_ids)) == len(lots)
    assert all(ledger.holders[t] == Accounts.carrier for t in token_ids)
    assert all(orchestrator.get_record(lot).state is LotState.TRANSFERRED for lot in lots)
    assert orchestrator.audit.verify_chain()
