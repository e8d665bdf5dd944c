import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import certichain`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from certichain.addresses import address_from_seed_text  # noqa: E402
from certichain.config import CertichainConfig  # noqa: E402
from certichain.credentials import resolve_credential_type  # noqa: E402
from certichain.lifecycle import IssuanceRequest  # noqa: E402
from certichain.memory import InMemoryLedger  # noqa: E402
from certichain.sealing import generate_keypair  # noqa: E402
from certichain.service import ProvenanceService  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless CERTICHAIN_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('CERTICHAIN_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CERTICHAIN_RUN_SLOW=1 to enable'))


LOT = "LOT-2025-001"


class Accounts:
    issuer = address_from_seed_text("producer")
    laboratory = address_from_seed_text("laboratory")
    buyer = address_from_seed_text("buyer")
    carrier = address_from_seed_text("carrier")
    trusted_issuer = address_from_seed_text("credential-authority")
    outsider = address_from_seed_text("outsider")


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def accounts():
    return Accounts


@pytest.fixture
def config():
    cfg = CertichainConfig()
    cfg.credentials.issuer_address.set(Accounts.trusted_issuer)
    return cfg


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def lab_keys():
    """(private hex, public hex) of the laboratory's secp256k1 key."""
    return generate_keypair()


@pytest.fixture
def service(ledger, config):
    return ProvenanceService.create(submitter=ledger, reader=ledger, config=config, sleep=no_sleep)


@pytest.fixture
def orchestrator(service):
    return service.orchestrator


@pytest.fixture
def lab_credential(ledger, config):
    credential_type = resolve_credential_type("LABO", config)
    return ledger.grant_credential(Accounts.laboratory, Accounts.trusted_issuer, credential_type)


@pytest.fixture
def issuance_request(lab_keys):
    return IssuanceRequest(
        lot_number=LOT,
        counterparty_address=Accounts.buyer,
        laboratory_public_key=lab_keys[1],
        laboratory_name="Labo Central",
        linked_artifact_hash="sha256:" + "ab" * 32,
    )


@pytest.fixture
def issued_token(orchestrator, issuance_request):
    """Token id of LOT after configure + issue."""
    orchestrator.configure_authorization(LOT, Accounts.issuer, Accounts.laboratory)
    return orchestrator.issue_token(issuance_request).token_id
