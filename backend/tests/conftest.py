"""Pytest configuration and fixtures for the ledger import tests."""
import pytest
from fastapi.testclient import TestClient

from ledger_import.classifier import CategoryClassifier
from ledger_import.corrections import CorrectionMap, InMemoryKeyValueStore
from ledger_import.file_gate import UploadCandidate
from ledger_import.main import ImportRegistry, app, get_registry
from ledger_import.orchestrator import ImportOrchestrator
from ledger_import.persistence import InMemoryLedgerRepository


class RecordingLedger(InMemoryLedgerRepository):
    """In-memory ledger that counts calls made by the orchestrator."""

    def __init__(self):
        super().__init__()
        self.duplicate_checks = 0
        self.insert_calls = 0

    async def find_potential_duplicates(self, owner_id, candidates):
        self.duplicate_checks += 1
        return await super().find_potential_duplicates(owner_id, candidates)

    async def insert_batch(self, owner_id, records):
        self.insert_calls += 1
        return await super().insert_batch(owner_id, records)


@pytest.fixture
def correction_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def classifier(correction_store):
    return CategoryClassifier(CorrectionMap(correction_store))


@pytest.fixture
def ledger():
    return RecordingLedger()


@pytest.fixture
def orchestrator(ledger, classifier):
    return ImportOrchestrator("owner-1", ledger, classifier=classifier)


@pytest.fixture
def sample_csv_content():
    """Sample statement export for testing."""
    return """Date,Description,Amount
2024-01-01,Grocery Store,50.00
2024-01-03,Starbucks Coffee,4.50
2024-01-02,Uber Trip,30.00"""


@pytest.fixture
def sample_upload(sample_csv_content):
    return UploadCandidate.from_bytes("statement.csv", sample_csv_content.encode("utf-8"))


@pytest.fixture
def registry(classifier, ledger):
    return ImportRegistry(classifier=classifier, repository=ledger)


@pytest.fixture
def client(registry):
    """Create a test client wired to in-memory stores."""
    app.dependency_overrides[get_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()
