import pytest

from connectors.registry import ConnectorRegistry
from connectors.vault import CredentialVault
from tests.fakes import InMemoryObjectStore, InMemoryStore

MASTER_SECRET = "m" * 40


@pytest.fixture
def vault():
    # Low iteration count keeps service tests fast; the vault tests use the default.
    return CredentialVault(MASTER_SECRET, iterations=1_000)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def registry():
    ConnectorRegistry.reset()
    yield ConnectorRegistry()
    ConnectorRegistry.reset()
