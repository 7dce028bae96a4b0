"""Shared fixtures: local ledger network, in-memory content store, registered principals."""
import pytest
from django.core.cache import cache

from datasets.content_store import MemoryContentStore, reset_content_store
from datasets.crypto import PrincipalKey
from datasets.envelope import EnvelopeService
from datasets.registry import clear_registries, get_registry
from principals.directory import PrincipalDirectory

NETWORK_ID = 1337

METADATA = {
    'name': 'Weather Stations 2024',
    'description': 'Hourly readings from coastal weather stations.',
    'data_type': 'csv',
    'size': 2048,
    'tags': ['weather', 'coastal'],
}


@pytest.fixture(autouse=True)
def gateway_settings(settings):
    settings.CONTENT_STORE_BACKEND = 'memory'
    settings.NETWORKS = {NETWORK_ID: {'backend': 'ledger', 'confirmations': 0}}
    settings.DEFAULT_NETWORK_ID = NETWORK_ID
    settings.REGISTRY_WRITES_PER_MINUTE = 1000
    settings.REPLAY_WINDOW_SECONDS = 120
    settings.REQUEST_DEADLINE_SECONDS = 30
    cache.clear()
    clear_registries()
    reset_content_store()
    yield settings
    clear_registries()
    reset_content_store()


@pytest.fixture
def store():
    return MemoryContentStore()


@pytest.fixture
def registry(db):
    return get_registry(NETWORK_ID)


@pytest.fixture
def directory(db):
    return PrincipalDirectory()


@pytest.fixture
def service(registry, store, directory):
    return EnvelopeService(registry, store, directory, sleep=lambda _: None)


def _registered(directory):
    key = PrincipalKey.generate()
    directory.register(key.address, key.public_key)
    return key


@pytest.fixture
def alice(directory):
    return _registered(directory)


@pytest.fixture
def bob(directory):
    return _registered(directory)


@pytest.fixture
def carol(directory):
    return _registered(directory)


@pytest.fixture
def metadata():
    return dict(METADATA)
