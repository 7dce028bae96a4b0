"""Tests for the orphan reconciliation script."""
from unittest import mock

import pytest

from datasets import registry as registry_module
from datasets.blockchain_service import ContractBackend
from datasets.content_store import get_content_store
from datasets.errors import Unavailable
from datasets.registry import RegistryAdapter
from reconcile_orphan import reconcile

pytestmark = pytest.mark.django_db

CONTRACT_NETWORK = 11155111


@pytest.fixture
def contract_registry(settings, monkeypatch):
    """A contract network whose node is a mock; the local ledger tables stay empty."""
    settings.NETWORKS = {**settings.NETWORKS, CONTRACT_NETWORK: {'backend': 'contract', 'confirmations': 0}}
    backend = ContractBackend(CONTRACT_NETWORK, 'http://node.test', '0x' + '11' * 20, w3=mock.MagicMock())
    registry = RegistryAdapter(CONTRACT_NETWORK, backend, confirmations=0)
    monkeypatch.setitem(registry_module._registries, CONTRACT_NETWORK, registry)
    return registry


def _find_call(registry):
    return registry.backend.contract.functions.findByContentId.return_value.call


def test_unreferenced_content_is_unpinned():
    store = get_content_store()
    content_id = store.put(b'left behind by a failed publish')
    assert reconcile(content_id) == 'unpinned'
    assert not store.is_pinned(content_id)


def test_registered_content_stays_pinned(alice, directory, metadata):
    """Both dataset ids and rotated content ids count as referenced."""
    from datasets.envelope import EnvelopeService
    from datasets.registry import get_registry

    store = get_content_store()
    service = EnvelopeService(get_registry(), store, directory, sleep=lambda _: None)
    dataset_id = service.publish(alice, b'rows', metadata)
    new_content_id = service.rekey(alice, dataset_id)

    assert reconcile(dataset_id) == 'referenced'
    assert reconcile(new_content_id) == 'referenced'
    assert store.is_pinned(new_content_id)


def test_rekeyed_content_on_contract_network_stays_pinned(contract_registry):
    """The reference check asks the contract, not the local ledger tables."""
    store = get_content_store()
    current_content_id = store.put(b'ciphertext after a rekey')
    _find_call(contract_registry).return_value = 'ab' * 32

    assert reconcile(current_content_id, CONTRACT_NETWORK) == 'referenced'
    assert store.is_pinned(current_content_id)
    contract_registry.backend.contract.functions.findByContentId.assert_called_with(current_content_id)


def test_unreferenced_content_on_contract_network_is_unpinned(contract_registry):
    store = get_content_store()
    content_id = store.put(b'never registered')
    _find_call(contract_registry).return_value = ''

    assert reconcile(content_id, CONTRACT_NETWORK) == 'unpinned'
    assert not store.is_pinned(content_id)


def test_unreachable_registry_leaves_content_pinned(contract_registry):
    import requests
    store = get_content_store()
    content_id = store.put(b'unknown state')
    _find_call(contract_registry).side_effect = requests.ConnectionError()

    with pytest.raises(Unavailable):
        reconcile(content_id, CONTRACT_NETWORK)
    assert store.is_pinned(content_id)
