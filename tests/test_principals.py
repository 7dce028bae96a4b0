"""Tests for the principal public-key directory and its endpoints."""
import pytest
from rest_framework.test import APIClient

from datasets import authentication
from datasets.crypto import PrincipalKey
from datasets.errors import BadRecipient, NotFound
from principals.models import Principal

pytestmark = pytest.mark.django_db

NOW = 1_760_000_000


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    monkeypatch.setattr(authentication, 'current_timestamp', lambda: NOW)


def _register(client, key, public_key):
    body = {'public_key': public_key}
    auth = key.sign_request('register_principal', body, timestamp=NOW)
    return client.post('/principals/register/', {**body, **auth}, format='json')


def test_directory_register_and_lookup(directory):
    """Registered public keys resolve by address."""
    key = PrincipalKey.generate()
    directory.register(key.address, key.public_key)
    assert directory.public_key_for(key.address) == key.public_key


def test_directory_rejects_key_for_other_address(directory):
    """A public key only registers under its own address."""
    key, other = PrincipalKey.generate(), PrincipalKey.generate()
    with pytest.raises(BadRecipient):
        directory.register(other.address, key.public_key)


def test_directory_lookup_unknown_is_not_found(directory):
    with pytest.raises(NotFound):
        directory.public_key_for('0x' + '99' * 20)


def test_registration_endpoint_creates_principal():
    """A signed registration stores the caller's public key."""
    key = PrincipalKey.generate()
    response = _register(APIClient(), key, key.public_key)

    assert response.status_code == 201, response.data
    assert response.data['principal']['address'] == key.address
    assert Principal.objects.get(address=key.address).public_key == key.public_key


def test_registration_endpoint_rejects_foreign_key():
    """Registering someone else's public key is a bad recipient."""
    key, other = PrincipalKey.generate(), PrincipalKey.generate()
    response = _register(APIClient(), key, other.public_key)

    assert response.status_code == 400
    assert response.data['error'] == 'bad_recipient'
    assert not Principal.objects.exists()


def test_registration_requires_signature():
    key = PrincipalKey.generate()
    response = APIClient().post('/principals/register/', {'public_key': key.public_key}, format='json')
    assert response.status_code == 401


def test_list_and_detail_endpoints(alice, bob):
    client = APIClient()
    response = client.get('/principals/')
    assert response.status_code == 200
    assert {p['address'] for p in response.data} == {alice.address, bob.address}

    response = client.get(f'/principals/{alice.address}/')
    assert response.status_code == 200
    assert response.data['public_key'] == alice.public_key

    response = client.get(f'/principals/{"0x" + "99" * 20}/')
    assert response.status_code == 404
