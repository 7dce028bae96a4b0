"""Tests for the registry adapter over the local ledger backend."""
import pytest
from django.core.cache import cache

from datasets.backoff import Deadline
from datasets.crypto import PrincipalKey, content_hash, generate_content_key, wrap_key
from datasets.errors import BadRequest, Busy, Conflict, DeadlineExceeded, Forbidden, Gone, NotFound
from datasets.models import LedgerEvent, LedgerTransaction
from datasets.policy import AccessLevel
from datasets.registry import Event, build_registry, get_registry, parse_network_id
from datasets.serializers import encode_metadata

pytestmark = pytest.mark.django_db

DATASET_ID = content_hash(b'ciphertext-1')


@pytest.fixture
def content_key():
    return generate_content_key()


@pytest.fixture
def registered(registry, alice, metadata, content_key):
    """An encrypted dataset owned by alice, nobody else has access."""
    registry.register_dataset(
        alice.address, DATASET_ID, encode_metadata(metadata),
        wrapped_keys={alice.address: wrap_key(content_key, alice.public_key)},
    )
    return DATASET_ID


def test_register_emits_event_and_stores_dataset(registry, alice, metadata, content_key):
    """register_dataset commits the dataset and emits DatasetRegistered."""
    receipt = registry.register_dataset(
        alice.address, DATASET_ID, encode_metadata(metadata),
        wrapped_keys={alice.address: wrap_key(content_key, alice.public_key)},
    )

    assert receipt.event == Event('DatasetRegistered', (alice.address, DATASET_ID, DATASET_ID))
    assert receipt.tx_hash.startswith('0x')
    dataset = registry.get_dataset(DATASET_ID)
    assert dataset.owner == alice.address
    assert dataset.content_id == DATASET_ID
    assert dataset.is_encrypted and not dataset.is_public and not dataset.retired
    assert LedgerEvent.objects.filter(name='DatasetRegistered').count() == 1


def test_register_is_idempotent_for_same_owner(registry, registered, alice, metadata):
    """Re-registering the same id by the same owner converges without events."""
    receipt = registry.register_dataset(alice.address, registered, encode_metadata(metadata),
                                        wrapped_keys={alice.address: b'\x00'})
    assert receipt.events == ()


def test_register_by_another_owner_conflicts(registry, registered, bob, metadata):
    """A content id can only ever belong to one owner."""
    with pytest.raises(Conflict):
        registry.register_dataset(bob.address, registered, encode_metadata(metadata),
                                  wrapped_keys={bob.address: b'\x00'})


def test_register_requires_wraps_for_every_reader(registry, alice, bob, metadata, content_key):
    """Encrypted datasets must ship a wrap for the owner and each grantee."""
    with pytest.raises(BadRequest, match=bob.address):
        registry.register_dataset(
            alice.address, DATASET_ID, encode_metadata(metadata),
            initial_acl={bob.address: 1},
            wrapped_keys={alice.address: wrap_key(content_key, alice.public_key)},
        )
    assert not LedgerTransaction.objects.exists()


def test_register_unencrypted_rejects_wraps(registry, alice, metadata):
    """Plaintext datasets carry no wrapped keys."""
    with pytest.raises(BadRequest):
        registry.register_dataset(alice.address, DATASET_ID, encode_metadata(metadata),
                                  wrapped_keys={alice.address: b'\x01'}, is_encrypted=False)


def test_get_dataset_unknown_is_not_found(registry):
    with pytest.raises(NotFound):
        registry.get_dataset('00' * 32)


def test_grant_writes_entry_and_wrap_atomically(registry, registered, alice, bob, content_key):
    """Access entry and wrapped key appear together."""
    wrapped = wrap_key(content_key, bob.public_key)
    receipt = registry.grant(alice.address, registered, bob.address, AccessLevel.READ, wrapped)

    assert receipt.event == Event('AccessGranted', (registered, bob.address, 1))
    assert registry.check_access(registered, bob.address) is AccessLevel.READ
    assert registry.get_wrapped_key(registered, bob.address) == wrapped


def test_grant_without_wrap_on_encrypted_dataset_fails(registry, registered, alice, bob):
    """No access entry may exist without its wrapped key."""
    with pytest.raises(BadRequest):
        registry.grant(alice.address, registered, bob.address, AccessLevel.READ)
    assert registry.check_access(registered, bob.address) is AccessLevel.NONE


def test_repeated_grant_of_same_level_is_a_no_op(registry, registered, alice, bob, content_key):
    """Two grants racing to the same level leave one entry and one event."""
    wrapped = wrap_key(content_key, bob.public_key)
    first = registry.grant(alice.address, registered, bob.address, 1, wrapped)
    second = registry.grant(alice.address, registered, bob.address, 1, wrapped)

    assert len(first.events) == 1
    assert second.events == ()
    assert registry.get_access_list(registered) == {alice.address: AccessLevel.ADMIN, bob.address: AccessLevel.READ}


def test_grants_of_different_levels_last_writer_wins(registry, registered, alice, bob, content_key):
    """Each distinct grant lands and the later one is what stays."""
    wrapped = wrap_key(content_key, bob.public_key)
    registry.grant(alice.address, registered, bob.address, 1, wrapped)
    registry.grant(alice.address, registered, bob.address, 2, wrapped)

    assert registry.check_access(registered, bob.address) is AccessLevel.MODIFY
    assert LedgerEvent.objects.filter(name='AccessGranted').count() == 2


def test_non_admin_cannot_grant(registry, registered, alice, bob, carol, content_key):
    """READ holders cannot hand out access."""
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))
    with pytest.raises(Forbidden):
        registry.grant(bob.address, registered, carol.address, 1, wrap_key(content_key, carol.public_key))


def test_revoke_removes_entry_and_wrap(registry, registered, alice, bob, content_key):
    """Revoked principals lose both their level and their wrap."""
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))
    receipt = registry.revoke(alice.address, registered, bob.address)

    assert receipt.event == Event('AccessRevoked', (registered, bob.address))
    assert registry.check_access(registered, bob.address) is AccessLevel.NONE
    with pytest.raises(NotFound):
        registry.get_wrapped_key(registered, bob.address)
    assert registry.revoke(alice.address, registered, bob.address).events == ()


def test_owner_cannot_be_revoked(registry, registered, alice, bob, content_key):
    """Even another ADMIN cannot revoke the owner."""
    registry.grant(alice.address, registered, bob.address, 3, wrap_key(content_key, bob.public_key))
    with pytest.raises(Forbidden):
        registry.revoke(bob.address, registered, alice.address)


def test_update_acl_replaces_entries(registry, registered, alice, bob, carol, content_key):
    """Whole-ACL replacement revokes, grants and changes levels in one write."""
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))
    receipt = registry.update_acl(
        alice.address, registered, {carol.address: 2},
        {carol.address: wrap_key(content_key, carol.public_key)},
    )

    assert [e.name for e in receipt.events] == ['AccessRevoked', 'AccessGranted']
    assert registry.get_access_list(registered) == {alice.address: AccessLevel.ADMIN,
                                                    carol.address: AccessLevel.MODIFY}


def test_update_acl_keeps_existing_wraps(registry, registered, alice, bob, content_key):
    """Principals who keep access don't need a fresh wrap."""
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))
    registry.update_acl(alice.address, registered, {bob.address: 3})
    assert registry.check_access(registered, bob.address) is AccessLevel.ADMIN


def test_update_acl_cannot_demote_owner(registry, registered, alice):
    with pytest.raises(Forbidden):
        registry.update_acl(alice.address, registered, {alice.address: 1})


def test_rekey_requires_wrap_for_every_reader(registry, registered, alice, bob, content_key):
    """A reader granted after the rekey was prepared makes it conflict."""
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))
    new_key = generate_content_key()
    with pytest.raises(Conflict):
        registry.rekey(alice.address, registered, content_hash(b'ciphertext-2'),
                       {alice.address: wrap_key(new_key, alice.public_key)})


def test_rekey_drops_wraps_for_revoked_principals(registry, registered, alice, bob, content_key):
    """Wraps for principals who lost access in the meantime are not stored."""
    new_key = generate_content_key()
    new_content_id = content_hash(b'ciphertext-2')
    receipt = registry.rekey(alice.address, registered, new_content_id, {
        alice.address: wrap_key(new_key, alice.public_key),
        bob.address: wrap_key(new_key, bob.public_key),
    })

    assert receipt.event == Event('Rekeyed', (registered, registered, new_content_id))
    assert registry.get_dataset(registered).content_id == new_content_id
    assert alice.unwrap(registry.get_wrapped_key(registered, alice.address)) == new_key
    with pytest.raises(NotFound):
        registry.get_wrapped_key(registered, bob.address)


def test_transfer_owner_keeps_previous_owner_as_admin(registry, registered, alice, bob, content_key):
    """Ownership moves, the old owner stays ADMIN until revoked."""
    receipt = registry.transfer_owner(alice.address, registered, bob.address, wrap_key(content_key, bob.public_key))

    assert receipt.event == Event('OwnerTransferred', (registered, alice.address, bob.address))
    assert registry.get_dataset(registered).owner == bob.address
    assert registry.check_access(registered, alice.address) is AccessLevel.ADMIN
    assert registry.get_datasets_by_owner(bob.address) == [registered]


def test_transfer_by_former_owner_conflicts(registry, registered, alice, bob, carol, content_key):
    """A transfer racing a completed transfer loses with Conflict."""
    registry.transfer_owner(alice.address, registered, bob.address, wrap_key(content_key, bob.public_key))
    with pytest.raises(Conflict):
        registry.transfer_owner(alice.address, registered, carol.address, wrap_key(content_key, carol.public_key))


def test_set_visibility_and_retire(registry, registered, alice):
    """Visibility toggles emit events; retired datasets are gone."""
    assert registry.set_visibility(alice.address, registered, True).event == \
        Event('VisibilityChanged', (registered, True))
    assert registry.set_visibility(alice.address, registered, True).events == ()

    assert registry.retire(alice.address, registered).event == Event('DatasetRetired', (registered,))
    with pytest.raises(Gone):
        registry.get_wrapped_key(registered, alice.address)
    with pytest.raises(Gone):
        registry.update_metadata(alice.address, registered, b'{}')


def test_update_metadata_needs_modify(registry, registered, alice, bob, metadata, content_key):
    """MODIFY holders may edit metadata, READ holders may not."""
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))
    metadata['name'] = 'Renamed dataset'
    with pytest.raises(Forbidden):
        registry.update_metadata(bob.address, registered, encode_metadata(metadata))

    registry.grant(alice.address, registered, bob.address, 2, wrap_key(content_key, bob.public_key))
    receipt = registry.update_metadata(bob.address, registered, encode_metadata(metadata))
    assert receipt.event == Event('MetadataUpdated', (registered,))
    assert b'Renamed dataset' in registry.get_dataset(registered).metadata_blob


def test_accessible_datasets_include_owned_and_granted(registry, registered, alice, bob, metadata, content_key):
    """Owned datasets come first, then datasets shared with the principal."""
    other_id = content_hash(b'bob-data')
    registry.register_dataset(bob.address, other_id, encode_metadata(metadata),
                              wrapped_keys={bob.address: wrap_key(content_key, bob.public_key)})
    registry.grant(alice.address, registered, bob.address, 1, wrap_key(content_key, bob.public_key))

    assert registry.get_accessible_datasets(bob.address) == [other_id, registered]
    assert registry.get_datasets_by_owner(bob.address) == [other_id]


def test_writes_are_rate_limited_per_sender(registry, registered, alice):
    """Exceeding the per-minute budget answers Busy."""
    cache.clear()
    registry.writes_per_minute = 2
    registry.set_visibility(alice.address, registered, True)
    registry.set_visibility(alice.address, registered, False)
    with pytest.raises(Busy):
        registry.set_visibility(alice.address, registered, True)


def test_expired_deadline_stops_write(registry, alice, metadata):
    """A write whose deadline passed is never submitted."""
    with pytest.raises(DeadlineExceeded):
        registry.register_dataset(alice.address, DATASET_ID, encode_metadata(metadata),
                                  is_encrypted=False, deadline=Deadline(0, clock=lambda: 0))
    assert not LedgerTransaction.objects.exists()


def test_parse_network_id(settings):
    """Known networks parse, others are rejected."""
    assert parse_network_id(None) == 1337
    assert parse_network_id('1337') == 1337
    with pytest.raises(BadRequest):
        parse_network_id('mainnet')
    with pytest.raises(BadRequest):
        parse_network_id(1)


def test_get_registry_is_memoized():
    """One adapter per network for the lifetime of the process."""
    assert get_registry(1337) is get_registry('1337')


def test_build_registry_rejects_unknown_backend(settings):
    settings.NETWORKS = {5: {'backend': 'carrier-pigeon'}}
    with pytest.raises(BadRequest):
        build_registry(5)


def test_event_decode_checks_schema():
    """Unknown event names and wrong arity are rejected."""
    with pytest.raises(BadRequest):
        Event.decode('Minted', ())
    with pytest.raises(BadRequest):
        Event.decode('AccessRevoked', ('only-one',))
    assert Event.decode('DatasetRetired', ['d']).as_dict() == {'dataset_id': 'd'}


def test_unknown_principal_has_no_access(registry, registered):
    assert registry.check_access(registered, PrincipalKey.generate().address) is AccessLevel.NONE


def test_set_wrapped_key_replaces_wrap_without_event(registry, registered, alice, bob, content_key):
    """A re-wrap changes only the stored key."""
    registry.grant(alice.address, registered, bob.address, 1, b'\x00' * 126)
    wrapped = wrap_key(content_key, bob.public_key)
    receipt = registry.set_wrapped_key(alice.address, registered, bob.address, wrapped)

    assert receipt.events == ()
    assert bob.unwrap(registry.get_wrapped_key(registered, bob.address)) == content_key


def test_set_wrapped_key_requires_access(registry, registered, alice, bob, content_key):
    with pytest.raises(BadRequest):
        registry.set_wrapped_key(alice.address, registered, bob.address, wrap_key(content_key, bob.public_key))


def test_find_by_content_id_follows_rekey(registry, registered, alice, bob, metadata):
    """Both the dataset id and the rotated ciphertext resolve to the dataset."""
    new_key = generate_content_key()
    new_content_id = content_hash(b'ciphertext-2')
    registry.rekey(alice.address, registered, new_content_id, {alice.address: wrap_key(new_key, alice.public_key)})

    assert registry.find_by_content_id(registered) == registered
    assert registry.find_by_content_id(new_content_id) == registered
    assert registry.find_by_content_id(content_hash(b'unknown')) is None

    with pytest.raises(Conflict):
        registry.register_dataset(bob.address, new_content_id, encode_metadata(metadata),
                                  wrapped_keys={bob.address: wrap_key(new_key, bob.public_key)})
