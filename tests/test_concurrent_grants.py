"""Concurrent registry writes against the local ledger, each thread on its own connection."""
import threading

import pytest
from django.db import connection

from datasets.backoff import RetryPolicy, call_with_backoff
from datasets.crypto import wrap_key
from datasets.errors import Conflict, EnvelopeError
from datasets.models import LedgerEvent
from datasets.policy import AccessLevel
from datasets.registry import Receipt

pytestmark = pytest.mark.django_db(transaction=True)

PLAINTEXT = b'station,temp\nwest,12.5\n'

RETRY = RetryPolicy(max_attempts=50, backoff_seconds=0.01, max_backoff=0.05)


def _grant_when_released(registry, sender, dataset_id, principal, wrapped, barrier, outcomes):
    try:
        barrier.wait(timeout=10)
        outcomes.append(call_with_backoff(
            lambda: registry.grant(sender, dataset_id, principal, AccessLevel.READ, wrapped),
            RETRY, what=f'grant from {sender}',
        ))
    except EnvelopeError as exc:
        outcomes.append(exc)
    finally:
        connection.close()


def test_simultaneous_identical_grants_emit_one_event(service, registry, alice, bob, carol, metadata):
    """Two admins grant carol READ at the same moment; the ledger orders them and absorbs the second."""
    dataset_id = service.publish(alice, PLAINTEXT, metadata, initial_grantees={bob.address: 3})
    wraps = {
        admin.address: wrap_key(service.fetch_key(admin, dataset_id), carol.public_key)
        for admin in (alice, bob)
    }
    barrier = threading.Barrier(2)
    outcomes = []
    threads = [
        threading.Thread(target=_grant_when_released,
                         args=(registry, sender, dataset_id, carol.address, wrapped, barrier, outcomes))
        for sender, wrapped in wraps.items()
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(outcomes) == 2
    assert all(isinstance(outcome, (Receipt, Conflict)) for outcome in outcomes), outcomes
    receipts = [outcome for outcome in outcomes if isinstance(outcome, Receipt)]
    assert sum(1 for r in receipts for e in r.events if e.name == 'AccessGranted') == 1

    stored = [e for e in LedgerEvent.objects.filter(name='AccessGranted') if e.args[1] == carol.address]
    assert len(stored) == 1
    assert registry.check_access(dataset_id, carol.address) is AccessLevel.READ
    assert service.fetch(carol, dataset_id) == PLAINTEXT
