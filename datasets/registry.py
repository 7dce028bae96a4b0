# datasets/registry.py
"""
Typed view over the on-chain dataset registry.

`get_registry(network_id)` hands out one RegistryAdapter per network. The
adapter normalizes arguments, rate-limits writes per sender and delegates to
a backend: the Django-model ledger for local networks or the deployed
contract through web3.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime

from django.conf import settings
from django.core.cache import cache

from .backoff import Deadline
from .crypto import from_hex, normalize_address
from .errors import BadRequest, Busy, Gone, NotFound
from .policy import AccessLevel, effective_level

logger = logging.getLogger(__name__)

# Event names and argument order are part of the registry's public contract.
EVENT_SCHEMAS = {
    'DatasetRegistered': ('owner', 'dataset_id', 'content_id'),
    'AccessGranted': ('dataset_id', 'principal', 'level'),
    'AccessRevoked': ('dataset_id', 'principal'),
    'Rekeyed': ('dataset_id', 'old_content_id', 'new_content_id'),
    'OwnerTransferred': ('dataset_id', 'old_owner', 'new_owner'),
    'MetadataUpdated': ('dataset_id',),
    'VisibilityChanged': ('dataset_id', 'is_public'),
    'DatasetRetired': ('dataset_id',),
}


@dataclass(frozen=True)
class Event:
    name: str
    args: tuple

    @classmethod
    def decode(cls, name, values):
        schema = EVENT_SCHEMAS.get(name)
        if schema is None:
            raise BadRequest(f'Unknown registry event: {name}')
        values = tuple(values)
        if len(values) != len(schema):
            raise BadRequest(f'{name} expects {len(schema)} arguments, got {len(values)}')
        return cls(name, values)

    def as_dict(self):
        return dict(zip(EVENT_SCHEMAS[self.name], self.args))


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    events: tuple = ()
    confirmations: int = 0

    @property
    def event(self):
        return self.events[0] if self.events else None

    def as_dict(self):
        return {
            'transaction_hash': self.tx_hash,
            'block_number': self.block_number,
            'events': [{'event': e.name, 'args': e.as_dict()} for e in self.events],
        }


@dataclass
class Dataset:
    dataset_id: str
    owner: str
    content_id: str
    metadata_blob: bytes
    created_at: datetime
    updated_at: datetime
    is_public: bool = False
    is_encrypted: bool = True
    retired: bool = False

    def as_dict(self):
        return {
            'dataset_id': self.dataset_id,
            'owner': self.owner,
            'content_id': self.content_id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'is_public': self.is_public,
            'is_encrypted': self.is_encrypted,
            'retired': self.retired,
        }


def _normalize_acl(acl):
    if not isinstance(acl, dict):
        raise BadRequest('ACL must be an object of address -> level')
    return {normalize_address(p): AccessLevel.parse(level) for p, level in acl.items()}


def _normalize_wraps(wrapped_keys):
    if not wrapped_keys:
        return {}
    if not isinstance(wrapped_keys, dict):
        raise BadRequest('wrapped_keys must be an object of address -> hex')
    return {normalize_address(p): from_hex(w, 'wrapped key') for p, w in wrapped_keys.items()}


class RegistryAdapter:
    """
    Read operations hit the backend directly. Write operations take the
    verified `sender`, are rate-limited per sender, and return a Receipt once
    the backend reports inclusion plus `confirmations` blocks.
    """

    def __init__(self, network_id, backend, confirmations=2, writes_per_minute=30):
        self.network_id = network_id
        self.backend = backend
        self.confirmations = confirmations
        self.writes_per_minute = writes_per_minute

    def __repr__(self):
        return f'RegistryAdapter(network_id={self.network_id}, backend={type(self.backend).__name__})'

    # --- reads ---

    def get_dataset(self, dataset_id):
        return self.backend.get_dataset(dataset_id)

    def get_access(self, dataset_id, principal):
        principal = normalize_address(principal)
        dataset = self.backend.get_dataset(dataset_id)
        return effective_level(dataset, principal, self.backend.get_stored_level(dataset_id, principal))

    def check_access(self, dataset_id, principal):
        return self.get_access(dataset_id, principal)

    def get_access_list(self, dataset_id):
        """Every principal with access, the owner included."""
        dataset = self.backend.get_dataset(dataset_id)
        acl = {p: AccessLevel(level) for p, level in self.backend.get_acl(dataset_id).items()}
        acl[dataset.owner] = AccessLevel.ADMIN
        return acl

    def get_datasets_by_owner(self, owner):
        return self.backend.get_datasets_by_owner(normalize_address(owner))

    def get_accessible_datasets(self, principal):
        return self.backend.get_accessible_datasets(normalize_address(principal))

    def find_by_content_id(self, content_id):
        """Dataset referencing `content_id` as its id or its current ciphertext, or None."""
        return self.backend.find_by_content_id(content_id)

    def get_wrapped_key(self, dataset_id, principal):
        principal = normalize_address(principal)
        dataset = self.backend.get_dataset(dataset_id)
        if dataset.retired:
            raise Gone(f'Dataset {dataset_id} is retired')
        if not dataset.is_encrypted:
            raise NotFound(f'Dataset {dataset_id} is not encrypted')
        return self.backend.get_wrapped_key(dataset_id, principal)

    # --- writes ---

    def register_dataset(self, sender, dataset_id, metadata_blob, initial_acl=None,
                         wrapped_keys=None, is_public=False, is_encrypted=True, deadline=None):
        return self._submit(sender, 'register_dataset', deadline,
                            dataset_id=dataset_id,
                            metadata_blob=bytes(metadata_blob),
                            initial_acl=_normalize_acl(initial_acl or {}),
                            wrapped_keys=_normalize_wraps(wrapped_keys),
                            is_public=bool(is_public),
                            is_encrypted=bool(is_encrypted))

    def update_metadata(self, sender, dataset_id, metadata_blob, deadline=None):
        return self._submit(sender, 'update_metadata', deadline,
                            dataset_id=dataset_id, metadata_blob=bytes(metadata_blob))

    def update_acl(self, sender, dataset_id, acl, wrapped_keys=None, deadline=None):
        return self._submit(sender, 'update_acl', deadline,
                            dataset_id=dataset_id, acl=_normalize_acl(acl),
                            wrapped_keys=_normalize_wraps(wrapped_keys))

    def grant(self, sender, dataset_id, principal, level, wrapped=None, deadline=None):
        """Access entry and wrapped key land in the same transaction."""
        return self._submit(sender, 'grant', deadline,
                            dataset_id=dataset_id, principal=normalize_address(principal),
                            level=AccessLevel.parse(level),
                            wrapped=None if wrapped is None else from_hex(wrapped, 'wrapped key'))

    def set_wrapped_key(self, sender, dataset_id, principal, wrapped, deadline=None):
        return self._submit(sender, 'set_wrapped_key', deadline,
                            dataset_id=dataset_id, principal=normalize_address(principal),
                            wrapped=from_hex(wrapped, 'wrapped key'))

    def revoke(self, sender, dataset_id, principal, deadline=None):
        return self._submit(sender, 'revoke', deadline,
                            dataset_id=dataset_id, principal=normalize_address(principal))

    def rekey(self, sender, dataset_id, new_content_id, wrapped_keys, deadline=None):
        return self._submit(sender, 'rekey', deadline,
                            dataset_id=dataset_id, new_content_id=new_content_id,
                            wrapped_keys=_normalize_wraps(wrapped_keys))

    def transfer_owner(self, sender, dataset_id, new_owner, new_wrapped_key=None, deadline=None):
        return self._submit(sender, 'transfer_owner', deadline,
                            dataset_id=dataset_id, new_owner=normalize_address(new_owner),
                            new_wrapped_key=None if new_wrapped_key is None
                            else from_hex(new_wrapped_key, 'wrapped key'))

    def set_visibility(self, sender, dataset_id, is_public, deadline=None):
        return self._submit(sender, 'set_visibility', deadline,
                            dataset_id=dataset_id, is_public=bool(is_public))

    def retire(self, sender, dataset_id, deadline=None):
        return self._submit(sender, 'retire', deadline, dataset_id=dataset_id)

    def _throttle(self, sender):
        if not self.writes_per_minute:
            return
        window = int(time.time() // 60)
        key = f'registry-writes:{self.network_id}:{sender}:{window}'
        cache.add(key, 0, timeout=120)
        try:
            count = cache.incr(key)
        except ValueError:
            cache.set(key, 1, timeout=120)
            count = 1
        if count > self.writes_per_minute:
            raise Busy(f'Too many registry writes from {sender}, retry shortly')

    def _submit(self, sender, operation, deadline, **args):
        sender = normalize_address(sender)
        self._throttle(sender)
        receipt = self.backend.submit(
            sender, operation, args,
            confirmations=self.confirmations,
            deadline=deadline or Deadline.none(),
        )
        logger.info('%s on network %s by %s: tx %s block %s events %s',
                    operation, self.network_id, sender, receipt.tx_hash,
                    receipt.block_number, [e.name for e in receipt.events])
        return receipt


# --- per-network handles ---

_registries = {}
_registries_lock = threading.Lock()


def parse_network_id(network_id):
    if network_id in (None, ''):
        network_id = settings.DEFAULT_NETWORK_ID
    try:
        network_id = int(network_id)
    except (TypeError, ValueError):
        raise BadRequest(f'Invalid network_id: {network_id!r}') from None
    if network_id not in settings.NETWORKS:
        raise BadRequest(f'Unsupported network_id: {network_id}')
    return network_id


def build_registry(network_id):
    config = settings.NETWORKS[network_id]
    backend_name = config.get('backend', 'ledger')
    if backend_name == 'ledger':
        from .ledger import LedgerBackend
        backend = LedgerBackend(network_id)
    elif backend_name == 'contract':
        from .blockchain_service import ContractBackend
        backend = ContractBackend(
            network_id,
            rpc_url=config['rpc_url'],
            registry_address=config['registry_address'],
            signing_key=settings.GATEWAY_SIGNING_KEY,
        )
    else:
        raise BadRequest(f'Unknown registry backend for network {network_id}: {backend_name}')
    return RegistryAdapter(
        network_id, backend,
        confirmations=config.get('confirmations', settings.CONFIRMATIONS),
        writes_per_minute=settings.REGISTRY_WRITES_PER_MINUTE,
    )


def get_registry(network_id=None):
    """Memoized, write-once adapter per network."""
    network_id = parse_network_id(network_id)
    registry = _registries.get(network_id)
    if registry is not None:
        return registry
    with _registries_lock:
        if network_id not in _registries:
            _registries[network_id] = build_registry(network_id)
            logger.info('Initialized %r', _registries[network_id])
        return _registries[network_id]


def clear_registries():
    with _registries_lock:
        _registries.clear()
