# datasets/blockchain_service.py
"""
Deployed DatasetRegistry contract: ABI and the web3-backed registry backend.

The gateway relays writes with its own key (GATEWAY_SIGNING_KEY) and passes
the verified caller as the first argument; the contract authorizes against
that caller and trusts only its configured relayer to supply it.
"""
import logging
import threading
import time
from datetime import datetime, timezone

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from .backoff import Deadline
from .crypto import to_hex
from .errors import BadRequest, Conflict, Internal, NotFound, Unavailable, from_revert
from .registry import EVENT_SCHEMAS, Dataset, Event, Receipt

logger = logging.getLogger(__name__)

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'


def _params(fields):
    return [{'name': name, 'type': type_} for name, type_ in fields]


def _function(name, inputs, outputs=(), view=False):
    return {
        'type': 'function',
        'name': name,
        'inputs': _params(inputs),
        'outputs': _params(outputs),
        'stateMutability': 'view' if view else 'nonpayable',
    }


def _camel(name):
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


EVENT_TYPES = {
    'owner': 'address', 'principal': 'address', 'old_owner': 'address', 'new_owner': 'address',
    'level': 'uint8', 'is_public': 'bool',
}


def _event(name):
    return {
        'type': 'event',
        'name': name,
        'anonymous': False,
        'inputs': [
            {'name': _camel(arg), 'type': EVENT_TYPES.get(arg, 'string'), 'indexed': False}
            for arg in EVENT_SCHEMAS[name]
        ],
    }


_ID = ('datasetId', 'string')
_CALLER = ('caller', 'address')
_KEYS = (('keyHolders', 'address[]'), ('wrappedKeys', 'bytes[]'))

CONTRACT_ABI = [
    _function('getDataset', [_ID], [
        ('owner', 'address'), ('contentId', 'string'), ('metadata', 'bytes'),
        ('isPublic', 'bool'), ('isEncrypted', 'bool'), ('retired', 'bool'),
        ('createdAt', 'uint64'), ('updatedAt', 'uint64'),
    ], view=True),
    _function('getAccess', [_ID, ('principal', 'address')], [('level', 'uint8')], view=True),
    _function('getAccessList', [_ID], [('principals', 'address[]'), ('levels', 'uint8[]')], view=True),
    _function('getDatasetsByOwner', [('owner', 'address')], [('datasetIds', 'string[]')], view=True),
    _function('getAccessibleDatasets', [('principal', 'address')], [('datasetIds', 'string[]')], view=True),
    _function('getWrappedKey', [_ID, ('principal', 'address')], [('wrappedKey', 'bytes')], view=True),
    _function('findByContentId', [('contentId', 'string')], [('datasetId', 'string')], view=True),
    _function('registerDataset', [
        ('owner', 'address'), _ID, ('metadata', 'bytes'),
        ('principals', 'address[]'), ('levels', 'uint8[]'), *_KEYS,
        ('isPublic', 'bool'), ('isEncrypted', 'bool'),
    ]),
    _function('updateMetadata', [_CALLER, _ID, ('metadata', 'bytes')]),
    _function('updateAccessControl', [_CALLER, _ID, ('principals', 'address[]'), ('levels', 'uint8[]'), *_KEYS]),
    _function('grantAccess', [_CALLER, _ID, ('principal', 'address'), ('level', 'uint8'), ('wrappedKey', 'bytes')]),
    _function('setWrappedKey', [_CALLER, _ID, ('principal', 'address'), ('wrappedKey', 'bytes')]),
    _function('revokeAccess', [_CALLER, _ID, ('principal', 'address')]),
    _function('rekey', [_CALLER, _ID, ('newContentId', 'string'), *_KEYS]),
    _function('transferOwnership', [_CALLER, _ID, ('newOwner', 'address'), ('wrappedKey', 'bytes')]),
    _function('setVisibility', [_CALLER, _ID, ('isPublic', 'bool')]),
    _function('retire', [_CALLER, _ID]),
] + [_event(name) for name in EVENT_SCHEMAS]


def _checksum(address):
    return Web3.to_checksum_address(address)


def _split_acl(acl):
    principals = sorted(acl)
    return [_checksum(p) for p in principals], [int(acl[p]) for p in principals]


def _split_wraps(wrapped_keys):
    holders = sorted(wrapped_keys)
    return [_checksum(p) for p in holders], [wrapped_keys[p] for p in holders]


def encode_call(operation, sender, args):
    """Map a registry operation to (contract function name, positional args)."""
    caller = _checksum(sender)
    dataset_id = args.get('dataset_id')
    if operation == 'register_dataset':
        return 'registerDataset', [
            caller, dataset_id, args['metadata_blob'],
            *_split_acl(args['initial_acl']), *_split_wraps(args['wrapped_keys']),
            args['is_public'], args['is_encrypted'],
        ]
    if operation == 'update_metadata':
        return 'updateMetadata', [caller, dataset_id, args['metadata_blob']]
    if operation == 'update_acl':
        return 'updateAccessControl', [
            caller, dataset_id, *_split_acl(args['acl']), *_split_wraps(args['wrapped_keys']),
        ]
    if operation == 'grant':
        return 'grantAccess', [caller, dataset_id, _checksum(args['principal']), int(args['level']),
                               args['wrapped'] or b'']
    if operation == 'set_wrapped_key':
        return 'setWrappedKey', [caller, dataset_id, _checksum(args['principal']), args['wrapped']]
    if operation == 'revoke':
        return 'revokeAccess', [caller, dataset_id, _checksum(args['principal'])]
    if operation == 'rekey':
        return 'rekey', [caller, dataset_id, args['new_content_id'], *_split_wraps(args['wrapped_keys'])]
    if operation == 'transfer_owner':
        return 'transferOwnership', [caller, dataset_id, _checksum(args['new_owner']),
                                     args['new_wrapped_key'] or b'']
    if operation == 'set_visibility':
        return 'setVisibility', [caller, dataset_id, args['is_public']]
    if operation == 'retire':
        return 'retire', [caller, dataset_id]
    raise BadRequest(f'Unknown registry operation: {operation}')


def _normalize_event_value(value):
    if isinstance(value, str) and Web3.is_checksum_address(value):
        return value.lower()
    return value


def _timestamp(value):
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class ContractBackend:

    def __init__(self, network_id, rpc_url, registry_address, signing_key=None,
                 poll_interval=1.0, receipt_timeout=180, w3=None, sleep=time.sleep):
        if not registry_address:
            raise BadRequest(f'No registry address configured for network {network_id}')
        self.network_id = network_id
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.contract = self.w3.eth.contract(address=_checksum(registry_address), abi=CONTRACT_ABI)
        self.relayer = Account.from_key(signing_key) if signing_key else None
        self.poll_interval = poll_interval
        self.receipt_timeout = receipt_timeout
        self._sleep = sleep
        self._nonce_lock = threading.Lock()

    def _call(self, function_name, *args):
        try:
            return getattr(self.contract.functions, function_name)(*args).call()
        except ContractLogicError as exc:
            raise from_revert(exc.message or str(exc)) from exc
        except (requests.RequestException, Web3Exception) as exc:
            raise Unavailable(f'RPC call {function_name} failed: {exc.__class__.__name__}') from exc

    # --- reads ---

    def get_dataset(self, dataset_id):
        owner, content_id, metadata, is_public, is_encrypted, retired, created_at, updated_at = \
            self._call('getDataset', dataset_id)
        if owner == ZERO_ADDRESS:
            raise NotFound(f'Dataset {dataset_id} not found')
        return Dataset(
            dataset_id=dataset_id,
            owner=owner.lower(),
            content_id=content_id,
            metadata_blob=bytes(metadata),
            created_at=_timestamp(created_at),
            updated_at=_timestamp(updated_at),
            is_public=is_public,
            is_encrypted=is_encrypted,
            retired=retired,
        )

    def get_stored_level(self, dataset_id, principal):
        return self._call('getAccess', dataset_id, _checksum(principal))

    def get_acl(self, dataset_id):
        principals, levels = self._call('getAccessList', dataset_id)
        return {p.lower(): level for p, level in zip(principals, levels) if level}

    def get_datasets_by_owner(self, owner):
        return list(self._call('getDatasetsByOwner', _checksum(owner)))

    def get_accessible_datasets(self, principal):
        return list(self._call('getAccessibleDatasets', _checksum(principal)))

    def find_by_content_id(self, content_id):
        return self._call('findByContentId', content_id) or None

    def get_wrapped_key(self, dataset_id, principal):
        wrapped = self._call('getWrappedKey', dataset_id, _checksum(principal))
        if not wrapped:
            raise NotFound(f'No wrapped key for {principal} on {dataset_id}')
        return bytes(wrapped)

    # --- writes ---

    def submit(self, sender, operation, args, confirmations=2, deadline=None):
        if self.relayer is None:
            raise Internal('Gateway signer is not configured')
        deadline = deadline or Deadline(self.receipt_timeout)
        function_name, call_args = encode_call(operation, sender, args)
        call = getattr(self.contract.functions, function_name)(*call_args)
        try:
            # dry run first so reverts surface as typed errors instead of failed receipts
            call.call({'from': self.relayer.address})
            with self._nonce_lock:
                tx = call.build_transaction({
                    'from': self.relayer.address,
                    'chainId': self.network_id,
                    'nonce': self.w3.eth.get_transaction_count(self.relayer.address, 'pending'),
                })
                signed = self.relayer.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as exc:
            raise from_revert(exc.message or str(exc)) from exc
        except (requests.RequestException, Web3Exception) as exc:
            raise Unavailable(f'Submitting {operation} failed: {exc.__class__.__name__}') from exc

        logger.info('Relayed %s for %s as %s', operation, sender, to_hex(tx_hash))
        receipt = self._wait_for_confirmations(tx_hash, confirmations, deadline)
        if receipt['status'] != 1:
            raise Conflict(f'{operation} reverted on-chain after submission; state changed concurrently')
        return Receipt(
            tx_hash=to_hex(tx_hash),
            block_number=receipt['blockNumber'],
            events=self.decode_events(receipt),
            confirmations=confirmations,
        )

    def _wait_for_confirmations(self, tx_hash, confirmations, deadline):
        while True:
            deadline.check(f'confirmation of {to_hex(tx_hash)}')
            try:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                receipt = None
            except (TimeExhausted, requests.RequestException) as exc:
                logger.warning('Receipt poll for %s failed: %s', to_hex(tx_hash), exc)
                receipt = None
            if receipt is not None:
                depth = self.w3.eth.block_number - receipt['blockNumber'] + 1
                if depth >= max(1, confirmations):
                    return receipt
            self._sleep(self.poll_interval)

    def decode_events(self, receipt):
        decoded = []
        for name in EVENT_SCHEMAS:
            for log in getattr(self.contract.events, name)().process_receipt(receipt, errors=DISCARD):
                values = [_normalize_event_value(log['args'][_camel(arg)]) for arg in EVENT_SCHEMAS[name]]
                decoded.append((log['logIndex'], Event.decode(name, values)))
        return tuple(event for _, event in sorted(decoded, key=lambda item: item[0]))
