# datasets/envelope.py
"""
Envelope service: publish, grant, revoke, rekey and fetch datasets.

Every operation is split in two halves. The client-side half (methods taking
a PrincipalKey `identity`) does the off-chain work: encrypting, uploading,
unwrapping and re-wrapping content keys. It is idempotent by content hash.
The `submit_*` half is the single on-chain commit point and only needs the
verified sender address, which is all the gateway ever has.
"""
import logging
import time
from contextlib import contextmanager

from .backoff import RetryPolicy, call_with_backoff
from .crypto import (
    canonical_json, decrypt_stream, encrypt_stream, generate_content_key, normalize_address, to_hex, wrap_key,
)
from .errors import BadRequest, DeadlineExceeded, EnvelopeError, Forbidden, Internal, NotFound
from .policy import AccessLevel, Action, authorize
from .serializers import CONTENT_ID_RE, decode_metadata, encode_metadata, parse_acl

logger = logging.getLogger(__name__)


@contextmanager
def _context(what):
    try:
        yield
    except EnvelopeError as exc:
        raise exc.wrap(what) from exc


def _address_of(principal):
    if principal is None:
        return None
    return normalize_address(getattr(principal, 'address', principal))


def _grantee_acl(initial_grantees):
    if not initial_grantees:
        return {}
    if isinstance(initial_grantees, dict):
        acl = {normalize_address(p): AccessLevel.parse(level) for p, level in initial_grantees.items()}
        return {p: level for p, level in acl.items() if level >= AccessLevel.READ}
    return {normalize_address(p): AccessLevel.READ for p in initial_grantees}


class EnvelopeService:
    """
    Injected capabilities: `registry` (a RegistryAdapter for one network),
    `store` (content store) and `directory` (principal address -> public key).
    """

    def __init__(self, registry, store, directory, retry=None, sleep=time.sleep):
        self.registry = registry
        self.store = store
        self.directory = directory
        self.retry = retry or RetryPolicy(max_attempts=3, backoff_seconds=0.5)
        self._sleep = sleep

    def _retrying(self, func, what, deadline=None):
        return call_with_backoff(func, self.retry, deadline=deadline, what=what, sleep=self._sleep)

    def _public_key(self, identity, principal):
        if identity is not None and principal == identity.address:
            return identity.public_key
        return self.directory.public_key_for(principal)

    def _authorized_dataset(self, action, sender, dataset_id, **kwargs):
        dataset = self.registry.get_dataset(dataset_id)
        level = self.registry.check_access(dataset_id, sender) if sender else AccessLevel.NONE
        authorize(action, dataset, sender, level, **kwargs)
        return dataset, level

    def _release_orphan(self, content_id):
        """Unpin `content_id` unless a dataset references it as its id or its current content."""
        try:
            dataset_id = self.registry.find_by_content_id(content_id)
        except EnvelopeError as exc:
            logger.warning('Could not check orphan %s before unpinning: %s', content_id, exc.message)
            return
        if dataset_id is not None:
            logger.info('Content %s is referenced by dataset %s, keeping it pinned', content_id, dataset_id)
            return
        if self.store.unpin(content_id):
            logger.info('Unpinned orphan content %s', content_id)

    # --- publish ---

    def publish(self, identity, plaintext, metadata, initial_grantees=None,
                is_public=False, is_encrypted=True, deadline=None):
        """
        Encrypt, upload, wrap for the owner and every initial grantee, then
        register. Returns the dataset id (the ciphertext's content id).
        """
        with _context('publish'):
            metadata = dict(metadata)
            extended_info = metadata.pop('extended_info', None)
            if extended_info is not None:
                metadata['extended_ref'] = self._retrying(
                    lambda: self.store.put(canonical_json(extended_info).encode('utf-8')),
                    'upload extended metadata', deadline)
            encode_metadata(metadata)
            acl = _grantee_acl(initial_grantees)
            acl.pop(identity.address, None)

            if isinstance(plaintext, (bytes, bytearray, memoryview)):
                plaintext = bytes(plaintext)
            else:
                plaintext = b''.join(plaintext)
            key = generate_content_key() if is_encrypted else None
            payload = encrypt_stream(key, plaintext) if is_encrypted else plaintext
            content_id = self._retrying(lambda: self.store.put(payload), 'upload ciphertext', deadline)

            wrapped_keys = {}
            if is_encrypted:
                for principal in [identity.address, *sorted(acl)]:
                    wrapped_keys[principal] = wrap_key(key, self._public_key(identity, principal))

            self.submit_publish(identity.address, content_id, metadata, acl, wrapped_keys,
                                is_public=is_public, is_encrypted=is_encrypted, deadline=deadline,
                                uploaded=True)
            return content_id

    def submit_publish(self, sender, content_id, metadata, initial_acl=None, wrapped_keys=None,
                       is_public=False, is_encrypted=True, deadline=None, uploaded=False):
        """
        Register already-uploaded content.

        Registry rejections (4xx) propagate unchanged; the upload is released
        only when this service made it (`uploaded`) and nothing references
        it. Any other failure releases an unreferenced upload and raises
        Internal carrying `orphan_content_id`.
        """
        if not CONTENT_ID_RE.match(content_id or ''):
            raise BadRequest(f'Refusing to register malformed content id {content_id!r}')
        metadata_blob = encode_metadata(metadata)
        try:
            receipt = self._retrying(
                lambda: self.registry.register_dataset(
                    sender, content_id, metadata_blob,
                    initial_acl=parse_acl(initial_acl or {}),
                    wrapped_keys=wrapped_keys,
                    is_public=is_public, is_encrypted=is_encrypted, deadline=deadline),
                'register dataset', deadline)
        except DeadlineExceeded:
            raise
        except EnvelopeError as exc:
            if exc.status_code < 500:
                if uploaded:
                    self._release_orphan(content_id)
                raise
            self._release_orphan(content_id)
            raise Internal(
                f'registration failed after upload ({exc.code}: {exc.message}); orphan content {content_id}',
                orphan_content_id=content_id, cause=exc.code,
            ) from exc
        if receipt.event is None:
            logger.info('Dataset %s was already registered; publish converged', content_id)
        return receipt

    # --- reads ---

    def fetch_key(self, identity, dataset_id):
        """Unwrap the caller's content key for `dataset_id` (client side only)."""
        with _context('fetch_key'):
            wrapped = self.key_for(identity.address, dataset_id)
            return identity.unwrap(wrapped)

    def key_for(self, sender, dataset_id):
        """The caller's own wrapped key; never anyone else's."""
        sender = _address_of(sender)
        self._authorized_dataset(Action.READ_KEY, sender, dataset_id)
        return self.registry.get_wrapped_key(dataset_id, sender)

    def ciphertext_for(self, sender, dataset_id, deadline=None):
        dataset, _ = self._authorized_dataset(Action.READ_CONTENT, _address_of(sender), dataset_id)
        data = self._retrying(lambda: self.store.get(dataset.content_id, deadline=deadline),
                              f'download {dataset.content_id}', deadline)
        return dataset, data

    def fetch(self, reader, dataset_id, deadline=None):
        """
        Check access, download and decrypt. `reader` is a PrincipalKey, or
        an address / None for unencrypted public data.
        """
        with _context('fetch'):
            dataset, data = self.ciphertext_for(reader, dataset_id, deadline=deadline)
            if not dataset.is_encrypted:
                return data
            if not hasattr(reader, 'unwrap'):
                raise Forbidden('Decrypting this dataset needs the reader private key')
            key = reader.unwrap(self.key_for(reader.address, dataset_id))
            return decrypt_stream(key, data)

    def describe(self, sender, dataset_id):
        """Registry view of a dataset for `sender`, including only the sender's own wrapped key."""
        sender = _address_of(sender)
        dataset, level = self._authorized_dataset(Action.READ_CONTENT, sender, dataset_id)
        result = dataset.as_dict()
        result['metadata'] = decode_metadata(dataset.metadata_blob)
        result['access_level'] = int(level)
        result['wrapped_key'] = None
        if sender and dataset.is_encrypted and level >= AccessLevel.READ:
            try:
                result['wrapped_key'] = to_hex(self.registry.get_wrapped_key(dataset_id, sender))
            except NotFound:
                logger.warning('%s has level %s on %s but no wrapped key', sender, level.name, dataset_id)
        return result

    def datasets_for(self, principal):
        principal = normalize_address(principal)
        return {
            'owned': self.registry.get_datasets_by_owner(principal),
            'accessible': self.registry.get_accessible_datasets(principal),
        }

    # --- access management ---

    def grant(self, identity, dataset_id, principal, level, deadline=None):
        with _context('grant'):
            principal = normalize_address(principal)
            dataset, _ = self._authorized_dataset(Action.GRANT, identity.address, dataset_id,
                                                  target=principal, target_level=level)
            wrapped = None
            if dataset.is_encrypted:
                key = self.fetch_key(identity, dataset_id)
                wrapped = wrap_key(key, self._public_key(identity, principal))
            return self.submit_grant(identity.address, dataset_id, principal, level, wrapped, deadline=deadline)

    def submit_grant(self, sender, dataset_id, principal, level, wrapped=None, deadline=None):
        sender, principal = _address_of(sender), normalize_address(principal)
        self._authorized_dataset(Action.GRANT, sender, dataset_id, target=principal, target_level=level)
        return self._retrying(
            lambda: self.registry.grant(sender, dataset_id, principal, level, wrapped, deadline=deadline),
            f'grant {principal}', deadline)

    def revoke(self, sender, dataset_id, principal, deadline=None):
        """
        Delete the entry and the wrapped key. The content key is not
        rotated; follow up with rekey for forward secrecy.
        """
        with _context('revoke'):
            sender, principal = _address_of(sender), normalize_address(principal)
            self._authorized_dataset(Action.REVOKE, sender, dataset_id, target=principal)
            return self._retrying(
                lambda: self.registry.revoke(sender, dataset_id, principal, deadline=deadline),
                f'revoke {principal}', deadline)

    def update_acl(self, identity, dataset_id, acl, deadline=None):
        """Whole-ACL replacement, wrapping the content key for every reader in `acl`."""
        with _context('update_acl'):
            acl = parse_acl(acl)
            dataset, _ = self._authorized_dataset(Action.UPDATE_ACL, identity.address, dataset_id)
            wrapped_keys = {}
            if dataset.is_encrypted:
                key = self.fetch_key(identity, dataset_id)
                for principal, level in acl.items():
                    if level >= AccessLevel.READ and principal != dataset.owner:
                        wrapped_keys[principal] = wrap_key(key, self._public_key(identity, principal))
            return self.submit_update_acl(identity.address, dataset_id, acl, wrapped_keys, deadline=deadline)

    def submit_update_acl(self, sender, dataset_id, acl, wrapped_keys=None, deadline=None):
        sender = _address_of(sender)
        self._authorized_dataset(Action.UPDATE_ACL, sender, dataset_id)
        return self._retrying(
            lambda: self.registry.update_acl(sender, dataset_id, acl, wrapped_keys, deadline=deadline),
            'update acl', deadline)

    # --- dataset lifecycle ---

    def update_metadata(self, sender, dataset_id, metadata, deadline=None):
        with _context('update_metadata'):
            sender = _address_of(sender)
            metadata_blob = encode_metadata(metadata)
            self._authorized_dataset(Action.UPDATE_METADATA, sender, dataset_id)
            return self._retrying(
                lambda: self.registry.update_metadata(sender, dataset_id, metadata_blob, deadline=deadline),
                'update metadata', deadline)

    def rekey(self, identity, dataset_id, deadline=None):
        """
        Rotate the content key and ciphertext. Returns the new content id.
        Principals revoked between the read and the submit are dropped by
        the registry; principals granted in between make it fail with
        Conflict.
        """
        with _context('rekey'):
            dataset, _ = self._authorized_dataset(Action.REKEY, identity.address, dataset_id)
            plaintext = self.fetch(identity, dataset_id, deadline=deadline)
            readers = self.registry.get_access_list(dataset_id)

            key = generate_content_key()
            ciphertext = encrypt_stream(key, plaintext)
            new_content_id = self._retrying(lambda: self.store.put(ciphertext), 'upload ciphertext', deadline)
            wrapped_keys = {
                principal: wrap_key(key, self._public_key(identity, principal))
                for principal, level in readers.items() if level >= AccessLevel.READ
            }
            self.submit_rekey(identity.address, dataset_id, new_content_id, wrapped_keys, deadline=deadline,
                              uploaded=True)
            self.store.unpin(dataset.content_id)
            return new_content_id

    def submit_rekey(self, sender, dataset_id, new_content_id, wrapped_keys, deadline=None, uploaded=False):
        """Swap in re-encrypted content. Failures release the new upload the same way submit_publish does."""
        sender = _address_of(sender)
        self._authorized_dataset(Action.REKEY, sender, dataset_id)
        try:
            return self._retrying(
                lambda: self.registry.rekey(sender, dataset_id, new_content_id, wrapped_keys, deadline=deadline),
                'rekey', deadline)
        except DeadlineExceeded:
            raise
        except EnvelopeError as exc:
            if exc.status_code < 500:
                if uploaded:
                    self._release_orphan(new_content_id)
                raise
            self._release_orphan(new_content_id)
            raise Internal(
                f'rekey failed after upload ({exc.code}: {exc.message}); orphan content {new_content_id}',
                orphan_content_id=new_content_id, cause=exc.code,
            ) from exc

    def transfer_owner(self, identity, dataset_id, new_owner, deadline=None):
        with _context('transfer_owner'):
            new_owner = normalize_address(new_owner)
            dataset, _ = self._authorized_dataset(Action.TRANSFER_OWNER, identity.address, dataset_id,
                                                  target=new_owner)
            wrapped = None
            if dataset.is_encrypted:
                key = self.fetch_key(identity, dataset_id)
                wrapped = wrap_key(key, self._public_key(identity, new_owner))
            return self.submit_transfer_owner(identity.address, dataset_id, new_owner, wrapped, deadline=deadline)

    def submit_transfer_owner(self, sender, dataset_id, new_owner, wrapped=None, deadline=None):
        sender, new_owner = _address_of(sender), normalize_address(new_owner)
        self._authorized_dataset(Action.TRANSFER_OWNER, sender, dataset_id, target=new_owner)
        return self._retrying(
            lambda: self.registry.transfer_owner(sender, dataset_id, new_owner, wrapped, deadline=deadline),
            'transfer owner', deadline)

    def set_visibility(self, sender, dataset_id, is_public, deadline=None):
        with _context('set_visibility'):
            sender = _address_of(sender)
            self._authorized_dataset(Action.SET_VISIBILITY, sender, dataset_id)
            return self._retrying(
                lambda: self.registry.set_visibility(sender, dataset_id, is_public, deadline=deadline),
                'set visibility', deadline)

    def retire(self, sender, dataset_id, deadline=None):
        with _context('retire'):
            sender = _address_of(sender)
            self._authorized_dataset(Action.RETIRE, sender, dataset_id)
            return self._retrying(
                lambda: self.registry.retire(sender, dataset_id, deadline=deadline),
                'retire', deadline)
