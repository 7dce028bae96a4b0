# datasets/ledger.py
"""
Local ledger backend: a registry "chain" on the Django database.

Each write runs inside one `transaction.atomic()` block and locks the
dataset row, so writes to one dataset are totally ordered and either land
with all their effects (access entry, wrapped keys, events) or not at all.
Authorization is enforced here the same way the deployed contract enforces
it, so a relaying gateway cannot push an unauthorized change through.
"""
import logging
import os

from django.db import IntegrityError, OperationalError, transaction
from django.db.models import Q
from django.utils import timezone

from .crypto import to_hex
from .errors import BadRequest, Conflict, Forbidden, NotFound, Unavailable
from .models import AccessEntry, LedgerEvent, LedgerTransaction, RegisteredDataset, WrappedKey
from .policy import AccessLevel, Action, authorize, effective_level, validate_acl
from .registry import Dataset, Event, Receipt

logger = logging.getLogger(__name__)


def _to_dataset(row):
    return Dataset(
        dataset_id=row.dataset_id,
        owner=row.owner,
        content_id=row.content_id,
        metadata_blob=bytes(row.metadata_blob),
        created_at=row.created_at,
        updated_at=row.updated_at,
        is_public=row.is_public,
        is_encrypted=row.is_encrypted,
        retired=row.retired,
    )


class LedgerBackend:

    def __init__(self, network_id):
        self.network_id = network_id

    def _rows(self):
        return RegisteredDataset.objects.filter(network_id=self.network_id)

    def _row(self, dataset_id, lock=False):
        rows = self._rows().filter(dataset_id=dataset_id)
        if lock:
            rows = rows.select_for_update()
        row = rows.first()
        if row is None:
            raise NotFound(f'Dataset {dataset_id} not found')
        return row

    # --- reads ---

    def get_dataset(self, dataset_id):
        return _to_dataset(self._row(dataset_id))

    def get_stored_level(self, dataset_id, principal):
        entry = AccessEntry.objects.filter(
            dataset__network_id=self.network_id, dataset__dataset_id=dataset_id, principal=principal,
        ).first()
        return entry.level if entry else AccessLevel.NONE

    def get_acl(self, dataset_id):
        row = self._row(dataset_id)
        return {entry.principal: entry.level for entry in row.access_entries.all()}

    def get_datasets_by_owner(self, owner):
        return list(self._rows().filter(owner=owner).order_by('created_at', 'pk').values_list('dataset_id', flat=True))

    def get_accessible_datasets(self, principal):
        owned = self.get_datasets_by_owner(principal)
        granted = self._rows().filter(
            access_entries__principal=principal, access_entries__level__gte=AccessLevel.READ,
        ).exclude(owner=principal).order_by('created_at', 'pk').values_list('dataset_id', flat=True)
        return owned + list(granted)

    def find_by_content_id(self, content_id):
        """Id of the dataset whose id or current content id is `content_id`, or None."""
        return self._rows().filter(Q(dataset_id=content_id) | Q(content_id=content_id)).values_list(
            'dataset_id', flat=True).first()

    def get_wrapped_key(self, dataset_id, principal):
        key = WrappedKey.objects.filter(
            dataset__network_id=self.network_id, dataset__dataset_id=dataset_id, principal=principal,
        ).first()
        if key is None:
            raise NotFound(f'No wrapped key for {principal} on {dataset_id}')
        return bytes(key.wrapped)

    # --- writes ---

    def submit(self, sender, operation, args, confirmations=0, deadline=None):
        handler = getattr(self, f'_tx_{operation}', None)
        if handler is None:
            raise BadRequest(f'Unknown registry operation: {operation}')
        if deadline is not None:
            deadline.check(operation)
        try:
            with transaction.atomic():
                tx = LedgerTransaction.objects.create(
                    network_id=self.network_id,
                    tx_hash=to_hex(os.urandom(32)),
                    sender=sender,
                    operation=operation,
                )
                events = handler(sender, **args)
                for index, event in enumerate(events):
                    LedgerEvent.objects.create(transaction=tx, log_index=index, name=event.name, args=list(event.args))
        except IntegrityError as exc:
            # a concurrent transaction inserted the same row first
            raise Conflict(f'{operation} lost a race with a concurrent write') from exc
        except OperationalError as exc:
            # sqlite reports lock contention instead of waiting on the row lock
            raise Unavailable(f'{operation} could not lock the ledger: {exc}') from exc
        return Receipt(tx_hash=tx.tx_hash, block_number=tx.pk, events=tuple(events), confirmations=confirmations)

    def _level(self, row, principal):
        entry = row.access_entries.filter(principal=principal).first()
        return effective_level(row, principal, entry.level if entry else AccessLevel.NONE)

    def _authorize(self, row, action, sender, **kwargs):
        authorize(action, row, sender, self._level(row, sender), **kwargs)

    @staticmethod
    def _touch(row):
        row.updated_at = timezone.now()
        row.save()

    def _tx_register_dataset(self, sender, dataset_id, metadata_blob, initial_acl,
                             wrapped_keys, is_public, is_encrypted):
        existing = self._rows().select_for_update().filter(dataset_id=dataset_id).first()
        if existing is not None:
            if existing.owner == sender:
                logger.info('Dataset %s already registered by %s, ignoring', dataset_id, sender)
                return []
            raise Conflict(f'Dataset {dataset_id} is registered to another owner')
        if self._rows().filter(content_id=dataset_id).exists():
            raise Conflict(f'Content {dataset_id} is the current ciphertext of another dataset')

        acl = validate_acl(sender, initial_acl)
        self._check_wraps(is_encrypted, set(acl) | {sender}, wrapped_keys, allow_existing=())

        row = RegisteredDataset.objects.create(
            network_id=self.network_id,
            dataset_id=dataset_id,
            owner=sender,
            content_id=dataset_id,
            metadata_blob=metadata_blob,
            is_public=is_public,
            is_encrypted=is_encrypted,
        )
        events = [Event.decode('DatasetRegistered', (sender, dataset_id, dataset_id))]
        for principal in sorted(acl):
            AccessEntry.objects.create(dataset=row, principal=principal, level=acl[principal])
            events.append(Event.decode('AccessGranted', (dataset_id, principal, int(acl[principal]))))
        for principal, wrapped in wrapped_keys.items():
            WrappedKey.objects.create(dataset=row, principal=principal, wrapped=wrapped)
        return events

    @staticmethod
    def _check_wraps(is_encrypted, readers, wrapped_keys, allow_existing):
        if not is_encrypted:
            if wrapped_keys:
                raise BadRequest('Unencrypted datasets carry no wrapped keys')
            return
        missing = set(readers) - set(wrapped_keys) - set(allow_existing)
        if missing:
            raise BadRequest(f'Missing wrapped keys for: {", ".join(sorted(missing))}')
        extra = set(wrapped_keys) - set(readers)
        if extra:
            raise BadRequest(f'Wrapped keys for principals without access: {", ".join(sorted(extra))}')

    def _tx_update_metadata(self, sender, dataset_id, metadata_blob):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.UPDATE_METADATA, sender)
        row.metadata_blob = metadata_blob
        self._touch(row)
        return [Event.decode('MetadataUpdated', (dataset_id,))]

    def _tx_grant(self, sender, dataset_id, principal, level, wrapped):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.GRANT, sender, target=principal, target_level=level)
        if row.is_encrypted and wrapped is None:
            raise BadRequest('Granting access to an encrypted dataset requires a wrapped key')
        if not row.is_encrypted and wrapped is not None:
            raise BadRequest('Unencrypted datasets carry no wrapped keys')

        entry = row.access_entries.filter(principal=principal).first()
        if entry is not None and entry.level == level:
            return []
        AccessEntry.objects.update_or_create(
            dataset=row, principal=principal,
            defaults={'level': level, 'granted_at': timezone.now()},
        )
        if wrapped is not None:
            WrappedKey.objects.update_or_create(dataset=row, principal=principal, defaults={'wrapped': wrapped})
        self._touch(row)
        return [Event.decode('AccessGranted', (dataset_id, principal, int(level)))]

    def _tx_set_wrapped_key(self, sender, dataset_id, principal, wrapped):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.UPDATE_ACL, sender)
        if not row.is_encrypted:
            raise BadRequest('Unencrypted datasets carry no wrapped keys')
        if self._level(row, principal) < AccessLevel.READ:
            raise BadRequest(f'{principal} has no access to {dataset_id}')
        WrappedKey.objects.update_or_create(dataset=row, principal=principal, defaults={'wrapped': wrapped})
        return []

    def _tx_revoke(self, sender, dataset_id, principal):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.REVOKE, sender, target=principal)
        deleted, _ = row.access_entries.filter(principal=principal).delete()
        row.wrapped_keys.filter(principal=principal).delete()
        if not deleted:
            return []
        self._touch(row)
        return [Event.decode('AccessRevoked', (dataset_id, principal))]

    def _tx_update_acl(self, sender, dataset_id, acl, wrapped_keys):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.UPDATE_ACL, sender)
        new_acl = validate_acl(row.owner, acl)
        if sender != row.owner and sender not in new_acl:
            raise Forbidden('A principal cannot revoke itself')

        current = {e.principal: e.level for e in row.access_entries.all()}
        existing_wraps = set(row.wrapped_keys.values_list('principal', flat=True))
        readers = set(new_acl) | {row.owner}
        self._check_wraps(row.is_encrypted, readers, wrapped_keys, allow_existing=existing_wraps & readers)

        events = []
        for principal in sorted(set(current) - set(new_acl)):
            row.access_entries.filter(principal=principal).delete()
            row.wrapped_keys.filter(principal=principal).delete()
            events.append(Event.decode('AccessRevoked', (dataset_id, principal)))
        for principal in sorted(new_acl):
            level = new_acl[principal]
            if current.get(principal) != level:
                AccessEntry.objects.update_or_create(
                    dataset=row, principal=principal,
                    defaults={'level': level, 'granted_at': timezone.now()},
                )
                events.append(Event.decode('AccessGranted', (dataset_id, principal, int(level))))
        for principal, wrapped in wrapped_keys.items():
            WrappedKey.objects.update_or_create(dataset=row, principal=principal, defaults={'wrapped': wrapped})
        if events:
            self._touch(row)
        return events

    def _tx_rekey(self, sender, dataset_id, new_content_id, wrapped_keys):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.REKEY, sender)
        if not row.is_encrypted:
            raise BadRequest('Only encrypted datasets can be rekeyed')
        if not new_content_id or new_content_id == row.content_id:
            raise BadRequest('Rekey requires a new content id')

        readers = set(row.access_entries.values_list('principal', flat=True)) | {row.owner}
        missing = readers - set(wrapped_keys)
        if missing:
            raise Conflict(f'Access changed while preparing rekey; no wrap for: {", ".join(sorted(missing))}')
        excluded = set(wrapped_keys) - readers
        if excluded:
            logger.info('Rekey of %s drops wraps for principals without access: %s', dataset_id, sorted(excluded))

        row.wrapped_keys.all().delete()
        for principal in sorted(readers):
            WrappedKey.objects.create(dataset=row, principal=principal, wrapped=wrapped_keys[principal])
        old_content_id = row.content_id
        row.content_id = new_content_id
        self._touch(row)
        return [Event.decode('Rekeyed', (dataset_id, old_content_id, new_content_id))]

    def _tx_transfer_owner(self, sender, dataset_id, new_owner, new_wrapped_key):
        row = self._row(dataset_id, lock=True)
        if sender != row.owner:
            if self._level(row, sender) >= AccessLevel.ADMIN and not row.retired:
                raise Conflict('Caller is no longer the owner of this dataset')
        self._authorize(row, Action.TRANSFER_OWNER, sender, target=new_owner)
        if row.is_encrypted and new_wrapped_key is None:
            raise BadRequest('Transferring an encrypted dataset requires a wrapped key for the new owner')
        if not row.is_encrypted and new_wrapped_key is not None:
            raise BadRequest('Unencrypted datasets carry no wrapped keys')

        old_owner = row.owner
        row.access_entries.filter(principal=new_owner).delete()
        # the previous owner keeps ADMIN (and its existing wrap) until revoked
        AccessEntry.objects.update_or_create(
            dataset=row, principal=old_owner,
            defaults={'level': AccessLevel.ADMIN, 'granted_at': timezone.now()},
        )
        if new_wrapped_key is not None:
            WrappedKey.objects.update_or_create(dataset=row, principal=new_owner, defaults={'wrapped': new_wrapped_key})
        row.owner = new_owner
        self._touch(row)
        return [Event.decode('OwnerTransferred', (dataset_id, old_owner, new_owner))]

    def _tx_set_visibility(self, sender, dataset_id, is_public):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.SET_VISIBILITY, sender)
        if row.is_public == is_public:
            return []
        row.is_public = is_public
        self._touch(row)
        return [Event.decode('VisibilityChanged', (dataset_id, is_public))]

    def _tx_retire(self, sender, dataset_id):
        row = self._row(dataset_id, lock=True)
        self._authorize(row, Action.RETIRE, sender)
        row.retired = True
        self._touch(row)
        return [Event.decode('DatasetRetired', (dataset_id,))]
