# datasets/policy.py
"""
Access policy engine: the single place that decides whether a principal at a
given access level may perform an action on a dataset. Both the ledger
backend (acting as the contract) and the envelope service call into it.
"""
from enum import Enum, IntEnum

from .errors import BadRequest, Forbidden, Gone


class AccessLevel(IntEnum):
    NONE = 0
    READ = 1
    MODIFY = 2
    ADMIN = 3

    @classmethod
    def parse(cls, value):
        # bool is an int subclass but never a level
        if isinstance(value, bool) or not isinstance(value, int):
            raise BadRequest(f'Access level must be an integer 0-3, got {value!r}')
        try:
            return cls(value)
        except ValueError:
            raise BadRequest(f'Invalid access level: {value}') from None


class Action(Enum):
    READ_CONTENT = 'read_content'
    READ_KEY = 'read_key'
    UPDATE_METADATA = 'update_metadata'
    GRANT = 'grant'
    REVOKE = 'revoke'
    UPDATE_ACL = 'update_acl'
    REKEY = 'rekey'
    TRANSFER_OWNER = 'transfer_owner'
    SET_VISIBILITY = 'set_visibility'
    RETIRE = 'retire'


MINIMUM_LEVEL = {
    Action.READ_CONTENT: AccessLevel.READ,
    Action.READ_KEY: AccessLevel.READ,
    Action.UPDATE_METADATA: AccessLevel.MODIFY,
    Action.GRANT: AccessLevel.ADMIN,
    Action.REVOKE: AccessLevel.ADMIN,
    Action.UPDATE_ACL: AccessLevel.ADMIN,
    Action.REKEY: AccessLevel.ADMIN,
    Action.TRANSFER_OWNER: AccessLevel.ADMIN,
    Action.SET_VISIBILITY: AccessLevel.ADMIN,
    Action.RETIRE: AccessLevel.ADMIN,
}


def effective_level(dataset, principal, stored_level):
    """The owner is always ADMIN regardless of what is stored."""
    if principal == dataset.owner:
        return AccessLevel.ADMIN
    return AccessLevel(stored_level or 0)


def authorize(action, dataset, caller, level, target=None, target_level=None):
    """
    Raise unless `caller` (holding `level` on `dataset`) may perform
    `action`. `target`/`target_level` are the subject principal and level of
    grant, revoke and transfer_owner.
    """
    if dataset.retired:
        raise Gone(f'Dataset {dataset.dataset_id} is retired')
    level = AccessLevel(level)

    if action is Action.READ_CONTENT:
        if dataset.is_public or level >= AccessLevel.READ:
            return
        raise Forbidden('Read access required')

    if action is Action.READ_KEY and not dataset.is_encrypted:
        raise BadRequest(f'Dataset {dataset.dataset_id} is not encrypted')

    required = MINIMUM_LEVEL[action]
    if level < required:
        raise Forbidden(f'{required.name} access required for {action.value}')

    if action is Action.GRANT:
        target_level = AccessLevel.parse(target_level)
        if target_level < AccessLevel.READ:
            raise BadRequest('Granted level must be READ or higher; use revoke to remove access')
        if target == dataset.owner:
            raise Forbidden('The owner level cannot be changed')
    elif action is Action.REVOKE:
        if target == dataset.owner:
            raise Forbidden('The owner cannot be revoked')
        if target == caller:
            raise Forbidden('A principal cannot revoke itself')
    elif action is Action.TRANSFER_OWNER:
        if caller != dataset.owner:
            raise Forbidden('Only the owner can transfer ownership')
        if target == dataset.owner:
            raise BadRequest('New owner is already the owner')


def validate_acl(dataset_owner, acl):
    """
    Check a whole-ACL replacement. Returns the ACL with the owner removed
    (the owner's ADMIN is implicit) and NONE entries dropped.
    """
    result = {}
    for principal, level in acl.items():
        level = AccessLevel.parse(level)
        if principal == dataset_owner:
            if level != AccessLevel.ADMIN:
                raise Forbidden('The owner must keep ADMIN access')
            continue
        if level > AccessLevel.NONE:
            result[principal] = level
    return result
