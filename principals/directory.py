# principals/directory.py
from datasets.crypto import address_from_public_key, from_hex, normalize_address, to_hex
from datasets.errors import BadRecipient, NotFound

from .models import Principal


class PrincipalDirectory:
    """Resolves principal addresses to the public keys content keys get wrapped toward."""

    def public_key_for(self, address):
        address = normalize_address(address)
        principal = Principal.objects.filter(address=address).first()
        if principal is None:
            raise NotFound(f'No public key registered for {address}')
        return principal.public_key

    def register(self, address, public_key):
        address = normalize_address(address)
        if address_from_public_key(public_key) != address:
            raise BadRecipient('Public key does not belong to this address')
        principal, _ = Principal.objects.update_or_create(
            address=address, defaults={'public_key': to_hex(from_hex(public_key, 'public key'))},
        )
        return principal
