# principals/models.py
from django.db import models


class Principal(models.Model):
    """
    Public key directory entry. Readers are reachable for key wrapping only
    once they have registered the public key behind their address.
    """
    # Lowercase hex wallet address, derived from public_key
    address = models.CharField(max_length=42, unique=True)

    # Uncompressed secp256k1 public key without the 0x04 prefix, hex encoded
    public_key = models.CharField(max_length=130)

    registered_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.address
