# datasets/models.py
from django.db import models
from django.utils import timezone


class LedgerTransaction(models.Model):
    """
    One committed transaction on a local ledger network. The primary key
    doubles as the block number: the local ledger mines one block per
    transaction.
    """
    network_id = models.PositiveIntegerField(db_index=True)
    tx_hash = models.CharField(max_length=66, unique=True)
    sender = models.CharField(max_length=42, db_index=True, help_text="Verified principal that authored the transaction")
    operation = models.CharField(max_length=32)
    created_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return f"{self.operation} by {self.sender} (block {self.pk})"


class RegisteredDataset(models.Model):
    """
    Registry state of a dataset. Holds references only; the ciphertext
    itself lives in the content store under `content_id`.
    """
    network_id = models.PositiveIntegerField(db_index=True)
    dataset_id = models.CharField(max_length=128, help_text="Content id of the ciphertext at publish time")
    owner = models.CharField(max_length=42, db_index=True)
    content_id = models.CharField(max_length=128, help_text="Current ciphertext reference, rotated by rekey")
    metadata_blob = models.BinaryField()
    is_public = models.BooleanField(default=False)
    is_encrypted = models.BooleanField(default=True)
    retired = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['network_id', 'dataset_id'], name='unique_dataset_per_network'),
        ]

    def __str__(self):
        return f"{self.dataset_id} (owner: {self.owner})"


class AccessEntry(models.Model):
    LEVEL_CHOICES = (
        (1, 'Read'),
        (2, 'Modify'),
        (3, 'Admin'),
    )

    dataset = models.ForeignKey(RegisteredDataset, on_delete=models.CASCADE, related_name='access_entries')
    principal = models.CharField(max_length=42, db_index=True)
    level = models.PositiveSmallIntegerField(choices=LEVEL_CHOICES)
    granted_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['dataset', 'principal'], name='unique_access_entry'),
        ]

    def __str__(self):
        return f"{self.principal} -> {self.get_level_display()}"


class WrappedKey(models.Model):
    """Content key of a dataset sealed toward one principal's public key."""
    dataset = models.ForeignKey(RegisteredDataset, on_delete=models.CASCADE, related_name='wrapped_keys')
    principal = models.CharField(max_length=42, db_index=True)
    wrapped = models.BinaryField()

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['dataset', 'principal'], name='unique_wrapped_key'),
        ]


class LedgerEvent(models.Model):
    transaction = models.ForeignKey(LedgerTransaction, on_delete=models.CASCADE, related_name='events')
    log_index = models.PositiveIntegerField()
    name = models.CharField(max_length=32)
    args = models.JSONField(help_text="Event arguments in schema order")

    class Meta:
        ordering = ['transaction_id', 'log_index']

    def __str__(self):
        return f"{self.name}{tuple(self.args)}"
