import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='LedgerTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('network_id', models.PositiveIntegerField(db_index=True)),
                ('tx_hash', models.CharField(max_length=66, unique=True)),
                ('sender', models.CharField(db_index=True, help_text='Verified principal that authored the transaction', max_length=42)),
                ('operation', models.CharField(max_length=32)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
        ),
        migrations.CreateModel(
            name='RegisteredDataset',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('network_id', models.PositiveIntegerField(db_index=True)),
                ('dataset_id', models.CharField(help_text='Content id of the ciphertext at publish time', max_length=128)),
                ('owner', models.CharField(db_index=True, max_length=42)),
                ('content_id', models.CharField(help_text='Current ciphertext reference, rotated by rekey', max_length=128)),
                ('metadata_blob', models.BinaryField()),
                ('is_public', models.BooleanField(default=False)),
                ('is_encrypted', models.BooleanField(default=True)),
                ('retired', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('network_id', 'dataset_id'), name='unique_dataset_per_network')],
            },
        ),
        migrations.CreateModel(
            name='AccessEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('principal', models.CharField(db_index=True, max_length=42)),
                ('level', models.PositiveSmallIntegerField(choices=[(1, 'Read'), (2, 'Modify'), (3, 'Admin')])),
                ('granted_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('dataset', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='access_entries', to='datasets.registereddataset')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('dataset', 'principal'), name='unique_access_entry')],
            },
        ),
        migrations.CreateModel(
            name='WrappedKey',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('principal', models.CharField(db_index=True, max_length=42)),
                ('wrapped', models.BinaryField()),
                ('dataset', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='wrapped_keys', to='datasets.registereddataset')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('dataset', 'principal'), name='unique_wrapped_key')],
            },
        ),
        migrations.CreateModel(
            name='LedgerEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('log_index', models.PositiveIntegerField()),
                ('name', models.CharField(max_length=32)),
                ('args', models.JSONField(help_text='Event arguments in schema order')),
                ('transaction', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='events', to='datasets.ledgertransaction')),
            ],
            options={
                'ordering': ['transaction_id', 'log_index'],
            },
        ),
    ]
