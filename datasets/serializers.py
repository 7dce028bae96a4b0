# datasets/serializers.py
import json
import re

from rest_framework import serializers

from .crypto import canonical_json, normalize_address
from .errors import BadRequest
from .policy import AccessLevel

DATA_TYPES = ('csv', 'json', 'images', 'audio', 'video', 'text', 'mixed', 'other')
CONTENT_ID_RE = re.compile(r'^[0-9a-f]{64}$')
LOWER_ADDRESS_RE = re.compile(r'^0x[0-9a-f]{40}$')


def _strict_int(value, field):
    if isinstance(value, bool) or not isinstance(value, int):
        raise serializers.ValidationError(f'{field} must be an integer')
    return value


class AddressField(serializers.CharField):
    """Accepts any well-formed address and normalizes it to lowercase hex."""

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        try:
            return normalize_address(value)
        except BadRequest as exc:
            raise serializers.ValidationError(exc.message)


class ContentIdField(serializers.CharField):

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        if not CONTENT_ID_RE.match(value):
            raise serializers.ValidationError('Content id must be 64 lowercase hex characters')
        return value


class DatasetMetadataSerializer(serializers.Serializer):
    """
    Canonical metadata blob stored verbatim on the registry.
    """
    name = serializers.CharField(min_length=3, max_length=100, trim_whitespace=False)
    description = serializers.CharField(min_length=10, max_length=1000, trim_whitespace=False)
    data_type = serializers.ChoiceField(choices=DATA_TYPES)
    size = serializers.IntegerField(min_value=0)
    tags = serializers.ListField(child=serializers.CharField(max_length=64), default=list)
    extended_ref = ContentIdField(required=False)

    def validate_size(self, value):
        return _strict_int(self.initial_data.get('size'), 'size')

    def validate(self, attrs):
        unknown = set(self.initial_data) - set(self.fields)
        if unknown:
            raise serializers.ValidationError(f'Unknown metadata fields: {", ".join(sorted(unknown))}')
        return attrs


def validate_metadata(metadata):
    """Validate a metadata dict, raising BadRequest with the field errors."""
    if not isinstance(metadata, dict):
        raise BadRequest('Metadata must be an object')
    serializer = DatasetMetadataSerializer(data=metadata)
    if not serializer.is_valid():
        raise BadRequest(f'Invalid metadata: {json.dumps(serializer.errors)}')
    return dict(serializer.validated_data)


def encode_metadata(metadata):
    return canonical_json(validate_metadata(metadata)).encode('utf-8')


def decode_metadata(blob):
    """Parse a stored metadata blob; returns None when it is not our canonical JSON."""
    try:
        value = json.loads(bytes(blob).decode('utf-8'))
    except (UnicodeDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def parse_acl(blob):
    """
    Parse an ACL blob (JSON text, bytes or an already-decoded object) into
    {lowercase address: AccessLevel}.
    """
    if isinstance(blob, (bytes, bytearray)):
        blob = blob.decode('utf-8', errors='strict')
    if isinstance(blob, str):
        try:
            blob = json.loads(blob)
        except ValueError:
            raise BadRequest('ACL is not valid JSON') from None
    if not isinstance(blob, dict):
        raise BadRequest('ACL must be an object of address -> level')
    acl = {}
    for address, level in blob.items():
        if not isinstance(address, str) or not LOWER_ADDRESS_RE.match(address):
            raise BadRequest(f'ACL key is not a lowercase hex address: {address!r}')
        acl[address] = AccessLevel.parse(level)
    return acl


def encode_acl(acl):
    return canonical_json({p: int(level) for p, level in acl.items()}).encode('utf-8')


class AclField(serializers.JSONField):

    def to_internal_value(self, data):
        try:
            return parse_acl(super().to_internal_value(data))
        except BadRequest as exc:
            raise serializers.ValidationError(exc.message)


class WrappedKeysField(serializers.DictField):
    child = serializers.CharField()

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        result = {}
        for address, wrapped in value.items():
            try:
                result[normalize_address(address)] = wrapped
            except BadRequest as exc:
                raise serializers.ValidationError(exc.message)
        return result


class MetadataField(serializers.JSONField):

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        try:
            return validate_metadata(value)
        except BadRequest as exc:
            raise serializers.ValidationError(exc.message)


class PublishRequestSerializer(serializers.Serializer):
    content_id = ContentIdField()
    metadata = MetadataField()
    initial_acl = AclField(default=dict)
    wrapped_keys = WrappedKeysField(default=dict)
    is_public = serializers.BooleanField(default=False)
    is_encrypted = serializers.BooleanField(default=True)


class AccessUpdateSerializer(serializers.Serializer):
    OPERATIONS = ('update', 'grant', 'revoke')

    operation = serializers.ChoiceField(choices=OPERATIONS)
    acl = AclField(required=False)
    wrapped_keys = WrappedKeysField(default=dict)
    principal = AddressField(required=False)
    level = serializers.IntegerField(required=False)
    wrapped_key = serializers.CharField(required=False)

    def validate(self, attrs):
        operation = attrs['operation']
        if operation == 'update' and 'acl' not in attrs:
            raise serializers.ValidationError('Missing acl for update operation')
        if operation in ('grant', 'revoke') and 'principal' not in attrs:
            raise serializers.ValidationError(f'Missing principal for {operation} operation')
        if operation == 'grant':
            if 'level' not in attrs:
                raise serializers.ValidationError('Missing level for grant operation')
            _strict_int(self.initial_data.get('level'), 'level')
            if attrs['level'] not in (AccessLevel.READ, AccessLevel.MODIFY, AccessLevel.ADMIN):
                raise serializers.ValidationError('Invalid access level. Must be 1 (read), 2 (modify), or 3 (admin)')
        return attrs


class RekeyRequestSerializer(serializers.Serializer):
    content_id = ContentIdField()
    wrapped_keys = WrappedKeysField()


class MetadataUpdateSerializer(serializers.Serializer):
    metadata = MetadataField()


class TransferOwnerSerializer(serializers.Serializer):
    new_owner = AddressField()
    wrapped_key = serializers.CharField(required=False)


class VisibilitySerializer(serializers.Serializer):
    is_public = serializers.BooleanField()
