# principals/serializers.py
from rest_framework import serializers

from .models import Principal


class PrincipalSerializer(serializers.ModelSerializer):

    class Meta:
        model = Principal
        fields = ['address', 'public_key', 'registered_at']
        read_only_fields = fields


class PrincipalRegistrationSerializer(serializers.Serializer):
    public_key = serializers.RegexField(r'^(0x)?[0-9a-fA-F]{128}$')
