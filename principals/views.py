# principals/views.py
from rest_framework import generics, status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from datasets.authentication import SignedRequestMixin
from datasets.crypto import normalize_address
from datasets.errors import NotFound

from .directory import PrincipalDirectory
from .models import Principal
from .serializers import PrincipalRegistrationSerializer, PrincipalSerializer


class PrincipalListView(generics.ListAPIView):
    """
    View to list all registered principals and their public keys.
    """
    queryset = Principal.objects.order_by('registered_at')
    serializer_class = PrincipalSerializer
    authentication_classes = []
    permission_classes = [AllowAny]


class PrincipalDetailView(generics.RetrieveAPIView):
    serializer_class = PrincipalSerializer
    authentication_classes = []
    permission_classes = [AllowAny]

    def get_object(self):
        address = normalize_address(self.kwargs['address'])
        principal = Principal.objects.filter(address=address).first()
        if principal is None:
            raise NotFound(f'No public key registered for {address}')
        return principal


class PrincipalRegistrationView(SignedRequestMixin, APIView):
    """
    Register (or replace) the caller's public key. The signature proves the
    caller holds the private key; the key must also hash to the address.
    """
    signed_action = 'register_principal'

    def post(self, request):
        serializer = PrincipalRegistrationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        principal = PrincipalDirectory().register(self.sender, serializer.validated_data['public_key'])
        return Response({
            'success': True,
            'principal': PrincipalSerializer(principal).data,
        }, status=status.HTTP_201_CREATED)
