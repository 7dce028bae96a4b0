# datasets/views.py
import logging

from django.conf import settings
from django.http import HttpResponse
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from principals.directory import PrincipalDirectory

from .authentication import SignedRequestMixin, request_payload
from .backoff import Deadline, RetryPolicy
from .content_store import get_content_store
from .crypto import to_hex
from .envelope import EnvelopeService
from .registry import get_registry
from .serializers import (
    AccessUpdateSerializer,
    MetadataUpdateSerializer,
    PublishRequestSerializer,
    RekeyRequestSerializer,
    TransferOwnerSerializer,
    VisibilitySerializer,
)

logger = logging.getLogger(__name__)


class EnvelopeAPIView(SignedRequestMixin, APIView):
    """
    Base for gateway endpoints. The gateway is stateless: each request
    resolves its network's registry handle, builds an envelope service and
    a deadline, and never touches a user's private key.
    """

    def get_service(self):
        network_id = request_payload(self.request).get('network_id')
        return EnvelopeService(
            get_registry(network_id), get_content_store(), PrincipalDirectory(),
            retry=RetryPolicy(max_attempts=settings.ENVELOPE_MAX_ATTEMPTS),
        )

    def get_deadline(self):
        return Deadline(settings.REQUEST_DEADLINE_SECONDS)

    def validated(self, serializer_class):
        serializer = serializer_class(data=self.request.data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data

    @staticmethod
    def receipt_response(receipt, **extra):
        body = {'success': True, **extra}
        body.update(receipt.as_dict())
        return Response(body)


class DatasetPublishView(EnvelopeAPIView):
    """
    Registers ciphertext the client already encrypted and uploaded, with
    the content key wrapped for the owner and each initial grantee.
    """
    signed_action = 'publish'

    def post(self, request):
        data = self.validated(PublishRequestSerializer)
        receipt = self.get_service().submit_publish(
            self.sender,
            data['content_id'],
            data['metadata'],
            initial_acl=data['initial_acl'],
            wrapped_keys=data['wrapped_keys'],
            is_public=data['is_public'],
            is_encrypted=data['is_encrypted'],
            deadline=self.get_deadline(),
        )
        return self.receipt_response(receipt, dataset_id=data['content_id'],
                                     already_registered=receipt.event is None)


class DatasetDetailView(EnvelopeAPIView):
    """
    Metadata and content id of a dataset, plus the caller's own wrapped key
    when the request is signed. Anonymous callers only see public datasets.
    """
    signed_action = 'get_dataset'
    permission_classes = [AllowAny]

    def get(self, request, dataset_id):
        dataset = self.get_service().describe(self.sender, dataset_id)
        return Response({'success': True, **dataset})


class DatasetAccessView(EnvelopeAPIView):
    signed_action = 'update_access'

    def post(self, request, dataset_id):
        data = self.validated(AccessUpdateSerializer)
        service = self.get_service()
        deadline = self.get_deadline()
        operation = data['operation']

        if operation == 'update':
            receipt = service.submit_update_acl(self.sender, dataset_id, data['acl'],
                                                data['wrapped_keys'], deadline=deadline)
        elif operation == 'grant':
            receipt = service.submit_grant(self.sender, dataset_id, data['principal'], data['level'],
                                           data.get('wrapped_key'), deadline=deadline)
        else:
            receipt = service.revoke(self.sender, dataset_id, data['principal'], deadline=deadline)

        logger.info('Access %s on %s by %s', operation, dataset_id, self.sender)
        return self.receipt_response(receipt, dataset_id=dataset_id, operation=operation)


class DatasetKeyView(EnvelopeAPIView):
    """Returns the caller's wrapped content key; never anyone else's."""
    signed_action = 'get_key'

    def get(self, request, dataset_id):
        wrapped = self.get_service().key_for(self.sender, dataset_id)
        return Response({
            'success': True,
            'dataset_id': dataset_id,
            'principal': self.sender,
            'wrapped_key': to_hex(wrapped),
        })


class DatasetRekeyView(EnvelopeAPIView):
    signed_action = 'rekey'

    def post(self, request, dataset_id):
        data = self.validated(RekeyRequestSerializer)
        receipt = self.get_service().submit_rekey(
            self.sender, dataset_id, data['content_id'], data['wrapped_keys'], deadline=self.get_deadline(),
        )
        return self.receipt_response(receipt, dataset_id=dataset_id, content_id=data['content_id'])


class DatasetMetadataView(EnvelopeAPIView):
    signed_action = 'update_metadata'

    def post(self, request, dataset_id):
        data = self.validated(MetadataUpdateSerializer)
        receipt = self.get_service().update_metadata(
            self.sender, dataset_id, data['metadata'], deadline=self.get_deadline(),
        )
        return self.receipt_response(receipt, dataset_id=dataset_id)


class DatasetOwnerView(EnvelopeAPIView):
    signed_action = 'transfer_owner'

    def post(self, request, dataset_id):
        data = self.validated(TransferOwnerSerializer)
        receipt = self.get_service().submit_transfer_owner(
            self.sender, dataset_id, data['new_owner'], data.get('wrapped_key'), deadline=self.get_deadline(),
        )
        return self.receipt_response(receipt, dataset_id=dataset_id, owner=data['new_owner'])


class DatasetVisibilityView(EnvelopeAPIView):
    signed_action = 'set_visibility'

    def post(self, request, dataset_id):
        data = self.validated(VisibilitySerializer)
        receipt = self.get_service().set_visibility(
            self.sender, dataset_id, data['is_public'], deadline=self.get_deadline(),
        )
        return self.receipt_response(receipt, dataset_id=dataset_id, is_public=data['is_public'])


class DatasetRetireView(EnvelopeAPIView):
    signed_action = 'retire'

    def post(self, request, dataset_id):
        receipt = self.get_service().retire(self.sender, dataset_id, deadline=self.get_deadline())
        return self.receipt_response(receipt, dataset_id=dataset_id)


class DownloadEncryptedFileView(EnvelopeAPIView):
    """
    Streams the dataset's current ciphertext from the content store. The
    client decrypts it with the content key unwrapped from DatasetKeyView.
    """
    signed_action = 'get_content'
    permission_classes = [AllowAny]

    def get(self, request, dataset_id):
        dataset, data = self.get_service().ciphertext_for(self.sender, dataset_id, deadline=self.get_deadline())
        suffix = '.enc' if dataset.is_encrypted else ''
        return HttpResponse(
            data,
            content_type='application/octet-stream',
            headers={
                'Content-Disposition': f'attachment; filename="{dataset.content_id}{suffix}"',
                'X-Content-Id': dataset.content_id,
            },
        )


class PrincipalDatasetsView(EnvelopeAPIView):
    """
    Dataset ids owned by, or shared with, a wallet address. Registry state
    is public, so no signature is needed.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request, address):
        datasets = self.get_service().datasets_for(address)
        return Response({
            'success': True,
            'address': address.lower(),
            'owned': datasets['owned'],
            'accessible': datasets['accessible'],
            'total_count': len(datasets['accessible']),
        }, status=status.HTTP_200_OK)
