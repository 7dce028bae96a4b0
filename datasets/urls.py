# datasets/urls.py
from django.urls import path
from .views import (
    DatasetAccessView,
    DatasetDetailView,
    DatasetKeyView,
    DatasetMetadataView,
    DatasetOwnerView,
    DatasetPublishView,
    DatasetRekeyView,
    DatasetRetireView,
    DatasetVisibilityView,
    DownloadEncryptedFileView,
    PrincipalDatasetsView,
)

urlpatterns = [
    path('dataset', DatasetPublishView.as_view(), name='dataset-publish'),
    path('dataset/<str:dataset_id>', DatasetDetailView.as_view(), name='dataset-detail'),
    path('dataset/<str:dataset_id>/access', DatasetAccessView.as_view(), name='dataset-access'),
    path('dataset/<str:dataset_id>/key', DatasetKeyView.as_view(), name='dataset-key'),
    path('dataset/<str:dataset_id>/rekey', DatasetRekeyView.as_view(), name='dataset-rekey'),
    path('dataset/<str:dataset_id>/metadata', DatasetMetadataView.as_view(), name='dataset-metadata'),
    path('dataset/<str:dataset_id>/owner', DatasetOwnerView.as_view(), name='dataset-owner'),
    path('dataset/<str:dataset_id>/visibility', DatasetVisibilityView.as_view(), name='dataset-visibility'),
    path('dataset/<str:dataset_id>/retire', DatasetRetireView.as_view(), name='dataset-retire'),
    path('dataset/<str:dataset_id>/content', DownloadEncryptedFileView.as_view(), name='dataset-content'),
    path('datasets/<str:address>', PrincipalDatasetsView.as_view(), name='principal-datasets'),
]
