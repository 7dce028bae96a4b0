# synergy/urls.py
from django.urls import include, path

urlpatterns = [
    path('', include('datasets.urls')),
    path('principals/', include('principals.urls')),
]
