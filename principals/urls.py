# principals/urls.py
from django.urls import path
from .views import PrincipalDetailView, PrincipalListView, PrincipalRegistrationView

urlpatterns = [
    path('', PrincipalListView.as_view(), name='principal-list'),
    path('register/', PrincipalRegistrationView.as_view(), name='principal-register'),
    path('<str:address>/', PrincipalDetailView.as_view(), name='principal-detail'),
]
