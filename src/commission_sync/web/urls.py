"""
URL configuration for the reconciliation endpoint.
"""

from django.urls import path

from . import views

urlpatterns = [
    path("api/reconcile/", views.reconcile, name="reconcile"),
    path("api/status/", views.status, name="status"),
]
