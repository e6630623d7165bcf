"""
Django application configuration.
"""

from django.apps import AppConfig


class WebConfig(AppConfig):
    """Django app configuration for the reconciliation endpoint."""

    name = "commission_sync.web"
    label = "commission_sync_web"
    verbose_name = "Commission Reconciliation"
