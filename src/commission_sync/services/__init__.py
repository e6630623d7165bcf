"""Reconciliation services: run controller and its stages."""

from .invoice_resolver import InvoiceResolver
from .propagator import Propagator
from .reconciliation import ReconciliationService

__all__ = ["ReconciliationService", "InvoiceResolver", "Propagator"]
