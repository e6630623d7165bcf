"""
CLI runner module.

Provides commands:
- reconcile: Link installments, resolve NF-e, propagate DANFE links
- serve: HTTP trigger endpoint
- status: Reconciliation backlog
- credentials: Store Bling OAuth credentials
- init-config: Write a default config file
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
