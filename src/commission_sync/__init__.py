"""
Commission installments → Bling sales orders → NF-e/DANFE reconciliation.

A batch engine that re-links released commission installments to the sales
orders they were paid against, fetches the fiscal invoice (NF-e) for each
linked order from Bling, and propagates the DANFE link back onto every
installment of that order.
"""

__version__ = "0.1.0"
