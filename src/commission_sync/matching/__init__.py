"""Tolerance-based matching of installments to sales orders."""

from .engine import (
    MISSING_CUSTOMER,
    NO_MATCHING_DATE,
    NO_MATCHING_VALUE,
    NO_ORDERS_FOR_CUSTOMER,
    ORDER_DATE_MISSING,
    AmbiguousMatch,
    MatchCandidate,
    MatchingEngine,
    MatchOutcome,
    NotFound,
    UniqueMatch,
)

__all__ = [
    "MatchingEngine",
    "MatchCandidate",
    "MatchOutcome",
    "UniqueMatch",
    "AmbiguousMatch",
    "NotFound",
    "MISSING_CUSTOMER",
    "NO_ORDERS_FOR_CUSTOMER",
    "NO_MATCHING_VALUE",
    "NO_MATCHING_DATE",
    "ORDER_DATE_MISSING",
]
