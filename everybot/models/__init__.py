"""Data models."""

from everybot.models.listing import (
    USER_DECIDED_STATUSES,
    DegradedReason,
    EnrichResult,
    GeocodeResult,
    ListingCandidate,
    ListingSnapshot,
    ListingStatus,
    PropertyType,
    RcnMatch,
    SearchFilters,
    SearchPage,
    SourceKey,
    SourceStatus,
    TransactionType,
)

__all__ = [
    "USER_DECIDED_STATUSES",
    "DegradedReason",
    "EnrichResult",
    "GeocodeResult",
    "ListingCandidate",
    "ListingSnapshot",
    "ListingStatus",
    "PropertyType",
    "RcnMatch",
    "SearchFilters",
    "SearchPage",
    "SourceKey",
    "SourceStatus",
    "TransactionType",
]
