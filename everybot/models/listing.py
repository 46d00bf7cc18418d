"""Listing data models shared by adapters, enrichers and storage."""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SourceKey(str, Enum):
    """Portal identifiers with a registered adapter."""

    OTODOM = "otodom"
    OLX = "olx"
    MORIZON = "morizon"
    GRATKA = "gratka"
    ODWLASCICIELA = "odwlasciciela"


class TransactionType(str, Enum):
    """Type of transaction."""

    SALE = "sale"
    RENT = "rent"


class PropertyType(str, Enum):
    """Type of property."""

    APARTMENT = "apartment"
    HOUSE = "house"
    PLOT = "plot"
    COMMERCIAL = "commercial"
    ROOM = "room"
    GARAGE = "garage"
    OTHER = "other"


class ListingStatus(str, Enum):
    """Workflow status of a catalog row."""

    NEW = "new"
    PREVIEW = "preview"
    ACTIVE = "active"
    ENRICHED = "enriched"
    SHORTLISTED = "shortlisted"
    REJECTED = "rejected"
    CONVERTED = "converted"
    ERROR = "error"


# Statuses set by a person; a re-harvest must not reset them.
USER_DECIDED_STATUSES = frozenset(
    {ListingStatus.SHORTLISTED.value, ListingStatus.REJECTED.value, ListingStatus.CONVERTED.value}
)


class SourceStatus(str, Enum):
    """Liveness of the listing on its portal."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    REMOVED = "removed"
    UNKNOWN = "unknown"


class DegradedReason(str, Enum):
    """Why a search page cannot be trusted."""

    NONE = "none"
    PORTAL_REDIRECTED = "portal_redirected"
    FILTERS_IGNORED = "filters_ignored"
    CAPTCHA_OR_BLOCK = "captcha_or_block"
    UNKNOWN = "unknown"


class SearchFilters(BaseModel):
    """Normalized search filters."""

    q: str | None = None
    source: str = "all"
    transaction_type: TransactionType | None = None
    property_type: PropertyType | None = None

    voivodeship: str | None = None
    city: str | None = None
    district: str | None = None
    street: str | None = None

    min_price: float | None = None
    max_price: float | None = None
    min_area: float | None = None
    max_area: float | None = None
    rooms: int | None = None


class ListingCandidate(BaseModel):
    """A listing summary produced by a search page or a manual import."""

    source: str = Field(..., description="Portal key (otodom, olx, ...)")
    source_url: str = Field(..., description="URL of the offer page")
    source_listing_id: str | None = None

    title: str | None = None
    description: str | None = None
    price_amount: float | None = None
    currency: str | None = None
    transaction_type: TransactionType | None = None
    property_type: str | None = None

    area_m2: float | None = None
    price_per_m2: float | None = None
    rooms: int | None = None
    floor: str | None = None
    year_built: int | None = None

    location_text: str | None = None
    voivodeship: str | None = None
    city: str | None = None
    district: str | None = None
    street: str | None = None

    thumb_url: str | None = None
    status: ListingStatus = ListingStatus.PREVIEW
    imported_from: str | None = None


class EnrichResult(BaseModel):
    """Attributes recovered from a detail page. Every field is optional."""

    title: str | None = None
    description: str | None = None

    price_amount: float | None = None
    currency: str | None = None
    transaction_type: TransactionType | None = None
    property_type: str | None = None

    area_m2: float | None = None
    price_per_m2: float | None = None
    rooms: int | None = None
    floor: str | None = None
    year_built: int | None = None

    location_text: str | None = None
    voivodeship: str | None = None
    city: str | None = None
    district: str | None = None
    street: str | None = None

    owner_phone: str | None = None
    thumb_url: str | None = None

    def filled(self) -> dict[str, Any]:
        """Return only the fields that carry a value."""
        data = self.model_dump(exclude_none=True)
        if "transaction_type" in data:
            data["transaction_type"] = self.transaction_type.value
        return data

    def fill_missing(self, other: "EnrichResult") -> "EnrichResult":
        """Return a copy where empty fields are taken from ``other``."""
        merged = other.model_dump()
        merged.update(self.model_dump(exclude_none=True))
        return EnrichResult(**merged)


class SearchPage(BaseModel):
    """Outcome of parsing one search results page."""

    source: str
    page: int
    requested_url: str
    final_url: str
    applied: bool = True
    degraded_reason: DegradedReason = DegradedReason.NONE
    has_next: bool | None = None
    items: list[ListingCandidate] = Field(default_factory=list)
    discarded: int = 0

    @property
    def degraded(self) -> bool:
        return not self.applied


class GeocodeResult(BaseModel):
    """A resolved coordinate."""

    lat: float
    lng: float
    confidence: float = 0.0


class RcnMatch(BaseModel):
    """A comparable transaction recovered from the price registry."""

    price: float | None = None
    transaction_date: date | None = None
    source_id: str | None = None
    layer: str | None = None
    mode: str | None = None

    @property
    def usable(self) -> bool:
        return self.price is not None or self.transaction_date is not None


class ListingSnapshot(BaseModel):
    """The subset of a catalog row handed to pipeline stages."""

    id: str
    office_id: str
    source: str
    source_url: str
    status: str | None = None
    source_status: str | None = None

    location_text: str | None = None
    voivodeship: str | None = None
    city: str | None = None
    district: str | None = None
    street: str | None = None

    lat: float | None = None
    lng: float | None = None

    enriched_at: datetime | None = None
    geocoded_at: datetime | None = None
    last_checked_at: datetime | None = None
    rcn_enriched_at: datetime | None = None

    model_config = {"from_attributes": True}
