"""Search filter normalization and per-portal narrowing."""

from typing import Any

from everybot.models import PropertyType, SearchFilters, SourceKey, TransactionType
from everybot.utils.helpers import opt_number, opt_str

# Dimensions each portal can encode stably in its search URL. Everything else
# (districts, streets, price and area ranges) is applied by catalog queries.
PORTAL_SAFE_FIELDS: dict[str, tuple[str, ...]] = {
    SourceKey.OTODOM.value: ("q", "transaction_type", "property_type", "voivodeship"),
    SourceKey.OLX.value: ("q",),
    SourceKey.MORIZON.value: ("q",),
    SourceKey.GRATKA.value: ("q", "transaction_type", "property_type"),
    SourceKey.ODWLASCICIELA.value: ("q",),
}

# camelCase keys accepted from web forms
_ALIASES = {
    "transactionType": "transaction_type",
    "propertyType": "property_type",
    "minPrice": "min_price",
    "maxPrice": "max_price",
    "priceMin": "min_price",
    "priceMax": "max_price",
    "minArea": "min_area",
    "maxArea": "max_area",
    "areaMin": "min_area",
    "areaMax": "max_area",
}


def normalize_transaction_type(value: Any) -> TransactionType | None:
    s = (opt_str(value) or "").lower()
    if not s:
        return None
    if s == "sale" or "sprzed" in s or "kup" in s:
        return TransactionType.SALE
    if s == "rent" or "wynaj" in s or "najem" in s:
        return TransactionType.RENT
    return None


def normalize_property_type(value: Any) -> PropertyType | None:
    s = (opt_str(value) or "").lower()
    if not s:
        return None
    try:
        return PropertyType(s)
    except ValueError:
        pass
    if "miesz" in s or "apart" in s or s == "flat":
        return PropertyType.APARTMENT
    if "pokój" in s or "pokoj" in s:
        return PropertyType.ROOM
    if "garaż" in s or "garaz" in s:
        return PropertyType.GARAGE
    if "dom" in s:
        return PropertyType.HOUSE
    if "działk" in s or "dzialk" in s or "grunt" in s:
        return PropertyType.PLOT
    if "lokal" in s or "biur" in s or "komerc" in s or "office" in s:
        return PropertyType.COMMERCIAL
    return PropertyType.OTHER


def normalize_filters(raw: SearchFilters | dict | None) -> SearchFilters:
    """
    Build a ``SearchFilters`` from loose input.

    Accepts snake_case or camelCase keys, Polish or English labels for the
    transaction and property type, and numbers given as strings.
    """
    if isinstance(raw, SearchFilters):
        return raw
    data = {_ALIASES.get(k, k): v for k, v in (raw or {}).items()}

    rooms = opt_number(data.get("rooms"))
    source = (opt_str(data.get("source")) or "all").lower()

    return SearchFilters(
        q=opt_str(data.get("q")),
        source=source,
        transaction_type=normalize_transaction_type(data.get("transaction_type")),
        property_type=normalize_property_type(data.get("property_type")),
        voivodeship=opt_str(data.get("voivodeship")),
        city=opt_str(data.get("city")),
        district=opt_str(data.get("district")),
        street=opt_str(data.get("street")),
        min_price=opt_number(data.get("min_price")),
        max_price=opt_number(data.get("max_price")),
        min_area=opt_number(data.get("min_area")),
        max_area=opt_number(data.get("max_area")),
        rooms=int(rooms) if rooms is not None else None,
    )


def portal_safe_filters(source: str, filters: SearchFilters) -> SearchFilters:
    """Narrow ``filters`` to what ``source`` can encode; unknown sources keep only ``q``."""
    allowed = PORTAL_SAFE_FIELDS.get(source, ("q",))
    kept = {name: getattr(filters, name) for name in allowed}
    return SearchFilters(source=source, **kept)
