"""Geocoding batch: address text -> coordinates (Photon)."""

import json
import re
from datetime import datetime, timedelta

from loguru import logger

from everybot.errors import ConfigError, ParseError
from everybot.fetch import FetchClient
from everybot.logging import stage_finished, stage_started
from everybot.models import GeocodeResult, ListingSnapshot
from everybot.pipeline.state import BatchResult, PipelineContext
from everybot.utils.helpers import opt_number, opt_str
from everybot.utils.location import clean_loose_location_text

STAGE = "geocode"

MAX_QUERY_LENGTH = 120
MIN_QUERY_LENGTH = 3

_RELATIVE_DATE = re.compile(r"\b(dzisiaj|wczoraj|jutro|przedwczoraj)\b", re.IGNORECASE)
_AGO = re.compile(r"\b\d+\s*(dni|dzień|godz|godzin|min|minut)\s*temu\b", re.IGNORECASE)
_CLOCK = re.compile(r"\b\d{1,2}:\d{2}\b")
_NOISE = re.compile(r"[^\w\s,./-]|_")


def _join(*parts: str | None) -> str:
    return ", ".join(p.strip() for p in parts if p and p.strip())


def build_geocode_query(row: ListingSnapshot) -> str | None:
    """
    Query text for a row.

    Street with city (plus district and voivodeship when known) wins; then
    the free-text location with the city; then the free-text location
    alone; then the city alone.
    """
    street = opt_str(row.street)
    city = opt_str(row.city)
    location = clean_loose_location_text(row.location_text) or None

    if street and city:
        return _join(street, row.district, city, row.voivodeship, "Poland")
    if location and city:
        if city.lower() in location.lower():
            return _join(location, row.voivodeship, "Poland")
        return _join(location, city, row.voivodeship, "Poland")
    if location:
        return _join(location, "Poland")
    if city:
        return _join(row.district, city, row.voivodeship, "Poland")
    return None


def sanitize_geocode_query(query: str | None) -> str:
    """Strip relative dates, times and stray symbols; cap the length."""
    s = (query or "").strip()
    if not s:
        return ""
    s = _RELATIVE_DATE.sub(" ", s)
    s = _AGO.sub(" ", s)
    s = _CLOCK.sub(" ", s)
    s = _NOISE.sub(" ", s)
    s = re.sub(r"\s+", " ", s).strip(" ,")
    return s[:MAX_QUERY_LENGTH]


def photon_confidence(properties: dict) -> float:
    """Heuristic confidence from the address components Photon returned."""
    confidence = 0.15
    if opt_str(properties.get("state")):
        confidence += 0.05
    if opt_str(properties.get("city")):
        confidence += 0.10
    if opt_str(properties.get("street")):
        confidence += 0.20
    if opt_str(properties.get("housenumber")):
        confidence += 0.40
    return round(min(confidence, 0.95), 2)


class PhotonGeocoder:
    """Thin client for a Photon ``/api`` endpoint."""

    def __init__(
        self,
        fetcher: FetchClient,
        url: str,
        user_agent: str,
        min_confidence: float = 0.20,
    ):
        self.fetcher = fetcher
        self.url = url
        self.user_agent = user_agent
        self.min_confidence = min_confidence

    async def geocode(self, query: str) -> GeocodeResult | None:
        """
        Resolve ``query`` to a coordinate.

        Returns None for queries too short to send, for empty answers and
        for answers below ``min_confidence``.

        Raises:
            FetchError: the endpoint could not be reached or answered non-2xx
        """
        q = sanitize_geocode_query(query)
        if len(q) < MIN_QUERY_LENGTH:
            return None

        fetched = await self.fetcher.fetch_ok(
            self.url,
            params={"q": q, "lang": "pl", "limit": "1"},
            headers={"Accept": "application/json", "User-Agent": self.user_agent},
        )
        try:
            payload = json.loads(fetched.body) if fetched.body else {}
        except ValueError as e:
            raise ParseError(f"Geocoder returned invalid JSON: {e}") from e

        features = payload.get("features") if isinstance(payload, dict) else None
        if not isinstance(features, list) or not features or not isinstance(features[0], dict):
            return None
        feature = features[0]

        geometry = feature.get("geometry")
        coordinates = geometry.get("coordinates") if isinstance(geometry, dict) else None
        if not isinstance(coordinates, list) or len(coordinates) < 2:
            return None
        lng, lat = opt_number(coordinates[0]), opt_number(coordinates[1])
        if lat is None or lng is None:
            return None

        properties = feature.get("properties")
        confidence = photon_confidence(properties if isinstance(properties, dict) else {})
        if confidence < self.min_confidence:
            return None
        return GeocodeResult(lat=lat, lng=lng, confidence=confidence)


async def run_geocode_batch(
    ctx: PipelineContext,
    office_id: str,
    limit: int | None = None,
    *,
    force: bool = False,
) -> BatchResult:
    """
    Geocode rows that have address text but no coordinates.

    Every attempt stamps ``geocoded_at``, also when nothing was found, so a
    second run without ``force`` makes no request for the same rows. A
    failed request leaves the row untouched for the next run.
    """
    settings = ctx.settings
    settings.require("geocoder_url")
    limit = settings.geocode_limit if limit is None else limit

    geocoder = PhotonGeocoder(
        ctx.fetcher,
        settings.geocoder_url,
        settings.geocoder_user_agent,
        settings.geocode_min_confidence,
    )

    rows = ctx.store.select_stale_for_geocoding(
        office_id,
        limit,
        force=force,
        retry_before=datetime.now() - timedelta(days=settings.geocode_retry_days),
    )
    result = BatchResult(stage=STAGE, details={"found": 0, "not_found": 0})
    stage_started(STAGE, office_id, selected=len(rows))

    for row in rows:
        query = build_geocode_query(row)
        if not query:
            ctx.store.save_geocode(office_id, row.id, None)
            result.skipped += 1
            continue

        await ctx.pace(STAGE, settings.geocode_delay)
        try:
            found = await geocoder.geocode(query)
            ctx.store.save_geocode(office_id, row.id, found)
        except ConfigError:
            raise
        except Exception as e:
            logger.warning("Geocode failed for {} ({}): {}", row.id, query, e)
            result.add_error(e, item_id=row.id, source=row.source, url=row.source_url)
            continue

        result.processed += 1
        result.details["found" if found else "not_found"] += 1

    stage_finished(STAGE, office_id, {"processed": result.processed, "errors": len(result.errors)})
    return result
