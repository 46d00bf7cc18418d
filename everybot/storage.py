"""Storage utilities for the external listing catalog."""

import csv
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from everybot.canonical import derive_listing_id, detect_source, normalize_url, url_hash
from everybot.models import (
    USER_DECIDED_STATUSES,
    EnrichResult,
    GeocodeResult,
    ListingCandidate,
    ListingSnapshot,
    ListingStatus,
    RcnMatch,
    SourceStatus,
)
from everybot.models.database import (
    ExternalListingDB,
    SourceDefinitionDB,
    _new_id,
    get_engine,
    get_sessionmaker,
    init_db,
)
from everybot.utils.helpers import abs_url, opt_number, opt_str, parse_price

MAX_BATCH_IMPORT = 100

# Refreshed by every harvest, but never wiped by a missing value
HARVEST_FIELDS = ("title", "price_amount", "currency")

# Filled from the first source that knows them
COALESCE_FIELDS = (
    "description",
    "transaction_type",
    "property_type",
    "area_m2",
    "price_per_m2",
    "rooms",
    "floor",
    "year_built",
    "location_text",
    "voivodeship",
    "city",
    "district",
    "street",
    "thumb_url",
)

# Enrichment may replace these with a fresher non-null value
ENRICH_OVERWRITE_FIELDS = ("title", "price_amount", "currency")

# Enrichment fills these only when the catalog has nothing yet
ENRICH_FILL_FIELDS = COALESCE_FIELDS + ("owner_phone",)

# A row missing any of these is worth another enrichment attempt
KEY_FIELDS = ("title", "price_amount", "area_m2", "city")

EXPORT_COLUMNS = (
    "id",
    "office_id",
    "source",
    "source_listing_id",
    "source_url",
    "title",
    "price_amount",
    "currency",
    "transaction_type",
    "property_type",
    "area_m2",
    "price_per_m2",
    "rooms",
    "floor",
    "year_built",
    "location_text",
    "voivodeship",
    "city",
    "district",
    "street",
    "lat",
    "lng",
    "owner_phone",
    "rcn_last_price",
    "rcn_last_date",
    "status",
    "source_status",
    "matched_at",
    "enriched_at",
    "last_checked_at",
)

_IMPORT_ALIASES = {
    "sourceUrl": "url",
    "source_url": "url",
    "locationText": "location_text",
    "priceAmount": "price_amount",
    "price": "price_amount",
}


class ListingStore:
    """
    Read/write access to the catalog for the pipeline stages.

    Every method opens its own session, so a store can be shared by
    concurrent stages of different tenants.
    """

    def __init__(self, engine: Engine | None = None):
        self.engine = engine or get_engine()
        self.Session = get_sessionmaker(self.engine)

    def init(self) -> None:
        """Create tables if they do not exist."""
        init_db(self.engine)

    def _insert(self, table):
        if self.engine.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def upsert_listing(
        self,
        office_id: str,
        candidate: ListingCandidate,
        *,
        matched_at: datetime | None = None,
        now: datetime | None = None,
        refresh: bool = True,
    ) -> str:
        """
        Insert a candidate or merge it into the existing row with the same identity.

        Identity is ``(office, source, source_listing_id)`` when the URL
        yields a listing id, else ``(office, url_hash)``. On conflict the
        title, price and currency take the new value unless it is null,
        ``status``/``matched_at``/``last_seen_at`` are refreshed (a status
        decided by a person is kept), and every other attribute keeps its
        existing non-null value. Identity columns never change.

        Args:
            office_id: Owning tenant
            candidate: Parsed or imported listing
            matched_at: Harvest run timestamp
            now: Clock override
            refresh: False for manual imports, which must not touch
                status or harvest timestamps

        Returns:
            Row id
        """
        now = now or datetime.now()
        normalized = normalize_url(candidate.source_url)
        listing_id = candidate.source_listing_id or derive_listing_id(candidate.source, normalized)

        values: dict[str, Any] = {
            "id": _new_id(),
            "office_id": office_id,
            "source": candidate.source,
            "source_listing_id": listing_id,
            "source_url": candidate.source_url,
            "normalized_url": normalized,
            "url_hash": url_hash(normalized),
            "status": candidate.status.value,
            "source_status": SourceStatus.UNKNOWN.value,
            "matched_at": matched_at,
            "last_seen_at": now if refresh else None,
            "created_at": now,
            "updated_at": now,
        }
        for field in HARVEST_FIELDS + COALESCE_FIELDS:
            value = getattr(candidate, field)
            values[field] = value.value if hasattr(value, "value") else value
        if candidate.imported_from:
            values["raw"] = {"imported_from": candidate.imported_from, "at": now.isoformat()}

        table = ExternalListingDB.__table__
        stmt = self._insert(table).values(**values)
        excluded = stmt.excluded

        set_: dict[str, Any] = {"updated_at": now}
        for field in HARVEST_FIELDS:
            set_[field] = func.coalesce(excluded[field], table.c[field])
        for field in COALESCE_FIELDS:
            set_[field] = func.coalesce(table.c[field], excluded[field])

        if refresh:
            set_["status"] = case(
                (table.c.status.in_(sorted(USER_DECIDED_STATUSES)), table.c.status),
                else_=excluded.status,
            )
            set_["matched_at"] = func.coalesce(excluded.matched_at, table.c.matched_at)
            set_["last_seen_at"] = excluded.last_seen_at

        if listing_id:
            stmt = stmt.on_conflict_do_update(
                index_elements=["office_id", "source", "source_listing_id"],
                index_where=table.c.source_listing_id.isnot(None),
                set_=set_,
            )
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["office_id", "url_hash"],
                index_where=table.c.source_listing_id.is_(None),
                set_=set_,
            )
        stmt = stmt.returning(table.c.id)

        session = self.Session()
        try:
            row_id = session.execute(stmt).scalar_one()
            session.commit()
            return row_id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def import_link(
        self,
        office_id: str,
        url: str,
        *,
        title: str | None = None,
        description: str | None = None,
        price_amount: float | None = None,
        currency: str | None = None,
        location_text: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """
        Add a single offer URL by hand.

        The source is detected from the host (``other`` when unknown). The
        row starts as ``new``; importing an existing URL keeps its status
        and harvest timestamps.
        """
        source_url = abs_url("", url)
        if not source_url:
            raise ValueError(f"Invalid URL: {url!r}")

        source = detect_source(source_url)
        candidate = ListingCandidate(
            source=source.value if source else "other",
            source_url=source_url,
            title=opt_str(title),
            description=opt_str(description),
            price_amount=price_amount,
            currency=opt_str(currency),
            location_text=opt_str(location_text),
            status=ListingStatus.NEW,
            imported_from="manual-link",
        )
        return self.upsert_listing(office_id, candidate, now=now, refresh=False)

    def import_batch(self, office_id: str, items: list[dict]) -> list[dict[str, Any]]:
        """
        Import up to ``MAX_BATCH_IMPORT`` links.

        Each item is imported on its own; a bad item is reported in its
        result and does not stop the rest.

        Returns:
            One ``{"url", "id", "ok", "error"}`` dict per item
        """
        if len(items) > MAX_BATCH_IMPORT:
            raise ValueError(f"At most {MAX_BATCH_IMPORT} items per batch")

        results = []
        for item in items:
            data = {_IMPORT_ALIASES.get(k, k): v for k, v in item.items()}
            url = opt_str(data.get("url"))

            price = data.get("price_amount")
            currency = opt_str(data.get("currency"))
            if isinstance(price, str):
                price, parsed_currency = parse_price(price)
                currency = currency or parsed_currency
            else:
                price = opt_number(price)

            try:
                row_id = self.import_link(
                    office_id,
                    url or "",
                    title=data.get("title"),
                    description=data.get("description"),
                    price_amount=price,
                    currency=currency,
                    location_text=data.get("location_text"),
                )
                results.append({"url": url, "id": row_id, "ok": True, "error": None})
            except (ValueError, SQLAlchemyError) as e:
                logger.warning("Import failed for {}: {}", url, e)
                results.append({"url": url, "id": None, "ok": False, "error": str(e)})

        return results

    # ------------------------------------------------------------------
    # Selection for sweeps
    # ------------------------------------------------------------------

    def _select(self, stmt) -> list[ListingSnapshot]:
        session = self.Session()
        try:
            rows = session.execute(stmt).scalars().all()
            return [ListingSnapshot.model_validate(row) for row in rows]
        finally:
            session.close()

    def select_stale_for_enrichment(
        self,
        office_id: str,
        limit: int,
        *,
        enriched_before: datetime | None = None,
        listing_id: str | None = None,
    ) -> list[ListingSnapshot]:
        """
        Rows to enrich, never-enriched first.

        A row enriched before ``enriched_before`` comes back when its last
        attempt failed or it still lacks a key field. Removed listings are
        skipped.
        """
        L = ExternalListingDB
        stmt = select(L).where(
            L.office_id == office_id,
            func.coalesce(L.source_status, SourceStatus.UNKNOWN.value) != SourceStatus.REMOVED.value,
        )

        if listing_id:
            stmt = stmt.where(L.id == listing_id)
        else:
            conditions = [L.enriched_at.is_(None)]
            if enriched_before is not None:
                missing = or_(*(getattr(L, field).is_(None) for field in KEY_FIELDS))
                conditions.append(
                    and_(L.enriched_at < enriched_before, or_(L.status == ListingStatus.ERROR.value, missing))
                )
            stmt = stmt.where(or_(*conditions))

        stmt = stmt.order_by(
            L.enriched_at.asc().nulls_first(),
            L.last_seen_at.desc().nulls_last(),
            L.updated_at.desc(),
        ).limit(limit)
        return self._select(stmt)

    def select_stale_for_geocoding(
        self,
        office_id: str,
        limit: int,
        *,
        force: bool = False,
        retry_before: datetime | None = None,
    ) -> list[ListingSnapshot]:
        """
        Rows without coordinates that have something to geocode.

        Without ``force`` only rows never attempted qualify, plus rows whose
        attempt found nothing (confidence 0) before ``retry_before``.
        Rows with a street go first, then rows with a city.
        """
        L = ExternalListingDB
        has_text = or_(L.city.isnot(None), func.length(func.trim(func.coalesce(L.location_text, ""))) > 0)
        stmt = select(L).where(
            L.office_id == office_id,
            or_(L.lat.is_(None), L.lng.is_(None)),
            has_text,
        )

        if not force:
            gate = [L.geocoded_at.is_(None)]
            if retry_before is not None:
                gate.append(and_(func.coalesce(L.geocode_confidence, 0) == 0, L.geocoded_at < retry_before))
            stmt = stmt.where(or_(*gate))

        stmt = stmt.order_by(
            case((L.street.isnot(None), 0), else_=1),
            case((L.city.isnot(None), 0), else_=1),
            L.enriched_at.desc().nulls_last(),
        ).limit(limit)
        return self._select(stmt)

    def select_stale_for_rcn(
        self,
        office_id: str,
        limit: int,
        *,
        cooldown_hours: float,
        force: bool = False,
        now: datetime | None = None,
    ) -> list[ListingSnapshot]:
        """Rows with coordinates whose last registry lookup is missing or older than the cooldown."""
        L = ExternalListingDB
        now = now or datetime.now()
        stmt = select(L).where(L.office_id == office_id, L.lat.isnot(None), L.lng.isnot(None))

        if not force:
            cutoff = now - timedelta(hours=cooldown_hours)
            stmt = stmt.where(or_(L.rcn_enriched_at.is_(None), L.rcn_enriched_at < cutoff))

        stmt = stmt.order_by(L.rcn_enriched_at.asc().nulls_first(), L.updated_at.desc()).limit(limit)
        return self._select(stmt)

    def select_stale_for_verification(
        self,
        office_id: str,
        limit: int,
        *,
        checked_before: datetime | None = None,
        listing_id: str | None = None,
    ) -> list[ListingSnapshot]:
        """Rows not yet removed, never-checked and oldest-checked first."""
        L = ExternalListingDB
        stmt = select(L).where(
            L.office_id == office_id,
            func.coalesce(L.source_status, SourceStatus.UNKNOWN.value) != SourceStatus.REMOVED.value,
        )

        if listing_id:
            stmt = stmt.where(L.id == listing_id)
        elif checked_before is not None:
            stmt = stmt.where(or_(L.last_checked_at.is_(None), L.last_checked_at < checked_before))

        stmt = stmt.order_by(L.last_checked_at.asc().nulls_first(), L.updated_at.desc()).limit(limit)
        return self._select(stmt)

    # ------------------------------------------------------------------
    # Stage results
    # ------------------------------------------------------------------

    def _update_row(self, office_id: str, listing_id: str, apply) -> bool:
        """Load one row, let ``apply`` mutate it, commit. False when the row is gone."""
        session = self.Session()
        try:
            row = session.get(ExternalListingDB, listing_id)
            if row is None or row.office_id != office_id:
                return False
            apply(row)
            session.commit()
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def apply_enrichment(
        self,
        office_id: str,
        listing_id: str,
        result: EnrichResult,
        *,
        now: datetime | None = None,
    ) -> bool:
        """
        Merge enrichment output into a row.

        Title, price and currency take any non-null new value; every other
        field is filled only while still empty. The row becomes
        ``enriched`` unless a person already decided its status.
        """
        now = now or datetime.now()
        data = result.filled()

        def apply(row: ExternalListingDB) -> None:
            for field in ENRICH_OVERWRITE_FIELDS:
                if field in data:
                    setattr(row, field, data[field])
            for field in ENRICH_FILL_FIELDS:
                if field in data and getattr(row, field) is None:
                    setattr(row, field, data[field])

            if row.status not in USER_DECIDED_STATUSES:
                row.status = ListingStatus.ENRICHED.value
            if not row.source_status or row.source_status == SourceStatus.UNKNOWN.value:
                row.source_status = SourceStatus.ACTIVE.value
            row.enriched_at = now
            row.last_error = None
            row.updated_at = now

        return self._update_row(office_id, listing_id, apply)

    def mark_enrich_error(
        self,
        office_id: str,
        listing_id: str,
        error: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Record a failed enrichment so the row is retried after the back-off window."""
        now = now or datetime.now()

        def apply(row: ExternalListingDB) -> None:
            if row.status not in USER_DECIDED_STATUSES:
                row.status = ListingStatus.ERROR.value
            row.last_error = error[:1000]
            row.enriched_at = now
            row.updated_at = now

        return self._update_row(office_id, listing_id, apply)

    def save_geocode(
        self,
        office_id: str,
        listing_id: str,
        result: GeocodeResult | None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Store a geocode attempt; ``None`` still marks the row as attempted."""
        now = now or datetime.now()

        def apply(row: ExternalListingDB) -> None:
            if result is not None:
                row.lat = result.lat
                row.lng = result.lng
                row.geocode_confidence = result.confidence
                row.geocode_source = "photon"
            else:
                row.geocode_confidence = 0.0
                row.geocode_source = "photon_low_conf"
            row.geocoded_at = now
            row.updated_at = now

        return self._update_row(office_id, listing_id, apply)

    def save_rcn(
        self,
        office_id: str,
        listing_id: str,
        match: RcnMatch | None,
        link: str | None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Store whatever the registry returned; the lookup timestamp is always set."""
        now = now or datetime.now()

        def apply(row: ExternalListingDB) -> None:
            if match is not None:
                if match.price is not None:
                    row.rcn_last_price = match.price
                if match.transaction_date is not None:
                    row.rcn_last_date = match.transaction_date
                if match.source_id:
                    row.rcn_last_source_id = match.source_id
            if link:
                row.rcn_link = link
            row.rcn_enriched_at = now
            row.updated_at = now

        return self._update_row(office_id, listing_id, apply)

    def save_verification(
        self,
        office_id: str,
        listing_id: str,
        source_status: SourceStatus | None,
        final_url: str | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """
        Store a liveness check.

        ``last_checked_at`` always moves forward. When the portal moved the
        offer, the new URL replaces ``source_url``/``normalized_url``; the
        identity hash stays as first recorded.
        """
        now = now or datetime.now()

        def apply(row: ExternalListingDB) -> None:
            if source_status is not None:
                row.source_status = source_status.value
            if final_url:
                normalized = normalize_url(final_url)
                if normalized != row.normalized_url:
                    row.source_url = final_url
                    row.normalized_url = normalized
            row.last_checked_at = now
            row.updated_at = now

        return self._update_row(office_id, listing_id, apply)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_listing(self, office_id: str, listing_id: str) -> ExternalListingDB | None:
        session = self.Session()
        try:
            row = session.get(ExternalListingDB, listing_id)
            if row is None or row.office_id != office_id:
                return None
            return row
        finally:
            session.close()

    def find_by_url(self, office_id: str, url: str) -> ExternalListingDB | None:
        """Look a row up by any URL that canonicalizes to its stored one."""
        session = self.Session()
        try:
            stmt = select(ExternalListingDB).where(
                ExternalListingDB.office_id == office_id,
                ExternalListingDB.normalized_url == normalize_url(url),
            )
            return session.execute(stmt).scalars().first()
        finally:
            session.close()

    def count(self, office_id: str | None = None, source: str | None = None) -> int:
        """Get count of listings in the catalog."""
        session = self.Session()
        try:
            stmt = select(func.count()).select_from(ExternalListingDB)
            if office_id:
                stmt = stmt.where(ExternalListingDB.office_id == office_id)
            if source:
                stmt = stmt.where(ExternalListingDB.source == source)
            return session.execute(stmt).scalar_one()
        finally:
            session.close()

    def stats(self, office_id: str) -> dict[str, Any]:
        """Counts per source and status plus stage coverage for one office."""
        L = ExternalListingDB
        session = self.Session()
        try:

            def grouped(column) -> dict[str, int]:
                stmt = select(column, func.count()).where(L.office_id == office_id).group_by(column)
                return {key or "unknown": n for key, n in session.execute(stmt).all()}

            def counted(*conditions) -> int:
                stmt = select(func.count()).select_from(L).where(L.office_id == office_id, *conditions)
                return session.execute(stmt).scalar_one()

            return {
                "total": counted(),
                "by_source": grouped(L.source),
                "by_status": grouped(L.status),
                "by_source_status": grouped(L.source_status),
                "enriched": counted(L.enriched_at.isnot(None)),
                "geocoded": counted(L.lat.isnot(None)),
                "with_rcn_price": counted(L.rcn_last_price.isnot(None)),
            }
        finally:
            session.close()

    def export_to_csv(self, filepath: str, office_id: str | None = None, source: str | None = None) -> int:
        """
        Export listings to CSV file.

        Args:
            filepath: Path to output CSV file
            office_id: Optional tenant filter
            source: Optional source filter

        Returns:
            Number of rows exported
        """
        session = self.Session()
        try:
            stmt = select(ExternalListingDB)
            if office_id:
                stmt = stmt.where(ExternalListingDB.office_id == office_id)
            if source:
                stmt = stmt.where(ExternalListingDB.source == source)

            listings = session.execute(stmt.order_by(ExternalListingDB.created_at)).scalars().all()

            if not listings:
                return 0

            with open(filepath, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(EXPORT_COLUMNS)
                for listing in listings:
                    writer.writerow([getattr(listing, column) for column in EXPORT_COLUMNS])

            return len(listings)

        finally:
            session.close()

    # ------------------------------------------------------------------
    # Source definitions
    # ------------------------------------------------------------------

    def add_source(
        self,
        office_id: str,
        adapter: str,
        *,
        name: str | None = None,
        filters: dict | None = None,
        crawl_interval_minutes: int = 360,
        enabled: bool = True,
    ) -> str:
        """Register a portal source for an office."""
        session = self.Session()
        try:
            source = SourceDefinitionDB(
                id=_new_id(),
                office_id=office_id,
                name=name or adapter,
                adapter=adapter,
                enabled=enabled,
                crawl_interval_minutes=crawl_interval_minutes,
                filters=filters or {},
            )
            session.add(source)
            session.commit()
            return source.id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def select_due_sources(self, office_id: str | None = None, now: datetime | None = None) -> list[SourceDefinitionDB]:
        """Enabled sources whose crawl interval has elapsed, never-crawled first."""
        now = now or datetime.now()
        session = self.Session()
        try:
            stmt = select(SourceDefinitionDB).where(SourceDefinitionDB.enabled.is_(True))
            if office_id:
                stmt = stmt.where(SourceDefinitionDB.office_id == office_id)
            stmt = stmt.order_by(SourceDefinitionDB.last_crawled_at.asc().nulls_first())

            due = []
            for source in session.execute(stmt).scalars().all():
                last = source.last_crawled_at
                if last is None or last + timedelta(minutes=source.crawl_interval_minutes) <= now:
                    due.append(source)
            return due
        finally:
            session.close()

    def mark_source_status(self, source_id: str, status: str, *, now: datetime | None = None) -> None:
        """Record the outcome of a source crawl."""
        now = now or datetime.now()
        session = self.Session()
        try:
            source = session.get(SourceDefinitionDB, source_id)
            if source is None:
                return
            source.last_crawled_at = now
            source.last_status = status[:250]
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
