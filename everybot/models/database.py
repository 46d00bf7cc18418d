"""Database models and engine management."""

import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from everybot.config import settings


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def _new_id() -> str:
    return uuid.uuid4().hex


class ExternalListingDB(Base):
    """One distinct real-world listing candidate, scoped to an office."""

    __tablename__ = "external_listings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    office_id: Mapped[str] = mapped_column(String(64), index=True)

    # Identity
    source: Mapped[str] = mapped_column(String(50), index=True)
    source_listing_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_url: Mapped[str] = mapped_column(Text)
    normalized_url: Mapped[str] = mapped_column(Text)
    url_hash: Mapped[str] = mapped_column(String(64))

    # Commercial
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_amount: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    transaction_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    property_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Physical
    area_m2: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_per_m2: Mapped[float | None] = mapped_column(Float, nullable=True)
    rooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    floor: Mapped[str | None] = mapped_column(String(20), nullable=True)
    year_built: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Location
    location_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    voivodeship: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    district: Mapped[str | None] = mapped_column(String(100), nullable=True)
    street: Mapped[str | None] = mapped_column(String(200), nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    geocode_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    geocode_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Contact / media
    owner_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    thumb_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Registry cross-reference
    rcn_last_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    rcn_last_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    rcn_last_source_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    rcn_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    rcn_enriched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default="new", index=True)
    source_status: Mapped[str] = mapped_column(String(20), default="unknown")
    enriched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    geocoded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        Index(
            "uq_listing_source_id",
            "office_id",
            "source",
            "source_listing_id",
            unique=True,
            sqlite_where=text("source_listing_id IS NOT NULL"),
            postgresql_where=text("source_listing_id IS NOT NULL"),
        ),
        Index(
            "uq_listing_url_hash",
            "office_id",
            "url_hash",
            unique=True,
            sqlite_where=text("source_listing_id IS NULL"),
            postgresql_where=text("source_listing_id IS NULL"),
        ),
    )


class SourceDefinitionDB(Base):
    """A portal source configured for an office."""

    __tablename__ = "everybot_sources"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    office_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(100))
    adapter: Mapped[str] = mapped_column(String(50))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    crawl_interval_minutes: Mapped[int] = mapped_column(Integer, default=360)
    filters: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_crawled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_status: Mapped[str | None] = mapped_column(String(250), nullable=True)


class TenantLockDB(Base):
    """Row-per-held-lock table used where advisory locks are unavailable."""

    __tablename__ = "tenant_locks"

    office_id: Mapped[str] = mapped_column(String(64))
    scope: Mapped[str] = mapped_column(String(50))
    token: Mapped[str] = mapped_column(String(32))
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    __table_args__ = (PrimaryKeyConstraint("office_id", "scope"),)


def get_engine(url: str | None = None) -> Engine:
    """Create database engine; in-memory SQLite shares one connection."""
    url = url or settings.database_url
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False)


def get_sessionmaker(engine: Engine):
    """Create a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Initialize database tables."""
    Base.metadata.create_all(engine)
