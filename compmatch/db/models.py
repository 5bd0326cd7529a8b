"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from compmatch.enums import MatchSource, MatchState, RunStatus


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Store(Base):
    """Tenant: the merchant whose catalog is matched against competitors."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    plan: Mapped[str] = mapped_column(String(20), default="starter", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    owned_items: Mapped[list["OwnedItem"]] = relationship(
        "OwnedItem", back_populates="store", cascade="all, delete-orphan"
    )
    competitors: Mapped[list["Competitor"]] = relationship(
        "Competitor", back_populates="store", cascade="all, delete-orphan"
    )


class OwnedItem(Base):
    """A tenant's own catalog product."""

    __tablename__ = "owned_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_name: Mapped[str] = mapped_column(Text, default="", nullable=False)  # Cached normalize(name)
    sku: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    store: Mapped["Store"] = relationship("Store", back_populates="owned_items")
    confirmed_matches: Mapped[list["ConfirmedMatch"]] = relationship(
        "ConfirmedMatch", back_populates="owned_item", cascade="all, delete-orphan"
    )


class Competitor(Base):
    """A competitor site tracked by a tenant."""

    __tablename__ = "competitors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=RunStatus.PENDING.value, nullable=False
    )  # Mirrors the latest discovery run
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    store: Mapped["Store"] = relationship("Store", back_populates="competitors")
    runs: Mapped[list["DiscoveryRun"]] = relationship(
        "DiscoveryRun", back_populates="competitor", cascade="all, delete-orphan"
    )
    listings: Mapped[list["ScrapedListing"]] = relationship(
        "ScrapedListing", cascade="all, delete-orphan"
    )
    candidates: Mapped[list["MatchCandidate"]] = relationship(
        "MatchCandidate", cascade="all, delete-orphan"
    )
    confirmed_matches: Mapped[list["ConfirmedMatch"]] = relationship(
        "ConfirmedMatch", back_populates="competitor", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("store_id", "url", name="uq_competitor_store_url"),)


class DiscoveryRun(Base):
    """One execution of "scrape a competitor, build fresh candidates"."""

    __tablename__ = "discovery_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # UUID hex
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=RunStatus.PROCESSING.value, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    listings_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    listings_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    listings_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    candidates_built: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_confirmed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quota_remaining: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    warning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    competitor: Mapped["Competitor"] = relationship("Competitor", back_populates="runs")

    @property
    def run_status(self) -> RunStatus:
        return RunStatus.parse(self.status)


class ScrapedListing(Base):
    """One competitor listing observed during a scrape pass (volatile staging)."""

    __tablename__ = "scraped_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("competitor_id", "url", name="uq_scraped_listing_competitor_url"),
    )


class MatchCandidate(Base):
    """A scored, not-yet-confirmed pairing of an owned item and a scraped listing.

    Listing fields are snapshotted so candidates survive a wipe of the staging table.
    """

    __tablename__ = "match_candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False
    )
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    owned_item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("owned_items.id", ondelete="CASCADE"), nullable=False
    )
    listing_url: Mapped[str] = mapped_column(Text, nullable=False)
    listing_name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)  # 0-100
    state: Mapped[str] = mapped_column(
        String(20), default=MatchState.CANDIDATE.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    owned_item: Mapped["OwnedItem"] = relationship("OwnedItem")

    __table_args__ = (
        Index("ix_match_candidates_store_competitor", "store_id", "competitor_id"),
        Index("ix_match_candidates_owned_item", "owned_item_id"),
    )


class ConfirmedMatch(Base):
    """Durable, user-approved link used for ongoing price tracking."""

    __tablename__ = "confirmed_matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owned_item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("owned_items.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False
    )
    listing_url: Mapped[str] = mapped_column(Text, nullable=False)
    listing_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(
        String(20), default=MatchSource.DISCOVERY.value, nullable=False
    )
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    confirmed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Price tracking
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    price_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    no_change_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    owned_item: Mapped["OwnedItem"] = relationship("OwnedItem", back_populates="confirmed_matches")
    competitor: Mapped["Competitor"] = relationship("Competitor", back_populates="confirmed_matches")

    __table_args__ = (
        UniqueConstraint("owned_item_id", "competitor_id", name="uq_confirmed_match_item_competitor"),
    )
