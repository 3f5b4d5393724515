"""
SQLAlchemy ORM models for persistent storage.

The canonical store holds one CollectableDB row per real-world item.
Identity keys (provider ids, ISBN/UPC) are mirrored into
collectable_identifiers so uniqueness is enforced by the database, not by
a scan of JSON documents.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CollectableDB(Base):
    """
    A canonical catalog record.

    Mutated only additively by the upsert engine; never deleted by the
    pipeline. `fingerprint` is written once, on insert.
    """

    __tablename__ = "collectables"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), index=True)
    title: Mapped[str] = mapped_column(String(500), index=True)
    subtitle: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    primary_creator: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    publisher: Mapped[str | None] = mapped_column(String(255), nullable=True)
    year: Mapped[str | None] = mapped_column(String(16), nullable=True)
    platform: Mapped[str | None] = mapped_column(String(120), nullable=True)
    region: Mapped[str | None] = mapped_column(String(120), nullable=True)

    # Multi-valued and provider-shaped data stored as JSON
    creators: Mapped[list[str]] = mapped_column(JSON, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    genre: Mapped[list[str]] = mapped_column(JSON, default=list)
    identifiers: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    images: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    physical: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    editions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    sources: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    extras: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    fingerprint: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    lightweight_fingerprint: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    fuzzy_fingerprints: Mapped[list["FuzzyFingerprintDB"]] = relationship(
        back_populates="collectable", cascade="all, delete-orphan", lazy="selectin"
    )

    def to_dict(self) -> dict[str, Any]:
        """Canonical JSON shape of the stored record."""
        return {
            "id": self.id,
            "kind": self.kind,
            "type": self.kind,
            "title": self.title,
            "subtitle": self.subtitle,
            "description": self.description,
            "primaryCreator": self.primary_creator,
            "creators": list(self.creators or []),
            "publisher": self.publisher,
            "year": self.year,
            "platform": self.platform,
            "region": self.region,
            "tags": list(self.tags or []),
            "genre": list(self.genre or []),
            "identifiers": self.identifiers or {},
            "images": list(self.images or []),
            "physical": self.physical or {},
            "editions": list(self.editions or []),
            "sources": list(self.sources or []),
            "extras": self.extras or {},
            "fingerprint": self.fingerprint,
            "lightweightFingerprint": self.lightweight_fingerprint,
            "fuzzyFingerprints": [fp.to_dict() for fp in self.fuzzy_fingerprints],
        }

    def __repr__(self) -> str:
        return f"<CollectableDB(id={self.id}, kind={self.kind}, title={self.title})>"


class CollectableIdentifierDB(Base):
    """
    Identity key owned by a collectable.

    One row per (namespace, value), e.g. ("isbn13", "9780441013593").
    """

    __tablename__ = "collectable_identifiers"
    __table_args__ = (UniqueConstraint("namespace", "value", name="uq_identifier_namespace_value"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collectable_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("collectables.id", ondelete="CASCADE"), index=True
    )
    namespace: Mapped[str] = mapped_column(String(64))
    value: Mapped[str] = mapped_column(String(255))

    def __repr__(self) -> str:
        return f"<CollectableIdentifierDB({self.namespace}={self.value})>"


class FuzzyFingerprintDB(Base):
    """
    An OCR-tolerant fingerprint learned for a collectable.

    Recorded when a high-confidence AI correction maps a misread title onto
    a stored record.
    """

    __tablename__ = "fuzzy_fingerprints"
    __table_args__ = (
        UniqueConstraint("collectable_id", "value", name="uq_fuzzy_fingerprint_value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collectable_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("collectables.id", ondelete="CASCADE"), index=True
    )
    value: Mapped[str] = mapped_column(String(64), index=True)
    source: Mapped[str] = mapped_column(String(64))
    raw_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    raw_creator: Mapped[str | None] = mapped_column(String(255), nullable=True)
    media_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    collectable: Mapped["CollectableDB"] = relationship(back_populates="fuzzy_fingerprints")

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "source": self.source,
            "rawTitle": self.raw_title,
            "rawCreator": self.raw_creator,
            "mediaType": self.media_type,
            "confidence": self.confidence,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<FuzzyFingerprintDB(collectable={self.collectable_id}, value={self.value})>"


class ManualEntryDB(Base):
    """
    An item no resolution stage could identify.

    Stores the extracted fields as read; always flagged for review.
    """

    __tablename__ = "manual_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    shelf_id: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str] = mapped_column(String(500))
    type: Mapped[str] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(Text, default="")
    author: Mapped[str] = mapped_column(String(255), default="")
    publisher: Mapped[str] = mapped_column(String(255), default="")
    format: Mapped[str] = mapped_column(String(120), default="")
    year: Mapped[str] = mapped_column(String(16), default="")
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=True)
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<ManualEntryDB(id={self.id}, name={self.name})>"


class UserCollectionDB(Base):
    """
    A collectable or manual entry placed on a user's shelf.

    Exactly one of collectable_id / manual_id is set.
    """

    __tablename__ = "user_collections"
    __table_args__ = (
        UniqueConstraint("user_id", "shelf_id", "collectable_id", name="uq_user_shelf_collectable"),
        CheckConstraint(
            "(collectable_id IS NULL) <> (manual_id IS NULL)",
            name="ck_user_collection_target",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    shelf_id: Mapped[str] = mapped_column(String(255), index=True)
    collectable_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("collectables.id", ondelete="CASCADE"), nullable=True
    )
    manual_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("manual_entries.id", ondelete="CASCADE"), nullable=True
    )

    # Per-user metadata
    position: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    format: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        if self.collectable_id:
            target = f"collectable={self.collectable_id}"
        else:
            target = f"manual={self.manual_id}"
        return f"<UserCollectionDB(user={self.user_id}, shelf={self.shelf_id}, {target})>"
