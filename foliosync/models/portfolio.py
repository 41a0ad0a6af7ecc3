"""
models/portfolio.py: SQLAlchemy ORM model for portfolio documents.

Table: portfolios
One row per owner (owner_id unique).

Storage strategy:
  - document:  blocks, layout, theme, seo, publishing and timestamps as one
               JSONB blob: always written whole, under the version CAS.
  - version:   scalar column so compare-and-swap is a plain
               UPDATE ... WHERE id = :id AND version = :expected.
  - stats:     separate integer columns, only touched by atomic
               `col = col + 1` updates, never by document writes, so
               concurrent view counting never contends with editing.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from foliosync.database import Base, JsonDocument

PUBLISHED_USERNAME_PREDICATE = "status = 'published' AND username <> ''"


class PortfolioORM(Base):
    """
    ORM model for a user's portfolio document.

    status and username are denormalized out of the document for the
    public lookup (published portfolio by username).
    """
    __tablename__ = "portfolios"
    __table_args__ = (
        # One published page per public handle; drafts may share a username
        Index(
            "uq_portfolios_published_username",
            "username",
            unique=True,
            postgresql_where=text(PUBLISHED_USERNAME_PREDICATE),
            sqlite_where=text(PUBLISHED_USERNAME_PREDICATE),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Portfolio UUID: also the real-time channel key",
    )
    owner_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        index=True,
        comment="Identity of the owning user, supplied by the auth layer",
    )
    username: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="",
        index=True,
        comment="Lower-cased public handle used by /portfolio/public/{username}",
    )
    status: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="draft",
        index=True,
        comment="'draft', 'published' or 'archived': mirrors PortfolioStatus",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic-concurrency token; +1 per accepted mutation",
    )
    document: Mapped[dict] = mapped_column(
        JsonDocument,
        nullable=False,
        comment="Blocks, layout, theme, seo, publishing: written whole under the version CAS",
    )
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shares: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_viewed: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
