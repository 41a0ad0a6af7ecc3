"""
schemas.py: Portfolio document model and HTTP request/response contracts.

Defines:
  - PortfolioStatus enum
  - Layout, Theme, Seo          (independently merge-updatable config structs)
  - Publishing, Stats
  - Portfolio                   (the versioned document: the unit of optimistic concurrency)
  - PublicPortfolio             (public-safe projection: no password, no stats, visible blocks only)
  - *Request models             (API Surface bodies; all accept an optional `version`)

Wire format is camelCase (CamelModel); Python attribute names are snake_case.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional

from pydantic import Field, model_validator

from foliosync.portfolio.blocks import Block, CamelModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PortfolioStatus(str, Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


ConfigField = Literal["layout", "theme", "seo"]
CONFIG_FIELDS: tuple[str, ...] = ("layout", "theme", "seo")


# ---------------------------------------------------------------------------
# Config structs: defaults mirror a freshly created portfolio
# ---------------------------------------------------------------------------

class Layout(CamelModel):
    type: Literal["grid", "masonry", "single-column"] = "grid"
    columns: int = Field(default=2, ge=1, le=4)
    spacing: Literal["compact", "normal", "spacious"] = "normal"


class Theme(CamelModel):
    name: str = "default"
    primary_color: str = "#3b82f6"
    background_color: str = "#ffffff"
    font_family: str = "Inter"
    custom_css: str = Field(default="", max_length=10000)


class Seo(CamelModel):
    title: str = Field(default="", max_length=60)
    description: str = Field(default="", max_length=160)
    keywords: List[Annotated[str, Field(max_length=50)]] = []
    og_image: str = ""


class Publishing(CamelModel):
    published_at: Optional[datetime] = None
    custom_domain: str = ""
    is_indexable: bool = True
    password_protected: bool = False
    password: Optional[str] = None     # bcrypt hash: never the plaintext


class Stats(CamelModel):
    """Counters owned by the store's atomic increments, never by document writes."""
    views: int = 0
    unique_views: int = 0
    last_viewed: Optional[datetime] = None
    shares: int = 0


# ---------------------------------------------------------------------------
# Portfolio: the versioned document
# ---------------------------------------------------------------------------

class Portfolio(CamelModel):
    """
    One per owner. Mutated only through foliosync.portfolio.aggregate, which
    returns a new validated instance with version + 1 for every accepted change.

    blocks keep insertion order; display order is `order` ascending with ties
    broken by insertion order (see display_order()).
    """
    id: str
    owner_id: str
    username: str = ""
    blocks: List[Block] = []
    layout: Layout = Layout()
    theme: Theme = Theme()
    seo: Seo = Seo()
    status: PortfolioStatus = PortfolioStatus.draft
    version: int = Field(default=1, ge=1)
    publishing: Publishing = Publishing()
    stats: Stats = Stats()
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Portfolio":
        seen: set[str] = set()
        for block in self.blocks:
            if block.id in seen:
                raise ValueError(f"Duplicate block id '{block.id}'")
            seen.add(block.id)
        published = self.status == PortfolioStatus.published
        if published != (self.publishing.published_at is not None):
            raise ValueError("status 'published' requires publishing.publishedAt and vice versa")
        return self

    def display_order(self) -> list:
        """Blocks sorted by `order`; sorted() is stable so ties keep insertion order."""
        return sorted(self.blocks, key=lambda b: b.order)

    def find_block(self, block_id: str):
        return next((b for b in self.blocks if b.id == block_id), None)

    def owner_view(self) -> dict[str, Any]:
        """JSON-ready document for the owner's sessions: password hash stripped."""
        data = self.model_dump(mode="json", by_alias=True)
        data["publishing"].pop("password", None)
        return data


class PublicPortfolio(CamelModel):
    """What anonymous visitors of a published page get to see."""
    id: str
    username: str
    blocks: List[Block]
    layout: Layout
    theme: Theme
    seo: Seo
    published_at: Optional[datetime]
    custom_domain: str
    is_indexable: bool


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class VersionedRequest(CamelModel):
    """`version` is the caller's last-known version; omit for best-effort mode."""
    version: Optional[int] = Field(default=None, ge=1)


class AddBlockRequest(VersionedRequest):
    type: str
    content: dict[str, Any]
    position: Optional[int] = None
    visible: bool = True
    settings: dict[str, Any] = {}


class UpdateBlockRequest(VersionedRequest):
    content: Optional[dict[str, Any]] = None
    visible: Optional[bool] = None
    settings: Optional[dict[str, Any]] = None


class ReorderRequest(VersionedRequest):
    block_ids: List[str]


class ConfigPatchRequest(VersionedRequest):
    values: dict[str, Any]


class PublishRequest(VersionedRequest):
    custom_domain: Optional[str] = None
    is_indexable: Optional[bool] = None
    password_protected: bool = False
    password: Optional[str] = None


class PortfolioUpdateRequest(VersionedRequest):
    blocks: Optional[List[dict[str, Any]]] = None
    layout: Optional[dict[str, Any]] = None
    theme: Optional[dict[str, Any]] = None
    seo: Optional[dict[str, Any]] = None
    custom_domain: Optional[str] = None


class CloneRequest(CamelModel):
    portfolio_id: str


__all__ = [
    "PortfolioStatus",
    "ConfigField",
    "CONFIG_FIELDS",
    "Layout",
    "Theme",
    "Seo",
    "Publishing",
    "Stats",
    "Portfolio",
    "PublicPortfolio",
    "VersionedRequest",
    "AddBlockRequest",
    "UpdateBlockRequest",
    "ReorderRequest",
    "ConfigPatchRequest",
    "PublishRequest",
    "PortfolioUpdateRequest",
    "CloneRequest",
    "utcnow",
]
