"""
aggregate.py: Portfolio Aggregate: pure mutation operations on the document.

Every operation takes a Portfolio and returns a NEW, fully revalidated Portfolio
with version + 1 (block operations also return the affected Block). Inputs are
never mutated, so a failed operation leaves nothing half-applied; persistence
and conflict handling live in foliosync.sync.concurrency.

Rules enforced here:
  1. block type ∈ closed set, content matches that type's schema
  2. block ids unique within the portfolio
  3. reorder never drops blocks missing from the supplied id list
  4. layout/theme/seo merges keep keys the caller did not mention
  5. published ⇔ publishing.publishedAt set; unpublish clears both
  6. password-protected publish requires a password of minimum length

View and share counters are NOT handled here: they are store-level atomic
increments (store.increment_view / store.increment_share) outside the version.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

import bcrypt
from pydantic import ValidationError as PydanticValidationError

from foliosync.config import settings
from foliosync.errors import DomainError, NotFoundError, ValidationError
from foliosync.portfolio.blocks import Block, build_block, camelize_keys, merge_block, new_block_id
from foliosync.portfolio.schemas import (
    CONFIG_FIELDS,
    Layout,
    Portfolio,
    PortfolioStatus,
    PublicPortfolio,
    Publishing,
    Seo,
    Theme,
    utcnow,
)

logger = logging.getLogger(__name__)

_CONFIG_MODELS = {"layout": Layout, "theme": Theme, "seo": Seo}

# bcrypt only looks at the first 72 bytes; longer passwords are rejected at publish
BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _evolve(portfolio: Portfolio, **changes: Any) -> Portfolio:
    """Copy with `changes` applied, version + 1, and every invariant rechecked."""
    data = dict(portfolio)
    data.update(changes)
    data["version"] = portfolio.version + 1
    data["updated_at"] = utcnow()
    try:
        return Portfolio.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "Portfolio update rejected") from exc


def _renumber(blocks: Iterable[Block]) -> list[Block]:
    return [b.model_copy(update={"order": i}) for i, b in enumerate(blocks)]


def _require_block(portfolio: Portfolio, block_id: str) -> Block:
    block = portfolio.find_block(block_id)
    if block is None:
        raise NotFoundError(f"Block '{block_id}' not found")
    return block


def hash_password(password: str) -> str:
    """bcrypt hash (salt embedded) stored in publishing.password."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def verify_password(password: str, encoded: Optional[str]) -> bool:
    if not encoded:
        return False
    candidate = password.encode("utf-8")
    if len(candidate) > BCRYPT_MAX_BYTES:
        return False
    try:
        return bcrypt.checkpw(candidate, encoded.encode("ascii"))
    except ValueError:
        logger.warning("Malformed password hash encountered")
        return False


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def create(owner_id: str, username: str = "", portfolio_id: Optional[str] = None) -> Portfolio:
    """New draft portfolio: version 1, no blocks, default layout/theme/seo."""
    return Portfolio(
        id=portfolio_id or str(uuid.uuid4()),
        owner_id=owner_id,
        username=username.lower(),
    )


def clone(source: Portfolio, owner_id: str, username: str = "") -> Portfolio:
    """
    Start a new document from `source`: fresh portfolio id and block ids,
    draft status, zeroed stats, version reset to 1.
    """
    blocks = [
        b.model_copy(update={"id": new_block_id()})
        for b in source.display_order()
    ]
    return Portfolio(
        id=str(uuid.uuid4()),
        owner_id=owner_id,
        username=username.lower(),
        blocks=_renumber(blocks),
        layout=source.layout,
        theme=source.theme,
        seo=source.seo,
    )


# ---------------------------------------------------------------------------
# Block operations
# ---------------------------------------------------------------------------

def add_block(
    portfolio: Portfolio,
    block_input: dict[str, Any],
    position: Optional[int] = None,
) -> tuple[Portfolio, Block]:
    """
    Validate and insert a block at `position` (0..len) or append when the
    position is absent or out of range. `order` is renumbered to the display index.
    """
    block = build_block(
        block_input.get("type"),
        block_input.get("content"),
        visible=block_input.get("visible", True),
        settings=block_input.get("settings"),
    )
    ordered = portfolio.display_order()
    if position is not None and 0 <= position <= len(ordered):
        ordered.insert(position, block)
    else:
        ordered.append(block)
    blocks = _renumber(ordered)
    updated = _evolve(portfolio, blocks=blocks)
    return updated, updated.find_block(block.id)


def update_block(
    portfolio: Portfolio,
    block_id: str,
    patch: dict[str, Any],
) -> tuple[Portfolio, Block]:
    """Merge `content` keys, set `visible`, merge `settings` on one block."""
    current = _require_block(portfolio, block_id)
    content = patch.get("content")
    visible = patch.get("visible")
    block_settings = patch.get("settings")
    if content is None and visible is None and block_settings is None:
        raise ValidationError(
            "Nothing to update",
            [{"field": None, "issue": "provide content, visible or settings"}],
        )
    merged = merge_block(current, content=content, visible=visible, settings=block_settings)
    blocks = [merged if b.id == block_id else b for b in portfolio.blocks]
    updated = _evolve(portfolio, blocks=blocks)
    return updated, merged


def delete_block(portfolio: Portfolio, block_id: str) -> tuple[Portfolio, Block]:
    """Remove a block. Deleting an id that is already gone is a NotFoundError."""
    removed = _require_block(portfolio, block_id)
    blocks = [b for b in portfolio.blocks if b.id != block_id]
    return _evolve(portfolio, blocks=blocks), removed


def reorder_blocks(portfolio: Portfolio, ordered_ids: list[str]) -> Portfolio:
    """
    order = index for each id in `ordered_ids`; blocks the caller left out
    follow in their current relative order. Applying the same list twice
    yields the same arrangement.
    """
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ValidationError(
            "Duplicate block ids in reorder request",
            [{"field": "blockIds", "issue": "each id may appear once"}],
        )
    by_id = {b.id: b for b in portfolio.blocks}
    unknown = [i for i in ordered_ids if i not in by_id]
    if unknown:
        raise ValidationError(
            "Unknown block ids in reorder request",
            [{"field": "blockIds", "issue": f"not in this portfolio: {', '.join(unknown)}"}],
        )

    supplied = [by_id[i] for i in ordered_ids]
    wanted = set(ordered_ids)
    rest = [b for b in portfolio.display_order() if b.id not in wanted]
    return _evolve(portfolio, blocks=_renumber(supplied + rest))


# ---------------------------------------------------------------------------
# Config & whole-document operations
# ---------------------------------------------------------------------------

def _merged_config(portfolio: Portfolio, field: str, patch: dict[str, Any]):
    if field not in CONFIG_FIELDS:
        raise ValidationError(
            f"Unknown config field '{field}'",
            [{"field": "field", "issue": f"must be one of: {', '.join(CONFIG_FIELDS)}"}],
        )
    model = _CONFIG_MODELS[field]
    merged = {**getattr(portfolio, field).model_dump(by_alias=True), **camelize_keys(patch)}
    try:
        return model.model_validate(merged)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, f"Invalid {field} update") from exc


def merge_config(portfolio: Portfolio, field: str, patch: dict[str, Any]) -> Portfolio:
    """Shallow-merge `patch` into layout, theme or seo. Bumps version like every mutation."""
    if not patch:
        raise ValidationError(
            "Nothing to update",
            [{"field": field, "issue": "patch must not be empty"}],
        )
    return _evolve(portfolio, **{field: _merged_config(portfolio, field, patch)})


def replace_content(
    portfolio: Portfolio,
    blocks: Optional[list[dict[str, Any]]] = None,
    layout: Optional[dict[str, Any]] = None,
    theme: Optional[dict[str, Any]] = None,
    seo: Optional[dict[str, Any]] = None,
    custom_domain: Optional[str] = None,
) -> Portfolio:
    """
    Full/partial document update: `blocks` replaces the block list wholesale,
    configs merge, custom_domain lands in publishing. One version bump total.
    """
    if all(v is None for v in (blocks, layout, theme, seo, custom_domain)):
        raise ValidationError(
            "Nothing to update",
            [{"field": None, "issue": "provide blocks, layout, theme, seo or custom_domain"}],
        )
    changes: dict[str, Any] = {}

    if blocks is not None:
        new_blocks: list[Block] = []
        for index, raw in enumerate(blocks):
            if not isinstance(raw, dict):
                raise ValidationError(
                    "Each block must be an object",
                    [{"field": f"blocks.{index}", "issue": "expected a JSON object"}],
                )
            existing = portfolio.find_block(raw["id"]) if raw.get("id") else None
            if existing is not None and existing.type != raw.get("type"):
                raise ValidationError(
                    f"Block '{existing.id}' type cannot change",
                    [{"field": f"blocks.{index}.type", "issue": "block type is immutable"}],
                )
            new_blocks.append(build_block(
                raw.get("type"),
                raw.get("content"),
                block_id=raw.get("id"),
                order=raw.get("order", index),
                visible=raw.get("visible", True),
                settings=raw.get("settings"),
            ))
        changes["blocks"] = new_blocks

    for field, patch in (("layout", layout), ("theme", theme), ("seo", seo)):
        if patch is not None:
            changes[field] = _merged_config(portfolio, field, patch)

    if custom_domain is not None:
        changes["publishing"] = portfolio.publishing.model_copy(
            update={"custom_domain": custom_domain}
        )

    return _evolve(portfolio, **changes)


# ---------------------------------------------------------------------------
# Publishing lifecycle
# ---------------------------------------------------------------------------

def publish(
    portfolio: Portfolio,
    custom_domain: Optional[str] = None,
    is_indexable: Optional[bool] = None,
    password_protected: bool = False,
    password: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Portfolio:
    """status=published and publishedAt stamped together; re-publishing refreshes the options."""
    if portfolio.status == PortfolioStatus.archived:
        raise DomainError("Archived portfolios cannot be published")

    min_length = settings.publish_password_min_length
    if password_protected and (not password or len(password) < min_length):
        raise ValidationError(
            "Password too short",
            [{
                "field": "password",
                "issue": f"password-protected portfolios need a password of at least {min_length} characters",
            }],
        )
    if password_protected and len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValidationError(
            "Password too long",
            [{"field": "password", "issue": f"at most {BCRYPT_MAX_BYTES} bytes"}],
        )

    current = portfolio.publishing
    publishing = Publishing(
        published_at=now or utcnow(),
        custom_domain=current.custom_domain if custom_domain is None else custom_domain,
        is_indexable=current.is_indexable if is_indexable is None else is_indexable,
        password_protected=password_protected,
        password=hash_password(password) if password_protected else None,
    )
    return _evolve(portfolio, status=PortfolioStatus.published, publishing=publishing)


def unpublish(portfolio: Portfolio) -> Portfolio:
    """Back to draft; every publishing field is cleared in the same write."""
    if portfolio.status != PortfolioStatus.published:
        raise DomainError("Portfolio is not currently published")
    return _evolve(portfolio, status=PortfolioStatus.draft, publishing=Publishing())


def archive(portfolio: Portfolio) -> Portfolio:
    if portfolio.status == PortfolioStatus.archived:
        raise DomainError("Portfolio is already archived")
    return _evolve(portfolio, status=PortfolioStatus.archived, publishing=Publishing())


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------

def public_view(portfolio: Portfolio) -> PublicPortfolio:
    """Visible blocks in display order; password hash and stats never leave the server."""
    if portfolio.status != PortfolioStatus.published:
        raise NotFoundError("Portfolio not found or not published")
    return PublicPortfolio(
        id=portfolio.id,
        username=portfolio.username,
        blocks=[b for b in portfolio.display_order() if b.visible],
        layout=portfolio.layout,
        theme=portfolio.theme,
        seo=portfolio.seo,
        published_at=portfolio.publishing.published_at,
        custom_domain=portfolio.publishing.custom_domain,
        is_indexable=portfolio.publishing.is_indexable,
    )


__all__ = [
    "create",
    "clone",
    "add_block",
    "update_block",
    "delete_block",
    "reorder_blocks",
    "merge_config",
    "replace_content",
    "publish",
    "unpublish",
    "archive",
    "public_view",
    "hash_password",
    "verify_password",
]
