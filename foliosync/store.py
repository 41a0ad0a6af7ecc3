"""
store.py: Document Store Adapter for FolioSync.

Provides load/save-by-owner and the atomic primitives the concurrency
controller and the public endpoints rely on. All routes go through these
functions (directly or via foliosync.sync.concurrency): nothing else touches
SQLAlchemy.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - No raw SQL: ORM-only queries
  - Document writes are compare-and-swap on `version`:
        UPDATE portfolios SET ... WHERE id = :id AND version = :expected
    so at most one writer commits per version transition
  - Stats are bumped with `col = col + 1` and never written with the document
  - Logs only portfolio_id / owner_id / versions: never block content or passwords
  - Returns domain Pydantic objects (not ORM instances) so callers are persistence-agnostic
  - SQLAlchemy failures surface as StoreError
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from foliosync.errors import DomainError, StoreError
from foliosync.models.portfolio import PortfolioORM
from foliosync.portfolio.aggregate import create
from foliosync.portfolio.schemas import Portfolio, PortfolioStatus

logger = logging.getLogger(__name__)

# Document keys persisted in the JSON blob (everything except id/owner/status/version/stats)
_DOCUMENT_KEYS = ("blocks", "layout", "theme", "seo", "publishing", "createdAt", "updatedAt")


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything in the domain is UTC-aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _document_of(portfolio: Portfolio) -> dict:
    data = portfolio.model_dump(mode="json", by_alias=True)
    return {key: data[key] for key in _DOCUMENT_KEYS}


def _to_domain(orm: PortfolioORM) -> Portfolio:
    return Portfolio.model_validate({
        **orm.document,
        "id": orm.id,
        "owner_id": orm.owner_id,
        "username": orm.username,
        "status": orm.status,
        "version": orm.version,
        "stats": {
            "views": orm.views,
            "unique_views": orm.unique_views,
            "shares": orm.shares,
            "last_viewed": _aware(orm.last_viewed),
        },
    })


async def _fetch_one(db: AsyncSession, stmt) -> Optional[PortfolioORM]:
    # populate_existing: a retry after a lost CAS must see the winner's row,
    # not the copy already sitting in this session's identity map
    try:
        result = await db.execute(stmt.execution_options(populate_existing=True))
    except SQLAlchemyError as exc:
        logger.error("Portfolio load failed: %s", exc)
        raise StoreError("Failed to load portfolio") from exc
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_portfolio(
    db: AsyncSession,
    owner_id: str,
) -> Optional[Portfolio]:
    """
    Retrieve the owner's portfolio.
    Returns None if the owner has none yet (caller creates or raises 404).
    """
    orm = await _fetch_one(db, select(PortfolioORM).where(PortfolioORM.owner_id == owner_id))
    return _to_domain(orm) if orm is not None else None


async def get_portfolio_by_id(
    db: AsyncSession,
    portfolio_id: str,
) -> Optional[Portfolio]:
    orm = await _fetch_one(db, select(PortfolioORM).where(PortfolioORM.id == portfolio_id))
    return _to_domain(orm) if orm is not None else None


async def get_published_by_username(
    db: AsyncSession,
    username: str,
) -> Optional[Portfolio]:
    """Published portfolio for a public handle (case-insensitive); None otherwise."""
    orm = await _fetch_one(
        db,
        select(PortfolioORM).where(
            PortfolioORM.username == username.lower(),
            PortfolioORM.status == PortfolioStatus.published.value,
        ),
    )
    return _to_domain(orm) if orm is not None else None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def insert_portfolio(
    db: AsyncSession,
    portfolio: Portfolio,
) -> bool:
    """
    Persist a brand-new portfolio and commit.

    Returns False (after rolling back) when the owner already has one,
    e.g. two tabs lazily creating the same portfolio at once.
    """
    orm = PortfolioORM(
        id=portfolio.id,
        owner_id=portfolio.owner_id,
        username=portfolio.username,
        status=portfolio.status.value,
        version=portfolio.version,
        document=_document_of(portfolio),
    )
    db.add(orm)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Portfolio already exists owner_id=%s", portfolio.owner_id)
        return False
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Portfolio insert failed owner_id=%s: %s", portfolio.owner_id, exc)
        raise StoreError("Failed to create portfolio") from exc
    logger.info("Created portfolio portfolio_id=%s owner_id=%s", portfolio.id, portfolio.owner_id)
    return True


async def get_or_create_portfolio(
    db: AsyncSession,
    owner_id: str,
    username: str = "",
) -> Portfolio:
    """
    Load the owner's portfolio, creating the default document on first access.
    A concurrent creator winning the insert race is fine: we re-read theirs.
    """
    existing = await get_portfolio(db, owner_id)
    if existing is not None:
        return existing
    fresh = create(owner_id, username)
    if await insert_portfolio(db, fresh):
        return fresh
    winner = await get_portfolio(db, owner_id)
    if winner is None:
        raise StoreError("Portfolio vanished during creation")
    return winner


async def compare_and_swap(
    db: AsyncSession,
    portfolio: Portfolio,
    expected_version: int,
) -> bool:
    """
    Write the document only if the stored version still equals expected_version.

    Returns True when exactly one row was updated. Does not commit: the
    concurrency controller commits so it can broadcast afterwards.
    Raises DomainError when the write would publish a second portfolio
    under the same username.
    """
    stmt = (
        update(PortfolioORM)
        .where(
            PortfolioORM.id == portfolio.id,
            PortfolioORM.version == expected_version,
        )
        .values(
            document=_document_of(portfolio),
            version=portfolio.version,
            status=portfolio.status.value,
            username=portfolio.username,
            updated_at=portfolio.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
    except IntegrityError as exc:
        # Only the published-username index can fail here
        logger.info(
            "Username taken portfolio_id=%s username=%s", portfolio.id, portfolio.username,
        )
        raise DomainError(
            f"Username '{portfolio.username}' already has a published portfolio"
        ) from exc
    except SQLAlchemyError as exc:
        logger.error(
            "CAS write failed portfolio_id=%s expected_version=%d: %s",
            portfolio.id, expected_version, exc,
        )
        raise StoreError("Failed to save portfolio") from exc
    swapped = result.rowcount == 1
    logger.debug(
        "CAS portfolio_id=%s expected_version=%d new_version=%d swapped=%s",
        portfolio.id, expected_version, portfolio.version, swapped,
    )
    return swapped


async def increment_view(
    db: AsyncSession,
    portfolio_id: str,
    is_unique: bool = False,
) -> None:
    """Atomic counter bump. Leaves `version` alone: views are not edits."""
    values = {
        "views": PortfolioORM.views + 1,
        "last_viewed": datetime.now(timezone.utc),
    }
    if is_unique:
        values["unique_views"] = PortfolioORM.unique_views + 1
    await _bump(db, portfolio_id, values)
    logger.info("View recorded portfolio_id=%s unique=%s", portfolio_id, is_unique)


async def increment_share(
    db: AsyncSession,
    portfolio_id: str,
) -> None:
    await _bump(db, portfolio_id, {"shares": PortfolioORM.shares + 1})
    logger.info("Share recorded portfolio_id=%s", portfolio_id)


async def _bump(db: AsyncSession, portfolio_id: str, values: dict) -> None:
    stmt = (
        update(PortfolioORM)
        .where(PortfolioORM.id == portfolio_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        await db.execute(stmt)
        await db.flush()
    except SQLAlchemyError as exc:
        logger.error("Stats update failed portfolio_id=%s: %s", portfolio_id, exc)
        raise StoreError("Failed to update portfolio stats") from exc


async def delete_portfolio(
    db: AsyncSession,
    owner_id: str,
) -> bool:
    """
    Hard delete: only used by the account-deletion cascade.
    Returns False if the owner had no portfolio.
    """
    try:
        result = await db.execute(
            delete(PortfolioORM)
            .where(PortfolioORM.owner_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        await db.flush()
    except SQLAlchemyError as exc:
        logger.error("Portfolio delete failed owner_id=%s: %s", owner_id, exc)
        raise StoreError("Failed to delete portfolio") from exc
    deleted = result.rowcount > 0
    logger.info("Deleted portfolio owner_id=%s deleted=%s", owner_id, deleted)
    return deleted
