"""
Portfolio HTTP routes: the API Surface for the document.

Owner endpoints (identity from the gateway headers, see identity.py):
  GET    /api/portfolio                       → current document (created on first access)
  PUT    /api/portfolio  | POST               → full/partial update
  POST   /api/portfolio/blocks                → add block (201)
  PUT    /api/portfolio/blocks/reorder        → reorder
  PUT    /api/portfolio/blocks/{block_id}     → update block
  DELETE /api/portfolio/blocks/{block_id}     → delete block (?version=)
  PATCH  /api/portfolio/config/{field}        → merge layout | theme | seo
  POST   /api/portfolio/publish | unpublish | archive
  POST   /api/portfolio/clone                 → start from a published portfolio (201)
  GET    /api/portfolio/analytics             → stats
  DELETE /api/portfolio                       → account-deletion cascade

Public endpoints:
  GET    /api/portfolio/public/{username}          → public projection, counts a view
  POST   /api/portfolio/public/{username}/share    → counts a share

Every write: validate body → commit_mutation (optimistic concurrency, CAS,
commit) → publish a ChangeEvent → return {portfolio, version}. Errors are
FolioError subclasses mapped to 400/404/409/500 by main.py.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from foliosync.cache import mark_viewer
from foliosync.database import get_db
from foliosync.errors import DomainError, NotFoundError
from foliosync.identity import Identity, get_identity
from foliosync.portfolio import aggregate
from foliosync.portfolio.schemas import (
    AddBlockRequest,
    CloneRequest,
    ConfigField,
    ConfigPatchRequest,
    PortfolioStatus,
    PortfolioUpdateRequest,
    PublishRequest,
    ReorderRequest,
    UpdateBlockRequest,
    VersionedRequest,
)
from foliosync.store import (
    delete_portfolio,
    get_or_create_portfolio,
    get_portfolio,
    get_portfolio_by_id,
    get_published_by_username,
    increment_share,
    increment_view,
    insert_portfolio,
)
from foliosync.sync.broadcaster import EventKind, make_event, publish_safely
from foliosync.sync.concurrency import CommitResult, Mutation, commit_mutation

router = APIRouter(prefix="/api/portfolio", tags=["portfolio"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _document_response(commit: CommitResult, status_code: int = 200, **extra: Any) -> JSONResponse:
    content = {
        "portfolio": commit.portfolio.owner_view(),
        "version": commit.version,
        **extra,
    }
    return JSONResponse(status_code=status_code, content=content)


async def _commit_and_broadcast(
    request: Request,
    db: AsyncSession,
    identity: Identity,
    mutate: Mutation,
    expected_version: Optional[int],
    kind: EventKind,
    payload_of,
) -> CommitResult:
    """Lazily create → commit under optimistic concurrency → broadcast the change."""
    await get_or_create_portfolio(db, identity.owner_id, identity.username)
    commit = await commit_mutation(db, identity.owner_id, mutate, expected_version)
    event = make_event(commit.portfolio.id, kind, commit.version, payload_of(commit))
    await publish_safely(getattr(request.app.state, "broadcaster", None), event)
    return commit


def _portfolio_payload(commit: CommitResult) -> dict[str, Any]:
    return {"portfolio": commit.portfolio.owner_view()}


def _viewer_fingerprint(request: Request) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{host}|{request.headers.get('user-agent', '')}"


# ---------------------------------------------------------------------------
# Document endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def read_portfolio(
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Return the caller's portfolio, creating the default document on first access."""
    portfolio = await get_or_create_portfolio(db, identity.owner_id, identity.username)
    return JSONResponse(
        status_code=200,
        content={"portfolio": portfolio.owner_view(), "version": portfolio.version},
    )


@router.put("")
@router.post("")
async def update_portfolio(
    body: PortfolioUpdateRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Full or partial update. `blocks` replaces the whole list; layout/theme/seo
    merge key by key. Omit `version` for best-effort mode.
    """
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.replace_content(
            p,
            blocks=body.blocks,
            layout=body.layout,
            theme=body.theme,
            seo=body.seo,
            custom_domain=body.custom_domain,
        ),
        body.version,
        EventKind.portfolio_updated,
        _portfolio_payload,
    )
    return _document_response(commit)


@router.patch("/config/{field}")
async def patch_config(
    field: ConfigField,
    body: ConfigPatchRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Merge keys into layout, theme or seo without touching unmentioned ones."""
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.merge_config(p, field, body.values),
        body.version,
        EventKind.portfolio_updated,
        lambda c: {"field": field, field: _dump(getattr(c.portfolio, field))},
    )
    return _document_response(commit)


# ---------------------------------------------------------------------------
# Block endpoints: reorder is declared before /blocks/{block_id}
# ---------------------------------------------------------------------------

@router.post("/blocks")
async def add_block(
    body: AddBlockRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    block_input = {
        "type": body.type,
        "content": body.content,
        "visible": body.visible,
        "settings": body.settings,
    }
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.add_block(p, block_input, body.position),
        body.version,
        EventKind.block_added,
        lambda c: {"block": _dump(c.result)},
    )
    logger.info("Block added portfolio_id=%s block_id=%s", commit.portfolio.id, commit.result.id)
    return _document_response(commit, status_code=201, block=_dump(commit.result))


@router.put("/blocks/reorder")
async def reorder_blocks(
    body: ReorderRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.reorder_blocks(p, body.block_ids),
        body.version,
        EventKind.blocks_reordered,
        lambda c: {"blockIds": [b.id for b in c.portfolio.display_order()]},
    )
    return _document_response(commit)


@router.put("/blocks/{block_id}")
async def update_block(
    block_id: str,
    body: UpdateBlockRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    patch = body.model_dump(include={"content", "visible", "settings"}, exclude_none=True)
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.update_block(p, block_id, patch),
        body.version,
        EventKind.block_updated,
        lambda c: {"block": _dump(c.result)},
    )
    return _document_response(commit, block=_dump(commit.result))


@router.delete("/blocks/{block_id}")
async def delete_block(
    block_id: str,
    request: Request,
    version: Optional[int] = Query(default=None, ge=1),
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.delete_block(p, block_id),
        version,
        EventKind.block_deleted,
        lambda c: {"blockId": block_id},
    )
    return _document_response(commit, blockId=block_id)


# ---------------------------------------------------------------------------
# Publishing lifecycle
# ---------------------------------------------------------------------------

@router.post("/publish")
async def publish_portfolio(
    body: PublishRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    commit = await _commit_and_broadcast(
        request, db, identity,
        lambda p: aggregate.publish(
            p,
            custom_domain=body.custom_domain,
            is_indexable=body.is_indexable,
            password_protected=body.password_protected,
            password=body.password,
        ),
        body.version,
        EventKind.portfolio_published,
        _portfolio_payload,
    )
    logger.info("Portfolio published portfolio_id=%s version=%d", commit.portfolio.id, commit.version)
    return _document_response(commit)


@router.post("/unpublish")
async def unpublish_portfolio(
    request: Request,
    body: Optional[VersionedRequest] = None,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    commit = await _commit_and_broadcast(
        request, db, identity,
        aggregate.unpublish,
        body.version if body else None,
        EventKind.portfolio_unpublished,
        _portfolio_payload,
    )
    return _document_response(commit)


@router.post("/archive")
async def archive_portfolio(
    request: Request,
    body: Optional[VersionedRequest] = None,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    commit = await _commit_and_broadcast(
        request, db, identity,
        aggregate.archive,
        body.version if body else None,
        EventKind.portfolio_archived,
        _portfolio_payload,
    )
    return _document_response(commit)


# ---------------------------------------------------------------------------
# Clone, analytics, account deletion
# ---------------------------------------------------------------------------

@router.post("/clone")
async def clone_portfolio(
    body: CloneRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """
    Start the caller's portfolio from a published one (or one of their own).
    Only allowed while the caller has nothing worth keeping: no portfolio, or
    the untouched default one (version 1, no blocks). Sessions open on the
    replaced default get a portfolio-replaced event carrying the new document.
    """
    source = await get_portfolio_by_id(db, body.portfolio_id)
    if source is None or (
        source.status != PortfolioStatus.published and source.owner_id != identity.owner_id
    ):
        raise NotFoundError(f"Portfolio '{body.portfolio_id}' not found")

    existing = await get_portfolio(db, identity.owner_id)
    if existing is not None:
        if existing.blocks or existing.version > 1:
            raise DomainError("You already have a portfolio; clear it before cloning")
        await delete_portfolio(db, identity.owner_id)

    cloned = aggregate.clone(source, identity.owner_id, identity.username or (existing.username if existing else ""))
    if not await insert_portfolio(db, cloned):
        raise DomainError("Portfolio was created concurrently; reload and try again")
    logger.info("Cloned portfolio source_id=%s new_id=%s", source.id, cloned.id)

    if existing is not None:
        event = make_event(
            existing.id,
            EventKind.portfolio_replaced,
            cloned.version,
            {"portfolioId": cloned.id, "portfolio": cloned.owner_view()},
        )
        await publish_safely(getattr(request.app.state, "broadcaster", None), event)
    return JSONResponse(
        status_code=201,
        content={"portfolio": cloned.owner_view(), "version": cloned.version},
    )


@router.get("/analytics")
async def portfolio_analytics(
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    portfolio = await get_portfolio(db, identity.owner_id)
    if portfolio is None:
        raise NotFoundError("Portfolio not found")
    return JSONResponse(status_code=200, content={"stats": _dump(portfolio.stats)})


@router.delete("")
async def delete_account_portfolio(
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Account-deletion cascade: the only hard delete of a portfolio."""
    if not await delete_portfolio(db, identity.owner_id):
        raise NotFoundError("Portfolio not found")
    return JSONResponse(status_code=200, content={"deleted": True})


# ---------------------------------------------------------------------------
# Public endpoints (no identity)
# ---------------------------------------------------------------------------

@router.get("/public/{username}")
async def read_public_portfolio(
    username: str,
    request: Request,
    x_portfolio_password: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Published, public-safe projection. Counts a view (unique per viewer per day)."""
    portfolio = await get_published_by_username(db, username)
    if portfolio is None:
        raise NotFoundError("Portfolio not found or not published")

    if portfolio.publishing.password_protected and not aggregate.verify_password(
        x_portfolio_password or "", portfolio.publishing.password
    ):
        raise HTTPException(status_code=401, detail="This portfolio is password protected")

    is_unique = await mark_viewer(
        getattr(request.app.state, "redis", None),
        portfolio.id,
        _viewer_fingerprint(request),
    )
    await increment_view(db, portfolio.id, is_unique)
    return JSONResponse(status_code=200, content={"portfolio": _dump(aggregate.public_view(portfolio))})


@router.post("/public/{username}/share")
async def share_public_portfolio(
    username: str,
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    portfolio = await get_published_by_username(db, username)
    if portfolio is None:
        raise NotFoundError("Portfolio not found or not published")
    await increment_share(db, portfolio.id)
    return JSONResponse(status_code=200, content={"shared": True})
