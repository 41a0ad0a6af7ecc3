"""
concurrency.py: Optimistic-concurrency controller for portfolio writes.

One bounded retry combinator around a pure load → check → apply → CAS cycle:

    result = await commit_mutation(
        db, owner_id,
        lambda p: aggregate.add_block(p, block_input),
        expected_version=body.version,
    )

Protocol per attempt:
  1. Load the stored document.
  2. expected_version given and != stored version → ConflictError carrying the
     stored document (the caller rebases; a caller "ahead" of the server is
     just as stale).
  3. Apply the pure mutation (version + 1).
  4. compare_and_swap on the loaded version, then commit.
  5. CAS miss (a concurrent write landed between 1 and 4) → next attempt.
     With an expected_version, the reload in step 2 turns the miss into a
     ConflictError; in best-effort mode the mutation is re-applied on top of
     the winner's state.
StoreError is retried inside the same budget. Once the budget is spent the
caller gets a ConflictError (CAS misses) or the last StoreError.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from foliosync.config import settings
from foliosync.errors import ConflictError, DomainError, NotFoundError, StoreError
from foliosync.portfolio.schemas import Portfolio
from foliosync.store import compare_and_swap, get_portfolio

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A mutation returns the new document, optionally with an operation result
# (e.g. the block that was added): Portfolio | (Portfolio, result)
Mutation = Callable[[Portfolio], Any]


@dataclass
class CommitResult(Generic[T]):
    """What a committed mutation produced."""
    portfolio: Portfolio
    previous_version: int
    result: Optional[T] = None

    @property
    def version(self) -> int:
        return self.portfolio.version


def _split(outcome: Any) -> tuple[Portfolio, Any]:
    if isinstance(outcome, tuple):
        return outcome[0], outcome[1]
    return outcome, None


async def commit_mutation(
    db: AsyncSession,
    owner_id: str,
    mutate: Mutation,
    expected_version: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> CommitResult:
    """
    Apply `mutate` to the owner's portfolio under optimistic concurrency.

    Raises:
        NotFoundError:  the owner has no portfolio.
        ConflictError:  expected_version is stale, or every attempt lost the CAS race.
        StoreError:     persistence kept failing for the whole retry budget.
        ValidationError / DomainError / NotFoundError from the mutation itself,
            raised before anything is written.
        DomainError:    publishing under a username another portfolio already
            published under (not retried).
    """
    attempts = max_attempts or settings.conflict_retry_attempts
    if expected_version is None:
        logger.info("Best-effort write without expected version owner_id=%s", owner_id)

    last_store_error: Optional[StoreError] = None
    latest: Optional[Portfolio] = None
    lost_races = 0

    for attempt in range(1, attempts + 1):
        try:
            current = await get_portfolio(db, owner_id)
        except StoreError as exc:
            last_store_error = exc
            await db.rollback()
            logger.warning("Load failed owner_id=%s attempt=%d/%d", owner_id, attempt, attempts)
            continue
        if current is None:
            raise NotFoundError("Portfolio not found")
        latest = current

        if expected_version is not None and expected_version != current.version:
            logger.info(
                "Version conflict portfolio_id=%s expected=%d stored=%d",
                current.id, expected_version, current.version,
            )
            raise ConflictError(current)

        updated, result = _split(mutate(current))

        try:
            swapped = await compare_and_swap(db, updated, current.version)
            if swapped:
                await db.commit()
        except DomainError:
            await db.rollback()
            raise
        except (StoreError, SQLAlchemyError) as exc:
            last_store_error = exc if isinstance(exc, StoreError) else StoreError("Failed to commit portfolio")
            await db.rollback()
            logger.warning(
                "Store failure portfolio_id=%s attempted_version=%d attempt=%d/%d",
                current.id, updated.version, attempt, attempts,
            )
            continue

        if swapped:
            logger.info(
                "Committed portfolio_id=%s version %d→%d attempt=%d",
                current.id, current.version, updated.version, attempt,
            )
            return CommitResult(portfolio=updated, previous_version=current.version, result=result)

        lost_races += 1
        await db.rollback()
        logger.info(
            "CAS lost portfolio_id=%s at version=%d attempt=%d/%d",
            current.id, current.version, attempt, attempts,
        )

    if lost_races and latest is not None:
        # Every attempt that reached the CAS lost it; hand back the freshest state
        try:
            latest = await get_portfolio(db, owner_id) or latest
        except StoreError:
            logger.warning("Could not refresh portfolio after lost CAS owner_id=%s", owner_id)
        raise ConflictError(latest, "Portfolio is being modified concurrently; please retry")
    logger.error("Giving up after %d attempts owner_id=%s", attempts, owner_id)
    raise last_store_error or StoreError("Portfolio write did not complete")
