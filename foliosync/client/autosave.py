"""
autosave.py: editor-side autosave session with undo/redo.

Rapid local edits are merged into one pending patch and flushed as
PUT /api/portfolio after `debounce` seconds of inactivity (or on flush()).
Each flush carries the last version the server acknowledged.

    async with httpx.AsyncClient(base_url=API, headers={"X-User-Id": uid}) as http:
        session = await AutosaveSession.open(http, on_conflict=show_conflict_dialog)
        session.edit({"theme": {"primaryColor": "#000"}})
        ...
        await session.close()

Conflicts (409) are never auto-resolved: the server document is kept in
`session.conflict`, local edits stay pending, and flushing stops until the
user picks resolve_discard() or resolve_keep_local().

Undo/redo are local document snapshots. The pending patch is always the
difference between the local document and the last acknowledged one, so an
undo after a flush is itself sent on the next flush.
"""
import asyncio
import copy
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

logger = logging.getLogger(__name__)

PORTFOLIO_PATH = "/api/portfolio"
CONFIG_KEYS = ("layout", "theme", "seo")

DEFAULT_DEBOUNCE = 0.5
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = 0.25


class SaveError(Exception):
    """The server rejected a flush for a reason other than a version conflict."""

    def __init__(self, status_code: int, body: Any) -> None:
        error = body.get("error", {}) if isinstance(body, dict) else {}
        super().__init__(error.get("message") or f"Save failed with HTTP {status_code}")
        self.status_code = status_code
        self.body = body


@dataclass
class Conflict:
    """Authoritative server state returned with a 409."""
    version: int
    portfolio: dict[str, Any]


ConflictHandler = Callable[["AutosaveSession"], Union[None, Awaitable[None]]]


def _custom_domain(document: dict[str, Any]) -> str:
    return (document.get("publishing") or {}).get("customDomain", "")


def diff_documents(local: dict[str, Any], base: dict[str, Any]) -> dict[str, Any]:
    """
    PUT body fields needed to turn `base` into `local`. Blocks are sent
    whole; layout/theme/seo only carry the keys that changed.
    """
    patch: dict[str, Any] = {}
    if local.get("blocks") != base.get("blocks"):
        patch["blocks"] = copy.deepcopy(local.get("blocks", []))
    for key in CONFIG_KEYS:
        base_config = base.get(key) or {}
        changed = {
            k: copy.deepcopy(v)
            for k, v in (local.get(key) or {}).items()
            if k not in base_config or base_config[k] != v
        }
        if changed:
            patch[key] = changed
    if _custom_domain(local) != _custom_domain(base):
        patch["customDomain"] = _custom_domain(local)
    return patch


def apply_patch(document: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """
    Local preview of what the server will do with `patch`: blocks replace,
    layout/theme/seo merge key by key, customDomain lands in publishing.
    """
    updated = copy.deepcopy(document)
    for key, value in patch.items():
        if key == "blocks":
            updated["blocks"] = copy.deepcopy(value)
        elif key in CONFIG_KEYS:
            updated[key] = {**updated.get(key, {}), **copy.deepcopy(value)}
        elif key == "customDomain":
            updated.setdefault("publishing", {})["customDomain"] = value
        else:
            raise ValueError(f"Unsupported patch key '{key}'")
    return updated


class AutosaveSession:
    """One editing session on the caller's portfolio."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        document: dict[str, Any],
        version: int,
        *,
        debounce: float = DEFAULT_DEBOUNCE,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
        on_conflict: Optional[ConflictHandler] = None,
    ) -> None:
        self._client = client
        self.document = copy.deepcopy(document)
        self.version = version
        self.conflict: Optional[Conflict] = None

        self._synced = copy.deepcopy(document)
        self._debounce = debounce
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._on_conflict = on_conflict

        self._undo: deque[dict[str, Any]] = deque(maxlen=history_limit)
        self._redo: deque[dict[str, Any]] = deque(maxlen=history_limit)
        self._timer: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()

    @classmethod
    async def open(cls, client: httpx.AsyncClient, **kwargs: Any) -> "AutosaveSession":
        """Fetch the current document and start a session on it."""
        response = await client.get(PORTFOLIO_PATH)
        if response.status_code != 200:
            raise SaveError(response.status_code, _json_or_none(response))
        body = response.json()
        return cls(client, body["portfolio"], body["version"], **kwargs)

    # ------------------------------------------------------------------
    # Local editing
    # ------------------------------------------------------------------

    @property
    def pending(self) -> dict[str, Any]:
        return diff_documents(self.document, self._synced)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def edit(self, patch: dict[str, Any]) -> None:
        """Apply a local edit and re-arm the debounce timer."""
        updated = apply_patch(self.document, patch)
        if updated == self.document:
            return
        self._undo.append(self.document)
        self._redo.clear()
        self.document = updated
        self._schedule_flush()

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(self.document)
        self.document = self._undo.pop()
        self._schedule_flush()
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self.document)
        self.document = self._redo.pop()
        self._schedule_flush()
        return True

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._flush_after_debounce())

    async def _flush_after_debounce(self) -> None:
        await asyncio.sleep(self._debounce)
        try:
            await self.flush()
        except (SaveError, httpx.TransportError) as exc:
            # Edits stay pending; the next edit or explicit flush retries
            logger.warning("Autosave failed: %s", exc)

    async def flush(self) -> bool:
        """
        Send the pending patch. Returns True when the server accepted it,
        False when there was nothing to send or a conflict is open/was hit.
        """
        async with self._flush_lock:
            if self.conflict is not None:
                logger.debug("Flush skipped: unresolved conflict at version %d", self.conflict.version)
                return False
            patch = self.pending
            if not patch:
                return False

            sent = copy.deepcopy(self.document)
            response = await self._put({**patch, "version": self.version})

            if response.status_code == 409:
                await self._enter_conflict(_json_or_none(response))
                return False
            if response.status_code >= 400:
                raise SaveError(response.status_code, _json_or_none(response))

            body = response.json()
            self._adopt(body["portfolio"], body["version"], sent)
            logger.info("Autosaved version=%d fields=%s", self.version, sorted(patch))
            return True

    async def _put(self, body: dict[str, Any]) -> httpx.Response:
        """PUT with retries on transport errors and 5xx, exponential backoff."""
        last_exc: Optional[httpx.TransportError] = None
        response: Optional[httpx.Response] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._client.put(PORTFOLIO_PATH, json=body)
            except httpx.TransportError as exc:
                last_exc = exc
                logger.warning("Autosave transport error attempt=%d/%d: %s", attempt, self._max_attempts, exc)
            else:
                if response.status_code < 500:
                    return response
                logger.warning("Autosave server error %d attempt=%d/%d", response.status_code, attempt, self._max_attempts)
            if attempt < self._max_attempts:
                await asyncio.sleep(self._backoff * 2 ** (attempt - 1))
        if response is not None:
            return response
        raise last_exc

    def _adopt(self, server_document: dict[str, Any], version: int, sent: dict[str, Any]) -> None:
        """Take the server's document; edits made while the PUT was in flight stay local."""
        in_flight_edits = diff_documents(self.document, sent)
        self._synced = copy.deepcopy(server_document)
        self.version = version
        self.document = apply_patch(server_document, in_flight_edits)

    async def _enter_conflict(self, body: Any) -> None:
        if not isinstance(body, dict) or "currentVersion" not in body or "portfolio" not in body:
            raise SaveError(409, body)
        self.conflict = Conflict(version=body["currentVersion"], portfolio=body["portfolio"])
        logger.info("Autosave conflict: local version=%d server version=%d", self.version, self.conflict.version)
        if self._on_conflict is not None:
            outcome = self._on_conflict(self)
            if inspect.isawaitable(outcome):
                await outcome

    # ------------------------------------------------------------------
    # Conflict resolution: explicit user actions only
    # ------------------------------------------------------------------

    def resolve_discard(self) -> None:
        """Drop local edits and continue from the server's document."""
        if self.conflict is None:
            return
        self.document = copy.deepcopy(self.conflict.portfolio)
        self._synced = copy.deepcopy(self.conflict.portfolio)
        self.version = self.conflict.version
        self.conflict = None
        self._undo.clear()
        self._redo.clear()

    async def resolve_keep_local(self) -> bool:
        """Replay the local edits on top of the server's document and save."""
        if self.conflict is None:
            return False
        local_edits = diff_documents(self.document, self._synced)
        self._synced = copy.deepcopy(self.conflict.portfolio)
        self.document = apply_patch(self.conflict.portfolio, local_edits)
        self.version = self.conflict.version
        self.conflict = None
        return await self.flush()

    async def close(self) -> None:
        """Cancel the timer and flush whatever is still pending."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        await self.flush()


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
