"""
Autosave client tests: debounce, retries, conflict handling, undo/redo.

The server side is an in-memory fake behind httpx.MockTransport that applies
patches the way PUT /api/portfolio does and enforces the version check.
Run: pytest foliosync/tests/test_autosave.py -v
"""
import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from foliosync.client.autosave import AutosaveSession, SaveError, apply_patch, diff_documents

DOCUMENT = {
    "id": "p-1",
    "blocks": [],
    "layout": {"type": "grid", "columns": 2, "spacing": "normal"},
    "theme": {"primaryColor": "#3b82f6", "fontFamily": "Inter"},
    "seo": {"title": ""},
    "publishing": {"customDomain": ""},
}


class FakeServer:
    """Just enough of PUT /api/portfolio: version check, merge, version + 1."""

    def __init__(self) -> None:
        self.document = json.loads(json.dumps(DOCUMENT))
        self.version = 1
        self.puts: list[dict] = []
        self.queued: list = []

    def concurrent_write(self, patch: dict) -> None:
        self.document = apply_patch(self.document, patch)
        self.version += 1

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"portfolio": self.document, "version": self.version})

        body = json.loads(request.content)
        self.puts.append(body)
        if self.queued:
            outcome = self.queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if body.get("version") != self.version:
            return httpx.Response(409, json={
                "error": {"code": "CONFLICT", "message": "Portfolio has changed", "details": []},
                "currentVersion": self.version,
                "portfolio": self.document,
            })
        patch = {k: v for k, v in body.items() if k != "version"}
        self.document = apply_patch(self.document, patch)
        self.version += 1
        return httpx.Response(200, json={"portfolio": self.document, "version": self.version})


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest_asyncio.fixture
async def http(server: FakeServer):
    async with httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://test") as client:
        yield client


async def _session(http, **kwargs) -> AutosaveSession:
    kwargs.setdefault("debounce", 60)
    kwargs.setdefault("backoff", 0)
    return await AutosaveSession.open(http, **kwargs)


# ---------------------------------------------------------------------------
# Patch helpers
# ---------------------------------------------------------------------------

def test_diff_and_apply_patch_agree() -> None:
    patch = {"theme": {"primaryColor": "#000000"}, "customDomain": "alice.dev"}
    edited = apply_patch(DOCUMENT, patch)

    diff = diff_documents(edited, DOCUMENT)

    assert set(diff) == {"theme", "customDomain"}
    assert diff["theme"] == {"primaryColor": "#000000"}, "only changed config keys are sent"
    assert apply_patch(DOCUMENT, diff) == edited
    assert DOCUMENT["theme"]["primaryColor"] == "#3b82f6", "inputs are not mutated"


def test_apply_patch_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError):
        apply_patch(DOCUMENT, {"status": "published"})


# ---------------------------------------------------------------------------
# Debounced saving
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rapid_edits_are_batched_into_one_save(http, server: FakeServer) -> None:
    session = await _session(http, debounce=0.02)

    session.edit({"theme": {"primaryColor": "#000000"}})
    session.edit({"theme": {"fontFamily": "Lato"}})
    session.edit({"layout": {"columns": 3}})
    await asyncio.sleep(0.2)

    assert len(server.puts) == 1
    sent = server.puts[0]
    assert sent["version"] == 1
    assert sent["theme"]["primaryColor"] == "#000000"
    assert sent["theme"]["fontFamily"] == "Lato"
    assert sent["layout"]["columns"] == 3
    assert session.version == 2
    assert session.pending == {}
    await session.close()


@pytest.mark.asyncio
async def test_flush_without_changes_sends_nothing(http, server: FakeServer) -> None:
    session = await _session(http)
    assert await session.flush() is False
    assert server.puts == []
    await session.close()


@pytest.mark.asyncio
async def test_transport_errors_are_retried(http, server: FakeServer) -> None:
    server.queued = [httpx.ConnectError("refused"), httpx.ConnectError("refused")]
    session = await _session(http)

    session.edit({"seo": {"title": "Alice"}})
    assert await session.flush() is True

    assert len(server.puts) == 3
    assert session.version == 2
    await session.close()


@pytest.mark.asyncio
async def test_transport_failure_after_budget_keeps_edits(http, server: FakeServer) -> None:
    server.queued = [httpx.ConnectError("refused")] * 3
    session = await _session(http)

    session.edit({"seo": {"title": "Alice"}})
    with pytest.raises(httpx.ConnectError):
        await session.flush()

    assert session.pending["seo"]["title"] == "Alice"
    assert session.version == 1
    await session.close()


@pytest.mark.asyncio
async def test_validation_rejection_raises_save_error(http, server: FakeServer) -> None:
    server.queued = [httpx.Response(400, json={"error": {"code": "VALIDATION_ERROR", "message": "Invalid layout update", "details": []}})]
    session = await _session(http)

    session.edit({"layout": {"columns": 9}})
    with pytest.raises(SaveError) as exc_info:
        await session.flush()

    assert exc_info.value.status_code == 400
    assert str(exc_info.value) == "Invalid layout update"
    await session.close()


# ---------------------------------------------------------------------------
# Conflicts: never overwritten silently
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_conflict_keeps_local_changes_and_notifies(http, server: FakeServer) -> None:
    notified = []
    session = await _session(http, on_conflict=notified.append)
    server.concurrent_write({"seo": {"title": "From another tab"}})

    session.edit({"theme": {"primaryColor": "#000000"}})
    assert await session.flush() is False

    assert notified == [session]
    assert session.conflict.version == 2
    assert session.conflict.portfolio["seo"]["title"] == "From another tab"
    assert session.pending["theme"]["primaryColor"] == "#000000"
    assert server.document["theme"]["primaryColor"] == "#3b82f6"

    assert await session.flush() is False, "no further saves until the user decides"
    assert len(server.puts) == 1
    await session.close()


@pytest.mark.asyncio
async def test_resolve_keep_local_rebases_and_saves(http, server: FakeServer) -> None:
    session = await _session(http)
    server.concurrent_write({"seo": {"title": "From another tab"}})
    session.edit({"theme": {"primaryColor": "#000000"}})
    await session.flush()

    assert await session.resolve_keep_local() is True

    assert session.conflict is None
    assert server.puts[-1]["version"] == 2
    assert server.version == 3
    assert server.document["theme"]["primaryColor"] == "#000000"
    assert server.document["seo"]["title"] == "From another tab", "fields the session did not touch survive"
    await session.close()


@pytest.mark.asyncio
async def test_resolve_discard_adopts_server_state(http, server: FakeServer) -> None:
    session = await _session(http)
    server.concurrent_write({"seo": {"title": "From another tab"}})
    session.edit({"theme": {"primaryColor": "#000000"}})
    await session.flush()

    session.resolve_discard()

    assert session.conflict is None
    assert session.version == 2
    assert session.pending == {}
    assert session.document["theme"]["primaryColor"] == "#3b82f6"
    assert not session.can_undo
    await session.close()
    assert len(server.puts) == 1


# ---------------------------------------------------------------------------
# Undo / redo
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_undo_redo_are_local(http, server: FakeServer) -> None:
    session = await _session(http)

    session.edit({"seo": {"title": "One"}})
    session.edit({"seo": {"title": "Two"}})
    assert session.undo() is True
    assert session.document["seo"]["title"] == "One"
    assert session.redo() is True
    assert session.document["seo"]["title"] == "Two"
    assert session.redo() is False
    assert server.puts == []
    await session.close()


@pytest.mark.asyncio
async def test_new_edit_clears_redo(http) -> None:
    session = await _session(http)
    session.edit({"seo": {"title": "One"}})
    session.undo()
    session.edit({"seo": {"title": "Other"}})
    assert not session.can_redo
    await session.close()


@pytest.mark.asyncio
async def test_undo_history_is_bounded(http) -> None:
    session = await _session(http, history_limit=2)
    for title in ("One", "Two", "Three"):
        session.edit({"seo": {"title": title}})

    assert session.undo() and session.undo()
    assert session.undo() is False
    assert session.document["seo"]["title"] == "One"
    await session.close()


@pytest.mark.asyncio
async def test_undo_after_save_is_sent_on_next_flush(http, server: FakeServer) -> None:
    session = await _session(http)
    session.edit({"seo": {"title": "Saved"}})
    await session.flush()

    session.undo()
    assert await session.flush() is True

    assert server.puts[-1] == {"seo": {"title": ""}, "version": 2}
    assert server.document["seo"]["title"] == ""
    await session.close()
