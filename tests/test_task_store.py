from __future__ import annotations

import httpx
import pytest
import pytest_asyncio

from taskboard.errors import FetchError, MutationError
from taskboard.models import TaskInput
from taskboard.task_store import RemoteTaskStore
from taskboard.user_scope import SessionContext

from .fakes import BACKEND_KEY, BACKEND_URL, FakeBackend


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture()
async def http(backend):
    async with httpx.AsyncClient(
        base_url=BACKEND_URL, transport=httpx.MockTransport(backend.handle)
    ) as client:
        yield client


def _session(backend: FakeBackend, email: str = "ana@example.com") -> SessionContext:
    user = backend.add_user(email, "pw")
    return SessionContext(user_id=user.id, email=email, access_token=backend.issue_token(user))


@pytest.mark.asyncio
async def test_list_is_owner_scoped_and_newest_first(backend, http):
    session = _session(backend)
    other = _session(backend, "bo@example.com")
    backend.add_row(session.user_id, "old")
    backend.add_row(other.user_id, "not mine")
    backend.add_row(session.user_id, "new")
    store = RemoteTaskStore(http, BACKEND_KEY)

    tasks = await store.list(session)

    assert [task.title for task in tasks] == ["new", "old"]
    request = backend.requests[-1]
    assert request.url.params["user_id"] == f"eq.{session.user_id}"
    assert request.url.params["order"] == "created_at.desc"
    assert request.headers["Authorization"] == f"Bearer {session.access_token}"
    assert request.headers["apikey"] == BACKEND_KEY


@pytest.mark.asyncio
async def test_insert_never_sends_owner(backend, http):
    session = _session(backend)
    store = RemoteTaskStore(http, BACKEND_KEY)

    task = await store.insert(session, TaskInput(title="Write docs"))

    request = backend.requests[-1]
    assert request.headers["Prefer"] == "return=representation"
    assert b"user_id" not in request.content
    assert task.owner == session.user_id
    assert task.is_completed is False
    assert task.id


@pytest.mark.asyncio
async def test_update_returns_row_and_reports_missing(backend, http):
    session = _session(backend)
    row = backend.add_row(session.user_id, "draft")
    store = RemoteTaskStore(http, BACKEND_KEY)

    task = await store.update(session, row["id"], {"title": "final"})
    assert task.title == "final"

    with pytest.raises(MutationError) as excinfo:
        await store.update(session, "task-missing", {"title": "x"})
    assert excinfo.value.error.code == "TASK_NOT_FOUND"
    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_update_cannot_touch_other_users_rows(backend, http):
    session = _session(backend)
    other = _session(backend, "bo@example.com")
    row = backend.add_row(other.user_id, "theirs")
    store = RemoteTaskStore(http, BACKEND_KEY)

    with pytest.raises(MutationError):
        await store.update(session, row["id"], {"title": "mine now"})

    assert row["title"] == "theirs"


@pytest.mark.asyncio
async def test_delete_removes_row(backend, http):
    session = _session(backend)
    row = backend.add_row(session.user_id, "bye")
    store = RemoteTaskStore(http, BACKEND_KEY)

    await store.delete(session, row["id"])

    assert backend.rows == []
    assert backend.requests[-1].url.params["id"] == f"eq.{row['id']}"


@pytest.mark.asyncio
async def test_failures_map_to_fetch_and_mutation_errors(backend, http):
    session = _session(backend)
    store = RemoteTaskStore(http, BACKEND_KEY)

    backend.fail_next("GET /rest/v1/tasks", 500)
    with pytest.raises(FetchError) as fetch_exc:
        await store.list(session)
    assert fetch_exc.value.error.message == "injected failure"
    assert fetch_exc.value.error.details == {"operation": "list", "status": 500}

    backend.fail_next("POST /rest/v1/tasks", 503)
    with pytest.raises(MutationError):
        await store.insert(session, TaskInput(title="x"))

    backend.fail_next("DELETE /rest/v1/tasks", 500)
    with pytest.raises(MutationError):
        await store.delete(session, "task-1")


@pytest.mark.asyncio
async def test_transport_errors_become_backend_unavailable():
    def _explode(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(
        base_url=BACKEND_URL, transport=httpx.MockTransport(_explode)
    ) as client:
        store = RemoteTaskStore(client, BACKEND_KEY)
        session = SessionContext(user_id="u", email=None, access_token="t")
        with pytest.raises(FetchError) as excinfo:
            await store.list(session)

    assert excinfo.value.error.code == "BACKEND_UNAVAILABLE"
