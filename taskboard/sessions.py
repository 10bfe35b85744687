"""Per-user task sessions and the registry that owns them."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from taskboard.auth_client import AuthClient
from taskboard.changes import ChangeChannel, Deleted, Inserted, Resync
from taskboard.errors import FetchError, MutationError, TaskboardError
from taskboard.models import OWNER_COLUMN, Task, TaskInput
from taskboard.realtime import RealtimeClient, Subscription
from taskboard.reconciler import TaskReconciler
from taskboard.task_store import RemoteTaskStore
from taskboard.user_scope import SessionContext

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

SessionListener = Callable[[str, SessionContext], Any]


class TaskSession:
    """One signed-in user's reconciler, change feed and store calls."""

    def __init__(
        self,
        context: SessionContext,
        store: RemoteTaskStore,
        realtime: RealtimeClient | None,
        *,
        first_join_timeout: float = 5.0,
    ) -> None:
        self.context = context
        self.reconciler = TaskReconciler(store, context)
        self.expired = False
        self.last_used = time.monotonic()
        self._store = store
        self._realtime = realtime
        self._first_join_timeout = first_join_timeout
        self._channel = ChangeChannel()
        self._subscription: Subscription | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    @property
    def live(self) -> bool:
        return self._subscription is not None and self._subscription.live

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def touch(self) -> None:
        self.last_used = time.monotonic()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _note_failure(self, exc: TaskboardError) -> None:
        # The backend answers 401 once the access token has expired or been revoked.
        if exc.error.details.get("status") == 401 and not self.expired:
            self.expired = True
            logger.info("access token expired for user %s", self.context.user_id)

    async def open(self) -> None:
        """Subscribe to changes, then run the initial bulk load."""
        self._pump_task = asyncio.create_task(self._pump())
        if self._realtime is not None:
            self._subscription = self._realtime.subscribe(
                self._store.table,
                f"{OWNER_COLUMN}=eq.{self.context.user_id}",
                self._channel,
                self.context.access_token,
            )
            joined = await self._subscription.wait_first_attempt(
                self._first_join_timeout
            )
            if not joined:
                logger.warning(
                    "live updates unavailable for user %s; retrying in background",
                    self.context.user_id,
                )
        try:
            await self.reconciler.load()
        except FetchError as exc:
            self._note_failure(exc)
            logger.warning(
                "initial load failed for user %s: %s", self.context.user_id, exc
            )
        logger.info("session opened for user %s", self.context.user_id)

    async def _pump(self) -> None:
        async for message in self._channel:
            if isinstance(message, Resync):
                logger.info("resynchronising tasks for user %s", self.context.user_id)
                try:
                    await self.reconciler.load()
                except FetchError as exc:
                    self._note_failure(exc)
                    logger.warning("resync failed: %s", exc)
                continue
            self.reconciler.apply_change(message)

    async def close(self) -> None:
        if self._subscription is not None and self._realtime is not None:
            await self._realtime.unsubscribe(self._subscription)
            self._subscription = None
        self._channel.close()
        if self._pump_task is not None:
            await self._pump_task
            self._pump_task = None
        self._closed.set()
        logger.info("session closed for user %s", self.context.user_id)

    async def refresh(self) -> list[Task]:
        try:
            return await self.reconciler.load()
        except FetchError as exc:
            self._note_failure(exc)
            raise

    async def create(self, task_input: TaskInput) -> Task:
        try:
            task = await self._store.insert(self.context, task_input)
        except MutationError as exc:
            self._note_failure(exc)
            raise
        # Same path as the notification; whichever lands second is a no-op.
        self.reconciler.apply_change(Inserted(task))
        return task

    async def edit(self, task_id: str, fields: dict[str, Any]) -> Task:
        try:
            return await self._store.update(self.context, task_id, fields)
        except MutationError as exc:
            self._note_failure(exc)
            raise

    async def toggle(self, task_id: str, completed: bool) -> Task:
        previous = self.reconciler.toggle_local(task_id, completed)
        try:
            return await self._store.update(
                self.context, task_id, {"is_completed": completed}
            )
        except MutationError as exc:
            self._note_failure(exc)
            if previous is not None:
                self.reconciler.revert_toggle(task_id, completed, previous)
            raise

    async def delete(self, task_id: str) -> None:
        try:
            await self._store.delete(self.context, task_id)
        except MutationError as exc:
            self._note_failure(exc)
            raise
        self.reconciler.apply_change(Deleted(task_id))


class SessionRegistry:
    """Maps access tokens to open task sessions.

    Sessions end on sign-out, once their access token is rejected by the
    backend, or after ``reap()`` finds them unwatched and unused for longer
    than the idle timeout.
    """

    def __init__(
        self,
        auth: AuthClient,
        store: RemoteTaskStore,
        realtime: RealtimeClient | None = None,
        *,
        first_join_timeout: float = 5.0,
    ) -> None:
        self._auth = auth
        self._store = store
        self._realtime = realtime
        self._first_join_timeout = first_join_timeout
        self._sessions: dict[str, TaskSession] = {}
        self._listeners: list[SessionListener] = []
        self._lock = asyncio.Lock()

    def current(self, access_token: str) -> SessionContext | None:
        session = self._sessions.get(access_token)
        return None if session is None else session.context

    def get(self, access_token: str) -> TaskSession | None:
        return self._sessions.get(access_token)

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: str, context: SessionContext) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, context)
            except Exception:
                logger.exception("session listener failed on %s", event)

    async def _open(self, context: SessionContext) -> TaskSession:
        async with self._lock:
            existing = self._sessions.get(context.access_token)
            if existing is not None:
                existing.touch()
                return existing
            session = TaskSession(
                context,
                self._store,
                self._realtime,
                first_join_timeout=self._first_join_timeout,
            )
            self._sessions[context.access_token] = session
        await session.open()
        session.touch()
        self._emit(SIGNED_IN, context)
        return session

    async def _discard(self, access_token: str) -> None:
        session = self._sessions.pop(access_token, None)
        if session is None:
            return
        await session.close()
        if session.expired:
            self._emit(SIGNED_OUT, session.context)

    async def resolve(self, access_token: str) -> TaskSession:
        """Return the open session for a token, validating unknown tokens first."""
        session = self._sessions.get(access_token)
        if session is not None and session.expired:
            await self._discard(access_token)
            session = None
        if session is not None:
            session.touch()
            return session
        context = await self._auth.get_user(access_token)
        return await self._open(context)

    async def sign_in(self, email: Any, password: Any) -> TaskSession:
        context = await self._auth.sign_in(email, password)
        return await self._open(context)

    async def sign_up(self, email: Any, password: Any) -> TaskSession | None:
        context = await self._auth.sign_up(email, password)
        if context is None:
            return None
        return await self._open(context)

    async def sign_out(self, access_token: str) -> None:
        """Revoke the token with the backend and close its session, if one is open."""
        session = self._sessions.pop(access_token, None)
        try:
            await self._auth.sign_out(access_token)
        finally:
            if session is not None:
                await session.close()
                self._emit(SIGNED_OUT, session.context)

    async def reap(self, max_idle: float) -> int:
        """Close expired sessions and unwatched ones idle for ``max_idle`` seconds."""
        now = time.monotonic()
        stale = [
            token
            for token, session in self._sessions.items()
            if session.expired
            or (not session.reconciler.watched and now - session.last_used >= max_idle)
        ]
        for token in stale:
            await self._discard(token)
        if stale:
            logger.info("closed %d stale sessions", len(stale))
        return len(stale)

    async def run_reaper(self, max_idle: float, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reap(max_idle)
            except Exception:
                logger.exception("session reaper failed")

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
