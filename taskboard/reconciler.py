"""In-memory task collection kept in step with the remote store.

The reconciler owns the ordered, newest-first list of tasks one session sees.
It is filled by ``load()`` and then kept current by folding change events into
it with ``apply_change()``. Events are keyed by task id so that duplicate and
overlapping deliveries converge:

* an insert for an id already present is dropped
* an update for an absent id is dropped, otherwise it replaces in place
* a delete for an absent id is dropped, and a deleted id never reappears

Events that arrive before the first successful load, or while any load is in
flight, are buffered and replayed on top of the freshly loaded snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Protocol

from taskboard.changes import ChangeEvent, Deleted, Inserted, Updated
from taskboard.errors import FetchError
from taskboard.models import Task
from taskboard.user_scope import SessionContext

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class TaskLister(Protocol):
    async def list(self, session: SessionContext) -> list[Task]: ...


class TaskReconciler:
    def __init__(self, store: TaskLister, session: SessionContext) -> None:
        self._store = store
        self._session = session
        self._tasks: list[Task] = []
        self._state = ReconcilerState.UNINITIALIZED
        self._loads_in_flight = 0
        self._buffered: list[ChangeEvent] = []
        self._stashed: list[Task] | None = None
        # Ids are never reused, so a deleted id must not come back.
        self._deleted: set[str] = set()
        self._watchers: set[asyncio.Queue[list[Task]]] = set()

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    def get(self, task_id: str) -> Task | None:
        index = self._index_of(task_id)
        return None if index is None else self._tasks[index]

    def _index_of(self, task_id: str) -> int | None:
        for index, task in enumerate(self._tasks):
            if task.id == task_id:
                return index
        return None

    @property
    def _buffering(self) -> bool:
        return self._state is ReconcilerState.UNINITIALIZED or self._loads_in_flight > 0

    async def load(self) -> list[Task]:
        """Replace the collection with the store's current task set.

        On failure the previous collection is kept and ``FetchError`` is raised.
        """
        self._loads_in_flight += 1
        try:
            loaded = await self._store.list(self._session)
        except BaseException as exc:
            self._loads_in_flight -= 1
            if isinstance(exc, FetchError):
                logger.warning(
                    "load failed for user %s; keeping previous collection",
                    self._session.user_id,
                )
            if self._loads_in_flight == 0:
                if self._stashed is not None:
                    self._install(self._stashed)
                elif self._state is ReconcilerState.READY:
                    self._replay()
                    self._notify()
            raise
        self._loads_in_flight -= 1

        if self._loads_in_flight == 0:
            self._install(loaded)
        else:
            # Another load is still running and will install its own result.
            self._stashed = list(loaded)
        return self.tasks

    def _install(self, loaded: list[Task]) -> None:
        self._stashed = None
        self._tasks = [task for task in loaded if task.id not in self._deleted]
        self._state = ReconcilerState.READY
        logger.info(
            "loaded %d tasks for user %s", len(self._tasks), self._session.user_id
        )
        self._replay()
        self._notify()

    def _replay(self) -> None:
        buffered, self._buffered = self._buffered, []
        for event in buffered:
            self._fold(event)

    def apply_change(self, event: ChangeEvent) -> None:
        if self._buffering:
            self._buffered.append(event)
            return
        if self._fold(event):
            self._notify()

    def _fold(self, event: ChangeEvent) -> bool:
        if isinstance(event, Inserted):
            if event.task.id in self._deleted:
                return False
            if self._index_of(event.task.id) is not None:
                return False
            self._tasks.insert(0, event.task)
            return True
        if isinstance(event, Updated):
            index = self._index_of(event.task.id)
            if index is None:
                return False
            if self._tasks[index] == event.task:
                return False
            self._tasks[index] = event.task
            return True
        if isinstance(event, Deleted):
            self._deleted.add(event.task_id)
            index = self._index_of(event.task_id)
            if index is None:
                return False
            del self._tasks[index]
            return True
        raise TypeError(f"Unsupported change event: {event!r}")

    def toggle_local(self, task_id: str, completed: bool) -> bool | None:
        """Optimistically set is_completed; return the previous value, None if absent."""
        index = self._index_of(task_id)
        if index is None:
            return None
        current = self._tasks[index]
        if current.is_completed != completed:
            self._tasks[index] = current.with_completion(completed)
            self._notify()
        return current.is_completed

    def revert_toggle(self, task_id: str, optimistic: bool, previous: bool) -> None:
        """Undo a failed toggle unless a notification already replaced it."""
        index = self._index_of(task_id)
        if index is None:
            return
        current = self._tasks[index]
        if current.is_completed == optimistic and optimistic != previous:
            self._tasks[index] = current.with_completion(previous)
            self._notify()

    def watch(self) -> asyncio.Queue[list[Task]]:
        """Register an observer queue that receives a snapshot after every change."""
        queue: asyncio.Queue[list[Task]] = asyncio.Queue()
        self._watchers.add(queue)
        if self._state is ReconcilerState.READY:
            queue.put_nowait(self.tasks)
        return queue

    @property
    def watched(self) -> bool:
        return bool(self._watchers)

    def unwatch(self, queue: asyncio.Queue[list[Task]]) -> None:
        self._watchers.discard(queue)

    def _notify(self) -> None:
        if self._state is not ReconcilerState.READY:
            return
        snapshot = self.tasks
        for queue in self._watchers:
            queue.put_nowait(snapshot)
