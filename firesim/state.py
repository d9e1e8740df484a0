import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set

from pydantic import ValidationError

from .config import PERSIST_DEBOUNCE_SECONDS
from .schemas import RunProgress, RunStatus, utcnow
from .storage import ArtifactStore, progress_key

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.PENDING, RunStatus.IN_PROGRESS},
    RunStatus.IN_PROGRESS: {RunStatus.IN_PROGRESS, RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.COMPLETED: {RunStatus.COMPLETED},
    RunStatus.FAILED: {RunStatus.FAILED},
}


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class AsyncioScheduler:
    """Schedules callbacks on the running event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class Debouncer:
    """
    Per-key trailing-edge debounce.

    Every schedule() restarts the key's timer, so a burst of calls within the
    delay window collapses into one callback invocation.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[str], Awaitable[None]],
        scheduler: Optional[Scheduler] = None,
    ):
        self.delay = delay
        self.callback = callback
        self.scheduler = scheduler or AsyncioScheduler()
        self._timers: Dict[str, TimerHandle] = {}
        self._inflight: Set[asyncio.Task] = set()

    def schedule(self, key: str) -> None:
        self.cancel(key)
        self._timers[key] = self.scheduler.call_later(self.delay, lambda: self._fire(key))

    def cancel(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def pending(self, key: str) -> bool:
        return key in self._timers

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        task = asyncio.ensure_future(self.callback(key))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def flush(self, key: str) -> None:
        """Cancel any pending timer for key and run the callback now."""
        self.cancel(key)
        await self.callback(key)

    async def flush_all(self) -> None:
        for key in list(self._timers):
            await self.flush(key)

    async def drain(self) -> None:
        """Wait for callbacks already started by fired timers."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


class ProgressStore:
    """
    Authoritative run progress records with debounced durable writes.

    Records live in memory and are written to the artifact store as JSON
    snapshots. Reads fall back to the artifact store so a run survives a
    process restart. Callers only ever receive deep copies.
    """

    def __init__(
        self,
        storage: ArtifactStore,
        debounce_seconds: float = PERSIST_DEBOUNCE_SECONDS,
        scheduler: Optional[Scheduler] = None,
    ):
        self.storage = storage
        self._runs: Dict[str, RunProgress] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._debouncer = Debouncer(debounce_seconds, self._write, scheduler)

    def create(self, run_id: str, initial: RunProgress) -> RunProgress:
        if run_id in self._runs:
            raise ValueError(f"Run {run_id} already exists")
        self._runs[run_id] = initial.model_copy(deep=True)
        return initial.model_copy(deep=True)

    async def get(self, run_id: str) -> Optional[RunProgress]:
        progress = self._runs.get(run_id)
        if progress is None:
            loaded = await self._load(run_id)
            if loaded is None:
                return None
            progress = self._runs.setdefault(run_id, loaded)
            logger.info(f"[progress] Rehydrated run {run_id} ({progress.status.value})")
        return progress.model_copy(deep=True)

    def mutate(self, run_id: str, fn: Callable[[RunProgress], None]) -> RunProgress:
        """
        Apply fn to a working copy of the record and commit it if it is valid.

        Schedules a debounced write and returns a snapshot of the new record.

        Raises:
            KeyError: Unknown run
            ValueError: The record is final or the change breaks an invariant
        """
        current = self._runs.get(run_id)
        if current is None:
            raise KeyError(run_id)
        if current.status.is_terminal:
            raise ValueError(f"Run {run_id} is {current.status.value}; its record is final")

        draft = current.model_copy(deep=True)
        fn(draft)
        self._validate(current, draft)
        draft.updated_at = utcnow()

        self._runs[run_id] = draft
        self._debouncer.schedule(run_id)
        return draft.model_copy(deep=True)

    @staticmethod
    def _validate(current: RunProgress, draft: RunProgress) -> None:
        if draft.run_id != current.run_id or draft.total_images != current.total_images:
            raise ValueError("run_id and total_images cannot change")
        if draft.status not in ALLOWED_TRANSITIONS[current.status]:
            raise ValueError(
                f"Illegal status transition {current.status.value} -> {draft.status.value}"
            )
        if draft.completed_images < current.completed_images or draft.failed_images < current.failed_images:
            raise ValueError("Progress counters cannot decrease")
        if draft.completed_images + draft.failed_images > draft.total_images:
            raise ValueError(
                f"completed ({draft.completed_images}) + failed ({draft.failed_images}) "
                f"exceeds total ({draft.total_images})"
            )

    async def persist(self, run_id: str, immediate: bool = False) -> None:
        """Write the run's current record, now or after the debounce window."""
        if immediate:
            await self._debouncer.flush(run_id)
        else:
            self._debouncer.schedule(run_id)

    def has_pending_write(self, run_id: str) -> bool:
        return self._debouncer.pending(run_id)

    def has_write_lock(self, run_id: str) -> bool:
        return run_id in self._locks

    async def flush_all(self) -> None:
        await self._debouncer.flush_all()
        await self._debouncer.drain()

    async def drain(self) -> None:
        await self._debouncer.drain()

    async def _write(self, run_id: str) -> None:
        lock = self._locks.setdefault(run_id, asyncio.Lock())
        async with lock:
            progress = self._runs.get(run_id)
            if progress is None:
                return
            # Serialized inside the lock so a later write always carries the newer state
            data = progress.model_dump_json().encode("utf-8")
            try:
                await asyncio.to_thread(
                    self.storage.upload, progress_key(run_id), data, "application/json"
                )
            except Exception as e:
                logger.warning(f"[progress] Failed to persist run {run_id}: {e}")
                return

        # Terminal records are frozen, so a later write would carry identical data
        if progress.status.is_terminal and not lock.locked() and not self._debouncer.pending(run_id):
            self._locks.pop(run_id, None)

    async def _load(self, run_id: str) -> Optional[RunProgress]:
        try:
            data = await asyncio.to_thread(self.storage.load, progress_key(run_id))
        except Exception as e:
            logger.warning(f"[progress] Failed to load run {run_id}: {e}")
            return None
        if data is None:
            return None
        try:
            return RunProgress.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"[progress] Discarding unreadable record for run {run_id}: {e}")
            return None
