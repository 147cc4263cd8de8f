"""In-process event bus between mutating services and the rule engine.

Two delivery modes:

- inline (``workers=0``): every subscriber runs on the publisher's thread and
  session; ``publish`` returns once all of them finished.
- worker (``workers>0``): events are sharded by entity onto bounded per-worker
  queues. One entity always lands on the same worker, so events about it are
  handled in publish order while different entities are handled in parallel.
  ``publish`` blocks while the shard queue is full.

Worker-mode queues live in process memory. Events accepted but not yet
handled are lost if the process dies; the originating mutation is already
committed and no rule row exists for them. Recovery relies on redelivery:
the execution ledger makes republishing an event safe, and the due-date sweep
regenerates its events on the next run. Deployments that cannot tolerate the
gap run the bus inline (``EVENT_BUS_WORKERS=0``), where ``publish`` returns
only after every rule for the event has committed.

A failing subscriber is logged and its session rolled back. It never reaches
the publisher and never stops the other subscribers.
"""

from __future__ import annotations

import logging
import queue
import threading
import zlib
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from flowcore.core.structured_logging import build_log_context
from flowcore.schemas.events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[Session, DomainEvent], Any]
SessionFactory = Callable[[], Session]

_STOP = object()


class EventBus:
    """Publish/subscribe dispatcher for DomainEvents."""

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        workers: int = 0,
        queue_size: int = 1000,
    ) -> None:
        if workers < 0:
            raise ValueError("workers must be >= 0")
        if workers > 0 and session_factory is None:
            raise ValueError("worker mode requires a session_factory")
        self._session_factory = session_factory
        self._workers = workers
        self._queue_size = queue_size
        self._subscribers: list[tuple[str, Handler]] = []
        self._queues: list[queue.Queue] = []
        self._threads: list[threading.Thread] = []
        self._start_lock = threading.Lock()
        self._closed = False

    @property
    def workers(self) -> int:
        return self._workers

    def subscribe(self, handler: Handler, name: str | None = None) -> None:
        """Register a handler called with ``(db, event)`` for every event."""
        self._subscribers.append((name or getattr(handler, "__qualname__", repr(handler)), handler))

    @staticmethod
    def partition_key(event: DomainEvent) -> tuple[str, int]:
        """Ordering key: events with equal keys are handled in publish order."""
        return event.entity.lock_key

    def shard_for(self, event: DomainEvent) -> int:
        kind, entity_id = self.partition_key(event)
        return zlib.crc32(f"{kind}:{entity_id}".encode()) % self._workers

    def publish(self, db: Session, event: DomainEvent) -> None:
        """
        Deliver an event. Call after the originating mutation committed.

        Inline mode runs subscribers on ``db``; worker mode enqueues the event
        and returns once it is queued.
        """
        if self._workers == 0:
            self._dispatch(db, event)
            return

        if self._closed:
            raise RuntimeError("EventBus is shut down")
        self._ensure_started()
        # Blocks while the shard is full
        self._queues[self.shard_for(event)].put(event)

    def _dispatch(self, db: Session, event: DomainEvent) -> None:
        for name, handler in list(self._subscribers):
            try:
                handler(db, event)
            except Exception:
                logger.exception(
                    "Event subscriber %s failed for %s",
                    name,
                    event.event_type,
                    extra=build_log_context(
                        event_id=str(event.event_id),
                        event_type=event.event_type,
                        entity_type=event.entity.kind.value,
                        entity_id=event.entity.id,
                    ),
                )
                db.rollback()

    def _ensure_started(self) -> None:
        if self._threads:
            return
        with self._start_lock:
            if self._threads:
                return
            for index in range(self._workers):
                shard: queue.Queue = queue.Queue(maxsize=self._queue_size)
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(shard,),
                    name=f"flowcore-event-bus-{index}",
                    daemon=True,
                )
                self._queues.append(shard)
                self._threads.append(thread)
            for thread in self._threads:
                thread.start()
            logger.info("Event bus started with %s workers", self._workers)

    def _worker_loop(self, shard: queue.Queue) -> None:
        while True:
            item = shard.get()
            try:
                if item is _STOP:
                    return
                db = self._session_factory()
                try:
                    self._dispatch(db, item)
                finally:
                    db.close()
            except Exception:
                logger.exception("Event bus worker failed to handle an event")
            finally:
                shard.task_done()

    def drain(self) -> None:
        """Block until every queued event has been handled."""
        for shard in list(self._queues):
            shard.join()

    def shutdown(self, wait: bool = True) -> None:
        """Stop workers after the events already queued."""
        self._closed = True
        for shard in self._queues:
            shard.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()
        self._queues.clear()
        self._threads.clear()
