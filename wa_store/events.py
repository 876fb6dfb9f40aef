"""
Event plumbing for the message store.

Two channels live here:

- ``EventEmitter``: the per-session event source. The protocol client emits
  raw events (``messages.upsert``, ``messages.update`` ...) on it and store
  handlers subscribe with ``on``/``off``.
- ``EventSink``: the process-wide outcome channel. Handlers publish the result
  of every reconciliation (success payload or error message), tagged by
  session id, and external layers (webhooks, sockets, UI) subscribe to it.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Set

from wa_store.metrics import record_store_event
from wa_store.schemas import OutcomeEvent

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]
OutcomeSubscriber = Callable[[OutcomeEvent], Any]


class EventEmitter:
    """
    Minimal async event emitter for one protocol session.

    Listeners of an event run one after another in registration order;
    coroutine listeners are awaited before the next one starts, so events
    are handled in the order they are emitted.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    async def emit(self, event: str, payload: Any) -> bool:
        """
        Deliver a payload to every listener of ``event``.

        Returns:
            True if at least one listener was registered
        """
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            result = listener(payload)
            if inspect.isawaitable(result):
                await result
        return bool(listeners)


class EventSink:
    """
    Outcome channel shared by every session.

    Subscribers receive an ``OutcomeEvent``; a failing subscriber is logged
    and skipped so that publishing never raises into a store handler.
    Coroutine subscribers are scheduled as tasks on the running loop; use
    ``drain()`` to wait for the ones still in flight.
    """

    def __init__(self) -> None:
        self._subscribers: List[OutcomeSubscriber] = []
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, subscriber: OutcomeSubscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: OutcomeSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def emit(
        self,
        event: str,
        session_id: str,
        data: Any = None,
        status: str = "success",
        message: Optional[str] = None,
    ) -> OutcomeEvent:
        """
        Publish an outcome event.

        Args:
            event: Event name, e.g. "messages.upsert"
            session_id: Session the outcome belongs to
            data: Success payload (None on error)
            status: "success" or "error"
            message: Human-readable cause for errors
        """
        outcome = OutcomeEvent(
            event=event,
            session_id=session_id,
            data=data,
            status=status,
            message=message,
        )
        record_store_event(event, status)
        logger.debug(f"Outcome {event} ({status}) for session {session_id}")

        for subscriber in list(self._subscribers):
            try:
                result = subscriber(outcome)
            except Exception as e:
                logger.error(f"Outcome subscriber failed for {event}: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return outcome

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"Async outcome subscriber for {event} called without a running event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(partial(self._task_done, event))

    def _task_done(self, event: str, task: asyncio.Future) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Outcome subscriber failed for {event}: {error}", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled coroutine subscriber to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# Process-wide sink used by the application
sink = EventSink()
