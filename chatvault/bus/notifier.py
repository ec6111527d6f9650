"""Fire-and-forget fan-out of session events to observers."""

import asyncio
import inspect
import threading
import weakref
from typing import Any, Callable

from loguru import logger

from chatvault.bus.events import SessionEvent

Observer = Callable[[SessionEvent], Any]


class EventNotifier:
    """
    Broadcasts session events to registered observers.

    Observers are held weakly by default: once an observer is garbage
    collected it is dropped without error. Observers may be plain callables
    or coroutine functions; coroutines are scheduled on the running loop.
    A failing observer is logged and never affects the publisher.
    """

    def __init__(self):
        self._observers: list[Callable[[], Observer | None]] = []
        self._pending: set[asyncio.Future] = set()
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer, weak: bool = True) -> Callable[[], None]:
        """
        Register an observer.

        Args:
            observer: Callable receiving each event.
            weak: Hold the observer through a weak reference. Pass False for
                lambdas and closures that nothing else keeps alive.

        Returns:
            A callable that removes the observer.
        """
        if not weak:
            ref = _StrongRef(observer)
        elif inspect.ismethod(observer):
            ref = weakref.WeakMethod(observer)
        else:
            ref = weakref.ref(observer)

        with self._lock:
            self._observers.append(ref)

        def unsubscribe() -> None:
            with self._lock:
                if ref in self._observers:
                    self._observers.remove(ref)

        return unsubscribe

    @property
    def observer_count(self) -> int:
        """Number of observers that are still alive."""
        with self._lock:
            return sum(1 for ref in self._observers if ref() is not None)

    def notify(self, event: SessionEvent) -> None:
        """Deliver ``event`` to every live observer."""
        with self._lock:
            refs = list(self._observers)

        dead = []
        for ref in refs:
            observer = ref()
            if observer is None:
                dead.append(ref)
                continue
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
            except Exception as e:
                logger.warning(f"Observer failed on {event.type} for {event.session_id}: {e}")

        if dead:
            with self._lock:
                self._observers = [r for r in self._observers if r not in dead]

    async def drain(self) -> None:
        """Wait for coroutine observers that are still running."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable, event: SessionEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
            future = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError:
            # No running loop to deliver on
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.debug(f"Dropped async observer for {event.type}: no running event loop")
            return

        self._pending.add(future)

        def _done(fut: asyncio.Future) -> None:
            self._pending.discard(fut)
            if not fut.cancelled() and fut.exception() is not None:
                logger.warning(f"Async observer failed on {event.type}: {fut.exception()}")

        future.add_done_callback(_done)


class _StrongRef:
    """Callable with the same shape as a weak reference, holding a strong one."""

    __slots__ = ("_obj",)

    def __init__(self, obj: Observer):
        self._obj = obj

    def __call__(self) -> Observer:
        return self._obj
