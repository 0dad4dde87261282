"""
Monitor Engine
==============

Polls the usage API on a background thread and keeps the last known state
for the renderer.  A failed poll keeps the previous usage on screen and only
records the error; the next successful poll clears it again.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from . import logger
from .api import API_ERROR, ApiError, ApiResult, Profile, UsageApiClient, UsageSnapshot

POLL_INTERVAL = 60  # Seconds between updates

UPDATE = 'update'
ERROR = 'error'


@dataclass(frozen=True)
class MonitorState:
    """Everything the renderer needs; replaced as a whole after every poll."""

    usage: UsageSnapshot | None = None
    profile: Profile | None = None
    last_fetch: datetime | None = None
    error: ApiError | None = None
    is_running: bool = False

    @property
    def last_error(self) -> str | None:
        return self.error.message if self.error else None


Listener = Callable[[str, MonitorState], None]


class Monitor:
    """Owns the polling cadence and the current :class:`MonitorState`.

    Listeners registered with :meth:`subscribe` are called on the fetching
    thread with ``(event, state)`` after every completed poll, where *event*
    is ``'update'`` or ``'error'``.
    """

    def __init__(self, client: UsageApiClient, clock: Callable[[], datetime] | None = None) -> None:
        self.client = client
        self.interval = POLL_INTERVAL
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = MonitorState()
        self._listeners: list[Listener] = []
        self._state_lock = threading.RLock()
        self._notify_lock = threading.RLock()
        self._fetch_lock = threading.Lock()
        self._generation = 0
        self._notifying: int | None = None
        self._deferred = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> MonitorState:
        with self._state_lock:
            return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Fetching ──

    def fetch(self) -> None:
        """Poll once, waiting for a poll already in progress to finish first.

        Called from inside a listener, the poll is deferred until every
        listener has returned.
        """
        if self._notifying == threading.get_ident():
            self._deferred = True
            return

        with self._fetch_lock:
            self._fetch_locked()

    def _tick(self) -> None:
        if not self._fetch_lock.acquire(blocking=False):
            logger.debug('Previous poll still running, skipping tick')
            return
        try:
            self._fetch_locked()
        finally:
            self._fetch_lock.release()

    def _fetch_locked(self) -> None:
        self._fetch_once()
        while self._deferred:
            self._deferred = False
            self._fetch_once()

    def _fetch_once(self) -> None:
        generation = self._generation
        try:
            result = self.client.get_summary()
        except Exception as e:
            logger.exception('Poll raised unexpectedly')
            result = ApiResult(error=ApiError(API_ERROR, str(e) or type(e).__name__))

        with self._state_lock:
            if generation != self._generation:
                logger.debug('Monitor stopped during poll, discarding result')
                return

            if result.ok:
                self._state = replace(
                    self._state,
                    usage=result.data.usage,
                    profile=result.data.profile,
                    last_fetch=self._clock(),
                    error=None,
                )
                event = UPDATE
            else:
                logger.info('Poll failed (%s): %s', result.error.type, result.error.message)
                self._state = replace(self._state, error=result.error)
                event = ERROR
            state = self._state

        self._notify(event, state, generation)

    def _notify(self, event: str, state: MonitorState, generation: int) -> None:
        # stop() takes the same lock, so once it returns no listener is called for an older poll
        with self._notify_lock:
            self._notifying = threading.get_ident()
            try:
                self._dispatch(event, state, generation)
            finally:
                self._notifying = None

    def _dispatch(self, event: str, state: MonitorState, generation: int) -> None:
        for listener in list(self._listeners):
            if generation != self._generation:
                logger.debug('Monitor stopped, dropping %s notification', event)
                return
            try:
                listener(event, state)
            except Exception:
                logger.exception('Monitor listener failed')

    # ── Polling loop ──

    def start(self, interval: float = POLL_INTERVAL) -> None:
        """Poll immediately, then every *interval* seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
            return

        self.interval = interval
        self._stop_event = threading.Event()
        with self._state_lock:
            self._state = replace(self._state, is_running=True)

        self._thread = threading.Thread(
            target=self._poll_loop, args=(self._stop_event, self.interval), name='usage-poll', daemon=True,
        )
        self._thread.start()

    def _poll_loop(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.is_set():
            self._tick()
            if stop_event.wait(interval):
                break

    def stop(self) -> None:
        """Stop polling without waiting for an outstanding request; its result is dropped."""
        with self._notify_lock, self._state_lock:
            self._generation += 1
            self._state = replace(self._state, is_running=False)
        self._stop_event.set()
