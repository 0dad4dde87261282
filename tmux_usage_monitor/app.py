"""
Monitor Pane Application
========================

Runs inside the monitor pane: polls in the background, redraws on every
update and on terminal resize, and reads single keys from the terminal.

Keys: arrows or ``h j k l`` move the pane, ``r`` refreshes, ``q`` quits.
"""
from __future__ import annotations

import os
import select
import shutil
import signal
import sys
import termios
import threading
import time
import tty
from pathlib import Path
from types import FrameType
from typing import Callable

from rich.console import Console

from . import logger
from .api import UsageApiClient
from .config import Config, parse_source
from .credentials import CredentialStore
from .i18n import T
from .monitor import Monitor, MonitorState
from .panes import DIRECTIONS, MultiplexerError, PaneController, Tmux, is_compact
from .refresh import TokenRefreshClient
from .render import clamp_width, draw, render_lines

MOVE_DEBOUNCE = 0.3  # Seconds; key repeat must not queue up pane moves
NOTICE_SECONDS = 5
KEY_POLL = 0.5

KEYMAP = {
    '\x1b[A': 'up', '\x1b[B': 'down', '\x1b[C': 'right', '\x1b[D': 'left',
    '\x1bOA': 'up', '\x1bOB': 'down', '\x1bOC': 'right', '\x1bOD': 'left',
    'k': 'up', 'j': 'down', 'l': 'right', 'h': 'left',
    'r': 'refresh', 'R': 'refresh',
    'q': 'quit', 'Q': 'quit', '\x03': 'quit', '\x04': 'quit',
}


def build_monitor(config: Config, override_path: Path | None = None, source: str | None = None) -> Monitor:
    """Create the credential store, API clients and monitor engine for *config*."""
    store = CredentialStore(override_path=override_path)
    refresher = TokenRefreshClient(token_url=config.token_url, client_id=config.client_id)
    client = UsageApiClient(
        store,
        refresher=refresher,
        source=parse_source(source or config.credential_source),
        base_url=config.api_base,
    )
    return Monitor(client)


def read_key(fd: int, timeout: float) -> str | None:
    """Wait up to *timeout* seconds for a key press; escape sequences come back whole."""
    ready, _, _ = select.select([fd], [], [], timeout)
    if not ready:
        return None
    data = os.read(fd, 16)
    if not data:
        return '\x04'  # EOF behaves like Ctrl-D
    return data.decode('utf-8', errors='ignore')


class MonitorApp:
    """Interactive monitor pane.

    Parameters
    ----------
    monitor : Monitor
        Engine to start, render and stop.
    config : Config
        Refresh interval and initial position.
    panes : PaneController, optional
        Enables moving the pane; without it the arrow keys do nothing.
    position : str
        Where the pane currently is.
    compact : bool, optional
        Force the compact view regardless of position.
    on_quit : callable, optional
        Called after the monitor stopped (the launcher kills its session here).
    """

    def __init__(
        self,
        monitor: Monitor,
        config: Config,
        panes: PaneController | None = None,
        position: str | None = None,
        compact: bool | None = None,
        console: Console | None = None,
        on_quit: Callable[[], None] | None = None,
    ) -> None:
        self.monitor = monitor
        self.config = config
        self.panes = panes
        self.position = position or config.position
        self.compact = is_compact(self.position) if compact is None else compact
        self.console = console or Console(highlight=False)
        self.on_quit = on_quit
        self.running = False
        self._draw_lock = threading.Lock()
        self._resized = threading.Event()
        self._notice: str | None = None
        self._notice_until = 0.0
        self._last_move = 0.0

    # ── Rendering ──

    def width(self) -> int:
        columns = shutil.get_terminal_size((80, 24)).columns
        return max(10, columns - 1) if self.compact else clamp_width(columns)

    def notice(self, message: str) -> None:
        self._notice = message
        self._notice_until = time.monotonic() + NOTICE_SECONDS

    def render(self, state: MonitorState | None = None) -> None:
        state = state or self.monitor.state
        notice = self._notice if time.monotonic() < self._notice_until else None
        lines = render_lines(state, self.width(), self.compact, self.config.refresh_interval, notice)
        with self._draw_lock:
            draw(self.console, lines)

    def _on_monitor_event(self, event: str, state: MonitorState) -> None:
        self.render(state)

    def _on_resize(self, signum: int, frame: FrameType | None) -> None:
        self._resized.set()

    # ── Input ──

    def handle_key(self, key: str) -> None:
        action = KEYMAP.get(key)
        if action == 'quit':
            self.running = False
        elif action == 'refresh':
            threading.Thread(target=self.monitor.fetch, name='usage-refresh', daemon=True).start()
        elif action in DIRECTIONS:
            self.move(DIRECTIONS[action])

    def move(self, target: str) -> None:
        """Move the pane to *target*, ignoring requests that arrive while the last move settles."""
        if self.panes is None:
            return
        if time.monotonic() - self._last_move < MOVE_DEBOUNCE:
            logger.debug('Ignoring pane move to %s (debounce)', target)
            return

        result = self.panes.move(self.position, target)
        self._last_move = time.monotonic()
        self.position = result.position
        self.compact = result.compact
        if not result.success:
            self.notice(T['move_failed'])
        self.render()

    # ── Main loop ──

    def run(self) -> int:
        """Run until ``q`` is pressed or the process is signalled; returns the exit status."""
        unsubscribe = self.monitor.subscribe(self._on_monitor_event)
        self.running = True

        def on_signal(signum: int, frame: FrameType | None) -> None:
            self.running = False

        previous = {sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
        previous[signal.SIGWINCH] = signal.signal(signal.SIGWINCH, self._on_resize)

        fd = sys.stdin.fileno() if sys.stdin.isatty() else None
        saved = termios.tcgetattr(fd) if fd is not None else None
        self.console.show_cursor(False)
        try:
            if fd is not None:
                tty.setcbreak(fd)
            self.render()
            self.monitor.start(self.config.refresh_interval)
            while self.running:
                if fd is None:
                    time.sleep(KEY_POLL)
                else:
                    key = read_key(fd, KEY_POLL)
                    if key:
                        self.handle_key(key)
                if self._resized.is_set():
                    self._resized.clear()
                    self.render()
        finally:
            self.monitor.stop()
            unsubscribe()
            if saved is not None:
                termios.tcsetattr(fd, termios.TCSADRAIN, saved)
            self.console.show_cursor(True)
            self.console.clear()
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        if self.on_quit is not None:
            self.on_quit()
        return 0


def pane_controller_from_env(mux: Tmux, main_pane: str | None = None) -> PaneController | None:
    """Build a :class:`PaneController` for the pane this process runs in, or None outside tmux."""
    monitor_pane = os.environ.get('TMUX_PANE')
    if not monitor_pane or not os.environ.get('TMUX'):
        return None

    try:
        session = mux.session_of(monitor_pane)
        if main_pane is None:
            others = [p for p in mux.list_panes(monitor_pane) if p != monitor_pane]
            if not others:
                logger.info('No main pane next to %s, pane moves disabled', monitor_pane)
                return None
            main_pane = others[0]
    except MultiplexerError as e:
        logger.warning('Cannot inspect tmux pane %s: %s', monitor_pane, e)
        return None

    return PaneController(mux, session, monitor_pane, main_pane)
