"""
Pane Placement
==============

Moves the monitor pane around the main pane of a tmux session.

Panes are always addressed by their stable tmux id (``%3``), never by
index: indices are renumbered while a pane is being moved.  A move is
``break-pane`` into a scratch window followed by ``join-pane`` at the new
place; if the join fails the pane is joined back where it came from.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Protocol

from . import logger

TOP, BOTTOM, LEFT, RIGHT = 'top', 'bottom', 'left', 'right'
POSITIONS = (TOP, BOTTOM, LEFT, RIGHT)
DIRECTIONS = {'up': TOP, 'down': BOTTOM, 'left': LEFT, 'right': RIGHT}

VERTICAL_PANE_LINES = 3  # Monitor height at top/bottom (compact view)
HORIZONTAL_PANE_PERCENT = 20  # Monitor width at left/right (detailed view)
PANE_TITLE = 'monitor'
TEMP_WINDOW = '_monitor_tmp'
LAYOUT_HOOK = 'window-layout-changed'
TMUX_TIMEOUT = 5


class MultiplexerError(Exception):
    """A multiplexer command failed."""


class Multiplexer(Protocol):
    """The multiplexer operations pane placement relies on."""

    def new_session(self, name: str, command: str, width: int, height: int) -> str: ...

    def split_window(self, target: str, command: str, *, vertical: bool, before: bool, size: str) -> str: ...

    def break_pane(self, pane: str, window_name: str) -> None: ...

    def join_pane(self, pane: str, target: str, *, vertical: bool, before: bool, size: str) -> None: ...

    def select_pane(self, pane: str, title: str | None = None) -> None: ...

    def set_hook(self, session: str, hook: str, command: str) -> None: ...

    def unset_hook(self, session: str, hook: str) -> None: ...


class Tmux:
    """:class:`Multiplexer` backed by the ``tmux`` binary."""

    def __init__(self, binary: str = 'tmux', timeout: float = TMUX_TIMEOUT) -> None:
        self.binary = binary
        self.timeout = timeout

    def run(self, *args: str) -> str:
        """Run a tmux command and return its stripped stdout.

        Raises
        ------
        MultiplexerError
            If tmux is missing, exits non-zero, or does not answer in time.
        """
        try:
            result = subprocess.run(
                [self.binary, *args], capture_output=True, text=True, timeout=self.timeout, check=True,
            )
        except FileNotFoundError as e:
            raise MultiplexerError(f'{self.binary} not found') from e
        except subprocess.TimeoutExpired as e:
            raise MultiplexerError(f'{self.binary} {args[0]} timed out') from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or '').strip()
            raise MultiplexerError(f'{self.binary} {args[0]} failed: {stderr or e.returncode}') from e

        logger.debug('tmux %s', ' '.join(args))
        return result.stdout.strip()

    # ── Pane placement ──

    def new_session(self, name: str, command: str, width: int, height: int) -> str:
        return self.run(
            'new-session', '-d', '-P', '-F', '#{pane_id}', '-s', name, '-x', str(width), '-y', str(height), command,
        )

    def split_window(self, target: str, command: str, *, vertical: bool, before: bool, size: str) -> str:
        args = ['split-window', '-P', '-F', '#{pane_id}', '-v' if vertical else '-h']
        if before:
            args.append('-b')
        return self.run(*args, '-t', target, '-l', size, command)

    def break_pane(self, pane: str, window_name: str) -> None:
        self.run('break-pane', '-d', '-s', pane, '-n', window_name)

    def join_pane(self, pane: str, target: str, *, vertical: bool, before: bool, size: str) -> None:
        args = ['join-pane', '-v' if vertical else '-h']
        if before:
            args.append('-b')
        self.run(*args, '-s', pane, '-t', target, '-l', size)

    def select_pane(self, pane: str, title: str | None = None) -> None:
        if title is None:
            self.run('select-pane', '-t', pane)
        else:
            self.run('select-pane', '-t', pane, '-T', title)

    def set_hook(self, session: str, hook: str, command: str) -> None:
        self.run('set-hook', '-t', session, hook, command)

    def unset_hook(self, session: str, hook: str) -> None:
        self.run('set-hook', '-u', '-t', session, hook)

    # ── Session helpers ──

    def has_session(self, name: str) -> bool:
        try:
            self.run('has-session', '-t', name)
        except MultiplexerError:
            return False
        return True

    def set_option(self, session: str, option: str, value: str) -> None:
        self.run('set-option', '-t', session, option, value)

    def bind_key(self, key: str, *command: str) -> None:
        self.run('bind-key', '-n', key, *command)

    def list_panes(self, target: str) -> list[str]:
        return self.run('list-panes', '-t', target, '-F', '#{pane_id}').split()

    def session_of(self, pane: str) -> str:
        return self.run('display-message', '-p', '-t', pane, '#{session_name}')

    def kill_session(self, name: str) -> None:
        self.run('kill-session', '-t', name)

    def attach(self, name: str) -> int:
        """Attach the current terminal to session *name*; returns tmux's exit status."""
        return subprocess.call([self.binary, 'attach-session', '-t', name])


# ── Placement ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Placement:
    vertical: bool  # Split top/bottom (-v) rather than left/right (-h)
    before: bool  # Monitor above / left of the main pane (-b)
    size: str


PLACEMENTS = {
    TOP: Placement(vertical=True, before=True, size=str(VERTICAL_PANE_LINES)),
    BOTTOM: Placement(vertical=True, before=False, size=str(VERTICAL_PANE_LINES)),
    LEFT: Placement(vertical=False, before=True, size=f'{HORIZONTAL_PANE_PERCENT}%'),
    RIGHT: Placement(vertical=False, before=False, size=f'{HORIZONTAL_PANE_PERCENT}%'),
}


def is_compact(position: str) -> bool:
    """Top and bottom panes are only a few rows high and use the compact view."""
    return position in (TOP, BOTTOM)


@dataclass(frozen=True)
class MoveResult:
    success: bool
    position: str
    compact: bool
    error: str | None = None


class PaneController:
    """Places the monitor pane relative to the main pane.

    Parameters
    ----------
    mux : Multiplexer
        Command interface, :class:`Tmux` in production.
    session : str
        Session the hooks are installed on.
    monitor_pane, main_pane : str
        Stable pane ids (``$TMUX_PANE`` of the monitor, and the agent's pane).
    """

    def __init__(self, mux: Multiplexer, session: str, monitor_pane: str, main_pane: str) -> None:
        self.mux = mux
        self.session = session
        self.monitor_pane = monitor_pane
        self.main_pane = main_pane

    def install(self, position: str) -> None:
        """Label and focus the monitor pane and pin its height for top/bottom positions.

        Raises
        ------
        MultiplexerError
            If tmux rejects one of the commands.
        """
        self.mux.select_pane(self.monitor_pane, title=PANE_TITLE)
        if is_compact(position):
            self.mux.set_hook(
                self.session, LAYOUT_HOOK, f'resize-pane -t {self.monitor_pane} -y {VERTICAL_PANE_LINES}',
            )

    def move(self, current: str, target: str) -> MoveResult:
        """Move the monitor pane from *current* to *target*.

        Never raises for tmux failures: a failed move is reported with
        ``success=False`` and the pane back at *current* whenever possible.
        """
        if target not in PLACEMENTS:
            raise ValueError(f'unknown pane position: {target!r}')
        if target == current:
            return MoveResult(True, current, is_compact(current))

        # A hook left over from a top/bottom position would resize the wrong pane
        # once the layout changes, so it has to go before the pane moves.
        try:
            self.mux.unset_hook(self.session, LAYOUT_HOOK)
        except MultiplexerError as e:
            logger.debug('No layout hook to remove: %s', e)

        try:
            self.mux.break_pane(self.monitor_pane, TEMP_WINDOW)
        except MultiplexerError as e:
            logger.warning('Could not detach monitor pane %s: %s', self.monitor_pane, e)
            self._reinstall(current)
            return MoveResult(False, current, is_compact(current), str(e))

        try:
            self._join(target)
        except MultiplexerError as e:
            logger.warning('Could not move monitor pane to %s: %s', target, e)
            self._recover(current)
            return MoveResult(False, current, is_compact(current), str(e))

        self._reinstall(target)
        logger.info('Monitor pane moved %s -> %s', current, target)
        return MoveResult(True, target, is_compact(target))

    def _join(self, position: str) -> None:
        placement = PLACEMENTS[position]
        self.mux.join_pane(
            self.monitor_pane, self.main_pane, vertical=placement.vertical, before=placement.before, size=placement.size,
        )

    def _reinstall(self, position: str) -> None:
        try:
            self.install(position)
        except MultiplexerError as e:
            logger.warning('Could not restore title/hook of monitor pane: %s', e)

    def _recover(self, position: str) -> None:
        try:
            self._join(position)
        except MultiplexerError as e:
            logger.error('Monitor pane %s left in window %s: %s', self.monitor_pane, TEMP_WINDOW, e)
            return
        self._reinstall(position)
