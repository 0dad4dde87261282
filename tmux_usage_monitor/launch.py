"""Starts an agent in a new tmux session with the monitor pane next to it."""
from __future__ import annotations

import os
import shlex
import shutil
import sys
from typing import Callable

from . import logger
from .i18n import T
from .panes import PLACEMENTS, MultiplexerError, PaneController, Tmux

MAIN_PANE_TITLE = 'main'


def default_session_name() -> str:
    return os.environ.get('USAGE_MONITOR_SESSION') or f'monitor-{os.getpid()}'


def monitor_command(position: str, main_pane: str, credential_source: str | None = None) -> str:
    """Shell command that runs the monitor in its pane."""
    args = [
        sys.executable, '-m', 'tmux_usage_monitor', 'monitor',
        '--position', position, '--main-pane', main_pane, '--kill-session',
    ]
    if credential_source:
        args += ['--source', credential_source]
    return shlex.join(args)


def _try(command: Callable[..., None], *args: str) -> None:
    """Run an optional tmux setting; older tmux versions reject some of them."""
    try:
        command(*args)
    except MultiplexerError as e:
        logger.info('Ignoring unsupported tmux setting %s: %s', args, e)


def launch(
    command: list[str],
    position: str,
    session_name: str | None = None,
    credential_source: str | None = None,
    mux: Tmux | None = None,
) -> int:
    """Create the session, place the monitor pane and attach; returns the exit status.

    Parameters
    ----------
    command : list of str
        The agent command line, e.g. ``['claude', '--continue']``.
    position : str
        ``'top'``, ``'bottom'``, ``'left'`` or ``'right'``.
    session_name : str, optional
        tmux session name (default: ``$USAGE_MONITOR_SESSION`` or ``monitor-<pid>``).
    credential_source : str, optional
        Credential source the monitor should read (``'claude-code'``, ...).
    """
    if not command:
        print(f"Error: {T['launch_no_command']}", file=sys.stderr)
        return 1
    if position not in PLACEMENTS:
        raise ValueError(f'unknown pane position: {position!r}')

    mux = mux or Tmux()
    if shutil.which(mux.binary) is None:
        print(f"Error: {T['tmux_missing']}", file=sys.stderr)
        return 1

    name = session_name or default_session_name()
    if mux.has_session(name):
        print(T['session_exists'].format(name=name), file=sys.stderr)
        return mux.attach(name)

    main_cmd = shlex.join(command)
    print(T['launch_starting'].format(name=name, command=main_cmd, position=position))

    # The session ends together with the agent
    wrapped = f'{main_cmd}; tmux kill-session -t {shlex.quote(name)} 2>/dev/null || true'
    size = shutil.get_terminal_size((80, 24))

    try:
        main_pane = mux.new_session(name, wrapped, size.columns, size.lines)
        mux.select_pane(main_pane, title=MAIN_PANE_TITLE)

        _try(mux.set_option, name, 'mouse', 'on')
        _try(mux.set_option, name, 'extended-keys', 'on')
        _try(mux.set_option, name, 'allow-passthrough', 'on')
        # Claude Code expects ESC+CR for a newline without submitting
        _try(mux.bind_key, 'S-Enter', 'send-keys', 'Escape', 'Enter')

        mux.set_option(name, 'status', 'on')
        mux.set_option(name, 'status-style', 'bg=default,fg=colour245')
        mux.set_option(name, 'status-left', f'#[fg=colour75,bold] {name} #[default]')
        mux.set_option(name, 'status-left-length', '30')
        mux.set_option(name, 'status-right', f"#[fg=colour245]{T['status_hint']} #[default]")
        mux.set_option(name, 'status-right-length', '60')

        placement = PLACEMENTS[position]
        monitor_pane = mux.split_window(
            main_pane,
            monitor_command(position, main_pane, credential_source),
            vertical=placement.vertical,
            before=placement.before,
            size=placement.size,
        )
        PaneController(mux, name, monitor_pane, main_pane).install(position)
        mux.select_pane(main_pane)

        # Scrolling in the monitor pane would freeze it in copy mode
        mux.set_hook(name, 'pane-mode-changed', "if -F '#{==:#{pane_title},monitor}' 'send-keys -X cancel'")
    except MultiplexerError as e:
        logger.error('Session setup failed: %s', e)
        print(f'Error: {e}', file=sys.stderr)
        if mux.has_session(name):
            _try(mux.kill_session, name)
        return 1

    return mux.attach(name)
