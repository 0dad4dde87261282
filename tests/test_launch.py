from __future__ import annotations

import sys

from tmux_usage_monitor.launch import launch, monitor_command
from tmux_usage_monitor.panes import LAYOUT_HOOK, PANE_TITLE


def test_monitor_command():
    command = monitor_command('top', '%0', 'opencode')
    assert command.startswith(sys.executable)
    assert '-m tmux_usage_monitor monitor --position top --main-pane %0 --kill-session' in command
    assert command.endswith('--source opencode')


def test_launch_builds_session(mux, capsys):
    status = launch(['claude', '--continue'], 'bottom', 'work', 'claude-code', mux=mux)

    assert status == 0
    new_session = next(entry for entry in mux.log if entry[0] == 'new_session')
    assert new_session[2] == "claude --continue; tmux kill-session -t work 2>/dev/null || true"

    main, monitor = list(mux.panes)
    assert mux.panes[main].title == 'main'
    assert mux.panes[monitor].title == PANE_TITLE
    assert mux.panes[monitor].vertical and not mux.panes[monitor].before
    assert ('work', LAYOUT_HOOK) in mux.hooks
    assert mux.options[('work', 'mouse')] == 'on'
    assert ('bind_key', 'S-Enter', 'send-keys', 'Escape', 'Enter') in mux.log
    assert mux.log[-1] == ('attach', 'work')
    assert 'Starting tmux session: work' in capsys.readouterr().out


def test_main_pane_has_focus(mux):
    launch(['opencode'], 'right', 'work', mux=mux)
    main = next(iter(mux.panes))
    selects = [entry for entry in mux.log if entry[0] == 'select_pane']
    assert selects[-1] == ('select_pane', main, None)
    assert ('work', LAYOUT_HOOK) not in mux.hooks


def test_existing_session_is_attached(mux, capsys):
    mux.sessions.add('work')
    assert launch(['claude'], 'right', 'work', mux=mux) == 0
    assert mux.log == [('attach', 'work')]
    assert 'already exists' in capsys.readouterr().err


def test_no_command(mux, capsys):
    assert launch([], 'right', 'work', mux=mux) == 1
    assert 'No command specified' in capsys.readouterr().err


def test_missing_tmux(mux, capsys):
    mux.binary = 'definitely-not-tmux-binary'
    assert launch(['claude'], 'right', 'work', mux=mux) == 1
    assert 'tmux is required' in capsys.readouterr().err
