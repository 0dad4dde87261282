from __future__ import annotations

import subprocess

import pytest

from tmux_usage_monitor.panes import (
    BOTTOM,
    LAYOUT_HOOK,
    LEFT,
    PANE_TITLE,
    PLACEMENTS,
    RIGHT,
    TEMP_WINDOW,
    TOP,
    MultiplexerError,
    PaneController,
    Tmux,
    is_compact,
)

SESSION = 'work'


def setup_panes(mux, position: str) -> PaneController:
    main = mux.new_session(SESSION, 'claude', 120, 40)
    placement = PLACEMENTS[position]
    monitor = mux.split_window(
        main, 'usage-monitor', vertical=placement.vertical, before=placement.before, size=placement.size,
    )
    controller = PaneController(mux, SESSION, monitor, main)
    controller.install(position)
    mux.log.clear()
    return controller


def placed_at(mux, controller: PaneController, position: str) -> bool:
    info = mux.panes[controller.monitor_pane]
    placement = PLACEMENTS[position]
    return (
        info.window == mux.panes[controller.main_pane].window
        and (info.vertical, info.before) == (placement.vertical, placement.before)
    )


def monitor_panes(mux) -> list[str]:
    return [pane for pane, info in mux.panes.items() if info.title == PANE_TITLE]


def test_compact_positions():
    assert is_compact(TOP) and is_compact(BOTTOM)
    assert not is_compact(LEFT) and not is_compact(RIGHT)


def test_install_titles_pane_and_pins_height(mux):
    controller = setup_panes(mux, BOTTOM)
    assert mux.panes[controller.monitor_pane].title == PANE_TITLE
    assert mux.hooks[(SESSION, LAYOUT_HOOK)] == f'resize-pane -t {controller.monitor_pane} -y 3'


def test_side_position_has_no_hook(mux):
    setup_panes(mux, RIGHT)
    assert mux.hooks == {}


def test_move_right_to_top(mux):
    controller = setup_panes(mux, RIGHT)
    result = controller.move(RIGHT, TOP)

    assert result.success
    assert result.position == TOP
    assert result.compact
    assert placed_at(mux, controller, TOP)
    assert TEMP_WINDOW not in mux.windows()
    assert (SESSION, LAYOUT_HOOK) in mux.hooks


def test_hook_removed_before_pane_moves(mux):
    controller = setup_panes(mux, BOTTOM)
    result = controller.move(BOTTOM, LEFT)

    assert result.success and not result.compact
    steps = [entry[0] for entry in mux.log]
    assert steps.index('unset_hook') < steps.index('break_pane') < steps.index('join_pane')
    assert (SESSION, LAYOUT_HOOK) not in mux.hooks


def test_hook_failure_after_join_still_succeeds(mux, monkeypatch):
    controller = setup_panes(mux, LEFT)

    def refuse(session, hook, command):
        raise MultiplexerError('unknown hook')

    monkeypatch.setattr(mux, 'set_hook', refuse)
    result = controller.move(LEFT, BOTTOM)

    assert result.success
    assert result.position == BOTTOM
    assert placed_at(mux, controller, BOTTOM)
    assert monitor_panes(mux) == [controller.monitor_pane]


def test_move_to_same_position_is_noop(mux):
    controller = setup_panes(mux, LEFT)
    result = controller.move(LEFT, LEFT)
    assert result.success and result.position == LEFT
    assert mux.log == []


def test_unknown_target(mux):
    controller = setup_panes(mux, LEFT)
    with pytest.raises(ValueError):
        controller.move(LEFT, 'middle')


def test_failed_join_restores_original_position(mux):
    controller = setup_panes(mux, BOTTOM)
    mux.join_failures = 1

    result = controller.move(BOTTOM, RIGHT)

    assert not result.success
    assert result.position == BOTTOM
    assert result.compact
    assert 'join-pane failed' in result.error
    assert monitor_panes(mux) == [controller.monitor_pane]
    assert placed_at(mux, controller, BOTTOM)
    assert TEMP_WINDOW not in mux.windows()
    assert (SESSION, LAYOUT_HOOK) in mux.hooks


def test_failed_recovery_reports_failure(mux):
    controller = setup_panes(mux, LEFT)
    mux.join_failures = 2

    result = controller.move(LEFT, TOP)

    assert not result.success
    assert result.position == LEFT
    assert monitor_panes(mux) == [controller.monitor_pane]


def test_failed_break_leaves_pane_in_place(mux):
    controller = setup_panes(mux, TOP)
    mux.break_failures = 1

    result = controller.move(TOP, LEFT)

    assert not result.success
    assert placed_at(mux, controller, TOP)
    assert (SESSION, LAYOUT_HOOK) in mux.hooks


# ── Tmux command wrapper ──


def test_tmux_run_maps_errors(monkeypatch):
    def fail(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0], stderr="can't find pane: %9\n")

    monkeypatch.setattr(subprocess, 'run', fail)
    with pytest.raises(MultiplexerError, match="can't find pane"):
        Tmux().run('select-pane', '-t', '%9')


def test_tmux_missing(monkeypatch):
    def missing(*args, **kwargs):
        raise FileNotFoundError('tmux')

    monkeypatch.setattr(subprocess, 'run', missing)
    with pytest.raises(MultiplexerError, match='not found'):
        Tmux().run('list-sessions')
    assert not Tmux().has_session('work')


def test_tmux_join_arguments(monkeypatch):
    calls = []

    def record(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout='%4\n', stderr='')

    monkeypatch.setattr(subprocess, 'run', record)
    tmux = Tmux()
    tmux.join_pane('%4', '%0', vertical=True, before=True, size='3')
    pane = tmux.split_window('%0', 'usage-monitor', vertical=False, before=False, size='20%')

    assert calls[0] == ['tmux', 'join-pane', '-v', '-b', '-s', '%4', '-t', '%0', '-l', '3']
    assert calls[1][:5] == ['tmux', 'split-window', '-P', '-F', '#{pane_id}']
    assert pane == '%4'
