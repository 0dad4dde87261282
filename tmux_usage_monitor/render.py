"""Turns a :class:`MonitorState` into lines of styled text for the monitor pane."""
from __future__ import annotations

from datetime import datetime, timezone

from rich.cells import cell_len
from rich.console import Console
from rich.text import Text

from .api import RATE_LIMIT_ERROR, ApiError, UsageWindow
from .credentials import login_command
from .i18n import T
from .monitor import MonitorState

PERIOD_5H = 5 * 3600
PERIOD_7D = 7 * 24 * 3600
PERIODS = {
    'five_hour': PERIOD_5H,
    'seven_day': PERIOD_7D,
    'seven_day_oauth_apps': PERIOD_7D,
    'seven_day_opus': PERIOD_7D,
}

MIN_WIDTH = 28
MAX_WIDTH = 60
MIN_BAR_WIDTH = 5

BAR_FILLED = '━'
BAR_EMPTY = '░'
BAR_MARKER = '│'
ELLIPSIS = '…'

PLAN_STYLES = {'ENT': 'cyan', 'MAX': 'magenta', 'PRO': 'green'}


def format_time_remaining(resets_at: datetime | None, now: datetime | None = None) -> str:
    """Return the time until *resets_at*: ``'2d 4h'``, ``'3h 12m'``, ``'45m'``.

    A reset time in the past (or less than a minute away) gives ``'now'``,
    never a negative duration.
    """
    if resets_at is None:
        return T['reset_unknown']

    now = now or datetime.now(timezone.utc)
    total_min = max(0, int((resets_at - now).total_seconds() // 60))
    if total_min == 0:
        return T['reset_now']

    days, rest = divmod(total_min, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days:
        return T['duration_dh'].format(d=days, h=hours)
    if hours:
        return T['duration_hm'].format(h=hours, m=minutes)
    return T['duration_m'].format(m=minutes)


def elapsed_pct(resets_at: datetime | None, period_seconds: int, now: datetime | None = None) -> float | None:
    """Return the elapsed percentage (0-100) of a usage period, or None if not calculable.

    Parameters
    ----------
    resets_at : datetime or None
        When the limit resets.
    period_seconds : int
        Total duration of the period in seconds (e.g. 18000 for 5h).
    """
    if resets_at is None or period_seconds <= 0:
        return None

    now = now or datetime.now(timezone.utc)
    remaining = (resets_at - now).total_seconds()
    elapsed = period_seconds - remaining

    return max(0.0, min(100.0, elapsed / period_seconds * 100))


def usage_style(pct: float) -> str:
    if pct >= 80:
        return 'bold red'
    if pct >= 50:
        return 'yellow'
    return 'green'


def truncate(text: str, width: int) -> str:
    """Shorten *text* to *width* terminal cells, ending with an ellipsis if cut."""
    if cell_len(text) <= width:
        return text
    if width <= 1:
        return ELLIPSIS[:width]

    out = ''
    for char in text:
        if cell_len(out + char) > width - 1:
            break
        out += char
    return out + ELLIPSIS


def progress_bar(pct: float, width: int, marker_pct: float | None = None) -> Text:
    """Bar of *width* cells filled to *pct*, with an optional time-elapsed marker."""
    filled = max(0, min(width, round(pct / 100 * width)))
    marker = None if marker_pct is None else min(width - 1, int(marker_pct / 100 * width))

    bar = Text()
    for i in range(width):
        if i == marker:
            bar.append(BAR_MARKER, style='bold white')
        elif i < filled:
            bar.append(BAR_FILLED, style=usage_style(pct))
        else:
            bar.append(BAR_EMPTY, style='dim')
    return bar


def error_message(error: ApiError) -> str:
    """User-facing text for *error*: login errors say how to log in again."""
    if error.needs_login:
        return T['reauth'].format(command=login_command(error.source))
    if error.type == RATE_LIMIT_ERROR:
        return T['rate_limited']
    return error.message or f'HTTP {error.status_code}'


def window_row(label: str, window: UsageWindow, width: int, period: int, now: datetime | None = None, marker: bool = True) -> Text:
    """``label ━━━━░░░░  44% (3h 12m)`` fitted into *width* cells."""
    pct = f'{round(window.utilization):>3d}%'
    reset = f'({format_time_remaining(window.resets_at, now)})'
    bar_width = max(MIN_BAR_WIDTH, width - cell_len(label) - cell_len(pct) - cell_len(reset) - 3)
    marker_pct = elapsed_pct(window.resets_at, period, now) if marker else None

    row = Text(f'{label} ')
    row.append_text(progress_bar(window.utilization, bar_width, marker_pct))
    row.append(f' {pct} ', style=usage_style(window.utilization))
    row.append(reset, style='dim')
    return row


def status_bar(is_running: bool, error: ApiError | None, refresh_interval: int, width: int) -> Text:
    status = Text(T['running'], style='green') if is_running else Text(T['stopped'], style='dim')
    status.append(' | ' + T['refresh_every'].format(seconds=refresh_interval))
    if error is None:
        return status

    prefix = status.plain + ' | '
    message = T['error_label'].format(message=error_message(error))
    status.append(' | ')
    status.append(truncate(message, max(10, width - cell_len(prefix))), style='red')
    return status


def clamp_width(columns: int) -> int:
    return max(MIN_WIDTH, min(columns - 1, MAX_WIDTH))


def render_compact(state: MonitorState, width: int, notice: str | None = None, now: datetime | None = None) -> list[Text]:
    """Two lines for a pane pinned to a few rows: all windows side by side, then status."""
    lines: list[Text] = []
    windows = state.usage.windows() if state.usage else []

    if windows:
        sep = ' │ '
        cell = (width - cell_len(sep) * (len(windows) - 1)) // len(windows)
        row = Text()
        for i, (name, window) in enumerate(windows):
            if i:
                row.append(sep, style='dim')
            row.append_text(window_row(T[f'short_{name}'], window, cell, PERIODS[name], now, marker=False))
        lines.append(row)
    elif state.usage is not None:
        lines.append(Text(T['no_limits'], style='green'))
    elif state.error is None:
        lines.append(Text(T['loading'], style='dim'))

    if notice:
        lines.append(Text(truncate(notice, width), style='yellow'))
    elif state.error is not None:
        lines.append(Text(truncate(error_message(state.error), width), style='red'))
    else:
        lines.append(Text(truncate(T['keys_hint'], width), style='dim'))

    for line in lines:
        line.truncate(width, overflow='ellipsis')
    return lines


def render_detailed(
    state: MonitorState, width: int, refresh_interval: int, notice: str | None = None, now: datetime | None = None,
) -> list[Text]:
    """Full view for a side pane: account, one bar per window, last update and status."""
    lines: list[Text] = [Text(T['title'] if width >= 40 else T['title_compact'], style='bold')]

    profile = state.profile
    if profile:
        lines.append(Text.assemble((T['user'], 'dim'), ' ', truncate(profile.name, width - cell_len(T['user']) - 1)))
        if profile.organization and profile.organization.name:
            org = truncate(profile.organization.name, width - cell_len(T['org']) - 1)
            lines.append(Text.assemble((T['org'], 'dim'), ' ', org))
        if profile.plan_badge:
            lines.append(Text.assemble((T['plan'], 'dim'), ' ', (profile.plan_badge, PLAN_STYLES[profile.plan_badge])))
        lines.append(Text('─' * width, style='dim'))

    if state.usage is None:
        if state.error is not None:
            lines.append(Text(truncate(error_message(state.error), width), style='red'))
        else:
            lines.append(Text(T['loading'], style='dim'))
    else:
        windows = state.usage.windows()
        label_width = max((cell_len(T[f'window_{name}']) for name, _ in windows), default=0)
        for name, window in windows:
            label = T[f'window_{name}'].ljust(label_width)
            lines.append(window_row(label, window, width, PERIODS[name], now))
        if not windows:
            lines.append(Text(T['no_limits'], style='green'))

    if state.last_fetch:
        lines.append(Text('─' * width, style='dim'))
        clock = state.last_fetch.astimezone().strftime('%H:%M:%S')
        lines.append(Text(T['updated'].format(clock=clock), style='dim'))

    lines.append(Text(''))
    lines.append(status_bar(state.is_running, state.error, refresh_interval, width))
    if notice:
        lines.append(Text(truncate(notice, width), style='yellow'))
    lines.append(Text(truncate(T['keys_hint'], width), style='dim'))

    for line in lines:
        line.truncate(width, overflow='ellipsis')
    return lines


def render_lines(
    state: MonitorState,
    width: int,
    compact: bool,
    refresh_interval: int,
    notice: str | None = None,
    now: datetime | None = None,
) -> list[Text]:
    if compact:
        return render_compact(state, width, notice, now)
    return render_detailed(state, width, refresh_interval, notice, now)


def draw(console: Console, lines: list[Text]) -> None:
    """Replace the pane contents with *lines*."""
    console.clear()
    for i, line in enumerate(lines):
        console.print(line, no_wrap=True, overflow='ellipsis', end='\n' if i < len(lines) - 1 else '')
