from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

# Strings are asserted in English, whatever the machine's locale is
os.environ['USAGE_MONITOR_LANG'] = 'en'

import pytest
import requests

from tmux_usage_monitor.panes import MultiplexerError

TOKEN = 'sk-ant-oat01-first'
NEW_TOKEN = 'sk-ant-oat01-second'


def make_response(status: int = 200, body: Any = None, text: str | None = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    if text is None:
        text = json.dumps(body if body is not None else {})
    resp._content = text.encode('utf-8')
    resp.encoding = 'utf-8'
    return resp


class FakeSession:
    """Stands in for ``requests.Session``; answers from per-URL-suffix queues."""

    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _answer(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append((method, url, kwargs))
        for suffix, queue in self.responses.items():
            if url.endswith(suffix):
                answer = queue.pop(0) if len(queue) > 1 else queue[0]
                if callable(answer):
                    answer = answer()
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise AssertionError(f'unexpected request: {method} {url}')

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self._answer('GET', url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self._answer('POST', url, **kwargs)

    def calls_to(self, suffix: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [c for c in self.calls if c[1].endswith(suffix)]


def future(**kwargs: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**kwargs)


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def write_claude_code(home: Path, token: str = TOKEN, expires_at: Any = None, **extra: Any) -> Path:
    path = home / '.claude' / '.credentials.json'
    path.parent.mkdir(parents=True, exist_ok=True)
    oauth = {
        'accessToken': token,
        'refreshToken': 'sk-ant-ort01-refresh',
        'expiresAt': epoch_ms(future(hours=1)) if expires_at is None else expires_at,
        'scopes': ['user:inference', 'user:profile'],
    }
    oauth.update(extra)
    path.write_text(json.dumps({'claudeAiOauth': oauth}), encoding='utf-8')
    return path


def write_opencode(home: Path, token: str = TOKEN, expires: Any = None, **siblings: Any) -> Path:
    path = home / '.local' / 'share' / 'opencode' / 'auth.json'
    path.parent.mkdir(parents=True, exist_ok=True)
    data = dict(siblings)
    data['anthropic'] = {
        'type': 'oauth',
        'access': token,
        'refresh': 'sk-ant-ort01-refresh',
        'expires': epoch_ms(future(hours=1)) if expires is None else expires,
    }
    path.write_text(json.dumps(data), encoding='utf-8')
    return path


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / 'home'


# ── Multiplexer ──


@dataclass
class PaneInfo:
    window: str
    vertical: bool | None = None
    before: bool | None = None
    size: str | None = None
    title: str = ''


@dataclass
class FakeMultiplexer:
    """In-memory tmux: windows hold panes; joins and breaks can be made to fail."""

    panes: dict[str, PaneInfo] = field(default_factory=dict)
    hooks: dict[tuple[str, str], str] = field(default_factory=dict)
    options: dict[tuple[str, str], str] = field(default_factory=dict)
    log: list[tuple[Any, ...]] = field(default_factory=list)
    sessions: set[str] = field(default_factory=set)
    join_failures: int = 0
    break_failures: int = 0
    binary: str = 'sh'
    _next_id: int = 0

    def _new_pane(self, window: str, **kwargs: Any) -> str:
        pane = f'%{self._next_id}'
        self._next_id += 1
        self.panes[pane] = PaneInfo(window, **kwargs)
        return pane

    def windows(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for pane, info in self.panes.items():
            out.setdefault(info.window, []).append(pane)
        return out

    def new_session(self, name: str, command: str, width: int, height: int) -> str:
        self.log.append(('new_session', name, command))
        self.sessions.add(name)
        return self._new_pane(name)

    def split_window(self, target: str, command: str, *, vertical: bool, before: bool, size: str) -> str:
        self.log.append(('split_window', target, command))
        return self._new_pane(self.panes[target].window, vertical=vertical, before=before, size=size)

    def break_pane(self, pane: str, window_name: str) -> None:
        self.log.append(('break_pane', pane))
        if self.break_failures:
            self.break_failures -= 1
            raise MultiplexerError('break-pane failed')
        self.panes[pane] = PaneInfo(window_name, title=self.panes[pane].title)

    def join_pane(self, pane: str, target: str, *, vertical: bool, before: bool, size: str) -> None:
        self.log.append(('join_pane', pane, vertical, before))
        if self.join_failures:
            self.join_failures -= 1
            raise MultiplexerError('join-pane failed')
        info = self.panes[pane]
        self.panes[pane] = PaneInfo(self.panes[target].window, vertical, before, size, info.title)

    def select_pane(self, pane: str, title: str | None = None) -> None:
        self.log.append(('select_pane', pane, title))
        if pane not in self.panes:
            raise MultiplexerError(f"can't find pane {pane}")
        if title is not None:
            self.panes[pane].title = title

    def set_hook(self, session: str, hook: str, command: str) -> None:
        self.log.append(('set_hook', hook))
        self.hooks[(session, hook)] = command

    def unset_hook(self, session: str, hook: str) -> None:
        self.log.append(('unset_hook', hook))
        if (session, hook) not in self.hooks:
            raise MultiplexerError('no such hook')
        del self.hooks[(session, hook)]

    # Session helpers used by the launcher

    def has_session(self, name: str) -> bool:
        return name in self.sessions

    def set_option(self, session: str, option: str, value: str) -> None:
        self.options[(session, option)] = value

    def bind_key(self, key: str, *command: str) -> None:
        self.log.append(('bind_key', key, *command))

    def list_panes(self, target: str) -> list[str]:
        return self.windows()[self.panes[target].window]

    def session_of(self, pane: str) -> str:
        if pane not in self.panes:
            raise MultiplexerError(f"can't find pane {pane}")
        return self.panes[pane].window

    def kill_session(self, name: str) -> None:
        self.sessions.discard(name)

    def attach(self, name: str) -> int:
        self.log.append(('attach', name))
        return 0


@pytest.fixture
def mux() -> FakeMultiplexer:
    return FakeMultiplexer()
