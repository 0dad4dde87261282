"""
Configuration
=============

Settings come from ``~/.config/usage-monitor/config.json`` (or an explicit
path), with environment variables layered on top.  Anything invalid is
reported as a warning and replaced by its default; a broken config file
never stops the monitor.

Example::

    {
        "refresh_interval": 120,
        "credential_source": "claude-code",
        "position": "bottom",
        "agents": {
            "claude": {"command": "claude --continue", "credential": {"source": "claude-code"}}
        }
    }
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from . import logger
from .api import API_BASE
from .credentials import CredentialSource
from .monitor import POLL_INTERVAL
from .panes import POSITIONS, RIGHT
from .refresh import CLIENT_ID, TOKEN_URL

CONFIG_DIR = Path.home() / '.config' / 'usage-monitor'
CONFIG_FILE = CONFIG_DIR / 'config.json'
MIN_REFRESH_INTERVAL = 10
AUTO_SOURCE = 'auto'

ENV_REFRESH_INTERVAL = 'USAGE_MONITOR_REFRESH_INTERVAL'
ENV_API_BASE = 'OAUTH_API_BASE'
ENV_TOKEN_URL = 'OAUTH_TOKEN_URL'

SOURCE_NAMES = (AUTO_SOURCE, CredentialSource.CLAUDE_CODE.value, CredentialSource.OPENCODE.value, CredentialSource.KEYCHAIN.value)


@dataclass(frozen=True)
class Agent:
    command: str
    credential_source: str = AUTO_SOURCE


DEFAULT_AGENTS = {
    'claude': Agent('claude', CredentialSource.CLAUDE_CODE.value),
    'opencode': Agent('opencode', CredentialSource.OPENCODE.value),
}


@dataclass(frozen=True)
class Config:
    refresh_interval: int = POLL_INTERVAL
    credential_source: str = AUTO_SOURCE
    position: str = RIGHT
    api_base: str = API_BASE
    token_url: str = TOKEN_URL
    client_id: str = CLIENT_ID
    agents: dict[str, Agent] = field(default_factory=lambda: dict(DEFAULT_AGENTS))


@dataclass
class LoadedConfig:
    config: Config
    source: str  # 'file', 'env' or 'default'
    path: Path | None = None
    warnings: list[str] = field(default_factory=list)


def parse_source(name: str | None) -> CredentialSource | None:
    """Map a configured source name to a :class:`CredentialSource`; ``'auto'`` means no preference."""
    if not name or name == AUTO_SOURCE:
        return None
    return CredentialSource(name)


def _parse_interval(value: Any, origin: str, warnings: list[str]) -> int | None:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        warnings.append(f'{origin}: refresh interval must be a number of seconds, got {value!r}')
        return None
    if interval < MIN_REFRESH_INTERVAL:
        warnings.append(f'{origin}: refresh interval raised to the minimum of {MIN_REFRESH_INTERVAL}s')
        return MIN_REFRESH_INTERVAL
    return interval


def _parse_agents(raw: Any, warnings: list[str]) -> dict[str, Agent]:
    agents = dict(DEFAULT_AGENTS)
    if not isinstance(raw, dict):
        warnings.append('agents: expected an object')
        return agents

    for name, entry in raw.items():
        if not isinstance(entry, dict) or not isinstance(entry.get('command'), str):
            warnings.append(f'agents.{name}: "command" is required')
            continue
        credential = entry.get('credential') or {}
        source = credential.get('source', AUTO_SOURCE) if isinstance(credential, dict) else AUTO_SOURCE
        if source not in SOURCE_NAMES:
            warnings.append(f'agents.{name}.credential.source: must be one of {", ".join(SOURCE_NAMES)}')
            source = AUTO_SOURCE
        agents[name] = Agent(entry['command'], source)

    return agents


def parse_config(data: Mapping[str, Any], warnings: list[str]) -> Config:
    """Build a :class:`Config` from parsed JSON, appending a warning for every ignored value."""
    config = Config()
    known = {'refresh_interval', 'credential_source', 'position', 'api_base', 'token_url', 'client_id', 'agents'}
    for key in data:
        if key not in known:
            warnings.append(f'{key}: unknown setting')

    if 'refresh_interval' in data:
        interval = _parse_interval(data['refresh_interval'], 'refresh_interval', warnings)
        if interval is not None:
            config = replace(config, refresh_interval=interval)

    source = data.get('credential_source')
    if source is not None:
        if source in SOURCE_NAMES:
            config = replace(config, credential_source=source)
        else:
            warnings.append(f'credential_source: must be one of {", ".join(SOURCE_NAMES)}')

    position = data.get('position')
    if position is not None:
        if position in POSITIONS:
            config = replace(config, position=position)
        else:
            warnings.append(f'position: must be one of {", ".join(POSITIONS)}')

    for key in ('api_base', 'token_url', 'client_id'):
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and value:
            config = replace(config, **{key: value})
        else:
            warnings.append(f'{key}: must be a non-empty string')

    if 'agents' in data:
        config = replace(config, agents=_parse_agents(data['agents'], warnings))

    return config


def _read_file(path: Path, warnings: list[str]) -> Config | None:
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError) as e:
        warnings.append(f'Invalid config file {path}: {e}')
        return Config()
    if not isinstance(data, dict):
        warnings.append(f'Invalid config file {path}: expected a JSON object')
        return Config()

    return parse_config(data, warnings)


def _apply_env(config: Config, environ: Mapping[str, str], warnings: list[str]) -> tuple[Config, bool]:
    changed = False
    if environ.get(ENV_REFRESH_INTERVAL):
        interval = _parse_interval(environ[ENV_REFRESH_INTERVAL], ENV_REFRESH_INTERVAL, warnings)
        if interval is not None:
            config, changed = replace(config, refresh_interval=interval), True
    if environ.get(ENV_API_BASE):
        config, changed = replace(config, api_base=environ[ENV_API_BASE]), True
    if environ.get(ENV_TOKEN_URL):
        config, changed = replace(config, token_url=environ[ENV_TOKEN_URL]), True
    return config, changed


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> LoadedConfig:
    """Load settings from *path* (or the default config file) and the environment.

    Parameters
    ----------
    path : Path, optional
        Explicit config file.  If it does not exist, a warning is recorded
        and the default location is tried.
    environ : mapping, optional
        Environment to read overrides from (default: ``os.environ``).

    Returns
    -------
    LoadedConfig
        The resolved settings, where they came from and any warnings.
    """
    environ = os.environ if environ is None else environ
    warnings: list[str] = []
    loaded: LoadedConfig | None = None

    if path is not None:
        config = _read_file(path, warnings)
        if config is not None:
            loaded = LoadedConfig(config, 'file', path)
        else:
            warnings.append(f'Config file not found: {path}')

    if loaded is None:
        config = _read_file(CONFIG_FILE, warnings)
        if config is not None:
            loaded = LoadedConfig(config, 'file', CONFIG_FILE)

    base = loaded.config if loaded else Config()
    config, from_env = _apply_env(base, environ, warnings)
    if loaded is None:
        loaded = LoadedConfig(config, 'env' if from_env else 'default')
    else:
        loaded.config = config

    loaded.warnings = warnings
    for warning in warnings:
        logger.warning('Config: %s', warning)

    return loaded
