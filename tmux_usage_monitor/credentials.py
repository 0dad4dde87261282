"""
Credential Store
================

Locates the OAuth credentials written by Claude Code or OpenCode and writes
refreshed tokens back in the format of the file they came from.

Sources are tried in a fixed order (macOS keychain, OpenCode, Claude Code)
unless one is requested explicitly.  A missing file only means "look
elsewhere"; a file that exists but cannot be used is reported as an error
for that source, so a broken login is never mistaken for a missing one.
"""
from __future__ import annotations

import enum
import json
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from . import logger

TOKEN_PREFIX = 'sk-ant-oat'
EXPIRY_BUFFER = timedelta(minutes=5)  # Producing tools refresh this long before expiry
KEYCHAIN_SERVICE = 'Claude Code-credentials'
KEYCHAIN_TIMEOUT = 5

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class CredentialSource(enum.Enum):
    KEYCHAIN = 'keychain'
    OPENCODE = 'opencode'
    CLAUDE_CODE = 'claude-code'
    OVERRIDE = 'override'


DEFAULT_ORDER = (CredentialSource.KEYCHAIN, CredentialSource.OPENCODE, CredentialSource.CLAUDE_CODE)

# Command that (re)creates the credentials of each source
LOGIN_COMMANDS = {
    CredentialSource.KEYCHAIN: 'claude',
    CredentialSource.OPENCODE: 'opencode auth login',
    CredentialSource.CLAUDE_CODE: 'claude',
    CredentialSource.OVERRIDE: 'claude',
}


def login_command(source: CredentialSource | None) -> str:
    """Return the shell command that re-authenticates *source*."""
    if source is None:
        return 'opencode auth login'
    return LOGIN_COMMANDS[source]


@dataclass(frozen=True)
class CredentialRecord:
    """One OAuth credential, replaced wholesale on refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] | None = None

    def is_expired(self, buffer: timedelta = EXPIRY_BUFFER, now: datetime | None = None) -> bool:
        """Return True if the token expires within *buffer* (or has already expired)."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at - buffer <= now


@dataclass(frozen=True)
class LoadedCredentials:
    record: CredentialRecord
    source: CredentialSource


class CredentialsError(Exception):
    """No usable credential could be resolved.

    ``errors`` holds one ``(source, message)`` pair for every source whose
    backing file existed but could not be used.
    """

    def __init__(self, message: str, errors: list[tuple[CredentialSource, str]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class CredentialsNotFoundError(CredentialsError):
    """None of the tried sources exists."""


class InvalidCredentialsError(Exception):
    """A source exists but holds an unusable credential."""

    def __init__(self, source: CredentialSource, message: str) -> None:
        super().__init__(message)
        self.source = source


# ── Timestamp helpers ─────────────────────────────────────────


def from_epoch_ms(value: int | float) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def to_epoch_ms(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch-milliseconds number, or return None.

    Raises
    ------
    ValueError
        If *value* is present but not a recognizable timestamp.
    """
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f'invalid timestamp: {value!r}')
    if isinstance(value, (int, float)):
        try:
            return from_epoch_ms(value)
        except OverflowError as e:
            raise ValueError(f'timestamp out of range: {value!r}') from e
    if isinstance(value, str):
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ValueError(f'invalid timestamp: {value!r}')


def format_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


# ── Keychain ──────────────────────────────────────────────────


def read_keychain(service: str = KEYCHAIN_SERVICE) -> str | None:
    """Return the secret stored in the macOS keychain under *service*, or None if absent."""
    try:
        result = subprocess.run(
            ['security', 'find-generic-password', '-s', service, '-w'],
            capture_output=True,
            text=True,
            timeout=KEYCHAIN_TIMEOUT,
        )
    except FileNotFoundError:
        return None
    except subprocess.TimeoutExpired as e:
        raise InvalidCredentialsError(CredentialSource.KEYCHAIN, 'Keychain lookup timed out.') from e

    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


# ── Store ─────────────────────────────────────────────────────


@dataclass
class CredentialStore:
    """Resolves credentials from the known sources and writes refreshed ones back.

    Parameters
    ----------
    home : Path, optional
        Home directory the well-known files are looked up in.
    override_path : Path, optional
        Credentials file used *instead of* every other source (tests, demos).
    platform : str
        ``sys.platform`` value; the keychain is only queried on ``'darwin'``.
    keychain_reader : callable, optional
        Replacement for :func:`read_keychain`.
    """

    home: Path = field(default_factory=Path.home)
    override_path: Path | None = None
    platform: str = sys.platform
    keychain_reader: Callable[[], str | None] = read_keychain

    # ── Paths ──

    @property
    def opencode_path(self) -> Path:
        return self.home / '.local' / 'share' / 'opencode' / 'auth.json'

    @property
    def claude_code_path(self) -> Path:
        return self.home / '.claude' / '.credentials.json'

    def path_for(self, source: CredentialSource) -> Path | None:
        if source is CredentialSource.OPENCODE:
            return self.opencode_path
        if source is CredentialSource.CLAUDE_CODE:
            return self.claude_code_path
        if source is CredentialSource.OVERRIDE:
            return self.override_path
        return None

    def sources(self) -> list[CredentialSource]:
        """Return the sources tried by :meth:`load`, in priority order."""
        if self.override_path is not None:
            return [CredentialSource.OVERRIDE]
        return [s for s in DEFAULT_ORDER if s is not CredentialSource.KEYCHAIN or self.platform == 'darwin']

    # ── Loading ──

    def load(self, preferred: CredentialSource | None = None) -> LoadedCredentials:
        """Resolve the first usable credential.

        Parameters
        ----------
        preferred : CredentialSource, optional
            Only try this source.  Ignored when an override path is set.

        Returns
        -------
        LoadedCredentials
            The credential and the source it came from.

        Raises
        ------
        CredentialsNotFoundError
            If no source exists at all.
        CredentialsError
            If at least one source exists but none holds a usable credential.
        """
        if self.override_path is not None or preferred is None:
            candidates = self.sources()
        else:
            candidates = [preferred]

        errors: list[tuple[CredentialSource, str]] = []
        for source in candidates:
            try:
                record = self._load_source(source)
            except InvalidCredentialsError as e:
                logger.warning('Credentials from %s rejected: %s', source.value, e)
                errors.append((source, str(e)))
                continue
            if record is None:
                logger.debug('No credentials in %s', source.value)
                continue

            logger.debug('Using credentials from %s', source.value)
            return LoadedCredentials(record, source)

        if not errors:
            if candidates == [CredentialSource.OVERRIDE]:
                raise CredentialsNotFoundError(f'Credentials file not found: {self.override_path}')
            raise CredentialsNotFoundError(
                "No credentials found. Run 'opencode auth login' or sign in to Claude Code ('claude')."
            )

        raise CredentialsError(errors[0][1], errors)

    def _load_source(self, source: CredentialSource) -> CredentialRecord | None:
        if source is CredentialSource.KEYCHAIN:
            secret = self.keychain_reader()
            if secret is None:
                return None
            return self._parse_claude_code(source, secret, 'Claude Code keychain entry')

        path = self.path_for(source)
        if path is None or not path.exists():
            return None

        try:
            content = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise InvalidCredentialsError(source, f'Cannot read {path}: {e}') from e

        if source is CredentialSource.OPENCODE:
            return self._parse_opencode(content)
        if source is CredentialSource.CLAUDE_CODE:
            return self._parse_claude_code(source, content, 'Claude Code credentials')
        return self._parse_override(content)

    @staticmethod
    def _decode(source: CredentialSource, content: str, label: str) -> dict[str, Any]:
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidCredentialsError(source, f'Failed to parse {label}: {e}') from e
        if not isinstance(parsed, dict):
            raise InvalidCredentialsError(source, f'Failed to parse {label}: expected a JSON object')
        return parsed

    @staticmethod
    def _check(source: CredentialSource, record: CredentialRecord, label: str, require_prefix: bool = True) -> CredentialRecord:
        if require_prefix and not record.access_token.startswith(TOKEN_PREFIX):
            raise InvalidCredentialsError(source, f'Invalid OAuth token format in {label}.')
        if record.is_expired() and not record.refresh_token:
            raise InvalidCredentialsError(
                source, f"{label} token expired. Run '{login_command(source)}'."
            )
        return record

    def _parse_claude_code(self, source: CredentialSource, content: str, label: str) -> CredentialRecord:
        parsed = self._decode(source, content, label)
        oauth = parsed.get('claudeAiOauth')
        if not isinstance(oauth, dict) or not oauth.get('accessToken'):
            raise InvalidCredentialsError(source, f'No OAuth credentials in {label}.')

        scopes = oauth.get('scopes')
        try:
            record = CredentialRecord(
                access_token=str(oauth['accessToken']),
                refresh_token=oauth.get('refreshToken') or None,
                expires_at=parse_timestamp(oauth.get('expiresAt')),
                scopes=list(scopes) if isinstance(scopes, list) else None,
            )
        except ValueError as e:
            raise InvalidCredentialsError(source, f'Failed to parse {label}: {e}') from e

        return self._check(source, record, label)

    def _parse_opencode(self, content: str) -> CredentialRecord:
        source, label = CredentialSource.OPENCODE, 'OpenCode auth file'
        parsed = self._decode(source, content, label)
        entry = parsed.get('anthropic')
        if not isinstance(entry, dict) or not entry.get('access'):
            raise InvalidCredentialsError(source, f'No Anthropic OAuth in {label}.')

        try:
            record = CredentialRecord(
                access_token=str(entry['access']),
                refresh_token=entry.get('refresh') or None,
                expires_at=parse_timestamp(entry.get('expires')),
            )
        except ValueError as e:
            raise InvalidCredentialsError(source, f'Failed to parse {label}: {e}') from e

        return self._check(source, record, label)

    def _parse_override(self, content: str) -> CredentialRecord:
        source, label = CredentialSource.OVERRIDE, 'credentials override file'
        parsed = self._decode(source, content, label)
        if not parsed.get('access_token'):
            raise InvalidCredentialsError(source, f'No access_token in {label}.')

        try:
            record = CredentialRecord(
                access_token=str(parsed['access_token']),
                refresh_token=parsed.get('refresh_token') or None,
                expires_at=parse_timestamp(parsed.get('expires_at')),
            )
        except ValueError as e:
            raise InvalidCredentialsError(source, f'Failed to parse {label}: {e}') from e

        return self._check(source, record, label, require_prefix=False)

    # ── Writing ──

    def write_back(self, source: CredentialSource, record: CredentialRecord) -> bool:
        """Persist a refreshed credential into *source*, keeping unrelated fields.

        Returns
        -------
        bool
            False if the source is read-only or the file could not be written.
            The refreshed token stays usable for this process either way.
        """
        if self.override_path is not None:
            source = CredentialSource.OVERRIDE

        path = self.path_for(source)
        if path is None:
            logger.info('Credential source %s is read-only, refreshed token not persisted', source.value)
            return False

        try:
            existing = self._read_existing(path)
            if source is CredentialSource.CLAUDE_CODE:
                self._merge_claude_code(existing, record)
            elif source is CredentialSource.OPENCODE:
                self._merge_opencode(existing, record)
            else:
                _set_or_drop(existing, 'access_token', record.access_token)
                _set_or_drop(existing, 'refresh_token', record.refresh_token)
                _set_or_drop(existing, 'expires_at', to_epoch_ms(record.expires_at) if record.expires_at else None)
            _write_json_atomic(path, existing)
        except OSError as e:
            logger.warning('Could not write refreshed credentials to %s: %s', path, e)
            return False

        logger.info('Refreshed credentials written to %s', path)
        return True

    @staticmethod
    def _read_existing(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            existing = json.loads(path.read_text(encoding='utf-8'))
        except json.JSONDecodeError:
            logger.warning('Replacing corrupt credentials file %s', path)
            return {}
        return existing if isinstance(existing, dict) else {}

    @staticmethod
    def _merge_claude_code(existing: dict[str, Any], record: CredentialRecord) -> None:
        oauth = existing.get('claudeAiOauth')
        if not isinstance(oauth, dict):
            oauth = existing['claudeAiOauth'] = {}

        # Keep the timestamp representation the producing tool uses
        expires: str | int | None = None
        if record.expires_at is not None:
            expires = format_iso(record.expires_at) if isinstance(oauth.get('expiresAt'), str) else to_epoch_ms(record.expires_at)

        oauth['accessToken'] = record.access_token
        _set_or_drop(oauth, 'refreshToken', record.refresh_token)
        _set_or_drop(oauth, 'expiresAt', expires)
        _set_or_drop(oauth, 'scopes', list(record.scopes) if record.scopes is not None else None)

    @staticmethod
    def _merge_opencode(existing: dict[str, Any], record: CredentialRecord) -> None:
        entry = existing.get('anthropic')
        if not isinstance(entry, dict):
            entry = existing['anthropic'] = {}

        entry['type'] = 'oauth'
        entry['access'] = record.access_token
        _set_or_drop(entry, 'refresh', record.refresh_token)
        _set_or_drop(entry, 'expires', to_epoch_ms(record.expires_at) if record.expires_at else None)


def _set_or_drop(target: dict[str, Any], key: str, value: Any) -> None:
    if value is None:
        target.pop(key, None)
    else:
        target[key] = value


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f'.{path.name}.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent='\t')
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
