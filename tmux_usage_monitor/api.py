"""
Usage API Client
================

Authenticated client for the two read endpoints of the Anthropic OAuth API
(``/usage`` and ``/profile``).

Every public method returns an :class:`ApiResult`; nothing raises across the
client boundary.  On a 401/403 the client re-reads the credential store once
before giving up, because the token is usually refreshed by another tool
(Claude Code, OpenCode) that writes the new one to disk.
"""
from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Generic, TypeVar

import requests

from . import __version__, logger
from .credentials import (
    CredentialRecord,
    CredentialsError,
    CredentialSource,
    CredentialStore,
    parse_timestamp,
)
from .refresh import TokenRefreshClient, TokenRefreshError, TokenRefreshNetworkError

API_BASE = 'https://api.anthropic.com/api/oauth'
ANTHROPIC_BETA = 'oauth-2025-04-20'
REQUEST_TIMEOUT = 10

CREDENTIALS_ERROR = 'credentials_error'
AUTHENTICATION_ERROR = 'authentication_error'
RATE_LIMIT_ERROR = 'rate_limit_error'
API_ERROR = 'api_error'

T = TypeVar('T')


# ── Data model ────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageWindow:
    utilization: float
    resets_at: datetime | None


@dataclass(frozen=True)
class UsageSnapshot:
    five_hour: UsageWindow | None = None
    seven_day: UsageWindow | None = None
    seven_day_oauth_apps: UsageWindow | None = None
    seven_day_opus: UsageWindow | None = None

    WINDOWS = ('five_hour', 'seven_day', 'seven_day_oauth_apps', 'seven_day_opus')

    def windows(self) -> list[tuple[str, UsageWindow]]:
        """Return ``(name, window)`` for every window that applies to the account."""
        return [(name, getattr(self, name)) for name in self.WINDOWS if getattr(self, name) is not None]


@dataclass(frozen=True)
class Account:
    uuid: str = ''
    full_name: str = ''
    display_name: str = ''
    email: str = ''
    has_claude_max: bool = False
    has_claude_pro: bool = False


@dataclass(frozen=True)
class Organization:
    uuid: str = ''
    name: str = ''
    organization_type: str = ''
    billing_type: str = ''
    rate_limit_tier: str = ''


@dataclass(frozen=True)
class Profile:
    account: Account
    organization: Organization | None = None

    @property
    def name(self) -> str:
        return self.account.display_name or self.account.full_name or self.account.email

    @property
    def plan_badge(self) -> str | None:
        if self.organization and self.organization.organization_type == 'claude_enterprise':
            return 'ENT'
        if self.account.has_claude_max:
            return 'MAX'
        if self.account.has_claude_pro:
            return 'PRO'
        return None


@dataclass(frozen=True)
class Summary:
    usage: UsageSnapshot
    profile: Profile


@dataclass(frozen=True)
class ApiError:
    type: str
    message: str
    status_code: int = 0
    source: CredentialSource | None = None

    @property
    def needs_login(self) -> bool:
        return self.type in (CREDENTIALS_ERROR, AUTHENTICATION_ERROR)


@dataclass(frozen=True)
class ApiResult(Generic[T]):
    data: T | None = None
    error: ApiError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ── Response parsing ──────────────────────────────────────────


def parse_error_message(body: str) -> str:
    """Return the human-readable message of an API error body, or the body itself."""
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    if not isinstance(parsed, dict):
        return body

    error = parsed.get('error')
    if isinstance(error, dict) and error.get('message'):
        return str(error['message'])
    if isinstance(error, str) and error:
        return error
    if parsed.get('message'):
        return str(parsed['message'])

    return body


def error_type_for_status(status_code: int) -> str:
    if status_code in (401, 403):
        return AUTHENTICATION_ERROR
    if status_code == 429:
        return RATE_LIMIT_ERROR
    return API_ERROR


def parse_window(raw: Any) -> UsageWindow | None:
    if not isinstance(raw, dict) or raw.get('utilization') is None:
        return None
    try:
        resets_at = parse_timestamp(raw.get('resets_at'))
    except ValueError:
        resets_at = None
    return UsageWindow(utilization=float(raw['utilization']), resets_at=resets_at)


def parse_usage(raw: dict[str, Any]) -> UsageSnapshot:
    return UsageSnapshot(**{name: parse_window(raw.get(name)) for name in UsageSnapshot.WINDOWS})


def parse_profile(raw: dict[str, Any]) -> Profile:
    account = raw.get('account') or {}
    org = raw.get('organization')
    return Profile(
        account=Account(
            uuid=account.get('uuid') or '',
            full_name=account.get('full_name') or '',
            display_name=account.get('display_name') or '',
            email=account.get('email') or '',
            has_claude_max=bool(account.get('has_claude_max')),
            has_claude_pro=bool(account.get('has_claude_pro')),
        ),
        organization=Organization(
            uuid=org.get('uuid') or '',
            name=org.get('name') or '',
            organization_type=org.get('organization_type') or '',
            billing_type=org.get('billing_type') or '',
            rate_limit_tier=org.get('rate_limit_tier') or '',
        ) if isinstance(org, dict) else None,
    )


# ── Client ────────────────────────────────────────────────────


class UsageApiClient:
    """Fetches usage windows and the account profile.

    Parameters
    ----------
    store : CredentialStore
        Where credentials are loaded from and refreshed ones written to.
    refresher : TokenRefreshClient, optional
        Used when a loaded credential has already expired.  Without one,
        expired tokens are sent as-is and the server decides.
    source : CredentialSource, optional
        Only load credentials from this source.
    credentials : CredentialRecord, optional
        Start with this credential instead of loading one.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresher: TokenRefreshClient | None = None,
        source: CredentialSource | None = None,
        credentials: CredentialRecord | None = None,
        base_url: str = API_BASE,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.store = store
        self.refresher = refresher
        self.source = source
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.credential_source: CredentialSource | None = source
        self._credentials = credentials
        self._lock = threading.Lock()

    # ── Credentials ──

    def _resolve(self) -> CredentialRecord:
        """Load a credential from the store, refreshing it first if it has expired.

        Must be called with ``self._lock`` held.
        """
        loaded = self.store.load(self.source)
        self.credential_source = loaded.source
        record = loaded.record

        if record.is_expired() and record.refresh_token and self.refresher is not None:
            logger.info('Credentials from %s expired, refreshing', loaded.source.value)
            refreshed = self.refresher.refresh(record.refresh_token)
            if refreshed.scopes is None:
                refreshed = replace(refreshed, scopes=record.scopes)
            if not self.store.write_back(loaded.source, refreshed):
                logger.warning('Refreshed token not persisted; it will be refreshed again next run')
            record = refreshed

        return record

    def _credential_failure(self, e: Exception) -> ApiResult[Any]:
        if isinstance(e, TokenRefreshNetworkError):
            return ApiResult(error=ApiError(API_ERROR, str(e), 0, self.credential_source))
        return ApiResult(error=ApiError(CREDENTIALS_ERROR, str(e), 0, self.credential_source))

    def _ensure_credentials(self) -> CredentialRecord:
        with self._lock:
            if self._credentials is None:
                self._credentials = self._resolve()
            return self._credentials

    def _reload_after_rejection(self, rejected: str) -> CredentialRecord | None:
        """Drop the rejected token and re-read the store; None if nothing usable was found."""
        with self._lock:
            if self._credentials is not None and self._credentials.access_token != rejected:
                return self._credentials  # The other parallel request already re-read it

            self._credentials = None
            try:
                self._credentials = self._resolve()
            except (CredentialsError, TokenRefreshError) as e:
                logger.info('Re-reading credentials after rejection failed: %s', e)
                return None
            return self._credentials

    # ── Requests ──

    def _headers(self, token: str) -> dict[str, str]:
        return {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
            'User-Agent': f'tmux-usage-monitor/{__version__}',
            'anthropic-beta': ANTHROPIC_BETA,
        }

    def _request(self, endpoint: str) -> ApiResult[Any]:
        try:
            record = self._ensure_credentials()
        except (CredentialsError, TokenRefreshError) as e:
            return self._credential_failure(e)

        url = f'{self.base_url}/{endpoint.lstrip("/")}'
        is_retry = False
        while True:
            used_token = record.access_token
            try:
                resp = self.session.get(url, headers=self._headers(used_token), timeout=self.timeout)
            except requests.Timeout:
                logger.warning('GET %s timed out after %ss', url, self.timeout)
                return ApiResult(error=ApiError(API_ERROR, f'Request timed out after {self.timeout:g}s', 0, self.credential_source))
            except requests.RequestException as e:
                logger.warning('GET %s failed: %s', url, e)
                return ApiResult(error=ApiError(API_ERROR, str(e) or 'Network error', 0, self.credential_source))

            if resp.status_code in (401, 403) and not is_retry:
                logger.info('GET %s rejected with %s, re-reading credentials', url, resp.status_code)
                fresh = self._reload_after_rejection(used_token)
                if fresh is not None and fresh.access_token != used_token:
                    record, is_retry = fresh, True
                    continue

            if not resp.ok:
                logger.warning('GET %s returned %s', url, resp.status_code)
                return ApiResult(error=ApiError(
                    error_type_for_status(resp.status_code),
                    parse_error_message(resp.text),
                    resp.status_code,
                    self.credential_source,
                ))

            try:
                return ApiResult(data=resp.json())
            except ValueError:
                return ApiResult(error=ApiError(API_ERROR, 'Invalid JSON in API response', resp.status_code, self.credential_source))

    def _get(self, endpoint: str, parse: Callable[[dict[str, Any]], T]) -> ApiResult[T]:
        result = self._request(endpoint)
        if not result.ok:
            return result
        if not isinstance(result.data, dict):
            return ApiResult(error=ApiError(API_ERROR, f'Unexpected /{endpoint} response', 200, self.credential_source))
        try:
            return ApiResult(data=parse(result.data))
        except (AttributeError, TypeError, ValueError, OverflowError) as e:
            logger.warning('Malformed /%s response: %s', endpoint, e)
            return ApiResult(error=ApiError(API_ERROR, f'Malformed /{endpoint} response', 200, self.credential_source))

    def get_usage(self) -> ApiResult[UsageSnapshot]:
        return self._get('usage', parse_usage)

    def get_profile(self) -> ApiResult[Profile]:
        return self._get('profile', parse_profile)

    def get_summary(self) -> ApiResult[Summary]:
        """Fetch usage and profile in parallel; the first failure (usage before profile) wins."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='usage-fetch') as pool:
            usage_future = pool.submit(self.get_usage)
            profile_future = pool.submit(self.get_profile)
            usage, profile = usage_future.result(), profile_future.result()

        if not usage.ok:
            return ApiResult(error=usage.error)
        if not profile.ok:
            return ApiResult(error=profile.error)
        return ApiResult(data=Summary(usage=usage.data, profile=profile.data))
