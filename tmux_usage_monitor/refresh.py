"""OAuth refresh-token exchange against the Anthropic token endpoint."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from . import __version__, logger
from .credentials import CredentialRecord

TOKEN_URL = 'https://console.anthropic.com/v1/oauth/token'
CLIENT_ID = '9d1c250a-e61b-44d9-88ed-5944d1962f5e'
REFRESH_TIMEOUT = 15


class TokenRefreshError(Exception):
    """The refresh token could not be exchanged."""


class TokenRejectedError(TokenRefreshError):
    """The token endpoint answered with an error; the user has to log in again."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenRefreshNetworkError(TokenRefreshError):
    """The token endpoint could not be reached; retrying later may succeed."""


def refresh_error_message(resp: requests.Response) -> str:
    """Extract ``error_description`` → ``error`` from an error body, with a generic fallback."""
    fallback = f'Token refresh failed: {resp.status_code}'
    try:
        body = resp.json()
    except ValueError:
        return fallback
    if not isinstance(body, dict):
        return fallback

    for key in ('error_description', 'error'):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value

    return fallback


class TokenRefreshClient:
    """Exchanges refresh tokens for new access tokens."""

    def __init__(
        self,
        token_url: str = TOKEN_URL,
        client_id: str = CLIENT_ID,
        session: requests.Session | None = None,
        timeout: float = REFRESH_TIMEOUT,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def refresh(self, refresh_token: str) -> CredentialRecord:
        """Exchange *refresh_token* for a new credential.

        Returns
        -------
        CredentialRecord
            The new credential.  ``scopes`` is not part of the token response
            and is left empty.

        Raises
        ------
        TokenRejectedError
            If the endpoint answers with a non-2xx status.
        TokenRefreshNetworkError
            If the endpoint cannot be reached or answers with garbage.
        """
        payload = {
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'client_id': self.client_id,
        }
        try:
            resp = self.session.post(
                self.token_url,
                json=payload,
                headers={'Content-Type': 'application/json', 'User-Agent': f'tmux-usage-monitor/{__version__}'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning('Token refresh network error: %s', e)
            raise TokenRefreshNetworkError(f'Token refresh network error: {e}') from e

        if not resp.ok:
            message = refresh_error_message(resp)
            logger.warning('Token refresh rejected (%s): %s', resp.status_code, message)
            raise TokenRejectedError(message, resp.status_code)

        try:
            data: dict[str, Any] = resp.json()
            access_token = data['access_token']
            expires_in = float(data.get('expires_in') or 0)
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRefreshNetworkError(f'Unexpected token refresh response: {e}') from e

        logger.info('Access token refreshed')
        return CredentialRecord(
            access_token=access_token,
            refresh_token=data.get('refresh_token') or refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None,
        )
