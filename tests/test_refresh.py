from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import requests

from tmux_usage_monitor.refresh import (
    CLIENT_ID,
    TokenRefreshClient,
    TokenRefreshNetworkError,
    TokenRejectedError,
)

from conftest import FakeSession, NEW_TOKEN, make_response

TOKEN_URL = 'https://console.example.test/v1/oauth/token'


def client_for(*answers) -> tuple[TokenRefreshClient, FakeSession]:
    session = FakeSession({'/oauth/token': list(answers)})
    return TokenRefreshClient(token_url=TOKEN_URL, session=session), session


def test_refresh_posts_grant_and_builds_record():
    client, session = client_for(make_response(200, {
        'access_token': NEW_TOKEN, 'refresh_token': 'sk-ant-ort01-rotated', 'expires_in': 28800,
    }))

    before = datetime.now(timezone.utc)
    record = client.refresh('sk-ant-ort01-old')

    method, url, kwargs = session.calls[0]
    assert (method, url) == ('POST', TOKEN_URL)
    assert kwargs['json'] == {
        'grant_type': 'refresh_token', 'refresh_token': 'sk-ant-ort01-old', 'client_id': CLIENT_ID,
    }
    assert kwargs['timeout'] == 15
    assert record.access_token == NEW_TOKEN
    assert record.refresh_token == 'sk-ant-ort01-rotated'
    assert before + timedelta(hours=8) <= record.expires_at <= datetime.now(timezone.utc) + timedelta(hours=8)
    assert record.scopes is None


def test_refresh_keeps_old_refresh_token_when_not_rotated():
    client, _ = client_for(make_response(200, {'access_token': NEW_TOKEN, 'expires_in': 3600}))
    assert client.refresh('sk-ant-ort01-old').refresh_token == 'sk-ant-ort01-old'


@pytest.mark.parametrize('body, message', [
    ({'error': 'invalid_grant', 'error_description': 'Refresh token revoked'}, 'Refresh token revoked'),
    ({'error': 'invalid_grant'}, 'invalid_grant'),
    ({}, 'Token refresh failed: 400'),
])
def test_rejection_message(body, message):
    client, _ = client_for(make_response(400, body))
    with pytest.raises(TokenRejectedError) as exc:
        client.refresh('r')
    assert str(exc.value) == message
    assert exc.value.status_code == 400


def test_non_json_error_body():
    client, _ = client_for(make_response(502, text='<html>Bad gateway</html>'))
    with pytest.raises(TokenRejectedError, match='Token refresh failed: 502'):
        client.refresh('r')


def test_network_error():
    client, _ = client_for(requests.ConnectionError('connection refused'))
    with pytest.raises(TokenRefreshNetworkError, match='connection refused'):
        client.refresh('r')


def test_malformed_success_body():
    client, _ = client_for(make_response(200, {'token_type': 'bearer'}))
    with pytest.raises(TokenRefreshNetworkError):
        client.refresh('r')
