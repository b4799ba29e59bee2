"""
Shared fixtures: in-memory credential store, fake provider responses, fixed clocks
"""

import json
import os
import sys

import pytest
import requests

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from auth.credential_store import CredentialStore, widget_key, ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRY
from auth.google_oauth import GoogleOAuthClient
from cal_ops.reader import CalendarReader

NOW_MS = 1_700_000_000_000


def make_response(status_code=200, body=None, reason=None):
    """Build a real requests.Response carrying a JSON body"""
    response = requests.models.Response()
    response.status_code = status_code
    response.reason = reason or {
        200: 'OK', 400: 'Bad Request', 401: 'Unauthorized',
        403: 'Forbidden', 500: 'Internal Server Error', 503: 'Service Unavailable'
    }.get(status_code, 'Error')
    response._content = json.dumps(body if body is not None else {}).encode('utf-8')
    response.url = 'https://test.invalid/'
    return response


class FakeClock:
    """Mutable epoch-ms clock for the token manager"""

    def __init__(self, now_ms=NOW_MS):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms

    def advance(self, seconds):
        self.now_ms += int(seconds * 1000)


@pytest.fixture(autouse=True)
def utc_display(monkeypatch):
    """Render display times in UTC so expectations are zone-independent"""
    monkeypatch.setattr(config, 'DISPLAY_TIMEZONE', 'UTC')


@pytest.fixture
def store():
    return CredentialStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oauth_client():
    return GoogleOAuthClient(
        client_id='test-client-id',
        client_secret='test-client-secret',
        redirect_uri='http://localhost:5000/auth/callback',
        timeout=5
    )


@pytest.fixture
def reader():
    return CalendarReader(timeout=5)


@pytest.fixture
def seed_tokens(store):
    """Write a TokenSet for a widget directly into the store"""

    def _seed(widget_id, expires_at_ms, access='access-old', refresh='refresh-1'):
        store.update({
            widget_key(widget_id, ACCESS_TOKEN): access,
            widget_key(widget_id, REFRESH_TOKEN): refresh,
            widget_key(widget_id, TOKEN_EXPIRY): expires_at_ms
        })

    return _seed


def calendar_list_body(*entries):
    return {'kind': 'calendar#calendarList', 'items': list(entries)}


def events_body(*items):
    return {'kind': 'calendar#events', 'items': list(items)}
