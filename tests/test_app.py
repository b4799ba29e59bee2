"""
Flask route tests - OAuth redirect/callback handling, widget status, settings and refresh endpoints
"""

from unittest.mock import patch

import pytest

import config
from app import create_app
from auth.credential_store import OAUTH_STATE_KEY, OAUTH_WIDGET_KEY
from models import CalendarSource
from sync.engine import CalendarSyncEngine
from utils.timezone import now_epoch_ms

from conftest import make_response, calendar_list_body

WIDGET = 'cal-1'


@pytest.fixture
def engine(store, oauth_client, reader):
    engine = CalendarSyncEngine(store=store, oauth_client=oauth_client, reader=reader, autostart=False)
    yield engine
    engine.shutdown()


@pytest.fixture
def client(engine):
    app = create_app(engine)
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def connected(engine, seed_tokens):
    seed_tokens(WIDGET, now_epoch_ms() + 3600 * 1000)
    engine.registry.save_sources(WIDGET, [
        CalendarSource(id='a', display_name='A', color='#111111', selected=False),
        CalendarSource(id='b', display_name='B', color='#222222', selected=False),
    ])
    return WIDGET


class TestHealth:

    @pytest.mark.api
    def test_health(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'healthy'

    @pytest.mark.api
    def test_security_headers(self, client):
        response = client.get('/health')
        assert response.headers['X-Frame-Options'] == 'DENY'
        assert response.headers['X-Content-Type-Options'] == 'nosniff'


class TestOAuthRoutes:

    @pytest.mark.api
    def test_auth_start_redirects_to_google(self, client, store):
        response = client.get(f'/widgets/{WIDGET}/auth/start')

        assert response.status_code == 302
        assert response.headers['Location'].startswith(config.GOOGLE_AUTH_URL)
        assert store.get(OAUTH_WIDGET_KEY) == WIDGET

    @pytest.mark.api
    def test_callback_success_redirects_to_dashboard(self, client, engine, store):
        client.get(f'/widgets/{WIDGET}/auth/start')
        state = store.get(OAUTH_STATE_KEY)

        with patch('auth.google_oauth.requests.post') as mock_post, \
                patch('cal_ops.reader.requests.get') as mock_get:
            mock_post.return_value = make_response(200, {
                'access_token': 'access-1', 'refresh_token': 'refresh-1', 'expires_in': 3600
            })
            mock_get.return_value = make_response(200, calendar_list_body({'id': 'me', 'summary': 'Me'}))
            response = client.get(f'/auth/callback?code=auth-code&state={state}')

        assert response.status_code == 302
        assert response.headers['X-Robots-Tag'].startswith('noindex')
        assert engine.get_status(WIDGET)['connection'] == 'connected'

    @pytest.mark.api
    def test_callback_state_mismatch(self, client, engine):
        client.get(f'/widgets/{WIDGET}/auth/start')

        with patch('auth.google_oauth.requests.post') as mock_post:
            response = client.get('/auth/callback?code=auth-code&state=forged')
            mock_post.assert_not_called()

        assert response.status_code == 400
        assert engine.get_status(WIDGET)['connection'] != 'connected'

    @pytest.mark.api
    def test_callback_missing_code(self, client):
        client.get(f'/widgets/{WIDGET}/auth/start')
        response = client.get('/auth/callback?state=whatever')
        assert response.status_code == 400

    @pytest.mark.api
    def test_provider_denial_cancels_pending_authorization(self, client, store):
        client.get(f'/widgets/{WIDGET}/auth/start')

        response = client.get('/auth/callback?error=access_denied')

        assert response.status_code == 400
        assert response.get_json()['detail'] == 'access_denied'
        assert store.get(OAUTH_STATE_KEY) is None

    @pytest.mark.api
    def test_exchange_failure_returns_status_text(self, client, store):
        client.get(f'/widgets/{WIDGET}/auth/start')
        state = store.get(OAUTH_STATE_KEY)

        with patch('auth.google_oauth.requests.post') as mock_post:
            mock_post.return_value = make_response(400, {'error': 'invalid_grant'}, reason='Bad Request')
            response = client.get(f'/auth/callback?code=bad-code&state={state}')

        assert response.status_code == 502
        assert response.get_json()['detail'] == 'Bad Request'

        status = client.get(f'/widgets/{WIDGET}/status').get_json()
        assert status['status'] == 'auth_failed'

    @pytest.mark.api
    def test_cancel_route(self, client):
        client.get(f'/widgets/{WIDGET}/auth/start')

        response = client.post(f'/widgets/{WIDGET}/auth/cancel')

        assert response.get_json()['cancelled'] is True
        assert response.get_json()['status'] == 'never_connected'


class TestWidgetRoutes:

    @pytest.mark.api
    def test_status_of_new_widget(self, client):
        response = client.get(f'/widgets/{WIDGET}/status')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'never_connected'

    @pytest.mark.api
    def test_events_of_new_widget(self, client):
        body = client.get(f'/widgets/{WIDGET}/events').get_json()
        assert body['events'] == []

    @pytest.mark.api
    def test_refresh_requires_connection(self, client):
        response = client.post(f'/widgets/{WIDGET}/refresh')
        assert response.status_code == 409

    @pytest.mark.api
    def test_refresh_accepted_when_connected(self, client, connected):
        with patch('cal_ops.reader.requests.get') as mock_get:
            response = client.post(f'/widgets/{WIDGET}/refresh')
            mock_get.assert_not_called()

        assert response.status_code == 202
        assert response.get_json()['status'] == 'started'

    @pytest.mark.api
    def test_toggle_source(self, client, connected):
        response = client.post(f'/widgets/{WIDGET}/sources/1/toggle')

        sources = response.get_json()['sources']
        assert [s['selected'] for s in sources] == [False, True]

        listed = client.get(f'/widgets/{WIDGET}/sources').get_json()['sources']
        assert listed[1]['selected'] is True

    @pytest.mark.api
    def test_config_roundtrip(self, client):
        response = client.put(f'/widgets/{WIDGET}/config', json={'defaultView': 'week'})
        assert response.status_code == 200

        body = client.get(f'/widgets/{WIDGET}/config').get_json()
        assert body['defaultView'] == 'week'
        assert body['googleCalendarConnected'] is False

    @pytest.mark.api
    def test_config_rejects_invalid_values(self, client):
        response = client.put(f'/widgets/{WIDGET}/config', json={'startDay': 'friday'})
        assert response.status_code == 400

    @pytest.mark.api
    def test_config_rejects_non_object(self, client):
        response = client.put(f'/widgets/{WIDGET}/config', data='nope', content_type='text/plain')
        assert response.status_code == 400

    @pytest.mark.api
    def test_disconnect(self, client, connected):
        with patch('auth.google_oauth.requests.post', return_value=make_response(200)):
            response = client.post(f'/widgets/{WIDGET}/disconnect')

        assert response.get_json()['connection'] == 'disconnected'

    @pytest.mark.api
    def test_delete_widget(self, client, engine, connected):
        with patch('auth.google_oauth.requests.post', return_value=make_response(200)):
            response = client.delete(f'/widgets/{WIDGET}')

        assert response.status_code == 204
        assert not engine.is_mounted(WIDGET)
