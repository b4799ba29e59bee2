"""
Credential store tests - namespacing, atomic multi-key writes, file persistence
"""

import json

import pytest

from auth.credential_store import (
    CredentialStore,
    widget_key,
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TOKEN_EXPIRY,
)


class TestKeyScheme:

    @pytest.mark.auth
    def test_keys_are_namespaced_by_widget(self):
        assert widget_key('cal-1', ACCESS_TOKEN) == 'calendar_cal-1_access_token'
        assert widget_key('cal-1', ACCESS_TOKEN) != widget_key('cal-2', ACCESS_TOKEN)

    @pytest.mark.auth
    def test_empty_widget_id_rejected(self):
        with pytest.raises(ValueError):
            widget_key('', ACCESS_TOKEN)

    @pytest.mark.auth
    def test_two_widgets_do_not_clobber_each_other(self, store):
        store.set(widget_key('a', ACCESS_TOKEN), 'token-a')
        store.set(widget_key('b', ACCESS_TOKEN), 'token-b')

        store.delete(widget_key('a', ACCESS_TOKEN))

        assert store.get(widget_key('a', ACCESS_TOKEN)) is None
        assert store.get(widget_key('b', ACCESS_TOKEN)) == 'token-b'


class TestStoreOperations:

    @pytest.mark.auth
    def test_update_and_get_many(self, store):
        store.update({'x': 1, 'y': 2})
        assert store.get_many(['x', 'y', 'z']) == {'x': 1, 'y': 2, 'z': None}

    @pytest.mark.auth
    def test_pop_returns_and_removes(self, store):
        store.set('state', 'abc')
        assert store.pop('state') == 'abc'
        assert store.pop('state') is None

    @pytest.mark.auth
    def test_delete_ignores_missing_keys(self, store):
        store.delete('never-written')
        assert store.keys() == []


class TestFilePersistence:

    @pytest.mark.auth
    def test_values_survive_reload(self, tmp_path):
        path = tmp_path / 'nested' / 'credentials.json'
        first = CredentialStore(str(path))
        first.update({
            widget_key('w', ACCESS_TOKEN): 'access',
            widget_key('w', REFRESH_TOKEN): 'refresh',
            widget_key('w', TOKEN_EXPIRY): 123
        })

        second = CredentialStore(str(path))
        assert second.get(widget_key('w', REFRESH_TOKEN)) == 'refresh'
        assert second.get(widget_key('w', TOKEN_EXPIRY)) == 123

    @pytest.mark.auth
    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / 'credentials.json'
        path.write_text('{not json')

        store = CredentialStore(str(path))
        assert store.keys() == []

    @pytest.mark.auth
    def test_delete_is_flushed(self, tmp_path):
        path = tmp_path / 'credentials.json'
        store = CredentialStore(str(path))
        store.update({'a': 1, 'b': 2})
        store.delete('a', 'b')

        assert json.loads(path.read_text()) == {}
