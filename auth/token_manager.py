# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Token Lifecycle Manager - access/refresh token validity, refresh-before-expiry, revoke on disconnect

Refresh is single-flight per widget identity: while one thread is talking to
the token endpoint, other threads asking for the same identity wait for that
call and share its result.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional

import requests

import config
from auth.credential_store import (
    CredentialStore,
    widget_key,
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    TOKEN_EXPIRY,
    SOURCES,
    TOKEN_FIELDS,
)
from auth.errors import NoRefreshToken, RefreshFailed
from auth.google_oauth import GoogleOAuthClient
from models import TokenSet
from utils.logger import StructuredLogger
from utils.timezone import now_epoch_ms

logger = logging.getLogger(__name__)


class _InFlightRefresh:
    """Result slot shared by every caller waiting on one refresh"""

    def __init__(self):
        self.done = threading.Event()
        self.access_token: Optional[str] = None
        self.error: Optional[Exception] = None


class TokenManager:
    """Owns the TokenSet of every widget identity"""

    def __init__(
        self,
        store: CredentialStore,
        oauth_client: GoogleOAuthClient,
        clock: Callable[[], int] = now_epoch_ms,
        refresh_margin_ms: Optional[int] = None
    ):
        self.store = store
        self.oauth = oauth_client
        self.clock = clock
        self.refresh_margin_ms = (
            refresh_margin_ms if refresh_margin_ms is not None
            else config.TOKEN_REFRESH_MARGIN_MIN * 60 * 1000
        )
        self.structured_logger = StructuredLogger(__name__)

        self._lock = threading.Lock()
        self._in_flight: Dict[str, _InFlightRefresh] = {}
        self._disconnect_listeners: List[Callable[[str, Optional[str]], None]] = []

    def add_disconnect_listener(self, listener: Callable[[str, Optional[str]], None]):
        """Register a callback(widget_id, reason) fired after every disconnect"""
        self._disconnect_listeners.append(listener)

    # ------------------------------------------------------------------
    # TokenSet persistence
    # ------------------------------------------------------------------

    def _keys(self, widget_id: str) -> Dict[str, str]:
        return {name: widget_key(widget_id, name) for name in TOKEN_FIELDS}

    def get_token_set(self, widget_id: str) -> Optional[TokenSet]:
        """Load the TokenSet, or None if any field is missing"""
        keys = self._keys(widget_id)
        values = self.store.get_many(keys.values())
        access = values[keys[ACCESS_TOKEN]]
        refresh = values[keys[REFRESH_TOKEN]]
        expiry = values[keys[TOKEN_EXPIRY]]
        if not access or not refresh or expiry is None:
            return None
        return TokenSet(access_token=access, refresh_token=refresh, expires_at_epoch_ms=int(expiry))

    def is_connected(self, widget_id: str) -> bool:
        return self.get_token_set(widget_id) is not None

    def _expiry_from(self, tokens: Dict) -> int:
        expires_in = tokens.get('expires_in') or config.DEFAULT_TOKEN_LIFETIME_SEC
        return self.clock() + int(expires_in) * 1000

    def store_tokens(self, widget_id: str, tokens: Dict) -> TokenSet:
        """Persist a fresh TokenSet from a code-exchange response"""
        token_set = TokenSet(
            access_token=tokens['access_token'],
            refresh_token=tokens['refresh_token'],
            expires_at_epoch_ms=self._expiry_from(tokens)
        )
        self._save(widget_id, token_set)
        logger.info(f"Tokens stored for widget {widget_id}")
        return token_set

    def _save(self, widget_id: str, token_set: TokenSet):
        keys = self._keys(widget_id)
        self.store.update({
            keys[ACCESS_TOKEN]: token_set.access_token,
            keys[REFRESH_TOKEN]: token_set.refresh_token,
            keys[TOKEN_EXPIRY]: token_set.expires_at_epoch_ms
        })

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def get_valid_access_token(self, widget_id: str) -> Optional[str]:
        """Return an access token good for at least the refresh margin.

        Returns None when the identity is not connected. Raises RefreshFailed
        if a needed refresh is rejected (the identity is disconnected first).
        """
        token_set = self.get_token_set(widget_id)
        if token_set is None:
            return None

        if not token_set.expires_within(self.clock(), self.refresh_margin_ms):
            return token_set.access_token

        logger.info(f"Token for widget {widget_id} expired or expiring, refreshing...")
        return self.refresh(widget_id, force=False)

    def refresh(self, widget_id: str, force: bool = True) -> str:
        """Refresh the access token, joining an in-flight refresh if there is one

        With force=False the leader first re-reads the stored token set and
        skips the provider call when another refresh already renewed it.
        """
        with self._lock:
            call = self._in_flight.get(widget_id)
            leader = call is None
            if leader:
                call = _InFlightRefresh()
                self._in_flight[widget_id] = call

        if not leader:
            logger.debug(f"Joining in-flight token refresh for widget {widget_id}")
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.access_token

        try:
            fresh = None if force else self._fresh_access_token(widget_id)
            if fresh is not None:
                logger.debug(f"Token for widget {widget_id} already refreshed")
                call.access_token = fresh
            else:
                call.access_token = self._do_refresh(widget_id)
            return call.access_token
        except Exception as e:
            call.error = e
            raise
        finally:
            with self._lock:
                self._in_flight.pop(widget_id, None)
            call.done.set()

    def _fresh_access_token(self, widget_id: str) -> Optional[str]:
        token_set = self.get_token_set(widget_id)
        if token_set is None or token_set.expires_within(self.clock(), self.refresh_margin_ms):
            return None
        return token_set.access_token

    def _do_refresh(self, widget_id: str) -> str:
        token_set = self.get_token_set(widget_id)
        refresh_token = token_set.refresh_token if token_set else None
        if not refresh_token:
            logger.warning(f"No refresh token available for widget {widget_id}")
            raise NoRefreshToken(f"No refresh token stored for widget {widget_id}")

        try:
            tokens = self.oauth.refresh_access_token(refresh_token)
        except RefreshFailed:
            logger.error(f"Refresh token rejected for widget {widget_id}, disconnecting")
            self.disconnect(widget_id, reason='refresh_failed')
            raise

        keys = self._keys(widget_id)
        with self.store.lock:
            # A disconnect that raced this refresh wins
            if self.store.get(keys[REFRESH_TOKEN]) != refresh_token:
                raise RefreshFailed(f"Widget {widget_id} was disconnected during refresh")
            new_set = TokenSet(
                access_token=tokens['access_token'],
                refresh_token=tokens.get('refresh_token') or refresh_token,
                expires_at_epoch_ms=self._expiry_from(tokens)
            )
            self._save(widget_id, new_set)

        self.structured_logger.log_sync_event('token_refreshed', {
            'widget_id': widget_id,
            'expires_at_epoch_ms': new_set.expires_at_epoch_ms
        }, verbose=False)
        return new_set.access_token

    def disconnect(self, widget_id: str, reason: Optional[str] = None):
        """Revoke (best effort) and clear all token and source state for an identity

        Never raises because of the network: local disconnection always succeeds.
        """
        token_set = self.get_token_set(widget_id)
        if token_set is not None:
            try:
                if self.oauth.revoke_token(token_set.access_token):
                    self.structured_logger.log_security_event('token_revoked', widget_id=widget_id)
            except requests.exceptions.RequestException as e:
                logger.warning(f"Failed to revoke token for widget {widget_id}: {e}")

        keys = list(self._keys(widget_id).values()) + [widget_key(widget_id, SOURCES)]
        self.store.delete(*keys)
        logger.info(f"Widget {widget_id} disconnected ({reason or 'user request'})")

        for listener in list(self._disconnect_listeners):
            try:
                listener(widget_id, reason)
            except Exception as e:
                logger.error(f"Disconnect listener failed for widget {widget_id}: {e}")
