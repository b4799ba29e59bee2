# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Authorization Flow Controller - builds the consent redirect, validates the callback, exchanges the code
"""
import hmac
import logging
import secrets
from typing import Callable, List, Optional

import requests

from auth.credential_store import CredentialStore, OAUTH_STATE_KEY, OAUTH_WIDGET_KEY
from auth.errors import CsrfMismatch, TokenExchangeFailed, SourceListFailed
from auth.google_oauth import GoogleOAuthClient
from auth.token_manager import TokenManager
from cal_ops.sources import CalendarSourceRegistry
from models import CalendarSource
from utils.logger import StructuredLogger

logger = logging.getLogger(__name__)


def generate_oauth_state() -> str:
    return secrets.token_urlsafe(24)


class AuthorizationFlow:
    """Authorization-code-with-refresh-token flow for one widget at a time

    The in-flight state lives under a single shared key, so starting a second
    authorization replaces the first.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth_client: GoogleOAuthClient,
        token_manager: TokenManager,
        registry: CalendarSourceRegistry,
        state_factory: Callable[[], str] = generate_oauth_state
    ):
        self.store = store
        self.oauth = oauth_client
        self.tokens = token_manager
        self.registry = registry
        self.state_factory = state_factory
        self.structured_logger = StructuredLogger(__name__)

    def begin_authorization(self, widget_id: str) -> str:
        """Persist a fresh OAuth state and return the provider URL to redirect to"""
        state = self.state_factory()
        self.store.update({
            OAUTH_STATE_KEY: state,
            OAUTH_WIDGET_KEY: widget_id
        })
        logger.info(f"Starting Google authorization for widget {widget_id}")
        return self.oauth.get_auth_url(state)

    def pending_widget_id(self) -> Optional[str]:
        """Widget identity waiting on the provider's consent page, if any"""
        return self.store.get(OAUTH_WIDGET_KEY)

    def is_authorizing(self, widget_id: str) -> bool:
        return self.pending_widget_id() == widget_id and self.store.get(OAUTH_STATE_KEY) is not None

    def cancel_authorization(self, widget_id: str) -> bool:
        """Drop the pending authorization if it belongs to this widget"""
        with self.store.lock:
            if self.store.get(OAUTH_WIDGET_KEY) != widget_id:
                return False
            self.store.delete(OAUTH_STATE_KEY, OAUTH_WIDGET_KEY)
        logger.info(f"Authorization cancelled for widget {widget_id}")
        return True

    def _consume_state(self, widget_id: str, received_state: Optional[str]):
        """Check and delete the persisted state in one step

        Raises:
            CsrfMismatch: when the state is absent, already consumed or different
        """
        with self.store.lock:
            persisted = self.store.get(OAUTH_STATE_KEY)
            pending_widget = self.store.get(OAUTH_WIDGET_KEY)

            valid = (
                bool(persisted) and bool(received_state)
                and hmac.compare_digest(str(persisted), str(received_state))
                and (pending_widget is None or pending_widget == widget_id)
            )
            if not valid:
                self.structured_logger.log_security_event('oauth_state_mismatch', widget_id=widget_id, details={
                    'state_present': persisted is not None
                })
                raise CsrfMismatch("OAuth state parameter is missing, consumed or does not match")

            self.store.delete(OAUTH_STATE_KEY, OAUTH_WIDGET_KEY)

    def handle_callback(self, widget_id: str, code: str, received_state: Optional[str]) -> List[CalendarSource]:
        """Validate the callback, exchange the code and bootstrap the source list

        Returns:
            The freshly fetched CalendarSource list (empty if listing failed)
        Raises:
            CsrfMismatch: state invalid, no exchange attempted
            TokenExchangeFailed: provider rejected the code, identity disconnected
        """
        self._consume_state(widget_id, received_state)

        try:
            tokens = self.oauth.exchange_code_for_token(code)
        except TokenExchangeFailed:
            self.tokens.disconnect(widget_id, reason='exchange_failed')
            raise

        token_set = self.tokens.store_tokens(widget_id, tokens)
        self.structured_logger.log_sync_event('authorization_completed', {'widget_id': widget_id})

        try:
            return self.registry.refresh_sources(widget_id, token_set.access_token)
        except (SourceListFailed, requests.exceptions.RequestException) as e:
            # Re-bootstrap on the next mount fills the list
            logger.warning(f"Initial calendar list fetch failed for widget {widget_id}: {e}")
            return []
