# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Google OAuth - authorization URL, token endpoint and revoke endpoint calls
"""
import logging
import time
import urllib.parse
from typing import Dict, List, Optional

import requests

import config
from auth.errors import TokenExchangeFailed, RefreshFailed
from utils.logger import StructuredLogger

logger = logging.getLogger(__name__)


class GoogleOAuthClient:
    """Thin client over Google's OAuth2 endpoints. Holds the client secret."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        timeout: Optional[int] = None
    ):
        self.client_id = client_id if client_id is not None else config.GOOGLE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else config.GOOGLE_CLIENT_SECRET
        self.redirect_uri = redirect_uri or config.REDIRECT_URI
        self.scopes = scopes or config.GOOGLE_SCOPES
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.structured_logger = StructuredLogger(__name__)

    def get_auth_url(self, state: str) -> str:
        params = {
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'response_type': 'code',
            'state': state,
            'scope': ' '.join(self.scopes),
            'access_type': 'offline',
            'prompt': 'consent'
        }
        return f"{config.GOOGLE_AUTH_URL}?" + urllib.parse.urlencode(params)

    def _post_token(self, data: Dict[str, str]) -> requests.Response:
        started = time.monotonic()
        response = requests.post(config.GOOGLE_TOKEN_URL, data=data, timeout=self.timeout)
        self.structured_logger.log_api_call(
            'POST', config.GOOGLE_TOKEN_URL,
            status_code=response.status_code,
            duration_ms=(time.monotonic() - started) * 1000
        )
        return response

    def exchange_code_for_token(self, auth_code: str) -> Dict:
        """Exchange authorization code for tokens

        Raises:
            TokenExchangeFailed: on any non-success response or transport error
        """
        data = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'code': auth_code,
            'redirect_uri': self.redirect_uri,
            'grant_type': 'authorization_code'
        }

        try:
            response = self._post_token(data)
        except requests.exceptions.RequestException as e:
            logger.error(f"Token exchange request failed: {e}")
            raise TokenExchangeFailed(f"Token exchange failed: {e}") from e

        if not response.ok:
            logger.error(f"Token exchange failed: {response.status_code} - {response.reason}")
            raise TokenExchangeFailed(
                f"Token exchange failed: {response.reason}",
                status_code=response.status_code,
                status_text=response.reason
            )

        tokens = response.json()
        if not tokens.get('access_token') or not tokens.get('refresh_token'):
            logger.error("Token exchange response missing access or refresh token")
            raise TokenExchangeFailed(
                "Token exchange failed: incomplete token response",
                status_code=response.status_code,
                status_text=response.reason
            )

        logger.info("Authorization code exchanged successfully")
        logger.debug("ACCESS_TOKEN=<redacted> REFRESH_TOKEN=<redacted>")
        return tokens

    def refresh_access_token(self, refresh_token: str) -> Dict:
        """Refresh the access token using refresh token

        Raises:
            RefreshFailed: on provider rejection or when the endpoint is unreachable
        """
        data = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token'
        }

        try:
            response = self._post_token(data)
        except requests.exceptions.RequestException as e:
            logger.error(f"Token refresh exception: {str(e)}")
            raise RefreshFailed(f"Token refresh failed: {e}") from e

        if not response.ok:
            logger.error(f"Token refresh failed: {response.status_code} - {response.reason}")
            raise RefreshFailed(
                f"Token refresh failed: {response.reason}",
                status_code=response.status_code,
                status_text=response.reason
            )

        tokens = response.json()
        if not tokens.get('access_token'):
            raise RefreshFailed("Token refresh failed: no access token in response",
                                status_code=response.status_code)
        return tokens

    def revoke_token(self, token: str) -> bool:
        """Revoke a token with the provider. Returns True when Google accepted it.

        Transport errors propagate, the caller decides whether they matter.
        """
        response = requests.post(
            config.GOOGLE_REVOKE_URL,
            params={'token': token},
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=self.timeout
        )
        if response.ok:
            return True
        logger.warning(f"Token revoke returned {response.status_code} - {response.reason}")
        return False
