# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Error taxonomy for the calendar sync engine
"""
from typing import Optional


class CalendarSyncError(Exception):
    """Base class for all sync engine errors"""
    pass


class AuthError(CalendarSyncError):
    """Authorization or token lifecycle failure"""

    def __init__(self, message: str, status_code: Optional[int] = None, status_text: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.status_text = status_text


class CsrfMismatch(AuthError):
    """Callback state does not match the persisted OAuth state"""
    pass


class TokenExchangeFailed(AuthError):
    """Provider rejected the authorization code"""
    pass


class RefreshFailed(AuthError):
    """Provider rejected the refresh token (the identity has been disconnected)"""
    pass


class NoRefreshToken(AuthError):
    """No refresh token is stored for the identity"""
    pass


class NoValidToken(AuthError):
    """Identity is not connected; callers treat this as a state, not a user error"""
    pass


class SourceFetchFailed(CalendarSyncError):
    """Event fetch for a single calendar source failed"""

    def __init__(self, source_id: str, status_code: Optional[int] = None, message: str = ""):
        super().__init__(message or f"Failed to fetch events for {source_id}: {status_code}")
        self.source_id = source_id
        self.status_code = status_code


class SourceListFailed(CalendarSyncError):
    """Calendar-list endpoint failure"""

    def __init__(self, status_code: Optional[int] = None, message: str = ""):
        super().__init__(message or f"Failed to list calendars: {status_code}")
        self.status_code = status_code
