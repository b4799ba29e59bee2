# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Environment-based configuration for the Dashboard Calendar Sync backend
"""
import os
import secrets

# Environment Detection
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')
DEBUG = ENVIRONMENT == 'development'

# Google OAuth Configuration
GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID', '')
GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET', '')
REDIRECT_URI = os.environ.get('REDIRECT_URI', "http://localhost:5000/auth/callback")
DASHBOARD_URL = os.environ.get('DASHBOARD_URL', "/")

# OAuth Scopes (read-only, the widget never writes to calendars)
GOOGLE_SCOPES = [
    'https://www.googleapis.com/auth/calendar.readonly',
    'https://www.googleapis.com/auth/calendar.events.readonly'
]

# Provider Endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

# Application Settings
SECRET_KEY = os.environ.get('SECRET_KEY', secrets.token_hex(32))
PORT = int(os.environ.get('PORT', 5000))

# Credential Store (empty path selects the in-memory store)
CREDENTIAL_STORE_PATH = os.environ.get('CREDENTIAL_STORE_PATH', 'data/credentials.json')

# Sync Intervals
SYNC_INTERVAL_MIN = int(os.environ.get('SYNC_INTERVAL_MIN', 5))
SCHEDULER_TICK_SECONDS = float(os.environ.get('SCHEDULER_TICK_SECONDS', 1))

# Token Lifecycle
TOKEN_REFRESH_MARGIN_MIN = int(os.environ.get('TOKEN_REFRESH_MARGIN_MIN', 5))
DEFAULT_TOKEN_LIFETIME_SEC = int(os.environ.get('DEFAULT_TOKEN_LIFETIME_SEC', 3600))

# Event Window
EVENT_WINDOW_DAYS = int(os.environ.get('EVENT_WINDOW_DAYS', 30))
MAX_EVENTS_PER_SOURCE = int(os.environ.get('MAX_EVENTS_PER_SOURCE', 100))

# Retry Settings
MAX_RETRIES = int(os.environ.get('MAX_RETRIES', 3))
BASE_DELAY = float(os.environ.get('BASE_DELAY', 2.0))
MAX_DELAY = float(os.environ.get('MAX_DELAY', 60.0))

# HTTP
HTTP_TIMEOUT = int(os.environ.get('HTTP_TIMEOUT', 30))

# Display
DISPLAY_TIMEZONE = os.environ.get('DISPLAY_TIMEZONE', 'America/Chicago')

# Logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
STRUCTURED_LOGGING = os.environ.get('STRUCTURED_LOGGING', 'True').lower() == 'true'

# Development Settings
if DEBUG:
    LOG_LEVEL = 'DEBUG'
    SYNC_INTERVAL_MIN = 1  # Faster syncs for development
