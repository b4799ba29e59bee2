# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Calendar Reader - Handles all read operations against the Google Calendar API
"""
import logging
import time
import urllib.parse
from typing import List, Dict, Optional

import requests

import config
from auth.errors import SourceFetchFailed, SourceListFailed
from utils.logger import StructuredLogger
from utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)


class CalendarReader:
    """Bearer-authorized reads from the Calendar API. Stateless apart from config."""

    def __init__(self, api_base: Optional[str] = None, timeout: Optional[int] = None):
        self.api_base = (api_base or config.CALENDAR_API_BASE).rstrip('/')
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.structured_logger = StructuredLogger(__name__)

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {access_token}',
            'Accept': 'application/json'
        }

    def _get(self, url: str, access_token: str, params: Optional[Dict] = None) -> requests.Response:
        started = time.monotonic()
        response = requests.get(url, headers=self._headers(access_token), params=params, timeout=self.timeout)
        self.structured_logger.log_api_call(
            'GET', url.split('?')[0],
            status_code=response.status_code,
            duration_ms=(time.monotonic() - started) * 1000
        )
        return response

    @retry_with_backoff(max_retries=config.MAX_RETRIES, base_delay=1, retry_on=TRANSIENT_ERRORS)
    def get_calendar_list(self, access_token: str) -> List[Dict]:
        """Get every calendar the authorized account can read

        Raises:
            SourceListFailed: on a non-success response
        """
        url = f"{self.api_base}/users/me/calendarList"
        calendars: List[Dict] = []
        page_token = None
        page_counter = 0
        max_pages = 20  # Safety guard to avoid infinite pagination loops

        while page_counter < max_pages:
            params = {'pageToken': page_token} if page_token else None
            response = self._get(url, access_token, params=params)

            if response.status_code != 200:
                logger.error(f"Failed to get calendar list: {response.status_code}")
                raise SourceListFailed(status_code=response.status_code)

            data = response.json()
            calendars.extend(data.get('items', []))
            page_counter += 1

            page_token = data.get('nextPageToken')
            if not page_token:
                break

        logger.info(f"Successfully retrieved {len(calendars)} calendars")
        return calendars

    @retry_with_backoff(max_retries=config.MAX_RETRIES, base_delay=1, retry_on=TRANSIENT_ERRORS)
    def get_calendar_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: str,
        time_max: str,
        max_results: Optional[int] = None
    ) -> List[Dict]:
        """Get single-instance events of one calendar inside [time_min, time_max]

        Raises:
            SourceFetchFailed: on a non-success response
        """
        url = f"{self.api_base}/calendars/{urllib.parse.quote(calendar_id, safe='')}/events"
        params = {
            'timeMin': time_min,
            'timeMax': time_max,
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': max_results or config.MAX_EVENTS_PER_SOURCE
        }

        response = self._get(url, access_token, params=params)

        if response.status_code != 200:
            logger.error(f"Failed to get events for calendar {calendar_id}: {response.status_code}")
            raise SourceFetchFailed(calendar_id, status_code=response.status_code)

        events = response.json().get('items', [])
        logger.debug(f"Retrieved {len(events)} events from calendar {calendar_id}")
        return events
