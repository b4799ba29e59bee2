# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Event Aggregation Pipeline - fetch, normalize, merge and sort events from every selected source
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pytz
import requests

import config
from auth.errors import SourceFetchFailed
from auth.token_manager import TokenManager
from cal_ops.reader import CalendarReader
from cal_ops.sources import CalendarSourceRegistry
from models import AggregationResult, CalendarEvent, CalendarSource
from utils.logger import StructuredLogger
from utils.timezone import parse_google_datetime, format_time_range, to_rfc3339

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "(No title)"


def normalize_event(raw: Dict, source: CalendarSource) -> Optional[CalendarEvent]:
    """Validate one provider event and convert it to the canonical shape

    Returns None for cancelled or malformed events so one bad entry never
    breaks the rest of the aggregation.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Skipping non-object event entry from {source.id}")
        return None

    event_id = raw.get('id', '')

    if raw.get('status') == 'cancelled':
        logger.debug(f"Dropping cancelled event {event_id} from {source.id}")
        return None

    try:
        start, is_all_day = parse_google_datetime(raw.get('start'))
        end, _ = parse_google_datetime(raw.get('end'))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Dropping event {event_id} from {source.id}: unparseable date ({e})")
        return None

    if start is None:
        logger.warning(f"Dropping event {event_id} from {source.id}: no date or dateTime")
        return None

    return CalendarEvent(
        id=event_id,
        title=raw.get('summary') or UNTITLED_EVENT,
        start_time=start,
        end_time=end,
        is_all_day=is_all_day,
        location=raw.get('location') or "",
        description=raw.get('description') or "",
        source_color=source.color,
        display_time=format_time_range(start, end, is_all_day),
        source_id=source.id
    )


def merge_events(batches: List[List[CalendarEvent]]) -> List[CalendarEvent]:
    """Concatenate per-source batches and sort ascending by start time"""
    merged = [event for batch in batches for event in batch]
    merged.sort(key=lambda event: event.sort_key())
    return merged


class EventAggregator:
    """Builds the merged event list for a widget and keeps the last good result in memory"""

    def __init__(
        self,
        token_manager: TokenManager,
        registry: CalendarSourceRegistry,
        reader: CalendarReader,
        now: Optional[Callable[[], datetime]] = None,
        window_days: Optional[int] = None
    ):
        self.tokens = token_manager
        self.registry = registry
        self.reader = reader
        self.now = now or (lambda: datetime.now(pytz.UTC))
        self.window_days = window_days if window_days is not None else config.EVENT_WINDOW_DAYS
        self.structured_logger = StructuredLogger(__name__)

        self._lock = threading.Lock()
        self._events: Dict[str, List[CalendarEvent]] = {}

    def time_window(self):
        now = self.now()
        return now - timedelta(days=self.window_days), now + timedelta(days=self.window_days)

    def fetch_events(self, widget_id: str, verbose: bool = True, run_token=None) -> AggregationResult:
        """Aggregate events for every selected source of a widget

        Not connected is a no-op that returns an empty, disconnected result.
        RefreshFailed from the token manager propagates to the caller.
        When a run_token is given, the result is only cached while
        run_token.is_live() still holds.
        """
        if not self.tokens.is_connected(widget_id):
            return AggregationResult(connected=False)

        access_token = self.tokens.get_valid_access_token(widget_id)
        if access_token is None:
            return AggregationResult(connected=False)

        window_start, window_end = self.time_window()
        time_min, time_max = to_rfc3339(window_start), to_rfc3339(window_end)

        sources = self.registry.get_selected_sources(widget_id)
        result = AggregationResult(source_count=len(sources))
        batches = []

        for source in sources:
            try:
                raw_events = self.reader.get_calendar_events(access_token, source.id, time_min, time_max)
            except (SourceFetchFailed, requests.exceptions.RequestException) as e:
                logger.error(f"Skipping calendar {source.id} for widget {widget_id}: {e}")
                result.failed_sources.append(source.id)
                continue

            batch = []
            for raw in raw_events:
                event = normalize_event(raw, source)
                if event is not None:
                    batch.append(event)
            batches.append(batch)

        result.events = merge_events(batches)

        if not result.all_failed:
            with self._lock:
                if run_token is None or run_token.is_live():
                    self._events[widget_id] = result.events
                else:
                    logger.debug(f"Widget {widget_id} torn down during fetch, events not cached")

        self.structured_logger.log_sync_event('events_aggregated', {
            'widget_id': widget_id,
            'sources': result.source_count,
            'failed_sources': len(result.failed_sources),
            'events': len(result.events)
        }, verbose=verbose)
        return result

    def get_cached_events(self, widget_id: str) -> List[CalendarEvent]:
        with self._lock:
            return list(self._events.get(widget_id, []))

    def clear_cache(self, widget_id: str):
        with self._lock:
            self._events.pop(widget_id, None)
