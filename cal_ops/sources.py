# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Calendar Source Registry - available calendars per widget and which are selected for display
"""
import logging
from typing import Dict, List

from auth.credential_store import CredentialStore, widget_key, SOURCES
from cal_ops.reader import CalendarReader
from models import CalendarSource

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_COLOR = '#4285f4'


def source_from_entry(entry: Dict) -> CalendarSource:
    """Map one calendarList entry to a CalendarSource"""
    return CalendarSource(
        id=entry['id'],
        display_name=entry.get('summaryOverride') or entry.get('summary') or entry['id'],
        color=entry.get('backgroundColor') or DEFAULT_SOURCE_COLOR,
        selected=bool(entry.get('selected') or entry.get('primary'))
    )


def apply_default_selection(sources: List[CalendarSource]) -> List[CalendarSource]:
    """Select the first source when a non-empty list has nothing selected"""
    if sources and not any(source.selected for source in sources):
        sources[0].selected = True
    return sources


class CalendarSourceRegistry:
    """Fetches, persists and toggles CalendarSource lists"""

    def __init__(self, store: CredentialStore, reader: CalendarReader):
        self.store = store
        self.reader = reader

    def list_sources(self, access_token: str) -> List[CalendarSource]:
        """Fetch the account's calendars and apply the default selection"""
        entries = self.reader.get_calendar_list(access_token)
        sources = []
        for entry in entries:
            if not entry.get('id'):
                logger.warning("Skipping calendar list entry without an id")
                continue
            sources.append(source_from_entry(entry))
        return apply_default_selection(sources)

    def get_sources(self, widget_id: str) -> List[CalendarSource]:
        raw = self.store.get(widget_key(widget_id, SOURCES)) or []
        return [CalendarSource.from_dict(item) for item in raw]

    def get_selected_sources(self, widget_id: str) -> List[CalendarSource]:
        return [source for source in self.get_sources(widget_id) if source.selected]

    def save_sources(self, widget_id: str, sources: List[CalendarSource]):
        self.store.set(widget_key(widget_id, SOURCES), [source.to_dict() for source in sources])

    def refresh_sources(self, widget_id: str, access_token: str) -> List[CalendarSource]:
        """Replace the persisted list wholesale with a fresh fetch"""
        sources = self.list_sources(access_token)
        self.save_sources(widget_id, sources)
        logger.info(f"Stored {len(sources)} calendar sources for widget {widget_id}")
        return sources

    def ensure_sources(self, widget_id: str, access_token: str) -> List[CalendarSource]:
        """Re-bootstrap: fetch only when the local list is empty"""
        sources = self.get_sources(widget_id)
        if sources:
            return sources
        logger.info(f"No cached sources for widget {widget_id}, fetching from provider")
        return self.refresh_sources(widget_id, access_token)

    def toggle_selection(self, widget_id: str, source_index: int) -> List[CalendarSource]:
        """Flip `selected` on one source; out-of-range indexes are ignored"""
        sources = self.get_sources(widget_id)
        if not 0 <= source_index < len(sources):
            logger.warning(f"Ignoring toggle of source {source_index} for widget {widget_id} "
                           f"({len(sources)} sources)")
            return sources

        sources[source_index].selected = not sources[source_index].selected
        self.save_sources(widget_id, sources)
        return sources

    def clear(self, widget_id: str):
        self.store.delete(widget_key(widget_id, SOURCES))
