# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Data models for the calendar widget sync engine
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any


class ConnectionState(Enum):
    """Per-widget connection state machine"""
    DISCONNECTED = "disconnected"
    AUTHORIZING = "authorizing"
    CONNECTED = "connected"


class WidgetStatus(Enum):
    """What the widget shows the user"""
    NEVER_CONNECTED = "never_connected"
    AUTHORIZING = "authorizing"
    LOADING = "loading"
    CONNECTED = "connected"
    ERROR = "error"              # fetch failed, stale events still shown
    AUTH_FAILED = "auth_failed"  # disconnected by the provider, must reconnect


@dataclass
class TokenSet:
    """Access/refresh token pair plus expiry for one widget identity"""
    access_token: str
    refresh_token: str
    expires_at_epoch_ms: int

    def expires_within(self, now_ms: int, margin_ms: int) -> bool:
        return now_ms >= self.expires_at_epoch_ms - margin_ms


@dataclass
class CalendarSource:
    id: str
    display_name: str
    color: str
    selected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'displayName': self.display_name,
            'color': self.color,
            'selected': self.selected
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CalendarSource':
        return cls(
            id=data['id'],
            display_name=data.get('displayName', data['id']),
            color=data.get('color', ''),
            selected=bool(data.get('selected', False))
        )


@dataclass
class CalendarEvent:
    """Canonical, provider-agnostic event consumed by rendering"""
    id: str
    title: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    is_all_day: bool
    location: str = ""
    description: str = ""
    source_color: str = ""
    display_time: str = ""
    source_id: str = ""

    def sort_key(self) -> float:
        # Missing start orders as epoch 0
        return self.start_time.timestamp() if self.start_time else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'startTime': self.start_time.isoformat() if self.start_time else None,
            'endTime': self.end_time.isoformat() if self.end_time else None,
            'isAllDay': self.is_all_day,
            'location': self.location,
            'description': self.description,
            'sourceColor': self.source_color,
            'displayTime': self.display_time,
            'sourceId': self.source_id
        }


@dataclass
class SyncState:
    """Transient, in-memory sync status for one widget instance"""
    is_loading: bool = False
    last_error: Optional[str] = None
    last_updated_at: Optional[datetime] = None
    retry_count: int = 0

    def reset(self):
        self.is_loading = False
        self.last_error = None
        self.last_updated_at = None
        self.retry_count = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_updated_at'] = self.last_updated_at.isoformat() if self.last_updated_at else None
        return data


@dataclass
class AggregationResult:
    """Outcome of one event aggregation pass"""
    events: List[CalendarEvent] = field(default_factory=list)
    connected: bool = True
    source_count: int = 0
    failed_sources: List[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.source_count > 0 and len(self.failed_sources) == self.source_count


VALID_START_DAYS = ('sunday', 'monday')
VALID_VIEWS = ('day', 'week', 'month')


@dataclass
class CalendarWidgetConfig:
    """Display preferences plus the persisted source list for one widget"""
    id: str
    start_day: str = 'sunday'
    show_week_numbers: bool = False
    default_view: str = 'month'
    google_calendar_connected: bool = False
    calendars: List[CalendarSource] = field(default_factory=list)

    def apply_changes(self, changes: Dict[str, Any]):
        """Apply a partial update coming from the settings form"""
        if 'startDay' in changes:
            if changes['startDay'] not in VALID_START_DAYS:
                raise ValueError(f"startDay must be one of {VALID_START_DAYS}")
            self.start_day = changes['startDay']
        if 'showWeekNumbers' in changes:
            if not isinstance(changes['showWeekNumbers'], bool):
                raise ValueError("showWeekNumbers must be a boolean")
            self.show_week_numbers = changes['showWeekNumbers']
        if 'defaultView' in changes:
            if changes['defaultView'] not in VALID_VIEWS:
                raise ValueError(f"defaultView must be one of {VALID_VIEWS}")
            self.default_view = changes['defaultView']

    def preferences(self) -> Dict[str, Any]:
        return {
            'startDay': self.start_day,
            'showWeekNumbers': self.show_week_numbers,
            'defaultView': self.default_view
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            **self.preferences(),
            'googleCalendarConnected': self.google_calendar_connected,
            'calendars': [source.to_dict() for source in self.calendars]
        }
