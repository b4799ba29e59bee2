# Per-widget sync scheduling and the engine that wires everything together

from sync.engine import CalendarSyncEngine
from sync.scheduler import WidgetSyncScheduler
