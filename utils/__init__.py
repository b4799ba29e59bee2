# Shared helpers used across the auth, cal_ops and sync packages

from utils.logger import StructuredLogger, JsonFormatter, configure_logging
from utils.retry import retry_with_backoff, backoff_delay
from utils.timezone import (
    now_epoch_ms,
    get_display_time,
    format_display_time,
    format_time_range,
    parse_google_datetime,
)
