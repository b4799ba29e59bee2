# Google Calendar reads: source registry and event aggregation
