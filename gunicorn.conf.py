# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

import os

# Application factory
wsgi_app = 'app:create_app()'

# Per-widget schedulers live in-process, so a single worker owns them all
workers = 1
worker_class = 'gthread'
threads = 8
timeout = 120
keepalive = 2

# Bind to the port the platform provides
bind = f"0.0.0.0:{os.environ.get('PORT', '10000')}"

# Logging
loglevel = 'info'
accesslog = '-'
errorlog = '-'

# Don't preload - scheduler threads must start inside the worker
preload_app = False

# Process naming
proc_name = 'dashboard-calendar-sync'


def worker_exit(server, worker):
    """Stop widget schedulers before the worker goes away"""
    app = getattr(worker, 'wsgi', None)
    engine = getattr(app, 'extensions', {}).get('calendar_engine') if app else None
    if engine is not None:
        engine.shutdown()
