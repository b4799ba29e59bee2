# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

#!/usr/bin/env python3
"""
Dashboard Calendar Sync - backend holding the OAuth secret for calendar widgets
"""
import logging
import signal
import sys
import threading
from datetime import datetime, timezone

from flask import Flask, jsonify, redirect, request

import config
from auth.errors import CsrfMismatch, TokenExchangeFailed
from sync.engine import CalendarSyncEngine
from utils.logger import configure_logging
from utils.timezone import get_display_time, format_display_time

configure_logging()
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


def create_app(engine: CalendarSyncEngine = None) -> Flask:
    """Build the Flask app around a sync engine (a fresh one by default)"""
    app = Flask(__name__)
    app.secret_key = config.SECRET_KEY
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    engine = engine or CalendarSyncEngine()
    app.extensions['calendar_engine'] = engine

    # Security Headers Middleware
    @app.after_request
    def add_security_headers(response):
        """Add security headers to all responses"""
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Cache-Control'] = 'no-store'

        if request.endpoint == 'auth_callback':
            response.headers['X-Robots-Tag'] = 'noindex, nofollow, noarchive'

        return response

    def _ensure_mounted(widget_id):
        if not engine.is_mounted(widget_id):
            engine.mount(widget_id)

    @app.route('/health')
    def health_check():
        """Lightweight health check"""
        return jsonify({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "dashboard-calendar-sync",
            "version": SERVICE_VERSION
        }), 200

    @app.route('/widgets/<widget_id>/auth/start')
    def auth_start(widget_id):
        """Full-page redirect to Google's consent screen"""
        return redirect(engine.begin_authorization(widget_id))

    @app.route('/widgets/<widget_id>/auth/cancel', methods=['POST'])
    def auth_cancel(widget_id):
        cancelled = engine.cancel_authorization(widget_id)
        return jsonify({"cancelled": cancelled, **engine.get_status(widget_id)})

    @app.route('/auth/callback')
    def auth_callback():
        """OAuth callback: validate state, exchange code, return to the dashboard"""
        error = request.args.get('error')
        if error:
            pending = engine.pending_authorization()
            if pending:
                engine.cancel_authorization(pending)
            logger.warning(f"OAuth callback returned error: {error}")
            return jsonify({"error": "Authorization denied", "detail": error}), 400

        code = request.args.get('code')
        state = request.args.get('state')

        if not code:
            logger.warning("OAuth callback missing code parameter")
            return jsonify({"error": "Missing authorization code"}), 400

        try:
            sources = engine.handle_callback(code, state)
        except CsrfMismatch:
            logger.warning("OAuth callback state mismatch or missing")
            return jsonify({"error": "Invalid state parameter"}), 400
        except TokenExchangeFailed as e:
            logger.error(f"OAuth token exchange failed: {e}")
            return jsonify({"error": "Token exchange failed", "detail": e.status_text}), 502

        logger.info(f"OAuth authentication successful ({len(sources)} calendars)")
        return redirect(config.DASHBOARD_URL)

    @app.route('/widgets/<widget_id>/status')
    def widget_status(widget_id):
        _ensure_mounted(widget_id)
        return jsonify(engine.get_status(widget_id))

    @app.route('/widgets/<widget_id>/events')
    def widget_events(widget_id):
        _ensure_mounted(widget_id)
        events = engine.get_events(widget_id)
        return jsonify({
            "widget_id": widget_id,
            "events": [event.to_dict() for event in events],
            "status": engine.get_status(widget_id)
        })

    @app.route('/widgets/<widget_id>/sources')
    def widget_sources(widget_id):
        return jsonify({
            "widget_id": widget_id,
            "sources": [source.to_dict() for source in engine.registry.get_sources(widget_id)]
        })

    @app.route('/widgets/<widget_id>/sources/<int:index>/toggle', methods=['POST'])
    def toggle_source(widget_id, index):
        _ensure_mounted(widget_id)
        sources = engine.toggle_selection(widget_id, index)
        return jsonify({
            "widget_id": widget_id,
            "sources": [source.to_dict() for source in sources]
        })

    @app.route('/widgets/<widget_id>/config', methods=['GET', 'PUT'])
    def widget_config(widget_id):
        _ensure_mounted(widget_id)
        if request.method == 'GET':
            return jsonify(engine.get_config(widget_id).to_dict())

        changes = request.get_json(silent=True)
        if not isinstance(changes, dict):
            return jsonify({"error": "Expected a JSON object"}), 400
        try:
            updated = engine.update_settings(widget_id, changes)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(updated.to_dict())

    @app.route('/widgets/<widget_id>/refresh', methods=['POST'])
    def refresh_widget(widget_id):
        """Trigger a verbose refresh in background, return immediately"""
        _ensure_mounted(widget_id)
        if engine.connection_state(widget_id).value != 'connected':
            return jsonify({"error": "Not connected", **engine.get_status(widget_id)}), 409

        sync_thread = threading.Thread(
            target=engine.refresh,
            args=(widget_id,),
            kwargs={'verbose': True, 'wait': True},
            daemon=True
        )
        sync_thread.start()

        return jsonify({
            "status": "started",
            "message": "Refresh started in background",
            "check_progress": f"/widgets/{widget_id}/status"
        }), 202

    @app.route('/widgets/<widget_id>/disconnect', methods=['POST'])
    def disconnect_widget(widget_id):
        _ensure_mounted(widget_id)
        engine.disconnect(widget_id)
        return jsonify(engine.get_status(widget_id))

    @app.route('/widgets/<widget_id>', methods=['DELETE'])
    def delete_widget(widget_id):
        engine.delete_widget(widget_id)
        return '', 204

    return app


def _register_signal_handlers(engine: CalendarSyncEngine):
    def signal_handler(sig, frame):
        """Handle shutdown signals"""
        logger.info("Received shutdown signal, cleaning up...")
        engine.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


if __name__ == '__main__':
    logger.info("🚀 Starting Dashboard Calendar Sync")
    logger.info(f"🕐 Current time: {format_display_time(get_display_time())}")
    app = create_app()
    _register_signal_handlers(app.extensions['calendar_engine'])
    app.run(host='0.0.0.0', port=config.PORT, debug=config.DEBUG)
