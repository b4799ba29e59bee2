# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Sync Engine - wires the credential store, auth flow, token manager, source registry,
event aggregation and per-widget schedulers together for the dashboard
"""
import logging
from threading import RLock
from typing import Callable, Dict, List, Optional

import config
from auth.authorization import AuthorizationFlow
from auth.credential_store import CredentialStore, widget_key, WIDGET_CONFIG
from auth.errors import AuthError, CsrfMismatch, NoRefreshToken, TokenExchangeFailed
from auth.google_oauth import GoogleOAuthClient
from auth.token_manager import TokenManager
from cal_ops.events import EventAggregator
from cal_ops.reader import CalendarReader
from cal_ops.sources import CalendarSourceRegistry
from models import (
    CalendarEvent,
    CalendarSource,
    CalendarWidgetConfig,
    ConnectionState,
    SyncState,
    WidgetStatus,
)
from sync.scheduler import RunToken, WidgetSyncScheduler
from utils.logger import StructuredLogger
from utils.timezone import get_display_time, format_display_time

logger = logging.getLogger(__name__)

AUTH_FAILED_MESSAGE = "Google Calendar access expired or was revoked. Please reconnect."


class WidgetInstance:
    """In-memory runtime state of one mounted calendar widget"""

    def __init__(self, widget_id: str, on_update: Optional[Callable[[Dict], None]] = None):
        self.widget_id = widget_id
        self.on_update = on_update
        self.state = SyncState()
        self.scheduler: Optional[WidgetSyncScheduler] = None
        self.auth_failed = False


class CalendarSyncEngine:
    """Core engine for calendar widget synchronization"""

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        oauth_client: Optional[GoogleOAuthClient] = None,
        reader: Optional[CalendarReader] = None,
        autostart: bool = True,
        scheduler_options: Optional[Dict] = None
    ):
        self.store = store if store is not None else CredentialStore(config.CREDENTIAL_STORE_PATH or None)
        self.oauth = oauth_client or GoogleOAuthClient()
        self.reader = reader or CalendarReader()
        self.autostart = autostart
        self.scheduler_options = scheduler_options or {}

        self.tokens = TokenManager(self.store, self.oauth)
        self.registry = CalendarSourceRegistry(self.store, self.reader)
        self.aggregator = EventAggregator(self.tokens, self.registry, self.reader)
        self.auth_flow = AuthorizationFlow(self.store, self.oauth, self.tokens, self.registry)
        self.tokens.add_disconnect_listener(self._on_disconnected)

        self.structured_logger = StructuredLogger(__name__)
        self._lock = RLock()
        self._widgets: Dict[str, WidgetInstance] = {}

    # ------------------------------------------------------------------
    # Widget lifecycle
    # ------------------------------------------------------------------

    def _instance(self, widget_id: str) -> WidgetInstance:
        with self._lock:
            instance = self._widgets.get(widget_id)
            if instance is None:
                instance = WidgetInstance(widget_id)
                self._widgets[widget_id] = instance
            return instance

    def mount(self, widget_id: str, on_update: Optional[Callable[[Dict], None]] = None) -> WidgetInstance:
        """Register a widget instance; re-bootstrap and start syncing if it already has tokens"""
        instance = self._instance(widget_id)
        if on_update is not None:
            instance.on_update = on_update

        if self.tokens.is_connected(widget_id):
            self._bootstrap_sources(widget_id)
        # Bootstrap may have disconnected the identity
        if self.tokens.is_connected(widget_id):
            self._start_scheduler(instance)
        return instance

    def is_mounted(self, widget_id: str) -> bool:
        with self._lock:
            return widget_id in self._widgets

    def _bootstrap_sources(self, widget_id: str):
        try:
            access_token = self.tokens.get_valid_access_token(widget_id)
            if access_token:
                self.registry.ensure_sources(widget_id, access_token)
        except AuthError as e:
            logger.error(f"Re-bootstrap failed for widget {widget_id}: {e}")
        except Exception as e:
            logger.error(f"Could not fetch calendar list for widget {widget_id}: {e}")

    def _start_scheduler(self, instance: WidgetInstance, verbose: bool = False, initial_sync: bool = True):
        with self._lock:
            if instance.scheduler is not None and not instance.scheduler.stopped:
                return
            widget_id = instance.widget_id
            instance.scheduler = WidgetSyncScheduler(
                widget_id,
                lambda verbose_run, token: self._sync(widget_id, verbose_run, token),
                state=instance.state,
                **self.scheduler_options
            )
            scheduler = instance.scheduler

        if self.autostart:
            scheduler.start(verbose=verbose, initial_sync=initial_sync)

    def _stop_scheduler(self, instance: WidgetInstance):
        with self._lock:
            scheduler = instance.scheduler
            instance.scheduler = None
        if scheduler is not None:
            scheduler.stop()

    def delete_widget(self, widget_id: str):
        """Host onDelete(): disconnect and tear the instance down"""
        logger.info(f"Widget {widget_id} removed from dashboard")
        self.auth_flow.cancel_authorization(widget_id)
        self.tokens.disconnect(widget_id, reason='widget_deleted')

        with self._lock:
            instance = self._widgets.pop(widget_id, None)
        if instance is not None:
            self._stop_scheduler(instance)
        self.aggregator.clear_cache(widget_id)
        self.store.delete(widget_key(widget_id, WIDGET_CONFIG))

    def shutdown(self):
        """Stop every scheduler (process exit)"""
        with self._lock:
            instances = list(self._widgets.values())
        for instance in instances:
            self._stop_scheduler(instance)
        logger.info("All widget schedulers stopped")

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def begin_authorization(self, widget_id: str) -> str:
        self._instance(widget_id)
        return self.auth_flow.begin_authorization(widget_id)

    def cancel_authorization(self, widget_id: str) -> bool:
        return self.auth_flow.cancel_authorization(widget_id)

    def pending_authorization(self) -> Optional[str]:
        return self.auth_flow.pending_widget_id()

    def handle_callback(self, code: str, state: Optional[str], widget_id: Optional[str] = None) -> List[CalendarSource]:
        """Complete authorization for the pending (or given) widget and start syncing"""
        widget_id = widget_id or self.auth_flow.pending_widget_id()
        if not widget_id:
            self.structured_logger.log_security_event('oauth_callback_without_pending_widget')
            raise CsrfMismatch("No authorization is pending")

        instance = self._instance(widget_id)
        try:
            sources = self.auth_flow.handle_callback(widget_id, code, state)
        except TokenExchangeFailed:
            with self._lock:
                instance.auth_failed = True
                instance.state.last_error = AUTH_FAILED_MESSAGE
            raise

        with self._lock:
            instance.auth_failed = False
            instance.state.reset()

        self._save_config(widget_id, google_calendar_connected=True)
        self._notify(widget_id)
        self._start_scheduler(instance, verbose=True)
        return sources

    def disconnect(self, widget_id: str):
        """Explicit user disconnect"""
        self.tokens.disconnect(widget_id, reason='user_request')

    def _on_disconnected(self, widget_id: str, reason: Optional[str]):
        """Token manager listener: tear down schedule, caches and connected flag"""
        with self._lock:
            instance = self._widgets.get(widget_id)

        # In-flight runs are cancelled before the cache is cleared
        if instance is not None:
            self._stop_scheduler(instance)
        self.aggregator.clear_cache(widget_id)
        if instance is None:
            return

        with self._lock:
            instance.state.is_loading = False
            instance.state.retry_count = 0
            if reason in ('refresh_failed', 'exchange_failed'):
                instance.auth_failed = True
                instance.state.last_error = AUTH_FAILED_MESSAGE
            else:
                instance.auth_failed = False
                instance.state.last_error = None

        if reason != 'widget_deleted':
            self._save_config(widget_id, google_calendar_connected=False)
            self._notify(widget_id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _sync(self, widget_id: str, verbose: bool, token: RunToken) -> bool:
        """One aggregation pass, applied only if the widget is still live"""
        with self._lock:
            instance = self._widgets.get(widget_id)
            if instance is None or not token.is_live():
                return False
            instance.state.is_loading = True

        try:
            result = self.aggregator.fetch_events(widget_id, verbose=verbose, run_token=token)
        except NoRefreshToken as e:
            self.tokens.disconnect(widget_id, reason='refresh_failed')
            logger.error(f"Widget {widget_id} has no refresh token: {e}")
            return False
        except AuthError as e:
            # RefreshFailed already disconnected the identity
            logger.error(f"Widget {widget_id} lost authorization: {e}")
            return False
        except Exception as e:
            with self._lock:
                if token.is_live():
                    instance.state.is_loading = False
                    instance.state.last_error = str(e)
            logger.error(f"❌ Sync failed for widget {widget_id}: {e}")
            return False

        with self._lock:
            if not token.is_live():
                return False
            instance.state.is_loading = False

            if not result.connected:
                return True

            if result.all_failed:
                instance.state.last_error = f"Failed to load {result.source_count} calendar(s)"
                self.structured_logger.log_sync_event('sync_failed', {
                    'widget_id': widget_id,
                    'failed_sources': result.failed_sources
                })
                return False

            instance.state.last_error = None
            instance.state.last_updated_at = get_display_time()

        if verbose:
            logger.info(f"✅ Sync completed for widget {widget_id}: {len(result.events)} events "
                        f"at {format_display_time(get_display_time())}")
        return True

    def refresh(self, widget_id: str, verbose: bool = True, wait: bool = False) -> bool:
        """User-initiated (verbose) or background (silent) refresh

        With wait=True the sync runs on the calling thread and its outcome is returned.
        A scheduler started here then skips its own initial sync.
        """
        if not self.tokens.is_connected(widget_id):
            return False

        instance = self._instance(widget_id)
        with self._lock:
            scheduler = instance.scheduler
        if scheduler is None:
            self._start_scheduler(instance, verbose=verbose, initial_sync=not wait)
            with self._lock:
                scheduler = instance.scheduler
            if self.autostart and not wait:
                return True

        if wait:
            return scheduler.run_now(verbose=verbose)
        scheduler.request_refresh(verbose=verbose)
        return True

    # ------------------------------------------------------------------
    # Sources and settings
    # ------------------------------------------------------------------

    def toggle_selection(self, widget_id: str, source_index: int) -> List[CalendarSource]:
        before = self.registry.get_sources(widget_id)
        sources = self.registry.toggle_selection(widget_id, source_index)
        if sources != before:
            self._notify(widget_id)
            self.refresh(widget_id, verbose=True)
        return sources

    def get_config(self, widget_id: str) -> CalendarWidgetConfig:
        stored = self.store.get(widget_key(widget_id, WIDGET_CONFIG)) or {}
        widget_config = CalendarWidgetConfig(id=widget_id)
        widget_config.apply_changes({k: v for k, v in stored.items() if k != 'googleCalendarConnected'})
        widget_config.google_calendar_connected = self.tokens.is_connected(widget_id)
        widget_config.calendars = self.registry.get_sources(widget_id)
        return widget_config

    def _save_config(self, widget_id: str, **overrides):
        widget_config = self.get_config(widget_id)
        data = widget_config.preferences()
        data['googleCalendarConnected'] = overrides.get('google_calendar_connected',
                                                       widget_config.google_calendar_connected)
        self.store.set(widget_key(widget_id, WIDGET_CONFIG), data)

    def update_settings(self, widget_id: str, changes: Dict) -> CalendarWidgetConfig:
        """Apply settings from the widget form; raises ValueError on invalid values"""
        widget_config = self.get_config(widget_id)
        widget_config.apply_changes(changes)
        data = widget_config.preferences()
        data['googleCalendarConnected'] = widget_config.google_calendar_connected
        self.store.set(widget_key(widget_id, WIDGET_CONFIG), data)

        self._notify(widget_id)
        self.refresh(widget_id, verbose=True)
        return widget_config

    def _notify(self, widget_id: str):
        with self._lock:
            instance = self._widgets.get(widget_id)
            callback = instance.on_update if instance else None
        if callback is None:
            return
        try:
            callback(self.get_config(widget_id).to_dict())
        except Exception as e:
            logger.error(f"onUpdate callback failed for widget {widget_id}: {e}")

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_events(self, widget_id: str) -> List[CalendarEvent]:
        return self.aggregator.get_cached_events(widget_id)

    def connection_state(self, widget_id: str) -> ConnectionState:
        if self.auth_flow.is_authorizing(widget_id):
            return ConnectionState.AUTHORIZING
        if self.tokens.is_connected(widget_id):
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    def get_status(self, widget_id: str) -> Dict:
        with self._lock:
            instance = self._widgets.get(widget_id)
            state = instance.state.to_dict() if instance else SyncState().to_dict()
            auth_failed = instance.auth_failed if instance else False
            scheduler = instance.scheduler if instance else None

        connection = self.connection_state(widget_id)
        if connection == ConnectionState.AUTHORIZING:
            status = WidgetStatus.AUTHORIZING
        elif connection == ConnectionState.DISCONNECTED:
            status = WidgetStatus.AUTH_FAILED if auth_failed else WidgetStatus.NEVER_CONNECTED
        elif state['is_loading']:
            status = WidgetStatus.LOADING
        elif state['last_error']:
            status = WidgetStatus.ERROR
        else:
            status = WidgetStatus.CONNECTED

        return {
            'widget_id': widget_id,
            'status': status.value,
            'connection': connection.value,
            'scheduler_running': bool(scheduler and scheduler.is_running()),
            'event_count': len(self.get_events(widget_id)),
            **state
        }
