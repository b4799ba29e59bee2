# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Credential Store - namespaced key-value storage for token material and OAuth state

Every per-widget key is prefixed with the widget identity so several calendar
widgets on one dashboard never share or clobber each other's state.
"""
import json
import logging
import os
from threading import RLock
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

# Per-widget key suffixes
ACCESS_TOKEN = 'access_token'
REFRESH_TOKEN = 'refresh_token'
TOKEN_EXPIRY = 'token_expiry'
SOURCES = 'sources'
WIDGET_CONFIG = 'config'

TOKEN_FIELDS = (ACCESS_TOKEN, REFRESH_TOKEN, TOKEN_EXPIRY)

# Shared keys for the single in-flight authorization
OAUTH_STATE_KEY = 'google_oauth_state'
OAUTH_WIDGET_KEY = 'google_oauth_widget_id'


def widget_key(widget_id: str, name: str) -> str:
    """Build the namespaced key for one widget field"""
    if not widget_id:
        raise ValueError("widget_id is required")
    return f"calendar_{widget_id}_{name}"


class CredentialStore:
    """Thread-safe key-value store, optionally backed by a JSON file

    Multi-key writes and deletes are applied under one lock and flushed in one
    write so a reader never observes half of a TokenSet.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or None
        self._lock = RLock()
        self._data: Dict[str, Any] = {}
        self._load_from_disk()

    def _load_from_disk(self):
        """Load persisted values, starting empty if the file is missing or unreadable"""
        if not self.path or not os.path.exists(self.path):
            logger.info("No persistent credential store found, starting empty")
            return
        try:
            with open(self.path, 'r') as f:
                self._data = json.load(f)
            logger.info(f"✅ Loaded {len(self._data)} keys from persistent storage")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load credential store from disk: {e}")
            self._data = {}

    def _flush(self):
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(self._data, f)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        with self._lock:
            return {key: self._data.get(key) for key in keys}

    def set(self, key: str, value: Any):
        self.update({key: value})

    def update(self, values: Dict[str, Any]):
        """Write several keys atomically"""
        with self._lock:
            self._data.update(values)
            self._flush()

    def delete(self, *keys: str):
        """Delete keys atomically, missing keys are ignored"""
        with self._lock:
            removed = False
            for key in keys:
                if key in self._data:
                    del self._data[key]
                    removed = True
            if removed:
                self._flush()

    def pop(self, key: str, default: Any = None) -> Any:
        """Read and delete a key in one step"""
        with self._lock:
            if key not in self._data:
                return default
            value = self._data.pop(key)
            self._flush()
            return value

    def keys(self):
        with self._lock:
            return list(self._data.keys())

    @property
    def lock(self) -> RLock:
        return self._lock
