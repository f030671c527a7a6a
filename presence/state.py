"""Process-wide backend selection, persisted in durable client storage."""
import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

from presence.models import BackendMode

logger = logging.getLogger(__name__)

STORAGE_MODE_KEY = 'STORAGE_MODE'
FIREBASE_CONFIG_KEY = 'FIREBASE_CONFIG'
SERVER_ENDPOINT_KEY = 'SERVER_ENDPOINT'


class ClientStore:
    """Small key/value file that survives restarts.

    Values are JSON-encoded; the whole file is rewritten atomically on every set.
    A path of None keeps everything in memory.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning('Ignoring unreadable client state at %s: %s', self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def _flush(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.client_state_', suffix='.json', dir=directory)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2)
        os.replace(tmp_path, self.path)


class BackendState:
    """Holds the active BackendMode and the connectivity indicator.

    Readers take `mode` once per operation. Writers are the health monitor and
    the operator override; both go through `set_mode`.
    """

    def __init__(self, store: ClientStore, default: BackendMode = BackendMode.LOCAL):
        self.store = store
        self._mode = BackendMode.parse(store.get(STORAGE_MODE_KEY), default)
        self._lock = threading.Lock()
        self._listeners = []  # type: List[Callable[[BackendMode], None]]
        self.connected = False

    @property
    def mode(self) -> BackendMode:
        return self._mode

    def set_mode(self, mode: BackendMode, reason: str = '') -> bool:
        """Switch the active backend. Returns True when the mode actually changed."""
        with self._lock:
            previous = self._mode
            self._mode = mode
            self.store.set(STORAGE_MODE_KEY, mode.value)
        if previous is mode:
            return False
        logger.warning('Storage mode %s -> %s%s', previous.value, mode.value, f' ({reason})' if reason else '')
        for listener in list(self._listeners):
            listener(mode)
        return True

    def on_change(self, listener: Callable[[BackendMode], None]) -> None:
        self._listeners.append(listener)

    @property
    def cloud_config(self) -> Optional[Dict]:
        return self.store.get(FIREBASE_CONFIG_KEY)

    def save_cloud_config(self, config: Dict) -> None:
        self.store.set(FIREBASE_CONFIG_KEY, config)

    def server_endpoint(self, default: str) -> str:
        return self.store.get(SERVER_ENDPOINT_KEY) or default

    def save_server_endpoint(self, endpoint: str) -> None:
        self.store.set(SERVER_ENDPOINT_KEY, endpoint)
