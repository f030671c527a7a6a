"""HTTP JSON client for the self-hosted backend (see presence.local_server).

Endpoints, relative to the API base (e.g. http://host:3000/api):
 - GET/POST /users          (POST replaces the whole list)
 - GET/POST /config
 - GET /logs, POST /logs    (POST appends one record)
 - POST /logs/update        (replace-all)
 - GET /leaves, POST /leaves/update
 - GET/POST /feeds, GET/POST /activities
 - GET /health              (200 = reachable)
"""
import logging
from typing import Callable, Dict, List, Optional, Union

import requests

from presence.backends.base import USERS, StorageBackend
from presence.errors import BackendUnreachable, WriteFailed

logger = logging.getLogger(__name__)

HEADERS = {'Content-Type': 'application/json'}

# collections whose replace-all lives on the collection path itself
REPLACE_ON_COLLECTION_PATH = {USERS}


class LocalBackend(StorageBackend):
    name = 'local'

    def __init__(self, base_url: Union[str, Callable[[], str]], session: Optional[requests.Session] = None,
                 timeout: float = 15.0):
        self._base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        base = self._base_url() if callable(self._base_url) else self._base_url
        return base.rstrip('/')

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _get(self, path: str):
        url = self._url(path)
        try:
            res = self.session.get(url, headers=HEADERS, timeout=self.timeout)
            res.raise_for_status()
            return res.json()
        except (requests.RequestException, ValueError) as e:
            raise BackendUnreachable(f'GET {url} failed: {e}', backend=self.name) from e

    def _post(self, path: str, body) -> None:
        url = self._url(path)
        try:
            res = self.session.post(url, json=body, headers=HEADERS, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as e:
            raise WriteFailed(f'POST {url} failed: {e}', backend=self.name) from e

    def list_records(self, collection: str) -> List[Dict]:
        return self._get(collection) or []

    def add_record(self, collection: str, record: Dict) -> None:
        self._post(collection, record)

    def replace_records(self, collection: str, records: List[Dict]) -> None:
        path = collection if collection in REPLACE_ON_COLLECTION_PATH else f'{collection}/update'
        self._post(path, records)

    def get_config(self) -> Optional[Dict]:
        return self._get('config') or None

    def save_config(self, config: Dict) -> None:
        self._post('config', config)

    def ping(self, timeout: Optional[float] = None) -> bool:
        try:
            res = self.session.get(self._url('health'), timeout=timeout or self.timeout)
        except requests.RequestException as e:
            logger.info('Local backend health probe failed: %s', e)
            return False
        if not res.ok:
            logger.info('Local backend health probe returned HTTP %s', res.status_code)
        return res.ok
