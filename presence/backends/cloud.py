"""Firestore backend.

Collections: users, logs, leaves, feeds, activities, each keyed by the record
id. The geofence lives in the single document settings/officeConfig.

The firebase-admin app is initialized lazily, from the project configuration
persisted in client storage or from the environment credentials.
"""
import logging
import os
import tempfile
from typing import Callable, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exceptions

from presence.backends.base import LOGS, StorageBackend
from presence.errors import BackendUnreachable, WriteFailed
from presence.reconcile import plan_replace

logger = logging.getLogger(__name__)

SETTINGS_COLLECTION = 'settings'
CONFIG_DOCUMENT = 'officeConfig'
# Firestore rejects batches with more than 500 writes
MAX_BATCH_WRITES = 500

CLOUD_ERRORS = (gexc.GoogleAPICallError, gexc.RetryError)
# raised while building the client: bad or missing credentials, unknown project
INIT_ERRORS = (ValueError, OSError, auth_exceptions.GoogleAuthError, gexc.GoogleAPIError)


def init_firebase(service_account: Optional[str] = None, storage_bucket: Optional[str] = None,
                  project_id: Optional[str] = None) -> None:
    """Initialize firebase-admin SDK.

    service_account can be one of:
    - None: rely on GOOGLE_APPLICATION_CREDENTIALS or default credentials in the environment
    - a filesystem path to a service account JSON file
    - a JSON string containing the service account (contains 'private_key')

    JSON content is written to a temp file because firebase-admin loads
    credentials from a path; the file is left in the system temp directory.
    """
    if firebase_admin._apps:
        return
    options = {}
    if storage_bucket:
        options['storageBucket'] = storage_bucket
    if project_id:
        options['projectId'] = project_id

    if service_account:
        if os.path.exists(service_account):
            firebase_admin.initialize_app(credentials.Certificate(service_account), options)
            return

        if 'private_key' in service_account:
            fd, path = tempfile.mkstemp(prefix='firebase_sa_', suffix='.json')
            os.close(fd)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(service_account)
            firebase_admin.initialize_app(credentials.Certificate(path), options)
            return

    # GOOGLE_APPLICATION_CREDENTIALS or GCE metadata
    firebase_admin.initialize_app(options=options or None)


class CloudBackend(StorageBackend):
    name = 'cloud'

    def __init__(self, client=None, cloud_config: Optional[Callable[[], Optional[Dict]]] = None):
        self._client = client
        self._owns_client = client is None
        self._cloud_config = cloud_config

    def ensure_initialized(self) -> None:
        self._get_client()

    def reset(self) -> None:
        """Drop the Firestore client so the next call initializes from the saved project config."""
        if not self._owns_client:
            return
        self._client = None
        if firebase_admin._apps:
            firebase_admin.delete_app(firebase_admin.get_app())
        logger.info('Firestore client reset')

    def _get_client(self):
        if self._client is not None:
            return self._client
        config = (self._cloud_config() if self._cloud_config else None) or {}
        try:
            init_firebase(
                service_account=config.get('serviceAccount'),
                storage_bucket=config.get('storageBucket'),
                project_id=config.get('projectId'),
            )
            self._client = firestore.client()
        except INIT_ERRORS as e:
            raise BackendUnreachable(f'Firebase initialization failed: {e}', backend=self.name) from e
        logger.info('Firestore client ready (project %s)', config.get('projectId') or 'default')
        return self._client

    def _collection(self, name: str):
        return self._get_client().collection(name)

    def list_records(self, collection: str) -> List[Dict]:
        coll = self._collection(collection)
        if collection == LOGS:
            query = coll.order_by('timestamp', direction=firestore.Query.DESCENDING)
        else:
            query = coll
        try:
            return [d.to_dict() for d in query.stream()]
        except CLOUD_ERRORS as e:
            raise BackendUnreachable(f'Reading {collection} failed: {e}', backend=self.name) from e

    def add_record(self, collection: str, record: Dict) -> None:
        try:
            self._collection(collection).document(str(record['id'])).set(record)
        except CLOUD_ERRORS as e:
            raise WriteFailed(f'Writing to {collection} failed: {e}', backend=self.name) from e

    def replace_records(self, collection: str, records: List[Dict]) -> None:
        client = self._get_client()
        coll = client.collection(collection)
        try:
            existing = [ref.id for ref in coll.list_documents()]
        except CLOUD_ERRORS as e:
            raise BackendUnreachable(f'Listing {collection} failed: {e}', backend=self.name) from e

        plan = plan_replace(existing, records)
        writes = [('set', key, rec) for key, rec in plan.upserts.items()]
        writes += [('delete', key, None) for key in sorted(plan.deletes)]
        try:
            for start in range(0, len(writes), MAX_BATCH_WRITES):
                batch = client.batch()
                for op, key, rec in writes[start:start + MAX_BATCH_WRITES]:
                    if op == 'set':
                        batch.set(coll.document(key), rec)
                    else:
                        batch.delete(coll.document(key))
                batch.commit()
        except CLOUD_ERRORS as e:
            raise WriteFailed(f'Replacing {collection} failed: {e}', backend=self.name) from e
        logger.info('Replaced %s: %d upserted (%d new), %d deleted',
                    collection, len(plan.upserts), len(plan.inserts), len(plan.deletes))

    def get_config(self) -> Optional[Dict]:
        try:
            doc = self._collection(SETTINGS_COLLECTION).document(CONFIG_DOCUMENT).get()
        except CLOUD_ERRORS as e:
            raise BackendUnreachable(f'Reading config failed: {e}', backend=self.name) from e
        if not doc.exists:
            return None
        return doc.to_dict()

    def save_config(self, config: Dict) -> None:
        try:
            self._collection(SETTINGS_COLLECTION).document(CONFIG_DOCUMENT).set(config)
        except CLOUD_ERRORS as e:
            raise WriteFailed(f'Writing config failed: {e}', backend=self.name) from e

    def ping(self, timeout: Optional[float] = None) -> bool:
        try:
            doc_ref = self._collection(SETTINGS_COLLECTION).document(CONFIG_DOCUMENT)
            if timeout:
                doc_ref.get(timeout=timeout)
            else:
                doc_ref.get()
            return True
        except BackendUnreachable as e:
            logger.info('Cloud backend unavailable: %s', e)
            return False
        except CLOUD_ERRORS as e:
            logger.info('Cloud backend health probe failed: %s', e)
            return False
