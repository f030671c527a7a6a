from datetime import datetime
from typing import Dict, List, Optional

import pytest
import pytz

from presence.backends.base import StorageBackend
from presence.errors import BackendUnreachable, WriteFailed
from presence.faces import MatchResult
from presence.gateway import StorageGateway
from presence.models import BackendMode, GeofenceConfig, Identity
from presence.reconcile import plan_replace
from presence.state import BackendState, ClientStore


class InMemoryBackend(StorageBackend):
    def __init__(self, name: str):
        self.name = name
        self.collections: Dict[str, Dict[str, Dict]] = {}
        self.config: Optional[Dict] = None
        self.healthy = True
        self.fail_reads = False
        self.fail_writes = False
        self.calls: List[tuple] = []

    def _read(self, op, *args):
        self.calls.append((op,) + args)
        if self.fail_reads:
            raise BackendUnreachable(f'{self.name} is down', backend=self.name)

    def _write(self, op, *args):
        self.calls.append((op,) + args)
        if self.fail_writes:
            raise WriteFailed(f'{self.name} rejected the write', backend=self.name)

    def list_records(self, collection):
        self._read('list', collection)
        return list(self.collections.get(collection, {}).values())

    def add_record(self, collection, record):
        self._write('add', collection)
        self.collections.setdefault(collection, {})[str(record['id'])] = record

    def replace_records(self, collection, records):
        self._write('replace', collection)
        stored = self.collections.setdefault(collection, {})
        plan = plan_replace(stored.keys(), records)
        stored.update(plan.upserts)
        for key in plan.deletes:
            del stored[key]

    def get_config(self):
        self._read('get_config')
        return self.config

    def save_config(self, config):
        self._write('save_config')
        self.config = config

    def ping(self, timeout=None):
        self.calls.append(('ping', timeout))
        return self.healthy

    def ids(self, collection):
        return set(self.collections.get(collection, {}))


class FakeCloud(InMemoryBackend):
    def __init__(self):
        super().__init__('cloud')
        self.initialized = 0
        self.resets = 0
        self.init_error: Optional[Exception] = None

    def ensure_initialized(self):
        self.initialized += 1
        if self.init_error is not None:
            raise self.init_error

    def reset(self):
        self.resets += 1


class FakeMatcher:
    def __init__(self, result: Optional[MatchResult] = None, error: Optional[Exception] = None, during=None):
        self.result = result or MatchResult(is_match=True, score=92.0, distance=0.08)
        self.error = error
        self.during = during
        self.calls = []
        self.faces = True

    def compare(self, reference_image, candidate_image):
        self.calls.append((reference_image, candidate_image))
        if self.during is not None:
            self.during()
        if self.error is not None:
            raise self.error
        return self.result

    def detect(self, image):
        return self.faces


@pytest.fixture
def fixed_now():
    return pytz.UTC.localize(datetime(2024, 3, 4, 1, 5, 0))


@pytest.fixture
def state():
    return BackendState(ClientStore(None), default=BackendMode.LOCAL)


@pytest.fixture
def local():
    return InMemoryBackend('local')


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def gateway(state, local, cloud):
    return StorageGateway(state, local, cloud)


@pytest.fixture
def office():
    return GeofenceConfig(center_lat=-6.200000, center_lng=106.816666, max_distance_meters=100)


@pytest.fixture
def employee():
    return Identity(
        id='u-1',
        display_name='Budi',
        reference_image='registered-photo',
        employee_id='E001',
        password='secret',
    )
