"""Periodic reachability probe of the local backend with one-way failover to the cloud."""
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from presence.backends.base import StorageBackend
from presence.backends.cloud import CloudBackend
from presence.errors import StorageError
from presence.models import BackendMode
from presence.state import BackendState

logger = logging.getLogger(__name__)

HEALTH_JOB_ID = 'local-backend-health'


class HealthMonitor:
    """Drives BackendState from the local backend's health endpoint.

    - bootstrap(): one probe, LOCAL when reachable, CLOUD otherwise.
    - check(): while LOCAL, a single failed probe switches to CLOUD (the state
      notifies its reload listeners). While CLOUD nothing flips back; only the
      operator override returns to LOCAL.
    """

    def __init__(self, state: BackendState, local: StorageBackend, cloud: Optional[CloudBackend] = None,
                 interval_seconds: float = 10.0, timeout_seconds: float = 3.0,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.state = state
        self.local = local
        self.cloud = cloud
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)
        self._job = None

    def probe(self) -> bool:
        return self.local.ping(timeout=self.timeout_seconds)

    def bootstrap(self) -> BackendMode:
        if self.probe():
            self.state.set_mode(BackendMode.LOCAL, reason='local backend reachable at startup')
            self.state.connected = True
        else:
            self.state.set_mode(BackendMode.CLOUD, reason='local backend unreachable at startup')
            self.state.connected = self._prepare_cloud()
        return self.state.mode

    def check(self) -> BackendMode:
        healthy = self.probe()
        if not healthy and self.state.mode is BackendMode.LOCAL:
            self.state.set_mode(BackendMode.CLOUD, reason='auto-failover')
        if self.state.mode is BackendMode.CLOUD:
            self.state.connected = self._prepare_cloud()
        else:
            self.state.connected = healthy
        return self.state.mode

    def _prepare_cloud(self) -> bool:
        """Initialize the cloud client; False while it cannot be built."""
        if self.cloud is None:
            return True
        try:
            self.cloud.ensure_initialized()
        except StorageError as e:
            logger.error('Cloud backend not ready: %s', e)
            return False
        return True

    @property
    def running(self) -> bool:
        return self._job is not None

    def start(self) -> None:
        if self._job is not None:
            return
        self._job = self.scheduler.add_job(
            self.check, 'interval', seconds=self.interval_seconds,
            id=HEALTH_JOB_ID, max_instances=1, coalesce=True, replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info('Health monitor started (every %ss, timeout %ss)', self.interval_seconds, self.timeout_seconds)

    def stop(self) -> None:
        if self._job is None:
            return
        self._job.remove()
        self._job = None
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info('Health monitor stopped')

    def __enter__(self) -> 'HealthMonitor':
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
