import logging
from dataclasses import dataclass
from typing import Dict, List

from presence.backends.base import ACTIVITIES, FEEDS, LEAVES, LOGS, USERS, StorageBackend
from presence.models import AttendanceOutcome, BackendMode, GeofenceConfig, Identity
from presence.state import BackendState

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    users: List[Identity]
    config: GeofenceConfig
    logs: List[AttendanceOutcome]


class StorageGateway:
    """One data-access contract over the local and the cloud backend.

    The active backend is looked up from the shared BackendState at the start
    of every call and used for that whole call. Switching backends does not
    migrate data; callers re-fetch everything via `reload()`.
    """

    def __init__(self, state: BackendState, local: StorageBackend, cloud: StorageBackend):
        self.state = state
        self.local = local
        self.cloud = cloud

    def backend(self) -> StorageBackend:
        return self.cloud if self.state.mode is BackendMode.CLOUD else self.local

    # USERS
    def get_users(self) -> List[Identity]:
        return [Identity.from_dict(u) for u in self.backend().list_records(USERS)]

    def save_users(self, users: List[Identity]) -> None:
        self.backend().replace_records(USERS, [u.to_dict() for u in users])

    # CONFIG
    def get_config(self) -> GeofenceConfig:
        return GeofenceConfig.from_dict(self.backend().get_config())

    def save_config(self, config: GeofenceConfig) -> None:
        self.backend().save_config(config.to_dict())

    # LOGS
    def get_logs(self) -> List[AttendanceOutcome]:
        logs = [AttendanceOutcome.from_dict(r) for r in self.backend().list_records(LOGS)]
        logs.sort(key=lambda o: o.timestamp_utc, reverse=True)
        return logs

    def add_log(self, outcome: AttendanceOutcome) -> None:
        backend = self.backend()
        backend.add_record(LOGS, outcome.to_dict())
        logger.info('Attendance %s for %s stored on %s', outcome.id, outcome.identity_id, backend.name)

    def replace_logs(self, outcomes: List[AttendanceOutcome]) -> None:
        self.backend().replace_records(LOGS, [o.to_dict() for o in outcomes])

    # LEAVE REQUESTS
    def get_leave_requests(self) -> List[Dict]:
        return self.backend().list_records(LEAVES)

    def replace_leave_requests(self, leaves: List[Dict]) -> None:
        self.backend().replace_records(LEAVES, leaves)

    # FEEDS
    def get_feeds(self) -> List[Dict]:
        return self.backend().list_records(FEEDS)

    def add_feed(self, post: Dict) -> None:
        self.backend().add_record(FEEDS, post)

    # DAILY ACTIVITIES
    def get_activities(self) -> List[Dict]:
        return self.backend().list_records(ACTIVITIES)

    def add_activity(self, activity: Dict) -> None:
        self.backend().add_record(ACTIVITIES, activity)

    def reload(self) -> Snapshot:
        """Fetch Users, Config and Logs in full from the active backend."""
        backend = self.backend()
        snapshot = Snapshot(
            users=[Identity.from_dict(u) for u in backend.list_records(USERS)],
            config=GeofenceConfig.from_dict(backend.get_config()),
            logs=sorted((AttendanceOutcome.from_dict(r) for r in backend.list_records(LOGS)),
                        key=lambda o: o.timestamp_utc, reverse=True),
        )
        logger.info('Reloaded %d users and %d logs from %s', len(snapshot.users), len(snapshot.logs), backend.name)
        return snapshot
