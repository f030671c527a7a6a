from abc import ABC, abstractmethod
from typing import Dict, List, Optional

USERS = 'users'
LOGS = 'logs'
LEAVES = 'leaves'
FEEDS = 'feeds'
ACTIVITIES = 'activities'


class StorageBackend(ABC):
    """Collection-oriented operations every backend implements the same way.

    `replace_records` must reconcile by key (see presence.reconcile) rather than
    clearing the collection first.
    """

    name = 'backend'

    @abstractmethod
    def list_records(self, collection: str) -> List[Dict]:
        ...

    @abstractmethod
    def add_record(self, collection: str, record: Dict) -> None:
        ...

    @abstractmethod
    def replace_records(self, collection: str, records: List[Dict]) -> None:
        ...

    @abstractmethod
    def get_config(self) -> Optional[Dict]:
        ...

    @abstractmethod
    def save_config(self, config: Dict) -> None:
        ...

    @abstractmethod
    def ping(self, timeout: Optional[float] = None) -> bool:
        """Return True when the backend answers; never raises."""
