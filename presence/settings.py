"""Runtime configuration read from the environment (and an optional .env file)."""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_LOCAL_API_BASE = 'http://localhost:3000/api'


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return str(value).lower() in ('1', 'true', 'yes')


def find_service_account(base_dir: Optional[str] = None) -> Optional[str]:
    """Return a candidate service account path or raw JSON string.

    Order of preference:
      - FIREBASE_SERVICE_ACCOUNT_JSON (raw JSON content)
      - FIREBASE_SERVICE_ACCOUNT_PATH (explicit path)
      - GOOGLE_APPLICATION_CREDENTIALS (path)
      - first .json file in ./keys/
    """
    sa_json = os.environ.get('FIREBASE_SERVICE_ACCOUNT_JSON')
    if sa_json:
        return sa_json

    sa_path = os.environ.get('FIREBASE_SERVICE_ACCOUNT_PATH')
    if sa_path and os.path.exists(sa_path):
        return sa_path

    gac = os.environ.get('GOOGLE_APPLICATION_CREDENTIALS')
    if gac and os.path.exists(gac):
        return gac

    keys_dir = os.path.join(base_dir or os.getcwd(), 'keys')
    if os.path.isdir(keys_dir):
        for fn in sorted(os.listdir(keys_dir)):
            if fn.lower().endswith('.json'):
                return os.path.join(keys_dir, fn)
    return None


@dataclass
class Settings:
    local_api_base: str = DEFAULT_LOCAL_API_BASE
    health_interval_seconds: float = 10.0
    health_timeout_seconds: float = 3.0
    client_state_path: str = os.path.join(os.path.expanduser('~'), '.presence', 'client_state.json')
    firebase_service_account: Optional[str] = None
    firebase_storage_bucket: Optional[str] = None
    local_database_url: str = 'sqlite:///presence_local.db'
    display_timezone: str = 'Asia/Jakarta'
    secret_key: str = 'change-me'
    debug_use_company_location: bool = False
    face_detector: str = 'face_recognition'
    log_level: str = 'INFO'
    max_sessions: int = 500

    @classmethod
    def from_env(cls, dotenv: bool = True) -> 'Settings':
        if dotenv:
            load_dotenv()
        defaults = cls()
        return cls(
            local_api_base=os.environ.get('LOCAL_API_BASE', defaults.local_api_base),
            health_interval_seconds=float(os.environ.get('HEALTH_INTERVAL_SECONDS', defaults.health_interval_seconds)),
            health_timeout_seconds=float(os.environ.get('HEALTH_TIMEOUT_SECONDS', defaults.health_timeout_seconds)),
            client_state_path=os.environ.get('CLIENT_STATE_PATH', defaults.client_state_path),
            firebase_service_account=find_service_account(),
            firebase_storage_bucket=os.environ.get('FIREBASE_STORAGE_BUCKET'),
            local_database_url=os.environ.get('LOCAL_DATABASE_URL', defaults.local_database_url),
            display_timezone=os.environ.get('DISPLAY_TIMEZONE', defaults.display_timezone),
            secret_key=os.environ.get('FLASK_SECRET', defaults.secret_key),
            debug_use_company_location=_env_bool('DEBUG_USE_COMPANY_LOCATION', defaults.debug_use_company_location),
            face_detector=os.environ.get('FACE_DETECTOR', defaults.face_detector).lower(),
            log_level=os.environ.get('LOG_LEVEL', defaults.log_level).upper(),
            max_sessions=int(os.environ.get('MAX_SESSIONS', defaults.max_sessions)),
        )
