"""Records exchanged between the check-in flow and the storage backends.

Both backends store the same camelCase JSON documents:

users:
 - id, name, employeeId, password, photoBase64 (base64 image)
 - role ('user' | 'admin'), position, reportsTo, createdAt (epoch ms)
 - geofenceExempt (bool, optional)

settings/officeConfig:
 - latitude, longitude, maxDistance (meters)

logs:
 - id, userId, userName, timestamp (epoch ms), status ('SUCCESS' | 'FAILED')
 - reason (optional), location {lat, lng}, distance, capturedPhoto
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

import pytz


DEFAULT_OFFICE_LATITUDE = -6.2
DEFAULT_OFFICE_LONGITUDE = 106.81
DEFAULT_MAX_DISTANCE_METERS = 100.0


class BackendMode(str, Enum):
    LOCAL = 'LOCAL'
    CLOUD = 'CLOUD'

    @classmethod
    def parse(cls, value: Optional[str], default: 'BackendMode') -> 'BackendMode':
        if not value:
            return default
        value = str(value).upper()
        # 'FIREBASE' is what older clients wrote for the cloud store
        if value == 'FIREBASE':
            return cls.CLOUD
        try:
            return cls(value)
        except ValueError:
            return default


class OutcomeStatus(str, Enum):
    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict:
        return {'lat': self.lat, 'lng': self.lng}


@dataclass(frozen=True)
class GeofenceConfig:
    center_lat: float = DEFAULT_OFFICE_LATITUDE
    center_lng: float = DEFAULT_OFFICE_LONGITUDE
    max_distance_meters: float = DEFAULT_MAX_DISTANCE_METERS

    @property
    def center(self) -> Location:
        return Location(self.center_lat, self.center_lng)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'GeofenceConfig':
        if not data:
            return cls()
        return cls(
            center_lat=float(data.get('latitude', DEFAULT_OFFICE_LATITUDE)),
            center_lng=float(data.get('longitude', DEFAULT_OFFICE_LONGITUDE)),
            max_distance_meters=float(data.get('maxDistance', DEFAULT_MAX_DISTANCE_METERS)),
        )

    def to_dict(self) -> Dict:
        return {
            'latitude': self.center_lat,
            'longitude': self.center_lng,
            'maxDistance': self.max_distance_meters,
        }


@dataclass(frozen=True)
class Identity:
    id: str
    display_name: str
    reference_image: str
    geofence_exempt: bool = False
    employee_id: Optional[str] = None
    password: Optional[str] = None
    role: str = 'user'
    position: Optional[str] = None
    reports_to: Optional[str] = None
    created_at: Optional[int] = None

    @property
    def subject_id(self) -> str:
        """Id written into attendance logs (the employee number when there is one)."""
        return self.employee_id or self.id

    def matches_login(self, login_id: str, password: str) -> bool:
        login_id = (login_id or '').strip()
        if not login_id:
            return False
        known = login_id == self.employee_id or login_id.lower() == self.display_name.lower()
        return known and password == self.password

    @classmethod
    def from_dict(cls, data: Dict) -> 'Identity':
        return cls(
            id=str(data['id']),
            display_name=data.get('name', ''),
            reference_image=data.get('photoBase64', ''),
            geofence_exempt=bool(data.get('geofenceExempt', False)),
            employee_id=data.get('employeeId'),
            password=data.get('password'),
            role=data.get('role', 'user'),
            position=data.get('position'),
            reports_to=data.get('reportsTo'),
            created_at=data.get('createdAt'),
        )

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'name': self.display_name,
            'employeeId': self.employee_id,
            'photoBase64': self.reference_image,
            'role': self.role,
            'createdAt': self.created_at,
        }
        if self.password is not None:
            data['password'] = self.password
        if self.position is not None:
            data['position'] = self.position
        if self.reports_to is not None:
            data['reportsTo'] = self.reports_to
        if self.geofence_exempt:
            data['geofenceExempt'] = True
        return data


def new_record_id() -> str:
    return uuid.uuid4().hex[:12]


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = pytz.UTC.localize(dt)
    return int(dt.timestamp() * 1000)


def from_epoch_ms(value) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000.0, tz=pytz.UTC)


@dataclass(frozen=True)
class AttendanceOutcome:
    identity_id: str
    display_name: str
    timestamp_utc: datetime
    status: OutcomeStatus
    measured_distance_meters: float
    location: Location
    evidence_image: str
    reason_code: Optional[str] = None
    id: str = field(default_factory=new_record_id)

    @classmethod
    def from_dict(cls, data: Dict) -> 'AttendanceOutcome':
        loc = data.get('location') or {}
        return cls(
            id=str(data['id']),
            identity_id=str(data.get('userId', '')),
            display_name=data.get('userName', ''),
            timestamp_utc=from_epoch_ms(data.get('timestamp', 0)),
            status=OutcomeStatus(data.get('status', OutcomeStatus.SUCCESS.value)),
            reason_code=data.get('reason'),
            measured_distance_meters=float(data.get('distance', 0.0)),
            location=Location(float(loc.get('lat', 0.0)), float(loc.get('lng', 0.0))),
            evidence_image=data.get('capturedPhoto', ''),
        )

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'userId': self.identity_id,
            'userName': self.display_name,
            'timestamp': to_epoch_ms(self.timestamp_utc),
            'status': self.status.value,
            'location': self.location.to_dict(),
            'distance': self.measured_distance_meters,
            'capturedPhoto': self.evidence_image,
        }
        if self.reason_code:
            data['reason'] = self.reason_code
        return data
