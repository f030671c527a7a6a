"""Device location sources.

A browser posts its geolocation together with the captured frame, so the
usual source is the position that came with the request.
"""
from typing import Optional, Protocol

from presence.errors import LocationUnavailable
from presence.models import Location


class LocationSource(Protocol):
    def get_current_position(self) -> Location:
        ...


class ReportedLocation:
    """Position reported by the client; missing or malformed values are unavailable."""

    def __init__(self, latitude, longitude, accuracy=None):
        self.latitude = latitude
        self.longitude = longitude
        self.accuracy = accuracy

    def get_current_position(self) -> Location:
        if self.latitude is None or self.longitude is None:
            raise LocationUnavailable('Location data is missing.')
        try:
            lat = float(self.latitude)
            lng = float(self.longitude)
            accuracy = float(self.accuracy) if self.accuracy is not None else None
        except (TypeError, ValueError) as e:
            raise LocationUnavailable(f'Location data is invalid: {e}') from e
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise LocationUnavailable('Location data is out of bounds.')
        return Location(lat, lng, accuracy)


class FixedLocation:
    """Always reports the same position (debug mode uses the office center)."""

    def __init__(self, location: Location):
        self.location = location

    def get_current_position(self) -> Location:
        return self.location


def resolve_location_source(latitude, longitude, accuracy=None,
                            fallback: Optional[Location] = None) -> LocationSource:
    if (latitude is None or longitude is None) and fallback is not None:
        return FixedLocation(fallback)
    return ReportedLocation(latitude, longitude, accuracy)
