"""Check-in verification: location, geofence and face match in one decision.

    IDLE -> ACQUIRING_LOCATION -> EVALUATING_GEOFENCE -> MATCHING_FACE -> SUCCESS

Any step can end in ERROR(reason) instead.

ERROR goes back to IDLE through retry(). SUCCESS stays until reset(), which
also forgets the logged-in identity.
"""
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

import pytz

from presence.errors import (FaceMismatch, LocationUnavailable, NoIdentity, OutOfRange,
                             ReasonCode, VerificationError)
from presence.faces import MatchResult
from presence.gateway import StorageGateway
from presence.geo import distance_meters
from presence.location import LocationSource
from presence.models import AttendanceOutcome, Identity, Location, OutcomeStatus

logger = logging.getLogger(__name__)


class CheckInState(str, Enum):
    IDLE = 'IDLE'
    ACQUIRING_LOCATION = 'ACQUIRING_LOCATION'
    EVALUATING_GEOFENCE = 'EVALUATING_GEOFENCE'
    MATCHING_FACE = 'MATCHING_FACE'
    SUCCESS = 'SUCCESS'
    ERROR = 'ERROR'


BUSY_STATES = frozenset({
    CheckInState.ACQUIRING_LOCATION,
    CheckInState.EVALUATING_GEOFENCE,
    CheckInState.MATCHING_FACE,
})


class FaceMatcher(Protocol):
    def compare(self, reference_image: str, candidate_image: str) -> MatchResult:
        ...

    def detect(self, image: str) -> bool:
        ...


@dataclass
class VerificationSession:
    captured_image: Optional[str]
    location: Optional[Location] = None
    distance: Optional[float] = None
    match: Optional[MatchResult] = None
    outcome: Optional[AttendanceOutcome] = None


@dataclass(frozen=True)
class CheckInResult:
    state: CheckInState
    message: str
    reason: Optional[ReasonCode] = None
    distance: Optional[float] = None
    score: Optional[float] = None
    outcome: Optional[AttendanceOutcome] = None

    @property
    def succeeded(self) -> bool:
        return self.state is CheckInState.SUCCESS


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class CheckInCoordinator:
    """Runs one verification attempt at a time for the logged-in identity."""

    def __init__(self, gateway: StorageGateway, matcher: FaceMatcher,
                 location_source: Optional[LocationSource] = None,
                 clock: Callable[[], datetime] = utc_now,
                 identity: Optional[Identity] = None):
        self.gateway = gateway
        self.matcher = matcher
        self.location_source = location_source
        self.clock = clock
        self._identity = identity
        self._state = CheckInState.IDLE
        self._session = None  # type: Optional[VerificationSession]
        self._result = None  # type: Optional[CheckInResult]
        self._lock = threading.Lock()

    @property
    def state(self) -> CheckInState:
        return self._state

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def session(self) -> Optional[VerificationSession]:
        return self._session

    @property
    def last_result(self) -> Optional[CheckInResult]:
        return self._result

    @property
    def busy(self) -> bool:
        return self._state in BUSY_STATES

    def select_identity(self, identity: Identity) -> bool:
        with self._lock:
            if self.busy:
                return False
            self._identity = identity
            self._clear()
        return True

    def retry(self) -> bool:
        with self._lock:
            if self._state is not CheckInState.ERROR:
                return False
            self._clear()
        return True

    def reset(self) -> bool:
        with self._lock:
            if self.busy:
                return False
            self._identity = None
            self._clear()
        return True

    def _clear(self) -> None:
        self._state = CheckInState.IDLE
        self._session = None
        self._result = None

    def run(self, captured_image: str, location_source: Optional[LocationSource] = None) -> Optional[CheckInResult]:
        """Verify one captured frame.

        Returns None without doing anything when an attempt is already running
        or the session already finished. Verification failures come back as an
        ERROR result; storage errors are raised after moving to ERROR.
        """
        with self._lock:
            identity = self._identity
            if identity is None:
                raise NoIdentity()
            if self._state is not CheckInState.IDLE:
                logger.debug('Ignoring capture for %s while %s', identity.subject_id, self._state.value)
                return None
            self._state = CheckInState.ACQUIRING_LOCATION
            self._session = VerificationSession(captured_image=captured_image)
            self._result = None

        try:
            return self._verify(identity, self._session, location_source or self.location_source)
        except VerificationError as e:
            return self._fail(e)
        except Exception as e:
            self._finish(CheckInState.ERROR, str(e), reason=getattr(e, 'reason', None))
            raise

    def _verify(self, identity: Identity, session: VerificationSession,
                source: Optional[LocationSource]) -> CheckInResult:
        # always fresh so an admin change applies to the next attempt
        config = self.gateway.get_config()

        if source is None:
            raise LocationUnavailable('No location source available.')
        try:
            session.location = source.get_current_position()
        except TimeoutError as e:
            raise LocationUnavailable(f'Timed out waiting for location: {e}') from e
        except PermissionError as e:
            raise LocationUnavailable(f'Location permission denied: {e}') from e
        except (OSError, ValueError) as e:
            raise LocationUnavailable(f'Location could not be read: {e}') from e

        self._state = CheckInState.EVALUATING_GEOFENCE
        session.distance = distance_meters(session.location, config.center)
        if session.distance > config.max_distance_meters:
            if not identity.geofence_exempt:
                raise OutOfRange(session.distance, config.max_distance_meters)
            logger.info('%s is %.0f m away but exempt from the geofence', identity.subject_id, session.distance)

        self._state = CheckInState.MATCHING_FACE
        session.match = self.matcher.compare(identity.reference_image, session.captured_image)
        if not session.match.is_match:
            # failed attempts are not written to the attendance log
            raise FaceMismatch(session.match.score)

        outcome = AttendanceOutcome(
            identity_id=identity.subject_id,
            display_name=identity.display_name,
            timestamp_utc=self.clock(),
            status=OutcomeStatus.SUCCESS,
            measured_distance_meters=session.distance,
            location=Location(session.location.lat, session.location.lng),
            evidence_image=session.captured_image,
        )
        self.gateway.add_log(outcome)
        session.outcome = outcome
        logger.info('Check-in recorded for %s at %.0f m (score %.0f)',
                    identity.subject_id, session.distance, session.match.score)
        return self._finish(CheckInState.SUCCESS, f'Check-in recorded. Hello {identity.display_name}.')

    def _fail(self, error: VerificationError) -> CheckInResult:
        logger.info('Check-in rejected (%s): %s', error.reason.value if error.reason else '-', error)
        return self._finish(CheckInState.ERROR, str(error), reason=error.reason)

    def _finish(self, state: CheckInState, message: str, reason: Optional[ReasonCode] = None) -> CheckInResult:
        session = self._session
        outcome = session.outcome if session else None
        self._result = CheckInResult(
            state=state,
            message=message,
            reason=reason,
            distance=session.distance if session else None,
            score=session.match.score if session and session.match else None,
            outcome=replace(outcome, evidence_image='') if outcome else None,
        )
        if session is not None:
            # frames are large; a finished attempt keeps only its result
            session.captured_image = None
            session.outcome = self._result.outcome
        self._state = state
        return self._result
