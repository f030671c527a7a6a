"""Presence check-in app (local server first, Firestore fallback).

Wires the storage gateway, the health monitor and one check-in coordinator per
browser session, and exposes the JSON routes used by the UI.
"""
import atexit
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import pytz
from flask import Flask, current_app, jsonify, request, session
from werkzeug.exceptions import Forbidden

from presence.backends.cloud import CloudBackend
from presence.backends.local import LocalBackend
from presence.coordinator import CheckInCoordinator, CheckInResult, FaceMatcher, utc_now
from presence.errors import BackendUnreachable, NoIdentity, PresenceError, ReasonCode, StorageError
from presence.faces import CloudVisionDetector, FaceRecognitionMatcher
from presence.gateway import Snapshot, StorageGateway
from presence.health import HealthMonitor
from presence.location import resolve_location_source
from presence.models import AttendanceOutcome, BackendMode, GeofenceConfig, Identity
from presence.settings import Settings
from presence.state import BackendState, ClientStore

logger = logging.getLogger(__name__)

SESSION_KEY = 'checkin_session'

REASON_STATUS = {
    ReasonCode.NO_IDENTITY: 401,
    ReasonCode.LOCATION_UNAVAILABLE: 400,
    ReasonCode.OUT_OF_RANGE: 403,
    ReasonCode.FACE_NOT_DETECTED: 400,
    ReasonCode.FACE_MISMATCH: 400,
    ReasonCode.BACKEND_UNREACHABLE: 503,
    ReasonCode.WRITE_FAILED: 503,
}


def format_local_datetime(dt: datetime, tz_name: str) -> Optional[str]:
    """Format datetime for display in the office timezone"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = pytz.UTC.localize(dt)
    return dt.astimezone(pytz.timezone(tz_name)).strftime("%Y-%m-%d %H:%M:%S %Z")


def probe_endpoint(endpoint: str, timeout: float) -> bool:
    """One health request against a local server that is not necessarily the active one."""
    return LocalBackend(endpoint).ping(timeout=timeout)


@dataclass
class Services:
    settings: Settings
    state: BackendState
    gateway: StorageGateway
    monitor: Optional[HealthMonitor]
    matcher: FaceMatcher
    clock: Callable[[], datetime] = utc_now
    endpoint_probe: Callable[[str, float], bool] = probe_endpoint
    coordinators: 'OrderedDict[str, CheckInCoordinator]' = field(default_factory=OrderedDict)
    snapshot: Optional[Snapshot] = None
    generation: int = 0
    reload_error: Optional[str] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    def refresh(self) -> Snapshot:
        """Re-fetch Users/Config/Logs from whichever backend is active now."""
        snapshot = self.gateway.reload()
        with self.lock:
            self.snapshot = snapshot
            self.generation += 1
            self.reload_error = None
        return snapshot

    def reload_data(self, mode: Optional[BackendMode] = None) -> Optional[Snapshot]:
        """Mode-change listener. A failed reload is kept for /api/storage, not raised."""
        try:
            return self.refresh()
        except StorageError as e:
            self.reload_error = str(e)
            logger.error('Data reload from %s failed: %s', (mode or self.state.mode).value, e)
            return None

    def open_session(self) -> Tuple[str, CheckInCoordinator]:
        key = uuid.uuid4().hex
        coordinator = CheckInCoordinator(self.gateway, self.matcher, clock=self.clock)
        with self.lock:
            self.coordinators[key] = coordinator
            self._evict()
        return key, coordinator

    def session_coordinator(self, key: str) -> Optional[CheckInCoordinator]:
        with self.lock:
            coordinator = self.coordinators.get(key)
            if coordinator is not None:
                self.coordinators.move_to_end(key)
        return coordinator

    def close_session(self, key: str) -> None:
        with self.lock:
            self.coordinators.pop(key, None)

    def _evict(self) -> None:
        # least recently used first; an attempt in flight is never dropped
        for key in list(self.coordinators):
            if len(self.coordinators) <= self.settings.max_sessions:
                return
            if not self.coordinators[key].busy:
                del self.coordinators[key]
                logger.debug('Evicted idle check-in session %s', key)


def build_services(settings: Settings) -> Services:
    state = BackendState(ClientStore(settings.client_state_path))
    if state.cloud_config is None and settings.firebase_service_account:
        state.save_cloud_config({
            'serviceAccount': settings.firebase_service_account,
            'storageBucket': settings.firebase_storage_bucket,
        })
    local = LocalBackend(lambda: state.server_endpoint(settings.local_api_base))
    cloud = CloudBackend(cloud_config=lambda: state.cloud_config)
    gateway = StorageGateway(state, local, cloud)
    monitor = HealthMonitor(state, local, cloud,
                            interval_seconds=settings.health_interval_seconds,
                            timeout_seconds=settings.health_timeout_seconds)
    detector = CloudVisionDetector() if settings.face_detector == 'vision' else None
    return Services(settings=settings, state=state, gateway=gateway, monitor=monitor,
                    matcher=FaceRecognitionMatcher(detector=detector))


def _services() -> Services:
    return current_app.extensions['presence']


def _payload() -> Dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _current_coordinator() -> Optional[CheckInCoordinator]:
    key = session.get(SESSION_KEY)
    if not key:
        return None
    return _services().session_coordinator(key)


def _require_identity() -> Identity:
    coordinator = _current_coordinator()
    if coordinator is None or coordinator.identity is None:
        raise NoIdentity()
    return coordinator.identity


def _require_admin() -> Identity:
    identity = _require_identity()
    if identity.role != 'admin':
        raise Forbidden('Admin access required.')
    return identity


def _result_json(result: CheckInResult):
    body = {
        'state': result.state.value,
        'message': result.message,
        'reason': result.reason.value if result.reason else None,
        'distance': round(result.distance, 1) if result.distance is not None else None,
        'score': round(result.score, 1) if result.score is not None else None,
    }
    if result.outcome is not None:
        body['logId'] = result.outcome.id
    if result.succeeded:
        return jsonify(body)
    return jsonify(body), REASON_STATUS.get(result.reason, 400)


def _log_json(outcome: AttendanceOutcome, tz_name: str, with_photo: bool) -> Dict:
    data = outcome.to_dict()
    data['time'] = format_local_datetime(outcome.timestamp_utc, tz_name)
    if not with_photo:
        data.pop('capturedPhoto', None)
    return data


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None,
               start_monitor: bool = True) -> Flask:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
    app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024
    app.extensions['presence'] = services

    services.state.on_change(services.reload_data)

    if start_monitor and services.monitor is not None:
        mode = services.monitor.bootstrap()
        logger.info('Storage mode at startup: %s (connected: %s)', mode.value, services.state.connected)
        if services.snapshot is None:
            services.reload_data()
        services.monitor.start()
        atexit.register(services.monitor.stop)

    @app.errorhandler(PresenceError)
    def handle_presence_error(e):
        return jsonify({'error': str(e), 'reason': e.reason.value if e.reason else None}), \
            REASON_STATUS.get(e.reason, 500)

    @app.errorhandler(Forbidden)
    def handle_forbidden(e):
        return jsonify({'error': e.description}), 403

    @app.route('/')
    def index():
        svc = _services()
        return jsonify({'app': 'presence', 'storage': svc.state.mode.value, 'connected': svc.state.connected})

    @app.route('/api/login', methods=['POST'])
    def login():
        data = _payload()
        login_id = data.get('loginId') or data.get('employeeId') or ''
        password = data.get('password') or ''
        svc = _services()
        user = next((u for u in svc.gateway.get_users() if u.matches_login(login_id, password)), None)
        if user is None:
            return jsonify({'error': 'Invalid employee id or password.'}), 401

        # a browser that logs in again keeps its coordinator
        coordinator = _current_coordinator()
        if coordinator is None:
            key, coordinator = svc.open_session()
            session[SESSION_KEY] = key
        if not coordinator.select_identity(user):
            return jsonify({'error': 'A check-in is still in progress.'}), 409
        logger.info('%s logged in', user.subject_id)
        return jsonify({'id': user.id, 'name': user.display_name, 'employeeId': user.employee_id, 'role': user.role})

    @app.route('/logout', methods=['POST'])
    def logout():
        coordinator = _current_coordinator()
        if coordinator is not None:
            if not coordinator.reset():
                return jsonify({'error': 'A check-in is still in progress.'}), 409
            _services().close_session(session.pop(SESSION_KEY))
        return jsonify({'message': 'Logged out.'})

    @app.route('/attendance', methods=['POST'])
    def attendance():
        coordinator = _current_coordinator()
        if coordinator is None or coordinator.identity is None:
            raise NoIdentity()
        data = _payload()
        image = data.get('image')
        if not image:
            return jsonify({'error': 'Image is required.'}), 400

        svc = _services()
        fallback = None
        if svc.settings.debug_use_company_location:
            fallback = svc.gateway.get_config().center
        source = resolve_location_source(data.get('latitude'), data.get('longitude'), data.get('accuracy'),
                                         fallback=fallback)
        result = coordinator.run(image, location_source=source)
        if result is None:
            return jsonify({'error': 'A check-in is already in progress or finished.',
                            'state': coordinator.state.value}), 409
        return _result_json(result)

    @app.route('/attendance/retry', methods=['POST'])
    def attendance_retry():
        coordinator = _current_coordinator()
        if coordinator is None:
            raise NoIdentity()
        if not coordinator.retry():
            return jsonify({'error': 'Nothing to retry.', 'state': coordinator.state.value}), 409
        return jsonify({'state': coordinator.state.value})

    @app.route('/api/face/detect', methods=['POST'])
    def face_detect():
        image = _payload().get('image')
        if not image:
            return jsonify({'error': 'Image is required.'}), 400
        return jsonify({'detected': bool(_services().matcher.detect(image))})

    @app.route('/records')
    def records():
        identity = _require_identity()
        is_admin = identity.role == 'admin'
        user_id = request.args.get('user')
        if not is_admin:
            if user_id and user_id != identity.subject_id:
                raise Forbidden('Employees can only list their own records.')
            user_id = identity.subject_id
        # check-in photos are for admins only
        with_photo = is_admin and request.args.get('photos') in ('1', 'true', 'yes')

        svc = _services()
        logs: List[AttendanceOutcome] = svc.gateway.get_logs()
        if user_id:
            logs = [o for o in logs if o.identity_id == user_id]
        return jsonify([_log_json(o, svc.settings.display_timezone, with_photo) for o in logs])

    @app.route('/admin/config', methods=['GET'])
    def admin_config():
        _require_admin()
        return jsonify(_services().gateway.get_config().to_dict())

    @app.route('/admin/config', methods=['POST'])
    def admin_save_config():
        _require_admin()
        data = _payload()
        if not all(k in data for k in ('latitude', 'longitude', 'maxDistance')):
            return jsonify({'error': 'latitude, longitude and maxDistance are required.'}), 400
        try:
            config = GeofenceConfig.from_dict(data)
        except (TypeError, ValueError):
            return jsonify({'error': 'latitude, longitude and maxDistance must be numbers.'}), 400
        _services().gateway.save_config(config)
        return jsonify(config.to_dict())

    @app.route('/api/storage', methods=['GET'])
    def storage_status():
        svc = _services()
        snapshot = svc.snapshot
        return jsonify({
            'mode': svc.state.mode.value,
            'connected': svc.state.connected,
            'monitoring': bool(svc.monitor and svc.monitor.running),
            # clients re-fetch their data when the generation moves
            'generation': svc.generation,
            'loaded': {'users': len(snapshot.users), 'logs': len(snapshot.logs)} if snapshot else None,
            'reloadError': svc.reload_error,
        })

    @app.route('/api/storage/mode', methods=['POST'])
    def storage_override():
        admin = _require_admin()
        data = _payload()
        value = (data.get('mode') or '').upper()
        if value not in BackendMode.__members__:
            return jsonify({'error': 'mode must be LOCAL or CLOUD.'}), 400
        mode = BackendMode(value)
        svc = _services()

        if mode is BackendMode.LOCAL:
            current = svc.state.server_endpoint(svc.settings.local_api_base)
            new_endpoint = str(data.get('endpoint') or '').strip()
            endpoint = new_endpoint or current
            if not endpoint.startswith(('http://', 'https://')):
                return jsonify({'error': 'endpoint must be an http(s) URL.'}), 400
            if not svc.endpoint_probe(endpoint, svc.settings.health_timeout_seconds):
                raise BackendUnreachable(f'Local server at {endpoint} is not reachable.', backend='local')
            source_changed = endpoint != current
            if new_endpoint:
                svc.state.save_server_endpoint(new_endpoint)
        else:
            cloud_config = data.get('firebaseConfig')
            source_changed = cloud_config is not None
            if cloud_config is not None:
                if not isinstance(cloud_config, dict) or not (cloud_config.get('projectId')
                                                              or cloud_config.get('serviceAccount')):
                    return jsonify({'error': 'firebaseConfig needs a projectId or a serviceAccount.'}), 400
                _switch_cloud_project(svc, cloud_config)
            else:
                svc.gateway.cloud.ensure_initialized()

        changed = svc.state.set_mode(mode, reason=f'operator override by {admin.subject_id}')
        svc.state.connected = True
        if not changed and source_changed:
            svc.reload_data(mode)
        return jsonify({'mode': svc.state.mode.value, 'connected': svc.state.connected,
                        'generation': svc.generation})

    @app.route('/api/storage/reload', methods=['POST'])
    def storage_reload():
        _require_admin()
        svc = _services()
        snapshot = svc.refresh()
        return jsonify({'users': len(snapshot.users), 'logs': len(snapshot.logs),
                        'config': snapshot.config.to_dict(), 'generation': svc.generation})

    return app


def _switch_cloud_project(svc: Services, cloud_config: Dict) -> None:
    """Persist a new Firebase project and connect to it; the previous one is restored on failure."""
    cloud = svc.gateway.cloud
    previous = svc.state.cloud_config
    svc.state.save_cloud_config(cloud_config)
    cloud.reset()
    try:
        cloud.ensure_initialized()
    except StorageError:
        if previous is not None:
            svc.state.save_cloud_config(previous)
        cloud.reset()
        raise
    logger.info('Cloud backend now uses project %s', cloud_config.get('projectId') or '(service account)')


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app = create_app(settings)
    app.run(host='0.0.0.0', port=5000, threaded=True)


if __name__ == '__main__':
    main()
