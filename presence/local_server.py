"""Self-hosted backend: JSON-over-HTTP store for users, config and logs.

Records are kept as JSON payloads in SQL (SQLite by default), one row per
(collection, id). Replace-all requests reconcile by id in one transaction;
append requests place the new record first, newest first like the log view.
"""
import logging
import os
from typing import Dict, List

from flask import Blueprint, Flask, jsonify, request
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func

from presence.backends.base import ACTIVITIES, FEEDS, LEAVES, LOGS, USERS
from presence.models import GeofenceConfig
from presence.reconcile import plan_replace, record_key

logger = logging.getLogger(__name__)

db = SQLAlchemy()
api = Blueprint('api', __name__, url_prefix='/api')

COLLECTIONS = (USERS, LOGS, LEAVES, FEEDS, ACTIVITIES)
APPENDABLE = (LOGS, FEEDS, ACTIVITIES)
CONFIG_DOCUMENT = 'officeConfig'


class StoredRecord(db.Model):
    __tablename__ = 'records'
    collection = db.Column(db.String(50), primary_key=True)
    record_id = db.Column(db.String(100), primary_key=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    payload = db.Column(db.JSON, nullable=False)


class StoredDocument(db.Model):
    __tablename__ = 'documents'
    name = db.Column(db.String(100), primary_key=True)
    payload = db.Column(db.JSON, nullable=False)


def list_collection(collection: str) -> List[Dict]:
    rows = StoredRecord.query.filter_by(collection=collection).order_by(StoredRecord.position).all()
    return [row.payload for row in rows]


def replace_collection(collection: str, records: List[Dict]) -> Dict:
    existing = {row.record_id: row for row in StoredRecord.query.filter_by(collection=collection).all()}
    plan = plan_replace(existing.keys(), records)
    for position, (key, record) in enumerate(plan.upserts.items()):
        row = existing.get(key)
        if row is None:
            db.session.add(StoredRecord(collection=collection, record_id=key, position=position, payload=record))
        else:
            row.payload = record
            row.position = position
    for key in plan.deletes:
        db.session.delete(existing[key])
    db.session.commit()
    return {'upserted': len(plan.upserts), 'inserted': len(plan.inserts), 'deleted': len(plan.deletes)}


def append_record(collection: str, record: Dict) -> None:
    key = record_key(record)
    first = db.session.query(func.min(StoredRecord.position)).filter_by(collection=collection).scalar()
    position = (first if first is not None else 0) - 1
    row = db.session.get(StoredRecord, (collection, key))
    if row is None:
        db.session.add(StoredRecord(collection=collection, record_id=key, position=position, payload=record))
    else:
        row.payload = record
        row.position = position
    db.session.commit()


def get_config_document() -> Dict:
    doc = db.session.get(StoredDocument, CONFIG_DOCUMENT)
    return doc.payload if doc else GeofenceConfig().to_dict()


def save_config_document(config: Dict) -> None:
    doc = db.session.get(StoredDocument, CONFIG_DOCUMENT)
    if doc is None:
        db.session.add(StoredDocument(name=CONFIG_DOCUMENT, payload=config))
    else:
        doc.payload = config
    db.session.commit()


def _json_body(expected_type):
    body = request.get_json(silent=True)
    if not isinstance(body, expected_type):
        return None
    return body


@api.route('/health')
def health():
    return jsonify({'status': 'ok'})


@api.route('/config', methods=['GET'])
def read_config():
    return jsonify(get_config_document())


@api.route('/config', methods=['POST'])
def write_config():
    config = _json_body(dict)
    if config is None:
        return jsonify({'error': 'Config must be a JSON object.'}), 400
    save_config_document(config)
    return jsonify({'success': True})


@api.route('/<collection>', methods=['GET'])
def read_collection(collection):
    if collection not in COLLECTIONS:
        return jsonify({'error': f'Unknown collection {collection}.'}), 404
    return jsonify(list_collection(collection))


@api.route('/<collection>', methods=['POST'])
def write_collection(collection):
    if collection not in COLLECTIONS:
        return jsonify({'error': f'Unknown collection {collection}.'}), 404
    if collection == USERS:
        return _replace(collection)
    if collection not in APPENDABLE:
        return jsonify({'error': f'Use /{collection}/update to write {collection}.'}), 405
    record = _json_body(dict)
    if record is None:
        return jsonify({'error': 'Record must be a JSON object.'}), 400
    try:
        append_record(collection, record)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'success': True})


@api.route('/<collection>/update', methods=['POST'])
def update_collection(collection):
    if collection not in COLLECTIONS:
        return jsonify({'error': f'Unknown collection {collection}.'}), 404
    return _replace(collection)


def _replace(collection):
    records = _json_body(list)
    if records is None or not all(isinstance(r, dict) for r in records):
        return jsonify({'error': 'Body must be a JSON list of records.'}), 400
    try:
        summary = replace_collection(collection, records)
    except ValueError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400
    logger.info('Replaced %s: %s', collection, summary)
    return jsonify({'success': True, **summary})


def create_app(database_url: str = None) -> Flask:
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url or os.environ.get('LOCAL_DATABASE_URL', 'sqlite:///presence_local.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024  # captured photos travel inline

    db.init_app(app)
    app.register_blueprint(api)

    @app.before_request
    def log_request():
        logger.info('[REQUEST] %s %s', request.method, request.path)

    @app.after_request
    def allow_cross_origin(response):
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        return response

    with app.app_context():
        db.create_all()
        if db.session.get(StoredDocument, CONFIG_DOCUMENT) is None:
            save_config_document(GeofenceConfig().to_dict())
            logger.info('Seeded default office config')
    return app


def main() -> None:
    logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 3000)))


if __name__ == '__main__':
    main()
