from flask import Blueprint, current_app, jsonify
from app.repositories import get_datastore
from app.services.dashboard import collection_stats, dashboard_summary

bp = Blueprint('main', __name__)


@bp.route('/health')
def health():
    readiness = current_app.extensions['readiness']
    body = {'status': 'ok', 'backend': get_datastore().backend}
    if not readiness.ready:
        body['reason'] = readiness.reason
    return jsonify(body), 200


@bp.route('/stats')
def stats():
    datastore = get_datastore()
    return jsonify({
        'dashboard': dashboard_summary(datastore),
        'collections': collection_stats(datastore),
    }), 200
