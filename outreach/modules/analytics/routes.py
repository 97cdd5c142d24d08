"""
Analytics Routes
================

All routes require an admin session.

- GET /api/outreach/<store_id>/analytics/overview
- GET /api/outreach/<store_id>/analytics/campaigns/<id>
- GET /api/outreach/<store_id>/analytics/carts
- GET /api/outreach/<store_id>/analytics/sequences/<id>
- GET /api/outreach/logs[?source=&limit=] -- recent engine log entries
"""

from flask import request, jsonify, session

from outreach.core import LoggingService
from outreach.core.web import get_engine, error_response
from . import analytics_bp


def _auth_error():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    return None


@analytics_bp.route('/<store_id>/analytics/overview', methods=['GET'])
def store_overview(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify(get_engine().analytics.store_overview(store_id)), 200
    except Exception as e:
        return error_response(e, 'analytics')


@analytics_bp.route('/<store_id>/analytics/campaigns/<int:campaign_id>', methods=['GET'])
def campaign_analytics(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify(get_engine().analytics.campaign_analytics(store_id, campaign_id)), 200
    except Exception as e:
        return error_response(e, 'analytics')


@analytics_bp.route('/<store_id>/analytics/carts', methods=['GET'])
def cart_analytics(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify(get_engine().analytics.cart_abandonment(store_id)), 200
    except Exception as e:
        return error_response(e, 'analytics')


@analytics_bp.route('/<store_id>/analytics/sequences/<int:sequence_id>', methods=['GET'])
def sequence_analytics(store_id, sequence_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify(get_engine().analytics.sequence_analytics(store_id, sequence_id)), 200
    except Exception as e:
        return error_response(e, 'analytics')


@analytics_bp.route('/logs', methods=['GET'])
def recent_logs():
    denied = _auth_error()
    if denied:
        return denied
    limit = min(request.args.get('limit', 100, type=int), 500)
    return jsonify({'logs': LoggingService.recent(request.args.get('source'), limit)}), 200
