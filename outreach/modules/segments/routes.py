"""
Segments Routes
===============

All routes require an admin session.

- GET    /api/outreach/<store_id>/segments
- POST   /api/outreach/<store_id>/segments
- GET    /api/outreach/<store_id>/segments/predefined
- POST   /api/outreach/<store_id>/segments/predefined/<key>
- POST   /api/outreach/<store_id>/segments/preview -- evaluate criteria without saving
- GET    /api/outreach/<store_id>/segments/<id>
- PUT    /api/outreach/<store_id>/segments/<id>
- DELETE /api/outreach/<store_id>/segments/<id>
- POST   /api/outreach/<store_id>/segments/<id>/recalculate
"""

import logging

from flask import request, jsonify, session

from outreach.core.web import get_engine, error_response
from . import segments_bp
from .evaluator import PREDEFINED_SEGMENTS

logger = logging.getLogger(__name__)


def _auth_error():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    return None


@segments_bp.route('/<store_id>/segments', methods=['GET'])
def list_segments(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        segments = get_engine().segments.list_segments(store_id)
        return jsonify({'segments': segments}), 200
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments', methods=['POST'])
def create_segment(store_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    try:
        segment = get_engine().segments.create_segment(store_id, data)
        return jsonify({'segment': segment}), 201
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments/predefined', methods=['GET'])
def predefined_segments(store_id):
    denied = _auth_error()
    if denied:
        return denied
    return jsonify({'predefined': PREDEFINED_SEGMENTS}), 200


@segments_bp.route('/<store_id>/segments/predefined/<key>', methods=['POST'])
def create_predefined(store_id, key):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    try:
        segment = get_engine().segments.create_from_template(
            store_id, key, is_dynamic=bool(data.get('is_dynamic', True))
        )
        return jsonify({'segment': segment}), 201
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments/preview', methods=['POST'])
def preview_segment(store_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    try:
        member_ids = get_engine().segments.evaluate(store_id, data.get('criteria'))
        return jsonify({'member_count': len(member_ids), 'customer_ids': sorted(member_ids)}), 200
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments/<int:segment_id>', methods=['GET'])
def get_segment(store_id, segment_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify({'segment': get_engine().segments.get_segment(store_id, segment_id)}), 200
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments/<int:segment_id>', methods=['PUT'])
def update_segment(store_id, segment_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    try:
        segment = get_engine().segments.update_segment(store_id, segment_id, data)
        return jsonify({'segment': segment}), 200
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments/<int:segment_id>', methods=['DELETE'])
def delete_segment(store_id, segment_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        get_engine().segments.delete_segment(store_id, segment_id)
        return jsonify({'message': 'Segment deleted'}), 200
    except Exception as e:
        return error_response(e, 'segments')


@segments_bp.route('/<store_id>/segments/<int:segment_id>/recalculate', methods=['POST'])
def recalculate_segment(store_id, segment_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        segment = get_engine().segments.recalculate(store_id, segment_id)
        return jsonify({'segment': segment}), 200
    except Exception as e:
        return error_response(e, 'segments')
