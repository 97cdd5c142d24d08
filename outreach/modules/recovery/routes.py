"""
Recovery Routes
===============

All routes require an admin session.

Carts:
- GET  /api/outreach/<store_id>/carts[?recovered=true|false]
- POST /api/outreach/<store_id>/carts -- record an abandoned checkout
- GET  /api/outreach/<store_id>/carts/<id>

Sequences:
- GET  /api/outreach/<store_id>/sequences
- POST /api/outreach/<store_id>/sequences
- POST /api/outreach/<store_id>/sequences/default -- standard 1h/24h/72h cart recovery
- GET  /api/outreach/<store_id>/sequences/<id>
- POST /api/outreach/<store_id>/sequences/<id>/activate
- POST /api/outreach/<store_id>/sequences/<id>/deactivate

Enrollments:
- GET  /api/outreach/<store_id>/enrollments[?status=&sequence_id=]
- GET  /api/outreach/<store_id>/enrollments/<id>
- POST /api/outreach/<store_id>/enrollments/<id>/<action>
  (pause, resume, unsubscribe, restart, send-now)
"""

import logging

from flask import request, jsonify, session

from outreach.core.web import get_engine, error_response
from . import recovery_bp

logger = logging.getLogger(__name__)


def _auth_error():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    return None


@recovery_bp.route('/<store_id>/carts', methods=['GET'])
def list_carts(store_id):
    denied = _auth_error()
    if denied:
        return denied
    recovered = request.args.get('recovered')
    if recovered is not None:
        recovered = recovered.lower() in ('1', 'true', 'yes')
    try:
        carts = get_engine().recovery.list_carts(store_id, recovered)
        return jsonify({'carts': carts, 'count': len(carts)}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/carts', methods=['POST'])
def record_cart(store_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    try:
        cart, enrollment = get_engine().recovery.record_abandonment(store_id, data)
        return jsonify({'cart': cart, 'enrollment': enrollment}), 201
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/carts/<int:cart_id>', methods=['GET'])
def get_cart(store_id, cart_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify({'cart': get_engine().recovery.get_cart(store_id, cart_id)}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/sequences', methods=['GET'])
def list_sequences(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        sequences = get_engine().recovery.list_sequences(store_id, request.args.get('trigger_type'))
        return jsonify({'sequences': sequences}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/sequences', methods=['POST'])
def create_sequence(store_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    try:
        sequence = get_engine().recovery.create_sequence(store_id, data)
        return jsonify({'sequence': sequence}), 201
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/sequences/default', methods=['POST'])
def create_default_sequence(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        sequence = get_engine().recovery.create_default_sequence(store_id)
        return jsonify({'sequence': sequence}), 201
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/sequences/<int:sequence_id>', methods=['GET'])
def get_sequence(store_id, sequence_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify({'sequence': get_engine().recovery.get_sequence(store_id, sequence_id)}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/sequences/<int:sequence_id>/<action>', methods=['POST'])
def toggle_sequence(store_id, sequence_id, action):
    denied = _auth_error()
    if denied:
        return denied
    if action not in ('activate', 'deactivate'):
        return jsonify({'error': f'Unknown action: {action}'}), 404
    try:
        sequence = get_engine().recovery.set_sequence_active(store_id, sequence_id, action == 'activate')
        return jsonify({'sequence': sequence}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/enrollments', methods=['GET'])
def list_enrollments(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        enrollments = get_engine().recovery.list_enrollments(
            store_id, request.args.get('status'), request.args.get('sequence_id', type=int)
        )
        return jsonify({'enrollments': enrollments, 'count': len(enrollments)}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/enrollments/<int:enrollment_id>', methods=['GET'])
def get_enrollment(store_id, enrollment_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify({'enrollment': get_engine().recovery.get_enrollment(store_id, enrollment_id)}), 200
    except Exception as e:
        return error_response(e, 'recovery')


@recovery_bp.route('/<store_id>/enrollments/<int:enrollment_id>/<action>', methods=['POST'])
def enrollment_action(store_id, enrollment_id, action):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    recovery = get_engine().recovery
    try:
        if action == 'pause':
            enrollment = recovery.pause(store_id, enrollment_id, data.get('reason'))
        elif action == 'resume':
            enrollment = recovery.resume(store_id, enrollment_id)
        elif action == 'unsubscribe':
            enrollment = recovery.unsubscribe(store_id, enrollment_id, data.get('reason'))
        elif action == 'restart':
            enrollment = recovery.restart(store_id, enrollment_id)
        elif action == 'send-now':
            outcome, enrollment = recovery.send_current_step_now(store_id, enrollment_id)
            return jsonify({'outcome': outcome, 'enrollment': enrollment}), 200
        else:
            return jsonify({'error': f'Unknown action: {action}'}), 404
        logger.info(f"Enrollment {enrollment_id} {action} via API")
        return jsonify({'enrollment': enrollment}), 200
    except Exception as e:
        return error_response(e, 'recovery')
