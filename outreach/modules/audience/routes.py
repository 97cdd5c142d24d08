"""
Audience Routes
===============

- POST /api/outreach/<store_id>/audience/estimate -- count + preview of a target audience (admin)
- GET  /api/outreach/<store_id>/unsubscribes -- unsubscribe list (admin)
- POST /api/outreach/<store_id>/unsubscribes -- add an address (admin)
"""

import logging

from flask import request, jsonify, session

from outreach.core.web import get_engine, error_response
from . import audience_bp

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 25


@audience_bp.route('/<store_id>/audience/estimate', methods=['POST'])
def estimate(store_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True) or {}
    try:
        seeds = get_engine().resolver.resolve(store_id, data.get('target_audience', data))
        return jsonify({
            'estimated_recipients': len(seeds),
            'preview': [s.to_dict() for s in seeds[:PREVIEW_LIMIT]],
        }), 200
    except Exception as e:
        return error_response(e, 'audience')


@audience_bp.route('/<store_id>/unsubscribes', methods=['GET'])
def list_unsubscribes(store_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    try:
        entries = get_engine().resolver.list_unsubscribes(store_id)
        return jsonify({'unsubscribes': entries, 'count': len(entries)}), 200
    except Exception as e:
        return error_response(e, 'audience')


@audience_bp.route('/<store_id>/unsubscribes', methods=['POST'])
def add_unsubscribe(store_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    try:
        created = get_engine().resolver.record_unsubscribe(
            store_id, data.get('email'), data.get('unsubscribe_type', 'all'),
            data.get('campaign_id'), data.get('reason')
        )
        logger.info(f"Unsubscribe recorded for store {store_id}")
        return jsonify({'created': created}), 201 if created else 200
    except Exception as e:
        return error_response(e, 'audience')
