"""
Campaigns Routes
================

All routes require an admin session.

- GET    /api/outreach/<store_id>/campaigns[?status=]
- POST   /api/outreach/<store_id>/campaigns
- GET    /api/outreach/<store_id>/campaigns/<id>
- PUT    /api/outreach/<store_id>/campaigns/<id> -- draft or scheduled only
- DELETE /api/outreach/<store_id>/campaigns/<id>
- POST   /api/outreach/<store_id>/campaigns/<id>/schedule
- POST   /api/outreach/<store_id>/campaigns/<id>/send
- POST   /api/outreach/<store_id>/campaigns/<id>/pause
- POST   /api/outreach/<store_id>/campaigns/<id>/resume
- POST   /api/outreach/<store_id>/campaigns/<id>/cancel
- POST   /api/outreach/<store_id>/campaigns/<id>/estimate
- GET    /api/outreach/<store_id>/campaigns/<id>/recipients[?status=&limit=&offset=]
"""

import logging

from flask import request, jsonify, session

from outreach.core.web import get_engine, error_response
from . import campaigns_bp

logger = logging.getLogger(__name__)


def _auth_error():
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    return None


@campaigns_bp.route('/<store_id>/campaigns', methods=['GET'])
def list_campaigns(store_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        campaigns = get_engine().lifecycle.list_campaigns(store_id, request.args.get('status'))
        return jsonify({'campaigns': campaigns, 'count': len(campaigns)}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns', methods=['POST'])
def create_campaign(store_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    try:
        campaign = get_engine().lifecycle.create_campaign(store_id, data)
        logger.info(f"Campaign created via API: {campaign['id']}")
        return jsonify({'campaign': campaign}), 201
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>', methods=['GET'])
def get_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        return jsonify({'campaign': get_engine().lifecycle.get_campaign(store_id, campaign_id)}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>', methods=['PUT'])
def update_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400
    try:
        campaign = get_engine().lifecycle.update_campaign(store_id, campaign_id, data)
        return jsonify({'campaign': campaign}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>', methods=['DELETE'])
def delete_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        get_engine().lifecycle.delete_campaign(store_id, campaign_id)
        return jsonify({'message': 'Campaign deleted'}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/schedule', methods=['POST'])
def schedule_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    try:
        campaign = get_engine().lifecycle.schedule(
            store_id, campaign_id, data.get('scheduled_at'), data.get('timezone')
        )
        return jsonify({'campaign': campaign}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/send', methods=['POST'])
def send_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        campaign, summary = get_engine().lifecycle.send_now(store_id, campaign_id)
        return jsonify({'campaign': campaign, 'dispatch': summary}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/pause', methods=['POST'])
def pause_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    try:
        campaign = get_engine().lifecycle.pause(store_id, campaign_id, data.get('reason'))
        return jsonify({'campaign': campaign}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/resume', methods=['POST'])
def resume_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        campaign, summary = get_engine().lifecycle.resume(store_id, campaign_id)
        return jsonify({'campaign': campaign, 'dispatch': summary}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/cancel', methods=['POST'])
def cancel_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    data = request.get_json(silent=True) or {}
    try:
        campaign = get_engine().lifecycle.cancel(store_id, campaign_id, data.get('reason'))
        return jsonify({'campaign': campaign}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/estimate', methods=['POST'])
def estimate_campaign(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        estimate = get_engine().lifecycle.refresh_estimate(store_id, campaign_id)
        return jsonify({'estimated_recipients': estimate}), 200
    except Exception as e:
        return error_response(e, 'campaigns')


@campaigns_bp.route('/<store_id>/campaigns/<int:campaign_id>/recipients', methods=['GET'])
def list_recipients(store_id, campaign_id):
    denied = _auth_error()
    if denied:
        return denied
    try:
        engine = get_engine()
        engine.lifecycle.get_campaign(store_id, campaign_id)
        limit = min(request.args.get('limit', 500, type=int), 1000)
        offset = request.args.get('offset', 0, type=int)
        recipients = engine.tracker.list_recipients(campaign_id, request.args.get('status'), limit, offset)
        return jsonify({'recipients': recipients, 'count': len(recipients)}), 200
    except Exception as e:
        return error_response(e, 'campaigns')
