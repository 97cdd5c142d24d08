"""
Delivery Routes
===============

Webhook (admin session or X-Outreach-Webhook-Secret header):
- POST /api/outreach/<store_id>/delivery/events -- one event or {"events": [...]}
- GET  /api/outreach/<store_id>/campaigns/<id>/recipients/<rid>/events (admin)

Public tracking (signed recipient tokens):
- GET      /t/o/<token>.gif  -- open pixel
- GET      /t/c/<token>?u=&s= -- click redirect to a signed target
- GET/POST /t/u/<token>      -- one-click unsubscribe
"""

import base64
import hmac
import logging

from flask import Response, jsonify, redirect, request, session
from flask_cors import cross_origin

from outreach.core import Config, get_setting
from outreach.core.web import error_response, get_engine
from . import delivery_bp, tracking_bp
from .tracker import DeliveryEvent, EventKind, verify_link, verify_token

logger = logging.getLogger(__name__)

CORS_ORIGINS = [origin.strip() for origin in (Config.OUTREACH_CORS_ORIGINS or '*').split(',') if origin.strip()]

# 1x1 transparent GIF
PIXEL = base64.b64decode('R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7')


def _webhook_authorised():
    if 'admin_id' in session:
        return True
    secret = get_setting('OUTREACH_WEBHOOK_SECRET')
    supplied = request.headers.get('X-Outreach-Webhook-Secret', '')
    return bool(secret) and hmac.compare_digest(str(secret), supplied)


@delivery_bp.route('/<store_id>/delivery/events', methods=['POST'])
@cross_origin(origins=CORS_ORIGINS, supports_credentials=False)
def ingest_events(store_id):
    if not _webhook_authorised():
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    tracker = get_engine().tracker
    try:
        if isinstance(data, list) or 'events' in data:
            events = data if isinstance(data, list) else data['events']
            if not isinstance(events, list):
                return jsonify({'error': 'events must be a list'}), 400
            result = tracker.ingest_many(store_id, events)
            status = 200 if not result['errors'] else 207
            return jsonify(result), status

        recipient = tracker.ingest(store_id, data)
        return jsonify({'recipient': recipient}), 200
    except Exception as e:
        return error_response(e, 'delivery')


@delivery_bp.route('/<store_id>/campaigns/<int:campaign_id>/recipients/<int:recipient_id>/events',
                   methods=['GET'])
def recipient_events(store_id, campaign_id, recipient_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401
    try:
        engine = get_engine()
        engine.lifecycle.get_campaign(store_id, campaign_id)
        events = engine.tracker.events_for_recipient(recipient_id, campaign_id=campaign_id)
        return jsonify({'events': events}), 200
    except Exception as e:
        return error_response(e, 'delivery')


def _track(token, kind, link_url=None):
    """Record a tracking hit; returns the recipient or None for a bad token."""
    engine = get_engine()
    recipient = engine.tracker.recipient_for_token(token, engine.tracking.secret)
    if recipient is None:
        return None
    engine.tracker.ingest(recipient['store_id'], DeliveryEvent(
        recipient['id'], kind, engine.clock.now(), recipient['campaign_id'], link_url=link_url,
        metadata={'user_agent': request.headers.get('User-Agent', '')[:200]} if kind is EventKind.OPENED else {},
    ))
    return recipient


@tracking_bp.route('/o/<token>.gif', methods=['GET'])
@cross_origin(origins=CORS_ORIGINS, supports_credentials=False)
def open_pixel(token):
    try:
        _track(token, EventKind.OPENED)
    except Exception as e:
        # The pixel must render even when tracking fails
        logger.warning(f"Open tracking failed for token {token}: {e}")
    response = Response(PIXEL, mimetype='image/gif')
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate'
    return response


@tracking_bp.route('/c/<token>', methods=['GET'])
def click_redirect(token):
    target = request.args.get('u', '')
    if not target.startswith(('http://', 'https://')):
        return jsonify({'error': 'Invalid link'}), 400
    # Only targets issued with this recipient's links may be redirected to
    secret = get_engine().tracking.secret
    recipient_id = verify_token(secret, token)
    if recipient_id is None or not verify_link(secret, recipient_id, target, request.args.get('s', '')):
        return jsonify({'error': 'Invalid tracking link'}), 400
    try:
        recipient = _track(token, EventKind.CLICKED, link_url=target)
    except Exception as e:
        logger.warning(f"Click tracking failed for token {token}: {e}")
        return redirect(target, code=302)
    if recipient is None:
        return jsonify({'error': 'Invalid tracking token'}), 400
    return redirect(target, code=302)


@tracking_bp.route('/u/<token>', methods=['GET', 'POST'])
@cross_origin(origins=CORS_ORIGINS, supports_credentials=False)
def unsubscribe(token):
    try:
        recipient = _track(token, EventKind.UNSUBSCRIBED)
        if recipient is None:
            return jsonify({'error': 'Invalid unsubscribe link'}), 400
        logger.info(f"Recipient {recipient['id']} unsubscribed via link")
        return jsonify({'message': 'You have been unsubscribed', 'email': recipient['customer_email']}), 200
    except Exception as e:
        return error_response(e, 'delivery')
