"""
Customers Routes
================

Provides:
- GET  /api/outreach/<store_id>/customers -- customers with their aggregates
- POST /api/outreach/<store_id>/customers -- create or update a customer
- POST /api/outreach/<store_id>/orders -- record an order (completed orders recover carts)
"""

import logging

from flask import request, jsonify, session

from outreach.core.web import get_engine, error_response
from . import customers_bp

logger = logging.getLogger(__name__)


@customers_bp.route('/<store_id>/customers', methods=['GET'])
def list_customers(store_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    try:
        profiles = get_engine().customer_store.list_customers(store_id)
        return jsonify({'customers': [p.to_dict() for p in profiles], 'count': len(profiles)}), 200
    except Exception as e:
        return error_response(e, 'customers')


@customers_bp.route('/<store_id>/customers', methods=['POST'])
def upsert_customer(store_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    try:
        engine = get_engine()
        customer = engine.customer_store.upsert_customer(store_id, data, engine.clock.now())
        return jsonify({'customer': customer}), 200
    except Exception as e:
        return error_response(e, 'customers')


@customers_bp.route('/<store_id>/orders', methods=['POST'])
def record_order(store_id):
    if 'admin_id' not in session:
        return jsonify({'error': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({'error': 'No data provided'}), 400

    try:
        engine = get_engine()
        order = engine.customer_store.record_order(store_id, data, engine.clock.now())
        recovered = 0
        if order['status'] == 'completed':
            recovered = engine.recovery.record_completed_order(
                store_id, order['customer_email'], order['id'], order['created_at']
            )
        logger.info(f"Order {order['id']} recorded for store {store_id} ({recovered} carts recovered)")
        return jsonify({'order': order, 'recovered_carts': recovered}), 201
    except Exception as e:
        return error_response(e, 'customers')
