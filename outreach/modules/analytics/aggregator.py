"""
Analytics Aggregator
====================

Read-only reporting over campaign counters, recipients, delivery events,
abandoned carts and recovery enrollments. Every ratio goes through ``rate``,
so an empty denominator reports 0.0 instead of raising.
"""

import logging
from collections import Counter, defaultdict
from datetime import timedelta

from outreach.core import Database, NotFound, SystemClock, to_iso
from outreach.modules.audience import models as audience_models
from outreach.modules.campaigns import models as campaign_models
from outreach.modules.delivery import models as delivery_models
from outreach.modules.recovery import models as recovery_models
from outreach.modules.segments import models as segment_models

logger = logging.getLogger(__name__)

OVERVIEW_WINDOW_DAYS = 30
TOP_LINKS_LIMIT = 10
TOP_CAMPAIGNS_LIMIT = 5
TOP_PRODUCTS_LIMIT = 10
ACTIVE_STATES = ('scheduled', 'sending')


def rate(numerator, denominator):
    """Percentage rounded to 2 decimals; 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def delivered_count(counters):
    """Messages treated as delivered: reported deliveries, or sends that did not bounce."""
    return max(counters.get('total_delivered', 0), counters.get('total_sent', 0) - counters.get('total_bounced', 0))


def campaign_rates(counters, total_recipients):
    delivered = delivered_count(counters)
    opened = counters.get('total_opened', 0)
    clicked = counters.get('total_clicked', 0)
    return {
        'delivery_rate': rate(delivered, total_recipients),
        'open_rate': rate(opened, delivered),
        'click_rate': rate(clicked, delivered),
        'click_to_open_rate': rate(clicked, opened),
        'bounce_rate': rate(counters.get('total_bounced', 0), total_recipients),
        'unsubscribe_rate': rate(counters.get('total_unsubscribed', 0), delivered),
    }


class AnalyticsAggregator:

    def __init__(self, db_path, clock=None):
        self.db_path = db_path
        self.clock = clock or SystemClock()

    def campaign_analytics(self, store_id, campaign_id):
        with Database.session(self.db_path) as conn:
            campaign = campaign_models.get_campaign(conn, store_id, campaign_id)
            if campaign is None:
                raise NotFound(f"Campaign {campaign_id} not found")
            totals = delivery_models.recipient_totals(conn, campaign_id)
            links = conn.execute('''
                SELECT link_url, SUM(occurrences) AS clicks, COUNT(DISTINCT recipient_id) AS unique_clicks
                FROM delivery_events
                WHERE campaign_id = ? AND kind = 'clicked'
                GROUP BY link_url
                ORDER BY clicks DESC, link_url
                LIMIT ?
            ''', (campaign_id, TOP_LINKS_LIMIT)).fetchall()
            opens = self._hourly(conn, campaign_id, 'opened', campaign['started_at'])
            clicks = self._hourly(conn, campaign_id, 'clicked', campaign['started_at'])

        counters = {k: campaign[k] for k in campaign_models.COUNTER_FIELDS}
        total_recipients = totals['total_recipients']
        return {
            'campaign_id': campaign_id,
            'name': campaign['name'],
            'status': campaign['status'],
            'total_recipients': total_recipients,
            'total_failed': totals['total_failed'],
            **counters,
            'delivered': delivered_count(counters),
            **campaign_rates(counters, total_recipients),
            'top_clicked_links': [dict(row) for row in links],
            'opens_over_time': opens,
            'clicks_over_time': clicks,
        }

    @staticmethod
    def _hourly(conn, campaign_id, kind, since):
        query = '''
            SELECT substr(first_occurred_at, 1, 13) AS hour, COUNT(*) AS n
            FROM delivery_events
            WHERE campaign_id = ? AND kind = ?
        '''
        params = [campaign_id, kind]
        if since:
            query += ' AND first_occurred_at >= ?'
            params.append(since)
        query += ' GROUP BY hour ORDER BY hour'
        return [{'hour': f"{row['hour']}:00:00+00:00", 'count': row['n']}
                for row in conn.execute(query, params).fetchall()]

    def store_overview(self, store_id):
        """
        Store-wide rollup. Windowed figures bucket each campaign by its
        created_at, so a send spanning the window edge is counted once.
        """
        now = self.clock.now()
        window_start = to_iso(now - timedelta(days=OVERVIEW_WINDOW_DAYS))

        with Database.session(self.db_path) as conn:
            campaigns = campaign_models.list_campaigns(conn, store_id)
            recipients = {c['id']: delivery_models.count_recipients(conn, c['id']) for c in campaigns}
            unsubscribes = audience_models.list_unsubscribes(conn, store_id, window_start)
            segments = segment_models.list_segments(conn, store_id)
            by_segment = {
                row['segment_id']: dict(row) for row in conn.execute('''
                    SELECT segment_id,
                           COUNT(*) AS recipients,
                           SUM(CASE WHEN opened_at IS NOT NULL OR first_clicked_at IS NOT NULL
                                    THEN 1 ELSE 0 END) AS opened,
                           SUM(CASE WHEN first_clicked_at IS NOT NULL THEN 1 ELSE 0 END) AS clicked,
                           SUM(CASE WHEN bounced_at IS NULL AND failed_at IS NULL
                                     AND (sent_at IS NOT NULL OR delivered_at IS NOT NULL)
                                    THEN 1 ELSE 0 END) AS delivered
                    FROM campaign_recipients
                    WHERE store_id = ? AND segment_id IS NOT NULL
                    GROUP BY segment_id
                ''', (store_id,)).fetchall()
            }

        in_window = [c for c in campaigns if c['created_at'] >= window_start]
        scored = []
        for campaign in in_window:
            counters = {k: campaign[k] for k in campaign_models.COUNTER_FIELDS}
            if delivered_count(counters) == 0:
                continue
            rates = campaign_rates(counters, recipients[campaign['id']])
            scored.append({'id': campaign['id'], 'name': campaign['name'], 'status': campaign['status'],
                           'total_sent': campaign['total_sent'], **rates})

        segment_performance = []
        for segment in segments:
            stats = by_segment.get(segment['id'], {})
            segment_performance.append({
                'segment_id': segment['id'],
                'name': segment['name'],
                'member_count': segment['member_count'],
                'recipients': stats.get('recipients', 0),
                'open_rate': rate(stats.get('opened', 0), stats.get('delivered', 0)),
                'click_rate': rate(stats.get('clicked', 0), stats.get('delivered', 0)),
            })

        return {
            'store_id': store_id,
            'window_days': OVERVIEW_WINDOW_DAYS,
            'total_campaigns': len(campaigns),
            'active_campaigns': sum(1 for c in campaigns if c['status'] in ACTIVE_STATES),
            'campaigns_last_30_days': len(in_window),
            'emails_sent_last_30_days': sum(c['total_sent'] for c in in_window),
            'average_open_rate': round(sum(s['open_rate'] for s in scored) / len(scored), 2) if scored else 0.0,
            'average_click_rate': round(sum(s['click_rate'] for s in scored) / len(scored), 2) if scored else 0.0,
            'unsubscribes_last_30_days': len(unsubscribes),
            'top_campaigns': sorted(scored, key=lambda s: (-s['open_rate'], s['id']))[:TOP_CAMPAIGNS_LIMIT],
            'segment_performance': segment_performance,
        }

    def cart_abandonment(self, store_id):
        with Database.session(self.db_path) as conn:
            carts = recovery_models.all_carts(conn, store_id)

        total_value = sum(c['total_value'] for c in carts)
        recovered = [c for c in carts if c['recovered']]
        by_hour = Counter(int(c['abandoned_at'][11:13]) for c in carts)

        products = defaultdict(lambda: {'abandon_count': 0, 'quantity': 0, 'value': 0.0})
        for cart in carts:
            for item in cart['line_items']:
                if not isinstance(item, dict):
                    continue
                key = str(item.get('product_id') or item.get('name') or 'unknown')
                entry = products[key]
                entry.setdefault('name', item.get('name') or key)
                quantity = int(item.get('quantity') or 1)
                entry['abandon_count'] += 1
                entry['quantity'] += quantity
                entry['value'] += float(item.get('price') or 0) * quantity
        top_products = sorted(
            ({'product_id': key, **entry, 'value': round(entry['value'], 2)} for key, entry in products.items()),
            key=lambda p: (-p['abandon_count'], p['product_id'])
        )[:TOP_PRODUCTS_LIMIT]

        return {
            'total_abandoned': len(carts),
            'total_value': round(total_value, 2),
            'recovered_carts': len(recovered),
            'recovered_value': round(sum(c['total_value'] for c in recovered), 2),
            'recovery_rate': rate(len(recovered), len(carts)),
            'average_cart_value': round(total_value / len(carts), 2) if carts else 0.0,
            'total_recoverable_value': round(sum(c['total_value'] for c in carts if not c['recovered']), 2),
            'abandonment_by_hour': [{'hour': h, 'count': by_hour.get(h, 0)} for h in range(24)],
            'top_abandoned_products': top_products,
        }

    def sequence_analytics(self, store_id, sequence_id):
        with Database.session(self.db_path) as conn:
            sequence = recovery_models.get_sequence(conn, store_id, sequence_id)
            if sequence is None:
                raise NotFound(f"Sequence {sequence_id} not found")
            by_status = recovery_models.enrollment_counts(conn, sequence_id)
            dispatches = recovery_models.dispatch_counts_by_step(conn, sequence_id)

        per_step = defaultdict(Counter)
        for row in dispatches:
            per_step[row['step_index']][row['status']] += row['n']

        total = sum(by_status.values())
        return {
            'sequence_id': sequence_id,
            'name': sequence['name'],
            'total_enrollments': total,
            'enrollments_by_status': {s: by_status.get(s, 0) for s in recovery_models.ENROLLMENT_STATUSES},
            'completion_rate': rate(by_status.get('completed', 0), total),
            'steps': [
                {
                    'step_index': index,
                    'step_name': step['step_name'],
                    'delay_hours': step['delay_hours'],
                    'is_discount': step['is_discount'],
                    'dispatched': per_step[index].get('dispatched', 0),
                    'failed': per_step[index].get('failed', 0),
                    'skipped': per_step[index].get('skipped', 0),
                }
                for index, step in enumerate(sequence['steps'])
            ],
        }
