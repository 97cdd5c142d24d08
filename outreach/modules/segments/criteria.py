"""
Segment criteria
================

Criteria arrive as JSON, one operator block per attribute, for example::

    {
        "total_spent": {"operator": "between", "value": [100, 500]},
        "last_purchase": {"operator": "within_days", "value": 30},
        "location": {"operator": "in", "value": ["UK", "IE"]},
        "email_engagement": {"level": "high", "metric": "open_rate"},
        "website_activity": {"status": "inactive", "days": 60},
        "custom_field": {"field_name": "tier", "operator": "equals", "value": "gold"}
    }

``parse_criteria`` turns that into a list of predicate objects, one closed
variant per operator family. All predicates are AND-ed.

Edge cases:
- ``between`` bounds are inclusive on both ends; low > high is rejected.
- ``within_days N`` matches timestamps at or after now - N days.
- ``more_than_days N`` matches timestamps strictly before now - N days.
- ``between_dates [a, b]`` covers a 00:00 UTC through the end of day b.
- A customer with no timestamp never matches a temporal predicate.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, FrozenSet, Optional, Tuple

from outreach.core import ValidationError


class NumericOp(str, Enum):
    GREATER_THAN = 'greater_than'
    LESS_THAN = 'less_than'
    EQUALS = 'equals'
    BETWEEN = 'between'


class TemporalOp(str, Enum):
    WITHIN_DAYS = 'within_days'
    MORE_THAN_DAYS = 'more_than_days'
    BETWEEN_DATES = 'between_dates'


class SetOp(str, Enum):
    IN = 'in'
    NOT_IN = 'not_in'


class EngagementLevel(str, Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class EngagementMetric(str, Enum):
    OPEN_RATE = 'open_rate'
    CLICK_RATE = 'click_rate'
    BOTH = 'both'


class SegmentType(str, Enum):
    BEHAVIORAL = 'behavioral'
    DEMOGRAPHIC = 'demographic'
    TRANSACTIONAL = 'transactional'
    ENGAGEMENT = 'engagement'
    CUSTOM = 'custom'


# Engagement thresholds, as fractions of emails received.
# A rate at or above HIGH is high, at or above MEDIUM is medium, below is low.
OPEN_RATE_HIGH = 0.30
OPEN_RATE_MEDIUM = 0.15
CLICK_RATE_HIGH = 0.05
CLICK_RATE_MEDIUM = 0.02

NUMERIC_ATTRIBUTES = {
    'total_spent': 'total_spent',
    'order_count': 'order_count',
    'average_order_value': 'average_order_value',
}

TEMPORAL_ATTRIBUTES = {
    'last_purchase': 'last_purchase_at',
    'signup_date': 'signup_date',
}

SET_ATTRIBUTES = {
    'location': 'location',
}

CUSTOM_FIELD_OPERATORS = (
    'equals', 'not_equals', 'greater_than', 'less_than', 'between', 'in', 'not_in', 'contains'
)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_number(value, label):
    if not _is_number(value):
        raise ValidationError(f"{label} requires a numeric value")
    return float(value)


def _require_range(value, label):
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ValidationError(f"{label} 'between' requires a [low, high] pair")
    low = _require_number(value[0], label)
    high = _require_number(value[1], label)
    if low > high:
        raise ValidationError(f"{label} 'between' low bound {low} exceeds high bound {high}")
    return low, high


def _require_days(value, label):
    if not _is_number(value) or value < 0 or int(value) != value:
        raise ValidationError(f"{label} requires a non-negative whole number of days")
    return int(value)


def _parse_date(value, label):
    try:
        return date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        raise ValidationError(f"{label} has an invalid date: {value}")


def engagement_level(rate, high, medium):
    if rate >= high:
        return EngagementLevel.HIGH
    if rate >= medium:
        return EngagementLevel.MEDIUM
    return EngagementLevel.LOW


@dataclass(frozen=True)
class NumericRange:
    attribute: str
    op: NumericOp
    low: float
    high: Optional[float] = None

    def matches(self, profile, now):
        actual = float(getattr(profile, NUMERIC_ATTRIBUTES[self.attribute]) or 0)
        if self.op is NumericOp.GREATER_THAN:
            return actual > self.low
        if self.op is NumericOp.LESS_THAN:
            return actual < self.low
        if self.op is NumericOp.EQUALS:
            return round(actual, 2) == round(self.low, 2)
        return self.low <= actual <= self.high


@dataclass(frozen=True)
class TemporalWindow:
    attribute: str
    op: TemporalOp
    days: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None

    def matches(self, profile, now):
        stamp = getattr(profile, self.field_name)
        if stamp is None:
            return False
        if self.op is TemporalOp.WITHIN_DAYS:
            return stamp >= now - timedelta(days=self.days)
        if self.op is TemporalOp.MORE_THAN_DAYS:
            return stamp < now - timedelta(days=self.days)
        lower = datetime.combine(self.start, time.min, tzinfo=timezone.utc)
        upper = datetime.combine(self.end, time.min, tzinfo=timezone.utc) + timedelta(days=1)
        return lower <= stamp < upper

    @property
    def field_name(self):
        if self.attribute == 'website_activity':
            return 'last_seen_at'
        return TEMPORAL_ATTRIBUTES[self.attribute]


@dataclass(frozen=True)
class SetMembership:
    attribute: str
    op: SetOp
    values: FrozenSet[str]

    def matches(self, profile, now):
        actual = getattr(profile, SET_ATTRIBUTES[self.attribute])
        if actual is None:
            return False
        found = actual.strip().lower() in self.values
        return found if self.op is SetOp.IN else not found


@dataclass(frozen=True)
class Engagement:
    level: EngagementLevel
    metric: EngagementMetric

    def matches(self, profile, now):
        open_level = engagement_level(profile.open_rate, OPEN_RATE_HIGH, OPEN_RATE_MEDIUM)
        click_level = engagement_level(profile.click_rate, CLICK_RATE_HIGH, CLICK_RATE_MEDIUM)
        if self.metric is EngagementMetric.OPEN_RATE:
            return open_level is self.level
        if self.metric is EngagementMetric.CLICK_RATE:
            return click_level is self.level
        return open_level is self.level and click_level is self.level


@dataclass(frozen=True)
class CustomField:
    field_name: str
    operator: str
    value: Any

    def matches(self, profile, now):
        if self.field_name not in profile.attributes:
            return False
        actual = profile.attributes[self.field_name]
        if actual is None:
            return False
        op = self.operator
        if op in ('greater_than', 'less_than', 'between'):
            if not _is_number(actual):
                return False
            if op == 'greater_than':
                return actual > self.value
            if op == 'less_than':
                return actual < self.value
            return self.value[0] <= actual <= self.value[1]
        if op in ('in', 'not_in'):
            found = str(actual).strip().lower() in self.value
            return found if op == 'in' else not found
        if op == 'contains':
            if isinstance(actual, (list, tuple)):
                return self.value in [str(a).lower() for a in actual]
            return self.value in str(actual).lower()
        equal = _normalise(actual) == _normalise(self.value)
        return equal if op == 'equals' else not equal


def _normalise(value):
    if isinstance(value, str):
        return value.strip().lower()
    if _is_number(value):
        return float(value)
    return value


def _operator(block, key, label, enum):
    raw = block.get(key)
    if raw is None:
        raise ValidationError(f"{label} is missing '{key}'")
    try:
        return enum(raw)
    except ValueError:
        raise ValidationError(f"{label} has unknown {key} '{raw}'")


def _parse_numeric(attribute, block):
    op = _operator(block, 'operator', attribute, NumericOp)
    if 'value' not in block:
        raise ValidationError(f"{attribute} is missing 'value'")
    if op is NumericOp.BETWEEN:
        low, high = _require_range(block['value'], attribute)
        return NumericRange(attribute, op, low, high)
    return NumericRange(attribute, op, _require_number(block['value'], attribute))


def _parse_temporal(attribute, block):
    op = _operator(block, 'operator', attribute, TemporalOp)
    if 'value' not in block:
        raise ValidationError(f"{attribute} is missing 'value'")
    value = block['value']
    if op is TemporalOp.BETWEEN_DATES:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValidationError(f"{attribute} 'between_dates' requires a [start, end] pair")
        start = _parse_date(value[0], attribute)
        end = _parse_date(value[1], attribute)
        if start > end:
            raise ValidationError(f"{attribute} 'between_dates' start is after end")
        return TemporalWindow(attribute, op, start=start, end=end)
    return TemporalWindow(attribute, op, days=_require_days(value, attribute))


def _parse_activity(block):
    status = block.get('status')
    if status not in ('active', 'inactive'):
        raise ValidationError("website_activity requires status 'active' or 'inactive'")
    days = _require_days(block.get('days'), 'website_activity')
    op = TemporalOp.WITHIN_DAYS if status == 'active' else TemporalOp.MORE_THAN_DAYS
    return TemporalWindow('website_activity', op, days=days)


def _parse_set(attribute, block):
    op = _operator(block, 'operator', attribute, SetOp)
    values = block.get('value')
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError(f"{attribute} requires a non-empty list of values")
    if not all(isinstance(v, str) for v in values):
        raise ValidationError(f"{attribute} values must be strings")
    return SetMembership(attribute, op, frozenset(v.strip().lower() for v in values))


def _parse_engagement(block):
    return Engagement(
        level=_operator(block, 'level', 'email_engagement', EngagementLevel),
        metric=_operator(block, 'metric', 'email_engagement', EngagementMetric),
    )


def _parse_custom(block):
    if not isinstance(block, dict):
        raise ValidationError('custom_field must be an object')
    name = block.get('field_name')
    if not name or not isinstance(name, str):
        raise ValidationError("custom_field is missing 'field_name'")
    op = block.get('operator')
    if op not in CUSTOM_FIELD_OPERATORS:
        raise ValidationError(f"custom_field has unknown operator '{op}'")
    if 'value' not in block:
        raise ValidationError("custom_field is missing 'value'")
    value = block['value']
    label = f"custom_field {name}"
    if op in ('greater_than', 'less_than'):
        value = _require_number(value, label)
    elif op == 'between':
        value = _require_range(value, label)
    elif op in ('in', 'not_in'):
        if not isinstance(value, (list, tuple)) or not value:
            raise ValidationError(f"{label} requires a non-empty list of values")
        value = frozenset(str(v).strip().lower() for v in value)
    elif op == 'contains':
        value = str(value).strip().lower()
    return CustomField(name, op, value)


def parse_criteria(criteria) -> Tuple:
    """
    Validate criteria JSON and return its predicates.

    Raises ValidationError for anything malformed: empty criteria, unknown
    attributes or operators, missing values, wrong value shapes.
    """
    if not isinstance(criteria, dict) or not criteria:
        raise ValidationError('Segment criteria must be a non-empty object')

    predicates = []
    for attribute, block in criteria.items():
        if attribute == 'custom_field':
            blocks = block if isinstance(block, list) else [block]
            if not blocks:
                raise ValidationError('custom_field requires at least one field')
            predicates.extend(_parse_custom(b) for b in blocks)
            continue
        if not isinstance(block, dict):
            raise ValidationError(f"{attribute} must be an object")
        if attribute in NUMERIC_ATTRIBUTES:
            predicates.append(_parse_numeric(attribute, block))
        elif attribute in TEMPORAL_ATTRIBUTES:
            predicates.append(_parse_temporal(attribute, block))
        elif attribute == 'website_activity':
            predicates.append(_parse_activity(block))
        elif attribute in SET_ATTRIBUTES:
            predicates.append(_parse_set(attribute, block))
        elif attribute == 'email_engagement':
            predicates.append(_parse_engagement(block))
        else:
            raise ValidationError(f"Unknown segment attribute: {attribute}")
    return tuple(predicates)


def matches_all(predicates, profile, now):
    return all(p.matches(profile, now) for p in predicates)
