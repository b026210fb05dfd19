"""
Field-level conflict resolution between POS and platform values.

``resolve`` is a pure function: given one field as seen by both sides it
returns which value should win, or defers the decision to manual review. It
never touches either record; callers apply the decision.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pos_sync.core.models import ConflictRecord, ResolutionSource
from pos_sync.utils.config import ConflictSettings


class Strategy(str, Enum):
    EXTERNAL_WINS = "external_wins"
    PLATFORM_WINS = "platform_wins"
    MOST_RECENT = "most_recent"
    PRICE_GUARD = "price_guard"


DEFAULT_STRATEGIES: Dict[str, Strategy] = {
    "price": Strategy.PRICE_GUARD,
    "sku": Strategy.EXTERNAL_WINS,
    "description": Strategy.PLATFORM_WINS,
    "images": Strategy.PLATFORM_WINS,
    "category": Strategy.PLATFORM_WINS,
    "is_active": Strategy.PLATFORM_WINS,
    "quantity": Strategy.MOST_RECENT,
    "name": Strategy.MOST_RECENT,
}


@dataclass(frozen=True)
class ConflictPolicy:
    """Per-field strategies plus the price review threshold."""

    price_threshold: Decimal = Decimal("10.00")
    strategies: Mapping[str, Strategy] = field(default_factory=lambda: dict(DEFAULT_STRATEGIES))

    @classmethod
    def from_settings(cls, settings: ConflictSettings) -> "ConflictPolicy":
        return cls(price_threshold=settings.price_threshold)

    def strategy_for(self, field_name: str) -> Strategy:
        return self.strategies.get(field_name, Strategy.MOST_RECENT)

    def with_overrides(self, **strategies: Strategy) -> "ConflictPolicy":
        merged = dict(self.strategies)
        merged.update({name: Strategy(value) for name, value in strategies.items()})
        return ConflictPolicy(price_threshold=self.price_threshold, strategies=merged)


DEFAULT_POLICY = ConflictPolicy()


@dataclass(frozen=True)
class Resolution:
    """Decision for one field."""

    field: str
    source: ResolutionSource
    value: Any
    reason: str

    @property
    def pending_review(self) -> bool:
        return self.source == ResolutionSource.PENDING_REVIEW


def format_time_diff(seconds: float) -> str:
    seconds = int(abs(seconds))
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def _external(field_name: str, value: Any, reason: str) -> Resolution:
    return Resolution(field_name, ResolutionSource.EXTERNAL, value, reason)


def _platform(field_name: str, value: Any, reason: str) -> Resolution:
    return Resolution(field_name, ResolutionSource.PLATFORM, value, reason)


def _most_recent(field_name: str, external_value: Any, external_updated_at: Optional[datetime],
                 platform_value: Any, platform_updated_at: Optional[datetime]) -> Resolution:
    if external_updated_at is None and platform_updated_at is None:
        return _external(field_name, external_value, "No timestamps available, defaulting to POS")
    if external_updated_at is None:
        return _platform(field_name, platform_value, "Only the platform value carries a timestamp")
    if platform_updated_at is None:
        return _external(field_name, external_value, "Only the POS value carries a timestamp")

    delta = (external_updated_at - platform_updated_at).total_seconds()
    if delta > 0:
        return _external(field_name, external_value,
                         f"POS value is more recent ({format_time_diff(delta)} newer)")
    if delta < 0:
        return _platform(field_name, platform_value,
                         f"Platform value is more recent ({format_time_diff(delta)} newer)")
    return _external(field_name, external_value, "Timestamps are equal, defaulting to POS")


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    # NaN and infinity cannot be compared against the threshold
    return number if number.is_finite() else None


def resolve(field_name: str, external_value: Any, external_updated_at: Optional[datetime],
            platform_value: Any, platform_updated_at: Optional[datetime],
            policy: Optional[ConflictPolicy] = None) -> Resolution:
    """
    Decide the merged value of one field.

    Args:
        field_name: Catalog or inventory field name
        external_value: Value in the POS
        external_updated_at: When the POS value last changed
        platform_value: Value in the platform store
        platform_updated_at: When the platform value last changed
        policy: Strategies and thresholds (defaults apply when omitted)

    Returns:
        Resolution naming the winning side, or ``pending_review`` for a
        price gap larger than the policy threshold.
    """
    policy = policy or DEFAULT_POLICY
    strategy = policy.strategy_for(field_name)

    if strategy == Strategy.EXTERNAL_WINS:
        return _external(field_name, external_value, "POS is the source of truth for this field")

    if strategy == Strategy.PLATFORM_WINS:
        return _platform(field_name, platform_value, "Platform is the source of truth for this field")

    if strategy == Strategy.PRICE_GUARD:
        external_price = _as_decimal(external_value)
        platform_price = _as_decimal(platform_value)
        if external_price is None or platform_price is None:
            return _most_recent(field_name, external_value, external_updated_at,
                                platform_value, platform_updated_at)

        difference = abs(external_price - platform_price)
        if difference > policy.price_threshold:
            return Resolution(
                field_name, ResolutionSource.PENDING_REVIEW, None,
                f"Price difference {difference:.2f} exceeds threshold "
                f"{policy.price_threshold:.2f}, requires manual review",
            )
        return _external(field_name, external_value,
                         f"POS price wins within threshold (difference {difference:.2f})")

    return _most_recent(field_name, external_value, external_updated_at,
                        platform_value, platform_updated_at)


def values_equal(a: Any, b: Any) -> bool:
    """Deep equality; Decimals compare numerically, lists by position."""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, (Decimal, int, float)) and isinstance(b, (Decimal, int, float)) \
            and not isinstance(a, bool) and not isinstance(b, bool):
        return _as_decimal(a) == _as_decimal(b)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, str) and isinstance(b, str):
        return a.strip() == b.strip()
    return a == b


def _blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == ()


class ConflictResolver:
    """Applies a ``ConflictPolicy`` to whole records."""

    def __init__(self, policy: Optional[ConflictPolicy] = None):
        self.policy = policy or DEFAULT_POLICY

    def resolve(self, field_name: str, external_value: Any, external_updated_at: Optional[datetime],
                platform_value: Any, platform_updated_at: Optional[datetime]) -> Resolution:
        return resolve(field_name, external_value, external_updated_at,
                       platform_value, platform_updated_at, self.policy)

    def detect_conflicts(self, external_fields: Mapping[str, Any],
                         platform_fields: Mapping[str, Any],
                         fields: Optional[Iterable[str]] = None) -> List[str]:
        """Names of fields whose values differ between the two sides."""
        names = list(fields) if fields is not None else sorted(set(external_fields) | set(platform_fields))
        conflicts = []
        for name in names:
            external_value = external_fields.get(name)
            platform_value = platform_fields.get(name)
            if _blank(external_value) and _blank(platform_value):
                continue
            if not values_equal(external_value, platform_value):
                conflicts.append(name)
        return conflicts

    def resolve_all(self, external_fields: Mapping[str, Any], external_updated_at: Optional[datetime],
                    platform_fields: Mapping[str, Any], platform_updated_at: Optional[datetime],
                    fields: Optional[Iterable[str]] = None) -> List[Resolution]:
        return [
            self.resolve(name, external_fields.get(name), external_updated_at,
                         platform_fields.get(name), platform_updated_at)
            for name in self.detect_conflicts(external_fields, platform_fields, fields)
        ]

    @staticmethod
    def apply_resolutions(base: Mapping[str, Any], resolutions: Iterable[Resolution]) -> Dict[str, Any]:
        """New dict with every decided resolution applied; pending ones leave ``base`` as is."""
        merged = dict(base)
        for resolution in resolutions:
            if not resolution.pending_review:
                merged[resolution.field] = resolution.value
        return merged

    @staticmethod
    def to_record(resolution: Resolution, external_value: Any, platform_value: Any,
                  **identity) -> ConflictRecord:
        return ConflictRecord(
            field=resolution.field,
            external_value=external_value,
            platform_value=platform_value,
            resolution=resolution.source,
            resolved_value=resolution.value,
            reason=resolution.reason,
            **identity,
        )

    @staticmethod
    def stats(resolutions: Iterable[Resolution]) -> Dict[str, int]:
        stats = {"total": 0, "external": 0, "platform": 0, "pending_review": 0}
        for resolution in resolutions:
            stats["total"] += 1
            stats[resolution.source.value] += 1
        return stats
