"""
Metrics Aggregator

Reduces raw per-domain fitness records (workouts, strength sessions, health
samples, training load) into a compact statistical summary for the coach.

Each domain is summarized over one primary numeric field:
- count / mean / min / max of the valid values
- trend slope (units per day) by least-squares over (time, value)
- last value (newest valid point)

Records whose value is missing or non-finite are excluded from the
statistics and reported as `invalid_count`.

The summary is derived fresh on every call and never cached: records can
change between requests.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class MetricDomain(str, Enum):
    """One category of fitness metric."""
    WORKOUT = "workout"
    STRENGTH = "strength"
    HEALTH = "health"
    TRAINING = "training"


# Field aggregated for each domain unless a record names another one.
DOMAIN_PRIMARY_FIELD: Dict[MetricDomain, str] = {
    MetricDomain.WORKOUT: "duration_min",
    MetricDomain.STRENGTH: "volume_kg",
    MetricDomain.HEALTH: "hrv_ms",
    MetricDomain.TRAINING: "load",
}

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class MetricRecord:
    """One immutable observation from an upstream data source."""
    domain: MetricDomain
    timestamp: datetime
    fields: Mapping[str, Optional[float]]
    unit: Optional[str] = None
    field: Optional[str] = None  # overrides DOMAIN_PRIMARY_FIELD

    @property
    def value_field(self) -> str:
        return self.field or DOMAIN_PRIMARY_FIELD[self.domain]

    def value(self) -> Optional[float]:
        """Primary numeric value, or None when missing / not a finite number."""
        raw = self.fields.get(self.value_field)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return None
        value = float(raw)
        if not math.isfinite(value):
            return None
        return value


@dataclass(frozen=True)
class DomainSummary:
    """Statistics for one domain. All statistics are None when count == 0."""
    count: int = 0
    invalid_count: int = 0
    mean: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    trend_slope: Optional[float] = None  # units per day
    last_value: Optional[float] = None
    unit: Optional[str] = None
    field: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.count > 0


@dataclass(frozen=True)
class MetricsSummary:
    """Per-domain summaries in MetricDomain declaration order."""
    domains: Tuple[Tuple[MetricDomain, DomainSummary], ...] = ()

    def __getitem__(self, domain: MetricDomain) -> DomainSummary:
        for key, summary in self.domains:
            if key == domain:
                return summary
        raise KeyError(domain)

    def __contains__(self, domain: object) -> bool:
        return any(key == domain for key, _ in self.domains)

    def __len__(self) -> int:
        return len(self.domains)

    def items(self) -> List[Tuple[MetricDomain, DomainSummary]]:
        return list(self.domains)

    def without(self, domain: MetricDomain) -> "MetricsSummary":
        """Copy of this summary with one domain removed."""
        return MetricsSummary(tuple((k, v) for k, v in self.domains if k != domain))


def _epoch_seconds(ts: datetime) -> float:
    # Naive timestamps (e.g. from SQLite) are stored as UTC.
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def trend_slope(points: Sequence[Tuple[float, float]]) -> Optional[float]:
    """
    Least-squares slope of y over x.

    Returns None for fewer than 2 points or when every x is identical:
    "no trend" is not the same thing as a flat trend of 0.0.
    """
    n = len(points)
    if n < 2:
        return None

    x_mean = sum(x for x, _ in points) / n
    y_mean = sum(y for _, y in points) / n
    denominator = sum((x - x_mean) ** 2 for x, _ in points)
    if denominator == 0:
        return None
    numerator = sum((x - x_mean) * (y - y_mean) for x, y in points)
    return numerator / denominator


def summarize_domain(records: Iterable[MetricRecord], domain: MetricDomain) -> DomainSummary:
    """Summarize records that are already known to belong to `domain`."""
    valid: List[Tuple[float, float]] = []
    invalid = 0
    unit = None
    value_field = None

    for record in records:
        value = record.value()
        if value is None:
            invalid += 1
            continue
        valid.append((_epoch_seconds(record.timestamp), value))
        if unit is None and record.unit:
            unit = record.unit
        if value_field is None:
            value_field = record.value_field

    if invalid:
        logger.warning(
            f"Excluded {invalid} invalid {domain.value} record(s) from summary",
            extra={"extra_fields": {"domain": domain.value, "invalid_count": invalid}},
        )

    if not valid:
        return DomainSummary(
            count=0,
            invalid_count=invalid,
            field=DOMAIN_PRIMARY_FIELD[domain],
        )

    # Ascending by time; value breaks ties so input order never matters.
    valid.sort()
    values = [v for _, v in valid]
    origin = valid[0][0]
    points = [((ts - origin) / SECONDS_PER_DAY, v) for ts, v in valid]

    return DomainSummary(
        count=len(values),
        invalid_count=invalid,
        mean=sum(values) / len(values),
        min=min(values),
        max=max(values),
        trend_slope=trend_slope(points),
        last_value=values[-1],
        unit=unit,
        field=value_field,
    )


def summarize(records: Iterable[MetricRecord], domains: Iterable[MetricDomain]) -> MetricsSummary:
    """
    Summarize records for the requested domains.

    Records outside `domains` are discarded. Every requested domain gets an
    entry, with count 0 and undefined statistics when it has no records.
    Output is ordered by MetricDomain declaration order.
    """
    wanted = {MetricDomain(d) for d in domains}
    grouped: Dict[MetricDomain, List[MetricRecord]] = {d: [] for d in wanted}
    for record in records:
        if record.domain in grouped:
            grouped[record.domain].append(record)

    ordered = [d for d in MetricDomain if d in wanted]
    return MetricsSummary(tuple((d, summarize_domain(grouped[d], d)) for d in ordered))
