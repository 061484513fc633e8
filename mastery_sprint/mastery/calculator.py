"""
Mastery Calculator.

Pure functions that derive TopicMastery entries and learning patterns from
the trailing mastery window (30 days by default). Records outside the window
are discarded before any computation, so they can never influence current
mastery or trend.

Formula:
    mastery = clamp(w_acc × recency_weighted_accuracy + w_ret × retention, 0, 100)

When retention has too few recall samples the weighted accuracy stands in
for it, which keeps the level monotonic in both inputs. Recency weights
halve every ``recency_halflife_days``.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from statistics import fmean

from config import Settings, get_settings
from mastery_sprint.analytics.aggregator import recall_attempt_ids
from mastery_sprint.core.models import (
    ActivityRecord,
    LearningPatterns,
    TopicMastery,
    Trend,
    as_utc,
    days_between,
)

# Hour ranges (UTC) for peak-performance buckets
DAY_PARTS = {
    "night": range(0, 6),
    "morning": range(6, 12),
    "afternoon": range(12, 18),
    "evening": range(18, 24),
}


def least_squares_slope(values: list[float]) -> float:
    """Slope of ``values`` against their index (0 for fewer than two points)."""
    n = len(values)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2
    y_mean = fmean(values)
    numerator = sum((i - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    return numerator / denominator


def day_part(moment: datetime) -> str:
    hour = as_utc(moment).hour
    for name, hours in DAY_PARTS.items():
        if hour in hours:
            return name
    return "night"


class MasteryCalculator:
    """Computes TopicMastery entries from a user's recent records."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.window_days = self.settings.mastery_window_days
        self.weight_accuracy = self.settings.mastery_weight_accuracy
        self.weight_retention = self.settings.mastery_weight_retention
        self.halflife = self.settings.recency_halflife_days
        self.min_samples = self.settings.min_sample_count
        self.snapshots = self.settings.velocity_snapshots
        self.epsilon = self.settings.velocity_epsilon
        self.retention_gap = timedelta(hours=self.settings.retention_gap_hours)

    def in_window(self, records: list[ActivityRecord], now: datetime) -> list[ActivityRecord]:
        """Records inside the hard rolling window, in timestamp order."""
        start = as_utc(now) - timedelta(days=self.window_days)
        return sorted(
            (r for r in records if start <= as_utc(r.timestamp) <= as_utc(now)),
            key=lambda r: (as_utc(r.timestamp), r.activity_id),
        )

    def recency_weighted_accuracy(
        self,
        records: list[ActivityRecord],
        now: datetime,
    ) -> float | None:
        if not records:
            return None
        total_weight = 0.0
        weighted_sum = 0.0
        for record in records:
            age = max(0.0, days_between(record.timestamp, now))
            weight = 0.5 ** (age / self.halflife)
            weighted_sum += record.metrics.accuracy * weight
            total_weight += weight
        return weighted_sum / total_weight

    def retention(self, records: list[ActivityRecord]) -> float | None:
        recall_ids = recall_attempt_ids(records, self.retention_gap)
        recall = [r.metrics.accuracy for r in records if r.activity_id in recall_ids]
        return fmean(recall) if len(recall) >= self.min_samples else None

    def mastery_level(self, weighted_accuracy: float | None, retention: float | None) -> float:
        """Bounded blend of accuracy and retention in [0, 100]."""
        if weighted_accuracy is None:
            return 0.0
        if retention is None:
            level = weighted_accuracy
        else:
            total = self.weight_accuracy + self.weight_retention
            level = (self.weight_accuracy * weighted_accuracy + self.weight_retention * retention) / total
        return min(100.0, max(0.0, level))

    def snapshot_levels(self, records: list[ActivityRecord]) -> list[float]:
        """Mastery level as it stood after each of the last N records."""
        levels = []
        start = max(0, len(records) - self.snapshots)
        for i in range(start, len(records)):
            prefix = records[: i + 1]
            at = records[i].timestamp
            levels.append(
                self.mastery_level(self.recency_weighted_accuracy(prefix, at), self.retention(prefix))
            )
        return levels

    def classify_velocity(self, velocity: float) -> Trend:
        if velocity > self.epsilon:
            return Trend.IMPROVING
        if velocity < -self.epsilon:
            return Trend.DECLINING
        return Trend.STABLE

    def compute_topic(
        self,
        topic: str,
        records: list[ActivityRecord],
        now: datetime,
        previous: TopicMastery | None = None,
    ) -> TopicMastery:
        """
        Recompute one topic's mastery from its records.

        Args:
            topic: Topic name
            records: Records for this topic (any age; filtered here)
            now: Evaluation time
            previous: Existing entry, consulted only for last_practiced

        Returns:
            Fresh TopicMastery (level 0 when the window is empty)
        """
        window = self.in_window([r for r in records if r.topic == topic], now)
        if not window:
            return TopicMastery(
                topic=topic,
                last_practiced=previous.last_practiced if previous else None,
            )

        weighted = self.recency_weighted_accuracy(window, now)
        retention = self.retention(window)
        velocity = least_squares_slope(self.snapshot_levels(window))
        sufficient = len(window) >= self.min_samples

        return TopicMastery(
            topic=topic,
            mastery_level=round(self.mastery_level(weighted, retention), 4),
            confidence=round(min(1.0, len(window) / (2 * self.snapshots)), 4),
            last_practiced=window[-1].timestamp,
            practice_count=len(window),
            average_accuracy=fmean(r.metrics.accuracy for r in window) if sufficient else None,
            average_speed=fmean(r.metrics.speed for r in window) if sufficient else None,
            retention_rate=retention,
            learning_velocity=round(velocity, 4),
            trend=self.classify_velocity(velocity),
        )

    # =========================================================================
    # LEARNING PATTERNS
    # =========================================================================

    def learning_patterns(
        self,
        records: list[ActivityRecord],
        topics: list[TopicMastery],
        now: datetime,
    ) -> LearningPatterns:
        window = self.in_window(records, now)
        velocities = [t.learning_velocity for t in topics if t.practice_count >= 2]
        return LearningPatterns(
            optimal_session_duration=self.optimal_session_duration(window),
            peak_performance_time=self.peak_performance_time(window),
            preferred_content_types=self.preferred_content_types(window),
            average_improvement_rate=round(fmean(velocities), 4) if velocities else 0.0,
        )

    def sessions(self, records: list[ActivityRecord]) -> list[list[ActivityRecord]]:
        """Split chronologically ordered records at gaps longer than the session gap."""
        gap = timedelta(minutes=self.settings.session_gap_minutes)
        sessions: list[list[ActivityRecord]] = []
        for record in records:
            if sessions and as_utc(record.timestamp) - as_utc(sessions[-1][-1].timestamp) <= gap:
                sessions[-1].append(record)
            else:
                sessions.append([record])
        return sessions

    def optimal_session_duration(self, records: list[ActivityRecord]) -> float:
        """
        Session length (minutes, 15-minute buckets) with the best mean accuracy.

        Falls back to the configured default until there are enough sessions.
        """
        sessions = self.sessions(records)
        if len(sessions) < 2:
            return self.settings.default_session_minutes

        buckets: dict[int, list[float]] = defaultdict(list)
        for session in sessions:
            minutes = sum(r.metrics.speed for r in session) / 60
            bucket = min(120, max(15, int(round(minutes / 15)) * 15))
            buckets[bucket].append(fmean(r.metrics.accuracy for r in session))

        best = max(sorted(buckets), key=lambda b: fmean(buckets[b]))
        return float(best)

    def peak_performance_time(self, records: list[ActivityRecord]) -> str | None:
        parts: dict[str, list[float]] = defaultdict(list)
        for record in records:
            parts[day_part(record.timestamp)].append(record.metrics.accuracy)
        eligible = {name: fmean(values) for name, values in parts.items() if len(values) >= self.min_samples}
        if not eligible:
            return None
        return max(sorted(eligible), key=lambda name: eligible[name])

    @staticmethod
    def preferred_content_types(records: list[ActivityRecord], limit: int = 3) -> list[str]:
        counts = Counter(r.content_type for r in records)
        return [name for name, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]]
