"""
Rolling Performance Aggregator.

Turns raw activity records into per-topic statistics over the configured
rolling windows (1/7/30 days by default):

- average accuracy and speed
- retention rate: mean accuracy of recall attempts, i.e. attempts made at
  least ``retention_gap_hours`` after the previous attempt on the same topic
- trend: later half vs earlier half of the trailing attempts in the window

Any rate computed from fewer than ``min_sample_count`` samples is reported
as ``None`` (insufficient data). Downstream stages skip such signals.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from statistics import fmean

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.core.models import (
    ActivityRecord,
    TopicStat,
    Trend,
    UserStats,
    as_utc,
    utc_now,
)
from mastery_sprint.stores.base import MetricStore


def recall_attempt_ids(topic_records: list[ActivityRecord], gap: timedelta) -> set[str]:
    """
    Activity ids of attempts that came after a gap long enough to test recall.

    ``topic_records`` must be one topic's records in chronological order; only
    records inside the list are considered, so callers control the window.
    """
    recall = set()
    for previous, current in zip(topic_records, topic_records[1:]):
        if as_utc(current.timestamp) - as_utc(previous.timestamp) >= gap:
            recall.add(current.activity_id)
    return recall


@dataclass
class DailyPoint:
    """One day of a topic's history, for trend charts."""

    day: date
    average_accuracy: float
    average_speed: float
    count: int

    def to_dict(self) -> dict:
        return {
            "day": self.day.isoformat(),
            "average_accuracy": round(self.average_accuracy, 2),
            "average_speed": round(self.average_speed, 2),
            "count": self.count,
        }


@dataclass
class TrendReport:
    """Trend of one topic over a window, with its daily history."""

    topic: str
    window_days: int
    trend: Trend | None
    average_accuracy: float | None
    sample_count: int
    points: list[DailyPoint]
    learning_velocity: float | None = None

    def to_dict(self) -> dict:
        return {
            "topic": self.topic,
            "window_days": self.window_days,
            "trend": self.trend.value if self.trend else None,
            "average_accuracy": self.average_accuracy,
            "sample_count": self.sample_count,
            "points": [p.to_dict() for p in self.points],
            "learning_velocity": self.learning_velocity,
        }


class Aggregator:
    """
    Computes rolling TopicStats for a user.

    ``aggregate`` reads from the metric store; ``compute`` is the pure
    function underneath it and is what tests exercise directly.
    """

    def __init__(self, metric_store: MetricStore, settings: Settings | None = None):
        self.metric_store = metric_store
        self.settings = settings or get_settings()
        config = self.settings.get_aggregation_config()
        self.windows: list[int] = sorted(config["windows"])
        self.trailing_attempts: int = config["trailing_attempts"]
        self.min_samples: int = config["min_samples"]
        self.trend_margin: float = config["trend_margin"]
        self.retention_gap = timedelta(hours=config["retention_gap_hours"])

    @property
    def longest_window(self) -> int:
        return self.windows[-1]

    async def aggregate(
        self,
        user_id: str,
        topic: str | None = None,
        now: datetime | None = None,
    ) -> UserStats:
        """
        Read the longest window of records and compute stats.

        The user-wide average speed always covers every topic, even when a
        topic filter is given, because it is the denominator of the speed
        signal.
        """
        now = as_utc(now or utc_now())
        records = await self.metric_store.query(
            user_id,
            start=now - timedelta(days=self.longest_window),
            end=now,
        )
        stats = self.compute(user_id, records, now, topics={topic} if topic else None)
        logger.debug(
            "Aggregated {} records for {} into {} topics",
            len(records),
            user_id,
            len(stats.topics),
        )
        return stats

    def compute(
        self,
        user_id: str,
        records: list[ActivityRecord],
        now: datetime,
        topics: set[str] | None = None,
    ) -> UserStats:
        now = as_utc(now)
        horizon = now - timedelta(days=self.longest_window)
        in_range = sorted(
            (r for r in records if horizon <= as_utc(r.timestamp) <= now),
            key=lambda r: (as_utc(r.timestamp), r.activity_id),
        )

        by_topic: dict[str, list[ActivityRecord]] = defaultdict(list)
        for record in in_range:
            by_topic[record.topic].append(record)

        speeds = [r.metrics.speed for r in in_range]
        user_average_speed = fmean(speeds) if len(speeds) >= self.min_samples else None

        stats = UserStats(
            user_id=user_id,
            computed_at=now,
            user_average_speed=user_average_speed,
            total_activities=len(in_range),
            practice_counts={topic: len(items) for topic, items in by_topic.items()},
        )

        for topic, topic_records in sorted(by_topic.items()):
            if topics is not None and topic not in topics:
                continue
            recall_ids = recall_attempt_ids(topic_records, self.retention_gap)
            stats.topics[topic] = {
                days: self._window_stat(user_id, topic, days, topic_records, recall_ids, now)
                for days in self.windows
            }
        return stats

    def _window_stat(
        self,
        user_id: str,
        topic: str,
        days: int,
        topic_records: list[ActivityRecord],
        recall_ids: set[str],
        now: datetime,
    ) -> TopicStat:
        start = now - timedelta(days=days)
        window = [r for r in topic_records if as_utc(r.timestamp) >= start]
        sufficient = len(window) >= self.min_samples

        recall = [r.metrics.accuracy for r in window if r.activity_id in recall_ids]
        retention = fmean(recall) if len(recall) >= self.min_samples else None

        return TopicStat(
            user_id=user_id,
            topic=topic,
            window_days=days,
            average_accuracy=fmean(r.metrics.accuracy for r in window) if sufficient else None,
            average_speed=fmean(r.metrics.speed for r in window) if sufficient else None,
            retention_rate=retention,
            sample_count=len(window),
            retention_sample_count=len(recall),
            trend=self.compute_trend([r.metrics.accuracy for r in window]),
            last_computed_at=now,
        )

    def compute_trend(self, accuracies: list[float]) -> Trend | None:
        """
        Compare the later half of the trailing attempts to the earlier half.

        Args:
            accuracies: Attempt accuracies in chronological order

        Returns:
            Trend, or None when there are too few attempts
        """
        trailing = accuracies[-self.trailing_attempts:]
        half = len(trailing) // 2
        if len(trailing) < self.min_samples or half == 0:
            return None

        earlier = fmean(trailing[:half])
        later = fmean(trailing[-half:])
        if later - earlier > self.trend_margin:
            return Trend.IMPROVING
        if earlier - later > self.trend_margin:
            return Trend.DECLINING
        return Trend.STABLE

    def daily_series(
        self,
        records: list[ActivityRecord],
        now: datetime,
        days: int,
    ) -> list[DailyPoint]:
        """Per-day averages over the last ``days`` days (days without data are omitted)."""
        start = as_utc(now) - timedelta(days=days)
        buckets: dict[date, list[ActivityRecord]] = defaultdict(list)
        for record in records:
            ts = as_utc(record.timestamp)
            if start <= ts <= as_utc(now):
                buckets[ts.date()].append(record)
        return [
            DailyPoint(
                day=day,
                average_accuracy=fmean(r.metrics.accuracy for r in items),
                average_speed=fmean(r.metrics.speed for r in items),
                count=len(items),
            )
            for day, items in sorted(buckets.items())
        ]

    def trend_report(
        self,
        user_id: str,
        topic: str,
        records: list[ActivityRecord],
        now: datetime,
        days: int,
    ) -> TrendReport:
        """Trend and daily history of ``topic`` over the last ``days`` days."""
        now = as_utc(now)
        start = now - timedelta(days=days)
        window = sorted(
            (r for r in records if r.topic == topic and start <= as_utc(r.timestamp) <= now),
            key=lambda r: (as_utc(r.timestamp), r.activity_id),
        )
        accuracies = [r.metrics.accuracy for r in window]
        return TrendReport(
            topic=topic,
            window_days=days,
            trend=self.compute_trend(accuracies),
            average_accuracy=fmean(accuracies) if len(accuracies) >= self.min_samples else None,
            sample_count=len(window),
            points=self.daily_series(window, now, days),
        )
