"""
Weakness Detector.

Flags topics whose rolling statistics miss any target and ranks them by
impact. A topic is flagged when at least one holds:

    accuracy < 70
    speed > 1.5 x user average speed
    7-day retention < 60

Severity combines four signals:

    severity = clamp(0.4·(1 - accuracy/70) + 0.3·(1 - retention/60)
                     + 0.2·speed_deficit + 0.1·trend_factor, 0, 1)

    impact = severity · topic_frequency · topic_importance

Signals without sufficient data contribute nothing. Ranking is by
descending impact, then descending severity, then topic name.

Each analysis pass runs under a soft deadline; on overrun the previous
ranking is returned marked stale instead of blocking the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.core.catalog import TopicCatalog
from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.core.models import (
    TopicStat,
    UserStats,
    Weakness,
    WeaknessRanking,
    WeaknessType,
    utc_now,
)
from mastery_sprint.stores.base import DocumentStore

RETENTION_WINDOW_DAYS = 7


@dataclass
class SeverityComponents:
    """Weighted contributions to a severity score."""

    accuracy: float = 0.0
    retention: float = 0.0
    speed: float = 0.0
    trend: float = 0.0

    @property
    def total(self) -> float:
        return min(1.0, max(0.0, self.accuracy + self.retention + self.speed + self.trend))

    def to_dict(self) -> dict[str, float]:
        return {
            "accuracy": round(self.accuracy, 4),
            "retention": round(self.retention, 4),
            "speed": round(self.speed, 4),
            "trend": round(self.trend, 4),
            "total": round(self.total, 4),
        }


def speed_deficit(topic_speed: float | None, user_average_speed: float | None) -> float:
    """
    How much slower a topic is than the user's average, as a fraction in [0, 1].

    Speeds are seconds per activity, so a slower topic has the larger value.
    The sign is therefore ``(topic - average) / average``; flipping it to
    ``(average - topic) / average`` would reward slow topics.
    """
    if topic_speed is None or not user_average_speed:
        return 0.0
    return min(1.0, max(0.0, (topic_speed - user_average_speed) / user_average_speed))


def rank_weaknesses(weaknesses: list[Weakness]) -> list[Weakness]:
    """Descending impact, then descending severity, then topic name."""
    return sorted(weaknesses, key=lambda w: (-w.impact_score, -w.severity, w.topic))


class WeaknessDetector:
    """
    Scores and ranks weak topics.

    Usage:
        detector = WeaknessDetector(document_store)
        ranking = await detector.analyze(user_id, lambda: aggregator.aggregate(user_id))
        for weakness in ranking.weaknesses:
            ...
    """

    def __init__(
        self,
        document_store: DocumentStore,
        settings: Settings | None = None,
        catalog: TopicCatalog | None = None,
    ):
        self.document_store = document_store
        self.settings = settings or get_settings()
        self.catalog = catalog or TopicCatalog()
        self.thresholds = self.settings.get_weakness_thresholds()
        self.weights = self.settings.get_severity_weights()
        self._downweights: dict[tuple[str, str], float] = {}

    # =========================================================================
    # SCORING
    # =========================================================================

    def severity_components(
        self,
        accuracy: float | None,
        retention: float | None,
        topic_speed: float | None,
        user_average_speed: float | None,
        trend_factor: float | None,
    ) -> SeverityComponents:
        components = SeverityComponents()
        if accuracy is not None:
            components.accuracy = self.weights["accuracy"] * (1 - accuracy / self.thresholds["accuracy"])
        if retention is not None:
            components.retention = self.weights["retention"] * (
                1 - retention / self.thresholds["retention"]
            )
        components.speed = self.weights["speed"] * speed_deficit(topic_speed, user_average_speed)
        if trend_factor is not None:
            components.trend = self.weights["trend"] * trend_factor
        return components

    def flagged_signals(
        self,
        accuracy: float | None,
        retention: float | None,
        topic_speed: float | None,
        user_average_speed: float | None,
    ) -> list[WeaknessType]:
        signals = []
        if accuracy is not None and accuracy < self.thresholds["accuracy"]:
            signals.append(WeaknessType.ACCURACY)
        if retention is not None and retention < self.thresholds["retention"]:
            signals.append(WeaknessType.RETENTION)
        if (
            topic_speed is not None
            and user_average_speed
            and topic_speed > self.thresholds["speed_ratio"] * user_average_speed
        ):
            signals.append(WeaknessType.SPEED)
        return signals

    def evaluate_topic(
        self,
        primary: TopicStat,
        retention_stat: TopicStat | None,
        user_average_speed: float | None,
        topic_frequency: float,
        importance: float,
        now: datetime,
    ) -> Weakness | None:
        """Score one topic; None when it misses no target."""
        retention = retention_stat.retention_rate if retention_stat else None
        signals = self.flagged_signals(
            primary.average_accuracy, retention, primary.average_speed, user_average_speed
        )
        if not signals:
            return None

        components = self.severity_components(
            primary.average_accuracy,
            retention,
            primary.average_speed,
            user_average_speed,
            primary.trend.factor if primary.trend else None,
        )
        contribution = {
            WeaknessType.ACCURACY: components.accuracy,
            WeaknessType.RETENTION: components.retention,
            WeaknessType.SPEED: components.speed,
        }
        primary_type = max(signals, key=lambda s: contribution[s])
        severity = components.total
        return Weakness(
            topic=primary.topic,
            type=primary_type,
            severity=severity,
            impact_score=severity * topic_frequency * importance,
            detected_at=now,
            signals=signals,
        )

    def detect(self, stats: UserStats, now: datetime | None = None) -> list[Weakness]:
        """Flag, score and rank every topic in ``stats``."""
        now = now or stats.computed_at or utc_now()
        primary_window = max(
            (days for windows in stats.topics.values() for days in windows),
            default=RETENTION_WINDOW_DAYS,
        )

        weaknesses = []
        for topic, windows in stats.topics.items():
            primary = windows.get(primary_window)
            if primary is None:
                continue
            frequency = (
                stats.practice_counts.get(topic, primary.sample_count) / stats.total_activities
                if stats.total_activities
                else 0.0
            )
            weakness = self.evaluate_topic(
                primary,
                windows.get(RETENTION_WINDOW_DAYS),
                stats.user_average_speed,
                frequency,
                self.catalog.importance(topic),
                now,
            )
            if weakness is None:
                continue
            factor = self._downweights.pop((stats.user_id, topic), None)
            if factor is not None:
                logger.debug("Down-weighting {} for {} by {}", topic, stats.user_id, factor)
                weakness.impact_score *= factor
            weaknesses.append(weakness)

        # Down-weights last one pass, whether or not the topic was flagged again
        self.forget_user(stats.user_id)
        return rank_weaknesses(weaknesses)

    def down_weight(self, user_id: str, topic: str, factor: float | None = None) -> None:
        """Reduce a topic's impact on the next pass only (after an improvement)."""
        self._downweights[(user_id, topic)] = (
            factor if factor is not None else self.settings.improvement_downweight
        )

    def forget_user(self, user_id: str) -> None:
        """Drop pending down-weights of a user (after a pass, or on erasure)."""
        for key in [k for k in self._downweights if k[0] == user_id]:
            del self._downweights[key]

    # =========================================================================
    # ANALYSIS PASS
    # =========================================================================

    async def analyze(
        self,
        user_id: str,
        load_stats: Callable[[], Awaitable[UserStats]],
        now: datetime | None = None,
    ) -> WeaknessRanking:
        """
        Run one analysis pass under the latency deadline.

        Returns:
            Fresh ranking (persisted with a new pass id), or the previous
            ranking marked stale when aggregation overran or a collaborator
            was unavailable.
        """
        now = now or utc_now()
        try:
            stats = await asyncio.wait_for(load_stats(), timeout=self.settings.weakness_sla_seconds)
        except TimeoutError:
            logger.warning(
                "Weakness analysis for {} exceeded {}s; serving previous ranking",
                user_id,
                self.settings.weakness_sla_seconds,
            )
            return await self.stale_ranking(user_id, now)
        except CollaboratorUnavailableError as e:
            logger.warning("Weakness analysis for {} degraded: {}", user_id, e)
            return await self.stale_ranking(user_id, now)

        return await self.rank(user_id, stats, now)

    async def rank(self, user_id: str, stats: UserStats, now: datetime | None = None) -> WeaknessRanking:
        """Score ``stats`` into a new ranking and persist it under a fresh pass id."""
        now = now or stats.computed_at or utc_now()
        ranking = WeaknessRanking(
            pass_id=uuid4().hex,
            user_id=user_id,
            computed_at=now,
            weaknesses=self.detect(stats, now),
        )
        try:
            await self.document_store.put_ranking(ranking)
        except CollaboratorUnavailableError as e:
            logger.warning("Ranking {} for {} not persisted: {}", ranking.pass_id[:8], user_id, e)
        logger.info(
            "Pass {} for {}: {} weaknesses ({})",
            ranking.pass_id[:8],
            user_id,
            len(ranking.weaknesses),
            ", ".join(ranking.topics[:5]) or "none",
        )
        return ranking

    async def previous_ranking(self, user_id: str) -> WeaknessRanking | None:
        return await self.document_store.get_ranking(user_id)

    async def stale_ranking(self, user_id: str, now: datetime) -> WeaknessRanking:
        """Previous ranking flagged stale (an empty stale ranking when none exists)."""
        try:
            previous = await self.document_store.get_ranking(user_id)
        except CollaboratorUnavailableError:
            previous = None
        if previous is None:
            return WeaknessRanking(pass_id="", user_id=user_id, computed_at=now, stale=True)
        previous.stale = True
        return previous
