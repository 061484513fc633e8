"""
Feedback Synthesizer.

Produces learner-facing feedback from aggregation, detection and mastery
deltas:

- per activity: accuracy and speed, with deltas against previous attempts
- improvement acknowledgment when a topic leaves the weakness ranking
  (the detector's next pass down-weights it)
- decline flag when a previously strong topic drops recently (the scheduler
  gets a forced drill)
- weekly summary: improving, persistently weak and recommended-focus topics
- sprint celebration with next-level topic suggestions
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from statistics import fmean
from typing import Any

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.analytics.weakness_detector import WeaknessDetector
from mastery_sprint.core.catalog import TopicCatalog
from mastery_sprint.core.models import (
    ActivityRecord,
    MasteryModel,
    MasterySprint,
    SprintEvaluation,
    Trend,
    UserStats,
    WeaknessRanking,
    as_utc,
    utc_now,
)
from mastery_sprint.scheduling.recall_scheduler import RecallScheduler

WEEK_DAYS = 7


class FeedbackKind(str, Enum):
    ACTIVITY = "activity"
    IMPROVEMENT = "improvement"
    DECLINE = "decline"
    CELEBRATION = "celebration"


@dataclass
class FeedbackMessage:
    kind: FeedbackKind
    user_id: str
    message: str
    created_at: datetime
    topic: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "topic": self.topic,
            "message": self.message,
            "created_at": as_utc(self.created_at).isoformat(),
            "data": dict(self.data),
        }


@dataclass
class WeeklySummary:
    user_id: str
    week_start: datetime
    week_end: datetime
    activities: int
    improving: list[str] = field(default_factory=list)
    persistent_weak: list[str] = field(default_factory=list)
    recommended_focus: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "week_start": as_utc(self.week_start).isoformat(),
            "week_end": as_utc(self.week_end).isoformat(),
            "activities": self.activities,
            "improving": list(self.improving),
            "persistent_weak": list(self.persistent_weak),
            "recommended_focus": list(self.recommended_focus),
        }


class FeedbackSynthesizer:
    def __init__(
        self,
        detector: WeaknessDetector,
        scheduler: RecallScheduler,
        settings: Settings | None = None,
        catalog: TopicCatalog | None = None,
    ):
        self.detector = detector
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.catalog = catalog or TopicCatalog()

    # =========================================================================
    # PER ACTIVITY
    # =========================================================================

    def activity_feedback(self, record: ActivityRecord, history: list[ActivityRecord]) -> FeedbackMessage:
        """
        Accuracy and speed of ``record`` against earlier attempts on its topic.

        Deltas are None on the first attempt.
        """
        ts = as_utc(record.timestamp)
        previous = sorted(
            (
                r for r in history
                if r.topic == record.topic
                and r.activity_id != record.activity_id
                and as_utc(r.timestamp) < ts
            ),
            key=lambda r: as_utc(r.timestamp),
        )[-self.settings.trailing_attempts:]

        accuracy_delta = speed_delta = None
        if previous:
            accuracy_delta = round(record.metrics.accuracy - fmean(r.metrics.accuracy for r in previous), 2)
            speed_delta = round(record.metrics.speed - fmean(r.metrics.speed for r in previous), 2)

        if accuracy_delta is None:
            message = f"First attempt at {record.topic}: {record.metrics.accuracy:.0f}% accuracy"
        elif accuracy_delta >= 0:
            message = f"{record.topic}: {record.metrics.accuracy:.0f}% (+{accuracy_delta:.1f} vs recent attempts)"
        else:
            message = f"{record.topic}: {record.metrics.accuracy:.0f}% ({accuracy_delta:.1f} vs recent attempts)"

        return FeedbackMessage(
            kind=FeedbackKind.ACTIVITY,
            user_id=record.user_id,
            topic=record.topic,
            message=message,
            created_at=ts,
            data={
                "accuracy": record.metrics.accuracy,
                "speed": record.metrics.speed,
                "accuracy_delta": accuracy_delta,
                "speed_delta": speed_delta,
                "previous_attempts": len(previous),
            },
        )

    def acknowledge_improvements(
        self,
        user_id: str,
        previous: WeaknessRanking | None,
        current: WeaknessRanking,
        stats: UserStats | None = None,
        now: datetime | None = None,
    ) -> list[FeedbackMessage]:
        """
        Acknowledge topics that dropped out of the weakness ranking.

        Topics that merely aged out of the window (no current stats) are not
        counted as improvements. Each acknowledged topic is down-weighted on
        the detector's next pass.
        """
        if previous is None or current.stale:
            return []
        now = now or utc_now()
        messages = []
        for topic in sorted(set(previous.topics) - set(current.topics)):
            if stats is not None and topic not in stats.topics:
                continue
            self.detector.down_weight(user_id, topic)
            messages.append(
                FeedbackMessage(
                    kind=FeedbackKind.IMPROVEMENT,
                    user_id=user_id,
                    topic=topic,
                    message=f"{topic} is no longer a weak spot. Nice work!",
                    created_at=now,
                    data={"previous_severity": previous.get(topic).severity},
                )
            )
        if messages:
            logger.info("Improvements for {}: {}", user_id, ", ".join(m.topic for m in messages))
        return messages

    async def check_decline(
        self,
        user_id: str,
        topic: str,
        records: list[ActivityRecord],
        now: datetime | None = None,
    ) -> FeedbackMessage | None:
        """
        Flag a previously strong topic whose recent accuracy dropped.

        Historical means records before the recent window; both sides need
        the minimum sample count. A flag also forces a recall drill.
        """
        now = as_utc(now or utc_now())
        cutoff = now - timedelta(days=self.settings.decline_recent_days)
        topic_records = [r for r in records if r.topic == topic and as_utc(r.timestamp) <= now]
        historical = [r.metrics.accuracy for r in topic_records if as_utc(r.timestamp) < cutoff]
        recent = [r.metrics.accuracy for r in topic_records if as_utc(r.timestamp) >= cutoff]
        minimum = self.settings.min_sample_count
        if len(historical) < minimum or len(recent) < minimum:
            return None

        historical_mean = fmean(historical)
        recent_mean = fmean(recent)
        if not (
            historical_mean > self.settings.decline_history_accuracy
            and recent_mean < self.settings.decline_recent_accuracy
        ):
            return None

        await self.scheduler.force_drill(user_id, topic, reason="decline", at=now)
        logger.warning(
            "Decline on {} for {}: {:.1f} -> {:.1f}",
            topic,
            user_id,
            historical_mean,
            recent_mean,
        )
        return FeedbackMessage(
            kind=FeedbackKind.DECLINE,
            user_id=user_id,
            topic=topic,
            message=f"{topic} has slipped from {historical_mean:.0f}% to {recent_mean:.0f}%; a review drill was scheduled",
            created_at=now,
            data={"historical_accuracy": round(historical_mean, 2), "recent_accuracy": round(recent_mean, 2)},
        )

    # =========================================================================
    # PERIODIC
    # =========================================================================

    def weekly_summary(
        self,
        user_id: str,
        stats: UserStats,
        ranking: WeaknessRanking | None,
        model: MasteryModel | None,
        now: datetime | None = None,
    ) -> WeeklySummary:
        now = as_utc(now or utc_now())
        week = stats.window(WEEK_DAYS)
        active = {topic: stat for topic, stat in week.items() if stat.sample_count > 0}

        improving = sorted(t for t, stat in active.items() if stat.trend is Trend.IMPROVING)
        ranked = ranking.topics if ranking else []
        persistent_weak = [t for t in ranked if t not in improving]

        # Persistent weaknesses first, then the lowest-mastery topics
        focus = list(persistent_weak)
        if model is not None:
            focus += [
                t.topic
                for t in model.weaknesses(self.settings.weakness_mastery_threshold)
                if t.topic not in improving and t.topic not in focus
            ]

        return WeeklySummary(
            user_id=user_id,
            week_start=now - timedelta(days=WEEK_DAYS),
            week_end=now,
            activities=sum(stat.sample_count for stat in active.values()),
            improving=improving,
            persistent_weak=persistent_weak,
            recommended_focus=focus[: self.settings.weekly_focus_topics],
        )

    def celebrate(
        self,
        sprint: MasterySprint,
        evaluation: SprintEvaluation,
    ) -> FeedbackMessage | None:
        """Celebration with next-level suggestions when the sprint's criteria were met."""
        if not evaluation.criteria_met:
            return None
        suggestions: list[str] = []
        for topic in sprint.topics:
            for candidate in self.catalog.next_level(topic):
                if candidate not in suggestions and candidate not in sprint.topics:
                    suggestions.append(candidate)

        topics = ", ".join(sprint.topics)
        message = f"Sprint complete! You hit every target on {topics}."
        if suggestions:
            message += f" Ready for more? Try {', '.join(suggestions[:3])}."
        return FeedbackMessage(
            kind=FeedbackKind.CELEBRATION,
            user_id=sprint.user_id,
            topic=sprint.topics[0] if sprint.topics else None,
            message=message,
            created_at=evaluation.evaluated_at,
            data={"sprint_id": sprint.sprint_id, "next_level": suggestions},
        )
