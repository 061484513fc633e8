"""
Core domain models.

Dataclasses shared by every stage of the pipeline:

- ActivityRecord: immutable raw measurement owned by the metric store
- TopicStat / UserStats: derived rolling statistics (never ground truth)
- Weakness / WeaknessRanking: transient analysis output, ranking persisted per pass
- TopicMastery / MasteryModel: the versioned per-user profile
- RecallScheduleEntry: spaced-repetition state per (user, topic)
- Exercise / MasterySprint: generated practice plans

Persisted types expose ``to_dict`` / ``from_dict`` so stores can keep them as
JSON documents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


# ============================================================================
# Time helpers
# ============================================================================


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def days_between(earlier: datetime, later: datetime) -> float:
    return (as_utc(later) - as_utc(earlier)).total_seconds() / 86400.0


def _dt(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


# ============================================================================
# Enums
# ============================================================================


class ActivityType(str, Enum):
    DRILL = "drill"
    SPRINT = "sprint"
    EXERCISE = "exercise"
    CODEBASE_ANALYSIS = "codebase_analysis"


class Trend(str, Enum):
    """Direction of recent performance."""

    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"

    @property
    def factor(self) -> float:
        """Severity contribution of this trend (declining weighs most)."""
        return {
            Trend.DECLINING: 1.0,
            Trend.STABLE: 0.5,
            Trend.IMPROVING: 0.0,
        }[self]


class WeaknessType(str, Enum):
    ACCURACY = "accuracy"
    SPEED = "speed"
    RETENTION = "retention"


class ExerciseType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    SHORT_ANSWER = "short_answer"
    PROBLEM_SOLVING = "problem_solving"
    CODE_CHALLENGE = "code_challenge"


class SprintStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self is not SprintStatus.ACTIVE


# ============================================================================
# Activity records
# ============================================================================


@dataclass(frozen=True)
class ActivityMetrics:
    """Per-activity measurements."""

    speed: float  # seconds, > 0
    accuracy: float  # 0-100
    completion_rate: float  # 0-100


@dataclass(frozen=True)
class ActivityRecord:
    """A single completed activity. Immutable once recorded."""

    user_id: str
    activity_id: str
    activity_type: ActivityType
    topic: str
    content_type: str
    timestamp: datetime
    metrics: ActivityMetrics
    difficulty: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "activity_id": self.activity_id,
            "activity_type": self.activity_type.value,
            "topic": self.topic,
            "content_type": self.content_type,
            "timestamp": _iso(self.timestamp),
            "metrics": {
                "speed": self.metrics.speed,
                "accuracy": self.metrics.accuracy,
                "completion_rate": self.metrics.completion_rate,
            },
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActivityRecord:
        metrics = data["metrics"]
        return cls(
            user_id=data["user_id"],
            activity_id=data["activity_id"],
            activity_type=ActivityType(data["activity_type"]),
            topic=data["topic"],
            content_type=data["content_type"],
            timestamp=_dt(data["timestamp"]),
            metrics=ActivityMetrics(
                speed=float(metrics["speed"]),
                accuracy=float(metrics["accuracy"]),
                completion_rate=float(metrics["completion_rate"]),
            ),
            difficulty=data.get("difficulty"),
        )


# ============================================================================
# Derived statistics
# ============================================================================


@dataclass
class TopicStat:
    """
    Rolling statistics for one user x topic x window.

    A ``None`` rate means the window held fewer samples than the configured
    minimum; ``insufficient_fields`` lists which rates are affected so callers
    never mistake a missing value for zero.
    """

    user_id: str
    topic: str
    window_days: int
    average_accuracy: float | None
    average_speed: float | None
    retention_rate: float | None
    sample_count: int
    trend: Trend | None
    last_computed_at: datetime
    retention_sample_count: int = 0

    @property
    def insufficient_fields(self) -> list[str]:
        missing = []
        if self.average_accuracy is None:
            missing.append("average_accuracy")
        if self.average_speed is None:
            missing.append("average_speed")
        if self.retention_rate is None:
            missing.append("retention_rate")
        if self.trend is None:
            missing.append("trend")
        return missing

    @property
    def has_sufficient_data(self) -> bool:
        return self.average_accuracy is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "topic": self.topic,
            "window_days": self.window_days,
            "average_accuracy": self.average_accuracy,
            "average_speed": self.average_speed,
            "retention_rate": self.retention_rate,
            "sample_count": self.sample_count,
            "retention_sample_count": self.retention_sample_count,
            "trend": self.trend.value if self.trend else None,
            "last_computed_at": _iso(self.last_computed_at),
            "insufficient_data": self.insufficient_fields,
        }


@dataclass
class UserStats:
    """Aggregator output for one user: stats per topic per window."""

    user_id: str
    computed_at: datetime
    user_average_speed: float | None
    total_activities: int
    practice_counts: dict[str, int] = field(default_factory=dict)
    topics: dict[str, dict[int, TopicStat]] = field(default_factory=dict)
    stale: bool = False

    def window(self, days: int) -> dict[str, TopicStat]:
        """Stats for every topic in one window."""
        return {
            topic: windows[days]
            for topic, windows in self.topics.items()
            if days in windows
        }

    def get(self, topic: str, days: int) -> TopicStat | None:
        return self.topics.get(topic, {}).get(days)


# ============================================================================
# Weaknesses
# ============================================================================


@dataclass
class Weakness:
    """A flagged topic. Transient: recomputed on every analysis pass."""

    topic: str
    type: WeaknessType
    severity: float
    impact_score: float
    detected_at: datetime
    signals: list[WeaknessType] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "type": self.type.value,
            "severity": self.severity,
            "impact_score": self.impact_score,
            "detected_at": _iso(self.detected_at),
            "signals": [s.value for s in self.signals],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Weakness:
        return cls(
            topic=data["topic"],
            type=WeaknessType(data["type"]),
            severity=float(data["severity"]),
            impact_score=float(data["impact_score"]),
            detected_at=_dt(data["detected_at"]),
            signals=[WeaknessType(s) for s in data.get("signals", [])],
        )


@dataclass
class WeaknessRanking:
    """Ordered output of one analysis pass."""

    pass_id: str
    user_id: str
    computed_at: datetime
    weaknesses: list[Weakness] = field(default_factory=list)
    stale: bool = False

    @property
    def topics(self) -> list[str]:
        return [w.topic for w in self.weaknesses]

    def get(self, topic: str) -> Weakness | None:
        for weakness in self.weaknesses:
            if weakness.topic == topic:
                return weakness
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pass_id": self.pass_id,
            "user_id": self.user_id,
            "computed_at": _iso(self.computed_at),
            "weaknesses": [w.to_dict() for w in self.weaknesses],
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WeaknessRanking:
        return cls(
            pass_id=data["pass_id"],
            user_id=data["user_id"],
            computed_at=_dt(data["computed_at"]),
            weaknesses=[Weakness.from_dict(w) for w in data.get("weaknesses", [])],
            stale=data.get("stale", False),
        )


# ============================================================================
# Mastery model
# ============================================================================


@dataclass
class TopicMastery:
    """Mastery state for one topic. Created on first activity, never deleted."""

    topic: str
    mastery_level: float = 0.0  # 0-100
    confidence: float = 0.0  # 0-1
    last_practiced: datetime | None = None
    practice_count: int = 0
    average_accuracy: float | None = None
    average_speed: float | None = None
    retention_rate: float | None = None
    learning_velocity: float = 0.0
    trend: Trend = Trend.STABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "mastery_level": self.mastery_level,
            "confidence": self.confidence,
            "last_practiced": _iso(self.last_practiced),
            "practice_count": self.practice_count,
            "average_accuracy": self.average_accuracy,
            "average_speed": self.average_speed,
            "retention_rate": self.retention_rate,
            "learning_velocity": self.learning_velocity,
            "trend": self.trend.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TopicMastery:
        return cls(
            topic=data["topic"],
            mastery_level=float(data.get("mastery_level", 0.0)),
            confidence=float(data.get("confidence", 0.0)),
            last_practiced=_dt(data.get("last_practiced")),
            practice_count=int(data.get("practice_count", 0)),
            average_accuracy=data.get("average_accuracy"),
            average_speed=data.get("average_speed"),
            retention_rate=data.get("retention_rate"),
            learning_velocity=float(data.get("learning_velocity", 0.0)),
            trend=Trend(data.get("trend", Trend.STABLE.value)),
        )


@dataclass
class LearningPatterns:
    optimal_session_duration: float = 30.0  # minutes
    peak_performance_time: str | None = None  # morning/afternoon/evening/night
    preferred_content_types: list[str] = field(default_factory=list)
    average_improvement_rate: float = 0.0  # mastery points per snapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "optimal_session_duration": self.optimal_session_duration,
            "peak_performance_time": self.peak_performance_time,
            "preferred_content_types": list(self.preferred_content_types),
            "average_improvement_rate": self.average_improvement_rate,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LearningPatterns:
        return cls(
            optimal_session_duration=float(data.get("optimal_session_duration", 30.0)),
            peak_performance_time=data.get("peak_performance_time"),
            preferred_content_types=list(data.get("preferred_content_types", [])),
            average_improvement_rate=float(data.get("average_improvement_rate", 0.0)),
        )


@dataclass
class MasteryModel:
    """
    Authoritative per-user profile.

    ``version`` is the optimistic-concurrency token; it strictly increases on
    every successful write. Strengths and weaknesses are views over
    ``topics``, never stored separately.
    """

    user_id: str
    version: int = 0
    last_updated: datetime | None = None
    topics: list[TopicMastery] = field(default_factory=list)
    learning_patterns: LearningPatterns = field(default_factory=LearningPatterns)
    total_activities_completed: int = 0
    # Set on degraded reads served from cache; never persisted
    stale: bool = field(default=False, compare=False)

    def get_topic(self, topic: str) -> TopicMastery | None:
        for entry in self.topics:
            if entry.topic == topic:
                return entry
        return None

    def upsert_topic(self, mastery: TopicMastery) -> None:
        self.topics = [t for t in self.topics if t.topic != mastery.topic]
        self.topics.append(mastery)
        self.topics.sort(key=lambda t: t.topic)

    def strengths(self, threshold: float = 80.0) -> list[TopicMastery]:
        return sorted(
            (t for t in self.topics if t.mastery_level >= threshold),
            key=lambda t: (-t.mastery_level, t.topic),
        )

    def weaknesses(self, threshold: float = 60.0) -> list[TopicMastery]:
        return sorted(
            (t for t in self.topics if t.mastery_level < threshold),
            key=lambda t: (t.mastery_level, t.topic),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "version": self.version,
            "last_updated": _iso(self.last_updated),
            "topics": [t.to_dict() for t in self.topics],
            "learning_patterns": self.learning_patterns.to_dict(),
            "total_activities_completed": self.total_activities_completed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MasteryModel:
        return cls(
            user_id=data["user_id"],
            version=int(data.get("version", 0)),
            last_updated=_dt(data.get("last_updated")),
            topics=[TopicMastery.from_dict(t) for t in data.get("topics", [])],
            learning_patterns=LearningPatterns.from_dict(data.get("learning_patterns", {})),
            total_activities_completed=int(data.get("total_activities_completed", 0)),
        )


# ============================================================================
# Spaced repetition
# ============================================================================


@dataclass
class RecallScheduleEntry:
    """Recall state for one (user, topic). Never deleted outside erasure."""

    user_id: str
    topic: str
    next_due_at: datetime
    current_interval_days: float = 1.0
    consecutive_successes: int = 0
    last_accuracy: float | None = None
    override_due_at: datetime | None = None
    override_reason: str | None = None
    mastered_since: datetime | None = None

    def is_dormant(self, now: datetime, dormancy_days: float) -> bool:
        if self.mastered_since is None:
            return False
        return days_between(self.mastered_since, now) >= dormancy_days

    def is_due(self, now: datetime) -> bool:
        if self.override_due_at is not None and as_utc(self.override_due_at) <= as_utc(now):
            return True
        return as_utc(self.next_due_at) <= as_utc(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "topic": self.topic,
            "next_due_at": _iso(self.next_due_at),
            "current_interval_days": self.current_interval_days,
            "consecutive_successes": self.consecutive_successes,
            "last_accuracy": self.last_accuracy,
            "override_due_at": _iso(self.override_due_at),
            "override_reason": self.override_reason,
            "mastered_since": _iso(self.mastered_since),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecallScheduleEntry:
        return cls(
            user_id=data["user_id"],
            topic=data["topic"],
            next_due_at=_dt(data["next_due_at"]),
            current_interval_days=float(data.get("current_interval_days", 1.0)),
            consecutive_successes=int(data.get("consecutive_successes", 0)),
            last_accuracy=data.get("last_accuracy"),
            override_due_at=_dt(data.get("override_due_at")),
            override_reason=data.get("override_reason"),
            mastered_since=_dt(data.get("mastered_since")),
        )


@dataclass
class RecallDrill:
    """A recall drill that is due now."""

    topic: str
    due_at: datetime
    interval_days: float
    forced: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "due_at": _iso(self.due_at),
            "interval_days": self.interval_days,
            "forced": self.forced,
            "reason": self.reason,
        }


# ============================================================================
# Sprints
# ============================================================================


@dataclass(frozen=True)
class Exercise:
    """Immutable once attached to a sprint."""

    id: str
    type: ExerciseType
    topic: str
    difficulty: int  # 1-10
    content_ref: str
    estimated_time: float  # minutes
    timed: bool = False
    recall: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "topic": self.topic,
            "difficulty": self.difficulty,
            "content_ref": self.content_ref,
            "estimated_time": self.estimated_time,
            "timed": self.timed,
            "recall": self.recall,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Exercise:
        return cls(
            id=str(data["id"]),
            type=ExerciseType(data["type"]),
            topic=data["topic"],
            difficulty=int(data["difficulty"]),
            content_ref=data.get("content_ref", ""),
            estimated_time=float(data.get("estimated_time", 3.0)),
            timed=bool(data.get("timed", False)),
            recall=bool(data.get("recall", False)),
        )


@dataclass
class SuccessCriteria:
    target_accuracy: float
    target_speed: float | None
    minimum_completion: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_accuracy": self.target_accuracy,
            "target_speed": self.target_speed,
            "minimum_completion": self.minimum_completion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SuccessCriteria:
        return cls(
            target_accuracy=float(data["target_accuracy"]),
            target_speed=data.get("target_speed"),
            minimum_completion=float(data["minimum_completion"]),
        )


@dataclass
class ExerciseResult:
    """Learner result for one sprint exercise."""

    exercise_id: str
    accuracy: float
    time_seconds: float
    completed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "exercise_id": self.exercise_id,
            "accuracy": self.accuracy,
            "time_seconds": self.time_seconds,
            "completed": self.completed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExerciseResult:
        return cls(
            exercise_id=str(data["exercise_id"]),
            accuracy=float(data["accuracy"]),
            time_seconds=float(data["time_seconds"]),
            completed=bool(data.get("completed", True)),
        )


@dataclass
class SprintEvaluation:
    accuracy: float
    average_speed: float | None
    completion: float
    criteria_met: bool
    evaluated_at: datetime
    unmet: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accuracy": self.accuracy,
            "average_speed": self.average_speed,
            "completion": self.completion,
            "criteria_met": self.criteria_met,
            "evaluated_at": _iso(self.evaluated_at),
            "unmet": list(self.unmet),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SprintEvaluation:
        return cls(
            accuracy=float(data["accuracy"]),
            average_speed=data.get("average_speed"),
            completion=float(data["completion"]),
            criteria_met=bool(data["criteria_met"]),
            evaluated_at=_dt(data["evaluated_at"]),
            unmet=list(data.get("unmet", [])),
        )


@dataclass
class MasterySprint:
    """A time-bounded practice plan targeting a snapshot of weaknesses."""

    sprint_id: str
    user_id: str
    target_weaknesses: list[Weakness]
    exercises: list[Exercise]
    duration: int  # minutes
    success_criteria: SuccessCriteria
    created_at: datetime
    expires_at: datetime
    status: SprintStatus = SprintStatus.ACTIVE
    results: list[ExerciseResult] = field(default_factory=list)
    evaluation: SprintEvaluation | None = None

    @property
    def topics(self) -> list[str]:
        return [w.topic for w in self.target_weaknesses]

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.expires_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sprint_id": self.sprint_id,
            "user_id": self.user_id,
            "status": self.status.value,
            "target_weaknesses": [w.to_dict() for w in self.target_weaknesses],
            "exercises": [e.to_dict() for e in self.exercises],
            "duration": self.duration,
            "success_criteria": self.success_criteria.to_dict(),
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "results": [r.to_dict() for r in self.results],
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MasterySprint:
        return cls(
            sprint_id=data["sprint_id"],
            user_id=data["user_id"],
            status=SprintStatus(data.get("status", SprintStatus.ACTIVE.value)),
            target_weaknesses=[Weakness.from_dict(w) for w in data.get("target_weaknesses", [])],
            exercises=[Exercise.from_dict(e) for e in data.get("exercises", [])],
            duration=int(data["duration"]),
            success_criteria=SuccessCriteria.from_dict(data["success_criteria"]),
            created_at=_dt(data["created_at"]),
            expires_at=_dt(data["expires_at"]),
            results=[ExerciseResult.from_dict(r) for r in data.get("results", [])],
            evaluation=(
                SprintEvaluation.from_dict(data["evaluation"]) if data.get("evaluation") else None
            ),
        )


def window_start(now: datetime, days: float) -> datetime:
    return as_utc(now) - timedelta(days=days)
