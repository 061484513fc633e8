"""
Core Module - Shared domain models, errors and validation.

All stage modules (analytics, mastery, scheduling, planning, feedback)
import their shared types from here rather than redefining them.
"""

from mastery_sprint.core.catalog import TopicCatalog, TopicInfo
from mastery_sprint.core.errors import (
    CollaboratorUnavailableError,
    ConcurrencyConflictError,
    InputValidationError,
    InsufficientContentError,
    InsufficientDataError,
    InvalidStateError,
    InvariantViolationError,
    MasterySprintError,
    NotFoundError,
    VersionConflict,
)
from mastery_sprint.core.models import (
    ActivityMetrics,
    ActivityRecord,
    ActivityType,
    Exercise,
    ExerciseResult,
    ExerciseType,
    LearningPatterns,
    MasteryModel,
    MasterySprint,
    RecallDrill,
    RecallScheduleEntry,
    SprintEvaluation,
    SprintStatus,
    SuccessCriteria,
    TopicMastery,
    TopicStat,
    Trend,
    UserStats,
    Weakness,
    WeaknessRanking,
    WeaknessType,
)

__all__ = [
    # Models
    "ActivityMetrics",
    "ActivityRecord",
    "ActivityType",
    "Exercise",
    "ExerciseResult",
    "ExerciseType",
    "LearningPatterns",
    "MasteryModel",
    "MasterySprint",
    "RecallDrill",
    "RecallScheduleEntry",
    "SprintEvaluation",
    "SprintStatus",
    "SuccessCriteria",
    "TopicMastery",
    "TopicStat",
    "Trend",
    "UserStats",
    "Weakness",
    "WeaknessRanking",
    "WeaknessType",
    # Catalog
    "TopicCatalog",
    "TopicInfo",
    # Errors
    "CollaboratorUnavailableError",
    "ConcurrencyConflictError",
    "InputValidationError",
    "InsufficientContentError",
    "InsufficientDataError",
    "InvalidStateError",
    "InvariantViolationError",
    "MasterySprintError",
    "NotFoundError",
    "VersionConflict",
]
