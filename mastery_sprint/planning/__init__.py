"""
Planning: sprints and goals.

Components:
- SprintGenerator: weaknesses + mastery model -> bounded MasterySprint
- GoalDecomposer: goal -> prerequisite-ordered sub-objectives
- Content providers: HTTP, static bank, and fallback chain
"""

from mastery_sprint.planning.content_provider import (
    FallbackExerciseProvider,
    HttpExerciseProvider,
    StaticExerciseProvider,
)
from mastery_sprint.planning.goal_decomposer import (
    GoalDecomposer,
    GoalInput,
    GoalPlan,
    SubObjective,
    topological_order,
)
from mastery_sprint.planning.sprint_generator import SprintGenerator, allocate

__all__ = [
    "FallbackExerciseProvider",
    "GoalDecomposer",
    "GoalInput",
    "GoalPlan",
    "HttpExerciseProvider",
    "SprintGenerator",
    "StaticExerciseProvider",
    "SubObjective",
    "allocate",
    "topological_order",
]
