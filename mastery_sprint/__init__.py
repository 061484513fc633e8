"""
Mastery Sprint - learner analytics and adaptive practice engine.

Ingests completed learning activities, keeps rolling per-topic statistics,
detects and ranks weaknesses, maintains a versioned mastery model per user,
schedules spaced-repetition recall drills and generates bounded mastery
sprints and goal plans.

Entry points:
- MasteryEngine: programmatic facade over every operation
- mastery (CLI): Typer app in mastery_sprint.cli
"""

from mastery_sprint.engine import ActivityResult, MasteryEngine, SprintOutcome

__version__ = "1.0.0"

__all__ = [
    "ActivityResult",
    "MasteryEngine",
    "SprintOutcome",
    "__version__",
]
