"""
Mastery Model: calculation and versioned persistence.

Components:
- MasteryCalculator: records -> TopicMastery / LearningPatterns (pure)
- MasteryModelService: optimistic-concurrency write path
"""

from mastery_sprint.mastery.calculator import MasteryCalculator, least_squares_slope
from mastery_sprint.mastery.service import MasteryModelService

__all__ = [
    "MasteryCalculator",
    "MasteryModelService",
    "least_squares_slope",
]
