"""
Feedback: per-activity, improvement/decline, weekly and sprint feedback.
"""

from mastery_sprint.feedback.synthesizer import (
    FeedbackKind,
    FeedbackMessage,
    FeedbackSynthesizer,
    WeeklySummary,
)

__all__ = [
    "FeedbackKind",
    "FeedbackMessage",
    "FeedbackSynthesizer",
    "WeeklySummary",
]
