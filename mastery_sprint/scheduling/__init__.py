"""
Scheduling: spaced-repetition recall intervals per (user, topic).
"""

from mastery_sprint.scheduling.recall_scheduler import RecallScheduler

__all__ = ["RecallScheduler"]
