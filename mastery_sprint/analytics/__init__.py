"""
Analytics: rolling aggregation and weakness detection.

Components:
- Aggregator: activity records -> TopicStat per topic and window
- WeaknessDetector: TopicStats -> scored, ranked weaknesses (with SLA fallback)
- StalenessCache: caller-budgeted read cache
"""

from mastery_sprint.analytics.aggregator import Aggregator, DailyPoint, TrendReport
from mastery_sprint.analytics.cache import StalenessCache
from mastery_sprint.analytics.weakness_detector import (
    SeverityComponents,
    WeaknessDetector,
    rank_weaknesses,
    speed_deficit,
)

__all__ = [
    "Aggregator",
    "DailyPoint",
    "SeverityComponents",
    "StalenessCache",
    "TrendReport",
    "WeaknessDetector",
    "rank_weaknesses",
    "speed_deficit",
]
