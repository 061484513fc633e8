"""
Unit tests for weakness detection, severity scoring and ranking.
"""

import asyncio

import pytest

from mastery_sprint.analytics.weakness_detector import (
    WeaknessDetector,
    rank_weaknesses,
    speed_deficit,
)
from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.core.models import (
    TopicStat,
    Trend,
    UserStats,
    Weakness,
    WeaknessType,
)


def topic_stat(topic, days, accuracy=None, speed=None, retention=None, samples=10, trend=None, now=None):
    return TopicStat(
        user_id="alice",
        topic=topic,
        window_days=days,
        average_accuracy=accuracy,
        average_speed=speed,
        retention_rate=retention,
        sample_count=samples,
        trend=trend,
        last_computed_at=now,
    )


def user_stats(now, topics, user_average_speed=60.0, practice_counts=None):
    """``topics`` maps topic -> kwargs shared by the 7- and 30-day windows."""
    stats = UserStats(
        user_id="alice",
        computed_at=now,
        user_average_speed=user_average_speed,
        total_activities=sum((practice_counts or {}).values()) or 10 * len(topics),
        practice_counts=practice_counts or {t: 10 for t in topics},
    )
    for topic, kwargs in topics.items():
        stats.topics[topic] = {days: topic_stat(topic, days, now=now, **kwargs) for days in (7, 30)}
    return stats


@pytest.fixture
def detector(document_store, settings, catalog):
    return WeaknessDetector(document_store, settings, catalog)


class TestSeverity:
    """Tests for the four-signal severity formula."""

    def test_weighted_components(self, detector):
        components = detector.severity_components(
            accuracy=35, retention=30, topic_speed=120, user_average_speed=60, trend_factor=1.0
        )

        assert components.accuracy == pytest.approx(0.2)
        assert components.retention == pytest.approx(0.15)
        assert components.speed == pytest.approx(0.2)
        assert components.trend == pytest.approx(0.1)
        assert components.total == pytest.approx(0.65)

    def test_total_clamped_to_unit_interval(self, detector):
        worst = detector.severity_components(0, 0, 300, 60, Trend.DECLINING.factor)
        best = detector.severity_components(100, 100, 30, 60, Trend.IMPROVING.factor)

        assert worst.total == pytest.approx(1.0)
        assert best.total == 0.0

    def test_declining_learner_more_severe(self, detector, now):
        struggling = user_stats(now, {"derivatives": {"accuracy": 55, "retention": 50, "trend": Trend.DECLINING}})
        steady = user_stats(now, {"derivatives": {"accuracy": 65, "retention": 65, "trend": Trend.STABLE}})

        (worse,) = detector.detect(struggling, now)
        (better,) = detector.detect(steady, now)

        assert worse.severity > better.severity

    def test_missing_signals_contribute_nothing(self, detector):
        components = detector.severity_components(None, None, None, 60, None)

        assert components.total == 0.0

    @pytest.mark.parametrize(
        "topic_speed, average, expected",
        [(90, 60, 0.5), (30, 60, 0.0), (300, 60, 1.0), (90, None, 0.0)],
    )
    def test_speed_deficit(self, topic_speed, average, expected):
        assert speed_deficit(topic_speed, average) == pytest.approx(expected)


class TestDetect:
    """Tests for flagging and ranking."""

    def test_flags_each_signal(self, detector, now):
        stats = user_stats(now, {
            "recursion": {"accuracy": 55, "speed": 60, "retention": 80},
            "loops": {"accuracy": 90, "speed": 100, "retention": 80},
            "functions": {"accuracy": 90, "speed": 60, "retention": 40},
            "variables": {"accuracy": 95, "speed": 60, "retention": 90},
        })

        by_topic = {w.topic: w for w in detector.detect(stats, now)}

        assert set(by_topic) == {"recursion", "loops", "functions"}
        assert by_topic["recursion"].type is WeaknessType.ACCURACY
        assert by_topic["loops"].type is WeaknessType.SPEED
        assert by_topic["functions"].type is WeaknessType.RETENTION

    def test_speed_ratio_threshold_is_strict(self, detector, now):
        stats = user_stats(now, {"loops": {"accuracy": 90, "speed": 90, "retention": 80}})

        assert detector.detect(stats, now) == []

    def test_insufficient_data_never_flags(self, detector, now):
        stats = user_stats(now, {"recursion": {"samples": 2}})

        assert detector.detect(stats, now) == []

    def test_multiple_signals_recorded(self, detector, now):
        stats = user_stats(now, {"recursion": {"accuracy": 40, "speed": 100, "retention": 30}})

        (weakness,) = detector.detect(stats, now)

        assert set(weakness.signals) == {
            WeaknessType.ACCURACY,
            WeaknessType.RETENTION,
            WeaknessType.SPEED,
        }
        assert weakness.type is WeaknessType.ACCURACY

    def test_ranked_by_impact(self, detector, now):
        """Frequency and catalog importance scale impact; severity alone does not decide."""
        stats = user_stats(
            now,
            {
                "recursion": {"accuracy": 35},
                "sql-joins": {"accuracy": 56},
            },
            practice_counts={"recursion": 2, "sql-joins": 18},
        )

        ranking = detector.detect(stats, now)

        assert [w.topic for w in ranking] == ["sql-joins", "recursion"]
        assert ranking[0].severity < ranking[1].severity
        assert ranking[0].impact_score == pytest.approx(0.08 * 0.9 * 2.0)

    def test_rank_tie_breaks(self, now):
        a = Weakness("b-topic", WeaknessType.ACCURACY, 0.5, 0.2, now)
        b = Weakness("a-topic", WeaknessType.ACCURACY, 0.5, 0.2, now)
        c = Weakness("c-topic", WeaknessType.ACCURACY, 0.9, 0.2, now)

        assert [w.topic for w in rank_weaknesses([a, b, c])] == ["c-topic", "a-topic", "b-topic"]

    def test_down_weight_applies_once(self, detector, now):
        stats = user_stats(now, {"recursion": {"accuracy": 35}})
        baseline = detector.detect(stats, now)[0].impact_score

        detector.down_weight("alice", "recursion")
        reduced = detector.detect(stats, now)[0].impact_score
        restored = detector.detect(stats, now)[0].impact_score

        assert reduced == pytest.approx(baseline * 0.5)
        assert restored == pytest.approx(baseline)

    def test_down_weight_expires_after_healthy_pass(self, detector, now):
        weak = user_stats(now, {"recursion": {"accuracy": 35}})
        healthy = user_stats(now, {"recursion": {"accuracy": 90}})
        baseline = detector.detect(weak, now)[0].impact_score

        detector.down_weight("alice", "recursion")
        assert detector.detect(healthy, now) == []
        relapse = detector.detect(weak, now)[0].impact_score

        assert relapse == pytest.approx(baseline)
        assert detector._downweights == {}


class TestAnalyze:
    """Tests for analysis passes under the latency deadline."""

    @pytest.mark.asyncio
    async def test_pass_persists_new_ranking(self, detector, document_store, now):
        stats = user_stats(now, {"recursion": {"accuracy": 35}})

        async def load():
            return stats

        first = await detector.analyze("alice", load, now)
        second = await detector.analyze("alice", load, now)

        assert first.pass_id != second.pass_id
        assert not first.stale
        stored = await document_store.get_ranking("alice")
        assert stored.pass_id == second.pass_id

    @pytest.mark.asyncio
    async def test_deadline_overrun_serves_previous_ranking(self, document_store, settings, catalog, now):
        settings.weakness_sla_seconds = 0.01
        detector = WeaknessDetector(document_store, settings, catalog)
        stats = user_stats(now, {"recursion": {"accuracy": 35}})

        async def fast():
            return stats

        async def slow():
            await asyncio.sleep(1)
            return stats

        fresh = await detector.analyze("alice", fast, now)
        degraded = await detector.analyze("alice", slow, now)

        assert degraded.stale is True
        assert degraded.pass_id == fresh.pass_id
        assert degraded.topics == ["recursion"]

    @pytest.mark.asyncio
    async def test_unavailable_without_history(self, detector, now):
        async def failing():
            raise CollaboratorUnavailableError("metric store down")

        ranking = await detector.analyze("alice", failing, now)

        assert ranking.stale is True
        assert ranking.weaknesses == []
