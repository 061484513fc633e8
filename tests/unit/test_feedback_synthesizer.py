"""
Unit tests for learner feedback.
"""

from datetime import timedelta

import pytest

from mastery_sprint.analytics.weakness_detector import WeaknessDetector
from mastery_sprint.core.models import (
    MasteryModel,
    MasterySprint,
    SprintEvaluation,
    SuccessCriteria,
    TopicMastery,
    TopicStat,
    Trend,
    UserStats,
    Weakness,
    WeaknessRanking,
    WeaknessType,
)
from mastery_sprint.feedback.synthesizer import FeedbackKind, FeedbackSynthesizer
from mastery_sprint.scheduling.recall_scheduler import RecallScheduler


@pytest.fixture
def detector(document_store, settings, catalog):
    return WeaknessDetector(document_store, settings, catalog)


@pytest.fixture
def scheduler(document_store, settings):
    return RecallScheduler(document_store, settings)


@pytest.fixture
def synthesizer(detector, scheduler, settings, catalog):
    return FeedbackSynthesizer(detector, scheduler, settings, catalog)


def ranking(now, *topics, pass_id="p1", stale=False):
    return WeaknessRanking(
        pass_id=pass_id,
        user_id="alice",
        computed_at=now,
        weaknesses=[Weakness(t, WeaknessType.ACCURACY, 0.5, 0.5, now) for t in topics],
        stale=stale,
    )


def week_stats(now, trends):
    stats = UserStats(user_id="alice", computed_at=now, user_average_speed=60.0, total_activities=0)
    for topic, (trend, samples) in trends.items():
        stats.topics[topic] = {
            7: TopicStat("alice", topic, 7, 70.0, 60.0, None, samples, trend, now),
        }
    return stats


class TestActivityFeedback:
    def test_first_attempt_has_no_deltas(self, synthesizer, record_factory):
        record = record_factory(accuracy=70)

        feedback = synthesizer.activity_feedback(record, [record])

        assert feedback.kind is FeedbackKind.ACTIVITY
        assert feedback.data["accuracy_delta"] is None
        assert feedback.data["speed_delta"] is None
        assert "First attempt" in feedback.message

    def test_deltas_against_earlier_attempts(self, synthesizer, record_factory, now):
        history = [
            record_factory(accuracy=60, speed=80, at=now - timedelta(hours=3)),
            record_factory(accuracy=70, speed=60, at=now - timedelta(hours=2)),
            record_factory(topic="loops", accuracy=10, at=now - timedelta(hours=1)),
        ]
        record = record_factory(accuracy=80, speed=50, at=now)

        feedback = synthesizer.activity_feedback(record, [*history, record])

        assert feedback.data["accuracy_delta"] == pytest.approx(15.0)
        assert feedback.data["speed_delta"] == pytest.approx(-20.0)
        assert feedback.data["previous_attempts"] == 2


class TestImprovements:
    def test_topic_leaving_ranking_is_acknowledged(self, synthesizer, detector, now):
        previous = ranking(now, "recursion", "loops")
        current = ranking(now, "loops", pass_id="p2")

        messages = synthesizer.acknowledge_improvements("alice", previous, current, now=now)

        assert [(m.kind, m.topic) for m in messages] == [(FeedbackKind.IMPROVEMENT, "recursion")]
        assert ("alice", "recursion") in detector._downweights

    def test_topics_without_current_stats_are_skipped(self, synthesizer, now):
        stats = week_stats(now, {"loops": (Trend.STABLE, 5)})

        messages = synthesizer.acknowledge_improvements(
            "alice", ranking(now, "recursion"), ranking(now, pass_id="p2"), stats, now
        )

        assert messages == []

    def test_stale_ranking_acknowledges_nothing(self, synthesizer, now):
        current = ranking(now, pass_id="p2", stale=True)

        assert synthesizer.acknowledge_improvements("alice", ranking(now, "recursion"), current) == []


class TestDecline:
    @pytest.mark.asyncio
    async def test_decline_forces_drill(self, synthesizer, scheduler, record_factory, now):
        records = [record_factory(accuracy=92, at=now - timedelta(days=d)) for d in (10, 11, 12)]
        records += [record_factory(accuracy=55, at=now - timedelta(days=d)) for d in (1, 2, 3)]

        message = await synthesizer.check_decline("alice", "recursion", records, now)

        assert message.kind is FeedbackKind.DECLINE
        assert message.data == {"historical_accuracy": 92.0, "recent_accuracy": 55.0}
        due = await scheduler.due_drills("alice", now)
        assert [(d.topic, d.forced, d.reason) for d in due] == [("recursion", True, "decline")]

    @pytest.mark.asyncio
    async def test_needs_samples_on_both_sides(self, synthesizer, record_factory, now):
        records = [record_factory(accuracy=92, at=now - timedelta(days=d)) for d in (10, 11, 12)]
        records.append(record_factory(accuracy=40, at=now - timedelta(days=1)))

        assert await synthesizer.check_decline("alice", "recursion", records, now) is None

    @pytest.mark.asyncio
    async def test_mild_dip_not_flagged(self, synthesizer, record_factory, now):
        records = [record_factory(accuracy=92, at=now - timedelta(days=d)) for d in (10, 11, 12)]
        records += [record_factory(accuracy=75, at=now - timedelta(days=d)) for d in (1, 2, 3)]

        assert await synthesizer.check_decline("alice", "recursion", records, now) is None


class TestWeeklySummary:
    def test_summary_lists_focus_topics(self, synthesizer, now):
        stats = week_stats(now, {
            "loops": (Trend.IMPROVING, 6),
            "recursion": (Trend.DECLINING, 4),
            "variables": (Trend.STABLE, 0),
        })
        model = MasteryModel(
            user_id="alice",
            topics=[
                TopicMastery(topic="functions", mastery_level=30),
                TopicMastery(topic="loops", mastery_level=40),
                TopicMastery(topic="variables", mastery_level=90),
            ],
        )

        summary = synthesizer.weekly_summary("alice", stats, ranking(now, "recursion", "loops"), model, now)

        assert summary.activities == 10
        assert summary.improving == ["loops"]
        assert summary.persistent_weak == ["recursion"]
        assert summary.recommended_focus == ["recursion", "functions"]
        assert summary.week_start == now - timedelta(days=7)


class TestCelebrate:
    def sprint(self, now, topic):
        return MasterySprint(
            sprint_id="s1",
            user_id="alice",
            target_weaknesses=[Weakness(topic, WeaknessType.ACCURACY, 0.5, 0.5, now)],
            exercises=[],
            duration=30,
            success_criteria=SuccessCriteria(75.0, None, 80.0),
            created_at=now,
            expires_at=now + timedelta(days=7),
        )

    def test_met_criteria_suggest_next_level(self, synthesizer, now):
        evaluation = SprintEvaluation(90.0, 40.0, 100.0, True, now)

        message = synthesizer.celebrate(self.sprint(now, "sql-joins"), evaluation)

        assert message.kind is FeedbackKind.CELEBRATION
        assert message.data["next_level"] == ["window-functions"]
        assert "window-functions" in message.message

    def test_prerequisite_dependents_are_next_level(self, synthesizer, now):
        evaluation = SprintEvaluation(90.0, 40.0, 100.0, True, now)

        message = synthesizer.celebrate(self.sprint(now, "recursion"), evaluation)

        assert message.data["next_level"] == ["dynamic-programming"]

    def test_unmet_criteria_not_celebrated(self, synthesizer, now):
        evaluation = SprintEvaluation(50.0, 40.0, 100.0, False, now, unmet=["accuracy"])

        assert synthesizer.celebrate(self.sprint(now, "sql-joins"), evaluation) is None
