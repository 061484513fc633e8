"""
Unit tests for mastery sprint generation and evaluation.
"""

from datetime import timedelta

import pytest

from mastery_sprint.core.errors import (
    InputValidationError,
    InsufficientContentError,
    InsufficientDataError,
    InvalidStateError,
)
from mastery_sprint.core.models import (
    ExerciseResult,
    ExerciseType,
    LearningPatterns,
    MasteryModel,
    SprintStatus,
    TopicMastery,
    Weakness,
    WeaknessType,
)
from mastery_sprint.planning.content_provider import StaticExerciseProvider
from mastery_sprint.planning.sprint_generator import SprintGenerator, allocate, interleave_by_type


def weakness(topic, severity, kind=WeaknessType.ACCURACY, now=None):
    return Weakness(topic=topic, type=kind, severity=severity, impact_score=severity, detected_at=now)


def model_with(topic, mastery, accuracy=None, speed=None, velocity=0.0, practice=10, session=30.0):
    model = MasteryModel(user_id="alice", learning_patterns=LearningPatterns(optimal_session_duration=session))
    model.upsert_topic(
        TopicMastery(
            topic=topic,
            mastery_level=mastery,
            practice_count=practice,
            average_accuracy=accuracy,
            average_speed=speed,
            learning_velocity=velocity,
        )
    )
    return model


@pytest.fixture
def generator(exercise_provider, settings, catalog):
    return SprintGenerator(exercise_provider, settings, catalog)


class TestSizing:
    """Tests for exercise-count and duration bounds."""

    @pytest.mark.parametrize("severity, expected", [(0.0, 8), (0.35, 11), (1.0, 18)])
    def test_exercise_count(self, generator, severity, expected, now):
        assert generator.exercise_count(weakness("loops", severity, now=now)) == expected

    @pytest.mark.parametrize(
        "severity, optimal, expected",
        [(0.5, 30, 45), (0.0, 5, 15), (1.0, 90, 120), (0.33, 30, 40)],
    )
    def test_duration_bounds(self, generator, severity, optimal, expected):
        assert generator.duration(severity, optimal) == expected

    def test_difficulty_follows_mastery(self, generator):
        assert generator.difficulty_range("recursion", None) == (4, 8)
        assert generator.difficulty_range("recursion", model_with("recursion", 100)) == (6, 10)
        assert generator.difficulty_range("recursion", model_with("recursion", 0)) == (2, 6)

    def test_allocate_largest_remainder(self):
        assert allocate(10, [0.5, 0.3, 0.2]) == [5, 3, 2]
        assert allocate(11, [0.6, 0.6, 0.3]) == [5, 4, 2]
        assert sum(allocate(17, [0.9, 0.4, 0.35])) == 17
        assert allocate(4, [0.0, 0.0]) == [2, 2]


class TestGenerate:
    """Tests for sprint generation."""

    @pytest.mark.asyncio
    async def test_sprint_within_bounds(self, generator, now):
        weaknesses = [
            weakness("recursion", 0.8, now=now),
            weakness("loops", 0.4, WeaknessType.SPEED, now=now),
            weakness("functions", 0.3, WeaknessType.RETENTION, now=now),
            weakness("variables", 0.2, now=now),
        ]

        sprint = await generator.generate("alice", weaknesses, None, now)

        assert 5 <= len(sprint.exercises) <= 20
        assert 15 <= sprint.duration <= 120
        assert sprint.topics == ["recursion", "loops", "functions"]
        assert len({e.id for e in sprint.exercises}) == len(sprint.exercises)
        assert sprint.status is SprintStatus.ACTIVE
        assert sprint.expires_at == now + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_blocks_follow_weakness_type(self, generator, now):
        weaknesses = [
            weakness("loops", 0.6, WeaknessType.SPEED, now=now),
            weakness("functions", 0.6, WeaknessType.RETENTION, now=now),
        ]

        sprint = await generator.generate("alice", weaknesses, None, now)

        speed_block = [e for e in sprint.exercises if e.topic == "loops"]
        recall_block = [e for e in sprint.exercises if e.topic == "functions"]
        assert all(e.timed for e in speed_block)
        assert {e.type for e in speed_block} <= {ExerciseType.PROBLEM_SOLVING, ExerciseType.CODE_CHALLENGE}
        assert all(e.recall for e in recall_block)
        assert {e.type for e in recall_block} <= {ExerciseType.SHORT_ANSWER, ExerciseType.MULTIPLE_CHOICE}
        difficulties = [e.difficulty for e in speed_block]
        assert difficulties == sorted(difficulties)

    @pytest.mark.asyncio
    async def test_shares_proportional_to_severity(self, generator, now):
        weaknesses = [weakness("recursion", 0.8, now=now), weakness("loops", 0.2, now=now)]

        sprint = await generator.generate("alice", weaknesses, None, now)

        counts = {t: sum(1 for e in sprint.exercises if e.topic == t) for t in ("recursion", "loops")}
        assert len(sprint.exercises) == 16
        assert counts == {"recursion": 13, "loops": 3}

    @pytest.mark.asyncio
    async def test_no_weaknesses(self, generator, now):
        with pytest.raises(InsufficientDataError):
            await generator.generate("alice", [], None, now)

    @pytest.mark.asyncio
    async def test_insufficient_content(self, settings, catalog, now):
        from mastery_sprint.core.models import Exercise

        bank = [Exercise(f"loops-{i}", ExerciseType.MULTIPLE_CHOICE, "loops", 3, "ref", 2.0) for i in range(4)]
        generator = SprintGenerator(StaticExerciseProvider(bank), settings, catalog)

        with pytest.raises(InsufficientContentError) as exc_info:
            await generator.generate("alice", [weakness("loops", 0.5, now=now)], None, now)

        assert exc_info.value.details["available"] == 4

    @pytest.mark.asyncio
    async def test_shortfall_filled_from_other_blocks(self, settings, catalog, now):
        from mastery_sprint.core.models import Exercise

        bank = [
            Exercise(f"loops-{i}", ExerciseType.MULTIPLE_CHOICE, "loops", 3, "ref", 2.0) for i in range(2)
        ] + [
            Exercise(f"recursion-{i}", ExerciseType.MULTIPLE_CHOICE, "recursion", 6, "ref", 2.0) for i in range(20)
        ]
        generator = SprintGenerator(StaticExerciseProvider(bank), settings, catalog)
        weaknesses = [weakness("loops", 0.9, now=now), weakness("recursion", 0.8, now=now)]

        sprint = await generator.generate("alice", weaknesses, None, now)

        assert len(sprint.exercises) == 17
        assert sum(1 for e in sprint.exercises if e.topic == "loops") == 2

    @pytest.mark.asyncio
    async def test_targets_personalized_to_baseline(self, generator, now):
        targets = [weakness("recursion", 0.5, now=now)]
        weak_user = model_with("recursion", 40, accuracy=40, velocity=0.0)
        strong_user = model_with("recursion", 65, accuracy=65, velocity=2.0)

        weak_sprint = await generator.generate("alice", targets, weak_user, now)
        strong_sprint = await generator.generate("bob", targets, strong_user, now)

        assert weak_sprint.success_criteria.target_accuracy == pytest.approx(43.0)
        assert strong_sprint.success_criteria.target_accuracy == pytest.approx(75.0)
        assert weak_sprint.success_criteria.minimum_completion == 80.0

    @pytest.mark.asyncio
    async def test_speed_target_only_for_speed_weakness(self, generator, now):
        model = model_with("loops", 70, accuracy=70, speed=100.0)

        speed = await generator.generate("alice", [weakness("loops", 0.5, WeaknessType.SPEED, now=now)], model, now)
        accuracy = await generator.generate("alice", [weakness("loops", 0.5, now=now)], model, now)

        assert speed.success_criteria.target_speed == pytest.approx(97.0)
        assert accuracy.success_criteria.target_speed is None

    @pytest.mark.asyncio
    async def test_duration_uses_learning_patterns(self, generator, now):
        model = model_with("recursion", 50, session=60.0)

        sprint = await generator.generate("alice", [weakness("recursion", 0.5, now=now)], model, now)

        assert sprint.duration == 90


class TestInterleave:
    def test_rotates_through_mix(self, now):
        from mastery_sprint.core.models import Exercise

        candidates = [
            Exercise("a1", ExerciseType.SHORT_ANSWER, "loops", 2, "", 1.0),
            Exercise("a2", ExerciseType.SHORT_ANSWER, "loops", 1, "", 1.0),
            Exercise("b1", ExerciseType.MULTIPLE_CHOICE, "loops", 3, "", 1.0),
            Exercise("c1", ExerciseType.CODE_CHALLENGE, "loops", 1, "", 1.0),
        ]

        ordered = interleave_by_type(candidates, [ExerciseType.SHORT_ANSWER, ExerciseType.MULTIPLE_CHOICE])

        assert [e.id for e in ordered] == ["a2", "b1", "a1", "c1"]


class TestLifecycle:
    """Tests for evaluation, abandonment and expiry."""

    @pytest.mark.asyncio
    async def test_evaluate_meets_criteria(self, generator, now):
        sprint = await generator.generate("alice", [weakness("recursion", 0.5, now=now)], None, now)
        target = sprint.success_criteria.target_accuracy
        results = [ExerciseResult(e.id, min(100.0, target + 5), 40.0) for e in sprint.exercises]

        evaluation = generator.evaluate(sprint, results, now + timedelta(days=1))

        assert evaluation.criteria_met is True
        assert evaluation.completion == 100.0
        assert sprint.status is SprintStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_evaluate_reports_unmet(self, generator, now):
        sprint = await generator.generate("alice", [weakness("recursion", 0.5, now=now)], None, now)
        half = sprint.exercises[: len(sprint.exercises) // 2]
        results = [ExerciseResult(e.id, 50.0, 40.0) for e in half]

        evaluation = generator.evaluate(sprint, results, now)

        assert evaluation.criteria_met is False
        assert set(evaluation.unmet) == {"accuracy", "completion"}

    @pytest.mark.asyncio
    async def test_evaluate_rejects_unknown_exercise(self, generator, now):
        sprint = await generator.generate("alice", [weakness("recursion", 0.5, now=now)], None, now)

        with pytest.raises(InputValidationError):
            generator.evaluate(sprint, [ExerciseResult("nope", 90.0, 10.0)], now)

    @pytest.mark.asyncio
    async def test_expired_and_terminal_states(self, generator, now):
        sprint = await generator.generate("alice", [weakness("recursion", 0.5, now=now)], None, now)
        later = now + timedelta(days=8)

        with pytest.raises(InvalidStateError):
            generator.evaluate(sprint, [], later)
        assert generator.expire(sprint, later) is True
        assert generator.expire(sprint, later) is False
        with pytest.raises(InvalidStateError):
            generator.abandon(sprint)

    @pytest.mark.asyncio
    async def test_abandon(self, generator, now):
        sprint = await generator.generate("alice", [weakness("recursion", 0.5, now=now)], None, now)

        assert generator.abandon(sprint).status is SprintStatus.ABANDONED
        with pytest.raises(InvalidStateError):
            generator.evaluate(sprint, [], now)
