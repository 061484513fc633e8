"""
Mastery Sprint Generator.

Turns a ranked weakness list and the user's mastery model into a bounded
practice plan.

Sizing:
    exercise_count = clamp(8 + floor(severity × 10) + topic_complexity_factor, 5, 20)
    duration       = clamp(ceil(optimal_session_duration × (1 + severity)), 15, 120)

using the top-ranked weakness. Up to ``max_sprint_weaknesses`` weaknesses each
get a block whose share of the exercises is proportional to its severity.
Blocks are ordered by descending severity; exercises within a block run
from easiest to hardest.

Type mix per weakness type:
    accuracy  -> multiple choice, short answer, problem solving
    speed     -> problem solving, code challenges (timed)
    retention -> short answer, multiple choice (recall items)

A sprint is never emitted with fewer than 5 exercises: when the providers
cannot supply enough content, generation fails with InsufficientContentError.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta
from itertools import zip_longest
from statistics import fmean
from uuid import uuid4

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.core.catalog import TopicCatalog
from mastery_sprint.core.errors import (
    InputValidationError,
    InsufficientContentError,
    InsufficientDataError,
    InvalidStateError,
    InvariantViolationError,
)
from mastery_sprint.core.models import (
    Exercise,
    ExerciseResult,
    ExerciseType,
    MasteryModel,
    MasterySprint,
    SprintEvaluation,
    SprintStatus,
    SuccessCriteria,
    Weakness,
    WeaknessType,
    as_utc,
    utc_now,
)
from mastery_sprint.stores.base import ExerciseProvider

TYPE_MIX: dict[WeaknessType, list[ExerciseType]] = {
    WeaknessType.ACCURACY: [
        ExerciseType.MULTIPLE_CHOICE,
        ExerciseType.SHORT_ANSWER,
        ExerciseType.PROBLEM_SOLVING,
    ],
    WeaknessType.SPEED: [
        ExerciseType.PROBLEM_SOLVING,
        ExerciseType.CODE_CHALLENGE,
    ],
    WeaknessType.RETENTION: [
        ExerciseType.SHORT_ANSWER,
        ExerciseType.MULTIPLE_CHOICE,
    ],
}


def allocate(total: int, weights: list[float]) -> list[int]:
    """
    Split ``total`` into integer shares proportional to ``weights``.

    Largest-remainder rounding; ties go to the earlier entry.
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum <= 0:
        weights = [1.0] * len(weights)
        weight_sum = float(len(weights))
    raw = [total * w / weight_sum for w in weights]
    shares = [math.floor(r) for r in raw]
    order = sorted(range(len(raw)), key=lambda i: (-(raw[i] - shares[i]), i))
    for i in order[: total - sum(shares)]:
        shares[i] += 1
    return shares


def interleave_by_type(candidates: list[Exercise], mix: list[ExerciseType]) -> list[Exercise]:
    """
    Order candidates so consecutive picks rotate through the type mix,
    easiest first within each type. Types outside the mix come last.
    """
    ordered = sorted(candidates, key=lambda e: (e.difficulty, e.id))
    buckets = [[e for e in ordered if e.type is t] for t in mix]
    rotated = [e for group in zip_longest(*buckets) for e in group if e is not None]
    rest = [e for e in ordered if e.type not in mix]
    return rotated + rest


class SprintGenerator:
    """
    Builds, evaluates and retires mastery sprints.

    Usage:
        generator = SprintGenerator(provider, settings, catalog)
        sprint = await generator.generate(user_id, ranking.weaknesses, model)
    """

    def __init__(
        self,
        provider: ExerciseProvider,
        settings: Settings | None = None,
        catalog: TopicCatalog | None = None,
    ):
        self.provider = provider
        self.settings = settings or get_settings()
        self.catalog = catalog or TopicCatalog()
        self.bounds = self.settings.get_sprint_bounds()

    # =========================================================================
    # SIZING
    # =========================================================================

    def exercise_count(self, weakness: Weakness) -> int:
        raw = 8 + math.floor(weakness.severity * 10) + self.catalog.complexity_factor(weakness.topic)
        return min(self.bounds["max_exercises"], max(self.bounds["min_exercises"], raw))

    def duration(self, severity: float, optimal_session_duration: float) -> int:
        raw = math.ceil(optimal_session_duration * (1 + severity))
        return min(self.bounds["max_minutes"], max(self.bounds["min_minutes"], raw))

    def difficulty_range(self, topic: str, model: MasteryModel | None) -> tuple[int, int]:
        """Window around the catalog difficulty, shifted by current mastery."""
        base = self.catalog.difficulty(topic)
        mastery = model.get_topic(topic) if model else None
        shift = round(((mastery.mastery_level if mastery else 50.0) - 50.0) / 25.0)
        low = min(10, max(1, base - 2 + shift))
        high = min(10, max(1, base + 2 + shift))
        return low, high

    def success_criteria(self, targets: list[Weakness], model: MasteryModel | None) -> SuccessCriteria:
        """
        Targets from the user's own baseline and improvement rate.

        Two users with different baselines on the same topic get different
        numeric targets.
        """
        entries = [model.get_topic(w.topic) for w in targets] if model else []
        entries = [e for e in entries if e is not None]

        accuracies = [
            e.average_accuracy if e.average_accuracy is not None else e.mastery_level
            for e in entries
        ]
        if not accuracies and model and model.topics:
            accuracies = [t.mastery_level for t in model.topics]
        baseline = fmean(accuracies) if accuracies else self.settings.target_accuracy

        velocities = [e.learning_velocity for e in entries if e.practice_count >= 2]
        if velocities:
            rate = fmean(velocities)
        else:
            rate = model.learning_patterns.average_improvement_rate if model else 0.0
        gain = max(self.settings.sprint_min_accuracy_gain, rate * self.settings.sprint_improvement_horizon)

        target_speed = None
        if any(w.type is WeaknessType.SPEED for w in targets):
            speeds = [e.average_speed for e in entries if e.average_speed is not None]
            if speeds:
                target_speed = round(fmean(speeds) * (1 - min(0.3, gain / 100)), 2)

        return SuccessCriteria(
            target_accuracy=round(min(100.0, baseline + gain), 2),
            target_speed=target_speed,
            minimum_completion=self.settings.sprint_min_completion,
        )

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def _candidates(
        self,
        weakness: Weakness,
        model: MasteryModel | None,
        limit: int,
    ) -> list[Exercise]:
        mix = TYPE_MIX[weakness.type]
        difficulty_range = self.difficulty_range(weakness.topic, model)
        found = await self.provider.fetch_exercises(weakness.topic, difficulty_range, mix, limit)
        if len(found) < limit:
            # Top up with any exercise type before giving up on the block
            seen = {e.id for e in found}
            extra = await self.provider.fetch_exercises(weakness.topic, difficulty_range, [], limit)
            found += [e for e in extra if e.id not in seen]

        flagged = [
            replace(
                e,
                timed=e.timed or weakness.type is WeaknessType.SPEED,
                recall=e.recall or weakness.type is WeaknessType.RETENTION,
            )
            for e in found
        ]
        return interleave_by_type(flagged, mix)

    async def generate(
        self,
        user_id: str,
        weaknesses: list[Weakness],
        model: MasteryModel | None,
        now: datetime | None = None,
    ) -> MasterySprint:
        """
        Generate a sprint for the top-ranked weaknesses.

        Args:
            user_id: Learner
            weaknesses: Ranked weaknesses (highest impact first)
            model: Current mastery model (None for a brand-new user)
            now: Creation time

        Raises:
            InsufficientDataError: no weaknesses to target
            InsufficientContentError: fewer than 5 exercises available
            CollaboratorUnavailableError: every content provider failed
        """
        if not weaknesses:
            raise InsufficientDataError("No weaknesses to target", user_id=user_id)
        now = as_utc(now or utc_now())

        top = weaknesses[0]
        count = self.exercise_count(top)
        targets = sorted(
            weaknesses[: self.settings.max_sprint_weaknesses],
            key=lambda w: (-w.severity, w.topic),
        )
        shares = allocate(count, [w.severity for w in targets])

        pools: list[list[Exercise]] = []
        used: set[str] = set()
        for weakness in targets:
            candidates = await self._candidates(weakness, model, count)
            pool = [e for e in candidates if e.id not in used]
            used.update(e.id for e in pool)
            pools.append(pool)

        taken = [min(share, len(pool)) for share, pool in zip(shares, pools)]
        shortfall = count - sum(taken)
        for i, pool in enumerate(pools):
            if shortfall <= 0:
                break
            extra = min(shortfall, len(pool) - taken[i])
            taken[i] += extra
            shortfall -= extra

        exercises: list[Exercise] = []
        for n, pool in zip(taken, pools):
            exercises.extend(sorted(pool[:n], key=lambda e: (e.difficulty, e.id)))

        if len(exercises) < self.bounds["min_exercises"]:
            logger.warning(
                "Only {} exercises available for {} ({}); no sprint emitted",
                len(exercises),
                user_id,
                ", ".join(w.topic for w in targets),
            )
            raise InsufficientContentError(
                f"Only {len(exercises)} exercises available, need {self.bounds['min_exercises']}",
                user_id=user_id,
                available=len(exercises),
                topics=[w.topic for w in targets],
            )

        optimal = (
            model.learning_patterns.optimal_session_duration
            if model
            else self.settings.default_session_minutes
        )
        sprint = MasterySprint(
            sprint_id=uuid4().hex,
            user_id=user_id,
            target_weaknesses=[replace(w, signals=list(w.signals)) for w in targets],
            exercises=exercises,
            duration=self.duration(top.severity, optimal),
            success_criteria=self.success_criteria(targets, model),
            created_at=now,
            expires_at=now + timedelta(days=self.settings.sprint_expiry_days),
        )
        self.check_invariants(sprint)
        logger.info(
            "Sprint {} for {}: {} exercises, {} min, target accuracy {}",
            sprint.sprint_id[:8],
            user_id,
            len(sprint.exercises),
            sprint.duration,
            sprint.success_criteria.target_accuracy,
        )
        return sprint

    def check_invariants(self, sprint: MasterySprint) -> None:
        if not self.bounds["min_exercises"] <= len(sprint.exercises) <= self.bounds["max_exercises"]:
            raise InvariantViolationError(
                f"Sprint has {len(sprint.exercises)} exercises",
                sprint_id=sprint.sprint_id,
            )
        if not self.bounds["min_minutes"] <= sprint.duration <= self.bounds["max_minutes"]:
            raise InvariantViolationError(
                f"Sprint duration {sprint.duration} min is out of bounds",
                sprint_id=sprint.sprint_id,
            )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def evaluate(
        self,
        sprint: MasterySprint,
        results: list[ExerciseResult],
        now: datetime | None = None,
    ) -> SprintEvaluation:
        """
        Score results against the sprint's success criteria and complete it.

        Raises:
            InvalidStateError: sprint is not active or has expired
            InputValidationError: results reference unknown exercises
        """
        now = as_utc(now or utc_now())
        if sprint.status is not SprintStatus.ACTIVE:
            raise InvalidStateError(
                f"Sprint {sprint.sprint_id} is {sprint.status.value}",
                sprint_id=sprint.sprint_id,
            )
        if sprint.is_expired(now):
            raise InvalidStateError(f"Sprint {sprint.sprint_id} has expired", sprint_id=sprint.sprint_id)

        known = {e.id for e in sprint.exercises}
        unknown = sorted({r.exercise_id for r in results} - known)
        if unknown:
            raise InputValidationError(
                "Results reference exercises outside the sprint",
                field_errors={"exercise_id": ", ".join(unknown)},
            )

        completed = [r for r in results if r.completed]
        accuracy = fmean(r.accuracy for r in completed) if completed else 0.0
        average_speed = fmean(r.time_seconds for r in completed) if completed else None
        completion = 100.0 * len({r.exercise_id for r in completed}) / len(sprint.exercises)

        criteria = sprint.success_criteria
        unmet = []
        if accuracy < criteria.target_accuracy:
            unmet.append("accuracy")
        if completion < criteria.minimum_completion:
            unmet.append("completion")
        if criteria.target_speed is not None and (
            average_speed is None or average_speed > criteria.target_speed
        ):
            unmet.append("speed")

        evaluation = SprintEvaluation(
            accuracy=round(accuracy, 2),
            average_speed=round(average_speed, 2) if average_speed is not None else None,
            completion=round(completion, 2),
            criteria_met=not unmet,
            evaluated_at=now,
            unmet=unmet,
        )
        sprint.results = list(results)
        sprint.evaluation = evaluation
        sprint.status = SprintStatus.COMPLETED
        logger.info(
            "Sprint {} evaluated: accuracy={} completion={} met={}",
            sprint.sprint_id[:8],
            evaluation.accuracy,
            evaluation.completion,
            evaluation.criteria_met,
        )
        return evaluation

    def abandon(self, sprint: MasterySprint) -> MasterySprint:
        if sprint.status.is_terminal:
            raise InvalidStateError(
                f"Sprint {sprint.sprint_id} is already {sprint.status.value}",
                sprint_id=sprint.sprint_id,
            )
        sprint.status = SprintStatus.ABANDONED
        return sprint

    def expire(self, sprint: MasterySprint, now: datetime | None = None) -> bool:
        """Mark an active sprint past its expiry as expired. Returns True if it changed."""
        if sprint.status is SprintStatus.ACTIVE and sprint.is_expired(now or utc_now()):
            sprint.status = SprintStatus.EXPIRED
            return True
        return False
