"""
Mastery Sprint Engine.

Facade over every stage of the pipeline and the single entry point used by
the CLI and embedding callers:

    record_activity -> AnalysisPipeline (aggregate -> score -> update model)
                    -> follow-ups: recall scheduling, sprint triggers, feedback

Reads (metrics, mastery model) go through a staleness-budgeted cache; the
write path always reads the authoritative stores. Store writes are retried
with exponential backoff and, when a store stays unreachable, queued in the
offline queue for ordered replay.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, TypeVar

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.analytics.aggregator import Aggregator, TrendReport
from mastery_sprint.analytics.cache import StalenessCache
from mastery_sprint.analytics.weakness_detector import WeaknessDetector
from mastery_sprint.core.catalog import TopicCatalog
from mastery_sprint.core.errors import (
    CollaboratorUnavailableError,
    InputValidationError,
    InsufficientDataError,
    InvalidStateError,
    MasterySprintError,
    NotFoundError,
)
from mastery_sprint.core.models import (
    ActivityRecord,
    ActivityType,
    ExerciseResult,
    MasteryModel,
    MasterySprint,
    RecallDrill,
    RecallScheduleEntry,
    SprintEvaluation,
    SprintStatus,
    UserStats,
    Weakness,
    WeaknessRanking,
    WeaknessType,
    as_utc,
    utc_now,
)
from mastery_sprint.core.validation import parse_activity, validate_time_range
from mastery_sprint.feedback.synthesizer import FeedbackMessage, FeedbackSynthesizer, WeeklySummary
from mastery_sprint.mastery.service import MasteryModelService
from mastery_sprint.pipeline import ActivityAccepted, AnalysisPipeline, ModelUpdated
from mastery_sprint.planning.content_provider import (
    FallbackExerciseProvider,
    HttpExerciseProvider,
    StaticExerciseProvider,
)
from mastery_sprint.planning.goal_decomposer import GoalDecomposer, GoalInput, GoalPlan
from mastery_sprint.planning.sprint_generator import SprintGenerator
from mastery_sprint.scheduling.recall_scheduler import RecallScheduler
from mastery_sprint.stores.base import DocumentStore, ExerciseProvider, MetricStore
from mastery_sprint.stores.offline_queue import (
    OP_APPEND_RECORD,
    OP_PUT_SCHEDULE,
    OP_PUT_SPRINT,
    OP_REANALYZE,
    OfflineQueue,
    QueuedOperation,
)

T = TypeVar("T")


@dataclass
class ActivityResult:
    """Outcome of recording one or more activities for a user."""

    user_id: str
    stored: list[ActivityRecord] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    model: MasteryModel | None = None
    ranking: WeaknessRanking | None = None
    feedback: list[FeedbackMessage] = field(default_factory=list)
    sprint: MasterySprint | None = None
    forced_drills: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_queued(self) -> bool:
        return bool(self.queued)


@dataclass
class SprintOutcome:
    sprint: MasterySprint
    evaluation: SprintEvaluation
    celebration: FeedbackMessage | None = None


class MasteryEngine:
    """
    Exposed operations of the mastery-sprint engine.

    Usage:
        engine = MasteryEngine(metric_store, document_store, provider)
        result = await engine.record_activity({...})
        ranking = await engine.analyze_weaknesses(user_id)
        sprint = await engine.generate_mastery_sprint(user_id)
    """

    def __init__(
        self,
        metric_store: MetricStore,
        document_store: DocumentStore,
        exercise_provider: ExerciseProvider,
        settings: Settings | None = None,
        catalog: TopicCatalog | None = None,
        offline_queue: OfflineQueue | None = None,
    ):
        self.settings = settings or get_settings()
        self.catalog = catalog or TopicCatalog()
        self.metric_store = metric_store
        self.document_store = document_store
        self.exercise_provider = exercise_provider
        self.offline_queue = offline_queue or OfflineQueue()

        self.aggregator = Aggregator(metric_store, self.settings)
        self.detector = WeaknessDetector(document_store, self.settings, self.catalog)
        self.mastery = MasteryModelService(metric_store, document_store, self.settings)
        self.scheduler = RecallScheduler(document_store, self.settings, self.offline_queue)
        self.sprints = SprintGenerator(exercise_provider, self.settings, self.catalog)
        self.goals = GoalDecomposer(self.settings, self.catalog)
        self.feedback = FeedbackSynthesizer(self.detector, self.scheduler, self.settings, self.catalog)
        self.pipeline = AnalysisPipeline(self.aggregator, self.detector, self.mastery)
        self.cache: StalenessCache[Any] = StalenessCache(max_entries=self.settings.read_cache_max_entries)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> MasteryEngine:
        """Engine backed by the SQL stores and the configured content providers."""
        from mastery_sprint.stores.sql import (
            SqlDocumentStore,
            SqlMetricStore,
            create_store_engine,
            init_db,
        )

        settings = settings or get_settings()
        db_engine = create_store_engine(settings.database_url)
        init_db(db_engine)

        catalog = TopicCatalog.load(settings.topic_catalog_path) if settings.topic_catalog_path else None
        local = (
            StaticExerciseProvider.load(settings.exercise_bank_path)
            if settings.exercise_bank_path
            else StaticExerciseProvider()
        )
        provider: ExerciseProvider = local
        if settings.content_provider_url:
            provider = FallbackExerciseProvider(HttpExerciseProvider.from_settings(settings), local)

        return cls(
            SqlMetricStore(db_engine),
            SqlDocumentStore(db_engine),
            provider,
            settings=settings,
            catalog=catalog,
            offline_queue=OfflineQueue(settings.offline_queue_path),
        )

    async def close(self) -> None:
        provider = self.exercise_provider
        if isinstance(provider, FallbackExerciseProvider):
            provider = provider.primary
        if isinstance(provider, HttpExerciseProvider):
            await provider.close()

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _with_retry(self, what: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call a store operation, backing off exponentially while it is unavailable."""
        attempts = self.settings.retry_attempts
        for attempt in range(attempts):
            try:
                return await fn(*args)
            except CollaboratorUnavailableError as e:
                if attempt == attempts - 1:
                    logger.error("{} failed after {} attempts: {}", what, attempts, e)
                    raise
                wait_time = self.settings.retry_backoff_seconds * 2**attempt
                logger.warning(
                    "{} unavailable on attempt {}/{}. Retrying in {}s...",
                    what,
                    attempt + 1,
                    attempts,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
        raise AssertionError("unreachable")

    async def _save_sprint(self, sprint: MasterySprint) -> None:
        try:
            await self._with_retry("put_sprint", self.document_store.put_sprint, sprint)
        except CollaboratorUnavailableError:
            self.offline_queue.enqueue(OP_PUT_SPRINT, sprint.user_id, sprint.to_dict())

    async def _load_sprint(self, sprint_id: str) -> MasterySprint:
        sprint = await self.document_store.get_sprint(sprint_id)
        if sprint is None:
            raise NotFoundError(f"Sprint {sprint_id} not found", sprint_id=sprint_id)
        return sprint

    async def _read_model(self, user_id: str) -> MasteryModel | None:
        """Cached model for generators; None for unknown users."""
        try:
            return await self.get_mastery_model(user_id)
        except NotFoundError:
            return None

    # =========================================================================
    # INGESTION
    # =========================================================================

    async def record_activity(
        self,
        payload: dict[str, Any] | ActivityRecord,
        now: datetime | None = None,
    ) -> ActivityResult:
        """
        Validate, store and analyze one completed activity.

        Raises:
            InputValidationError: malformed record (nothing is persisted)
        """
        record = parse_activity(payload)
        return await self.process_batch(record.user_id, [record], now)

    async def process_batch(
        self,
        user_id: str,
        records: list[ActivityRecord],
        now: datetime | None = None,
    ) -> ActivityResult:
        """
        Store a batch of one user's records and run the pipeline once.

        Records are applied in timestamp order. When the metric store stays
        unavailable the remaining records go to the offline queue.
        """
        now = as_utc(now or utc_now())
        result = ActivityResult(user_id=user_id)
        ordered = sorted(records, key=lambda r: (as_utc(r.timestamp), r.activity_id))

        for i, record in enumerate(ordered):
            try:
                created = await self._with_retry("append", self.metric_store.append, record)
            except CollaboratorUnavailableError:
                for pending in ordered[i:]:
                    self.offline_queue.enqueue(OP_APPEND_RECORD, user_id, pending.to_dict())
                    result.queued.append(pending.activity_id)
                break
            if created:
                result.stored.append(record)
            else:
                result.duplicates.append(record.activity_id)

        if result.duplicates:
            logger.debug("Skipped {} duplicate activities for {}", len(result.duplicates), user_id)
        if result.stored:
            await self._analyze(user_id, result.stored, now, result)
        return result

    async def _analyze(
        self,
        user_id: str,
        records: list[ActivityRecord],
        now: datetime,
        result: ActivityResult,
    ) -> None:
        """
        Run the pipeline and follow-ups for stored records.

        When a store fails mid-pipeline the records are already persisted, so
        their analysis is queued for replay instead of being dropped.
        """
        self.cache.invalidate_prefix(user_id)
        try:
            updated = await self.pipeline.run(ActivityAccepted(user_id, records, now))
        except CollaboratorUnavailableError as e:
            logger.warning("Analysis of {} records for {} deferred: {}", len(records), user_id, e)
            self.offline_queue.enqueue(OP_REANALYZE, user_id, {"records": [r.to_dict() for r in records]})
            result.errors.append(e.to_dict())
            return
        result.model = updated.model
        result.ranking = updated.ranking
        self.cache.put((user_id, "model"), updated.model)

        try:
            await self._follow_up(updated, result)
        except CollaboratorUnavailableError as e:
            logger.warning("Follow-ups for {} degraded: {}", user_id, e)
            result.errors.append(e.to_dict())

    def _triggered(self, previous: WeaknessRanking | None, current: WeaknessRanking) -> list[Weakness]:
        """New or worsened weaknesses at or above the trigger severity."""
        if current.stale:
            return []
        before = {w.topic: w for w in previous.weaknesses} if previous else {}
        return [
            w for w in current.weaknesses
            if w.severity >= self.settings.sprint_trigger_severity
            and (w.topic not in before or w.severity > before[w.topic].severity)
        ]

    async def _follow_up(self, updated: ModelUpdated, result: ActivityResult) -> None:
        user_id, now = updated.user_id, updated.at
        history = await self.metric_store.query(
            user_id,
            start=now - timedelta(days=self.settings.mastery_window_days),
            end=now,
        )

        for record in updated.records:
            result.feedback.append(self.feedback.activity_feedback(record, history))
        result.feedback.extend(
            self.feedback.acknowledge_improvements(
                user_id, updated.previous_ranking, updated.ranking, updated.stats, now
            )
        )

        # Recall schedule: first exposure, drill outcomes, dormancy tracking
        for record in updated.records:
            await self.scheduler.ensure_entry(user_id, record.topic, record.timestamp)
            if record.activity_type is ActivityType.DRILL:
                await self.scheduler.record_drill(
                    user_id, record.topic, record.metrics.accuracy, record.timestamp
                )

        for topic in sorted(updated.topics):
            mastery = updated.model.get_topic(topic)
            if mastery is not None:
                await self.scheduler.observe_mastery(user_id, topic, mastery.mastery_level, now)

            stat = updated.stats.get(topic, 7) if updated.stats else None
            if (
                stat is not None
                and stat.retention_rate is not None
                and stat.retention_rate < self.settings.target_retention
            ):
                await self.scheduler.force_drill(user_id, topic, reason="low retention", at=now)
                result.forced_drills.append(topic)

            decline = await self.feedback.check_decline(user_id, topic, history, now)
            if decline is not None:
                result.feedback.append(decline)
                if topic not in result.forced_drills:
                    result.forced_drills.append(topic)

        triggered = self._triggered(updated.previous_ranking, updated.ranking)
        for weakness in triggered:
            if weakness.type is WeaknessType.RETENTION and weakness.topic not in result.forced_drills:
                await self.scheduler.force_drill(user_id, weakness.topic, reason="retention weakness", at=now)
                result.forced_drills.append(weakness.topic)

        if triggered and self.settings.auto_generate_sprints:
            covered = {
                topic
                for sprint in await self.document_store.list_sprints(user_id)
                if sprint.status is SprintStatus.ACTIVE and not sprint.is_expired(now)
                for topic in sprint.topics
            }
            if any(w.topic not in covered for w in triggered):
                try:
                    result.sprint = await self.generate_mastery_sprint(
                        user_id, now=now, weaknesses=updated.ranking.weaknesses
                    )
                except (InsufficientDataError, CollaboratorUnavailableError) as e:
                    logger.warning("Triggered sprint for {} not generated: {}", user_id, e)
                    result.errors.append(e.to_dict())

    # =========================================================================
    # METRICS & TRENDS
    # =========================================================================

    async def get_metrics(
        self,
        user_id: str,
        topic: str | None = None,
        max_staleness: float | None = None,
        now: datetime | None = None,
    ) -> UserStats:
        """
        Rolling stats per topic and window.

        Served from cache within ``max_staleness`` seconds; when the metric
        store is unreachable the last known stats are returned marked stale.
        Stats computed for an explicit ``now`` are cached under that time.
        """
        key = (user_id, "metrics", topic, as_utc(now) if now else None)
        max_age = self.settings.read_staleness_seconds if max_staleness is None else max_staleness
        cached = self.cache.get(key, max_age)
        if cached is not None:
            return cached
        try:
            stats = await self.aggregator.aggregate(user_id, topic=topic, now=now)
        except CollaboratorUnavailableError:
            entry = self.cache.get_any(key)
            if entry is None:
                raise
            logger.warning("Serving stale metrics for {}", user_id)
            return replace(entry.value, stale=True)
        self.cache.put(key, stats)
        return stats

    async def get_activity_history(
        self,
        user_id: str,
        topic: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ActivityRecord]:
        validate_time_range(start, end)
        return await self.metric_store.query(user_id, topic=topic, start=start, end=end)

    async def get_trends(
        self,
        user_id: str,
        topic: str,
        days: int = 30,
        now: datetime | None = None,
    ) -> TrendReport:
        if days <= 0:
            raise InputValidationError("Invalid trend window", field_errors={"days": "must be positive"})
        now = as_utc(now or utc_now())
        records = await self.metric_store.query(
            user_id, topic=topic, start=now - timedelta(days=days), end=now
        )
        report = self.aggregator.trend_report(user_id, topic, records, now, days)
        model = await self._read_model(user_id)
        mastery = model.get_topic(topic) if model else None
        if mastery is not None:
            report.learning_velocity = mastery.learning_velocity
        return report

    # =========================================================================
    # WEAKNESSES, SPRINTS, DRILLS, GOALS
    # =========================================================================

    async def analyze_weaknesses(self, user_id: str, now: datetime | None = None) -> WeaknessRanking:
        now = as_utc(now or utc_now())
        return await self.detector.analyze(
            user_id,
            lambda: self.aggregator.aggregate(user_id, now=now),
            now,
        )

    async def generate_mastery_sprint(
        self,
        user_id: str,
        now: datetime | None = None,
        weaknesses: list[Weakness] | None = None,
    ) -> MasterySprint:
        """
        Generate and persist a sprint for the user's top weaknesses.

        Raises:
            InsufficientDataError: no weaknesses to target
            InsufficientContentError: fewer than 5 exercises available
        """
        now = as_utc(now or utc_now())
        if weaknesses is None:
            weaknesses = (await self.analyze_weaknesses(user_id, now)).weaknesses
        model = await self._read_model(user_id)
        sprint = await self.sprints.generate(user_id, weaknesses, model, now)
        for weakness in sprint.target_weaknesses:
            if weakness.type is WeaknessType.RETENTION:
                await self.scheduler.ensure_entry(user_id, weakness.topic, now)
        await self._save_sprint(sprint)
        return sprint

    async def evaluate_sprint(
        self,
        sprint_id: str,
        results: list[ExerciseResult | dict[str, Any]],
        now: datetime | None = None,
    ) -> SprintOutcome:
        now = as_utc(now or utc_now())
        sprint = await self._load_sprint(sprint_id)
        if self.sprints.expire(sprint, now):
            await self._save_sprint(sprint)
            raise InvalidStateError(f"Sprint {sprint_id} has expired", sprint_id=sprint_id)

        parsed = []
        for item in results:
            if isinstance(item, ExerciseResult):
                parsed.append(item)
                continue
            try:
                parsed.append(ExerciseResult.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                raise InputValidationError(
                    "Malformed exercise result",
                    field_errors={"results": str(e)},
                ) from e

        evaluation = self.sprints.evaluate(sprint, parsed, now)
        await self._save_sprint(sprint)
        return SprintOutcome(
            sprint=sprint,
            evaluation=evaluation,
            celebration=self.feedback.celebrate(sprint, evaluation),
        )

    async def abandon_sprint(self, sprint_id: str) -> MasterySprint:
        sprint = self.sprints.abandon(await self._load_sprint(sprint_id))
        await self._save_sprint(sprint)
        logger.info("Sprint {} abandoned", sprint_id[:8])
        return sprint

    async def expire_sprints(self, user_id: str, now: datetime | None = None) -> list[MasterySprint]:
        now = as_utc(now or utc_now())
        expired = []
        for sprint in await self.document_store.list_sprints(user_id):
            if self.sprints.expire(sprint, now):
                await self._save_sprint(sprint)
                expired.append(sprint)
        if expired:
            logger.info("Expired {} sprints for {}", len(expired), user_id)
        return expired

    async def generate_recall_drills(self, user_id: str, now: datetime | None = None) -> list[RecallDrill]:
        return await self.scheduler.due_drills(user_id, now)

    async def decompose_goal(
        self,
        user_id: str,
        goal: GoalInput | dict[str, Any] | str,
    ) -> GoalPlan:
        return self.goals.decompose(goal, await self._read_model(user_id))

    # =========================================================================
    # MASTERY MODEL
    # =========================================================================

    async def get_mastery_model(self, user_id: str, max_staleness: float | None = None) -> MasteryModel:
        """
        Mastery model, served from cache within ``max_staleness`` seconds.

        Raises:
            NotFoundError: user has no model (never active, or erased)
        """
        key = (user_id, "model")
        max_age = self.settings.read_staleness_seconds if max_staleness is None else max_staleness
        cached = self.cache.get(key, max_age)
        if cached is not None:
            return cached
        try:
            model = await self.document_store.get_model(user_id)
        except CollaboratorUnavailableError:
            entry = self.cache.get_any(key)
            if entry is None:
                raise
            logger.warning("Serving stale mastery model for {}", user_id)
            return replace(entry.value, stale=True)
        if model is None:
            raise NotFoundError(f"No mastery model for {user_id}", user_id=user_id)
        self.cache.put(key, model)
        return model

    async def get_learning_velocity(self, user_id: str, topic: str | None = None) -> dict[str, float]:
        model = await self.get_mastery_model(user_id)
        if topic is not None and model.get_topic(topic) is None:
            raise NotFoundError(f"No mastery for {topic}", user_id=user_id, topic=topic)
        return {
            t.topic: t.learning_velocity
            for t in model.topics
            if topic is None or t.topic == topic
        }

    async def apply_external_analysis(
        self,
        user_id: str,
        analysis: Callable[[], Awaitable[list[dict[str, Any] | ActivityRecord]]],
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> ActivityResult:
        """
        Run a long external analysis and apply its records atomically.

        Nothing is written unless the analysis finishes and every record it
        produced validates; the batch then lands in one versioned model write.
        Cancelling the awaiting task cancels the analysis with no side effects.
        """
        try:
            if timeout is None:
                payloads = await analysis()
            else:
                payloads = await asyncio.wait_for(analysis(), timeout=timeout)
        except TimeoutError as e:
            logger.warning("External analysis for {} timed out after {}s", user_id, timeout)
            raise CollaboratorUnavailableError(
                "External analysis timed out",
                user_id=user_id,
                timeout=timeout,
            ) from e

        records = [parse_activity(p) for p in payloads]
        foreign = sorted({r.user_id for r in records if r.user_id != user_id})
        if foreign:
            raise InputValidationError(
                "Analysis produced records for other users",
                field_errors={"user_id": ", ".join(foreign)},
            )
        if not records:
            return ActivityResult(user_id=user_id)
        return await self.process_batch(user_id, records, now)

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    async def weekly_feedback(self, user_id: str, now: datetime | None = None) -> WeeklySummary:
        now = as_utc(now or utc_now())
        stats = await self.aggregator.aggregate(user_id, now=now)
        ranking = await self.detector.previous_ranking(user_id)
        model = await self._read_model(user_id)
        return self.feedback.weekly_summary(user_id, stats, ranking, model, now)

    # =========================================================================
    # ERASURE & OFFLINE REPLAY
    # =========================================================================

    async def delete_user(self, user_id: str) -> dict[str, int]:
        """Erase every record, document, queued write and cached value of a user."""
        records = await self._with_retry("delete records", self.metric_store.delete_user, user_id)
        documents = await self._with_retry("delete documents", self.document_store.delete_user, user_id)
        queued = self.offline_queue.discard_user(user_id)
        self.cache.invalidate_prefix(user_id)
        self.detector.forget_user(user_id)
        logger.info(
            "Deleted user {}: {} records, {} documents, {} queued writes",
            user_id,
            records,
            documents,
            queued,
        )
        return {"records": records, "documents": documents, "queued": queued}

    async def replay_offline_queue(self, now: datetime | None = None) -> list[QueuedOperation]:
        """
        Replay deferred writes in their original order, then run the pipeline
        and recall follow-ups over every replayed user's records in timestamp
        order, exactly as if they had arrived live.
        """
        now = as_utc(now or utc_now())
        replayed: dict[str, dict[str, ActivityRecord]] = defaultdict(dict)

        async def handle(op: QueuedOperation) -> None:
            if op.op == OP_APPEND_RECORD:
                record = ActivityRecord.from_dict(op.payload)
                if await self.metric_store.append(record):
                    replayed[op.user_id][record.activity_id] = record
            elif op.op == OP_REANALYZE:
                for data in op.payload["records"]:
                    record = ActivityRecord.from_dict(data)
                    replayed[op.user_id][record.activity_id] = record
            elif op.op == OP_PUT_SPRINT:
                await self.document_store.put_sprint(MasterySprint.from_dict(op.payload))
            elif op.op == OP_PUT_SCHEDULE:
                await self.document_store.put_schedule(RecallScheduleEntry.from_dict(op.payload))
            else:
                raise InvalidStateError(f"Unknown queued operation {op.op}", op_id=op.op_id)

        applied = await self.offline_queue.replay(handle)
        for user_id, records in sorted(replayed.items()):
            ordered = sorted(records.values(), key=lambda r: (as_utc(r.timestamp), r.activity_id))
            await self._analyze(user_id, ordered, now, ActivityResult(user_id=user_id))
        return applied


__all__ = [
    "ActivityResult",
    "MasteryEngine",
    "MasterySprintError",
    "SprintOutcome",
]
