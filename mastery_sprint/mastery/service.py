"""
Mastery Model Service.

Owns the write path of the per-user MasteryModel:

1. Read the authoritative model (version V) - never the cache
2. Recompute affected topics from the trailing window of records
3. Conditionally write version V+1
4. On VersionConflict re-read and re-merge, up to ``max_write_retries``

Because every topic is re-derived from timestamp-ordered records rather than
patched incrementally, records that arrive late (e.g. replayed from the
offline queue) still produce the state that timestamp order implies.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from loguru import logger

from config import Settings, get_settings
from mastery_sprint.core.errors import ConcurrencyConflictError, VersionConflict
from mastery_sprint.core.models import ActivityRecord, MasteryModel, as_utc, utc_now
from mastery_sprint.mastery.calculator import MasteryCalculator
from mastery_sprint.stores.base import DocumentStore, MetricStore

Mutation = Callable[[MasteryModel], Awaitable[MasteryModel]]


class MasteryModelService:
    """Versioned, optimistic-concurrency updates of mastery models."""

    def __init__(
        self,
        metric_store: MetricStore,
        document_store: DocumentStore,
        settings: Settings | None = None,
        calculator: MasteryCalculator | None = None,
    ):
        self.metric_store = metric_store
        self.document_store = document_store
        self.settings = settings or get_settings()
        self.calculator = calculator or MasteryCalculator(self.settings)
        self.max_retries = self.settings.max_write_retries

    async def get_model(self, user_id: str) -> MasteryModel | None:
        """Authoritative read (bypasses any cache)."""
        return await self.document_store.get_model(user_id)

    async def update(self, user_id: str, mutate: Mutation) -> MasteryModel:
        """
        Apply ``mutate`` under optimistic concurrency.

        ``mutate`` receives the current model (or a new empty one) on every
        attempt and must be safe to re-run; it re-reads whatever inputs it
        needs so a retry merges the competing writer's changes.

        Raises:
            ConcurrencyConflictError: every attempt lost the race
        """
        for attempt in range(1, self.max_retries + 1):
            current = await self.document_store.get_model(user_id)
            expected = current.version if current else 0
            updated = await mutate(current or MasteryModel(user_id=user_id))
            updated.version = expected + 1
            try:
                await self.document_store.put_model(updated, expected)
            except VersionConflict as e:
                logger.warning(
                    "Mastery model conflict for {} (attempt {}/{}): {}",
                    user_id,
                    attempt,
                    self.max_retries,
                    e,
                )
                # Yield so the competing writer can finish before re-reading
                await asyncio.sleep(0)
                continue
            logger.debug("Mastery model for {} now at version {}", user_id, updated.version)
            return updated

        raise ConcurrencyConflictError(
            f"Mastery model update for {user_id} failed after {self.max_retries} attempts",
            user_id=user_id,
        )

    async def _window_records(self, user_id: str, now: datetime) -> list[ActivityRecord]:
        return await self.metric_store.query(
            user_id,
            start=now - timedelta(days=self.calculator.window_days),
            end=now,
        )

    async def apply_activity(
        self,
        user_id: str,
        topics: set[str],
        now: datetime | None = None,
        new_activities: int = 1,
    ) -> MasteryModel:
        """
        Recompute ``topics`` (and learning patterns) after new activity.

        Args:
            user_id: Model owner
            topics: Topics touched by the new activity
            now: Evaluation time
            new_activities: Newly stored activities to add to the lifetime total
        """
        now = as_utc(now or utc_now())

        async def recompute(model: MasteryModel) -> MasteryModel:
            records = await self._window_records(user_id, now)
            for topic in sorted(topics):
                model.upsert_topic(
                    self.calculator.compute_topic(topic, records, now, model.get_topic(topic))
                )
            model.learning_patterns = self.calculator.learning_patterns(records, model.topics, now)
            model.total_activities_completed += new_activities
            model.last_updated = now
            return model

        model = await self.update(user_id, recompute)
        logger.info(
            "Updated mastery for {} topics={} version={}",
            user_id,
            ",".join(sorted(topics)),
            model.version,
        )
        return model

    async def velocity(self, user_id: str, topic: str | None = None) -> dict[str, float]:
        """Learning velocity per topic (or for one topic)."""
        model = await self.document_store.get_model(user_id)
        if model is None:
            return {}
        return {
            t.topic: t.learning_velocity
            for t in model.topics
            if topic is None or t.topic == topic
        }
