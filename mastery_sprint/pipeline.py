"""
Analysis pipeline.

Stages pass explicit typed messages instead of publishing events:

    ActivityAccepted -> aggregate -> StatsUpdated
    StatsUpdated     -> score     -> WeaknessesScored
    WeaknessesScored -> update    -> ModelUpdated

Each stage can be driven on its own in tests. ``IngestionWorker`` buffers
incoming records, groups them per user and hands each batch to the pipeline
in timestamp order, regardless of arrival order.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from mastery_sprint.analytics.aggregator import Aggregator
from mastery_sprint.analytics.weakness_detector import WeaknessDetector
from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.core.models import (
    ActivityRecord,
    MasteryModel,
    UserStats,
    WeaknessRanking,
    as_utc,
    utc_now,
)
from mastery_sprint.mastery.service import MasteryModelService

# ============================================================================
# Stage messages
# ============================================================================


@dataclass
class ActivityAccepted:
    """Newly stored records of one user, in timestamp order."""

    user_id: str
    records: list[ActivityRecord]
    received_at: datetime

    @property
    def topics(self) -> set[str]:
        return {r.topic for r in self.records}


@dataclass
class StatsUpdated:
    user_id: str
    topics: set[str]
    stats: UserStats | None  # None when aggregation missed its deadline
    at: datetime
    accepted: ActivityAccepted


@dataclass
class WeaknessesScored:
    user_id: str
    topics: set[str]
    ranking: WeaknessRanking
    previous_ranking: WeaknessRanking | None
    stats: UserStats | None
    at: datetime
    accepted: ActivityAccepted


@dataclass
class ModelUpdated:
    user_id: str
    topics: set[str]
    model: MasteryModel
    previous_model: MasteryModel | None
    ranking: WeaknessRanking
    previous_ranking: WeaknessRanking | None
    stats: UserStats | None
    at: datetime
    records: list[ActivityRecord] = field(default_factory=list)


# ============================================================================
# Stages
# ============================================================================


class AnalysisPipeline:
    """Aggregator -> WeaknessDetector -> MasteryModelService."""

    def __init__(
        self,
        aggregator: Aggregator,
        detector: WeaknessDetector,
        mastery: MasteryModelService,
    ):
        self.aggregator = aggregator
        self.detector = detector
        self.mastery = mastery

    async def aggregate(self, accepted: ActivityAccepted) -> StatsUpdated:
        """Recompute rolling stats, bounded by the weakness-analysis deadline."""
        sla = self.detector.settings.weakness_sla_seconds
        try:
            stats = await asyncio.wait_for(
                self.aggregator.aggregate(accepted.user_id, now=accepted.received_at),
                timeout=sla,
            )
        except TimeoutError:
            logger.warning("Aggregation for {} exceeded {}s", accepted.user_id, sla)
            stats = None
        except CollaboratorUnavailableError as e:
            logger.warning("Aggregation for {} unavailable: {}", accepted.user_id, e)
            stats = None
        return StatsUpdated(
            user_id=accepted.user_id,
            topics=accepted.topics,
            stats=stats,
            at=accepted.received_at,
            accepted=accepted,
        )

    async def score(self, updated: StatsUpdated) -> WeaknessesScored:
        """Rank weaknesses; degraded stats yield the previous ranking marked stale."""
        try:
            previous = await self.detector.previous_ranking(updated.user_id)
        except CollaboratorUnavailableError:
            previous = None
        if updated.stats is None:
            ranking = await self.detector.stale_ranking(updated.user_id, updated.at)
        else:
            ranking = await self.detector.rank(updated.user_id, updated.stats, updated.at)
        return WeaknessesScored(
            user_id=updated.user_id,
            topics=updated.topics,
            ranking=ranking,
            previous_ranking=previous,
            stats=updated.stats,
            at=updated.at,
            accepted=updated.accepted,
        )

    async def update(self, scored: WeaknessesScored) -> ModelUpdated:
        """Apply the batch to the mastery model in a single versioned write."""
        previous_model = await self.mastery.get_model(scored.user_id)
        model = await self.mastery.apply_activity(
            scored.user_id,
            scored.topics,
            now=scored.at,
            new_activities=len(scored.accepted.records),
        )
        return ModelUpdated(
            user_id=scored.user_id,
            topics=scored.topics,
            model=model,
            previous_model=previous_model,
            ranking=scored.ranking,
            previous_ranking=scored.previous_ranking,
            stats=scored.stats,
            at=scored.at,
            records=list(scored.accepted.records),
        )

    async def run(self, accepted: ActivityAccepted) -> ModelUpdated:
        return await self.update(await self.score(await self.aggregate(accepted)))


# ============================================================================
# Ingestion worker
# ============================================================================

BatchHandler = Callable[[str, list[ActivityRecord]], Awaitable[object]]


class IngestionWorker:
    """
    Drains buffered records and processes them per user in timestamp order.

    Usage:
        worker = IngestionWorker(engine.process_batch)
        task = asyncio.create_task(worker.run())
        await worker.submit(record)
        ...
        await worker.stop()
    """

    def __init__(self, handler: BatchHandler, maxsize: int = 0):
        self.handler = handler
        self.queue: asyncio.Queue[ActivityRecord | None] = asyncio.Queue(maxsize=maxsize)
        self.processed = 0

    async def submit(self, record: ActivityRecord) -> None:
        await self.queue.put(record)

    async def stop(self) -> None:
        """Ask ``run`` to finish after draining what is already queued."""
        await self.queue.put(None)

    def _drain(self, first: ActivityRecord | None) -> tuple[list[ActivityRecord], bool]:
        batch = [first] if first is not None else []
        stopping = first is None
        while True:
            try:
                item = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return batch, stopping
            if item is None:
                stopping = True
            else:
                batch.append(item)

    async def process(self, batch: list[ActivityRecord]) -> None:
        by_user: dict[str, list[ActivityRecord]] = defaultdict(list)
        for record in batch:
            by_user[record.user_id].append(record)
        for user_id in sorted(by_user):
            records = sorted(by_user[user_id], key=lambda r: (as_utc(r.timestamp), r.activity_id))
            await self.handler(user_id, records)
            self.processed += len(records)

    async def run(self) -> None:
        while True:
            first = await self.queue.get()
            batch, stopping = self._drain(first)
            if batch:
                logger.debug("Ingestion worker processing {} records", len(batch))
                await self.process(batch)
            if stopping:
                logger.debug("Ingestion worker stopped at {}", utc_now().isoformat())
                return
