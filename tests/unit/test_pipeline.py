"""
Unit tests for the analysis pipeline stages and the ingestion worker.
"""

from datetime import timedelta

import pytest

from mastery_sprint.analytics.aggregator import Aggregator
from mastery_sprint.analytics.weakness_detector import WeaknessDetector
from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.mastery.service import MasteryModelService
from mastery_sprint.pipeline import ActivityAccepted, AnalysisPipeline, IngestionWorker
from mastery_sprint.stores.memory import InMemoryMetricStore


class UnavailableMetricStore(InMemoryMetricStore):
    async def query(self, *args, **kwargs):
        raise CollaboratorUnavailableError("metric store down")


def build_pipeline(metric_store, document_store, settings, catalog):
    return AnalysisPipeline(
        Aggregator(metric_store, settings),
        WeaknessDetector(document_store, settings, catalog),
        MasteryModelService(metric_store, document_store, settings),
    )


@pytest.fixture
def pipeline(metric_store, document_store, settings, catalog):
    return build_pipeline(metric_store, document_store, settings, catalog)


async def accept(metric_store, records, now):
    for record in records:
        await metric_store.append(record)
    return ActivityAccepted(user_id="alice", records=records, received_at=now)


class TestAnalysisPipeline:
    """Tests for the aggregate -> score -> update chain."""

    @pytest.mark.asyncio
    async def test_run_produces_ranking_and_model(self, pipeline, metric_store, record_factory, now):
        records = [record_factory(accuracy=35, at=now - timedelta(hours=h)) for h in (4, 3, 2, 1)]

        updated = await pipeline.run(await accept(metric_store, records, now))

        assert updated.ranking.topics == ["recursion"]
        assert updated.previous_ranking is None
        assert updated.previous_model is None
        assert updated.model.version == 1
        assert updated.model.total_activities_completed == 4
        assert updated.topics == {"recursion"}

    @pytest.mark.asyncio
    async def test_second_pass_sees_previous_ranking(self, pipeline, metric_store, record_factory, now):
        records = [record_factory(accuracy=35, at=now - timedelta(hours=h)) for h in (4, 3, 2)]
        first = await pipeline.run(await accept(metric_store, records, now))

        more = [record_factory(accuracy=95, at=now - timedelta(minutes=30))]
        second = await pipeline.run(await accept(metric_store, more, now))

        assert second.previous_ranking.pass_id == first.ranking.pass_id
        assert second.ranking.pass_id != first.ranking.pass_id
        assert second.previous_model.version == 1
        assert second.model.version == 2

    @pytest.mark.asyncio
    async def test_unavailable_aggregation_scores_stale(self, document_store, settings, catalog, record_factory, now):
        pipeline = build_pipeline(UnavailableMetricStore(), document_store, settings, catalog)
        accepted = ActivityAccepted("alice", [record_factory()], now)

        updated = await pipeline.aggregate(accepted)
        scored = await pipeline.score(updated)

        assert updated.stats is None
        assert scored.ranking.stale is True
        assert scored.ranking.weaknesses == []


class TestIngestionWorker:
    """Tests for per-user timestamp ordering."""

    @pytest.mark.asyncio
    async def test_batches_grouped_and_ordered(self, record_factory, now):
        calls = []

        async def handler(user_id, records):
            calls.append((user_id, [r.activity_id for r in records]))

        worker = IngestionWorker(handler)
        arrivals = [
            record_factory(user_id="bob", at=now - timedelta(hours=1), activity_id="b2"),
            record_factory(at=now - timedelta(hours=1), activity_id="a3"),
            record_factory(at=now - timedelta(hours=3), activity_id="a1"),
            record_factory(user_id="bob", at=now - timedelta(hours=5), activity_id="b1"),
            record_factory(at=now - timedelta(hours=2), activity_id="a2"),
        ]
        for record in arrivals:
            await worker.submit(record)
        await worker.stop()

        await worker.run()

        assert calls == [("alice", ["a1", "a2", "a3"]), ("bob", ["b1", "b2"])]
        assert worker.processed == 5

    @pytest.mark.asyncio
    async def test_stop_on_empty_queue(self):
        async def handler(user_id, records):
            raise AssertionError("no records expected")

        worker = IngestionWorker(handler)
        await worker.stop()

        await worker.run()

        assert worker.processed == 0
