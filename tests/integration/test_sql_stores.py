"""
Integration tests for the SQL stores, the engine on top of them and the CLI.

Runs against a throwaway SQLite database in ``tmp_path``.
"""

import json
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from typer.testing import CliRunner

from config import get_settings
from mastery_sprint import MasteryEngine
from mastery_sprint.cli import app
from mastery_sprint.core.errors import CollaboratorUnavailableError, VersionConflict
from mastery_sprint.core.models import (
    MasteryModel,
    MasterySprint,
    RecallScheduleEntry,
    SuccessCriteria,
    TopicMastery,
    Weakness,
    WeaknessRanking,
    WeaknessType,
)
from mastery_sprint.stores.sql import SqlDocumentStore, SqlMetricStore, create_store_engine, init_db


@pytest.fixture
def db_engine(tmp_path):
    engine = create_store_engine(f"sqlite:///{tmp_path / 'db' / 'mastery.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_metrics(db_engine):
    return SqlMetricStore(db_engine)


@pytest.fixture
def sql_documents(db_engine):
    return SqlDocumentStore(db_engine)


class TestSqlMetricStore:
    """Tests for the append-only activity table."""

    @pytest.mark.asyncio
    async def test_append_is_idempotent(self, sql_metrics, record_factory):
        record = record_factory(activity_id="a1")

        assert await sql_metrics.append(record) is True
        assert await sql_metrics.append(record) is False
        assert len(await sql_metrics.query("alice")) == 1

    @pytest.mark.asyncio
    async def test_query_filters_and_orders(self, sql_metrics, record_factory, now):
        await sql_metrics.append(record_factory(activity_id="late", at=now - timedelta(hours=1)))
        await sql_metrics.append(record_factory(activity_id="early", at=now - timedelta(days=2)))
        await sql_metrics.append(record_factory(activity_id="old", at=now - timedelta(days=40)))
        await sql_metrics.append(record_factory(activity_id="other", topic="loops", at=now))
        await sql_metrics.append(record_factory(activity_id="bob", user_id="bob", at=now))

        records = await sql_metrics.query("alice", topic="recursion", start=now - timedelta(days=30), end=now)

        assert [r.activity_id for r in records] == ["early", "late"]
        assert records[0].timestamp == now - timedelta(days=2)
        assert records[0].metrics.accuracy == 80.0

    @pytest.mark.asyncio
    async def test_delete_user(self, sql_metrics, record_factory):
        await sql_metrics.append(record_factory())
        await sql_metrics.append(record_factory())
        await sql_metrics.append(record_factory(user_id="bob"))

        assert await sql_metrics.delete_user("alice") == 2
        assert await sql_metrics.query("alice") == []
        assert len(await sql_metrics.query("bob")) == 1

    @pytest.mark.asyncio
    async def test_unreachable_database(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        store = SqlMetricStore(create_engine(f"sqlite:///{blocker}/x.db"))

        with pytest.raises(CollaboratorUnavailableError):
            await store.query("alice")


class TestSqlDocumentStore:
    """Tests for JSON documents and conditional model writes."""

    @pytest.mark.asyncio
    async def test_model_versioning(self, sql_documents):
        model = MasteryModel(user_id="alice", version=1, topics=[TopicMastery(topic="loops", mastery_level=55)])
        await sql_documents.put_model(model, expected_version=0)

        with pytest.raises(VersionConflict):
            await sql_documents.put_model(MasteryModel(user_id="alice", version=1), expected_version=0)

        model.version = 2
        await sql_documents.put_model(model, expected_version=1)
        with pytest.raises(VersionConflict) as exc_info:
            await sql_documents.put_model(model, expected_version=1)

        assert exc_info.value.actual == 2
        stored = await sql_documents.get_model("alice")
        assert stored.version == 2
        assert stored.get_topic("loops").mastery_level == 55

    @pytest.mark.asyncio
    async def test_documents_round_trip(self, sql_documents, now):
        weakness = Weakness("loops", WeaknessType.SPEED, 0.4, 0.4, now, [WeaknessType.SPEED])
        sprint = MasterySprint(
            sprint_id="s1",
            user_id="alice",
            target_weaknesses=[weakness],
            exercises=[],
            duration=30,
            success_criteria=SuccessCriteria(70.0, 45.0, 80.0),
            created_at=now,
            expires_at=now + timedelta(days=7),
        )
        entry = RecallScheduleEntry("alice", "loops", now + timedelta(days=1))
        ranking = WeaknessRanking("p1", "alice", now, [weakness])

        await sql_documents.put_sprint(sprint)
        await sql_documents.put_schedule(entry)
        await sql_documents.put_ranking(ranking)

        assert await sql_documents.get_sprint("s1") == sprint
        assert await sql_documents.list_schedule("alice") == [entry]
        assert (await sql_documents.get_ranking("alice")).topics == ["loops"]
        assert [s.sprint_id for s in await sql_documents.list_sprints("alice")] == ["s1"]
        assert await sql_documents.get_schedule("alice", "recursion") is None

    @pytest.mark.asyncio
    async def test_delete_user(self, sql_documents, now):
        await sql_documents.put_model(MasteryModel(user_id="alice", version=1), 0)
        await sql_documents.put_schedule(RecallScheduleEntry("alice", "loops", now))
        await sql_documents.put_model(MasteryModel(user_id="bob", version=1), 0)

        assert await sql_documents.delete_user("alice") == 2
        assert await sql_documents.get_model("alice") is None
        assert await sql_documents.get_model("bob") is not None


class TestEngineOnSql:
    @pytest.mark.asyncio
    async def test_record_and_erase(self, sql_metrics, sql_documents, exercise_provider, settings, catalog,
                                    record_factory, now):
        engine = MasteryEngine(sql_metrics, sql_documents, exercise_provider, settings=settings, catalog=catalog)
        records = [record_factory(accuracy=10, at=now - timedelta(hours=h)) for h in (4, 3, 2, 1)]

        result = await engine.process_batch("alice", records, now)

        assert result.sprint is not None
        assert (await sql_documents.get_model("alice")).version == 1
        assert (await sql_documents.get_sprint(result.sprint.sprint_id)).topics == ["recursion"]

        removed = await engine.delete_user("alice")

        assert removed["records"] == 4
        assert await sql_documents.list_sprints("alice") == []


class TestCli:
    """Smoke tests for the Typer app."""

    @pytest.fixture
    def cli_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MASTERY_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
        monkeypatch.setenv("MASTERY_OFFLINE_QUEUE_PATH", str(tmp_path / "queue.json"))
        get_settings.cache_clear()
        yield tmp_path
        get_settings.cache_clear()

    def test_record_then_show_model(self, cli_env):
        runner = CliRunner()
        path = cli_env / "activity.json"
        path.write_text(json.dumps({
            "userId": "carol",
            "activityId": "c1",
            "activityType": "exercise",
            "topic": "recursion",
            "timestamp": (datetime.now(UTC) - timedelta(hours=1)).isoformat(),
            "metrics": {"speed": 45, "accuracy": 85, "completionRate": 100},
        }))

        recorded = runner.invoke(app, ["record", str(path)])
        shown = runner.invoke(app, ["model", "carol", "--json"])

        assert recorded.exit_code == 0, recorded.output
        assert "First attempt at recursion" in recorded.output
        assert shown.exit_code == 0, shown.output
        assert '"recursion"' in shown.output

    def test_errors_exit_with_code(self, cli_env):
        runner = CliRunner()

        result = runner.invoke(app, ["model", "nobody"])

        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_invalid_record_reports_fields(self, cli_env):
        runner = CliRunner()
        path = cli_env / "bad.json"
        path.write_text(json.dumps({"userId": "carol", "topic": "x"}))

        result = runner.invoke(app, ["record", str(path)])

        assert result.exit_code == 1
        assert "input_validation" in result.output
