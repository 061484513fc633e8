"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import itertools
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402
from mastery_sprint.core.catalog import TopicCatalog, TopicInfo  # noqa: E402
from mastery_sprint.core.models import (  # noqa: E402
    ActivityMetrics,
    ActivityRecord,
    ActivityType,
    Exercise,
    ExerciseType,
)
from mastery_sprint.planning.content_provider import StaticExerciseProvider  # noqa: E402
from mastery_sprint.stores.memory import InMemoryDocumentStore, InMemoryMetricStore  # noqa: E402

# Fixed evaluation time shared by the suites
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (SQL stores on SQLite)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    """Settings isolated from the environment, without backoff delays."""
    return Settings(
        _env_file=None,
        log_file=None,
        retry_backoff_seconds=0.0,
        offline_queue_path="unused.json",
    )


@pytest.fixture
def catalog():
    """Small topic catalog with a prerequisite chain and next-level topics."""
    return TopicCatalog.from_topics([
        TopicInfo(name="variables", difficulty=2),
        TopicInfo(name="loops", difficulty=3, prerequisites=["variables"]),
        TopicInfo(name="functions", difficulty=4, prerequisites=["variables"]),
        TopicInfo(name="recursion", difficulty=6, prerequisites=["functions"], aliases=["recursive"]),
        TopicInfo(name="dynamic-programming", difficulty=8, prerequisites=["recursion", "loops"]),
        TopicInfo(name="sql-joins", difficulty=5, adjacent=["window-functions"], importance=2.0),
        TopicInfo(name="window-functions", difficulty=7),
    ])


@pytest.fixture
def metric_store():
    return InMemoryMetricStore()


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


_ids = itertools.count(1)


def make_record(
    topic: str = "recursion",
    accuracy: float = 80.0,
    speed: float = 60.0,
    at: datetime = NOW,
    user_id: str = "alice",
    activity_type: ActivityType = ActivityType.EXERCISE,
    content_type: str = "quiz",
    activity_id: str | None = None,
) -> ActivityRecord:
    """Build a valid activity record."""
    return ActivityRecord(
        user_id=user_id,
        activity_id=activity_id or f"act-{next(_ids)}",
        activity_type=activity_type,
        topic=topic,
        content_type=content_type,
        timestamp=at,
        metrics=ActivityMetrics(speed=speed, accuracy=accuracy, completion_rate=100.0),
    )


def make_payload(**overrides) -> dict:
    """Wire-format activity payload (camelCase, as clients send it)."""
    payload = {
        "userId": "alice",
        "activityId": f"act-{next(_ids)}",
        "activityType": "exercise",
        "topic": "recursion",
        "contentType": "quiz",
        "timestamp": (NOW - timedelta(hours=1)).isoformat(),
        "metrics": {"speed": 60.0, "accuracy": 80.0, "completionRate": 100.0},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def payload_factory():
    return make_payload


def make_bank(topics: list[str], per_type: int = 3, difficulty_range: tuple[int, int] = (1, 10)) -> list[Exercise]:
    """Exercises of every type and difficulty for ``topics``."""
    low, high = difficulty_range
    bank = []
    for topic in topics:
        for exercise_type in ExerciseType:
            for i in range(per_type):
                for difficulty in range(low, high + 1):
                    bank.append(
                        Exercise(
                            id=f"{topic}-{exercise_type.value}-{difficulty}-{i}",
                            type=exercise_type,
                            topic=topic,
                            difficulty=difficulty,
                            content_ref=f"bank://{topic}/{exercise_type.value}/{difficulty}/{i}",
                            estimated_time=3.0,
                        )
                    )
    return bank


@pytest.fixture
def exercise_provider(catalog):
    return StaticExerciseProvider(make_bank(sorted(catalog.topics)))
